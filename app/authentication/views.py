"""
Authentication views.

This module provides API views for:
- Current user retrieval and contact details update

Related files:
    - serializers.py: Request/response serialization
    - urls.py: URL routing

Note:
    Token endpoints are provided by djangorestframework-simplejwt:
    - Obtain: /api/v1/auth/token/
    - Refresh: /api/v1/auth/token/refresh/

    The mobile number set here is the default M-Pesa payer phone for
    purchases, the destination of refunds and the number escrow SMS
    messages go to.
"""

from drf_spectacular.utils import extend_schema
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from authentication.serializers import ContactUpdateSerializer, UserSerializer


class CurrentUserView(APIView):
    """
    API view for the authenticated user.

    GET: Retrieve the current user
    PATCH: Update full name and mobile number

    URL: /api/v1/auth/me/
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        summary="Get current user",
        tags=["Auth"],
        responses={200: UserSerializer},
    )
    def get(self, request):
        return Response(UserSerializer(request.user).data)

    @extend_schema(
        summary="Update contact details",
        description="Update the name and mobile number used for SMS and M-Pesa prompts.",
        tags=["Auth"],
        request=ContactUpdateSerializer,
        responses={200: UserSerializer},
    )
    def patch(self, request):
        """
        Partially update the current user's contact details.

        Request body:
            {
                "full_name": "Jane Wanjiku",     // Optional
                "phone_number": "0712345678"     // Optional, normalized
            }
        """
        serializer = ContactUpdateSerializer(request.user, data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        serializer.save()
        return Response(UserSerializer(request.user).data)
