"""
ViewSets for escrow API.

URL Structure:
    /api/v1/escrow/transactions/                         GET, POST
    /api/v1/escrow/transactions/{id}/                    GET
    /api/v1/escrow/transactions/{id}/pay/                POST
    /api/v1/escrow/transactions/{id}/check-status/       POST
    /api/v1/escrow/transactions/{id}/accept/             POST
    /api/v1/escrow/transactions/{id}/reject/             POST
    /api/v1/escrow/transactions/{id}/ship/               POST
    /api/v1/escrow/transactions/{id}/confirm-delivery/   POST
    /api/v1/escrow/transactions/{id}/resend-otp/         POST
    /api/v1/escrow/transactions/{id}/release/            POST
    /api/v1/escrow/transactions/{id}/dispute/            POST
    /api/v1/escrow/transactions/{id}/resolve/            POST (staff)
    /api/v1/escrow/payout-methods/                       GET, POST
    /api/v1/escrow/payout-methods/{id}/                  DELETE
    /api/v1/escrow/payout-methods/{id}/default/          POST

Design Decisions:
    - Every state change goes through EscrowService.execute with a command
      built by parse_command; the view only picks the trigger and the role
    - The role is fixed per action (sellers accept, buyers confirm);
      whether the user actually is that party is checked by the engine
    - Staff users act as adjudicators for /resolve/
    - Failures keep the service's error_code and map it to an HTTP status
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.db.models import Q
from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import (
    OpenApiParameter,
    OpenApiResponse,
    extend_schema,
    extend_schema_view,
)
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response

from escrow.commands import Actor, parse_command
from escrow.exceptions import EscrowValidationError
from escrow.models import EscrowTransaction, PayoutMethod
from escrow.pagination import TransactionCursorPagination
from escrow.serializers import (
    ConfirmDeliverySerializer,
    EscrowTransactionSerializer,
    InitiationResponseSerializer,
    PayoutMethodCreateSerializer,
    PayoutMethodSerializer,
    PaySerializer,
    PollResponseSerializer,
    ReasonSerializer,
    ResolveSerializer,
    ShipSerializer,
    TransactionCreateSerializer,
    TriggerSerializer,
)
from escrow.services import EscrowService, PaymentGatewayService, PayoutMethodRegistry
from escrow.state_machines import ActorRole

if TYPE_CHECKING:
    from core.services import ServiceResult


UUID_PATTERN = r"[0-9a-fA-F]{8}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{12}"

ERROR_STATUS = {
    "VALIDATION": status.HTTP_400_BAD_REQUEST,
    "OTP_INVALID": status.HTTP_400_BAD_REQUEST,
    "OTP_EXPIRED": status.HTTP_400_BAD_REQUEST,
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "CONCURRENT_MODIFICATION": status.HTTP_409_CONFLICT,
    "LOCK_ACQUISITION_FAILED": status.HTTP_409_CONFLICT,
    "NO_PAYOUT_METHOD": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "OTP_LOCKED": status.HTTP_429_TOO_MANY_REQUESTS,
    "GATEWAY_ERROR": status.HTTP_502_BAD_GATEWAY,
}


def error_status(result: ServiceResult) -> int:
    """HTTP status for a failed ServiceResult."""
    if result.error_code == "GUARD_VIOLATION":
        if (result.details or {}).get("reason") == "actor":
            return status.HTTP_403_FORBIDDEN
        return status.HTTP_409_CONFLICT
    return ERROR_STATUS.get(result.error_code, status.HTTP_400_BAD_REQUEST)


def error_response(result: ServiceResult) -> Response:
    return Response(result.to_response(), status=error_status(result))


def validation_response(error: EscrowValidationError) -> Response:
    return Response(
        {"success": False, "error": error.message, "error_code": error.error_code, "details": error.details},
        status=status.HTTP_400_BAD_REQUEST,
    )


TRANSACTION_TAG = ["Escrow - Transactions"]

ERROR_RESPONSES = {
    400: OpenApiResponse(description="Invalid request or delivery code"),
    403: OpenApiResponse(description="Not a party allowed to perform this action"),
    404: OpenApiResponse(description="Transaction not found"),
    409: OpenApiResponse(description="Wrong state, deadline, or stale expected_version"),
}


@extend_schema_view(
    list=extend_schema(
        operation_id="list_escrow_transactions",
        summary="List my transactions",
        tags=TRANSACTION_TAG,
        parameters=[
            OpenApiParameter("role", OpenApiTypes.STR, enum=["buyer", "seller"], required=False),
            OpenApiParameter("status", OpenApiTypes.STR, required=False),
        ],
    ),
    retrieve=extend_schema(
        operation_id="get_escrow_transaction",
        summary="Get transaction",
        tags=TRANSACTION_TAG,
    ),
)
class EscrowTransactionViewSet(
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    viewsets.GenericViewSet,
):
    """
    ViewSet for escrow transactions.

    list:
        Transactions where the user is buyer or seller. Staff see all.
        Filter with ?role=buyer|seller and ?status=ESCROWED.

    create:
        Buyer opens a transaction with a seller. The STK push is sent
        automatically when a payer phone is known.

    pay:
        (Re)send the STK push to the payer phone.

    check_status:
        Ask M-Pesa for the payment outcome and apply it.

    accept, reject, ship:
        Seller actions. Shipping issues the delivery code to the buyer.

    confirm_delivery, release, dispute:
        Buyer actions. confirm_delivery takes the delivery code.

    resend_otp:
        Either party asks for a fresh delivery code.

    resolve:
        Staff decide a dispute with "release" or "refund".
    """

    permission_classes = [IsAuthenticated]
    pagination_class = TransactionCursorPagination
    serializer_class = EscrowTransactionSerializer
    lookup_value_regex = UUID_PATTERN

    def get_queryset(self):
        """Filter to transactions the user is a party to."""
        user = self.request.user
        if not user.is_authenticated:
            return EscrowTransaction.objects.none()

        queryset = EscrowTransaction.objects.select_related("buyer", "seller", "instruction", "delivery_otp")
        role = self.request.query_params.get("role")
        if role == "buyer":
            queryset = queryset.filter(buyer=user)
        elif role == "seller":
            queryset = queryset.filter(seller=user)
        elif not user.is_staff:
            queryset = queryset.filter(Q(buyer=user) | Q(seller=user))

        status_filter = self.request.query_params.get("status")
        if status_filter:
            queryset = queryset.filter(status=status_filter.upper())
        return queryset

    def get_permissions(self):
        if self.action == "resolve":
            return [IsAuthenticated(), IsAdminUser()]
        return [IsAuthenticated()]

    # =========================================================================
    # Helpers
    # =========================================================================

    def _actor(self, role: ActorRole) -> Actor:
        return Actor.for_user(self.request.user, role)

    def _party_role(self, pk) -> ActorRole:
        """Buyer if the user bought this transaction, otherwise seller."""
        buyer_id = EscrowTransaction.objects.filter(pk=pk).values_list("buyer_id", flat=True).first()
        if buyer_id is not None and buyer_id == self.request.user.pk:
            return ActorRole.BUYER
        return ActorRole.SELLER

    def _transaction_response(self, txn: EscrowTransaction, http_status: int = status.HTTP_200_OK) -> Response:
        txn = EscrowTransaction.objects.select_related("buyer", "seller", "instruction", "delivery_otp").get(pk=txn.pk)
        return Response(EscrowTransactionSerializer(txn).data, status=http_status)

    def _run_trigger(self, request, pk, trigger: str, role: ActorRole, serializer_class=TriggerSerializer, data=None):
        """
        Validate the body, build the command and apply it.

        Args:
            trigger: Command trigger name
            role: Role the user acts in
            serializer_class: Request body serializer
            data: Overrides the validated body (e.g. after renaming fields)
        """
        serializer = serializer_class(data=request.data)
        serializer.is_valid(raise_exception=True)

        payload = dict(serializer.validated_data if data is None else data)
        payload["transaction_id"] = pk
        try:
            command = parse_command(trigger, payload, self._actor(role))
        except EscrowValidationError as e:
            return validation_response(e)

        result = EscrowService.execute(command)
        if not result.success:
            return error_response(result)
        return self._transaction_response(result.data.transaction)

    # =========================================================================
    # Creation & Payment
    # =========================================================================

    @extend_schema(
        operation_id="create_escrow_transaction",
        summary="Create transaction",
        tags=TRANSACTION_TAG,
        request=TransactionCreateSerializer,
        responses={201: EscrowTransactionSerializer, **ERROR_RESPONSES},
    )
    def create(self, request):
        """Open a transaction as the buyer."""
        serializer = TransactionCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            command = parse_command("create", dict(serializer.validated_data), self._actor(ActorRole.BUYER))
        except EscrowValidationError as e:
            return validation_response(e)

        result = EscrowService.execute(command)
        if not result.success:
            return error_response(result)
        return self._transaction_response(result.data.transaction, status.HTTP_201_CREATED)

    @extend_schema(
        operation_id="pay_escrow_transaction",
        summary="Send M-Pesa payment prompt",
        tags=TRANSACTION_TAG,
        request=PaySerializer,
        responses={200: InitiationResponseSerializer, 502: OpenApiResponse(description="Gateway error")},
    )
    @action(detail=True, methods=["post"])
    def pay(self, request, pk=None):
        """Send the STK push. Repeated calls return the existing request."""
        serializer = PaySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = PaymentGatewayService.initiate(
            self.get_object().id,
            payer_phone=serializer.validated_data.get("payer_phone", ""),
            actor=self._actor(ActorRole.BUYER),
        )
        if not result.success:
            return error_response(result)

        return Response(
            {
                "transaction": EscrowTransactionSerializer(result.data.transaction).data,
                "provider_reference": result.data.provider_reference,
                "created": result.data.created,
                "customer_message": result.data.customer_message,
            }
        )

    @extend_schema(
        operation_id="check_escrow_payment_status",
        summary="Check payment status",
        tags=TRANSACTION_TAG,
        request=None,
        responses={200: PollResponseSerializer, 502: OpenApiResponse(description="Gateway error")},
    )
    @action(detail=True, methods=["post"], url_path="check-status")
    def check_status(self, request, pk=None):
        """Poll M-Pesa for the payment outcome."""
        txn = self.get_object()
        result = PaymentGatewayService.poll(txn.id, actor=self._actor(self._party_role(txn.id)))
        if not result.success:
            return error_response(result)

        return Response(
            {
                "transaction": EscrowTransactionSerializer(result.data.transaction).data,
                "outcome": result.data.outcome.value,
            }
        )

    # =========================================================================
    # Seller Actions
    # =========================================================================

    @extend_schema(
        operation_id="accept_escrow_transaction",
        summary="Accept order",
        tags=TRANSACTION_TAG,
        request=TriggerSerializer,
        responses={200: EscrowTransactionSerializer, **ERROR_RESPONSES},
    )
    @action(detail=True, methods=["post"])
    def accept(self, request, pk=None):
        return self._run_trigger(request, pk, "seller_accept", ActorRole.SELLER)

    @extend_schema(
        operation_id="reject_escrow_transaction",
        summary="Decline order",
        tags=TRANSACTION_TAG,
        request=ReasonSerializer,
        responses={200: EscrowTransactionSerializer, **ERROR_RESPONSES},
    )
    @action(detail=True, methods=["post"])
    def reject(self, request, pk=None):
        """Decline the order; the buyer is refunded."""
        return self._run_trigger(request, pk, "seller_reject", ActorRole.SELLER, ReasonSerializer)

    @extend_schema(
        operation_id="ship_escrow_transaction",
        summary="Mark shipped",
        tags=TRANSACTION_TAG,
        request=ShipSerializer,
        responses={200: EscrowTransactionSerializer, **ERROR_RESPONSES},
    )
    @action(detail=True, methods=["post"])
    def ship(self, request, pk=None):
        """Record shipment; the buyer receives the delivery code by SMS."""
        return self._run_trigger(request, pk, "seller_ship", ActorRole.SELLER, ShipSerializer)

    # =========================================================================
    # Buyer Actions
    # =========================================================================

    @extend_schema(
        operation_id="confirm_escrow_delivery",
        summary="Confirm delivery with code",
        tags=TRANSACTION_TAG,
        request=ConfirmDeliverySerializer,
        responses={
            200: EscrowTransactionSerializer,
            429: OpenApiResponse(description="Too many incorrect codes"),
            **ERROR_RESPONSES,
        },
    )
    @action(detail=True, methods=["post"], url_path="confirm-delivery")
    def confirm_delivery(self, request, pk=None):
        return self._run_trigger(request, pk, "buyer_confirm_otp", ActorRole.BUYER, ConfirmDeliverySerializer)

    @extend_schema(
        operation_id="resend_escrow_delivery_code",
        summary="Resend delivery code",
        tags=TRANSACTION_TAG,
        request=TriggerSerializer,
        responses={200: EscrowTransactionSerializer, **ERROR_RESPONSES},
    )
    @action(detail=True, methods=["post"], url_path="resend-otp")
    def resend_otp(self, request, pk=None):
        """Issue a fresh delivery code; the previous one stops working."""
        return self._run_trigger(request, pk, "resend_otp", self._party_role(pk))

    @extend_schema(
        operation_id="release_escrow_funds",
        summary="Release funds to seller",
        tags=TRANSACTION_TAG,
        request=TriggerSerializer,
        responses={
            200: EscrowTransactionSerializer,
            422: OpenApiResponse(description="Seller has no payout method"),
            **ERROR_RESPONSES,
        },
    )
    @action(detail=True, methods=["post"])
    def release(self, request, pk=None):
        return self._run_trigger(request, pk, "release", ActorRole.BUYER)

    @extend_schema(
        operation_id="dispute_escrow_transaction",
        summary="Open dispute",
        tags=TRANSACTION_TAG,
        request=ReasonSerializer,
        responses={200: EscrowTransactionSerializer, **ERROR_RESPONSES},
    )
    @action(detail=True, methods=["post"])
    def dispute(self, request, pk=None):
        """Hold the funds for adjudication. Only before the release deadline."""
        return self._run_trigger(request, pk, "open_dispute", ActorRole.BUYER, ReasonSerializer)

    # =========================================================================
    # Adjudicator Actions
    # =========================================================================

    @extend_schema(
        operation_id="resolve_escrow_dispute",
        summary="Resolve dispute",
        tags=TRANSACTION_TAG,
        request=ResolveSerializer,
        responses={
            200: EscrowTransactionSerializer,
            422: OpenApiResponse(description="Seller has no payout method"),
            **ERROR_RESPONSES,
        },
    )
    @action(detail=True, methods=["post"])
    def resolve(self, request, pk=None):
        """Release to the seller or refund the buyer."""
        serializer = ResolveSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        data = dict(serializer.validated_data)
        decision = data.pop("decision")
        trigger = (
            "resolve_dispute_release" if decision == ResolveSerializer.DECISION_RELEASE else "resolve_dispute_refund"
        )
        return self._run_trigger(request, pk, trigger, ActorRole.ADJUDICATOR, ResolveSerializer, data=data)


@extend_schema_view(
    list=extend_schema(
        operation_id="list_payout_methods",
        summary="List payout methods",
        tags=["Escrow - Payout Methods"],
    ),
)
class PayoutMethodViewSet(mixins.ListModelMixin, viewsets.GenericViewSet):
    """
    ViewSet for the seller's payout methods.

    The first method registered becomes the default. Releases pay out to
    the default method; without one they are refused with NO_PAYOUT_METHOD.
    """

    permission_classes = [IsAuthenticated]
    serializer_class = PayoutMethodSerializer
    pagination_class = None
    lookup_value_regex = UUID_PATTERN

    def get_queryset(self):
        if not self.request.user.is_authenticated:
            return PayoutMethod.objects.none()
        return PayoutMethodRegistry.list_for(self.request.user).order_by("-is_default", "-created_at")

    @extend_schema(
        operation_id="create_payout_method",
        summary="Add payout method",
        tags=["Escrow - Payout Methods"],
        request=PayoutMethodCreateSerializer,
        responses={201: PayoutMethodSerializer},
    )
    def create(self, request):
        serializer = PayoutMethodCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = PayoutMethodRegistry.add_method(owner=request.user, **serializer.validated_data)
        if not result.success:
            return error_response(result)
        return Response(PayoutMethodSerializer(result.data).data, status=status.HTTP_201_CREATED)

    @extend_schema(
        operation_id="delete_payout_method",
        summary="Remove payout method",
        tags=["Escrow - Payout Methods"],
    )
    def destroy(self, request, pk=None):
        result = PayoutMethodRegistry.deactivate(request.user, pk)
        if not result.success:
            return error_response(result)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @extend_schema(
        operation_id="set_default_payout_method",
        summary="Make default payout method",
        tags=["Escrow - Payout Methods"],
        request=None,
        responses={200: PayoutMethodSerializer},
    )
    @action(detail=True, methods=["post"])
    def default(self, request, pk=None):
        result = PayoutMethodRegistry.set_default(request.user, pk)
        if not result.success:
            return error_response(result)
        return Response(PayoutMethodSerializer(result.data).data)
