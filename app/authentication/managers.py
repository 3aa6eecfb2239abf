"""
Custom user manager for email-based authentication.

Three kinds of account share the User model: ordinary users (who buy and
sell), adjudicators (staff who resolve disputes) and superusers.

Related files:
    - models.py: User model that uses this manager
"""

from django.contrib.auth.models import BaseUserManager


class UserManager(BaseUserManager):
    """
    Manager for the email-based User model.

    Usage:
        seller = User.objects.create_user(
            email='seller@example.com',
            password='securepassword',
            full_name='Jane Wanjiku',
            phone_number='0712345678',
        )

        adjudicator = User.objects.create_adjudicator(
            email='disputes@example.com',
            password='securepassword',
        )
    """

    def _create(self, email, password, **extra_fields):
        if not email:
            raise ValueError("The Email field must be set")

        user = self.model(email=self.normalize_email(email), **extra_fields)
        if password:
            user.set_password(password)
        else:
            user.set_unusable_password()

        # phone_number is normalized to 2547XXXXXXXX in User.save()
        user.save(using=self._db)
        return user

    def create_user(self, email, password=None, **extra_fields):
        extra_fields.setdefault("is_staff", False)
        extra_fields.setdefault("is_superuser", False)
        return self._create(email, password, **extra_fields)

    def create_adjudicator(self, email, password=None, **extra_fields):
        """
        Staff account that may resolve disputes but has no superuser rights.
        """
        extra_fields["is_staff"] = True
        extra_fields.setdefault("is_superuser", False)
        return self._create(email, password, **extra_fields)

    def create_superuser(self, email, password=None, **extra_fields):
        """
        Raises:
            ValueError: If is_staff or is_superuser is not True
        """
        extra_fields.setdefault("is_staff", True)
        extra_fields.setdefault("is_superuser", True)

        if extra_fields.get("is_staff") is not True:
            raise ValueError("Superuser must have is_staff=True.")
        if extra_fields.get("is_superuser") is not True:
            raise ValueError("Superuser must have is_superuser=True.")

        return self._create(email, password, **extra_fields)
