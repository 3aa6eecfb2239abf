"""
Authentication models.

- User: Email-based user model. Buyers, sellers and adjudicators (staff)
  are all plain users; their role on a transaction is decided per trigger.

Related files:
    - managers.py: Custom user manager for email-based creation
"""

import re

from django.contrib.auth.models import AbstractBaseUser, PermissionsMixin
from django.core.exceptions import ValidationError
from django.db import models

from authentication.managers import UserManager


MSISDN_PATTERN = re.compile(r"^2547\d{8}$|^2541\d{8}$")


def normalize_msisdn(value):
    """
    Normalize a Kenyan mobile number to 2547XXXXXXXX form.

    Accepts 07XXXXXXXX, 01XXXXXXXX, +2547XXXXXXXX and 2547XXXXXXXX.
    Returns the input unchanged when it doesn't look like one.
    """
    digits = re.sub(r"[\s\-+]", "", value or "")
    if digits.startswith("0") and len(digits) == 10:
        digits = f"254{digits[1:]}"
    return digits


def validate_msisdn(value):
    """Validate that the value normalizes to a Kenyan mobile number."""
    if not MSISDN_PATTERN.match(normalize_msisdn(value)):
        raise ValidationError(f"'{value}' is not a valid Kenyan mobile number.")


class User(AbstractBaseUser, PermissionsMixin):
    """
    Custom User model using email as the primary identifier.

    Fields:
        email: Primary identifier, unique, used for login
        full_name: Display name used in notifications
        phone_number: MSISDN for SMS notifications and M-Pesa prompts
        is_active: Whether the user account is active
        is_staff: Whether the user can access Django admin and adjudicate
        date_joined: When the user account was created
        updated_at: When the user record was last modified

    Usage:
        user = User.objects.create_user(
            email='buyer@example.com',
            password='securepassword',
            phone_number='0712345678',
        )
    """

    # Primary identifier (replaces username)
    email = models.EmailField(
        unique=True,
        db_index=True,
        max_length=254,
        help_text="User's email address (primary identifier)",
    )

    full_name = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Name shown to the other party and in SMS messages",
    )

    phone_number = models.CharField(
        max_length=15,
        blank=True,
        default="",
        validators=[validate_msisdn],
        help_text="Mobile number in 2547XXXXXXXX form",
    )

    # Account status flags
    is_active = models.BooleanField(
        default=True,
        help_text="Whether this user account is active. Deselect instead of deleting.",
    )
    is_staff = models.BooleanField(
        default=False,
        help_text="Whether the user can access the admin site and resolve disputes.",
    )

    # Timestamps
    date_joined = models.DateTimeField(
        auto_now_add=True,
        help_text="When the user account was created",
    )
    updated_at = models.DateTimeField(
        auto_now=True,
        help_text="When the user record was last modified",
    )

    USERNAME_FIELD = "email"
    REQUIRED_FIELDS = []

    objects = UserManager()

    class Meta:
        verbose_name = "user"
        verbose_name_plural = "users"
        ordering = ["-date_joined"]

    def __str__(self):
        return self.email

    def save(self, *args, **kwargs):
        if self.phone_number:
            self.phone_number = normalize_msisdn(self.phone_number)
        super().save(*args, **kwargs)

    def get_full_name(self):
        return self.full_name or self.email

    def get_short_name(self):
        if self.full_name:
            return self.full_name.split()[0]
        return self.email.split("@")[0]
