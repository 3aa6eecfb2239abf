"""
Django app configuration for authentication.

Buyers, sellers and staff adjudicators all share the one email-based
User model defined here.
"""

from django.apps import AppConfig


class AuthenticationConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "authentication"
    verbose_name = "Accounts"
