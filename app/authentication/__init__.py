"""
Authentication application.

Provides the email-based User model that identifies buyers, sellers and
adjudicators. Registration and login flows live outside this service;
API requests authenticate with JWTs issued by the identity provider.

Usage:
    from authentication.models import User
"""
