"""
Tests for authentication app.

This package contains test modules for:
- test_models.py: User model and MSISDN normalization
- test_managers.py: create_user / create_superuser
- test_serializers.py: User, party and contact serializers
- test_views.py: /me and JWT token endpoints

Usage:
    pytest authentication/tests/
"""
