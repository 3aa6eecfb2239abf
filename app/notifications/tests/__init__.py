"""
Tests for notifications app.

This package contains test modules for:
- test_services.py: Template rendering and queueing per escrow event
- test_tasks.py: Twilio SMS delivery task tests

Usage:
    pytest notifications/tests/
    pytest notifications/tests/test_tasks.py
"""
