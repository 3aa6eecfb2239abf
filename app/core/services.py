"""
Base service layer patterns for business logic encapsulation.

This module provides foundational patterns for the service layer:
- ServiceResult: Standard result wrapper for consistent success/failure handling
- BaseService: Base class with common service utilities

Pattern Comparison:
    - ServiceResult: Use for expected failures (guards, validation, stale versions)
    - Exceptions: Use for unexpected failures (database errors, bugs)

Usage:
    from core.services import BaseService, ServiceResult

    class PayoutMethodRegistry(BaseService):
        @classmethod
        def set_default(cls, owner, method_id) -> ServiceResult[PayoutMethod]:
            method = PayoutMethod.objects.filter(owner=owner, id=method_id).first()
            if method is None:
                return ServiceResult.failure("Payout method not found", "NOT_FOUND")

            with cls.atomic():
                PayoutMethod.objects.filter(owner=owner).update(is_default=False)
                method.is_default = True
                method.save(update_fields=["is_default", "updated_at"])

            return ServiceResult.success(method)

    # In view
    result = PayoutMethodRegistry.set_default(request.user, method_id)
    if result.success:
        return Response(PayoutMethodSerializer(result.data).data)
    return Response(result.to_response(), status=400)

Related:
    - core.exceptions: For unexpected/exceptional errors
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from django.db import transaction

if TYPE_CHECKING:
    from collections.abc import Generator
    from typing import Any

    from core.exceptions import BaseApplicationError

# Generic type for ServiceResult data
T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Standard result wrapper for service operations.

    Provides consistent success/failure handling without exceptions.

    Attributes:
        success: Whether the operation succeeded
        data: Result data if successful (None if failed)
        error: Error message if failed (None if successful)
        error_code: Machine-readable error code for client handling
        errors: Field-level errors for validation failures
        details: Structured context of a failure (which guard, which field)

    Usage:
        result = EscrowService.execute(command)
        if result.success:
            txn = result.data.transaction
        else:
            print(f"Error: {result.error} ({result.error_code})")
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None
    errors: dict[str, list[str]] | None = field(default=None)
    details: dict[str, Any] | None = field(default=None)

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        """
        Create a successful result.

        Args:
            data: The result data

        Returns:
            ServiceResult with success=True and data set
        """
        return cls(success=True, data=data)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: str | None = None,
        errors: dict[str, list[str]] | None = None,
        details: dict[str, Any] | None = None,
    ) -> ServiceResult[T]:
        """
        Create a failed result.

        Args:
            error: Human-readable error message
            error_code: Machine-readable error code for client handling
            errors: Field-level errors (for validation failures)
            details: Structured failure context

        Example:
            return ServiceResult.failure(
                "Only the seller may accept",
                error_code="GUARD_VIOLATION",
                details={"reason": "actor"},
            )
        """
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            errors=errors,
            details=details,
        )

    @classmethod
    def from_error(cls, exc: BaseApplicationError) -> ServiceResult[T]:
        """
        Create a failed result from an application error.

        The error's code and details are carried over unchanged.

        Example:
            try:
                check_version(EscrowTransaction, txn_id, expected_version)
            except StaleRecordError as e:
                return ServiceResult.from_error(e)
        """
        return cls(
            success=False,
            error=exc.message,
            error_code=exc.error_code,
            details=exc.details or None,
        )

    def to_response(self) -> dict[str, Any]:
        """
        Convert to API response format.

        Returns:
            Dict with success status and data or error details
        """
        if self.success:
            return {"success": True, "data": self.data}

        response: dict[str, Any] = {
            "success": False,
            "error": self.error,
        }
        if self.error_code:
            response["error_code"] = self.error_code
        if self.errors:
            response["errors"] = self.errors
        if self.details:
            response["details"] = self.details
        return response

    def __bool__(self) -> bool:
        """
        Allow using result in boolean context.

        Example:
            result = EscrowService.execute(command)
            if result:  # Same as: if result.success
                print("Applied")
        """
        return self.success


class BaseService:
    """
    Base class for service layer classes.

    Provides common utilities for services:
    - Logging setup per service
    - Database transaction management
    - Exception handling patterns

    Design Notes:
        - Use @staticmethod or @classmethod (no instance state)
        - Services should be stateless
        - Use ServiceResult for expected failures
        - Raise exceptions for unexpected failures
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """
        Get logger for this service.

        Returns a logger named after the service class for
        easy filtering in logs.
        """
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    @contextmanager
    def atomic(cls) -> Generator[None, None, None]:
        """
        Execute operations in a database transaction.

        All database operations within this context manager are
        wrapped in a transaction. If any operation fails, all
        changes are rolled back.

        Example:
            with cls.atomic():
                txn.release(payout_method=method)
                txn.save()
                PayoutInstruction.objects.create(...)
                # If the instruction fails to insert, the release is rolled back
        """
        with transaction.atomic():
            yield

    @classmethod
    def handle_exception(
        cls,
        exc: BaseApplicationError,
        context: str = "",
        log_level: int = logging.WARNING,
    ) -> ServiceResult:
        """
        Convert an application error to a ServiceResult with logging.

        Args:
            exc: The caught exception
            context: Additional context for logging
            log_level: Logging level (default WARNING)

        Returns:
            ServiceResult with the error's code and details

        Example:
            try:
                MpesaAdapter.initiate_stk_push(params)
            except GatewayError as e:
                return cls.handle_exception(e, "payment initiation")
        """
        logger = cls.get_logger()
        message = f"{context}: {exc.message}" if context else exc.message
        logger.log(
            log_level,
            message,
            extra={"error_code": exc.error_code, "details": exc.details},
        )
        return ServiceResult.from_error(exc)
