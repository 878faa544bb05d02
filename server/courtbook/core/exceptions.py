"""Custom exceptions following RFC 9457 Problem Details for HTTP APIs."""

from typing import Any, Dict, Optional
from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse
import uuid
from datetime import datetime


class ProblemDetailsException(HTTPException):
    """
    Base exception class following RFC 9457 Problem Details for HTTP APIs.

    https://tools.ietf.org/rfc/rfc9457.txt
    """

    def __init__(
        self,
        status_code: int,
        title: str,
        detail: Optional[str] = None,
        type_uri: Optional[str] = None,
        instance: Optional[str] = None,
        extensions: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize Problem Details exception.

        Args:
            status_code: HTTP status code
            title: Short, human-readable summary of the problem type
            detail: Human-readable explanation specific to this occurrence
            type_uri: URI reference that identifies the problem type
            instance: URI reference that identifies the specific occurrence
            extensions: Additional problem-specific information
            headers: HTTP headers to include in response
        """
        self.status_code = status_code
        self.title = title
        self.detail = detail
        self.type_uri = type_uri or f"about:blank#{status_code}"
        self.instance = instance
        self.extensions = extensions or {}

        # Create the problem details object
        self.problem_details = {
            "type": self.type_uri,
            "title": self.title,
            "status": self.status_code,
        }

        if self.detail:
            self.problem_details["detail"] = self.detail

        if self.instance:
            self.problem_details["instance"] = self.instance

        # Add extensions
        self.problem_details.update(self.extensions)

        super().__init__(
            status_code=status_code,
            detail=self.problem_details,
            headers=headers
        )

    def __str__(self) -> str:
        return self.problem_details.get("detail") or self.title


class ValidationError(ProblemDetailsException):
    """Exception for malformed slots, prices and other boundary validation errors."""

    def __init__(
        self,
        detail: str = "The request data failed validation",
        errors: Optional[Dict[str, Any]] = None,
        instance: Optional[str] = None,
    ):
        extensions = {}
        if errors:
            extensions["errors"] = errors

        super().__init__(
            status_code=400,
            title="Validation Error",
            detail=detail,
            type_uri="https://example.com/problems/validation-error",
            instance=instance,
            extensions=extensions,
        )


class NotFoundError(ProblemDetailsException):
    """Exception for resource not found errors."""

    def __init__(
        self,
        resource_type: str = "resource",
        resource_id: Optional[str] = None,
        detail: Optional[str] = None,
        instance: Optional[str] = None,
    ):
        if not detail:
            detail = f"The requested {resource_type}"
            if resource_id:
                detail += f" with ID '{resource_id}'"
            detail += " could not be found"

        extensions = {
            "resource_type": resource_type,
        }
        if resource_id:
            extensions["resource_id"] = resource_id

        super().__init__(
            status_code=404,
            title="Resource Not Found",
            detail=detail,
            type_uri="https://example.com/problems/resource-not-found",
            instance=instance,
            extensions=extensions,
        )


class ConflictError(ProblemDetailsException):
    """Exception for resource conflict errors."""

    def __init__(
        self,
        detail: str = "The request conflicts with the current state of the resource",
        conflicting_resource: Optional[Dict[str, Any]] = None,
        instance: Optional[str] = None,
    ):
        extensions = {}
        if conflicting_resource:
            extensions["conflicting_resource"] = conflicting_resource

        super().__init__(
            status_code=409,
            title="Resource Conflict",
            detail=detail,
            type_uri="https://example.com/problems/resource-conflict",
            instance=instance,
            extensions=extensions,
        )


class ConcurrencyError(ProblemDetailsException):
    """
    A compare-and-set transition found the record in an unexpected state.

    The caller must retry the whole operation from a fresh read.
    """

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        expected_status: str,
        detail: Optional[str] = None,
        instance: Optional[str] = None,
    ):
        if not detail:
            detail = (
                f"The {resource_type} '{resource_id}' is no longer in status "
                f"'{expected_status}'; reload and retry"
            )

        super().__init__(
            status_code=409,
            title="Concurrent Modification",
            detail=detail,
            type_uri="https://example.com/problems/concurrent-modification",
            instance=instance,
            extensions={
                "resource_type": resource_type,
                "resource_id": resource_id,
                "expected_status": expected_status,
                "retryable": True,
            },
        )


class DeliveryError(ProblemDetailsException):
    """Exception raised by notifiers when a message could not be delivered."""

    def __init__(
        self,
        recipient: str,
        detail: Optional[str] = None,
        instance: Optional[str] = None,
    ):
        if not detail:
            detail = f"Notification to '{recipient}' could not be delivered"

        super().__init__(
            status_code=502,
            title="Notification Delivery Failed",
            detail=detail,
            type_uri="https://example.com/problems/delivery-failed",
            instance=instance,
            extensions={"recipient": recipient, "retryable": True},
        )


# Business logic exceptions

class SlotConflictError(ConflictError):
    """Exception when a booking would overlap another live booking on the same court."""

    def __init__(
        self,
        court_id: str,
        start_time: datetime,
        end_time: datetime,
        conflicting_booking_id: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        if not detail:
            detail = (
                f"Court {court_id} is already booked between "
                f"{start_time.isoformat()} and {end_time.isoformat()}"
            )

        super().__init__(
            detail=detail,
            conflicting_resource={
                "court_id": court_id,
                "start_time": start_time.isoformat(),
                "end_time": end_time.isoformat(),
                "booking_id": conflicting_booking_id,
            },
        )
        self.problem_details.update({
            "code": "SLOT_TAKEN",
            "retryable": False
        })


class InvalidTransitionError(ConflictError):
    """Exception when an entity cannot move to the requested status."""

    def __init__(self, resource_type: str, resource_id: str, current_status: str, action: str):
        super().__init__(
            detail=f"Cannot {action} {resource_type} {resource_id} in status '{current_status}'"
        )
        self.problem_details.update({
            "code": "INVALID_TRANSITION",
            "retryable": False,
            "current_status": current_status,
        })


class WaitlistExpiredError(ConflictError):
    """Exception when a notified waitlist entry is converted after its deadline."""

    def __init__(self, entry_id: str, expired_at: datetime):
        super().__init__(
            detail=f"Waitlist entry {entry_id} expired at {expired_at.isoformat()}"
        )
        self.problem_details.update({
            "code": "WAITLIST_EXPIRED",
            "retryable": False,
            "waitlist_entry_id": entry_id,
            "expired_at": expired_at.isoformat()
        })


class WaitlistDisabledError(ConflictError):
    """Exception when a slot is pending approval and the waitlist is switched off."""

    def __init__(self, court_id: str, start_time: datetime, end_time: datetime):
        super().__init__(
            detail=(
                "This time slot is currently pending approval and waitlist is disabled. "
                "Please try again later."
            ),
            conflicting_resource={
                "court_id": court_id,
                "start_time": start_time.isoformat(),
                "end_time": end_time.isoformat(),
            },
        )
        self.problem_details.update({
            "code": "WAITLIST_DISABLED",
            "retryable": True
        })


async def problem_details_handler(request: Request, exc: ProblemDetailsException) -> JSONResponse:
    """
    Exception handler for Problem Details exceptions.

    Args:
        request: FastAPI request object
        exc: Problem Details exception

    Returns:
        JSONResponse: Problem Details formatted response
    """
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.problem_details,
        headers=exc.headers,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Generic exception handler that converts unhandled exceptions to Problem Details format.

    Args:
        request: FastAPI request object
        exc: Unhandled exception

    Returns:
        JSONResponse: Problem Details formatted response
    """
    error_id = str(uuid.uuid4())

    problem_details = {
        "type": "https://example.com/problems/internal-server-error",
        "title": "Internal Server Error",
        "status": 500,
        "detail": "An unexpected error occurred while processing the request",
        "instance": str(request.url),
        "error_id": error_id,
        "timestamp": datetime.now().isoformat(),
    }

    return JSONResponse(
        status_code=500,
        content=problem_details,
    )
