"""
Exposure Backend — Custom Exception Hierarchy
===============================================

What:  Defines application-specific exceptions for the gallery's error scenarios.
Why:   Services report business outcomes (bad input, missing place, slug
       collision, rejected login) as typed exceptions; the HTTP layer maps
       each type to a status code without inspecting messages.
How:   Every class carries a client-safe message plus a context dict for the
       server log. register_exception_handlers() in main.py turns them into
       {error, message, details, request_id} bodies.
Who:   Raised by services, dependencies and the lock table; nothing below
       the route layer builds HTTP responses itself.

Exception Hierarchy:
    GalleryError (base)
    ├── ValidationError          → 400 Bad Request (client can fix)
    ├── AuthenticationError      → 401 Unauthorized (always generic)
    ├── NotFoundError            → 404 Not Found
    ├── ConflictError            → 409 Conflict
    ├── RateLimitExceededError   → 429 Too Many Requests
    ├── StorageError             → 500 Internal Server Error
    │   ├── FileStorageError
    │   └── DatabaseError
    └── TransientLockError       → 503 Service Unavailable (retry later)
"""

from typing import Any, Dict, List, Optional


class GalleryError(Exception):
    """
    Base exception for all gallery application errors.

    Attributes:
        message:  Shown to the client as-is (never a path, SQL or secret)
        context:  Place ids, field names, error types; never returned for 5xx
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(GalleryError):
    """
    Raised when client input fails validation.

    `errors` holds one human-readable message per failed field or file,
    e.g. "File 2 (beach.gif): File extension '.gif' is not allowed".
    """

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        errors: Optional[List[str]] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        if errors:
            ctx["errors"] = list(errors)
        super().__init__(message=message, context=ctx)
        self.field = field
        self.errors = list(errors or [])


class AuthenticationError(GalleryError):
    """
    Raised for every failed login or second-factor check.

    The message never says which part failed (unknown user, wrong password,
    wrong code) so responses cannot be used to enumerate accounts.
    """

    def __init__(
        self,
        message: str = "Invalid credentials",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class NotFoundError(GalleryError):
    """Raised when a requested place, photo, user or file does not exist."""

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class ConflictError(GalleryError):
    """
    Raised when a uniqueness rule cannot be satisfied.

    When: Slug generation exhausted its attempts, a place with the same
    country/location/name slugs exists, TOTP is already enabled.
    """

    def __init__(
        self,
        message: str = "The request conflicts with existing data",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class StorageError(GalleryError):
    """
    Raised when the file store or the database fails mid-operation.

    The response message is always generic; context is logged server-side.
    Any partially applied mutation has been rolled back when this surfaces.
    """

    def __init__(
        self,
        message: str = "A storage operation failed. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class FileStorageError(StorageError):
    """Could not read, write, move or delete a file on the storage volume."""

    def __init__(
        self,
        message: str = "File storage operation failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class DatabaseError(StorageError):
    """A database query, insert or update failed unexpectedly."""

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class TransientLockError(GalleryError):
    """
    Raised when a place lock could not be acquired within the configured timeout.

    HTTP: 503 Service Unavailable with a Retry-After header.
    """

    def __init__(
        self,
        place_id: Optional[int] = None,
        retry_after: int = 1,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if place_id is not None:
            ctx["place_id"] = place_id
        ctx["retry_after"] = retry_after
        super().__init__(
            message="The place is busy with another change. Please retry shortly.",
            context=ctx,
        )
        self.retry_after = retry_after


class RateLimitExceededError(GalleryError):
    """
    Raised when a client or a login name exceeds its rate limit.

    Response includes a Retry-After header.
    """

    def __init__(
        self,
        retry_after: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Too many attempts. Please wait {retry_after} seconds before trying again."
        )
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after
