"""Hook0 exception hierarchy.

Provides structured exceptions for error handling throughout the codebase.
All exceptions inherit from Hook0Error for easy catching.

Delivery failures (connection errors, timeouts, HTTP errors, invalid targets)
are not exceptions: they are classified once per execution into a
ResponseError and recorded in the Attempt Store. Exceptions are reserved for
conditions the caller has to handle.
"""

from __future__ import annotations


class Hook0Error(Exception):
    """Base exception for all Hook0 errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code for API responses.
    """

    code: str = "hook0_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class ValidationError(Hook0Error):
    """Invalid input provided.

    Attributes:
        field: The field that failed validation.
        message: Description of the validation failure.
    """

    code: str = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "field": self.field,
                "message": self.message,
            }
        }


class NotFoundError(Hook0Error):
    """Resource not found.

    Raised when a requested resource (event, subscription, response...)
    doesn't exist within the caller's application.

    Attributes:
        resource_type: Type of resource (e.g., "event", "subscription").
        resource_id: ID of the missing resource.
    """

    code: str = "not_found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "resource_type": self.resource_type,
                "resource_id": self.resource_id,
                "message": self.message,
            }
        }


class StorageError(Hook0Error):
    """Storage operation failed.

    Raised when an Attempt Store operation fails for a reason other than
    availability (constraint violation, corrupt row...).
    """

    code: str = "storage_error"


class StoreUnavailableError(StorageError):
    """The Attempt Store cannot be reached.

    Fatal for output workers: a worker that cannot record an outcome must
    stop claiming attempts instead of delivering without a record.
    """

    code: str = "store_unavailable"


class SignatureError(Hook0Error):
    """A signature header could not be parsed."""

    code: str = "signature_error"


class ConfigurationError(Hook0Error):
    """Configuration error.

    Raised when required configuration is missing or invalid.
    """

    code: str = "configuration_error"
