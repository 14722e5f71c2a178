"""Tests for Hook0 exception hierarchy."""

import pytest

from hook0.exceptions import (
    ConfigurationError,
    Hook0Error,
    NotFoundError,
    SignatureError,
    StorageError,
    StoreUnavailableError,
    ValidationError,
)


class TestHook0Error:
    """Tests for the base Hook0Error class."""

    def test_error_message(self):
        """Should store and return message."""
        error = Hook0Error("Something went wrong")
        assert error.message == "Something went wrong"
        assert str(error) == "Something went wrong"

    def test_error_code(self):
        """Should have default error code."""
        assert Hook0Error("test").code == "hook0_error"

    def test_to_dict(self):
        """Should convert to API-friendly dict."""
        assert Hook0Error("Something went wrong").to_dict() == {
            "error": {
                "code": "hook0_error",
                "message": "Something went wrong",
            }
        }

    def test_inheritance(self):
        """All custom exceptions should inherit from Hook0Error."""
        exceptions = [
            ValidationError("field", "invalid"),
            NotFoundError("Event", "id"),
            StorageError("failed"),
            StoreUnavailableError("down"),
            SignatureError("bad header"),
            ConfigurationError("missing"),
        ]
        for exc in exceptions:
            assert isinstance(exc, Hook0Error)
            assert isinstance(exc, Exception)


class TestValidationError:
    """Tests for ValidationError."""

    def test_field_and_message(self):
        """Should store field and prefix the message with it."""
        error = ValidationError("subscription_id", "Subscription is disabled")
        assert error.field == "subscription_id"
        assert error.message == "subscription_id: Subscription is disabled"

    def test_to_dict_includes_field(self):
        """Should include field in dict representation."""
        result = ValidationError("payload", "Invalid base64").to_dict()
        assert result["error"]["code"] == "validation_error"
        assert result["error"]["field"] == "payload"


class TestNotFoundError:
    """Tests for NotFoundError."""

    def test_resource_info(self):
        """Should store resource type and ID."""
        error = NotFoundError("Response", "abc")
        assert error.resource_type == "Response"
        assert error.resource_id == "abc"
        assert error.message == "Response not found: abc"

    def test_to_dict_includes_resource(self):
        """Should include resource info in dict representation."""
        result = NotFoundError("Event", "123").to_dict()
        assert result["error"]["code"] == "not_found"
        assert result["error"]["resource_type"] == "Event"
        assert result["error"]["resource_id"] == "123"


class TestStorageErrors:
    """Tests for storage failures."""

    def test_unavailable_is_a_storage_error(self):
        """Workers catching StorageError should also stop on outages."""
        error = StoreUnavailableError("database is locked")
        assert isinstance(error, StorageError)
        assert error.code == "store_unavailable"

    def test_can_raise_and_catch_by_base(self):
        """Should be catchable as Hook0Error."""
        with pytest.raises(Hook0Error) as exc_info:
            raise StorageError("constraint failed")
        assert exc_info.value.code == "storage_error"
