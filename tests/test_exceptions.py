"""Tests for the exception hierarchy."""
from notekeeper.exceptions import (
    AuthenticationRequiredError,
    ConnectivityError,
    ErrorCode,
    NotekeeperError,
    NotFoundError,
    RemoteNotConfiguredError,
    StorageError,
    SyncInProgressError,
    ValidationError,
)


class TestNotekeeperError:
    """Tests for the base error."""

    def test_str_with_details(self):
        error = NotFoundError("notes", 5)
        assert str(error) == "[ENTITY_NOT_FOUND] notes with ID '5' not found (kind=notes, id=5)"

    def test_str_without_details(self):
        assert str(NotekeeperError("boom")) == "[VALIDATION_FAILED] boom"

    def test_to_dict(self):
        data = ValidationError("bad", field="name", value="x" * 300).to_dict()
        assert data["error"] == "ValidationError"
        assert data["code"] == 7001
        assert data["code_name"] == "VALIDATION_FAILED"
        assert data["details"]["field"] == "name"
        assert len(data["details"]["value"]) == 100


class TestSubclasses:
    """Every error is a NotekeeperError with a stable code."""

    def test_hierarchy(self):
        errors = [
            ValidationError("x"),
            NotFoundError("tags", 1),
            StorageError("x"),
            ConnectivityError("x"),
            AuthenticationRequiredError(),
            RemoteNotConfiguredError(),
            SyncInProgressError(),
        ]
        assert all(isinstance(e, NotekeeperError) for e in errors)

    def test_connectivity_details(self):
        cause = OSError("network down")
        error = ConnectivityError(
            "unreachable",
            backend="webdav",
            operation="GET /x",
            code=ErrorCode.REMOTE_TIMEOUT,
            original_error=cause,
        )
        assert error.details == {
            "backend": "webdav",
            "operation": "GET /x",
            "original_error": "network down",
        }
        assert error.original_error is cause

    def test_precondition_messages(self):
        assert AuthenticationRequiredError().code == ErrorCode.AUTHENTICATION_REQUIRED
        assert "logged in" in AuthenticationRequiredError().message
        assert RemoteNotConfiguredError().message == "WebDAV must be configured first"

    def test_sync_in_progress(self):
        error = SyncInProgressError(mode="remote-api")
        assert error.code == ErrorCode.SYNC_IN_PROGRESS
        assert error.details == {"mode": "remote-api"}
