"""
Unit tests for the error framework.
"""

import pytest

from master_server.utils.errors import (
    AddressMismatchError,
    ErrorCategory,
    ErrorRecovery,
    IdentityMismatchError,
    InvalidInputError,
    MasterServerError,
    NetworkError,
    NotFoundError,
    OwnershipError,
    PortMismatchError,
    StoreUnavailableError,
    error_context,
    error_from_dict,
)


class TestErrorClasses:

    @pytest.mark.parametrize("error,code,status,retryable", [
        (InvalidInputError(field="name", value=None, constraint="required"), "INVALID_INPUT", 400, False),
        (NotFoundError(), "NOT_FOUND", 500, False),
        (PortMismatchError(), "PORT_MISMATCH", 400, False),
        (AddressMismatchError(), "ADDRESS_MISMATCH", 400, False),
        (IdentityMismatchError(), "IDENTITY_MISMATCH", 400, False),
        (StoreUnavailableError(), "STORE_UNAVAILABLE", 500, True),
    ])
    def test_http_mapping(self, error, code, status, retryable):
        assert error.code == code
        assert error.http_status == status
        assert error.is_retryable is retryable

    def test_mismatches_are_ownership_errors(self):
        for cls in (PortMismatchError, AddressMismatchError, IdentityMismatchError):
            assert issubclass(cls, OwnershipError)
            assert cls.category is ErrorCategory.OWNERSHIP

    def test_to_dict(self):
        error = NotFoundError()
        body = error.to_dict()["error"]

        assert body["code"] == "NOT_FOUND"
        assert body["message"] == "Server may not exist; register first"
        assert body["is_retryable"] is False
        assert body["suggestions"] == ["Register the server again with POST /server"]

    def test_validation_message_defaults_to_constraint(self):
        error = InvalidInputError(field="port", value="x", constraint="must be an integer")
        assert error.message == "Validation failed for field 'port': must be an integer"


class TestErrorFromDict:

    def test_rebuilds_matching_class(self):
        data = PortMismatchError("Port mismatch: registered port is not 7778").to_dict()

        error = error_from_dict(data)

        assert isinstance(error, PortMismatchError)
        assert error.message == "Port mismatch: registered port is not 7778"

    def test_validation_errors(self):
        data = InvalidInputError(field="name", value=None, constraint="c", message="bad name").to_dict()

        error = error_from_dict(data)

        assert isinstance(error, InvalidInputError)
        assert error.message == "bad name"

    def test_unknown_code(self):
        error = error_from_dict({"error": {"code": "SOMETHING_NEW", "message": "odd"}})
        assert type(error) is MasterServerError
        assert error.message == "odd"

    def test_generic_body(self):
        error = error_from_dict({"error": "Internal Server Error"})
        assert type(error) is MasterServerError
        assert error.message == "Internal Server Error"

    def test_no_body(self):
        error = error_from_dict(None, fallback_message="HTTP 502")
        assert error.message == "HTTP 502"


class TestErrorContext:

    def test_wraps_unexpected_errors(self):
        with pytest.raises(MasterServerError) as exc_info:
            with error_context("registry", "register", address="10.0.0.1"):
                raise RuntimeError("boom")

        error = exc_info.value
        assert error.message == MasterServerError.default_message
        assert isinstance(error.cause, RuntimeError)
        assert error.context.component == "registry"
        assert error.context.metadata == {"address": "10.0.0.1"}

    def test_passes_through_registry_errors(self):
        with pytest.raises(NotFoundError) as exc_info:
            with error_context("registry", "heartbeat", id="abc"):
                raise NotFoundError()

        assert exc_info.value.context.operation == "heartbeat"
        assert exc_info.value.context.metadata["id"] == "abc"

    def test_no_reraise(self):
        with error_context("registry", "reap", reraise=False):
            raise RuntimeError("ignored")


class TestExponentialBackoff:

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise StoreUnavailableError()
            return "ok"

        result = await ErrorRecovery.exponential_backoff(
            flaky, max_retries=3, base_delay=0.001, exceptions=(StoreUnavailableError,)
        )

        assert result == "ok"
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_gives_up(self):
        async def always_down():
            raise NetworkError("unreachable")

        with pytest.raises(NetworkError):
            await ErrorRecovery.exponential_backoff(
                always_down, max_retries=2, base_delay=0.001, exceptions=(NetworkError,)
            )

    @pytest.mark.asyncio
    async def test_non_retryable_errors_fail_fast(self):
        attempts = []

        async def wrong_port():
            attempts.append(1)
            raise PortMismatchError()

        with pytest.raises(PortMismatchError):
            await ErrorRecovery.exponential_backoff(wrong_port, max_retries=3, base_delay=0.001)
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_sync_callables(self):
        result = await ErrorRecovery.exponential_backoff(lambda: 42, base_delay=0.001)
        assert result == 42
