"""Tests for core configuration, exceptions and sessions."""

from http import HTTPStatus
from uuid import UUID, uuid4

import pytest
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from practicegate.billing.store import SubscriptionStore
from practicegate.core.config import Settings, get_settings
from practicegate.core.database import get_session_context
from practicegate.core.exceptions import (
    ConflictError,
    CrossUserAccessError,
    ErrorCode,
    ExportLimitExceededError,
    InvalidTierError,
    PracticeGateException,
    ProviderUnavailableError,
    QuotaExceededError,
    get_http_status_for_exception,
)


def test_settings_defaults() -> None:
    """Test default settings values."""
    settings = Settings(_env_file=None)
    assert settings.app_name == "PracticeGate"
    assert settings.user_id_header == "X-User-ID"
    assert settings.lock_backend == "local"
    assert settings.export_daily_limit == 10


def test_get_settings_cached() -> None:
    """Test that settings are cached."""
    assert get_settings() is get_settings()


def test_production_requires_stripe_key() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, app_env="production", stripe_secret_key="")


def test_export_limit_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None, export_daily_limit=0)


def test_elevated_users_parsed() -> None:
    settings = Settings(
        _env_file=None,
        elevated_user_ids=["00000000-0000-4000-8000-000000000001"],
    )
    assert settings.elevated_users == frozenset({UUID("00000000-0000-4000-8000-000000000001")})


class TestExceptions:
    """Tests for the exception hierarchy."""

    def test_base_exception_defaults(self) -> None:
        exc = PracticeGateException()
        assert exc.error_code == ErrorCode.UNKNOWN_ERROR
        assert exc.http_status == HTTPStatus.INTERNAL_SERVER_ERROR
        assert str(exc) == "[PG1001] An unexpected error occurred"

    def test_to_dict(self) -> None:
        exc = ConflictError("Export is completed", current_state="completed")
        assert exc.to_dict() == {
            "error": {
                "code": "PG6000",
                "message": "Export is completed",
                "details": {"current_state": "completed"},
            }
        }

    def test_quota_exceeded_message(self) -> None:
        exc = QuotaExceededError(action_kind="conversation", used=5, quota=5, reason="quota_exceeded")
        assert exc.message == "Quota exceeded for conversation: 5/5"
        assert exc.http_status == HTTPStatus.TOO_MANY_REQUESTS
        assert exc.details["reason"] == "quota_exceeded"

    def test_export_limit_is_a_quota_error(self) -> None:
        exc = ExportLimitExceededError(action_kind="export", used=3, quota=3)
        assert isinstance(exc, QuotaExceededError)
        assert exc.error_code == ErrorCode.EXPORT_LIMIT_EXCEEDED

    def test_cross_user_is_forbidden(self) -> None:
        assert CrossUserAccessError().http_status == HTTPStatus.FORBIDDEN

    def test_invalid_tier_is_bad_request(self) -> None:
        exc = InvalidTierError("Unknown tier: platinum")
        assert exc.http_status == HTTPStatus.BAD_REQUEST
        assert exc.error_code == ErrorCode.INVALID_TIER

    def test_provider_unavailable_details(self) -> None:
        exc = ProviderUnavailableError(operation="create_customer", attempts=2)
        assert exc.details == {"operation": "create_customer", "attempts": 2}
        assert exc.user_message != exc.message

    def test_http_status_for_builtin_exceptions(self) -> None:
        assert get_http_status_for_exception(ValueError()) == HTTPStatus.BAD_REQUEST
        assert get_http_status_for_exception(TimeoutError()) == HTTPStatus.GATEWAY_TIMEOUT
        assert get_http_status_for_exception(KeyError()) == HTTPStatus.INTERNAL_SERVER_ERROR


class TestSessionContext:
    """Tests for the shared session scope."""

    @pytest.mark.asyncio
    async def test_commits_on_success(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        user_id = uuid4()
        async with get_session_context(session_factory) as session:
            await SubscriptionStore(session).set_tier(user_id, "solo")

        async with session_factory() as session:
            record = await SubscriptionStore(session).get(user_id)
        assert record.tier_id == "solo"

    @pytest.mark.asyncio
    async def test_rolls_back_on_error(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        user_id = uuid4()
        with pytest.raises(RuntimeError):
            async with get_session_context(session_factory) as session:
                await SubscriptionStore(session).set_tier(user_id, "solo")
                raise RuntimeError("boom")

        async with session_factory() as session:
            assert await SubscriptionStore(session).history(user_id) == []
