"""Unit tests for the provider exception hierarchy and error classification."""

import pytest

from integrations.exceptions import (
    CursorInvalidError,
    ProviderAPIError,
    ProviderAuthError,
    ProviderConnectionError,
    ProviderDataError,
    ProviderError,
)
from integrations.provider_protocol import ErrorCategory
from services.account_eligibility import AccountValidationError
from services.sync_results import error_category_for


class TestExceptionHierarchy:
    @pytest.mark.parametrize(
        "exc",
        [
            ProviderAuthError("auth", provider_name="plaid", error_code="ITEM_LOGIN_REQUIRED"),
            ProviderConnectionError("timeout", provider_name="plaid"),
            ProviderAPIError("api", provider_name="coinbase", status_code=400),
            ProviderDataError("bad json", provider_name="coinbase"),
            CursorInvalidError("cursor", provider_name="plaid", status_code=400),
        ],
    )
    def test_caught_as_provider_error(self, exc):
        with pytest.raises(ProviderError):
            raise exc

    def test_cursor_invalid_is_api_error(self):
        assert issubclass(CursorInvalidError, ProviderAPIError)

    def test_auth_error_carries_code_and_provider(self):
        exc = ProviderAuthError("expired", provider_name="plaid", error_code="ITEM_LOGIN_REQUIRED")
        assert exc.error_code == "ITEM_LOGIN_REQUIRED"
        assert exc.provider_name == "plaid"
        assert str(exc) == "expired"

    def test_connection_error_retriable_by_default(self):
        assert ProviderConnectionError("timeout").retriable is True


class TestProviderAPIErrorRetriable:
    @pytest.mark.parametrize("status,retriable", [(429, True), (500, True), (503, True), (400, False), (401, False), (None, False)])
    def test_retriable_by_status(self, status, retriable):
        assert ProviderAPIError("error", status_code=status).retriable is retriable


class TestErrorCategory:
    @pytest.mark.parametrize(
        "exc,category",
        [
            (ProviderAuthError("auth"), ErrorCategory.AUTH),
            (ProviderAPIError("slow down", status_code=429), ErrorCategory.RATE_LIMIT),
            (ProviderAPIError("down", status_code=502), ErrorCategory.CONNECTION),
            (ProviderAPIError("bad request", status_code=400), ErrorCategory.UNKNOWN),
            (ProviderConnectionError("timeout"), ErrorCategory.CONNECTION),
            (ProviderDataError("bad json"), ErrorCategory.DATA),
            (AccountValidationError("acc-1", "Missing external account id"), ErrorCategory.VALIDATION),
            (RuntimeError("boom"), ErrorCategory.UNKNOWN),
        ],
    )
    def test_classification(self, exc, category):
        assert error_category_for(exc) is category
