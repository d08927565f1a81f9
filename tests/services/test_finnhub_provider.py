# tests/services/test_finnhub_provider.py
"""
Tests for the FinnhubFxProvider.

HTTP calls go through an httpx.MockTransport, so no network is used.
"""

from decimal import Decimal

import httpx
import pytest

from portfolio_engine.services.exceptions import FXProviderError
from portfolio_engine.services.market_data.finnhub import FinnhubFxProvider


def make_provider(handler, attempts: int = 1) -> FinnhubFxProvider:
    provider = FinnhubFxProvider(
        api_key="test-key",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )
    provider.MAX_RETRY_ATTEMPTS = attempts
    provider.RETRY_MIN_WAIT = 0
    provider.RETRY_MAX_WAIT = 0
    provider.RETRY_MULTIPLIER = 0
    return provider


def json_handler(payload: dict, status_code: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=payload)
    return handler


class TestInit:
    def test_api_key_required(self):
        with pytest.raises(ValueError, match="API key is required"):
            FinnhubFxProvider(api_key="")

    def test_name(self):
        assert FinnhubFxProvider(api_key="k").name == "finnhub"


class TestGetRates:
    """Tests for get_rates with mocked HTTP responses."""

    def test_successful_fetch(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"base": "EUR", "quote": {"USD": 1.0842, "GBP": 0.8571, "JPY": 160.1}})

        rates = make_provider(handler).get_rates("eur", ("USD", "GBP"))

        assert rates == {"USD": Decimal("1.0842"), "GBP": Decimal("0.8571")}
        assert seen[0].url.params["base"] == "EUR"
        assert seen[0].url.params["token"] == "test-key"

    def test_missing_and_invalid_rates_skipped(self):
        provider = make_provider(json_handler({"quote": {"USD": 1.08, "GBP": "n/a", "CHF": 0}}))

        assert provider.get_rates("EUR", ("USD", "GBP", "CHF", "SEK")) == {"USD": Decimal("1.08")}

    def test_no_requested_rates_raises(self):
        provider = make_provider(json_handler({"quote": {}}))

        with pytest.raises(FXProviderError):
            provider.get_rates("EUR", ("USD",))

    @pytest.mark.parametrize("status_code", [429, 503])
    def test_retryable_status_becomes_fx_error(self, status_code):
        provider = make_provider(json_handler({}, status_code=status_code))

        with pytest.raises(FXProviderError) as exc_info:
            provider.get_rates("EUR", ("USD",))

        assert exc_info.value.provider == "finnhub"

    def test_client_error_not_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(401, text="Invalid API key")

        with pytest.raises(FXProviderError):
            make_provider(handler, attempts=3).get_rates("EUR", ("USD",))

        assert len(calls) == 1

    def test_server_error_retried_then_succeeds(self):
        responses = iter([
            httpx.Response(502),
            httpx.Response(200, json={"quote": {"USD": 1.09}}),
        ])

        provider = make_provider(lambda request: next(responses), attempts=3)

        assert provider.get_rates("EUR", ("USD",)) == {"USD": Decimal("1.09")}

    def test_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(FXProviderError):
            make_provider(handler).get_rates("EUR", ("USD",))

    def test_invalid_json(self):
        provider = make_provider(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(FXProviderError, match="Invalid JSON"):
            provider.get_rates("EUR", ("USD",))
