from __future__ import annotations

import json

import pytest
import requests

from market_ingest.alphavantage_client import AlphaVantageClient
from market_ingest.errors import FetchError, TransientFetchError


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None, text: str | None = None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


@pytest.fixture
def responses(monkeypatch):
    queue: list = []
    calls: list[dict] = []
    sleeps: list[float] = []

    def fake_get(url, params=None, timeout=None):
        calls.append({"url": url, "params": dict(params or {}), "timeout": timeout})
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    monkeypatch.setattr("market_ingest.alphavantage_client.requests.get", fake_get)
    monkeypatch.setattr("market_ingest.alphavantage_client.time.sleep", sleeps.append)
    return queue, calls, sleeps


def test_overview_sends_function_and_key(responses):
    queue, calls, _ = responses
    queue.append(FakeResponse(payload={"Symbol": "AAPL"}))
    client = AlphaVantageClient(api_key="secret", base_url="https://av.example.com/")

    assert client.overview("AAPL") == {"Symbol": "AAPL"}
    assert calls[0]["url"] == "https://av.example.com/query"
    assert calls[0]["params"] == {"function": "OVERVIEW", "symbol": "AAPL", "apikey": "secret"}


def test_csv_endpoints_request_csv(responses):
    queue, calls, _ = responses
    queue.append(FakeResponse(text="timestamp,open,high,low,close,volume\n"))
    client = AlphaVantageClient(api_key="secret")

    text = client.intraday("AAPL")
    assert text.startswith("timestamp")
    assert calls[0]["params"]["datatype"] == "csv"
    assert calls[0]["params"]["interval"] == "1min"


def test_throttle_notice_is_retried_then_succeeds(responses):
    queue, calls, sleeps = responses
    queue.extend(
        [
            FakeResponse(payload={"Note": "Thank you for using Alpha Vantage! Our standard API call frequency is..."}),
            FakeResponse(status_code=503, payload={}),
            FakeResponse(payload={"feed": []}),
        ]
    )
    client = AlphaVantageClient(backoff_base=1.0, backoff_cap=1.5)

    assert client.news_sentiment("AAPL") == {"feed": []}
    assert len(calls) == 3
    assert sleeps == [1.0, 1.5]
    assert calls[0]["params"]["apikey"] == "demo"


def test_transient_failure_outlives_retries(responses):
    queue, calls, sleeps = responses
    queue.extend([requests.ConnectionError("reset")] * 3)
    client = AlphaVantageClient(max_retries=2, backoff_base=0.5)

    with pytest.raises(TransientFetchError):
        client.daily("AAPL")
    assert len(calls) == 3
    assert sleeps == [0.5, 1.0]


def test_error_message_is_not_retried(responses):
    queue, calls, sleeps = responses
    queue.append(FakeResponse(payload={"Error Message": "Invalid API call."}))

    with pytest.raises(FetchError) as excinfo:
        AlphaVantageClient().overview("NOPE")
    assert not isinstance(excinfo.value, TransientFetchError)
    assert len(calls) == 1
    assert sleeps == []


def test_client_error_status_is_fatal(responses):
    queue, _, _ = responses
    queue.append(FakeResponse(status_code=403, payload={}))
    with pytest.raises(FetchError):
        AlphaVantageClient().top_gainers_losers()


def test_json_error_on_csv_endpoint(responses):
    queue, _, _ = responses
    queue.append(FakeResponse(text=json.dumps({"Information": "rate limit"}), payload=None))
    with pytest.raises(TransientFetchError):
        AlphaVantageClient(max_retries=0).symbol_search("AAPL")


def test_rate_limiter_is_consulted_per_attempt(responses):
    queue, _, _ = responses
    queue.extend([FakeResponse(status_code=429, payload={}), FakeResponse(payload={"ok": "1"})])

    class CountingLimiter:
        def __init__(self) -> None:
            self.calls = 0

        def acquire(self, timeout=None) -> bool:
            self.calls += 1
            return True

    limiter = CountingLimiter()
    AlphaVantageClient(rate_limiter=limiter).top_gainers_losers()
    assert limiter.calls == 2
