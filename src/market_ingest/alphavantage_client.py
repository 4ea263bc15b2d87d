"""Client for the Alpha Vantage query API."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping, MutableMapping

import requests

from .errors import FetchError, TransientFetchError
from .rate_limit import RateLimiter


logger = logging.getLogger(__name__)

# Keys the provider uses for throttling notices delivered with HTTP 200.
THROTTLE_KEYS = ("Note", "Information")
ERROR_KEY = "Error Message"


@dataclass(slots=True)
class AlphaVantageClient:
    api_key: str | None = None
    base_url: str = "https://www.alphavantage.co"
    timeout: float = 20.0
    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_cap: float = 30.0
    rate_limiter: RateLimiter | None = None

    def symbol_search(self, keywords: str) -> str:
        return self._call({"function": "SYMBOL_SEARCH", "keywords": keywords}, datatype="csv")

    def overview(self, symbol: str) -> MutableMapping[str, Any]:
        return self._call({"function": "OVERVIEW", "symbol": symbol})

    def intraday(self, symbol: str, interval: str = "1min", outputsize: str = "compact") -> str:
        params = {
            "function": "TIME_SERIES_INTRADAY",
            "symbol": symbol,
            "interval": interval,
            "outputsize": outputsize,
        }
        return self._call(params, datatype="csv")

    def daily(self, symbol: str, outputsize: str = "compact") -> MutableMapping[str, Any]:
        return self._call({"function": "TIME_SERIES_DAILY", "symbol": symbol, "outputsize": outputsize})

    def top_gainers_losers(self) -> MutableMapping[str, Any]:
        return self._call({"function": "TOP_GAINERS_LOSERS"})

    def news_sentiment(self, tickers: str, limit: int = 50) -> MutableMapping[str, Any]:
        return self._call({"function": "NEWS_SENTIMENT", "tickers": tickers, "limit": limit})

    def _check_payload(self, payload: Any, function: str) -> MutableMapping[str, Any]:
        if not isinstance(payload, MutableMapping):
            raise FetchError(f"Unexpected response structure from Alpha Vantage ({function})")
        for key in THROTTLE_KEYS:
            if key in payload:
                raise TransientFetchError(f"{function} throttled: {payload[key]}")
        if ERROR_KEY in payload:
            raise FetchError(f"{function} rejected: {payload[ERROR_KEY]}")
        return payload

    def _decode(self, response: requests.Response, function: str, datatype: str):
        if datatype == "csv":
            text = response.text
            # Errors and throttling notices arrive as JSON even for CSV requests.
            if text.lstrip().startswith("{"):
                try:
                    payload = json.loads(text)
                except ValueError as exc:
                    raise FetchError(f"Malformed response for {function}") from exc
                self._check_payload(payload, function)
                raise FetchError(f"Unexpected JSON response for {function}")
            return text
        try:
            payload = response.json()
        except ValueError as exc:
            raise FetchError(f"Malformed JSON response for {function}") from exc
        return self._check_payload(payload, function)

    def _call(self, params: Mapping[str, Any], *, datatype: str = "json"):
        function = str(params.get("function", ""))
        url = f"{self.base_url.rstrip('/')}/query"
        query = dict(params)
        query["apikey"] = self.api_key or "demo"
        if datatype == "csv":
            query["datatype"] = "csv"
        attempt = 0
        while True:
            if self.rate_limiter is not None:
                self.rate_limiter.acquire()
            try:
                response = requests.get(url, params=query, timeout=self.timeout)
                if response.status_code == 429 or response.status_code >= 500:
                    raise TransientFetchError(f"{function} returned HTTP {response.status_code}")
                response.raise_for_status()
                return self._decode(response, function, datatype)
            except TransientFetchError as exc:
                error = exc
            except (requests.Timeout, requests.ConnectionError) as exc:
                error = TransientFetchError(f"{function} request failed: {exc}")
            except requests.RequestException as exc:
                raise FetchError(f"{function} request failed: {exc}") from exc
            if attempt >= self.max_retries:
                raise error
            delay = min(self.backoff_base * (2**attempt), self.backoff_cap)
            logger.warning(
                "Alpha Vantage %s failed (retry %s), retrying in %ss: %s",
                function,
                attempt + 1,
                delay,
                error,
            )
            time.sleep(delay)
            attempt += 1


__all__ = ["AlphaVantageClient", "THROTTLE_KEYS"]
