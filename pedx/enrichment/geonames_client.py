# =========================================
# 📄 File: pedx/enrichment/geonames_client.py
# Purpose: Minimal GeoNames search client (requests.Session) with retry/backoff
#          on 429/5xx and a fixed inter-request delay
# =========================================

import time
import logging
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse, parse_qsl, urlencode, urlunparse

import requests

from pedx.errors import ExternalServiceError
from pedx.etl.city_registry import PLACEHOLDER

log = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 60


def redact_url(url: str) -> str:
    """Hide the account name in logged URLs."""
    parsed = urlparse(url)
    query_pairs = dict(parse_qsl(parsed.query))
    if "username" in query_pairs:
        query_pairs["username"] = "***"
    return urlunparse(parsed._replace(query=urlencode(query_pairs)))


def build_query(city: str, state: Optional[str] = None, country: Optional[str] = None) -> str:
    """City name plus any known state/country, ignoring blanks and the placeholder."""
    terms = [city.strip()]
    for part in (state, country):
        if part and part.strip() and part.strip() != PLACEHOLDER:
            terms.append(part.strip())
    return " ".join(terms)


class RateLimiter:
    """Blocks until `interval` seconds have passed since the previous call."""

    def __init__(self, interval: float, sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self.sleep = sleep
        self.clock = clock
        self._last: Optional[float] = None

    def wait(self) -> float:
        waited = 0.0
        if self._last is not None and self.interval > 0:
            remaining = self.interval - (self.clock() - self._last)
            if remaining > 0:
                self.sleep(remaining)
                waited = remaining
        self._last = self.clock()
        return waited


class GeoNamesClient:
    """
    Wraps `GET {base_url}/searchJSON`.

    Retry policy:
      - 429 (honours a numeric Retry-After), 5xx and connection errors are retried
        up to `max_retries` times, backoff 1s, 2s, 4s ... capped at 60s
      - timeouts are not retried (a stuck service should surface, not be hammered)
      - any other non-200 and GeoNames `status` payloads raise ExternalServiceError
    """

    def __init__(self, username: str, base_url: str = "http://api.geonames.org",
                 max_rows: int = 10, timeout_seconds: float = 10, max_retries: int = 3,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.username = username
        self.base_url = base_url.rstrip("/")
        self.max_rows = max_rows
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json", "User-Agent": "pedx-ingest/1.0"})
        self.sleep = sleep

    @classmethod
    def from_config(cls, geonames_cfg: Dict[str, Any], **kwargs) -> "GeoNamesClient":
        return cls(
            username=geonames_cfg["username"],
            base_url=geonames_cfg.get("base_url", "http://api.geonames.org"),
            max_rows=int(geonames_cfg.get("max_rows", 10)),
            timeout_seconds=float(geonames_cfg.get("timeout_seconds", 10)),
            max_retries=int(geonames_cfg.get("max_retries", 3)),
            **kwargs,
        )

    def _backoff(self, attempt: int) -> float:
        return min(2 ** (attempt - 1), MAX_BACKOFF_SECONDS)

    def _get(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        last_err = ""
        for attempt in range(1, self.max_retries + 2):
            delay = self._backoff(attempt)
            try:
                response = self.session.get(url, params=params, timeout=self.timeout_seconds)
            except requests.exceptions.Timeout as e:
                raise ExternalServiceError(f"GeoNames request timed out after {self.timeout_seconds}s") from e
            except requests.exceptions.ConnectionError as e:
                last_err = f"connection error: {e}"
                log.warning(f"GeoNames attempt {attempt}: {last_err}")
            except requests.exceptions.RequestException as e:
                raise ExternalServiceError(f"GeoNames request failed: {e}") from e
            else:
                status = response.status_code
                log.debug(f"GeoNames attempt {attempt}: {redact_url(response.url)} -> {status}")
                if status == 200:
                    try:
                        return response.json()
                    except ValueError as e:
                        raise ExternalServiceError("GeoNames returned malformed JSON", status) from e
                if status == 429:
                    retry_after = response.headers.get("Retry-After")
                    if retry_after and retry_after.isdigit():
                        delay = int(retry_after)
                    last_err = "HTTP 429: too many requests"
                elif status >= 500:
                    last_err = f"HTTP {status}: {response.reason}"
                else:
                    raise ExternalServiceError(f"HTTP {status}: {response.reason}", status)
                log.warning(f"GeoNames attempt {attempt}: {last_err}")

            if attempt <= self.max_retries:
                log.info(f"⏳ Retrying GeoNames in {delay}s")
                self.sleep(delay)
        raise ExternalServiceError(f"GeoNames retries exhausted ({last_err})")

    def search(self, city: str, state: Optional[str] = None,
               country: Optional[str] = None) -> List[Dict[str, Any]]:
        """Raw candidates in service order (the service ranks by relevance)."""
        query = build_query(city, state, country)
        log.info(f"🔍 Searching GeoNames for: {query}")
        params = {"q": query, "maxRows": self.max_rows, "username": self.username}
        data = self._get(f"{self.base_url}/searchJSON", params)

        # GeoNames reports account/limit problems as HTTP 200 + {"status": {...}}
        if "status" in data:
            status = data["status"] or {}
            raise ExternalServiceError(
                f"GeoNames error {status.get('value')}: {status.get('message')}"
            )
        return list(data.get("geonames") or [])

    def close(self) -> None:
        self.session.close()
