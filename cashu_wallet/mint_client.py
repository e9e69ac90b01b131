"""
Cashu mint HTTP client.

Covers the small read/quote surface of the mint API the wallet needs itself:
- GET  /v1/info                     (mint validation for add-mint)
- POST /v1/mint/quote/bolt11        (issue a mint quote / Lightning invoice)
- GET  /v1/mint/quote/bolt11/{id}   (remote quote state)

Everything that needs blinded outputs or proofs goes through the engine.

Remote polling by the background watcher sits behind a per-mint circuit
breaker so an unreachable mint is skipped instead of retried every cycle.
"""

import json
import logging
import threading
import time
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from .database import MintQuote, QuoteState

logger = logging.getLogger("cashu-wallet.mint")

MINT_HTTP_TIMEOUT = 10


class MintHTTPError(RuntimeError):
    """A mint HTTP call failed or returned an unusable response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


# =============================================================================
# MINT CIRCUIT BREAKER
# =============================================================================

class MintCircuitState(Enum):
    """Mint circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class MintCircuitBreaker:
    """
    Per-mint circuit breaker.

    State transitions:
    - CLOSED -> OPEN: After max_failures consecutive failures
    - OPEN -> HALF_OPEN: After reset_timeout seconds
    - HALF_OPEN -> CLOSED: On a success
    - HALF_OPEN -> OPEN: On any failure
    """

    def __init__(self, mint_url: str, max_failures: int = 5,
                 reset_timeout: int = 60):
        self.mint_url = mint_url
        self.max_failures = max_failures
        self.reset_timeout = reset_timeout

        self._lock = threading.RLock()
        self._state = MintCircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time = 0.0

    @property
    def state(self) -> MintCircuitState:
        """Get current state, checking for automatic OPEN -> HALF_OPEN."""
        with self._lock:
            if self._state == MintCircuitState.OPEN:
                if time.monotonic() - self._last_failure_time >= self.reset_timeout:
                    self._state = MintCircuitState.HALF_OPEN
            return self._state

    def is_available(self) -> bool:
        return self.state != MintCircuitState.OPEN

    def record_success(self) -> None:
        with self._lock:
            self._failure_count = 0
            self._state = MintCircuitState.CLOSED

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.monotonic()
            if self._state == MintCircuitState.HALF_OPEN:
                self._state = MintCircuitState.OPEN
            elif self._failure_count >= self.max_failures:
                self._state = MintCircuitState.OPEN

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "mint_url": self.mint_url,
                "state": self.state.value,
                "failure_count": self._failure_count,
            }


# =============================================================================
# MINT CLIENT
# =============================================================================

def _error_detail(response: httpx.Response) -> str:
    """Best-effort extraction of the mint's error text (NUT-00 error body)."""
    try:
        body = response.json()
    except (json.JSONDecodeError, ValueError):
        return response.text.strip()[:300]
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or json.dumps(body))
    return json.dumps(body)


class MintClient:
    """Thin httpx wrapper for the mint endpoints used by the wallet."""

    def __init__(self, timeout: int = MINT_HTTP_TIMEOUT,
                 http_client: Optional[httpx.Client] = None):
        self.timeout = timeout
        self._client = http_client or httpx.Client(timeout=timeout)
        self._breakers: Dict[str, MintCircuitBreaker] = {}
        self._breakers_lock = threading.Lock()

    def close(self) -> None:
        self._client.close()

    def get_breaker(self, mint_url: str) -> MintCircuitBreaker:
        """Get or create circuit breaker for a mint URL."""
        with self._breakers_lock:
            if mint_url not in self._breakers:
                self._breakers[mint_url] = MintCircuitBreaker(mint_url)
            return self._breakers[mint_url]

    def _request(self, method: str, mint_url: str, path: str,
                 body: Optional[Dict] = None) -> Dict[str, Any]:
        url = mint_url.rstrip('/') + path
        logger.debug(f"{method} {url}")
        try:
            r = self._client.request(method, url, json=body)
        except httpx.HTTPError as e:
            raise MintHTTPError(f"mint request failed {url}: {e}") from e

        if r.status_code >= 400:
            raise MintHTTPError(
                f"mint returned {r.status_code} for {path}: {_error_detail(r)}",
                status_code=r.status_code,
            )
        try:
            return r.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise MintHTTPError(f"mint response from {path} was not valid JSON") from e

    def get_info(self, mint_url: str) -> Dict[str, Any]:
        return self._request("GET", mint_url, "/v1/info")

    def create_mint_quote(self, mint_url: str, amount: int, unit: str = "sat") -> MintQuote:
        """Ask the mint for a bolt11 invoice for `amount`."""
        if amount <= 0:
            raise ValueError("amount must be > 0")
        body = self._request("POST", mint_url, "/v1/mint/quote/bolt11",
                             {"amount": amount, "unit": unit})
        quote_id = body.get("quote")
        request = body.get("request")
        if not quote_id or not request:
            raise MintHTTPError(f"unexpected mint quote response: {json.dumps(body)}")
        return MintQuote(
            mint_url=mint_url,
            quote_id=quote_id,
            request=request,
            amount=int(body.get("amount") or amount),
            state=_parse_state(body),
            unit=body.get("unit") or unit,
            expiry=body.get("expiry"),
        )

    def get_mint_quote_state(self, mint_url: str, quote_id: str) -> QuoteState:
        """Remote state of a quote, guarded by the mint's circuit breaker."""
        breaker = self.get_breaker(mint_url)
        if not breaker.is_available():
            raise MintHTTPError(f"mint circuit open for {mint_url}")
        try:
            body = self._request("GET", mint_url, f"/v1/mint/quote/bolt11/{quote_id}")
        except MintHTTPError as e:
            # 4xx is an answer from a reachable mint
            if e.status_code is None or e.status_code >= 500:
                breaker.record_failure()
            raise
        breaker.record_success()
        return _parse_state(body)


def _parse_state(body: Dict[str, Any]) -> QuoteState:
    """Read quote state, accepting the older boolean `paid` field too."""
    state = str(body.get("state") or "").upper()
    if state in QuoteState.__members__:
        return QuoteState(state)
    if body.get("issued"):
        return QuoteState.ISSUED
    if body.get("paid"):
        return QuoteState.PAID
    return QuoteState.UNPAID
