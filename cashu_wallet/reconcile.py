"""
Mint quote reconciliation: wait for an invoice to be paid and redeemed.

Two entry points share one decision function (reconcile_once):
- wait_for_quote: poll until redeemed, fatal error, or timeout
- check_quote:    a single attempt, for `check-invoice` after a timeout or
                  a restart

A background watcher may redeem the same quote at any moment. No lock is
taken against it: an "already issued" answer from the engine is success once
the quote store confirms ISSUED. The engine only reports failures as text, so
classify_redeem_error is the one place that text is interpreted.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .database import QuoteState

logger = logging.getLogger("cashu-wallet.reconcile")

DUPLICATE_MARKERS = ("already issued", "already spent", "already minted")
PENDING_MARKERS = ("pending", "not paid", "unpaid")


class RedeemErrorKind(Enum):
    """What a failed redeem means for the caller."""
    PENDING = "pending"
    DUPLICATE = "duplicate"
    FATAL = "fatal"


class ReconcileReason(Enum):
    ALREADY_ISSUED = "already_issued"
    JUST_REDEEMED = "just_redeemed"
    STILL_PENDING = "still_pending"
    FATAL = "fatal"
    TIMED_OUT = "timed_out"


@dataclass
class ReconciliationOutcome:
    resolved: bool
    reason: ReconcileReason
    detail: str = ""
    attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return self.reason in (ReconcileReason.ALREADY_ISSUED, ReconcileReason.JUST_REDEEMED)


def classify_redeem_error(message: str) -> RedeemErrorKind:
    """
    Map an engine error message onto a recovery action.

    Case-insensitive substring match. Duplicate markers win over pending
    markers; anything unrecognised is fatal.
    """
    text = (message or "").lower()
    if any(marker in text for marker in DUPLICATE_MARKERS):
        return RedeemErrorKind.DUPLICATE
    if any(marker in text for marker in PENDING_MARKERS):
        return RedeemErrorKind.PENDING
    return RedeemErrorKind.FATAL


def _is_issued(store, mint_url: str, quote_id: str) -> bool:
    quote = store.get_mint_quote(mint_url, quote_id)
    return quote is not None and quote.state == QuoteState.ISSUED


def reconcile_once(store, engine, mint_url: str, quote_id: str) -> ReconciliationOutcome:
    """
    One resolution attempt for a quote.

    Returns ALREADY_ISSUED, JUST_REDEEMED or STILL_PENDING. A fatal engine
    error is re-raised unchanged.
    """
    if _is_issued(store, mint_url, quote_id):
        return ReconciliationOutcome(True, ReconcileReason.ALREADY_ISSUED,
                                     "quote already issued")

    try:
        engine.redeem_quote(mint_url, quote_id)
    except Exception as e:
        message = str(e)
        kind = classify_redeem_error(message)
        if kind == RedeemErrorKind.DUPLICATE:
            if _is_issued(store, mint_url, quote_id):
                logger.info(f"Quote {quote_id} was redeemed concurrently")
                return ReconciliationOutcome(True, ReconcileReason.ALREADY_ISSUED, message)
            logger.debug(f"Duplicate signal for {quote_id} but store not ISSUED yet: {message}")
            return ReconciliationOutcome(False, ReconcileReason.STILL_PENDING, message)
        if kind == RedeemErrorKind.PENDING:
            return ReconciliationOutcome(False, ReconcileReason.STILL_PENDING, message)
        raise

    return ReconciliationOutcome(True, ReconcileReason.JUST_REDEEMED, "tokens minted")


def check_quote(store, engine, mint_url: str, quote_id: str) -> ReconciliationOutcome:
    """Manual reconciliation: exactly one attempt, no sleeping."""
    outcome = reconcile_once(store, engine, mint_url, quote_id)
    outcome.attempts = 1
    return outcome


def wait_for_quote(store, engine, mint_url: str, quote_id: str,
                   timeout_ms: int, poll_interval_ms: int,
                   sleep: Optional[Callable[[float], None]] = None,
                   clock: Optional[Callable[[], float]] = None,
                   on_pending: Optional[Callable[[ReconciliationOutcome], None]] = None,
                   ) -> ReconciliationOutcome:
    """
    Poll a quote until it is issued, a fatal error occurs, or time runs out.

    At most timeout_ms // poll_interval_ms attempts are made (at least one),
    poll_interval_ms apart, and never past the deadline. Running out of time
    returns TIMED_OUT; it is not an error.
    """
    sleep = sleep or time.sleep
    clock = clock or time.monotonic
    interval_ms = max(1, int(poll_interval_ms))
    max_attempts = max(1, int(timeout_ms) // interval_ms)
    deadline = clock() + max(0, int(timeout_ms)) / 1000.0

    attempts = 0
    last: Optional[ReconciliationOutcome] = None
    while attempts < max_attempts:
        if attempts and clock() >= deadline:
            break
        attempts += 1
        last = reconcile_once(store, engine, mint_url, quote_id)
        last.attempts = attempts
        if last.resolved:
            return last

        logger.debug(f"Quote {quote_id} still pending (attempt {attempts}/{max_attempts}): {last.detail}")
        if on_pending is not None:
            on_pending(last)
        if attempts < max_attempts:
            sleep(interval_ms / 1000.0)

    return ReconciliationOutcome(
        False, ReconcileReason.TIMED_OUT,
        last.detail if last else "", attempts=attempts,
    )
