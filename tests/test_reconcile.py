"""
Tests for mint quote reconciliation.

Tests cover:
- classify_redeem_error against a fixed table of engine messages
- reconcile_once / check_quote decisions, including idempotence on ISSUED
- wait_for_quote polling, timeout and fatal propagation
- the background-watcher race where our redeem loses to a concurrent one
"""

from unittest.mock import MagicMock

import pytest

from cashu_wallet.database import MintQuote, QuoteState
from cashu_wallet.engine import EngineError
from cashu_wallet.reconcile import (
    ReconcileReason,
    RedeemErrorKind,
    check_quote,
    classify_redeem_error,
    reconcile_once,
    wait_for_quote,
)


MINT_URL = "https://mint.example.com"
QUOTE_ID = "quote-abc"


def _quote(state):
    return MintQuote(mint_url=MINT_URL, quote_id=QUOTE_ID, request="lnbc10u1test",
                     amount=1000, state=state)


class SequenceStore:
    """Quote store returning a scripted sequence of states (last one repeats)."""

    def __init__(self, *states):
        self.states = list(states)
        self.reads = 0

    def get_mint_quote(self, mint_url, quote_id):
        idx = min(self.reads, len(self.states) - 1)
        self.reads += 1
        state = self.states[idx]
        return None if state is None else _quote(state)


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def _engine(*side_effects):
    engine = MagicMock()
    if side_effects:
        engine.redeem_quote.side_effect = list(side_effects)
    return engine


# =============================================================================
# Classification
# =============================================================================

@pytest.mark.parametrize("message,expected", [
    ("Mint quote already issued.", RedeemErrorKind.DUPLICATE),
    ("Token already spent", RedeemErrorKind.DUPLICATE),
    ("Tokens already minted", RedeemErrorKind.DUPLICATE),
    ("ALREADY ISSUED", RedeemErrorKind.DUPLICATE),
    ("Quote not paid", RedeemErrorKind.PENDING),
    ("quote not paid", RedeemErrorKind.PENDING),
    ("quote state is UNPAID", RedeemErrorKind.PENDING),
    ("PENDING", RedeemErrorKind.PENDING),
    ("Mint quote already pending.", RedeemErrorKind.PENDING),
    ("Lightning invoice unpaid", RedeemErrorKind.PENDING),
    ("connection refused", RedeemErrorKind.FATAL),
    ("keyset not found", RedeemErrorKind.FATAL),
    ("", RedeemErrorKind.FATAL),
])
def test_classify_redeem_error_table(message, expected):
    assert classify_redeem_error(message) == expected


def test_duplicate_markers_win_over_pending_markers():
    assert classify_redeem_error("already issued (was pending)") == RedeemErrorKind.DUPLICATE


def test_classify_handles_none():
    assert classify_redeem_error(None) == RedeemErrorKind.FATAL


# =============================================================================
# Single attempt
# =============================================================================

def test_issued_quote_resolves_without_redeem():
    store = SequenceStore(QuoteState.ISSUED)
    engine = _engine()

    outcome = reconcile_once(store, engine, MINT_URL, QUOTE_ID)

    assert outcome.resolved is True
    assert outcome.reason == ReconcileReason.ALREADY_ISSUED
    engine.redeem_quote.assert_not_called()


def test_successful_redeem_is_just_redeemed():
    store = SequenceStore(QuoteState.PAID)
    engine = _engine()

    outcome = reconcile_once(store, engine, MINT_URL, QUOTE_ID)

    assert outcome.resolved is True
    assert outcome.reason == ReconcileReason.JUST_REDEEMED
    engine.redeem_quote.assert_called_once_with(MINT_URL, QUOTE_ID)


def test_duplicate_signal_with_issued_reread_is_success():
    store = SequenceStore(QuoteState.PAID, QuoteState.ISSUED)
    engine = _engine(EngineError("Mint quote already issued."))

    outcome = reconcile_once(store, engine, MINT_URL, QUOTE_ID)

    assert outcome.resolved is True
    assert outcome.reason == ReconcileReason.ALREADY_ISSUED
    assert store.reads == 2


def test_duplicate_signal_without_issued_reread_is_pending():
    store = SequenceStore(QuoteState.PAID, QuoteState.PAID)
    engine = _engine(EngineError("already spent"))

    outcome = reconcile_once(store, engine, MINT_URL, QUOTE_ID)

    assert outcome.resolved is False
    assert outcome.reason == ReconcileReason.STILL_PENDING
    assert "already spent" in outcome.detail


def test_duplicate_signal_with_missing_record_is_pending():
    store = SequenceStore(None)
    engine = _engine(EngineError("already issued"))

    outcome = reconcile_once(store, engine, MINT_URL, QUOTE_ID)
    assert outcome.reason == ReconcileReason.STILL_PENDING


def test_pending_signal_is_pending_not_fatal():
    store = SequenceStore(QuoteState.UNPAID)
    engine = _engine(EngineError("Quote not paid"))

    outcome = reconcile_once(store, engine, MINT_URL, QUOTE_ID)

    assert outcome.resolved is False
    assert outcome.reason == ReconcileReason.STILL_PENDING


def test_fatal_error_propagates_original_exception():
    store = SequenceStore(QuoteState.UNPAID)
    err = EngineError("keyset not found")
    engine = _engine(err)

    with pytest.raises(EngineError) as exc_info:
        reconcile_once(store, engine, MINT_URL, QUOTE_ID)
    assert exc_info.value is err


# =============================================================================
# Manual reconciliation
# =============================================================================

def test_check_quote_is_idempotent_on_issued_quote():
    store = SequenceStore(QuoteState.ISSUED)
    engine = _engine()

    for _ in range(5):
        outcome = check_quote(store, engine, MINT_URL, QUOTE_ID)
        assert outcome.reason == ReconcileReason.ALREADY_ISSUED
        assert outcome.attempts == 1
    engine.redeem_quote.assert_not_called()


def test_check_quote_makes_exactly_one_attempt_when_pending():
    store = SequenceStore(QuoteState.UNPAID)
    engine = _engine(EngineError("UNPAID"), EngineError("UNPAID"))

    outcome = check_quote(store, engine, MINT_URL, QUOTE_ID)

    assert outcome.reason == ReconcileReason.STILL_PENDING
    assert engine.redeem_quote.call_count == 1


def test_check_quote_propagates_fatal():
    store = SequenceStore(QuoteState.UNPAID)
    engine = _engine(RuntimeError("mint exploded"))

    with pytest.raises(RuntimeError, match="mint exploded"):
        check_quote(store, engine, MINT_URL, QUOTE_ID)


# =============================================================================
# Wait loop
# =============================================================================

def test_wait_returns_immediately_for_issued_quote():
    clock = FakeClock()
    store = SequenceStore(QuoteState.ISSUED)
    engine = _engine()

    outcome = wait_for_quote(store, engine, MINT_URL, QUOTE_ID,
                             timeout_ms=60000, poll_interval_ms=5000,
                             sleep=clock.sleep, clock=clock.clock)

    assert outcome.reason == ReconcileReason.ALREADY_ISSUED
    assert outcome.attempts == 1
    assert clock.sleeps == []
    engine.redeem_quote.assert_not_called()


def test_wait_times_out_after_two_attempts():
    clock = FakeClock()
    store = SequenceStore(QuoteState.UNPAID)
    engine = _engine()
    engine.redeem_quote.side_effect = EngineError("Quote not paid")

    outcome = wait_for_quote(store, engine, MINT_URL, QUOTE_ID,
                             timeout_ms=12000, poll_interval_ms=5000,
                             sleep=clock.sleep, clock=clock.clock)

    assert outcome.resolved is False
    assert outcome.reason == ReconcileReason.TIMED_OUT
    assert outcome.attempts == 2
    assert engine.redeem_quote.call_count == 2
    assert clock.sleeps == [5.0]


def test_wait_stops_on_first_fatal_error():
    clock = FakeClock()
    store = SequenceStore(QuoteState.UNPAID)
    engine = _engine(EngineError("Quote not paid"), EngineError("invalid signature"),
                     EngineError("Quote not paid"))

    with pytest.raises(EngineError, match="invalid signature"):
        wait_for_quote(store, engine, MINT_URL, QUOTE_ID,
                       timeout_ms=60000, poll_interval_ms=5000,
                       sleep=clock.sleep, clock=clock.clock)
    assert engine.redeem_quote.call_count == 2


def test_wait_redeems_once_payment_lands():
    clock = FakeClock()
    store = SequenceStore(QuoteState.UNPAID)
    engine = _engine(EngineError("Quote not paid"), EngineError("PENDING"), None)
    ticks = []

    outcome = wait_for_quote(store, engine, MINT_URL, QUOTE_ID,
                             timeout_ms=60000, poll_interval_ms=5000,
                             sleep=clock.sleep, clock=clock.clock,
                             on_pending=ticks.append)

    assert outcome.reason == ReconcileReason.JUST_REDEEMED
    assert outcome.attempts == 3
    assert len(ticks) == 2
    assert clock.sleeps == [5.0, 5.0]


def test_wait_respects_wall_clock_deadline():
    clock = FakeClock()
    store = SequenceStore(QuoteState.UNPAID)
    engine = MagicMock()

    def slow_redeem(mint_url, quote_id):
        clock.now += 20.0
        raise EngineError("not paid")

    engine.redeem_quote.side_effect = slow_redeem

    outcome = wait_for_quote(store, engine, MINT_URL, QUOTE_ID,
                             timeout_ms=30000, poll_interval_ms=5000,
                             sleep=clock.sleep, clock=clock.clock)

    assert outcome.reason == ReconcileReason.TIMED_OUT
    assert engine.redeem_quote.call_count == 2


def test_watcher_race_resolves_as_already_issued():
    """
    UNPAID -> PAID, first redeem says not paid; the watcher then redeems the
    quote, so our second redeem sees "already issued" and the re-read shows
    ISSUED.
    """
    clock = FakeClock()
    store = SequenceStore(
        QuoteState.UNPAID,   # iteration 1 pre-read
        QuoteState.PAID,     # iteration 2 pre-read
        QuoteState.ISSUED,   # re-read after duplicate signal
    )
    engine = _engine(EngineError("Quote not paid"), EngineError("already issued"))

    outcome = wait_for_quote(store, engine, MINT_URL, QUOTE_ID,
                             timeout_ms=300000, poll_interval_ms=5000,
                             sleep=clock.sleep, clock=clock.clock)

    assert outcome.resolved is True
    assert outcome.succeeded is True
    assert outcome.reason == ReconcileReason.ALREADY_ISSUED
    assert engine.redeem_quote.call_count == 2
