"""
Background quote watcher.

Periodically walks open mint quotes (UNPAID/PAID), reads their remote state
from the mint and redeems the paid ones. It runs either as a daemon thread
next to an `invoice` wait loop or on its own via `cashu-wallet watch`, and
may race the wait loop for the same quote; the mint lets exactly one
redemption through and the loser sees an "already issued" error.
"""

import logging
import signal
import threading
from typing import Any, Dict, List, Optional

from .database import MintQuote, QuoteState, WalletDatabase
from .engine import SettlementEngine
from .mint_client import MintClient, MintHTTPError
from .reconcile import ReconcileReason, ReconciliationOutcome, reconcile_once

logger = logging.getLogger("cashu-wallet.watcher")

OPEN_STATES = (QuoteState.UNPAID, QuoteState.PAID)


class QuoteWatcher:
    """Redeems paid quotes independently of any foreground wait loop."""

    def __init__(self, database: WalletDatabase, engine: SettlementEngine,
                 mint_client: MintClient, interval: float = 10.0):
        self.database = database
        self.engine = engine
        self.mint_client = mint_client
        self.interval = interval

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _check_quote(self, quote: MintQuote) -> Optional[ReconciliationOutcome]:
        breaker = self.mint_client.get_breaker(quote.mint_url)
        if not breaker.is_available():
            logger.debug(f"skipping {quote.quote_id}, mint circuit open: {breaker.get_stats()}")
            return None

        try:
            remote = self.mint_client.get_mint_quote_state(quote.mint_url, quote.quote_id)
        except MintHTTPError as e:
            logger.debug(f"state poll failed for {quote.quote_id}: {e}")
            return None

        self.engine.sync_quote_state(quote, remote)
        # A quote paid before its expiry can still be minted after it
        if remote == QuoteState.UNPAID and quote.is_expired():
            self.engine.mark_error(quote, "quote expired unpaid")
            return None
        if remote != QuoteState.PAID:
            return None

        try:
            return reconcile_once(self.database, self.engine, quote.mint_url, quote.quote_id)
        except Exception as e:
            self.engine.mark_error(quote, str(e))
            return ReconciliationOutcome(False, ReconcileReason.FATAL, str(e), attempts=1)

    def poll_once(self) -> List[Dict[str, Any]]:
        """One pass over all open quotes. Returns what happened per quote."""
        results = []
        for quote in self.database.list_mint_quotes(states=OPEN_STATES):
            if self._stop.is_set():
                break
            outcome = self._check_quote(quote)
            if outcome is None:
                continue
            if outcome.succeeded:
                logger.info(f"Watcher resolved quote {quote.quote_id}: {outcome.reason.value}")
            results.append({
                "mint_url": quote.mint_url,
                "quote_id": quote.quote_id,
                "reason": outcome.reason.value,
                "detail": outcome.detail,
            })
        return results

    def _run(self) -> None:
        try:
            while not self._stop.is_set():
                try:
                    self.poll_once()
                except Exception as e:
                    logger.error(f"Watcher pass failed: {e}")
                self._stop.wait(self.interval)
        finally:
            # sqlite connections are per thread
            self.database.close()

    def start(self) -> None:
        """Run in a daemon thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="quote-watcher", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def run_forever(self) -> None:
        """Foreground mode for `watch`; stops on SIGINT/SIGTERM."""
        def _handle_signal(signum, frame):  # noqa: ARG001
            logger.info(f"Received signal {signum}, stopping watcher")
            self._stop.set()

        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)
        logger.info(f"Watching open mint quotes every {self.interval}s")
        self._run()
