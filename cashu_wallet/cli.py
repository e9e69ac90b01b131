#!/usr/bin/env python3
"""
Cashu Wallet CLI

Usage:
  cashu-wallet balance
  cashu-wallet add-mint <url>
  cashu-wallet mints
  cashu-wallet history [limit] [offset]
  cashu-wallet restore <mint-url>
  cashu-wallet invoice [amount] [mint-url] [timeout-ms]
  cashu-wallet check-invoice <quote-id> [mint-url]
  cashu-wallet pay-invoice <bolt11> [mint-url]
  cashu-wallet send <amount> [mint-url]
  cashu-wallet receive <token>
  cashu-wallet watch [--interval SECONDS]

`invoice` waits for payment and mints the tokens. If it times out, the quote
can be finished later with `check-invoice`; a background watcher (in-process
during `invoice`, or `watch` as a daemon) may also redeem it on its own.

Exit status: 0 on success or timeout, 1 on error or missing arguments.
"""

import argparse
import datetime
import logging
import sys
from typing import Optional

import httpx

from .config import WalletConfig, ensure_wallet_dir
from .database import WalletDatabase
from .engine import EngineConfig, EngineError, SettlementEngine
from .mint_client import MintClient, MintHTTPError
from .reconcile import ReconciliationOutcome, check_quote, wait_for_quote
from .watcher import QuoteWatcher

logger = logging.getLogger("cashu-wallet")


class Wallet:
    """Wires config, database, mint client and engine together."""

    def __init__(self, config: WalletConfig):
        self.config = config
        ensure_wallet_dir(config)
        self.database = WalletDatabase(str(config.db_path))
        self.mint_client = MintClient(timeout=config.mint_http_timeout_seconds)
        self.engine = SettlementEngine(
            self.database,
            self.mint_client,
            EngineConfig(
                binary=config.engine_binary,
                timeout_seconds=config.engine_timeout_seconds,
                data_dir=str(config.engine_dir),
                unit=config.unit,
                extra_env=dict(config.engine_env),
            ),
        )

    def watcher(self, interval: Optional[float] = None) -> QuoteWatcher:
        return QuoteWatcher(
            self.database, self.engine, self.mint_client,
            interval=interval if interval is not None else self.config.watch_interval_seconds,
        )

    def resolve_mint(self, mint_url: Optional[str]) -> Optional[str]:
        return mint_url or self.database.get_default_mint()

    def close(self) -> None:
        self.mint_client.close()
        self.database.close()


def _parse_int(value: Optional[str], default: Optional[int] = None) -> Optional[int]:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _no_mint() -> int:
    print("No mint found. Add a mint first with: cashu-wallet add-mint <url>", file=sys.stderr)
    return 1


# =============================================================================
# Commands
# =============================================================================

def cmd_balance(wallet: Wallet, args) -> int:
    mints = wallet.database.get_mints()
    print("Balances:")
    total = 0
    for m in mints:
        result = wallet.engine.get_balance(m["mint_url"])
        if result["balance"] is None:
            print(f"  {m['mint_url']}: {result['output']}")
        else:
            print(f"  {m['mint_url']}: {result['balance']} {wallet.config.unit}")
            total += result["balance"]
    print(f"\nTotal: {total} {wallet.config.unit}")
    return 0


def cmd_add_mint(wallet: Wallet, args) -> int:
    if not args.url:
        print("Usage: cashu-wallet add-mint <mint-url>", file=sys.stderr)
        return 1
    info = wallet.mint_client.get_info(args.url)
    wallet.database.add_mint(args.url, trusted=True)
    name = info.get("name") or ""
    print(f"Added and trusted mint: {args.url}" + (f" ({name})" if name else ""))
    return 0


def cmd_mints(wallet: Wallet, args) -> int:
    print("Mints:")
    for m in wallet.database.get_mints():
        print(f"  {m['mint_url']} (trusted: {str(m['trusted']).lower()})")
    return 0


def cmd_history(wallet: Wallet, args) -> int:
    limit = _parse_int(args.limit, 20)
    offset = _parse_int(args.offset, 0)
    entries = wallet.database.get_history(limit=limit, offset=offset)
    if not entries:
        print("No history found.")
        return 0

    print(f"History ({len(entries)} items):")
    for h in entries:
        date = datetime.datetime.fromtimestamp(h["created_at"]).strftime("%Y-%m-%d %H:%M:%S")
        amount = f"+{h['amount']}" if h["amount"] > 0 else f"{h['amount']}"
        id_info = f" Quote: {h['quote_id']}" if h.get("quote_id") else ""
        print(f"  [{date}] {h['kind'].upper()} {amount} {wallet.config.unit} "
              f"(Mint: {h['mint_url'] or '-'}) - {h['state'] or 'COMPLETED'}{id_info}")
    return 0


def cmd_restore(wallet: Wallet, args) -> int:
    if not args.mint_url:
        print("Usage: cashu-wallet restore <mint-url>", file=sys.stderr)
        return 1
    print(f"Restoring wallet from mint: {args.mint_url}...")
    wallet.engine.restore(args.mint_url)
    print("Restore completed successfully.")
    return 0


def _report(outcome: ReconciliationOutcome, quote_id: str, mint_url: str) -> int:
    if outcome.succeeded:
        print("Invoice paid! Tokens minted.")
    else:
        print(f"Payment timeout. Check later with: cashu-wallet check-invoice {quote_id} {mint_url}")
    return 0


def cmd_invoice(wallet: Wallet, args) -> int:
    amount = _parse_int(args.amount, wallet.config.default_amount)
    if not amount or amount <= 0:
        amount = wallet.config.default_amount
    timeout_ms = _parse_int(args.timeout_ms, wallet.config.invoice_timeout_ms)
    if not timeout_ms or timeout_ms <= 0:
        timeout_ms = wallet.config.invoice_timeout_ms

    mint_url = wallet.resolve_mint(args.mint_url)
    if not mint_url:
        return _no_mint()

    quote = wallet.engine.create_quote(mint_url, amount)
    print("Lightning Invoice:")
    print(quote.request)
    print(f"\nQuote ID: {quote.quote_id}")
    print(f"Amount: {quote.amount} {quote.unit}")
    print(f"Mint: {mint_url}")
    print(f"\nWaiting for payment (timeout: {timeout_ms / 1000:g}s)...")

    watcher = None
    if not args.no_watcher:
        watcher = wallet.watcher()
        watcher.start()

    def _tick(outcome):
        sys.stdout.write(".")
        sys.stdout.flush()

    try:
        outcome = wait_for_quote(
            wallet.database, wallet.engine, mint_url, quote.quote_id,
            timeout_ms=timeout_ms,
            poll_interval_ms=wallet.config.poll_interval_ms,
            on_pending=_tick,
        )
    finally:
        if watcher is not None:
            watcher.stop()

    print()
    logger.info(f"Quote {quote.quote_id} finished after {outcome.attempts} attempt(s): {outcome.reason.value}")
    return _report(outcome, quote.quote_id, mint_url)


def cmd_check_invoice(wallet: Wallet, args) -> int:
    if not args.quote_id:
        print("Usage: cashu-wallet check-invoice <quote-id> [mint-url]", file=sys.stderr)
        return 1
    mint_url = wallet.resolve_mint(args.mint_url)
    if not mint_url:
        return _no_mint()

    try:
        outcome = check_quote(wallet.database, wallet.engine, mint_url, args.quote_id)
    except (EngineError, MintHTTPError) as e:
        print(f"Error redeeming quote: {e}", file=sys.stderr)
        return 1

    if outcome.succeeded:
        print("Invoice paid! Tokens minted.")
    else:
        print("Invoice not paid yet (PENDING).")
    return 0


def cmd_pay_invoice(wallet: Wallet, args) -> int:
    if not args.bolt11:
        print("Usage: cashu-wallet pay-invoice <bolt11-invoice> [mint-url]", file=sys.stderr)
        return 1
    mint_url = wallet.resolve_mint(args.mint_url)
    if not mint_url:
        return _no_mint()

    print(f"Paying invoice via mint: {mint_url}")
    output = wallet.engine.pay_invoice(mint_url, args.bolt11)
    if output:
        print(output)
    print("Payment successful!")
    return 0


def cmd_send(wallet: Wallet, args) -> int:
    amount = _parse_int(args.amount)
    if not amount or amount <= 0:
        print("Usage: cashu-wallet send <amount> [mint-url]", file=sys.stderr)
        return 1
    mint_url = wallet.resolve_mint(args.mint_url)
    if not mint_url:
        return _no_mint()

    print(wallet.engine.send(mint_url, amount))
    return 0


def cmd_receive(wallet: Wallet, args) -> int:
    if not args.token:
        print("Usage: cashu-wallet receive <cashu-token>", file=sys.stderr)
        return 1
    wallet.engine.receive(args.token)
    print("Token received successfully")
    return 0


def cmd_watch(wallet: Wallet, args) -> int:
    wallet.watcher(interval=args.interval).run_forever()
    return 0


COMMANDS = {
    "balance": cmd_balance,
    "add-mint": cmd_add_mint,
    "mints": cmd_mints,
    "history": cmd_history,
    "restore": cmd_restore,
    "invoice": cmd_invoice,
    "check-invoice": cmd_check_invoice,
    "pay-invoice": cmd_pay_invoice,
    "send": cmd_send,
    "receive": cmd_receive,
    "watch": cmd_watch,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cashu-wallet",
        description="Cashu Wallet CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s add-mint https://mint.example.com
  %(prog)s invoice 1000                       # 1000 sat, default mint, 5 min
  %(prog)s invoice 500 https://mint.example.com 60000
  %(prog)s check-invoice <quote-id>
""",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("balance", help="Show wallet balance")

    p = subparsers.add_parser("add-mint", help="Add and trust a mint")
    p.add_argument("url", nargs="?")

    subparsers.add_parser("mints", help="List all mints")

    p = subparsers.add_parser("history", help="Show transaction history")
    p.add_argument("limit", nargs="?")
    p.add_argument("offset", nargs="?")

    p = subparsers.add_parser("restore", help="Restore wallet from seed for a mint")
    p.add_argument("mint_url", nargs="?")

    p = subparsers.add_parser("invoice", help="Create a Lightning invoice and wait for payment")
    p.add_argument("amount", nargs="?")
    p.add_argument("mint_url", nargs="?")
    p.add_argument("timeout_ms", nargs="?")
    p.add_argument("--no-watcher", action="store_true",
                   help="Do not run the background watcher while waiting")

    p = subparsers.add_parser("check-invoice", help="Check an invoice and mint tokens if paid")
    p.add_argument("quote_id", nargs="?")
    p.add_argument("mint_url", nargs="?")

    p = subparsers.add_parser("pay-invoice", help="Pay a Lightning invoice")
    p.add_argument("bolt11", nargs="?")
    p.add_argument("mint_url", nargs="?")

    p = subparsers.add_parser("send", help="Generate a cashu token")
    p.add_argument("amount", nargs="?")
    p.add_argument("mint_url", nargs="?")

    p = subparsers.add_parser("receive", help="Receive a cashu token")
    p.add_argument("token", nargs="?")

    p = subparsers.add_parser("watch", help="Redeem paid quotes in the background")
    p.add_argument("--interval", "-i", type=float, default=None,
                   help="Poll interval in seconds (default: CASHU_WATCH_INTERVAL or 10)")

    return parser


def main(argv=None, config: Optional[WalletConfig] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 0

    wallet = Wallet(config or WalletConfig.from_env())
    try:
        return handler(wallet, args)
    except (EngineError, MintHTTPError, httpx.HTTPError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        wallet.close()


if __name__ == "__main__":
    sys.exit(main())
