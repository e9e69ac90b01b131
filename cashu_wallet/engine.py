"""
Settlement engine integration for cashu-wallet.

Wraps the local `cashu` wallet binary for everything that needs proofs,
blinded outputs or keysets:
- redeem a paid mint quote:  `invoice <amount> --id <quote>`
- balance / send / receive / pay (melt) / restore

Quote issuance goes straight to the mint over HTTP (see mint_client) and is
recorded in the wallet database. The engine is the only writer of quote
state besides the background watcher; the reconciliation loop only reads it.
"""

import logging
import os
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .database import MintQuote, QuoteState, WalletDatabase
from .mint_client import MintClient

logger = logging.getLogger("cashu-wallet.engine")

TOKEN_RE = re.compile(r"\bcashu[AB][A-Za-z0-9_\-+/=]+")
BALANCE_RE = re.compile(r"Balance:\s*(\d+)")
ERROR_LINE_RE = re.compile(r"^\s*(?:Error|Exception)\b[:\s]*(.*)$", re.IGNORECASE | re.MULTILINE)


class EngineError(RuntimeError):
    """An engine command failed. str() is the engine's own message."""

    def __init__(self, message: str, command: Optional[List[str]] = None,
                 exit_code: Optional[int] = None):
        super().__init__(message)
        self.command = command or []
        self.exit_code = exit_code


@dataclass
class EngineConfig:
    """Configuration for engine invocation."""
    binary: str = "cashu"
    timeout_seconds: int = 60
    data_dir: str = ""
    unit: str = "sat"
    extra_env: Dict[str, str] = field(default_factory=dict)


@dataclass
class RedeemResult:
    mint_url: str
    quote_id: str
    amount: int
    output: str = ""


class SettlementEngine:
    """Drives the external ecash engine and owns quote state transitions."""

    def __init__(self, database: WalletDatabase, mint_client: MintClient,
                 config: Optional[EngineConfig] = None):
        self.database = database
        self.mint_client = mint_client
        self.config = config or EngineConfig()

    def _base_command(self, mint_url: Optional[str] = None) -> List[str]:
        cmd: List[str] = [self.config.binary]
        if mint_url:
            cmd.extend(["--host", mint_url])
        if self.config.unit:
            cmd.extend(["--unit", self.config.unit])
        return cmd

    def _env(self) -> Dict[str, str]:
        env = dict(os.environ)
        if self.config.data_dir:
            Path(self.config.data_dir).mkdir(parents=True, exist_ok=True)
            env["CASHU_DIR"] = self.config.data_dir
        env.update(self.config.extra_env)
        return env

    def _run_command(self, args: List[str], mint_url: Optional[str] = None,
                     capture: bool = True) -> Dict[str, Any]:
        cmd = self._base_command(mint_url) + args
        logger.debug(f"engine: {' '.join(cmd)}")

        try:
            proc = subprocess.run(
                cmd,
                capture_output=capture,
                text=True,
                timeout=max(5, int(self.config.timeout_seconds)),
                check=False,
                env=self._env(),
            )
        except FileNotFoundError:
            return {
                "ok": False,
                "error": f"engine binary not found: {self.config.binary}",
                "command": cmd,
            }
        except subprocess.TimeoutExpired:
            return {
                "ok": False,
                "error": f"engine command timed out after {self.config.timeout_seconds}s",
                "command": cmd,
            }

        stdout = (proc.stdout or "").strip()
        stderr = (proc.stderr or "").strip()
        if proc.returncode != 0:
            return {
                "ok": False,
                "error": stderr or stdout or f"engine exited with code {proc.returncode}",
                "command": cmd,
                "exit_code": proc.returncode,
                "stdout": stdout,
                "stderr": stderr,
            }

        # The engine reports some failures on a zero exit code
        m = ERROR_LINE_RE.search(stdout) or ERROR_LINE_RE.search(stderr)
        if m:
            return {
                "ok": False,
                "error": m.group(1).strip() or m.group(0).strip(),
                "command": cmd,
                "exit_code": proc.returncode,
                "stdout": stdout,
                "stderr": stderr,
            }

        return {
            "ok": True,
            "command": cmd,
            "exit_code": proc.returncode,
            "stdout": stdout,
            "stderr": stderr,
        }

    def _run_checked(self, args: List[str], mint_url: Optional[str] = None,
                     capture: bool = True) -> str:
        result = self._run_command(args, mint_url=mint_url, capture=capture)
        if not result["ok"]:
            raise EngineError(result["error"], command=result.get("command"),
                              exit_code=result.get("exit_code"))
        return result.get("stdout", "")

    # =========================================================================
    # Mint quotes
    # =========================================================================

    def create_quote(self, mint_url: str, amount: int) -> MintQuote:
        """Issue a mint quote at the mint and record it as UNPAID."""
        quote = self.mint_client.create_mint_quote(mint_url, amount, unit=self.config.unit)
        self.database.store_mint_quote(quote)
        logger.info(f"Created mint quote {quote.quote_id} for {quote.amount} {quote.unit} at {mint_url}")
        return quote

    def get_quote_state(self, mint_url: str, quote_id: str) -> Optional[MintQuote]:
        return self.database.get_mint_quote(mint_url, quote_id)

    def redeem_quote(self, mint_url: str, quote_id: str) -> RedeemResult:
        """
        Mint tokens for a paid quote.

        Raises EngineError with the engine's message on failure; callers
        classify that message. On success the quote becomes ISSUED.
        """
        quote = self.database.get_mint_quote(mint_url, quote_id)
        if quote is None:
            raise EngineError(f"unknown mint quote {quote_id} for {mint_url}")

        output = self._run_checked(
            ["invoice", str(quote.amount), "--id", quote_id],
            mint_url=mint_url,
        )
        self.mark_issued(quote)
        return RedeemResult(mint_url=mint_url, quote_id=quote_id,
                            amount=quote.amount, output=output)

    def mark_issued(self, quote: MintQuote) -> bool:
        """Record a quote as ISSUED; history is written once per quote."""
        changed = self.database.update_mint_quote_state(
            quote.mint_url, quote.quote_id, QuoteState.ISSUED,
            expected_states=(QuoteState.UNPAID, QuoteState.PAID, QuoteState.ERROR),
        )
        if changed:
            self.database.add_history(
                "mint", quote.mint_url, quote.amount,
                state=QuoteState.ISSUED.value, quote_id=quote.quote_id,
            )
            logger.info(f"Mint quote {quote.quote_id} issued ({quote.amount} {quote.unit})")
        return changed

    def sync_quote_state(self, quote: MintQuote, remote_state: QuoteState) -> bool:
        """Apply a remote state read to the local record (forward moves only)."""
        if remote_state == QuoteState.ISSUED:
            return self.mark_issued(quote)
        if remote_state == QuoteState.PAID:
            return self.database.update_mint_quote_state(
                quote.mint_url, quote.quote_id, QuoteState.PAID,
                expected_states=(QuoteState.UNPAID,),
            )
        return False

    def mark_error(self, quote: MintQuote, reason: str = "") -> bool:
        changed = self.database.update_mint_quote_state(
            quote.mint_url, quote.quote_id, QuoteState.ERROR,
            expected_states=(QuoteState.UNPAID, QuoteState.PAID),
        )
        if changed:
            logger.warning(f"Mint quote {quote.quote_id} marked ERROR: {reason}")
        return changed

    # =========================================================================
    # Wallet pass-through
    # =========================================================================

    def get_balance(self, mint_url: str) -> Dict[str, Any]:
        output = self._run_checked(["balance"], mint_url=mint_url)
        m = BALANCE_RE.search(output)
        return {
            "mint_url": mint_url,
            "balance": int(m.group(1)) if m else None,
            "output": output,
        }

    def send(self, mint_url: str, amount: int) -> str:
        """Create a token worth `amount`; returns the encoded token."""
        if amount <= 0:
            raise ValueError("amount must be > 0")
        output = self._run_checked(["send", str(amount)], mint_url=mint_url)
        m = TOKEN_RE.search(output)
        if not m:
            raise EngineError(f"engine did not return a token: {output[:200]}")
        self.database.add_history("send", mint_url, -amount)
        return m.group(0)

    def receive(self, token: str) -> str:
        output = self._run_checked(["receive", token])
        self.database.add_history("receive", None, 0, detail=token[:40])
        return output

    def pay_invoice(self, mint_url: str, bolt11: str) -> str:
        output = self._run_checked(["pay", bolt11, "--yes"], mint_url=mint_url)
        self.database.add_history("melt", mint_url, 0, detail=bolt11[:40])
        return output

    def restore(self, mint_url: str) -> None:
        """Interactive: the engine prompts for its mnemonic on the terminal."""
        self._run_checked(["restore"], mint_url=mint_url, capture=False)
