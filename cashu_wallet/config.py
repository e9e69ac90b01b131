"""
Wallet configuration.

Values come from environment variables with sane defaults, so the CLI works
out of the box with a single local wallet directory:

  CASHU_WALLET_DIR          wallet directory (default: ~/.cashu-wallet)
  CASHU_WALLET_DB           quote/history database (default: <dir>/wallet.db)
  CASHU_BINARY              ecash engine binary (default: cashu)
  CASHU_ENGINE_TIMEOUT      seconds per engine command (default: 60)
  CASHU_MINT_HTTP_TIMEOUT   seconds per mint HTTP call (default: 10)
  CASHU_POLL_INTERVAL_MS    invoice poll interval (default: 5000)
  CASHU_INVOICE_TIMEOUT_MS  invoice wait timeout (default: 300000)
  CASHU_DEFAULT_AMOUNT      invoice amount when none given (default: 1000)
  CASHU_WATCH_INTERVAL      background watcher interval seconds (default: 10)
  CASHU_UNIT                currency unit (default: sat)
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger("cashu-wallet.config")

DEFAULT_WALLET_DIR = Path.home() / ".cashu-wallet"
LEGACY_WALLET_DIR = Path.home() / ".coco-wallet"

DEFAULT_POLL_INTERVAL_MS = 5000
DEFAULT_INVOICE_TIMEOUT_MS = 300_000
DEFAULT_AMOUNT = 1000


def _env_int(env: Dict[str, str], name: str, default: int) -> int:
    raw = env.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}, using {default}")
        return default


@dataclass
class WalletConfig:
    """Configuration shared by the CLI, engine and watcher."""
    wallet_dir: Path = DEFAULT_WALLET_DIR
    legacy_dir: Optional[Path] = LEGACY_WALLET_DIR
    db_path: Optional[Path] = None
    engine_binary: str = "cashu"
    engine_timeout_seconds: int = 60
    mint_http_timeout_seconds: int = 10
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    invoice_timeout_ms: int = DEFAULT_INVOICE_TIMEOUT_MS
    default_amount: int = DEFAULT_AMOUNT
    watch_interval_seconds: int = 10
    unit: str = "sat"
    engine_env: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.wallet_dir = Path(self.wallet_dir)
        if self.db_path is None:
            self.db_path = self.wallet_dir / "wallet.db"
        else:
            self.db_path = Path(self.db_path)

    @property
    def engine_dir(self) -> Path:
        """Data directory handed to the engine process."""
        return self.wallet_dir / "engine"

    @classmethod
    def from_env(cls, env: Optional[Dict[str, str]] = None) -> "WalletConfig":
        env = os.environ if env is None else env
        wallet_dir = Path(env.get("CASHU_WALLET_DIR") or DEFAULT_WALLET_DIR).expanduser()
        db_path = env.get("CASHU_WALLET_DB") or None
        return cls(
            wallet_dir=wallet_dir,
            db_path=Path(db_path).expanduser() if db_path else None,
            engine_binary=env.get("CASHU_BINARY") or "cashu",
            engine_timeout_seconds=_env_int(env, "CASHU_ENGINE_TIMEOUT", 60),
            mint_http_timeout_seconds=_env_int(env, "CASHU_MINT_HTTP_TIMEOUT", 10),
            poll_interval_ms=_env_int(env, "CASHU_POLL_INTERVAL_MS", DEFAULT_POLL_INTERVAL_MS),
            invoice_timeout_ms=_env_int(env, "CASHU_INVOICE_TIMEOUT_MS", DEFAULT_INVOICE_TIMEOUT_MS),
            default_amount=_env_int(env, "CASHU_DEFAULT_AMOUNT", DEFAULT_AMOUNT),
            watch_interval_seconds=_env_int(env, "CASHU_WATCH_INTERVAL", 10),
            unit=(env.get("CASHU_UNIT") or "sat").strip().lower(),
        )


def ensure_wallet_dir(config: WalletConfig) -> Path:
    """
    Make sure the wallet directory exists.

    A wallet left in the legacy directory is moved over when the new
    directory does not exist yet.
    """
    wallet_dir = config.wallet_dir
    legacy = config.legacy_dir
    if legacy is not None and not wallet_dir.exists() and Path(legacy).exists():
        try:
            Path(legacy).rename(wallet_dir)
            logger.info(f"Migrated data from {legacy} to {wallet_dir}")
        except OSError as e:
            logger.error(f"Migration from {legacy} failed: {e}")

    wallet_dir.mkdir(parents=True, exist_ok=True)
    return wallet_dir
