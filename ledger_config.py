"""
Configuration for the immune aggregation ledger.

Values come from environment variables with safe defaults:

- LEDGER_COOLDOWN_SECONDS: shared rate-limit window for providers and the owner
- LEDGER_SERVICE_IDENTITY: identity mixed into every state fingerprint
- LEDGER_PAILLIER_KEY_BITS: modulus size for the reference ciphertext backend
- LEDGER_LOG_DIR / LEDGER_LOG_LEVEL: log file directory and console level
- LEDGER_ORACLE_POLL_INTERVAL: how often the oracle worker polls its queue
"""

import os
from dataclasses import dataclass

DEFAULT_COOLDOWN_SECONDS = 60
DEFAULT_SERVICE_IDENTITY = "immune-aggregation-ledger"
DEFAULT_PAILLIER_KEY_BITS = 2048
MIN_PAILLIER_KEY_BITS = 256
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass
class LedgerConfig:
    """Runtime settings for a ledger service instance."""
    cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS
    service_identity: str = DEFAULT_SERVICE_IDENTITY
    paillier_key_bits: int = DEFAULT_PAILLIER_KEY_BITS
    log_dir: str = "logs"
    log_level: str = "INFO"
    oracle_poll_interval: float = 0.1

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise ValueError if any setting is out of range."""
        if self.cooldown_seconds < 0:
            raise ValueError("cooldown_seconds must be non-negative")
        if not self.service_identity:
            raise ValueError("service_identity must not be empty")
        if not self.log_dir:
            raise ValueError("log_dir must not be empty")
        if str(self.log_level).upper() not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        if self.paillier_key_bits < MIN_PAILLIER_KEY_BITS or self.paillier_key_bits % 2:
            raise ValueError(
                f"paillier_key_bits must be an even number >= {MIN_PAILLIER_KEY_BITS}"
            )
        if self.oracle_poll_interval <= 0:
            raise ValueError("oracle_poll_interval must be positive")

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """Build a configuration from LEDGER_* environment variables."""
        return cls(
            cooldown_seconds=_env_int("LEDGER_COOLDOWN_SECONDS", DEFAULT_COOLDOWN_SECONDS),
            service_identity=os.environ.get("LEDGER_SERVICE_IDENTITY", DEFAULT_SERVICE_IDENTITY),
            paillier_key_bits=_env_int("LEDGER_PAILLIER_KEY_BITS", DEFAULT_PAILLIER_KEY_BITS),
            log_dir=os.environ.get("LEDGER_LOG_DIR", "logs"),
            log_level=os.environ.get("LEDGER_LOG_LEVEL", "INFO").upper(),
            oracle_poll_interval=_env_float("LEDGER_ORACLE_POLL_INTERVAL", 0.1),
        )
