"""
Collector Configuration

All inputs are supplied externally (environment or CLI flags). Invalid
configuration raises ConfigError before any scheduling begins.
"""

import os
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

from ..core.addresses import (
    AddressDerivationError,
    ASSOCIATED_TOKEN_PROGRAM_ID,
    DEFAULT_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    to_bytes,
)

ENV_PREFIX = "SOLBILL_"
VALID_COMMITMENTS = ("processed", "confirmed", "finalized")


class ConfigError(ValueError):
    """Raised for missing or invalid configuration."""
    pass


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(f"{ENV_PREFIX}{name}")
    return value if value not in (None, "") else default


def _number(name: str, raw: Optional[str], cast, default):
    if raw is None:
        return default
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from e


@dataclass
class CollectorConfig:
    """Configuration for the settlement collector."""
    rpc_url: str = "http://127.0.0.1:8899"
    program_id: str = DEFAULT_PROGRAM_ID
    token_program_id: str = TOKEN_PROGRAM_ID
    associated_token_program_id: str = ASSOCIATED_TOKEN_PROGRAM_ID
    commitment: str = "confirmed"

    poll_interval: float = 15.0  # seconds between ticks
    max_concurrency: int = 8  # parallel settlement attempts per tick
    confirm_timeout: float = 30.0  # seconds to wait for inclusion
    rpc_timeout: float = 10.0

    keypair_path: Optional[str] = None
    keypair_secret: Optional[str] = field(default=None, repr=False)
    keystore_path: Optional[str] = None
    keystore_passphrase: Optional[str] = field(default=None, repr=False)

    def validate(self, require_identity: bool = True) -> "CollectorConfig":
        if not self.rpc_url.startswith(("http://", "https://")):
            raise ConfigError(f"rpc_url must be an http(s) URL, got {self.rpc_url!r}")
        for name in ("program_id", "token_program_id", "associated_token_program_id"):
            try:
                to_bytes(getattr(self, name))
            except AddressDerivationError as e:
                raise ConfigError(f"{name} is not a valid address: {e}") from e
        if self.commitment not in VALID_COMMITMENTS:
            raise ConfigError(f"commitment must be one of {VALID_COMMITMENTS}")
        if self.poll_interval <= 0:
            raise ConfigError("poll_interval must be positive")
        if self.max_concurrency < 1:
            raise ConfigError("max_concurrency must be at least 1")
        if self.confirm_timeout <= 0 or self.rpc_timeout <= 0:
            raise ConfigError("timeouts must be positive")
        if require_identity and not (self.keypair_path or self.keypair_secret or self.keystore_path):
            raise ConfigError(
                "A signing identity is required: set SOLBILL_KEYPAIR_PATH, "
                "SOLBILL_KEYPAIR or SOLBILL_KEYSTORE_PATH"
            )
        return self

    @classmethod
    def from_env(cls) -> "CollectorConfig":
        """Build configuration from SOLBILL_* environment variables."""
        defaults = cls()
        return cls(
            rpc_url=_env("RPC_URL", defaults.rpc_url),
            program_id=_env("PROGRAM_ID", defaults.program_id),
            token_program_id=_env("TOKEN_PROGRAM_ID", defaults.token_program_id),
            associated_token_program_id=_env(
                "ASSOCIATED_TOKEN_PROGRAM_ID", defaults.associated_token_program_id
            ),
            commitment=_env("COMMITMENT", defaults.commitment),
            poll_interval=_number("POLL_INTERVAL", _env("POLL_INTERVAL"), float, defaults.poll_interval),
            max_concurrency=_number("MAX_CONCURRENCY", _env("MAX_CONCURRENCY"), int, defaults.max_concurrency),
            confirm_timeout=_number("CONFIRM_TIMEOUT", _env("CONFIRM_TIMEOUT"), float, defaults.confirm_timeout),
            rpc_timeout=_number("RPC_TIMEOUT", _env("RPC_TIMEOUT"), float, defaults.rpc_timeout),
            keypair_path=_env("KEYPAIR_PATH"),
            keypair_secret=_env("KEYPAIR"),
            keystore_path=_env("KEYSTORE_PATH"),
            keystore_passphrase=_env("KEYSTORE_PASSPHRASE"),
        )

    def with_overrides(self, overrides: Dict[str, Any]) -> "CollectorConfig":
        """Apply non-None overrides (e.g. parsed CLI flags)."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})
