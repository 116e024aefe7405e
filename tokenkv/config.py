"""
Configuration module for TokenKV.

Environment variables provide process-wide defaults. Each store resolves
an immutable StoreConfig once; per-call changes are expressed as a
StoreOverrides value and merged explicitly.
"""

import os
from dataclasses import dataclass, field, fields, replace
from typing import Optional, Tuple

from .errors import ConfigurationError

# ============================================================
# Environment Configuration
# ============================================================

DEFAULT_BASKET = os.getenv("TOKENKV_BASKET", "kvstore-default")
DEFAULT_PROTOCOL = os.getenv("TOKENKV_PROTOCOL", "")
DEFAULT_SECURITY_LEVEL = int(os.getenv("TOKENKV_SECURITY_LEVEL", "2"))
DEFAULT_TOKEN_AMOUNT = int(os.getenv("TOKENKV_TOKEN_AMOUNT", "1"))
DEFAULT_ENCRYPT = os.getenv("TOKENKV_ENCRYPT", "1").lower() in ("1", "true", "yes")
DEFAULT_TOPICS = tuple(
    t.strip() for t in os.getenv("TOKENKV_TOPICS", "kvstore").split(",") if t.strip()
)
DEFAULT_MAX_HISTORY_DEPTH = int(os.getenv("TOKENKV_MAX_HISTORY_DEPTH", "512"))

# Shared mode
DIRECTORY_HOST = os.getenv("TOKENKV_DIRECTORY_HOST", "http://localhost:8080")
DIRECTORY_RPM = int(os.getenv("TOKENKV_DIRECTORY_RPM", "600"))

# Keys
IDENTITY_KEY_PATH = os.getenv("TOKENKV_IDENTITY_KEY_PATH", "")

# Logging
LOG_LEVEL = os.getenv("TOKENKV_LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("TOKENKV_LOG_JSON", "1").lower() in ("1", "true", "yes")

SELF = "self"
ANYONE = "anyone"


@dataclass(frozen=True)
class StoreOverrides:
    """Per-call overrides. None means keep the configured value."""
    counterparty: Optional[str] = None
    move_to_self: Optional[bool] = None
    move_from_self: Optional[bool] = None
    token_amount: Optional[int] = None
    encrypt: Optional[bool] = None
    topics: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class StoreConfig:
    """Resolved configuration for one store instance."""
    basket: str = DEFAULT_BASKET
    protocol: str = DEFAULT_PROTOCOL
    security_level: int = DEFAULT_SECURITY_LEVEL
    token_amount: int = DEFAULT_TOKEN_AMOUNT
    encrypt: bool = DEFAULT_ENCRYPT
    counterparty: str = SELF
    move_to_self: bool = False
    move_from_self: bool = False
    topics: Tuple[str, ...] = field(default_factory=lambda: DEFAULT_TOPICS)
    max_history_depth: int = DEFAULT_MAX_HISTORY_DEPTH

    def __post_init__(self):
        self.validate()

    @classmethod
    def from_env(cls, **kwargs) -> "StoreConfig":
        """Build a config from environment defaults plus explicit keyword values."""
        return cls(**kwargs)

    def validate(self) -> None:
        if not self.basket:
            raise ConfigurationError("A context in which to operate is required.")
        if self.move_to_self and self.move_from_self:
            raise ConfigurationError(
                "move_from_self and move_to_self cannot both be true at the same time."
            )
        if self.token_amount <= 0:
            raise ConfigurationError("token_amount must be positive")
        if self.security_level not in (0, 1, 2):
            raise ConfigurationError("security_level must be 0, 1 or 2")
        if not self.counterparty:
            raise ConfigurationError("counterparty cannot be empty")
        if self.max_history_depth < 1:
            raise ConfigurationError("max_history_depth must be at least 1")

    def merged(self, overrides: Optional[StoreOverrides]) -> "StoreConfig":
        """Return a new validated config with the non-None overrides applied."""
        if overrides is None:
            return self
        changes = {
            f.name: getattr(overrides, f.name)
            for f in fields(overrides)
            if getattr(overrides, f.name) is not None
        }
        if not changes:
            return self
        return replace(self, **changes)

    # Derived values

    @property
    def protocol_id(self) -> Tuple[int, str]:
        return (self.security_level, self.protocol or self.basket)

    @property
    def lock_counterparty(self) -> str:
        return SELF if self.move_to_self else self.counterparty

    @property
    def unlock_counterparty(self) -> str:
        return SELF if self.move_from_self else self.counterparty

    @property
    def lookup_counterparty(self) -> str:
        return SELF if self.move_from_self else self.counterparty


def invoice_number(protocol_id: Tuple[int, str], key_id: str) -> str:
    """Key-derivation string for a protocol and key: "<level>-<protocol>-<key>"."""
    level, name = protocol_id
    return f"{level}-{name}-{key_id}"
