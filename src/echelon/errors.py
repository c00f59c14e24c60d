"""Exception hierarchy shared by every Echelon service."""

from __future__ import annotations

from typing import Any

RATE_LIMIT_MARKERS = ("429", "rate limit", "too many requests")


class EchelonError(Exception):
    """Base class for all Echelon errors."""


class ConfigError(EchelonError):
    """Invalid or missing configuration detected at startup."""


class TransientError(EchelonError):
    """Network or RPC failure that is safe to retry."""


class RateLimitError(TransientError):
    """Upstream rejected the call because of a rate limit."""


class ValidationError(EchelonError, ValueError):
    """A single input item is malformed (unknown agent, bad payload, ...)."""


class DataIntegrityError(EchelonError):
    """Stored state contradicts an incoming event or request."""


class RedemptionError(EchelonError):
    """A delegation cannot be redeemed by the caller right now."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"{key}: {reason}")
        self.key = key
        self.reason = reason


class AuthorizationError(EchelonError):
    """The configured identity may not write to a contract it needs."""


class SettlementError(EchelonError):
    """A settlement leg failed; earlier legs are already on-chain."""

    def __init__(self, message: str, completed_legs: list[Any]) -> None:
        super().__init__(message)
        self.completed_legs = completed_legs


def is_rate_limit_error(exc: BaseException) -> bool:
    """True when ``exc`` looks like an upstream rate-limit rejection."""
    if isinstance(exc, RateLimitError):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


class TransactionReverted(EchelonError):
    """The chain accepted the transaction but execution reverted."""
