"""Exception types shared across the exploit generation pipeline."""

from __future__ import annotations


class AegError(RuntimeError):
    """Base class for errors raised by angr_aeg."""


class ConfigError(AegError, ValueError):
    """Raised when a configuration file or mapping is malformed."""


class ExpressionError(AegError, KeyError):
    """Raised when an expression references an identifier the binary lacks."""

    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        super().__init__(f"{kind} {name!r} not found in binary metadata")

    def __str__(self) -> str:
        return self.args[0]


class InvariantViolation(AegError, AssertionError):
    """Raised when a modelling assumption does not hold for the current state.

    Generation for the affected state must stop instead of emitting an
    incorrect exploit.
    """
