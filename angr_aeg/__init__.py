"""Leak-aware automatic exploit generation on top of angr."""

from .config import AegConfig
from .errors import AegError, ConfigError, ExpressionError, InvariantViolation
from .exploit import Exploit
from .expr import BaseOffset, BaseType, ByteVector, Constant, Expr, ResolutionContext
from .session import ExploitSession, HijackOutcome

__all__ = [
    "AegConfig",
    "AegError",
    "BaseOffset",
    "BaseType",
    "ByteVector",
    "ConfigError",
    "Constant",
    "Exploit",
    "ExploitSession",
    "Expr",
    "ExpressionError",
    "HijackOutcome",
    "InvariantViolation",
    "ResolutionContext",
]
