"""Deferred-value expressions used to describe exploit payload slots.

An expression is built once, from binary metadata, and evaluated many times:
concretely against the emulated process (to add constraints to a state) and
textually when the exploit script is rendered, where the image base is only
known at exploitation time.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, List, Union

import claripy

from .errors import ExpressionError

# x86-64 stack slot width in bytes.
SLOT_SIZE = 8

_PACKERS = {1: "p8", 2: "p16", 4: "p32", 8: "p64"}


class BaseType(enum.Enum):
    """The symbolic base a :class:`BaseOffset` is relative to."""

    VAR = "var"  # resolved gadget variable
    SYM = "sym"  # dynamic symbol
    GOT = "got"  # GOT slot
    BSS = "bss"  # the target's .bss segment


@dataclass(frozen=True)
class ResolutionContext:
    """Runtime facts needed to evaluate base-relative expressions."""

    elf_base: int = 0


class Expr:
    """Common interface of every payload expression."""

    def to_bytes(self, ctx: ResolutionContext) -> bytes:
        raise NotImplementedError

    def to_bv(self, ctx: ResolutionContext) -> claripy.ast.BV:
        """Return the little-endian numeric value of this expression."""
        data = self.to_bytes(ctx)
        return claripy.BVV(int.from_bytes(data, "little"), len(data) * 8)

    def render(self) -> str:
        raise NotImplementedError

    def __len__(self) -> int:
        raise NotImplementedError


@dataclass(frozen=True)
class Constant(Expr):
    value: int
    width: int = SLOT_SIZE

    def __post_init__(self) -> None:
        if self.width not in _PACKERS:
            raise ValueError(f"unsupported constant width: {self.width}")

    def to_bytes(self, ctx: ResolutionContext) -> bytes:
        mask = (1 << (self.width * 8)) - 1
        return (self.value & mask).to_bytes(self.width, "little")

    def render(self) -> str:
        return f"{_PACKERS[self.width]}({self.value:#x})"

    def __len__(self) -> int:
        return self.width


@dataclass(frozen=True)
class ByteVector(Expr):
    data: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", bytes(self.data))

    def pad(self, length: int, fill: bytes = b"\x00", *, left: bool = False) -> "ByteVector":
        """Pad to ``length`` bytes with ``fill``; right padding unless ``left``."""
        if len(fill) != 1:
            raise ValueError("fill must be a single byte")
        if left:
            return ByteVector(self.data.rjust(length, fill))
        return ByteVector(self.data.ljust(length, fill))

    def to_bytes(self, ctx: ResolutionContext) -> bytes:
        return self.data

    def render(self) -> str:
        return repr(self.data)

    def __len__(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class BaseOffset(Expr):
    """An address ``<image base> + offset`` whose base is resolved at run time.

    The offset is computed from binary metadata when the node is created.
    """

    base: BaseType
    name: str
    offset: int
    width: int = SLOT_SIZE

    @classmethod
    def var(cls, elf: Any, name: str, address: int) -> "BaseOffset":
        return cls(BaseType.VAR, name, address - elf.address)

    @classmethod
    def sym(cls, elf: Any, name: str) -> "BaseOffset":
        try:
            address = elf.symbols[name]
        except KeyError:
            raise ExpressionError("symbol", name) from None
        return cls(BaseType.SYM, name, address - elf.address)

    @classmethod
    def got(cls, elf: Any, name: str) -> "BaseOffset":
        try:
            address = elf.got[name]
        except KeyError:
            raise ExpressionError("GOT entry", name) from None
        return cls(BaseType.GOT, name, address - elf.address)

    @classmethod
    def bss(cls, elf: Any) -> "BaseOffset":
        address = elf.bss()
        if not address:
            raise ExpressionError("section", ".bss")
        return cls(BaseType.BSS, ".bss", address - elf.address)

    def to_bytes(self, ctx: ResolutionContext) -> bytes:
        return (ctx.elf_base + self.offset).to_bytes(self.width, "little")

    def render(self) -> str:
        return f"{_PACKERS[self.width]}(elf_base + {self.offset:#x})"

    def __len__(self) -> int:
        return self.width


RopSubchain = List[Expr]
ExprLike = Union[Expr, int]


def as_expr(value: ExprLike) -> Expr:
    if isinstance(value, Expr):
        return value
    return Constant(int(value))


def subchain_bytes(subchain: RopSubchain, ctx: ResolutionContext) -> bytes:
    return b"".join(e.to_bytes(ctx) for e in subchain)


__all__ = [
    "BaseOffset",
    "BaseType",
    "ByteVector",
    "Constant",
    "Expr",
    "ExprLike",
    "ResolutionContext",
    "RopSubchain",
    "SLOT_SIZE",
    "as_expr",
    "subchain_bytes",
]
