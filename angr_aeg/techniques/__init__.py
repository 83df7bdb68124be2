"""Exploitation techniques: capability-checked ROP chain strategies."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Tuple, Type

from ..errors import ConfigError
from ..expr import RopSubchain

if TYPE_CHECKING:  # pragma: no cover
    from ..exploit import Exploit
    from ..session import ExploitSession


class Technique:
    """Base class of every technique.

    ``auxiliary`` techniques are building blocks for other techniques and are
    never picked on their own to produce the final chain.
    """

    name = "Technique"
    auxiliary = False
    depends_on: Tuple[str, ...] = ()

    def __init__(self, session: "ExploitSession"):
        self.session = session
        self.required_gadgets: List[Tuple[Any, str]] = []

    @property
    def exploit(self) -> "Exploit":
        return self.session.exploit

    def check_requirements(self) -> bool:
        return all(
            self.exploit.resolve_gadget(elf, asm) is not None
            for elf, asm in self.required_gadgets
        )

    def get_rop_subchains(self) -> List[RopSubchain]:
        raise NotImplementedError

    def __str__(self) -> str:
        return self.name


_TECHNIQUES: Dict[str, Type[Technique]] = {}


def register_technique(cls: Type[Technique]) -> Type[Technique]:
    _TECHNIQUES[cls.name] = cls
    return cls


def technique_class(name: str) -> Type[Technique]:
    try:
        return _TECHNIQUES[name]
    except KeyError:
        raise ConfigError(f"unknown technique: {name}") from None


def available_techniques() -> List[str]:
    return sorted(_TECHNIQUES)


from .ret2csu import Ret2csu  # noqa: E402
from .ret2syscall import Ret2syscall  # noqa: E402

__all__ = [
    "Ret2csu",
    "Ret2syscall",
    "Technique",
    "available_techniques",
    "register_technique",
    "technique_class",
]
