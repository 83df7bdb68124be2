"""Modules observe execution events and keep per-state data."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Type

from ..errors import ConfigError
from ..registry import ModuleState

if TYPE_CHECKING:  # pragma: no cover
    from ..session import ExploitSession


class Module:
    name = "Module"

    def __init__(self, session: "ExploitSession"):
        self.session = session

    def create_state(self) -> ModuleState:
        return ModuleState()

    def get_state(self, state: Any) -> Any:
        return self.session.get_module_state(state, self)

    def __str__(self) -> str:
        return self.name


_MODULES: Dict[str, Type[Module]] = {}


def register_module(cls: Type[Module]) -> Type[Module]:
    _MODULES[cls.name] = cls
    return cls


def create_module(session: "ExploitSession", name: str) -> Module:
    try:
        cls = _MODULES[name]
    except KeyError:
        raise ConfigError(f"unknown module: {name}") from None
    return cls(session)


def available_modules() -> List[str]:
    return sorted(_MODULES)


from .dynamic_rop import DynamicRop  # noqa: E402
from .io_states import IOStates  # noqa: E402

__all__ = [
    "DynamicRop",
    "IOStates",
    "Module",
    "available_modules",
    "create_module",
    "register_module",
]
