"""Per-state module data, kept in an arena keyed by execution state."""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Optional

from .utils.state import STATE_KEY, rekey_state, state_key

if TYPE_CHECKING:  # pragma: no cover
    from .modules import Module

logger = logging.getLogger(__name__)


class ModuleState:
    """State-local data a module attaches to each explored state."""

    def clone(self) -> "ModuleState":
        return copy.deepcopy(self)


class ModuleStateArena:
    """Owns every module's data for every live state.

    Slots are never shared between states: a fork clones the parent's slots
    for each child, and discarding a state drops its slots.
    """

    def __init__(self) -> None:
        self._slots: Dict[str, Dict[str, ModuleState]] = {}

    def get(
        self,
        state: Any,
        module: "Module",
        factory: Optional[Callable[[], ModuleState]] = None,
    ) -> ModuleState:
        slots = self._slots.setdefault(state_key(state), {})
        if module.name not in slots:
            slots[module.name] = (factory or module.create_state)()
        return slots[module.name]

    def has_state(self, state: Any) -> bool:
        return state_key(state) in self._slots

    def fork(self, parent: Any, children: Iterable[Any]) -> None:
        """Clone ``parent``'s slots into freshly keyed ``children``."""

        parent_slots = self._slots.get(state_key(parent), {})
        for child in children:
            if child is parent:
                continue
            key = rekey_state(child)
            self._slots[key] = {name: data.clone() for name, data in parent_slots.items()}

    def discard(self, state: Any) -> None:
        key = state.globals.get(STATE_KEY)
        if key is not None and self._slots.pop(key, None) is not None:
            logger.debug("Dropped module data of %s", key)

    def __len__(self) -> int:
        return len(self._slots)

    def reset(self) -> None:
        """Drop every slot. Intended for testing."""
        self._slots.clear()


__all__ = ["ModuleState", "ModuleStateArena"]
