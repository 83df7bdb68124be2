from __future__ import annotations

import unittest
from dataclasses import dataclass, field
from typing import List

from angr_aeg.registry import ModuleState, ModuleStateArena
from angr_aeg.utils.state import STATE_KEY

from support import FakeState


@dataclass
class CounterState(ModuleState):
    hits: List[int] = field(default_factory=list)


class CounterModule:
    name = "Counter"

    def create_state(self) -> CounterState:
        return CounterState()


class ModuleStateArenaTests(unittest.TestCase):
    def setUp(self) -> None:
        self.arena = ModuleStateArena()
        self.module = CounterModule()

    def test_slot_created_once_per_state(self) -> None:
        state = FakeState()
        first = self.arena.get(state, self.module)
        first.hits.append(1)
        self.assertIs(self.arena.get(state, self.module), first)
        self.assertIn(STATE_KEY, state.globals)
        self.assertTrue(self.arena.has_state(state))

    def test_fork_clones_slots_for_each_child(self) -> None:
        parent = FakeState()
        self.arena.get(parent, self.module).hits.append(1)

        left, right = FakeState(), FakeState()
        left.globals = dict(parent.globals)
        right.globals = dict(parent.globals)
        self.arena.fork(parent, [left, right])

        self.arena.get(left, self.module).hits.append(2)
        self.assertEqual(self.arena.get(left, self.module).hits, [1, 2])
        self.assertEqual(self.arena.get(right, self.module).hits, [1])
        self.assertEqual(self.arena.get(parent, self.module).hits, [1])
        self.assertNotEqual(left.globals[STATE_KEY], right.globals[STATE_KEY])

    def test_discard_drops_slots(self) -> None:
        state = FakeState()
        self.arena.get(state, self.module)
        self.assertEqual(len(self.arena), 1)
        self.arena.discard(state)
        self.assertEqual(len(self.arena), 0)
        self.arena.discard(FakeState())
        self.assertEqual(len(self.arena), 0)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
