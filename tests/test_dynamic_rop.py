from __future__ import annotations

import unittest

import claripy

from angr_aeg.modules.dynamic_rop import (
    ConstraintApplyResult,
    DynamicRop,
    MemoryConstraint,
    RegisterConstraint,
)
from angr_aeg.utils.state import RegisterManager, termination_reason

from support import STACK_RSP, FakeState, make_session


class DynamicRopTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = make_session(modules=["DynamicRop"])
        self.module = self.session.get_module(DynamicRop)
        self.state = FakeState()
        self.session.set_current_state(self.state)

    def test_empty_queue_is_noop(self) -> None:
        with self.assertLogs("angr_aeg.modules.dynamic_rop", "WARNING") as logs:
            self.assertEqual(self.module.apply_next_constraint_group(self.state), ConstraintApplyResult.EMPTY)
        self.assertIn("No more dynamic ROP constraints", logs.output[0])
        self.assertEqual(self.state.constraints, [])
        self.assertIsNone(termination_reason(self.state))

    def test_groups_apply_in_commit_order(self) -> None:
        self.module.add_constraint(RegisterConstraint("rbx", 1)).add_constraint(RegisterConstraint("rcx", 2))
        self.module.commit_constraints()
        self.module.add_constraint(RegisterConstraint("rbx", 3))
        self.module.commit_constraints()
        self.assertEqual(self.module.pending_groups(self.state), 2)

        self.state.regs.rbx = claripy.BVS("rbx", 64)
        self.state.regs.rcx = claripy.BVS("rcx", 64)
        reg = RegisterManager(self.state)

        self.assertEqual(self.module.apply_next_constraint_group(self.state), ConstraintApplyResult.APPLIED)
        self.assertEqual(reg.read_concrete("rbx"), 1)
        self.assertEqual(reg.read_concrete("rcx"), 2)

        # Applying a group writes the constrained values back.
        self.state.regs.rbx = claripy.BVS("rbx", 64)
        self.assertEqual(self.module.apply_next_constraint_group(self.state), ConstraintApplyResult.APPLIED)
        self.assertEqual(reg.read_concrete("rbx"), 3)
        self.assertEqual(self.module.apply_next_constraint_group(self.state), ConstraintApplyResult.EMPTY)

    def test_rip_constraint_requests_restart(self) -> None:
        symbolic_rip = claripy.BVS("rip", 64)
        reg = RegisterManager(self.state)
        reg.set_rip_symbolic(symbolic_rip)
        self.module.add_constraint(RegisterConstraint("rip", 0x401156))
        self.module.commit_constraints(self.state)

        result = self.module.apply_next_constraint_group(self.state)
        self.assertEqual(result, ConstraintApplyResult.RESTART)
        self.assertEqual(self.state.solver.eval(symbolic_rip), 0x401156)
        self.assertEqual(reg.read_concrete("rip"), 0x401156)

    def test_rip_rebased_to_user_base(self) -> None:
        session = make_session(modules=["DynamicRop"], user_specified_elf_base=0x555555554000)
        module = session.get_module(DynamicRop)
        symbolic_rip = claripy.BVS("rip", 64)
        RegisterManager(self.state).set_rip_symbolic(symbolic_rip)
        module.add_constraint(RegisterConstraint("rip", 0x401156))
        module.commit_constraints(self.state)

        self.assertEqual(module.apply_next_constraint_group(self.state), ConstraintApplyResult.RESTART)
        # The input carries the real address while emulation continues at the emulated one.
        self.assertEqual(self.state.solver.eval(symbolic_rip), 0x555555554000 + 0x1156)
        self.assertEqual(RegisterManager(self.state).read_concrete("rip"), 0x401156)

    def test_memory_constraint(self) -> None:
        self.state.memory.store(STACK_RSP, claripy.BVS("slot", 64), endness="Iend_LE")
        self.module.add_constraint(MemoryConstraint(STACK_RSP, 0xCAFE))
        self.module.commit_constraints(self.state)
        self.assertEqual(self.module.apply_next_constraint_group(self.state), ConstraintApplyResult.APPLIED)
        self.assertEqual(self.session.mem(self.state).read_concrete(STACK_RSP, 2), b"\xfe\xca")

    def test_unsatisfiable_constraint_terminates_state(self) -> None:
        self.module.add_constraint(RegisterConstraint("rbx", 7))
        self.module.commit_constraints(self.state)
        # rbx is the concrete value 0.
        self.assertEqual(self.module.apply_next_constraint_group(self.state), ConstraintApplyResult.FAILED)
        self.assertEqual(termination_reason(self.state), "Dynamic ROP failed")

    def test_queues_are_per_state(self) -> None:
        other = FakeState()
        self.module.add_constraint(RegisterConstraint("rbx", 1))
        self.module.commit_constraints(self.state)
        self.assertEqual(self.module.pending_groups(other), 0)

        child = FakeState()
        child.globals = dict(self.state.globals)
        self.session.on_state_fork(self.state, [child])
        self.assertEqual(self.module.pending_groups(child), 1)
        child.regs.rbx = claripy.BVS("rbx", 64)
        self.module.apply_next_constraint_group(child)
        self.assertEqual(self.module.pending_groups(child), 0)
        self.assertEqual(self.module.pending_groups(self.state), 1)

    def test_groups_from_configuration(self) -> None:
        session = make_session(
            modules=["DynamicRop"],
            dynamic_rop_constraints=[[{"register": "rbx", "value": 1}], [{"address": STACK_RSP, "value": 2, "size": 4}]],
        )
        module = session.get_module(DynamicRop)
        self.assertEqual(module.pending_groups(self.state), 2)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
