"""Queue constraint groups per state and apply them on control-flow hijack."""

from __future__ import annotations

import enum
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable, List, Optional, Union

import claripy

from ..errors import InvariantViolation
from ..memory import ELF_LABEL
from ..registry import ModuleState
from . import Module, register_module

logger = logging.getLogger(__name__)


def _as_bv(value: Any, size: int = 8) -> claripy.ast.BV:
    if isinstance(value, int):
        return claripy.BVV(value, size * 8)
    return value


@dataclass(frozen=True)
class RegisterConstraint:
    register: str
    expr: claripy.ast.BV

    def __post_init__(self) -> None:
        object.__setattr__(self, "expr", _as_bv(self.expr))


@dataclass(frozen=True)
class MemoryConstraint:
    address: int
    expr: claripy.ast.BV

    def __post_init__(self) -> None:
        object.__setattr__(self, "expr", _as_bv(self.expr))


Constraint = Union[RegisterConstraint, MemoryConstraint]
ConstraintGroup = List[Constraint]


class ConstraintApplyResult(enum.Enum):
    EMPTY = "empty"  # nothing queued
    APPLIED = "applied"
    RESTART = "restart"  # rip was constrained, abort and redispatch
    FAILED = "failed"  # state terminated


def constraint_from_dict(entry: Dict[str, Any]) -> Constraint:
    """Build a constraint from a configuration entry."""

    if "register" in entry:
        return RegisterConstraint(entry["register"], _as_bv(entry["value"]))
    return MemoryConstraint(int(entry["address"]), _as_bv(entry["value"], int(entry.get("size", 8))))


@dataclass
class DynamicRopState(ModuleState):
    constraints_queue: Deque[ConstraintGroup] = field(default_factory=deque)

    def clone(self) -> "DynamicRopState":
        # Constraints are immutable; only the containers need copying.
        return DynamicRopState(deque(list(group) for group in self.constraints_queue))


@register_module
class DynamicRop(Module):
    """Applies queued register/memory constraints to a hijacked state.

    Groups are applied one per hijack, oldest first. Constraining rip asks the
    dispatcher to abandon the current hijack and let execution resume.
    """

    name = "DynamicRop"

    def __init__(self, session):
        super().__init__(session)
        self._current_group: ConstraintGroup = []
        self._initial_groups: List[ConstraintGroup] = [
            [constraint_from_dict(entry) for entry in group]
            for group in session.config.dynamic_rop_constraints
        ]
        session.before_exploit_generation.connect(self.before_exploit_generation)

    def create_state(self) -> DynamicRopState:
        return DynamicRopState(deque(list(group) for group in self._initial_groups))

    def add_constraint(self, constraint: Constraint) -> "DynamicRop":
        self._current_group.append(constraint)
        return self

    def add_constraints(self, constraints: Iterable[Constraint]) -> "DynamicRop":
        for constraint in constraints:
            self.add_constraint(constraint)
        return self

    def commit_constraints(self, state: Optional[Any] = None) -> None:
        """Move the in-progress group onto ``state``'s queue."""

        state = state if state is not None else self.session.current_state
        if state is None:
            raise InvariantViolation("no state to commit constraints to")
        self.get_state(state).constraints_queue.append(self._current_group)
        logger.info("Committed %d dynamic ROP constraint(s)", len(self._current_group))
        self._current_group = []

    def pending_groups(self, state: Any) -> int:
        return len(self.get_state(state).constraints_queue)

    def rebase_address(self, state: Any, value: int) -> int:
        """Move an address inside the emulated target image to the user-specified base."""

        new_base = self.session.config.user_specified_elf_base
        if new_base is None:
            return value
        region = self.session.mem(state).find_region(value)
        if region is None or region.module != ELF_LABEL:
            # TODO: rebase libc addresses once a user-specified libc base exists.
            return value
        old_base = self.session.mem(state).module_base(ELF_LABEL)
        return value - old_base + new_base

    def apply_next_constraint_group(self, state: Any) -> ConstraintApplyResult:
        mod_state = self.get_state(state)
        if not mod_state.constraints_queue:
            logger.warning("No more dynamic ROP constraints to apply")
            return ConstraintApplyResult.EMPTY

        logger.warning("Adding dynamic ROP constraints...")
        group = mod_state.constraints_queue.popleft()
        builder = self.session.rop_builder
        mem = self.session.mem(state)
        reg = self.session.reg(state)

        has_rip = False
        for constraint in group:
            if isinstance(constraint, RegisterConstraint):
                has_rip |= constraint.register == "rip"
                expr = constraint.expr
                if not expr.symbolic:
                    rebased = self.rebase_address(state, state.solver.eval(expr))
                    expr = claripy.BVV(rebased, expr.size())
                ok = builder.add_register_constraint(state, constraint.register, expr)
                reg.write_symbolic(constraint.register, constraint.expr)
            elif isinstance(constraint, MemoryConstraint):
                ok = builder.add_memory_constraint(state, constraint.address, constraint.expr)
                mem.write_symbolic(constraint.address, constraint.expr)
            else:
                raise TypeError(f"unsupported constraint: {constraint!r}")

            if not ok:
                self.session.terminate_state(state, "Dynamic ROP failed")
                return ConstraintApplyResult.FAILED

        if has_rip:
            logger.warning("rip constrained, restarting execution")
            return ConstraintApplyResult.RESTART
        return ConstraintApplyResult.APPLIED

    def before_exploit_generation(self, state: Any) -> ConstraintApplyResult:
        return self.apply_next_constraint_group(state)


__all__ = [
    "Constraint",
    "ConstraintApplyResult",
    "ConstraintGroup",
    "DynamicRop",
    "DynamicRopState",
    "MemoryConstraint",
    "RegisterConstraint",
    "constraint_from_dict",
]
