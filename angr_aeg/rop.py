"""Lay a technique's first subchain out on a hijacked state via constraints."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, List, Optional

import claripy

from .expr import ResolutionContext, RopSubchain
from .utils.state import RegisterManager

if TYPE_CHECKING:  # pragma: no cover
    from .session import ExploitSession
    from .techniques import Technique

logger = logging.getLogger(__name__)


class RopChainBuilder:
    def __init__(self, session: "ExploitSession"):
        self.session = session

    @staticmethod
    def _constrain(state: Any, constraint: claripy.ast.Bool) -> bool:
        if not state.solver.satisfiable(extra_constraints=[constraint]):
            return False
        state.add_constraints(constraint)
        return True

    def add_register_constraint(self, state: Any, register: str, expr: claripy.ast.BV) -> bool:
        reg = RegisterManager(state)
        current = reg.get_symbolic_rip() if register == "rip" else None
        if current is None:
            current = reg.read_symbolic(register)
        if not self._constrain(state, current == expr):
            logger.warning("Unsatisfiable register constraint on %s", register)
            return False
        return True

    def add_memory_constraint(self, state: Any, address: int, expr: claripy.ast.BV) -> bool:
        current = state.memory.load(address, expr.size() // 8, endness=state.arch.memory_endness)
        if not self._constrain(state, current == expr):
            logger.warning("Unsatisfiable memory constraint at %#x", address)
            return False
        return True

    def build(self, state: Any, technique: "Technique") -> Optional[List[RopSubchain]]:
        """Constrain the saved rbp, rip and the stack above rsp to subchain 0."""

        chain = technique.get_rop_subchains()
        ctx = ResolutionContext(elf_base=self.session.exploit.emulated_elf_base)
        rsp = RegisterManager(state).read_concrete("rsp")

        logger.warning("Building ROP chain with %s (%d slots)", technique, len(chain[0]))
        offset = 0
        for i, expr in enumerate(chain[0]):
            value = expr.to_bv(ctx)
            if i == 0:
                ok = self.add_register_constraint(state, "rbp", value)
            elif i == 1:
                ok = self.add_register_constraint(state, "rip", value)
            else:
                ok = self.add_memory_constraint(state, rsp + offset, value)
                offset += len(expr)
            if not ok:
                logger.warning("Failed to place ROP chain slot %d (%r)", i, expr)
                return None
        return chain


__all__ = ["RopChainBuilder"]
