"""angr exploration techniques that feed engine events into an exploit session."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Tuple

import angr

from .binary import Instruction
from .state import INSTRUCTION_KEY, LIBRARY_SYSCALLS, termination_reason

if TYPE_CHECKING:  # pragma: no cover
    from ..session import ExploitSession

logger = logging.getLogger(__name__)

HIJACKED_STASH = "hijacked"
TERMINATED_STASH = "terminated"


class StateBudgetExceeded(RuntimeError):
    """Raised when exploration tracks more states than allowed."""

    def __init__(self, stash_counts: Dict[str, int], budget: int):
        self.stash_counts = dict(stash_counts)
        self.budget = int(budget)
        self.total = sum(stash_counts.values())
        super().__init__(f"state budget exceeded: {self.total} states > budget {self.budget}")


class StateBudgetLimiter(angr.exploration_techniques.ExplorationTechnique):
    """Stops exploration once the live stashes outgrow ``budget`` states."""

    def __init__(self, budget: int, *, stashes: Optional[Iterable[str]] = None):
        super().__init__()
        if budget <= 0:
            raise ValueError("budget must be positive")
        self.budget = int(budget)
        self.stashes = tuple(stashes or ("active", "deferred"))
        self.last_counts: Dict[str, int] = {}

    def setup(self, simgr: angr.SimulationManager) -> None:  # type: ignore[override]
        self._check(simgr)

    def step(  # type: ignore[override]
        self,
        simgr: angr.SimulationManager,
        stash: str = "active",
        **kwargs,
    ) -> angr.SimulationManager:
        simgr = simgr.step(stash=stash, **kwargs)
        self._check(simgr)
        return simgr

    def _check(self, simgr: angr.SimulationManager) -> None:
        counts = {stash: len(simgr.stashes.get(stash, [])) for stash in self.stashes}
        self.last_counts = counts
        if sum(counts.values()) > self.budget:
            raise StateBudgetExceeded(counts, self.budget)


class ExploitExploration(angr.exploration_techniques.ExplorationTechnique):
    """Reports syscalls, instructions, forks and hijacks to ``session``.

    A state whose last jump was a syscall executes that syscall on its next
    step, so syscall entry is reported before stepping it and syscall exit on
    each of its successors, after forked successors got their own module data.
    Copies requested by a module at syscall entry are stepped alongside the
    state. Unconstrained successors are control-flow hijacks;
    states flagged for termination by a hook are moved to ``terminated``.
    """

    def __init__(self, session: "ExploitSession"):
        super().__init__()
        self.session = session
        self._insns: Dict[int, Optional[Instruction]] = {}

    def setup(self, simgr: angr.SimulationManager) -> None:  # type: ignore[override]
        simgr.populate(HIJACKED_STASH, [])
        simgr.populate(TERMINATED_STASH, [])
        for state in simgr.active:
            self.instrument(state)

    def instrument(self, state: Any) -> None:
        """Install instruction breakpoints; successors inherit them."""

        state.inspect.b("instruction", when=angr.BP_BEFORE, action=self._before_instruction)
        state.inspect.b("instruction", when=angr.BP_AFTER, action=self._after_instruction)

    # -- instruction events ------------------------------------------------------
    def _decode(self, state: Any, address: int) -> Optional[Instruction]:
        if address not in self._insns:
            insn = None
            try:
                insns = state.block(address, num_inst=1).capstone.insns
            except angr.errors.SimEngineError:
                insns = []
            if insns:
                cs = insns[0]
                insn = Instruction(cs.address, cs.size, cs.mnemonic, cs.op_str)
            self._insns[address] = insn
        return self._insns[address]

    def _before_instruction(self, state: Any) -> None:
        # The address is only reported before the instruction executes.
        address = state.inspect.instruction
        state.globals[INSTRUCTION_KEY] = address
        insn = self._decode(state, address)
        if insn is not None:
            self.session.on_instruction_start(state, insn)

    def _after_instruction(self, state: Any) -> None:
        address = state.globals.get(INSTRUCTION_KEY)
        if address is None:
            return
        insn = self._decode(state, address)
        if insn is not None:
            self.session.on_instruction_end(state, insn)

    # -- stepping ------------------------------------------------------------------
    def _syscall_entry(self, state: Any) -> Tuple[bool, Optional[int]]:
        """Whether ``state`` is about to run a syscall, and its number if not in rax.

        libc's read, write and nanosleep run as SimProcedures unless the real
        libc is loaded; entering one of them counts as entering the syscall.
        """

        if (state.history.jumpkind or "").startswith("Ijk_Sys"):
            return True, None
        project = state.project
        if project is None or state.solver.symbolic(state.regs.rip):
            return False, None
        address = state.solver.eval(state.regs.rip)
        if not project.is_hooked(address):
            return False, None
        nr = LIBRARY_SYSCALLS.get(getattr(project.hooked_by(address), "display_name", None))
        return nr is not None, nr

    def step_state(self, simgr: angr.SimulationManager, state: Any, **kwargs) -> Dict[Any, List[Any]]:  # type: ignore[override]
        in_syscall, nr = self._syscall_entry(state)
        siblings: List[Any] = []
        if in_syscall:
            self.session.on_syscall_start(state, nr)
            siblings = self.session.spawn_requested_forks(state)

        stashes = self._step(simgr, state, in_syscall, **kwargs)
        for sibling in siblings:
            for name, states in self._step(simgr, sibling, in_syscall, **kwargs).items():
                stashes.setdefault(name, []).extend(states)
        return stashes

    def _step(self, simgr: angr.SimulationManager, state: Any, in_syscall: bool, **kwargs) -> Dict[Any, List[Any]]:
        stashes = simgr.step_state(state, **kwargs)
        active: List[Any] = stashes.get(None, [])
        unconstrained: List[Any] = stashes.pop("unconstrained", [])

        children = unconstrained + active
        if not children:
            self.session.on_state_killed(state)
        elif len(children) > 1:
            if self.session.on_state_fork_decide(state):
                self.session.on_state_fork(state, children)
                self.session.on_state_killed(state)
            else:
                # Hijacks come first so a denied fork never loses one.
                logger.info("Fork at %#x denied, keeping the first successor", state.addr)
                if unconstrained:
                    unconstrained, active = unconstrained[:1], []
                else:
                    active = active[:1]

        # Successors own their module data from here on.
        if in_syscall:
            for successor in unconstrained + active:
                self.session.on_syscall_end(successor)

        stashes[HIJACKED_STASH] = []
        for hijacked in unconstrained:
            active.extend(self._on_hijack(stashes, hijacked))

        stashes[TERMINATED_STASH] = []
        survivors = []
        for successor in active:
            reason = termination_reason(successor)
            if reason is None:
                survivors.append(successor)
                continue
            logger.info("State %s terminated: %s", successor, reason)
            stashes[TERMINATED_STASH].append(successor)
            self.session.on_state_killed(successor)
        stashes[None] = survivors
        return stashes

    def _on_hijack(self, stashes: Dict[Any, List[Any]], state: Any) -> List[Any]:
        from ..session import HijackOutcome

        symbolic_rip = state.regs.rip
        concrete_rip = state.solver.eval(symbolic_rip)
        outcome = self.session.on_symbolic_rip(state, symbolic_rip, concrete_rip)
        if outcome is HijackOutcome.REDISPATCH:
            logger.info("Resuming hijacked state at %#x", state.solver.eval(state.regs.rip))
            return [state]
        stashes[HIJACKED_STASH].append(state)
        self.session.on_state_killed(state)
        return []


__all__ = [
    "ExploitExploration",
    "HIJACKED_STASH",
    "StateBudgetExceeded",
    "StateBudgetLimiter",
    "TERMINATED_STASH",
]
