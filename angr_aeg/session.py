"""Dispatch engine events to modules and techniques, and drive generation."""

from __future__ import annotations

import enum
import logging
import pathlib
from dataclasses import replace
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple, Type, TypeVar

from .config import AegConfig
from .errors import AegError
from .exploit import Exploit
from .expr import ByteVector
from .generator import ExploitGenerator
from .memory import MemoryManager, RegionProvider
from .modules import Module, create_module
from .modules.dynamic_rop import ConstraintApplyResult
from .modules.io_states import IOStates
from .registry import ModuleState, ModuleStateArena
from .rop import RopChainBuilder
from .techniques import Technique, technique_class
from .utils.binary import checksec
from .utils.state import (
    PENDING_SYSCALL_KEY,
    STATE_KEY,
    RegisterManager,
    SyscallCtx,
    request_termination,
    state_key,
    termination_reason,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ForkAdjuster = Callable[[Any], None]


class Signal:
    """An ordered list of callbacks; ``emit`` returns their results."""

    def __init__(self) -> None:
        self._slots: List[Callable[..., Any]] = []

    def connect(self, slot: Callable[..., Any]) -> Callable[..., Any]:
        self._slots.append(slot)
        return slot

    def emit(self, *args: Any) -> List[Any]:
        return [slot(*args) for slot in list(self._slots)]

    def __iter__(self) -> Iterator[Callable[..., Any]]:
        return iter(list(self._slots))

    def __len__(self) -> int:
        return len(self._slots)


class HijackOutcome(enum.Enum):
    TERMINATE = "terminate"
    REDISPATCH = "redispatch"  # a hook changed rip; keep exploring the state


class ExploitSession:
    """Owns the modules, techniques and per-state data of one run.

    Engine callbacks are delivered one at a time. ``current_state`` is set at
    the top of every callback and is only valid for single-threaded
    exploration; everything below the callbacks takes the state explicitly.
    """

    def __init__(
        self,
        config: AegConfig,
        exploit: Exploit,
        *,
        region_provider: Optional[RegionProvider] = None,
    ):
        self.config = config
        self.exploit = exploit
        self.region_provider = region_provider
        self.current_state: Any = None
        self.arena = ModuleStateArena()
        self.rop_builder = RopChainBuilder(self)
        self.generated: List[pathlib.Path] = []
        self._fork_requests: Dict[str, List[Tuple[SyscallCtx, Optional[ForkAdjuster]]]] = {}
        self._allowed_forking_states: Set[str] = set()

        self.before_instruction_hooks = Signal()
        self.after_instruction_hooks = Signal()
        self.before_syscall_hooks = Signal()
        self.after_syscall_hooks = Signal()
        self.on_state_fork_module_decide = Signal()
        self.before_exploit_generation = Signal()
        self.exploit_generation_hooks = Signal()

        self.modules: List[Module] = []
        for name in config.modules:
            logger.info("Creating module: %s", name)
            self.modules.append(create_module(self, name))

        self.techniques: List[Technique] = []
        for name in config.techniques:
            self._create_technique(name)

        self.exploit_generation_hooks.connect(self.generate_exploit)

    def _create_technique(self, name: str) -> Technique:
        cls = technique_class(name)
        existing = self.get_technique(cls)
        if existing is not None:
            return existing
        for dependency in cls.depends_on:
            self._create_technique(dependency)
        logger.info("Creating technique: %s", name)
        technique = cls(self)
        self.techniques.append(technique)
        return technique

    # -- lookups -----------------------------------------------------------------
    def get_module(self, cls: Type[T]) -> Optional[T]:
        for module in self.modules:
            if isinstance(module, cls):
                return module
        return None

    def get_technique(self, cls: Type[T]) -> Optional[T]:
        for technique in self.techniques:
            if type(technique) is cls:
                return technique
        return None

    def get_module_state(self, state: Any, module: Module) -> ModuleState:
        return self.arena.get(state, module)

    def mem(self, state: Any = None) -> MemoryManager:
        return MemoryManager(state if state is not None else self.current_state, self.region_provider)

    def reg(self, state: Any = None) -> RegisterManager:
        return RegisterManager(state if state is not None else self.current_state)

    def set_current_state(self, state: Any) -> None:
        self.current_state = state

    def select_technique(self) -> Optional[Technique]:
        for technique in self.techniques:
            if technique.auxiliary:
                continue
            if technique.check_requirements():
                return technique
            logger.info("Technique %s does not meet its requirements", technique)
        return None

    # -- engine callbacks --------------------------------------------------------
    def on_instruction_start(self, state: Any, insn: Any) -> None:
        self.set_current_state(state)
        if self.config.show_instructions:
            logger.info("[INSN] %#x: %s", insn.address, insn)
        self.before_instruction_hooks.emit(state, insn)

    def on_instruction_end(self, state: Any, insn: Any) -> None:
        self.set_current_state(state)
        self.after_instruction_hooks.emit(state, insn)

    def on_syscall_start(self, state: Any, nr: Optional[int] = None) -> SyscallCtx:
        self.set_current_state(state)
        reg = self.reg(state)
        syscall = reg.read_syscall_ctx(nr)
        if self.config.show_syscalls:
            logger.info("[SYSCALL] %s", syscall)

        updated = syscall
        for hook in self.before_syscall_hooks:
            result = hook(state, updated)
            if isinstance(result, SyscallCtx):
                updated = result
        reg.write_syscall_args(syscall, updated)
        state.globals[PENDING_SYSCALL_KEY] = updated
        return updated

    def on_syscall_end(self, state: Any) -> None:
        self.set_current_state(state)
        pending = state.globals.get(PENDING_SYSCALL_KEY)
        if pending is None:
            return
        state.globals[PENDING_SYSCALL_KEY] = None
        ret = self.reg(state).read_concrete("rax")
        self.after_syscall_hooks.emit(state, replace(pending, ret=ret))

    def on_state_fork(self, parent: Any, children: List[Any]) -> None:
        self.arena.fork(parent, children)

    def on_state_killed(self, state: Any) -> None:
        self.arena.discard(state)
        key = state.globals.get(STATE_KEY)
        if key is not None:
            self._fork_requests.pop(key, None)
            self._allowed_forking_states.discard(key)
        if state is self.current_state:
            self.current_state = None

    def on_state_fork_decide(self, state: Any) -> bool:
        self.set_current_state(state)
        if not self.config.disable_native_forking:
            return True
        allowed = all(self.on_state_fork_module_decide.emit(state))
        # Forks requested by a module are always allowed, once.
        key = state_key(state)
        if key in self._allowed_forking_states:
            self._allowed_forking_states.discard(key)
            return True
        return allowed

    def request_fork(self, state: Any, syscall: SyscallCtx, adjust: Optional[ForkAdjuster] = None) -> None:
        """Ask for a copy of ``state`` that enters the pending syscall as ``syscall``.

        ``adjust`` runs on the copy once it has its own module data.
        """

        key = state_key(state)
        self._fork_requests.setdefault(key, []).append((syscall, adjust))
        self._allowed_forking_states.add(key)

    def spawn_requested_forks(self, state: Any) -> List[Any]:
        """Create the copies requested for ``state`` during syscall entry."""

        key = state_key(state)
        requests = self._fork_requests.pop(key, [])
        if not requests:
            return []
        if not self.on_state_fork_decide(state):
            return []
        self._allowed_forking_states.discard(key)

        siblings = [state.copy() for _ in requests]
        self.on_state_fork(state, siblings)
        for sibling, (syscall, adjust) in zip(siblings, requests):
            current = sibling.globals.get(PENDING_SYSCALL_KEY) or syscall
            self.reg(sibling).write_syscall_args(current, syscall)
            sibling.globals[PENDING_SYSCALL_KEY] = syscall
            if adjust is not None:
                adjust(sibling)
        logger.info("Forked %d sibling(s) at syscall %#x", len(siblings), requests[0][0].nr)
        return siblings

    def terminate_state(self, state: Any, reason: str) -> None:
        logger.warning("Terminating state: %s", reason)
        request_termination(state, reason)

    def on_symbolic_rip(self, state: Any, symbolic_rip: Any, concrete_rip: int) -> HijackOutcome:
        """Handle a control-flow hijack and decide the state's fate.

        The state is terminated unless a hook redirected rip, whether or not
        an exploit could be generated.
        """

        self.set_current_state(state)
        logger.warning("Detected symbolic RIP: %#x", concrete_rip)

        reg = self.reg(state)
        reg.set_rip_symbolic(symbolic_rip)
        if logger.isEnabledFor(logging.INFO):
            reg.show_reg_info()
            self.mem(state).show_map_info()

        outcome = HijackOutcome.TERMINATE
        try:
            results = self.before_exploit_generation.emit(state)
            if ConstraintApplyResult.FAILED in results:
                return outcome
            if ConstraintApplyResult.RESTART in results:
                outcome = HijackOutcome.REDISPATCH
                return outcome
            self.exploit_generation_hooks.emit(state)
        except (AegError, OSError) as exc:
            logger.error("Exploit generation aborted: %s", exc)
        finally:
            if outcome is HijackOutcome.TERMINATE and termination_reason(state) is None:
                self.terminate_state(state, "End of exploit generation")
        return outcome

    # -- generation ----------------------------------------------------------------
    def dump_input(self, state: Any) -> bytes:
        return state.posix.dumps(0)

    def generate_exploit(self, state: Any) -> Optional[pathlib.Path]:
        technique = self.select_technique()
        if technique is None:
            logger.error("No technique can be applied to this target")
            return None

        chain = self.rop_builder.build(state, technique)
        if chain is None:
            logger.error("Cannot lay out the %s chain on this state", technique)
            return None

        stage1 = self.dump_input(state)
        rop_chain = [[ByteVector(stage1)]] + chain[1:]

        self.exploit.clear()
        generator = ExploitGenerator(self.exploit)
        io_states = self.get_module(IOStates)
        mod_state = io_states.get_state(state) if io_states is not None else None
        if mod_state is None or not mod_state.input_count():
            mitigations = checksec(self.exploit.elf)
            if mitigations.canary or mitigations.pie:
                logger.error(
                    "No input was tracked; cannot stage leaks (%s) for this target",
                    ", ".join(mitigations.leak_requirements()),
                )
                return None
            generator.generate_plain(rop_chain)
        else:
            generator.generate_main_function(mod_state, rop_chain, stage1)

        path = self.exploit.write(self.config.output_filename)
        self.generated.append(path)
        return path


__all__ = ["ExploitSession", "HijackOutcome", "Signal"]
