"""Helpers for reading and mutating angr execution states consistently."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Tuple

import claripy
from angr.errors import SimError

logger = logging.getLogger(__name__)

# Keys used to persist bookkeeping inside angr state.globals.
STATE_KEY = "_aeg_state_key"
SYMBOLIC_RIP_KEY = "_aeg_symbolic_rip"
TERMINATION_KEY = "_aeg_termination"
PENDING_SYSCALL_KEY = "_aeg_pending_syscall"
INSTRUCTION_KEY = "_aeg_instruction"

SYS_READ = 0
SYS_WRITE = 1
SYS_NANOSLEEP = 35
SYS_CLOCK_NANOSLEEP = 230

# libc functions angr runs as SimProcedures instead of issuing these syscalls.
LIBRARY_SYSCALLS = {
    "read": SYS_READ,
    "write": SYS_WRITE,
    "nanosleep": SYS_NANOSLEEP,
    "clock_nanosleep": SYS_CLOCK_NANOSLEEP,
}

SYSCALL_ARG_REGS = ("rdi", "rsi", "rdx", "r10", "r8", "r9")
GENERAL_REGS = (
    "rax", "rbx", "rcx", "rdx", "rsi", "rdi", "rbp", "rsp",
    "r8", "r9", "r10", "r11", "r12", "r13", "r14", "r15", "rip",
)


def state_key(state: Any) -> str:
    """Return the arena key of ``state``, assigning one on first use."""

    key = state.globals.get(STATE_KEY)
    if key is None:
        key = rekey_state(state)
    return key


def rekey_state(state: Any) -> str:
    """Give ``state`` a fresh key; forked children inherit their parent's globals."""

    key = f"state_{uuid.uuid4().hex}"
    state.globals[STATE_KEY] = key
    return key


def request_termination(state: Any, reason: str) -> None:
    state.globals[TERMINATION_KEY] = reason


def termination_reason(state: Any) -> Optional[str]:
    return state.globals.get(TERMINATION_KEY)


@dataclass(frozen=True)
class SyscallCtx:
    """Register snapshot of one x86-64 system call."""

    nr: int
    arg1: int = 0
    arg2: int = 0
    arg3: int = 0
    arg4: int = 0
    arg5: int = 0
    arg6: int = 0
    ret: int = 0

    def args(self) -> Tuple[int, ...]:
        return (self.arg1, self.arg2, self.arg3, self.arg4, self.arg5, self.arg6)

    def __str__(self) -> str:
        args = ", ".join(f"{a:#x}" for a in self.args())
        return f"syscall {self.nr:#x} ({args})"


class RegisterManager:
    """Register access for a single execution state."""

    def __init__(self, state: Any):
        self.state = state

    def read_symbolic(self, name: str) -> claripy.ast.BV:
        return getattr(self.state.regs, name)

    def read_concrete(self, name: str) -> int:
        return int(self.state.solver.eval(self.read_symbolic(name)))

    def is_symbolic(self, name: str) -> bool:
        return bool(self.state.solver.symbolic(self.read_symbolic(name)))

    def write_symbolic(self, name: str, value: claripy.ast.BV) -> bool:
        try:
            setattr(self.state.regs, name, value)
        except SimError as exc:
            logger.warning("Cannot write register %s: %s", name, exc)
            return False
        return True

    def write_concrete(self, name: str, value: int) -> bool:
        return self.write_symbolic(name, claripy.BVV(value, self.state.arch.bits))

    # -- symbolic RIP --------------------------------------------------------
    def set_rip_symbolic(self, expr: claripy.ast.BV) -> None:
        self.state.globals[SYMBOLIC_RIP_KEY] = expr

    def get_symbolic_rip(self) -> Optional[claripy.ast.BV]:
        return self.state.globals.get(SYMBOLIC_RIP_KEY)

    # -- syscalls --------------------------------------------------------------
    def read_syscall_ctx(self, nr: Optional[int] = None) -> SyscallCtx:
        """Snapshot the argument registers; ``nr`` defaults to rax.

        Library calls hooked in place of a syscall pass ``nr`` explicitly. Their
        first three arguments live in the same registers as the syscall's.
        """
        args = [self.read_concrete(reg) for reg in SYSCALL_ARG_REGS]
        return SyscallCtx(self.read_concrete("rax") if nr is None else nr, *args)

    def write_syscall_args(self, before: SyscallCtx, after: SyscallCtx) -> None:
        """Write back argument registers a hook changed."""

        for reg, old, new in zip(SYSCALL_ARG_REGS, before.args(), after.args()):
            if old != new:
                self.write_concrete(reg, new)

    def show_reg_info(self) -> None:
        lines = ["Dumping CPU registers...", "---------------- [REGISTERS] ----------------"]
        for reg in GENERAL_REGS:
            try:
                if self.is_symbolic(reg):
                    lines.append(f"{reg}\t(symbolic)")
                else:
                    lines.append(f"{reg}\t{self.read_concrete(reg):#018x}")
            except SimError:
                lines.append(f"{reg}\t(unavailable)")
        logger.info("\n".join(lines))


__all__ = [
    "GENERAL_REGS",
    "INSTRUCTION_KEY",
    "LIBRARY_SYSCALLS",
    "PENDING_SYSCALL_KEY",
    "RegisterManager",
    "STATE_KEY",
    "SYMBOLIC_RIP_KEY",
    "SYSCALL_ARG_REGS",
    "SYS_CLOCK_NANOSLEEP",
    "SYS_NANOSLEEP",
    "SYS_READ",
    "SYS_WRITE",
    "SyscallCtx",
    "TERMINATION_KEY",
    "rekey_state",
    "request_termination",
    "state_key",
    "termination_reason",
]
