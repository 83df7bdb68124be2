"""Helpers around angr states, ELF metadata and exploration."""

from .binary import (
    Checksec,
    Instruction,
    checksec,
    disasm,
    find_gadget,
    find_syscall_in_function,
    function_code,
    load_elf,
)
from .exploration import ExploitExploration, StateBudgetExceeded, StateBudgetLimiter
from .state import (
    RegisterManager,
    SyscallCtx,
    request_termination,
    state_key,
    termination_reason,
)

__all__ = [
    "Checksec",
    "ExploitExploration",
    "Instruction",
    "RegisterManager",
    "StateBudgetExceeded",
    "StateBudgetLimiter",
    "SyscallCtx",
    "checksec",
    "disasm",
    "find_gadget",
    "find_syscall_in_function",
    "function_code",
    "load_elf",
    "request_termination",
    "state_key",
    "termination_reason",
]
