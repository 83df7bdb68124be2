"""Binary metadata helpers: ELF loading, checksec flags, disassembly and gadget search."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Tuple

from capstone import CS_ARCH_X86, CS_MODE_64, Cs
from pwnlib.elf import ELF

logger = logging.getLogger(__name__)

# Longest x86 instruction encoding.
MAX_INSN_SIZE = 15


@dataclass(frozen=True)
class Instruction:
    """A decoded machine instruction."""

    address: int
    size: int
    mnemonic: str
    op_str: str

    def __str__(self) -> str:
        return f"{self.mnemonic} {self.op_str}".strip()


@dataclass(frozen=True)
class Checksec:
    """Mitigations compiled into a binary."""

    canary: bool
    pie: bool
    full_relro: bool
    nx: bool = True

    def leak_requirements(self) -> Tuple[str, ...]:
        needs = []
        if self.canary:
            needs.append("canary")
        if self.pie:
            needs.append("pie")
        return tuple(needs)


def load_elf(path: str) -> ELF:
    """Load an ELF image with pwntools without printing its checksec banner."""

    return ELF(path, checksec=False)


def checksec(elf: Any) -> Checksec:
    return Checksec(
        canary=bool(getattr(elf, "canary", False)),
        pie=bool(getattr(elf, "pie", False)),
        full_relro=getattr(elf, "relro", None) == "Full",
        nx=bool(getattr(elf, "nx", True)),
    )


class Disassembler:
    """Thin wrapper over capstone's x86-64 decoder."""

    def __init__(self) -> None:
        self._cs = Cs(CS_ARCH_X86, CS_MODE_64)

    def disasm(self, code: bytes, address: int, *, count: int = 0) -> List[Instruction]:
        return [
            Instruction(insn.address, insn.size, insn.mnemonic, insn.op_str)
            for insn in self._cs.disasm(code, address, count)
        ]

    def disasm_one(self, code: bytes, address: int) -> Optional[Instruction]:
        insns = self.disasm(code[:MAX_INSN_SIZE], address, count=1)
        return insns[0] if insns else None


_DISASSEMBLER = Disassembler()


def disasm(code: bytes, address: int, *, count: int = 0) -> List[Instruction]:
    return _DISASSEMBLER.disasm(code, address, count=count)


def normalize_asm(asm: str) -> Tuple[str, ...]:
    """Split ``"pop rdi ; ret"`` into normalised instruction strings."""

    parts = []
    for chunk in asm.split(";"):
        text = " ".join(chunk.strip().lower().split())
        if text:
            parts.append(text.replace(" ,", ","))
    return tuple(parts)


def function_code(elf: Any, name: str) -> Tuple[int, bytes]:
    """Return the address and raw bytes of function ``name``."""

    function = elf.functions[name]
    return function.address, elf.read(function.address, function.size)


def _executable_chunks(elf: Any) -> Iterable[Tuple[int, bytes]]:
    delta = elf.address - getattr(elf, "load_addr", elf.address)
    for segment in getattr(elf, "executable_segments", []):
        yield segment.header.p_vaddr + delta, segment.data()


def find_gadget(elf: Any, asm: str) -> Optional[int]:
    """Return the first executable address whose instructions match ``asm``."""

    wanted = normalize_asm(asm)
    if not wanted:
        raise ValueError("empty gadget pattern")

    max_len = MAX_INSN_SIZE * len(wanted)
    for base, data in _executable_chunks(elf):
        for offset in range(len(data)):
            window = data[offset : offset + max_len]
            if wanted[-1] == "ret" and b"\xc3" not in window:
                continue
            insns = disasm(window, base + offset, count=len(wanted))
            if len(insns) != len(wanted):
                continue
            if tuple(str(i) for i in insns) == wanted:
                logger.debug("gadget %r found at %#x", asm, base + offset)
                return base + offset
    return None


def find_syscall_in_function(elf: Any, name: str) -> Optional[Instruction]:
    """Return the first ``syscall`` instruction inside function ``name``."""

    address, code = function_code(elf, name)
    for insn in disasm(code, address):
        if insn.mnemonic == "syscall":
            return insn
    return None


__all__ = [
    "Checksec",
    "Disassembler",
    "Instruction",
    "checksec",
    "disasm",
    "find_gadget",
    "find_syscall_in_function",
    "function_code",
    "load_elf",
    "normalize_asm",
]
