"""Lightweight stand-ins for angr states and pwntools ELF objects.

States keep real claripy ASTs in a sparse byte map so that memory, register
and solver behaviour match angr closely enough for module-level tests.
"""

from __future__ import annotations

from types import SimpleNamespace
from typing import Dict, Iterable, List, Optional, Tuple

import claripy
from angr.errors import SimMemoryError

from angr_aeg.config import AegConfig
from angr_aeg.exploit import Exploit
from angr_aeg.memory import ELF_LABEL, MM_EXEC, MM_READ, MM_WRITE, PAGE_SIZE, MemoryRegion
from angr_aeg.session import ExploitSession
from angr_aeg.utils.state import GENERAL_REGS

STACK_BASE = 0x7FFE0000
STACK_RSP = STACK_BASE + 0x800

# __libc_csu_init tail as emitted by gcc for glibc < 2.34.
CSU_INIT_ADDR = 0x401200
CSU_INIT_CODE = bytes.fromhex(
    "4c89f2"  # mov rdx, r14
    "4c89ee"  # mov rsi, r13
    "4489e7"  # mov edi, r12d
    "41ff14df"  # call qword ptr [r15 + rbx*8]
    "4883c301"  # add rbx, 1
    "4839dd"  # cmp rbp, rbx
    "75ea"  # jne
    "4883c408"  # add rsp, 8
    "5b5d415c415d415e415f"  # pop rbx; pop rbp; pop r12..r15
    "c3"  # ret
)
CSU_MOV_GADGET = CSU_INIT_ADDR
CSU_POP_GADGET = CSU_INIT_ADDR + 26

FINI_ADDR = 0x401240
DT_FINI_SLOT = 0x403E10
READ_PLT = 0x401030
STACK_CHK_FAIL_PLT = 0x401040
MAIN_ADDR = 0x401156
READ_GOT = 0x404018
BSS_ADDR = 0x404040

LIBC_READ_ADDR = 0x10E1E0


class FakeRegs:
    def __init__(self) -> None:
        for name in GENERAL_REGS:
            setattr(self, name, claripy.BVV(0, 64))


class FakeMemory:
    def __init__(self, pages: Iterable[int] = ()):
        self.pages = {page & ~(PAGE_SIZE - 1) for page in pages}
        self.data: Dict[int, claripy.ast.BV] = {}

    def map(self, start: int, size: int) -> None:
        for page in range(start & ~(PAGE_SIZE - 1), start + size, PAGE_SIZE):
            self.pages.add(page)

    def _check(self, address: int) -> None:
        if address & ~(PAGE_SIZE - 1) not in self.pages:
            raise SimMemoryError(f"unmapped address {address:#x}")

    def load(self, address: int, size: int, endness: Optional[str] = None) -> claripy.ast.BV:
        parts = []
        for i in range(size):
            self._check(address + i)
            parts.append(self.data.get(address + i, claripy.BVV(0, 8)))
        value = parts[0] if size == 1 else claripy.Concat(*parts)
        return value.reversed if endness == "Iend_LE" and size > 1 else value

    def store(self, address: int, value: claripy.ast.BV, endness: Optional[str] = None) -> None:
        size = value.size() // 8
        if endness == "Iend_LE" and size > 1:
            value = value.reversed
        for i in range(size):
            self._check(address + i)
            hi = value.size() - 1 - 8 * i
            self.data[address + i] = value[hi : hi - 7]

    def store_bytes(self, address: int, data: bytes) -> None:
        for i, byte in enumerate(data):
            self._check(address + i)
            self.data[address + i] = claripy.BVV(byte, 8)

    def permissions(self, address: int) -> claripy.ast.BV:
        self._check(address)
        return claripy.BVV(MM_READ | MM_WRITE, 3)


class FakeSolver:
    def __init__(self, state: "FakeState"):
        self.state = state

    def _solver(self) -> claripy.Solver:
        solver = claripy.Solver()
        if self.state.constraints:
            solver.add(self.state.constraints)
        return solver

    def eval(self, expr: claripy.ast.BV, cast_to=None):
        value = self._solver().eval(expr, 1)[0]
        if cast_to is bytes:
            return value.to_bytes(expr.size() // 8, "big")
        return value

    def satisfiable(self, extra_constraints: Iterable[claripy.ast.Bool] = ()) -> bool:
        return self._solver().satisfiable(extra_constraints=list(extra_constraints))

    def symbolic(self, expr: claripy.ast.BV) -> bool:
        return expr.symbolic


class FakeState:
    def __init__(self, stdin: bytes = b"", pages: Iterable[int] = (STACK_BASE, STACK_BASE + PAGE_SIZE)):
        self.arch = SimpleNamespace(memory_endness="Iend_LE", bits=64)
        self.regs = FakeRegs()
        self.regs.rsp = claripy.BVV(STACK_RSP, 64)
        self.memory = FakeMemory(pages)
        self.constraints: List[claripy.ast.Bool] = []
        self.solver = FakeSolver(self)
        self.globals: Dict[str, object] = {}
        self._stdin = stdin
        self.posix = SimpleNamespace(dumps=lambda fd: stdin)

    def copy(self) -> "FakeState":
        clone = FakeState(self._stdin)
        for name in GENERAL_REGS:
            setattr(clone.regs, name, getattr(self.regs, name))
        clone.memory.pages = set(self.memory.pages)
        clone.memory.data = dict(self.memory.data)
        clone.constraints = list(self.constraints)
        clone.globals = dict(self.globals)
        return clone

    def add_constraints(self, *constraints: claripy.ast.Bool) -> None:
        self.constraints.extend(constraints)

    def set_regs(self, **values: int) -> None:
        for name, value in values.items():
            setattr(self.regs, name, claripy.BVV(value, 64))


class FakeFunction:
    def __init__(self, address: int, size: int):
        self.address = address
        self.size = size


class FakeSegment:
    def __init__(self, vaddr: int, data: bytes):
        self.header = SimpleNamespace(p_vaddr=vaddr)
        self._data = data

    def data(self) -> bytes:
        return self._data


class FakeElf:
    """Enough of ``pwnlib.elf.ELF`` for gadget search and expression building."""

    def __init__(
        self,
        chunks: Dict[int, bytes],
        *,
        address: int = 0,
        symbols: Optional[Dict[str, int]] = None,
        got: Optional[Dict[str, int]] = None,
        plt: Optional[Dict[str, int]] = None,
        functions: Optional[Dict[str, Tuple[int, int]]] = None,
        executable: Iterable[int] = (),
        bss: int = 0,
        canary: bool = False,
        pie: bool = False,
        relro: Optional[str] = "Partial",
        path: str = "./target",
    ):
        self.chunks = dict(chunks)
        self.address = address
        self.load_addr = address
        self.symbols = dict(symbols or {})
        self.got = dict(got or {})
        self.plt = dict(plt or {})
        self.functions = {name: FakeFunction(*spec) for name, spec in (functions or {}).items()}
        self.executable_segments = [FakeSegment(vaddr, self.chunks[vaddr]) for vaddr in executable]
        self._bss = bss
        self.canary = canary
        self.pie = pie
        self.relro = relro
        self.nx = True
        self.path = path

    def read(self, address: int, count: int) -> bytes:
        for base, data in self.chunks.items():
            if base <= address and address + count <= base + len(data):
                return data[address - base : address - base + count]
        raise ValueError(f"address {address:#x} not in image")

    def search(self, needle: bytes) -> Iterable[int]:
        for base, data in sorted(self.chunks.items()):
            start = data.find(needle)
            while start != -1:
                yield base + start
                start = data.find(needle, start + 1)

    def bss(self, offset: int = 0) -> int:
        return self._bss + offset if self._bss else 0

    def dynamic_value_by_tag(self, tag: str) -> Optional[int]:
        return None


def make_target(*, canary: bool = False, pie: bool = False, relro: str = "Partial") -> FakeElf:
    """A non-PIE target with the ret2csu gadgets and a ``read`` import."""

    text = bytearray(b"\x90" * 0x100)
    text[CSU_INIT_ADDR - 0x401200 : CSU_INIT_ADDR - 0x401200 + len(CSU_INIT_CODE)] = CSU_INIT_CODE
    dynamic = (12).to_bytes(8, "little") + FINI_ADDR.to_bytes(8, "little")
    return FakeElf(
        {0x401200: bytes(text), DT_FINI_SLOT - 8: dynamic},
        address=0x400000,
        symbols={"read": READ_PLT, "main": MAIN_ADDR, "_fini": FINI_ADDR},
        got={"read": READ_GOT},
        plt={"read": READ_PLT, "__stack_chk_fail": STACK_CHK_FAIL_PLT},
        functions={"__libc_csu_init": (CSU_INIT_ADDR, len(CSU_INIT_CODE)), "main": (MAIN_ADDR, 0x40)},
        executable=[0x401200],
        bss=BSS_ADDR,
        canary=canary,
        pie=pie,
        relro=relro,
    )


def make_libc(read_addr: int = LIBC_READ_ADDR, code: bytes = bytes.fromhex("31c00f05c3")) -> FakeElf:
    """A libc whose ``__read`` is ``xor eax, eax; syscall; ret`` by default."""

    return FakeElf(
        {read_addr: code},
        functions={"__read": (read_addr, len(code))},
        path="./libc.so.6",
    )


def elf_regions(state) -> List[MemoryRegion]:
    return [
        MemoryRegion(0x400000, 0x401000, MM_READ, ELF_LABEL),
        MemoryRegion(0x401000, 0x402000, MM_READ | MM_EXEC, ELF_LABEL),
        MemoryRegion(0x7F0000000000, 0x7F0000001000, MM_READ | MM_EXEC, "libc.so.6"),
    ]


def make_session(
    elf: Optional[FakeElf] = None,
    libc: Optional[FakeElf] = None,
    **config,
) -> ExploitSession:
    config.setdefault("elf_filename", "./target")
    config.setdefault("modules", [])
    config.setdefault("techniques", [])
    elf = elf if elf is not None else make_target()
    exploit = Exploit(elf, libc)
    exploit.emulated_elf_base = elf.address
    exploit.emulated_elf_end = elf.address + 0x2000
    return ExploitSession(AegConfig(**config), exploit, region_provider=elf_regions)
