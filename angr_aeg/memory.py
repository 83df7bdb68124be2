"""Virtual memory introspection for a single execution state."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional

import claripy
from angr.errors import SimError

from .utils.state import RegisterManager

logger = logging.getLogger(__name__)

PAGE_SIZE = 0x1000

MM_READ = 1
MM_WRITE = 2
MM_EXEC = 4

ELF_LABEL = "[elf]"
HEAP_LABEL = "[heap]"
STACK_LABEL = "[stack]"

# Upper bound on pages walked in each direction while locating the stack.
MAX_STACK_PAGES = 0x4000


@dataclass(frozen=True, order=True)
class MemoryRegion:
    """A half-open ``[start, end)`` mapping."""

    start: int
    end: int
    prot: int = 0
    module: str = ""

    def __contains__(self, address: int) -> bool:
        return self.start <= address < self.end

    @property
    def size(self) -> int:
        return self.end - self.start

    def overlaps(self, other: "MemoryRegion") -> bool:
        return self.start < other.end and other.start < self.end

    def perm_str(self) -> str:
        return (
            ("R" if self.prot & MM_READ else "-")
            + ("W" if self.prot & MM_WRITE else "-")
            + ("X" if self.prot & MM_EXEC else "-")
        )


RegionProvider = Callable[[Any], Iterable[MemoryRegion]]


def loader_regions(state: Any) -> List[MemoryRegion]:
    """Enumerate the segments of every object angr's loader mapped."""

    loader = state.project.loader
    regions: List[MemoryRegion] = []
    for obj in loader.all_objects:
        if obj is loader.main_object:
            label = ELF_LABEL
        else:
            label = os.path.basename(getattr(obj, "binary", None) or getattr(obj, "binary_basename", "") or "")
        for seg in getattr(obj, "segments", []):
            memsize = int(getattr(seg, "memsize", 0) or 0)
            if memsize <= 0:
                continue
            prot = 0
            if getattr(seg, "is_readable", False):
                prot |= MM_READ
            if getattr(seg, "is_writable", False):
                prot |= MM_WRITE
            if getattr(seg, "is_executable", False):
                prot |= MM_EXEC
            start = int(seg.vaddr)
            regions.append(MemoryRegion(start, start + memsize, prot, label))

    heap = getattr(state, "heap", None)
    heap_base = getattr(heap, "heap_base", None)
    heap_location = getattr(heap, "heap_location", None)
    if isinstance(heap_base, int) and isinstance(heap_location, int) and heap_location > heap_base:
        regions.append(MemoryRegion(heap_base, heap_location, MM_READ | MM_WRITE, HEAP_LABEL))
    return regions


def kmp_search(haystack: bytes, needle: bytes) -> List[int]:
    """Return every offset at which ``needle`` occurs in ``haystack``."""

    if not needle:
        return []

    failure = [0] * len(needle)
    k = 0
    for i in range(1, len(needle)):
        while k and needle[i] != needle[k]:
            k = failure[k - 1]
        if needle[i] == needle[k]:
            k += 1
        failure[i] = k

    matches: List[int] = []
    k = 0
    for i, byte in enumerate(haystack):
        while k and byte != needle[k]:
            k = failure[k - 1]
        if byte == needle[k]:
            k += 1
        if k == len(needle):
            matches.append(i - k + 1)
            k = failure[k - 1]
    return matches


class MemoryManager:
    """Reads, writes and searches the address space of one state."""

    def __init__(self, state: Any, region_provider: Optional[RegionProvider] = None):
        self.state = state
        self.region_provider = region_provider or loader_regions

    @property
    def _endness(self) -> str:
        return self.state.arch.memory_endness

    def is_symbolic(self, address: int, size: int) -> bool:
        try:
            return bool(self.state.memory.load(address, size).symbolic)
        except SimError as exc:
            logger.warning("Cannot inspect memory at %#x: %s", address, exc)
            return False

    def read_symbolic(self, address: int, size: int) -> Optional[claripy.ast.BV]:
        """Load ``size`` bytes as a little-endian value."""

        try:
            return self.state.memory.load(address, size, endness=self._endness)
        except SimError as exc:
            logger.warning("Cannot read symbolic data from memory: %#x (%s)", address, exc)
            return None

    def read_concrete(self, address: int, size: int, concretize: bool = True) -> bytes:
        """Read ``size`` bytes concretely.

        With ``concretize`` unset, symbolic bytes are skipped (left as zero)
        instead of being concretized; a memory fault still yields ``b""``.
        """

        if concretize:
            try:
                data = self.state.memory.load(address, size)
                return self.state.solver.eval(data, cast_to=bytes)
            except SimError:
                logger.warning("Cannot read concrete data from memory: %#x", address)
                return b""

        buf = bytearray(size)
        cursor, end = address, address + size
        while cursor < end:
            chunk_end = min((cursor & ~(PAGE_SIZE - 1)) + PAGE_SIZE, end)
            try:
                chunk = self.state.memory.load(cursor, chunk_end - cursor)
                if chunk.symbolic:
                    self._read_mixed(cursor, chunk_end, buf, cursor - address)
                else:
                    buf[cursor - address : chunk_end - address] = self.state.solver.eval(chunk, cast_to=bytes)
            except SimError:
                logger.warning("Cannot read concrete data from memory: %#x", cursor)
                return b""
            cursor = chunk_end
        return bytes(buf)

    def _read_mixed(self, start: int, end: int, buf: bytearray, pos: int) -> None:
        for i, address in enumerate(range(start, end), pos):
            byte = self.state.memory.load(address, 1)
            if not byte.symbolic:
                buf[i] = self.state.solver.eval(byte)

    def write_symbolic(self, address: int, value: claripy.ast.BV) -> bool:
        try:
            self.state.memory.store(address, value, endness=self._endness)
        except SimError:
            logger.warning("Cannot write symbolic data to memory: %#x", address)
            return False
        return True

    def write_concrete(self, address: int, value: int, size: int = 8) -> bool:
        try:
            self.state.memory.store(address, claripy.BVV(value, size * 8), endness=self._endness)
        except SimError:
            logger.warning("Cannot write concrete data to memory: %#x", address)
            return False
        return True

    def is_mapped(self, address: int) -> bool:
        try:
            self.state.memory.permissions(address)
        except SimError:
            return False
        return True

    def search(self, needle: bytes) -> List[int]:
        """Return every address of ``needle`` inside a single mapped region."""

        results: List[int] = []
        for region in self.get_map_info():
            start = region.start
            # Some mapped regions have inaccessible leading bytes.
            while start < region.end and not self.is_mapped(start):
                start = (start & ~(PAGE_SIZE - 1)) + PAGE_SIZE
            if start >= region.end:
                continue

            haystack = self.read_concrete(start, region.end - start, concretize=False)
            results.extend(start + offset for offset in kmp_search(haystack, needle))
        return results

    def get_map_info(self) -> List[MemoryRegion]:
        """Return non-overlapping regions sorted by start address."""

        regions: List[MemoryRegion] = []
        for region in sorted(self.region_provider(self.state)):
            if region.start >= region.end:
                continue
            if regions and regions[-1].overlaps(region):
                logger.debug("Dropping overlapping region %#x-%#x", region.start, region.end)
                continue
            regions.append(region)

        stack = self._locate_stack()
        if stack is not None and not any(stack.overlaps(r) for r in regions):
            regions.append(stack)
            regions.sort()
        return regions

    def _locate_stack(self) -> Optional[MemoryRegion]:
        # The region provider cannot report the stack mapping, so walk it page
        # by page from the page holding rsp.
        rsp = RegisterManager(self.state).read_concrete("rsp")
        page_mask = ~(PAGE_SIZE - 1)

        begin = rsp & page_mask
        for _ in range(MAX_STACK_PAGES):
            if not self.is_mapped(begin):
                break
            begin -= PAGE_SIZE
        begin += PAGE_SIZE

        end = rsp & page_mask
        for _ in range(MAX_STACK_PAGES):
            if not self.is_mapped(end):
                break
            end += PAGE_SIZE
        end -= PAGE_SIZE

        if begin >= end:
            return None
        return MemoryRegion(begin, end, MM_READ | MM_WRITE, STACK_LABEL)

    def find_region(self, address: int) -> Optional[MemoryRegion]:
        for region in self.get_map_info():
            if address in region:
                return region
        return None

    def module_base(self, module: str) -> Optional[int]:
        starts = [r.start for r in self.get_map_info() if r.module == module]
        return min(starts) if starts else None

    def show_map_info(self) -> None:
        lines = ["Dumping memory map...", "--------------- [VMMAP] ---------------", "Start\t\tEnd\t\tPerm\tModule"]
        for region in self.get_map_info():
            lines.append(f"{region.start:#x}\t{region.end:#x}\t{region.perm_str()}\t{region.module}")
        logger.info("\n".join(lines))


__all__ = [
    "ELF_LABEL",
    "HEAP_LABEL",
    "MM_EXEC",
    "MM_READ",
    "MM_WRITE",
    "MemoryManager",
    "MemoryRegion",
    "PAGE_SIZE",
    "RegionProvider",
    "STACK_LABEL",
    "kmp_search",
    "loader_regions",
]
