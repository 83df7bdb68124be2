from __future__ import annotations

import unittest

import claripy

from angr_aeg.memory import (
    ELF_LABEL,
    PAGE_SIZE,
    STACK_LABEL,
    MemoryManager,
    MemoryRegion,
    kmp_search,
)

from support import STACK_RSP, FakeState


class KmpSearchTests(unittest.TestCase):
    def test_finds_every_occurrence(self) -> None:
        self.assertEqual(kmp_search(b"abababa", b"aba"), [0, 2, 4])

    def test_empty_needle_or_missing(self) -> None:
        self.assertEqual(kmp_search(b"abc", b""), [])
        self.assertEqual(kmp_search(b"abc", b"d"), [])


class MemoryManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.state = FakeState()
        self.regions = [
            MemoryRegion(0x500000, 0x500000 + PAGE_SIZE, 3, "data"),
        ]
        self.state.memory.map(0x500000, PAGE_SIZE)
        self.mem = MemoryManager(self.state, lambda state: list(self.regions))

    def test_search_returns_region_start_plus_offset(self) -> None:
        start = 0x500000
        self.state.memory.store_bytes(start + 0x10, b"NEEDLE")
        self.assertEqual(self.mem.search(b"NEEDLE"), [start + 0x10])

    def test_search_ignores_regions_without_needle(self) -> None:
        self.assertEqual(self.mem.search(b"NEEDLE"), [])

    def test_search_skips_unmapped_leading_bytes(self) -> None:
        self.regions.append(MemoryRegion(0x600000, 0x600000 + 2 * PAGE_SIZE, 3, "gap"))
        self.state.memory.map(0x600000 + PAGE_SIZE, PAGE_SIZE)
        self.state.memory.store_bytes(0x600000 + PAGE_SIZE + 4, b"NEEDLE")
        self.assertEqual(self.mem.search(b"NEEDLE"), [0x600000 + PAGE_SIZE + 4])

    def test_map_info_is_sorted_and_non_overlapping(self) -> None:
        self.regions.extend(
            [
                MemoryRegion(0x400000, 0x402000, 5, ELF_LABEL),
                MemoryRegion(0x401000, 0x403000, 5, "overlap"),
            ]
        )
        regions = self.mem.get_map_info()
        starts = [region.start for region in regions]
        self.assertEqual(starts, sorted(starts))
        for left, right in zip(regions, regions[1:]):
            self.assertLessEqual(left.end, right.start)
        self.assertNotIn("overlap", [region.module for region in regions])

    def test_stack_region_is_page_aligned(self) -> None:
        stack = [region for region in self.mem.get_map_info() if region.module == STACK_LABEL]
        self.assertEqual(len(stack), 1)
        region = stack[0]
        self.assertLess(region.start, region.end)
        self.assertEqual(region.start % PAGE_SIZE, 0)
        self.assertEqual(region.end % PAGE_SIZE, 0)
        self.assertIn(STACK_RSP, region)

    def test_read_concrete_skips_symbolic_bytes(self) -> None:
        self.state.memory.store_bytes(STACK_RSP, b"AB")
        self.state.memory.store(STACK_RSP + 2, claripy.BVS("input", 8))
        self.assertEqual(self.mem.read_concrete(STACK_RSP, 3, concretize=False), b"AB\x00")
        self.assertTrue(self.mem.is_symbolic(STACK_RSP + 2, 1))

    def test_read_concrete_loads_concrete_pages_at_once(self) -> None:
        start = 0x500000
        self.state.memory.map(start + PAGE_SIZE, PAGE_SIZE)
        self.state.memory.store_bytes(start + PAGE_SIZE - 2, b"XYZW")
        self.state.memory.store(start + PAGE_SIZE + 2, claripy.BVS("input", 8))

        loads = []
        load = self.state.memory.load

        def counting_load(address, size, endness=None):
            loads.append((address, size))
            return load(address, size, endness)

        self.state.memory.load = counting_load
        data = self.mem.read_concrete(start, 2 * PAGE_SIZE, concretize=False)

        self.assertEqual(len(data), 2 * PAGE_SIZE)
        self.assertEqual(data[PAGE_SIZE - 2 : PAGE_SIZE + 4], b"XYZW\x00\x00")
        # One load per page, plus single bytes only on the page holding input.
        self.assertEqual(loads[0], (start, PAGE_SIZE))
        self.assertEqual(loads[1], (start + PAGE_SIZE, PAGE_SIZE))
        self.assertEqual(len(loads), 2 + PAGE_SIZE)
        self.assertTrue(all(size == 1 for _, size in loads[2:]))

    def test_faults_are_reported_not_raised(self) -> None:
        self.assertEqual(self.mem.read_concrete(0x1000, 8), b"")
        self.assertIsNone(self.mem.read_symbolic(0x1000, 8))
        self.assertFalse(self.mem.write_concrete(0x1000, 1))
        self.assertFalse(self.mem.is_mapped(0x1000))

    def test_concrete_round_trip_is_little_endian(self) -> None:
        self.assertTrue(self.mem.write_concrete(STACK_RSP, 0x1122334455667788))
        self.assertEqual(self.mem.read_concrete(STACK_RSP, 2), b"\x88\x77")
        value = self.mem.read_symbolic(STACK_RSP, 8)
        self.assertEqual(self.state.solver.eval(value), 0x1122334455667788)

    def test_find_region_and_module_base(self) -> None:
        self.regions.extend(
            [
                MemoryRegion(0x400000, 0x401000, 4, ELF_LABEL),
                MemoryRegion(0x401000, 0x402000, 5, ELF_LABEL),
            ]
        )
        self.assertEqual(self.mem.find_region(0x401800).start, 0x401000)
        self.assertIsNone(self.mem.find_region(0x10))
        self.assertEqual(self.mem.module_base(ELF_LABEL), 0x400000)
        self.assertIsNone(self.mem.module_base("missing"))


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
