import struct

import pytest

from d3kernel.memory.frames import PAGE_SIZE, FrameRange, PageFrameAllocator
from d3kernel.memory.nvmem import (
    AddressRangeMemoryMappingAttribute,
    FlushHintAddressStructure,
    Nfit,
    NfitStructureType,
    SystemPhysicalAddressRange,
    map_nonvolatile_memory,
)
from d3kernel.memory.pages import PageRange, Paging
from d3kernel.memory.vmm import VirtualAddressSpace, VmaType

BASE = 0x100000
LENGTH = 16 * PAGE_SIZE
ATTRS = int(AddressRangeMemoryMappingAttribute.WB | AddressRangeMemoryMappingAttribute.NV)


def _table(body, signature=b"NFIT"):
    header = struct.pack("<4sIBB6s8sIII", signature, 40 + len(body), 1, 0,
                         b"OEMID ", b"TABLEID ", 1, 0, 0)
    return header + struct.pack("<I", 0) + body


def _spa(base, length, attrs):
    return struct.pack("<HHHHII16sQQI", 0, 52, 1, 0, 0, 0, bytes(16), base, length, attrs)


def _flush(handle, hints):
    return struct.pack("<HHIH", 6, 10 + 8 * len(hints), handle, len(hints)) + b"".join(
        struct.pack("<Q", hint) for hint in hints
    )


@pytest.fixture
def nfit():
    return Nfit.parse(_table(_spa(BASE, LENGTH, ATTRS) + _flush(3, [0x9000, 0xA000])))


def test_parse_reads_header(nfit):
    assert nfit.signature == b"NFIT"
    assert nfit.length == 40 + 52 + 26


def test_structures_in_order(nfit):
    types = [structure.typ for structure in nfit.structures()]
    assert types == [NfitStructureType.SYSTEM_PHYSICAL_ADDRESS_RANGE,
                     NfitStructureType.FLUSH_HINT_ADDRESS]


def test_phys_addr_ranges(nfit):
    ranges = nfit.phys_addr_ranges()
    assert len(ranges) == 1
    spa = ranges[0]
    assert (spa.base, spa.length) == (BASE, LENGTH)
    assert spa.mapping_attributes == (AddressRangeMemoryMappingAttribute.WB
                                      | AddressRangeMemoryMappingAttribute.NV)


def test_as_frame_range(nfit):
    assert nfit.phys_addr_ranges()[0].as_frame_range() == FrameRange.from_count(BASE, 16)


def test_as_frame_range_rejects_unaligned_base():
    table = Nfit.parse(_table(_spa(BASE + 1, LENGTH, 0)))
    with pytest.raises(ValueError):
        table.phys_addr_ranges()[0].as_frame_range()


def test_flush_hint_addresses(nfit):
    hint = FlushHintAddressStructure.from_header(nfit.structures()[1])
    assert hint.device_handle == 3
    assert hint.flush_hint_addresses() == [0x9000, 0xA000]


def test_wrong_structure_type_rejected(nfit):
    with pytest.raises(ValueError):
        SystemPhysicalAddressRange.from_header(nfit.structures()[1])


def test_bad_signature_rejected():
    with pytest.raises(ValueError):
        Nfit.parse(_table(b"", signature=b"APIC"))


def test_truncated_table_rejected():
    with pytest.raises(ValueError):
        Nfit.parse(_table(_spa(BASE, LENGTH, 0))[:60])


def test_zero_length_structure_rejected():
    table = Nfit.parse(_table(struct.pack("<HH", 0, 0)))
    with pytest.raises(ValueError):
        table.structures()


def test_empty_table_has_no_ranges():
    assert Nfit.parse(_table(b"")).phys_addr_ranges() == []


def test_map_nonvolatile_memory(nfit):
    frames = PageFrameAllocator()
    frames.insert(FrameRange.from_count(0, 64))
    space = VirtualAddressSpace(Paging(frames))
    mapped = map_nonvolatile_memory(nfit, space)
    assert mapped == [PageRange.from_count(BASE, 16)]
    vma = space.find_vmas(VmaType.DEVICE_MEMORY)[0]
    assert vma.tag == b"nfit----"
    assert space.page_tables.translate(BASE + 0x10) == BASE + 0x10