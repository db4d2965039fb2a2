"""Parsing of the ACPI NFIT table and mapping of non-volatile memory."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from enum import IntEnum, IntFlag

from d3kernel.memory.frames import PAGE_SIZE, FrameRange, MemorySpace
from d3kernel.memory.pages import PageRange, PageTableFlags
from d3kernel.memory.vmm import VirtualAddressSpace, VmaType

_log = logging.getLogger(__name__)

NFIT_SIGNATURE = b"NFIT"
_SDT_HEADER = struct.Struct("<4sIBB6s8sIII")
_NFIT_HEADER_SIZE = _SDT_HEADER.size + 4
_STRUCTURE_HEADER = struct.Struct("<HH")
_SPA = struct.Struct("<HHHHII16sQQI")
_FLUSH_HINT = struct.Struct("<HHIH")
_HINT = struct.Struct("<Q")


class NfitStructureType(IntEnum):
    SYSTEM_PHYSICAL_ADDRESS_RANGE = 0
    NVDIMM_REGION_MAPPING_STRUCTURE = 1
    INTERLEAVE = 2
    SMBIOS_MANAGEMENT_INFORMATION = 3
    NVDIMM_CONTROL_REGION = 4
    NVDIMM_BLOCK_DATA_WINDOW_REGION = 5
    FLUSH_HINT_ADDRESS = 6
    PLATFORM_CAPABILITIES = 7


class AddressRangeMemoryMappingAttribute(IntFlag):
    UC = 0x00000001
    WC = 0x00000002
    WT = 0x00000004
    WB = 0x00000008
    UCE = 0x00000010
    WP = 0x00001000
    RP = 0x00002000
    XP = 0x00004000
    NV = 0x00008000
    MORE_RELIABLE = 0x00010000
    RO = 0x00020000
    SP = 0x00040000


@dataclass(frozen=True)
class NfitStructureHeader:
    """Type and length of one NFIT structure, with the structure's raw bytes."""

    typ: int
    length: int
    data: bytes


def _require_type(header: NfitStructureHeader, expected: NfitStructureType, size: int) -> None:
    if header.typ != expected:
        raise ValueError(f"NFIT structure of type {header.typ} is not {expected.name}")
    if len(header.data) < size:
        raise ValueError("Invalid NFIT structure")


@dataclass(frozen=True)
class SystemPhysicalAddressRange:
    """A physical address range described by the NFIT."""

    header: NfitStructureHeader
    spa_range_structure_index: int
    flags: int
    proximity_domain: int
    address_range_type_guid: int
    base: int
    length: int
    mapping_attributes: AddressRangeMemoryMappingAttribute

    @classmethod
    def from_header(cls, header: NfitStructureHeader) -> SystemPhysicalAddressRange:
        _require_type(header, NfitStructureType.SYSTEM_PHYSICAL_ADDRESS_RANGE, _SPA.size)
        (_, _, index, flags, _, proximity, guid,
         base, length, attributes) = _SPA.unpack_from(header.data)
        return cls(header, index, flags, proximity, int.from_bytes(guid, "little"),
                   base, length, AddressRangeMemoryMappingAttribute(attributes))

    def as_frame_range(self) -> FrameRange:
        """Return the range as page frames; the base must be page aligned."""
        return FrameRange.from_count(self.base, self.length // PAGE_SIZE)


@dataclass(frozen=True)
class FlushHintAddressStructure:
    """Flush hint addresses of one NVDIMM."""

    header: NfitStructureHeader
    device_handle: int
    hint_count: int

    @classmethod
    def from_header(cls, header: NfitStructureHeader) -> FlushHintAddressStructure:
        _require_type(header, NfitStructureType.FLUSH_HINT_ADDRESS, _FLUSH_HINT.size)
        _, _, handle, count = _FLUSH_HINT.unpack_from(header.data)
        if len(header.data) < _FLUSH_HINT.size + count * _HINT.size:
            raise ValueError("Invalid NFIT structure")
        return cls(header, handle, count)

    def flush_hint_addresses(self) -> list[int]:
        return [
            _HINT.unpack_from(self.header.data, _FLUSH_HINT.size + i * _HINT.size)[0]
            for i in range(self.hint_count)
        ]


@dataclass(frozen=True)
class Nfit:
    """The NVDIMM Firmware Interface Table."""

    signature: bytes
    length: int
    revision: int
    checksum: int
    oem_id: bytes
    oem_table_id: bytes
    oem_revision: int
    creator_id: int
    creator_revision: int
    data: bytes

    @classmethod
    def parse(cls, data: bytes) -> Nfit:
        """Parse a complete NFIT table; raise ValueError if it is malformed."""
        if len(data) < _NFIT_HEADER_SIZE:
            raise ValueError("NFIT table is too short")
        fields = _SDT_HEADER.unpack_from(data)
        signature, length = fields[0], fields[1]
        if signature != NFIT_SIGNATURE:
            raise ValueError(f"unexpected table signature {signature!r}")
        if length < _NFIT_HEADER_SIZE or length > len(data):
            raise ValueError(f"invalid NFIT table length {length}")
        return cls(*fields, data=bytes(data[:length]))

    def structures(self) -> list[NfitStructureHeader]:
        """Return every structure that follows the table header."""
        found = []
        offset = _NFIT_HEADER_SIZE
        while offset < self.length:
            if self.length - offset < _STRUCTURE_HEADER.size:
                raise ValueError("Invalid NFIT structure")
            typ, length = _STRUCTURE_HEADER.unpack_from(self.data, offset)
            if length < _STRUCTURE_HEADER.size or offset + length > self.length:
                raise ValueError("Invalid NFIT structure")
            found.append(NfitStructureHeader(typ, length, self.data[offset:offset + length]))
            offset += length
        return found

    def phys_addr_ranges(self) -> list[SystemPhysicalAddressRange]:
        return [
            SystemPhysicalAddressRange.from_header(structure)
            for structure in self.structures()
            if structure.typ == NfitStructureType.SYSTEM_PHYSICAL_ADDRESS_RANGE
        ]


def map_nonvolatile_memory(nfit: Nfit, address_space: VirtualAddressSpace) -> list[PageRange]:
    """Map every non-volatile range of ``nfit`` into kernel space; return the mapped pages."""
    mapped = []
    for spa in nfit.phys_addr_ranges():
        _log.info(
            "Found non-volatile memory (Address: [0x%x], Length: [%d MiB])",
            spa.base, spa.length // 1024 // 1024,
        )
        pages = PageRange.from_count(spa.base, spa.length // PAGE_SIZE)
        address_space.map(pages, MemorySpace.KERNEL,
                          PageTableFlags.PRESENT | PageTableFlags.WRITABLE,
                          VmaType.DEVICE_MEMORY, "nfit")
        mapped.append(pages)
    return mapped