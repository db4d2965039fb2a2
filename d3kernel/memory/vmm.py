"""Virtual memory areas of a process and the address space that enforces them."""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from d3kernel.memory.frames import PAGE_SIZE, FrameRange, MemorySpace, PageFrameAllocator
from d3kernel.memory.pages import PageRange, PageTableFlags, Paging

_log = logging.getLogger(__name__)

TAG_SIZE = 8
_FILLER = ord("-")
DEFAULT_TAG = bytes([_FILLER]) * TAG_SIZE


class VmaType(Enum):
    """What a virtual memory area is used for."""

    CODE = "Code"
    HEAP = "Heap"
    ENVIRONMENT = "Environment"
    DEVICE_MEMORY = "DeviceMemory"
    USER_STACK = "UserStack"
    KERNEL_STACK = "KernelStack"


@dataclass
class VirtualMemoryArea:
    """A range of pages with a type and a short tag used for debugging."""

    range: PageRange
    typ: VmaType
    tag: bytes = DEFAULT_TAG

    @classmethod
    def new_with_tag(cls, range: PageRange, typ: VmaType, tag: str) -> VirtualMemoryArea:
        """Create an area whose tag is ``tag``, cut to eight bytes and padded with dashes."""
        encoded = tag.encode("utf-8")[:TAG_SIZE]
        return cls(range, typ, encoded.ljust(TAG_SIZE, b"-"))

    @classmethod
    def new_with_id(cls, range: PageRange, typ: VmaType, tid: int) -> VirtualMemoryArea:
        """Create an area tagged with the right-aligned decimal digits of ``tid``.

        Only the lowest eight digits are kept; zero gives a tag of dashes.
        """
        digits = str(tid)[-TAG_SIZE:] if tid > 0 else ""
        return cls(range, typ, digits.encode("ascii").rjust(TAG_SIZE, b"-"))

    @classmethod
    def from_address(cls, start: int, size: int, typ: VmaType) -> VirtualMemoryArea:
        """Create an area covering ``size`` bytes from the page-aligned address ``start``."""
        if start % PAGE_SIZE:
            raise ValueError("VirtualMemoryArea: Address is not page aligned")
        page_count = -(-size // PAGE_SIZE)
        return cls(PageRange.from_count(start, page_count), typ)

    @property
    def start(self) -> int:
        return self.range.start

    @property
    def end(self) -> int:
        return self.range.end

    @property
    def tag_str(self) -> str:
        try:
            return self.tag.decode("utf-8")
        except UnicodeDecodeError:
            return "<invalid>"

    def overlaps_with(self, other: VirtualMemoryArea) -> bool:
        return self.range.end > other.range.start and self.range.start < other.range.end

    def __repr__(self) -> str:
        return (
            f"   VMA [0x{self.range.start:x}; 0x{self.range.end:x}], "
            f'type: {self.typ.value}, tag: "{self.tag_str}"'
        )


class VirtualAddressSpace:
    """The memory areas of one process together with its page tables."""

    def __init__(self, page_tables: Paging) -> None:
        self.page_tables = page_tables
        self._areas: list[VirtualMemoryArea] = []
        self._lock = threading.RLock()
        self._released = False

    def page_table_address(self) -> int:
        return self.page_tables.page_table_address()

    def add_vma(self, area: VirtualMemoryArea) -> None:
        """Record ``area``; raise ValueError if it overlaps an existing one."""
        with self._lock:
            if any(existing.overlaps_with(area) for existing in self._areas):
                raise ValueError("Trying to add a VMA, which overlaps with an existing one!")
            self._areas.append(area)

    def find_vmas(self, typ: VmaType) -> list[VirtualMemoryArea]:
        """Return copies of all areas of type ``typ``, sorted by start address."""
        with self._lock:
            found = [dataclasses.replace(area) for area in self._areas if area.typ is typ]
        return sorted(found, key=lambda area: area.start)

    def update_vma(self, vma: VirtualMemoryArea,
                   update: Callable[[VirtualMemoryArea], None]) -> None:
        """Apply ``update`` to the stored area equal to ``vma``."""
        with self._lock:
            for area in self._areas:
                if area == vma:
                    update(area)
                    return
        raise LookupError("Trying to update a non-existent VMA!")

    def map(self, pages: PageRange, space: MemorySpace, flags: PageTableFlags,
            mem_type: VmaType, tag: str) -> None:
        """Record an area for ``pages`` and map them in the page tables."""
        self.add_vma(VirtualMemoryArea.new_with_tag(pages, mem_type, tag))
        self.page_tables.map(pages, space, flags)

    def map_physical(self, frames: FrameRange, pages: PageRange, space: MemorySpace,
                     flags: PageTableFlags, mem_type: VmaType, tag: str) -> None:
        """Record an area for ``pages`` and map ``frames`` onto them."""
        self.add_vma(VirtualMemoryArea.new_with_tag(pages, mem_type, tag))
        self.page_tables.map_physical(frames, pages, space, flags)

    def map_kernel_stack(self, pages: PageRange, tag: str) -> None:
        """Record a kernel stack area; its frames are identity mapped already."""
        self.add_vma(VirtualMemoryArea.new_with_tag(pages, VmaType.KERNEL_STACK, tag))

    def set_flags(self, pages: PageRange, flags: PageTableFlags) -> None:
        self.page_tables.set_flags(pages, flags)

    def grow_downwards(self, vma: VirtualMemoryArea, pages: int) -> VirtualMemoryArea:
        """Map ``pages`` new user pages below ``vma`` and extend it; return the grown area."""
        new_pages = PageRange(vma.range.start - pages * PAGE_SIZE, vma.range.start)
        self.page_tables.map(
            new_pages,
            MemorySpace.USER,
            PageTableFlags.PRESENT | PageTableFlags.WRITABLE | PageTableFlags.USER_ACCESSIBLE,
        )
        grown = VirtualMemoryArea(PageRange(new_pages.start, vma.range.end), vma.typ, vma.tag)

        def extend(area: VirtualMemoryArea) -> None:
            area.range = grown.range

        self.update_vma(vma, extend)
        return grown

    def dump(self, pid: int) -> str:
        """Log the areas of process ``pid`` and return the logged text."""
        with self._lock:
            lines = [f"VMAs of process [{pid}]"] + [repr(area) for area in self._areas]
        for line in lines:
            _log.info("%s", line)
        return "\n".join(lines)

    def release(self) -> None:
        """Unmap every area and free its frames; later calls do nothing."""
        with self._lock:
            if self._released:
                return
            for area in self._areas:
                self.page_tables.unmap(area.range, True)
            self._areas.clear()
            self._released = True

    def __enter__(self) -> VirtualAddressSpace:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


def create_kernel_address_space(allocator: PageFrameAllocator) -> Paging:
    """Create page tables mapping all physical memory one to one into kernel space."""
    paging = Paging(allocator, 4)
    limit = allocator.phys_limit - allocator.phys_limit % PAGE_SIZE
    paging.map(PageRange(0, limit), MemorySpace.KERNEL,
               PageTableFlags.PRESENT | PageTableFlags.WRITABLE)
    return paging


def clone_address_space(other: VirtualAddressSpace) -> Paging:
    """Return a copy of the page tables of ``other``."""
    return Paging.from_other(other.page_tables)