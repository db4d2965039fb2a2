"""Four-level page tables: mapping, unmapping, protection and translation."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Flag
from typing import Iterator, Optional

from d3kernel.memory.frames import PAGE_SIZE, FrameRange, MemorySpace, PageFrameAllocator

ENTRY_COUNT = 512
_INDEX_BITS = 9
_INDEX_MASK = ENTRY_COUNT - 1


class PageTableFlags(Flag):
    """Bits of a page table entry."""

    PRESENT = 1 << 0
    WRITABLE = 1 << 1
    USER_ACCESSIBLE = 1 << 2
    WRITE_THROUGH = 1 << 3
    NO_CACHE = 1 << 4
    ACCESSED = 1 << 5
    DIRTY = 1 << 6
    HUGE_PAGE = 1 << 7
    GLOBAL = 1 << 8
    NO_EXECUTE = 1 << 63


_NO_FLAGS = PageTableFlags(0)
_UNUSED_ENTRY = (0, _NO_FLAGS)


def page_table_index(virt_addr: int, level: int) -> int:
    """Return the index into the table of ``level`` (1 to 4) for ``virt_addr``."""
    return (virt_addr >> 12 >> ((level - 1) * _INDEX_BITS)) & _INDEX_MASK


def _align_down(address: int) -> int:
    return address - address % PAGE_SIZE


@dataclass(frozen=True, order=True)
class PageRange:
    """Half-open range ``[start, end)`` of page-aligned virtual addresses."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start % PAGE_SIZE or self.end % PAGE_SIZE:
            raise ValueError(
                f"page range [0x{self.start:x} - 0x{self.end:x}] is not page aligned"
            )
        if self.end < self.start:
            raise ValueError(
                f"page range end 0x{self.end:x} lies below start 0x{self.start:x}"
            )

    @classmethod
    def from_count(cls, start: int, page_count: int) -> PageRange:
        """Build a range of ``page_count`` pages beginning at address ``start``."""
        return cls(start, start + page_count * PAGE_SIZE)

    @property
    def page_count(self) -> int:
        return (self.end - self.start) // PAGE_SIZE

    def __len__(self) -> int:
        return self.page_count

    def __iter__(self) -> Iterator[int]:
        """Yield the start address of every page in the range."""
        return iter(range(self.start, self.end, PAGE_SIZE))

    def skip(self, page_count: int) -> PageRange:
        """Return the range without its first ``page_count`` pages."""
        return PageRange(self.start + page_count * PAGE_SIZE, self.end)


class PageTable:
    """A table of 512 entries, each a pair of physical address and flags."""

    def __init__(self) -> None:
        self._entries: list[tuple[int, PageTableFlags]] = [_UNUSED_ENTRY] * ENTRY_COUNT

    def __getitem__(self, index: int) -> tuple[int, PageTableFlags]:
        return self._entries[index]

    def __setitem__(self, index: int, entry: tuple[int, PageTableFlags]) -> None:
        address, flags = entry
        self._entries[index] = (address, flags)

    def __len__(self) -> int:
        return ENTRY_COUNT

    def __iter__(self) -> Iterator[tuple[int, PageTableFlags]]:
        return iter(list(self._entries))

    def is_unused(self, index: int) -> bool:
        return self._entries[index] == _UNUSED_ENTRY

    def set_unused(self, index: int) -> None:
        self._entries[index] = _UNUSED_ENTRY

    def set_flags(self, index: int, flags: PageTableFlags) -> None:
        """Replace the flags of an entry, keeping its address."""
        address, _ = self._entries[index]
        self._entries[index] = (address, flags)

    def zero(self) -> None:
        self._entries = [_UNUSED_ENTRY] * ENTRY_COUNT

    def is_empty(self) -> bool:
        return all(entry == _UNUSED_ENTRY for entry in self._entries)


class Paging:
    """Page table hierarchy of one address space.

    Every table occupies one page frame taken from ``frames``; the tables
    themselves are kept by the physical address of their frame.
    """

    def __init__(self, frames: PageFrameAllocator, depth: int = 4) -> None:
        self.frames = frames
        self.depth = depth
        self._tables: dict[int, PageTable] = {}
        self._lock = threading.RLock()
        self._released = False
        self._root = self._new_table()

    @property
    def root_address(self) -> int:
        """Physical address of the root table."""
        return self._root

    def page_table_address(self) -> int:
        """Physical address of the root table."""
        return self._root

    def table_at(self, address: int) -> PageTable:
        """Return the table stored in the frame at physical ``address``."""
        try:
            return self._tables[address]
        except KeyError:
            raise ValueError(f"no page table at 0x{address:x}") from None

    @classmethod
    def from_other(cls, other: Paging) -> Paging:
        """Create an address space holding a copy of every table of ``other``."""
        with other._lock:
            other._require_live()
            copy = cls(other.frames, other.depth)
            copy._copy_table(other, other.table_at(other.root_address),
                             copy.table_at(copy.root_address), other.depth)
        return copy

    def map(self, pages: PageRange, space: MemorySpace, flags: PageTableFlags) -> None:
        """Map ``pages`` into ``space``: identity for the kernel, fresh frames for users."""
        with self._lock:
            self._require_live()
            self._map_in_table(self._root_table(), FrameRange(0, 0), pages, space, flags, self.depth)

    def map_physical(self, frames: FrameRange, pages: PageRange, space: MemorySpace,
                     flags: PageTableFlags) -> None:
        """Map ``frames`` onto ``pages``; both must hold the same number of pages."""
        if frames.frame_count != pages.page_count:
            raise ValueError(
                f"{frames.frame_count} frames cannot be mapped onto {pages.page_count} pages"
            )
        with self._lock:
            self._require_live()
            self._map_in_table(self._root_table(), frames, pages, space, flags, self.depth)

    def map_io(self, frames: FrameRange) -> None:
        """Map device ``frames`` one to one into kernel space, uncached."""
        pages = PageRange(_align_down(frames.start), _align_down(frames.end))
        self.map(pages, MemorySpace.KERNEL,
                 PageTableFlags.PRESENT | PageTableFlags.WRITABLE | PageTableFlags.NO_CACHE)

    def translate(self, addr: int) -> Optional[int]:
        """Return the physical address for virtual ``addr``, or None if unmapped."""
        with self._lock:
            self._require_live()
            aligned = _align_down(addr)
            table = self._root_table()
            for level in range(self.depth, 0, -1):
                index = page_table_index(aligned, level)
                if table.is_unused(index):
                    return None
                address, _ = table[index]
                if level == 1:
                    return address + (addr - aligned)
                table = self.table_at(address)
            return None

    def unmap(self, pages: PageRange, free_physical: bool) -> None:
        """Remove the mappings of ``pages``, optionally freeing their frames.

        Tables left empty are released as well.
        """
        with self._lock:
            self._require_live()
            self._unmap_in_table(self._root_table(), pages, self.depth, free_physical)

    def set_flags(self, pages: PageRange, flags: PageTableFlags) -> None:
        """Replace the flags of the entries mapping ``pages``."""
        with self._lock:
            self._require_live()
            self._set_flags_in_table(self._root_table(), pages, flags, self.depth)

    def release(self) -> None:
        """Free every table frame of this address space; later calls do nothing."""
        with self._lock:
            if self._released:
                return
            self._drop_table(self._root, self.depth)
            self._released = True

    def __enter__(self) -> Paging:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    def _require_live(self) -> None:
        if self._released:
            raise RuntimeError("address space has been released")

    def _root_table(self) -> PageTable:
        return self._tables[self._root]

    def _new_table(self) -> int:
        address = self.frames.alloc(1).start
        self._tables[address] = PageTable()
        return address

    def _free_frame(self, address: int) -> None:
        self.frames.free(FrameRange(address, address + PAGE_SIZE))

    def _copy_table(self, source_paging: Paging, source: PageTable, target: PageTable,
                    level: int) -> None:
        if level == 1:
            for index, entry in enumerate(source):
                target[index] = entry
            return
        for index, (source_address, flags) in enumerate(source):
            if source.is_unused(index):
                target.set_unused(index)
                continue
            child = self._new_table()
            target[index] = (child, flags)
            self._copy_table(source_paging, source_paging.table_at(source_address),
                             self.table_at(child), level - 1)

    def _map_in_table(self, table: PageTable, frames: FrameRange, pages: PageRange,
                      space: MemorySpace, flags: PageTableFlags, level: int) -> int:
        start_index = page_table_index(pages.start, level)
        if level == 1:
            if space is MemorySpace.KERNEL:
                return self._identity_map_kernel(table, pages, flags)
            if frames.start == frames.end:
                return self._map_user(table, pages, flags)
            return self._map_user_physical(table, frames, pages, flags)

        total = 0
        for index in range(start_index, ENTRY_COUNT):
            if table.is_unused(index):
                table[index] = (self._new_table(), flags)
            child_address, _ = table[index]

            mapped = self._map_in_table(self.table_at(child_address), frames, pages,
                                        space, flags, level - 1)
            pages = pages.skip(mapped)
            total += mapped
            if frames.end > frames.start:
                frames = FrameRange(frames.start + mapped * PAGE_SIZE, frames.end)
            if pages.start >= pages.end:
                break
        return total

    def _unmap_in_table(self, table: PageTable, pages: PageRange, level: int,
                        free_physical: bool) -> int:
        start_index = page_table_index(pages.start, level)
        if level == 1:
            count = min(pages.page_count, ENTRY_COUNT - start_index)
            for index in range(start_index, start_index + count):
                if table.is_unused(index):
                    continue
                if free_physical:
                    address, _ = table[index]
                    self._free_frame(address)
                table.set_unused(index)
            return count

        total = 0
        for index in range(start_index, ENTRY_COUNT):
            if table.is_unused(index):
                continue
            child_address, _ = table[index]
            child = self.table_at(child_address)
            freed = self._unmap_in_table(child, pages, level - 1, free_physical)
            pages = pages.skip(freed)
            total += freed

            if child.is_empty():
                del self._tables[child_address]
                self._free_frame(child_address)
                table.set_unused(index)
            if pages.start >= pages.end:
                break
        return total

    def _set_flags_in_table(self, table: PageTable, pages: PageRange,
                            flags: PageTableFlags, level: int) -> int:
        start_index = page_table_index(pages.start, level)
        if level == 1:
            count = min(pages.page_count, ENTRY_COUNT - start_index)
            for index in range(start_index, start_index + count):
                table.set_flags(index, flags)
            return count

        total = 0
        for index in range(start_index, ENTRY_COUNT):
            if table.is_unused(index):
                continue
            child_address, _ = table[index]
            edited = self._set_flags_in_table(self.table_at(child_address), pages,
                                              flags, level - 1)
            pages = pages.skip(edited)
            total += edited
            if pages.start >= pages.end:
                break
        return total

    def _drop_table(self, address: int, level: int) -> None:
        table = self._tables.pop(address)
        if level > 1:
            for child_address, _ in table:
                if child_address != 0 and child_address in self._tables:
                    self._drop_table(child_address, level - 1)
        table.zero()
        self._free_frame(address)

    @staticmethod
    def _identity_map_kernel(table: PageTable, pages: PageRange, flags: PageTableFlags) -> int:
        start_index = page_table_index(pages.start, 1)
        count = min(pages.page_count, ENTRY_COUNT - start_index)
        for offset in range(count):
            table[start_index + offset] = (pages.start + offset * PAGE_SIZE, flags)
        return count

    def _map_user(self, table: PageTable, pages: PageRange, flags: PageTableFlags) -> int:
        start_index = page_table_index(pages.start, 1)
        count = min(pages.page_count, ENTRY_COUNT - start_index)
        for index in range(start_index, start_index + count):
            table[index] = (self.frames.alloc(1).start, flags)
        return count

    @staticmethod
    def _map_user_physical(table: PageTable, frames: FrameRange, pages: PageRange,
                           flags: PageTableFlags) -> int:
        start_index = page_table_index(pages.start, 1)
        count = min(pages.page_count, ENTRY_COUNT - start_index)
        for index, frame in zip(range(start_index, start_index + count), frames):
            table[index] = (frame, flags)
        return count