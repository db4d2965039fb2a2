"""Physical page frame allocator keeping free memory in an address-sorted list."""

from __future__ import annotations

import bisect
import threading
from dataclasses import dataclass
from enum import Enum, auto
from typing import Iterator

PAGE_SIZE = 0x1000


class MemorySpace(Enum):
    """Address space a mapping belongs to."""

    KERNEL = auto()
    USER = auto()


class OutOfMemoryError(MemoryError):
    """Raised when no free block is large enough for an allocation."""


@dataclass(frozen=True, order=True)
class FrameRange:
    """Half-open range ``[start, end)`` of page-aligned physical addresses."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start % PAGE_SIZE or self.end % PAGE_SIZE:
            raise ValueError(
                f"frame range [0x{self.start:x} - 0x{self.end:x}] is not page aligned"
            )
        if self.end < self.start:
            raise ValueError(
                f"frame range end 0x{self.end:x} lies below start 0x{self.start:x}"
            )

    @classmethod
    def from_count(cls, start: int, frame_count: int) -> FrameRange:
        """Build a range of ``frame_count`` frames beginning at address ``start``."""
        return cls(start, start + frame_count * PAGE_SIZE)

    @property
    def frame_count(self) -> int:
        return (self.end - self.start) // PAGE_SIZE

    @property
    def size(self) -> int:
        """Size of the range in bytes."""
        return self.end - self.start

    def __len__(self) -> int:
        return self.frame_count

    def __iter__(self) -> Iterator[int]:
        """Yield the start address of every frame in the range."""
        return iter(range(self.start, self.end, PAGE_SIZE))


class PageFrameAllocator:
    """First-fit allocator over contiguous blocks of free page frames.

    Free blocks are kept sorted by address; freed ranges are fused with
    adjacent free blocks.
    """

    def __init__(self) -> None:
        self._blocks: list[FrameRange] = []
        self._lock = threading.Lock()
        self._phys_limit = 0

    @property
    def locked(self) -> bool:
        """True while another caller holds the allocator."""
        return self._lock.locked()

    @property
    def phys_limit(self) -> int:
        """Highest physical address managed by the allocator."""
        return self._phys_limit

    def insert(self, region: FrameRange) -> None:
        """Add a region of available memory found while booting.

        The first page is never handed out, so that address zero stays unused.
        """
        if region.start == 0:
            if region.end <= PAGE_SIZE:
                return
            region = FrameRange(PAGE_SIZE, region.end)

        with self._lock:
            self._phys_limit = max(self._phys_limit, region.end)
            self._free_block(region)

    def alloc(self, frame_count: int) -> FrameRange:
        """Allocate ``frame_count`` contiguous frames from the first block that fits."""
        with self._lock:
            for index, block in enumerate(self._blocks):
                if block.frame_count >= frame_count:
                    del self._blocks[index]
                    allocated = FrameRange.from_count(block.start, frame_count)
                    if allocated.end < block.end:
                        self._insert_sorted(FrameRange(allocated.end, block.end))
                    return allocated
        raise OutOfMemoryError(f"no free block of {frame_count} frames")

    def free(self, frames: FrameRange) -> None:
        """Return ``frames`` to the allocator, fusing them with their neighbours."""
        with self._lock:
            self._free_block(frames)

    def reserve(self, frames: FrameRange) -> None:
        """Permanently remove ``frames`` from the free memory."""
        with self._lock:
            remaining: list[FrameRange] = []
            for block in self._blocks:
                if block.start > frames.end:
                    remaining.append(block)
                elif block.start < frames.start and block.end >= frames.start:
                    remaining.append(FrameRange(block.start, frames.start))
                    if block.end > frames.end:
                        remaining.append(FrameRange(frames.end, block.end))
                elif block.start <= frames.end and block.end >= frames.start:
                    if block.end > frames.end:
                        remaining.append(FrameRange(frames.end, block.end))
                else:
                    remaining.append(block)
            self._blocks = remaining

    def blocks(self) -> list[FrameRange]:
        """Return the free blocks in ascending address order."""
        with self._lock:
            return list(self._blocks)

    def dump(self) -> str:
        """Describe the free list, the available memory and the physical limit."""
        with self._lock:
            lines = [
                f"Block: [0x{block.start:x} - 0x{block.end:x}], "
                f"Frame count: [{block.frame_count}]"
                for block in self._blocks
            ]
            available = sum(block.frame_count for block in self._blocks)
            lines.append(f"Available memory: [{available * PAGE_SIZE // 1024} KiB]")
            lines.append(f"Physical limit: [0x{self._phys_limit:016x}]")
            return "\n".join(lines)

    def _insert_sorted(self, frames: FrameRange) -> None:
        starts = [block.start for block in self._blocks]
        self._blocks.insert(bisect.bisect_right(starts, frames.start), frames)

    def _free_block(self, frames: FrameRange) -> None:
        for index, block in enumerate(self._blocks):
            if frames.end == block.start:
                self._blocks[index] = FrameRange(frames.start, block.end)
                return
            if block.end == frames.start:
                merged = FrameRange(block.start, frames.end)
                following = index + 1
                if following < len(self._blocks) and self._blocks[following].start == merged.end:
                    merged = FrameRange(merged.start, self._blocks[following].end)
                    del self._blocks[following]
                self._blocks[index] = merged
                return
            if block.end > frames.start:
                break
        self._insert_sorted(frames)