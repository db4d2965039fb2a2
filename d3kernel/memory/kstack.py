"""Allocator for kernel thread stacks, backed directly by page frames."""

from __future__ import annotations

from d3kernel.memory.frames import PAGE_SIZE, FrameRange, PageFrameAllocator


class StackAllocationError(Exception):
    """Raised when a stack cannot be allocated with the requested alignment."""


class StackAllocator:
    """Hands out whole page frames for stacks.

    Kernel memory is identity mapped, so the frames need no extra mapping.
    """

    def __init__(self, frames: PageFrameAllocator) -> None:
        self.frames = frames

    def allocate(self, size: int, align: int) -> FrameRange:
        """Allocate enough frames for ``size`` bytes aligned to ``align``."""
        if PAGE_SIZE % align != 0:
            raise StackAllocationError(f"alignment {align} does not divide the page size")
        frame_count = -(-size // PAGE_SIZE)
        return self.frames.alloc(frame_count)

    def deallocate(self, address: int, size: int, align: int) -> None:
        """Return a stack to the frame allocator; addresses above physical memory are ignored."""
        if address >= self.frames.phys_limit:
            return
        if PAGE_SIZE % align != 0:
            raise ValueError(f"alignment {align} does not divide the page size")
        if size % PAGE_SIZE != 0:
            raise ValueError(f"stack size {size} is not a multiple of the page size")
        self.frames.free(FrameRange(address, address + size))