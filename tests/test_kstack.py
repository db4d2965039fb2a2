import pytest

from d3kernel.memory.frames import PAGE_SIZE, FrameRange, PageFrameAllocator
from d3kernel.memory.kstack import StackAllocationError, StackAllocator


def make_stacks():
    frames = PageFrameAllocator()
    frames.insert(FrameRange(PAGE_SIZE, 64 * PAGE_SIZE))
    return frames, StackAllocator(frames)


def test_allocate_exact_pages():
    _, stacks = make_stacks()
    stack = stacks.allocate(3 * PAGE_SIZE, 8)
    assert stack.size == 3 * PAGE_SIZE


def test_allocate_rounds_up_to_whole_pages():
    _, stacks = make_stacks()
    stack = stacks.allocate(PAGE_SIZE + 1, 16)
    assert stack.size == 2 * PAGE_SIZE


def test_allocate_takes_frames_from_allocator():
    frames, stacks = make_stacks()
    stack = stacks.allocate(4 * PAGE_SIZE, PAGE_SIZE)
    for block in frames.blocks():
        assert stack.end <= block.start or stack.start >= block.end


def test_allocate_rejects_alignment_above_page_size():
    _, stacks = make_stacks()
    with pytest.raises(StackAllocationError):
        stacks.allocate(PAGE_SIZE, 2 * PAGE_SIZE)


def test_deallocate_returns_frames():
    frames, stacks = make_stacks()
    before = frames.blocks()
    stack = stacks.allocate(5 * PAGE_SIZE, 8)
    stacks.deallocate(stack.start, stack.size, 8)
    assert frames.blocks() == before


def test_deallocate_ignores_addresses_above_physical_memory():
    frames, stacks = make_stacks()
    before = frames.blocks()
    stacks.deallocate(frames.phys_limit + PAGE_SIZE, PAGE_SIZE, 8)
    assert frames.blocks() == before


def test_deallocate_rejects_partial_pages():
    _, stacks = make_stacks()
    stack = stacks.allocate(PAGE_SIZE, 8)
    with pytest.raises(ValueError):
        stacks.deallocate(stack.start, PAGE_SIZE + 1, 8)


def test_deallocate_rejects_bad_alignment():
    _, stacks = make_stacks()
    stack = stacks.allocate(PAGE_SIZE, 8)
    with pytest.raises(ValueError):
        stacks.deallocate(stack.start, PAGE_SIZE, 2 * PAGE_SIZE)