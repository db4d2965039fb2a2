# d3kernel

Core data structures of a small educational x86-64 kernel, modelled in plain
Python so they can be explored and tested without a machine to boot. Page
tables and free lists are ordinary Python objects; nothing here touches real
hardware or real memory.

## What is inside

- `d3kernel.memory.frames`: `PageFrameAllocator`, a first-fit allocator over
  page frames that keeps free blocks sorted by address and fuses freed ranges
  with their neighbours. It offers `insert` (never hands out the first page),
  `alloc`, `free`, `reserve`, `blocks`, `dump` and the `phys_limit` property.
  `FrameRange` is a half-open, page-aligned range of physical addresses;
  `OutOfMemoryError` is raised when no block is large enough. `MemorySpace`
  tells kernel from user mappings, and `PAGE_SIZE` is 4096.
- `d3kernel.memory.kstack`: `StackAllocator`, which takes whole frames from a
  `PageFrameAllocator` for kernel stacks (`allocate(size, align)`,
  `deallocate(address, size, align)`), raising `StackAllocationError` for an
  alignment that does not divide the page size.
- `d3kernel.memory.pages`: four-level page tables. `Paging` maps pages
  (identity for kernel space, fresh frames or given frames for user space),
  unmaps them, changes their flags, translates virtual addresses, copies a
  whole hierarchy with `Paging.from_other`, and frees its tables with
  `release`. Also `PageTable`, `PageRange`, `PageTableFlags` and
  `page_table_index`.
- `d3kernel.memory.vmm`: `VirtualAddressSpace` holds tagged
  `VirtualMemoryArea`s of a `VmaType` next to its `Paging`, refuses
  overlapping areas, finds areas by type, grows stacks downwards, dumps its
  areas to the log and unmaps them all on `release`.
  `create_kernel_address_space(allocator)` maps all physical memory one to one;
  `clone_address_space(other)` copies another space's page tables.
- `d3kernel.memory.nvmem`: `Nfit.parse` reads an ACPI NFIT table from bytes;
  `structures`, `phys_addr_ranges` and `FlushHintAddressStructure` expose its
  contents, and `map_nonvolatile_memory(nfit, address_space)` maps every
  non-volatile range into kernel space.
- `d3kernel.naming.stat`: `Mode` and `Stat`, the metadata kept for named
  objects.
- `d3kernel.logger`: `Logger` formats coloured, levelled log lines
  (`Level`, `ansi_color`, `level_token`) and writes them to every registered
  stream, or to a serial stream while none is registered.

## Installing

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Examples

```python
from d3kernel.memory.frames import FrameRange, PageFrameAllocator

allocator = PageFrameAllocator()
allocator.insert(FrameRange.from_count(0, 16))   # first page is kept back
block = allocator.alloc(4)                       # FrameRange(start=0x1000, end=0x5000)
allocator.free(block)
print(allocator.dump())
# Block: [0x1000 - 0x10000], Frame count: [15]
# Available memory: [60 KiB]
# Physical limit: [0x0000000000010000]
```

```python
from d3kernel.memory.frames import FrameRange, MemorySpace, PageFrameAllocator
from d3kernel.memory.pages import PageRange, PageTableFlags, Paging

frames = PageFrameAllocator()
frames.insert(FrameRange.from_count(0, 256))
with Paging(frames) as paging:
    paging.map(PageRange.from_count(0x40000000, 2), MemorySpace.USER,
               PageTableFlags.PRESENT | PageTableFlags.WRITABLE)
    print(hex(paging.translate(0x40000123)))
```

```python
import io
from d3kernel.logger import Level, Logger

logger = Logger(level=Level.DEBUG, clock=lambda: 1234)
stream = io.StringIO()
logger.register(stream)
logger.log(Level.INFO, "hello", file="kernel/boot.rs", line=7)
# stream now holds a coloured line containing "[1.234]", "[INF]" and "[boot.rs@007] hello"
```

## What the package does not do

The naming service here consists only of the `Mode` and `Stat` metadata
types. There is no in-memory file system, no path lookup and no table of open
handles, so files and directories cannot be created, opened, read or written
by path. The package also has no command to run: it is a library to import.