"""Page frames, kernel stacks, paging, virtual address spaces and NFIT parsing."""