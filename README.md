# pagetree

A B-tree that lives in fixed-size byte pages handed out by a small
transactional page allocator. Pages allocated since the last commit are
changed in place; committed pages are left as they are and replaced by
new pages, so a committed tree stays readable while a new version is
built beside it.

## Installing

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `pagetree.memory` — `TransactionalMemory(page_size, max_pages)` hands
  out zeroed pages (`allocate`, `get_page`, `free`,
  `free_if_uncommitted`, `commit`, `allocated_pages`, `used_pages`).
  An allocation is rounded up to a power-of-two number of base pages and
  raises `OutOfSpaceError` when it would exceed `max_pages`. `FreePolicy`
  (`NEVER` or `UNCOMMITTED`) decides whether a replaced page is freed at
  once or recorded in a list of freed pages. `compare_bytes` is the
  default key ordering (lexicographic).
- `pagetree.leaf` — reading (`LeafAccessor`), building (`LeafBuilder`,
  which can split into two pages) and editing in place (`LeafMutator`)
  of leaf pages holding key/value pairs.
- `pagetree.branch` — the same for branch pages holding separator keys
  and child page numbers (`BranchAccessor`, `BranchBuilder`,
  `RawBranchBuilder`, `BranchMutator`).
- `pagetree.guards` — `AccessGuard` gives read access to a value; on
  `release()` (or at the end of a `with` block) it may free its page or
  remove the entry from its leaf. `AccessGuardMut` gives write access to
  a stored value of fixed length.
- `pagetree.iters` — `BtreeRangeIter` yields entries (with `key` and
  `value`) between two bounds made with `Bound.included`,
  `Bound.excluded` and `Bound.unbounded`; `.reverse()` gives an iterator
  over the remaining entries from the other end. `all_page_numbers`
  yields every page number of a tree once.
- `pagetree.insertion` and `pagetree.deletion` — the recursive
  `insert_helper` and `delete_helper` working on a `MutationContext`,
  with splitting and merging of pages.
- `pagetree.mutator` — `MutateHelper` inserts and deletes keys at the
  root and keeps the current root page number in its `root` attribute.

## Example

```python
from pagetree.memory import TransactionalMemory, FreePolicy, compare_bytes
from pagetree.mutator import MutateHelper
from pagetree.iters import BtreeRangeIter, Bound

mem = TransactionalMemory(page_size=4096, max_pages=1024)
tree = MutateHelper(None, FreePolicy.UNCOMMITTED, mem, [], compare_bytes)
for i in range(100):
    tree.insert(b"key%03d" % i, b"value%03d" % i)

old, _ = tree.insert(b"key007", b"replaced")
print(old.value())          # b'value007'

# The guard of a deleted value must be released before the tree changes again
with tree.delete(b"key010") as removed:
    print(removed.value())  # b'value010'

mem.commit()

for entry in BtreeRangeIter(mem, tree.root, Bound.included(b"key005"),
                            Bound.excluded(b"key012"), compare_bytes):
    print(entry.key, entry.value)
```

## What it does not do

Pages are held in memory only: nothing is written to or read from a
file, and a `commit()` merely marks pages as committed. There are no
tables, typed keys or values, or transactions on top of the tree; the
caller keeps the root page number and the list of freed pages itself.