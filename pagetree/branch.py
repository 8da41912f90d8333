"""Reading, building and editing branch pages.

Layout of a branch page:
1 byte type, 1 reserved byte, 2 bytes number of keys (little endian),
then one 8-byte child page number per child (keys + 1 of them),
one 4-byte key end offset per key, and finally all key data.
"""

from __future__ import annotations

import struct
from typing import Callable, Optional, Sequence

from pagetree.memory import BRANCH, PAGE_NUMBER_SIZE, Page, TransactionalMemory

_HEADER = 4
_U32 = 4

Compare = Callable[[bytes, bytes], int]


def _read_u32(memory: bytearray, offset: int) -> int:
    return struct.unpack_from("<I", memory, offset)[0]


def _page_number_bytes(page_number: int) -> bytes:
    return int(page_number).to_bytes(PAGE_NUMBER_SIZE, "little")


class BranchAccessor:
    """Read-only view of a branch page."""

    def __init__(self, page: Page) -> None:
        memory = page.memory
        if memory[0] != BRANCH:
            raise ValueError(f"page {page.page_number} is not a branch")
        self._page = page
        self._num_keys = int.from_bytes(memory[2:4], "little")

    @property
    def page(self) -> Page:
        return self._page

    def _key_offset(self, n: int) -> int:
        if n == 0:
            return (
                _HEADER
                + PAGE_NUMBER_SIZE * self.count_children()
                + _U32 * self._num_keys
            )
        return self._key_end(n - 1)

    def _key_end(self, n: int) -> int:
        offset = _HEADER + PAGE_NUMBER_SIZE * self.count_children() + _U32 * n
        return _read_u32(self._page.memory, offset)

    def total_length(self) -> int:
        """Bytes used by the branch, header included."""
        if self._num_keys == 0:
            return _HEADER + PAGE_NUMBER_SIZE
        return self._key_end(self._num_keys - 1)

    def child_for_key(self, query: bytes, compare: Compare) -> tuple[int, int]:
        """Index and page number of the child whose subtree may hold ``query``."""
        low, high = 0, self._num_keys
        while low < high:
            mid = (low + high) // 2
            order = compare(query, self.key(mid))
            if order < 0:
                high = mid
            elif order == 0:
                return mid, self.child_page(mid)
            else:
                low = mid + 1
        return low, self.child_page(low)

    def key(self, n: int) -> Optional[bytes]:
        if n < 0 or n >= self._num_keys:
            return None
        return bytes(self._page.memory[self._key_offset(n) : self._key_end(n)])

    def count_children(self) -> int:
        return self._num_keys + 1

    def child_page(self, n: int) -> Optional[int]:
        if n < 0 or n >= self.count_children():
            return None
        offset = _HEADER + PAGE_NUMBER_SIZE * n
        return int.from_bytes(
            self._page.memory[offset : offset + PAGE_NUMBER_SIZE], "little"
        )

    def describe(self) -> str:
        parts = [
            f"Internal[ (page={self._page.page_number}), child_0={self.child_page(0)}"
        ]
        for i in range(self._num_keys):
            parts.append(f" key_{i}={self.key(i)!r} child_{i + 1}={self.child_page(i + 1)}")
        parts.append("]")
        return "".join(parts)


class RawBranchBuilder:
    """Writes a branch page field by field; every key must be written in order."""

    @staticmethod
    def required_bytes(num_keys: int, size_of_keys: int) -> int:
        fixed = _HEADER + PAGE_NUMBER_SIZE * (num_keys + 1) + _U32 * num_keys
        return size_of_keys + fixed

    def __init__(self, page: Page, num_keys: int) -> None:
        if num_keys <= 0:
            raise ValueError("a branch needs at least one key")
        if num_keys > 0xFFFF:
            raise ValueError("too many keys for one branch")
        fixed = self.required_bytes(num_keys, 0)
        memory = page.memory
        if fixed > len(memory):
            raise ValueError(f"branch needs {fixed} bytes but page holds {len(memory)}")
        memory[0] = BRANCH
        memory[1] = 0
        memory[2:4] = num_keys.to_bytes(2, "little")
        # Poison child pointers and key offsets so missing writes are visible
        memory[_HEADER:fixed] = b"\xff" * (fixed - _HEADER)
        self._page = page
        self._num_keys = num_keys
        self._keys_written = 0

    def _key_table(self) -> int:
        return _HEADER + PAGE_NUMBER_SIZE * (self._num_keys + 1)

    def _key_end(self, n: int) -> int:
        return _read_u32(self._page.memory, self._key_table() + _U32 * n)

    def write_first_page(self, page_number: int) -> None:
        self._page.memory[_HEADER : _HEADER + PAGE_NUMBER_SIZE] = _page_number_bytes(
            page_number
        )

    def write_nth_key(self, key: bytes, page_number: int, n: int) -> None:
        """Write key ``n`` and the child holding keys above it."""
        if not 0 <= n < self._num_keys:
            raise IndexError(f"key index {n} out of range")
        if n != self._keys_written:
            raise ValueError(f"expected key {self._keys_written}, got key {n}")
        key = bytes(key)
        memory = self._page.memory
        if n > 0:
            data_offset = self._key_end(n - 1)
        else:
            data_offset = self._key_table() + _U32 * self._num_keys
        data_end = data_offset + len(key)
        if data_end > len(memory):
            raise ValueError(f"key does not fit: needs {data_end} bytes")
        child_offset = _HEADER + PAGE_NUMBER_SIZE * (n + 1)
        memory[child_offset : child_offset + PAGE_NUMBER_SIZE] = _page_number_bytes(
            page_number
        )
        struct.pack_into("<I", memory, self._key_table() + _U32 * n, data_end)
        memory[data_offset:data_end] = key
        self._keys_written += 1

    def finish(self) -> Page:
        """Check that every key was written and return the page."""
        if self._keys_written != self._num_keys:
            raise ValueError(
                f"only {self._keys_written} of {self._num_keys} keys written"
            )
        return self._page


class BranchBuilder:
    """Collects children and keys and writes them into one or two branch pages."""

    def __init__(self, mem: TransactionalMemory) -> None:
        self._mem = mem
        self._children: list[int] = []
        self._keys: list[bytes] = []
        self._total_key_bytes = 0

    def replace_child(self, index: int, child: int) -> None:
        self._children[index] = child

    def push_child(self, child: int) -> None:
        self._children.append(child)

    def push_key(self, key: bytes) -> None:
        key = bytes(key)
        self._keys.append(key)
        self._total_key_bytes += len(key)

    def push_all(self, accessor: BranchAccessor) -> None:
        for i in range(accessor.count_children()):
            self.push_child(accessor.child_page(i))
        for i in range(accessor.count_children() - 1):
            self.push_key(accessor.key(i))

    def to_single_child(self) -> Optional[int]:
        if len(self._children) > 1:
            return None
        return self._children[0]

    def _check_shape(self) -> None:
        if len(self._children) != len(self._keys) + 1:
            raise ValueError(
                f"{len(self._children)} children do not match {len(self._keys)} keys"
            )

    def _build_page(
        self, first_child: int, keys: Sequence[bytes], children: Sequence[int]
    ) -> Page:
        size = RawBranchBuilder.required_bytes(len(keys), sum(map(len, keys)))
        page = self._mem.allocate(size)
        builder = RawBranchBuilder(page, len(keys))
        builder.write_first_page(first_child)
        for n, (key, child) in enumerate(zip(keys, children)):
            builder.write_nth_key(key, child, n)
        return builder.finish()

    def build(self) -> Page:
        self._check_shape()
        return self._build_page(self._children[0], self._keys, self._children[1:])

    def should_split(self) -> bool:
        size = RawBranchBuilder.required_bytes(len(self._keys), self._total_key_bytes)
        return size > self._mem.page_size and len(self._keys) >= 3

    def build_split(self) -> tuple[Page, bytes, Page]:
        """Write two branches; return them and the key separating them."""
        self._check_shape()
        if len(self._keys) < 3:
            raise ValueError("a split needs at least three keys")
        division = len(self._keys) // 2
        division_key = self._keys[division]
        page1 = self._build_page(
            self._children[0],
            self._keys[:division],
            self._children[1 : division + 1],
        )
        page2 = self._build_page(
            self._children[division + 1],
            self._keys[division + 1 :],
            self._children[division + 2 :],
        )
        return page1, division_key, page2


class BranchMutator:
    """Edits a branch page in place."""

    def __init__(self, page: Page) -> None:
        if page.memory[0] != BRANCH:
            raise ValueError(f"page {page.page_number} is not a branch")
        self._page = page

    def write_child_page(self, i: int, page_number: int) -> None:
        num_keys = int.from_bytes(self._page.memory[2:4], "little")
        if not 0 <= i <= num_keys:
            raise IndexError(f"child index {i} out of range")
        offset = _HEADER + PAGE_NUMBER_SIZE * i
        self._page.memory[offset : offset + PAGE_NUMBER_SIZE] = _page_number_bytes(
            page_number
        )