"""Reading, building and editing leaf pages.

Layout of a leaf page:
1 byte type, 1 reserved byte, 2 bytes number of pairs (little endian),
then one 4-byte key end offset per pair, one 4-byte value end offset per
pair, all key data, and finally all value data.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Sequence

from pagetree.memory import LEAF, Page, TransactionalMemory

_HEADER = 4
_U32 = 4

Compare = Callable[[bytes, bytes], int]


def _read_u32(memory: bytearray, offset: int) -> int:
    return struct.unpack_from("<I", memory, offset)[0]


def _write_leaf(memory: bytearray, pairs: Sequence[tuple[bytes, bytes]]) -> None:
    num = len(pairs)
    if num > 0xFFFF:
        raise ValueError("too many pairs for one leaf")
    data_start = _HEADER + 2 * _U32 * num
    key_ends = []
    end = data_start
    for key, _ in pairs:
        end += len(key)
        key_ends.append(end)
    keys_end = end
    value_ends = []
    for _, value in pairs:
        end += len(value)
        value_ends.append(end)
    if end > len(memory):
        raise ValueError(f"leaf needs {end} bytes but page holds {len(memory)}")
    memory[0] = LEAF
    memory[1] = 0
    memory[2:4] = num.to_bytes(2, "little")
    struct.pack_into(f"<{num}I", memory, _HEADER, *key_ends)
    struct.pack_into(f"<{num}I", memory, _HEADER + _U32 * num, *value_ends)
    memory[data_start:keys_end] = b"".join(key for key, _ in pairs)
    memory[keys_end:end] = b"".join(value for _, value in pairs)


@dataclass(frozen=True)
class EntryAccessor:
    """A key and value read from a leaf."""

    key: bytes
    value: bytes


class LeafAccessor:
    """Read-only view of a leaf page."""

    def __init__(self, page: Page) -> None:
        memory = page.memory
        if memory[0] != LEAF:
            raise ValueError(f"page {page.page_number} is not a leaf")
        self._page = page
        self._num_pairs = int.from_bytes(memory[2:4], "little")

    @property
    def page(self) -> Page:
        return self._page

    def num_pairs(self) -> int:
        return self._num_pairs

    def _key_start(self, n: int) -> Optional[int]:
        if n == 0:
            return _HEADER + 2 * _U32 * self._num_pairs
        return self._key_end(n - 1)

    def _key_end(self, n: int) -> Optional[int]:
        if n < 0 or n >= self._num_pairs:
            return None
        return _read_u32(self._page.memory, _HEADER + _U32 * n)

    def _value_start(self, n: int) -> Optional[int]:
        if n == 0:
            return self._key_end(self._num_pairs - 1)
        return self._value_end(n - 1)

    def _value_end(self, n: int) -> Optional[int]:
        if n < 0 or n >= self._num_pairs:
            return None
        offset = _HEADER + _U32 * self._num_pairs + _U32 * n
        return _read_u32(self._page.memory, offset)

    def _key(self, n: int) -> bytes:
        return bytes(self._page.memory[self._key_start(n) : self._key_end(n)])

    def position(self, query: bytes, compare: Compare) -> tuple[int, bool]:
        """Binary search: the index of ``query`` or where it would go, and whether found."""
        low, high = 0, self._num_pairs
        while low < high:
            mid = (low + high) // 2
            order = compare(query, self._key(mid))
            if order < 0:
                high = mid
            elif order == 0:
                return mid, True
            else:
                low = mid + 1
        return low, False

    def find_key(self, query: bytes, compare: Compare) -> Optional[int]:
        index, found = self.position(query, compare)
        return index if found else None

    def offset_of_first_value(self) -> int:
        offset = self.offset_of_value(0)
        if offset is None:
            raise IndexError("leaf has no values")
        return offset

    def offset_of_value(self, n: int) -> Optional[int]:
        return self._value_start(n)

    def value_range(self, n: int) -> Optional[tuple[int, int]]:
        start, end = self._value_start(n), self._value_end(n)
        if start is None or end is None:
            return None
        return start, end

    def length_of_pairs(self, start: int, end: int) -> int:
        """Total bytes of keys and values of pairs in ``[start, end)``."""
        return self._length_of_values(start, end) + self.length_of_keys(start, end)

    def _length_of_values(self, start: int, end: int) -> int:
        if end == 0:
            return 0
        return self._value_end(end - 1) - self._value_start(start)

    def length_of_keys(self, start: int, end: int) -> int:
        """Total bytes of keys of pairs in ``[start, end)``."""
        if end == 0:
            return 0
        return self._key_end(end - 1) - self._key_start(start)

    def total_length(self) -> int:
        """Bytes used by the leaf, header included."""
        if self._num_pairs == 0:
            return _HEADER
        return self._value_end(self._num_pairs - 1)

    def entry(self, n: int) -> Optional[EntryAccessor]:
        key_start, key_end = self._key_start(n), self._key_end(n)
        value_start, value_end = self._value_start(n), self._value_end(n)
        if None in (key_start, key_end, value_start, value_end):
            return None
        memory = self._page.memory
        return EntryAccessor(
            bytes(memory[key_start:key_end]), bytes(memory[value_start:value_end])
        )

    def last_entry(self) -> EntryAccessor:
        entry = self.entry(self._num_pairs - 1)
        if entry is None:
            raise IndexError("leaf is empty")
        return entry

    def entries(self) -> Iterator[EntryAccessor]:
        for n in range(self._num_pairs):
            yield self.entry(n)

    def describe(self) -> str:
        parts = [f"Leaf[ (page={self._page.page_number})"]
        for i, entry in enumerate(self.entries()):
            parts.append(f" key_{i}={entry.key!r} value_{i}={entry.value!r}")
        parts.append("]")
        return "".join(parts)


class LeafBuilder:
    """Collects pairs and writes them into one or two new leaf pages."""

    def __init__(self, mem: TransactionalMemory) -> None:
        self._mem = mem
        self._pairs: list[tuple[bytes, bytes]] = []
        self._total_key_bytes = 0
        self._total_value_bytes = 0

    @staticmethod
    def required_bytes(num_pairs: int, keys_values_bytes: int) -> int:
        return _HEADER + num_pairs * 2 * _U32 + keys_values_bytes

    def push(self, key: bytes, value: bytes) -> None:
        key, value = bytes(key), bytes(value)
        self._total_key_bytes += len(key)
        self._total_value_bytes += len(value)
        self._pairs.append((key, value))

    def push_all_except(
        self, accessor: LeafAccessor, except_index: Optional[int] = None
    ) -> None:
        for i, entry in enumerate(accessor.entries()):
            if i != except_index:
                self.push(entry.key, entry.value)

    def _required(self) -> int:
        return self.required_bytes(
            len(self._pairs), self._total_key_bytes + self._total_value_bytes
        )

    def should_split(self) -> bool:
        return self._required() > self._mem.page_size and len(self._pairs) > 1

    def _build_page(self, pairs: Sequence[tuple[bytes, bytes]]) -> Page:
        size = self.required_bytes(
            len(pairs), sum(len(k) + len(v) for k, v in pairs)
        )
        page = self._mem.allocate(size)
        _write_leaf(page.memory, pairs)
        return page

    def build_split(self) -> tuple[Page, bytes, Page]:
        """Write the pairs into two leaves; return them and the last key of the first."""
        if len(self._pairs) < 2:
            raise ValueError("a split needs at least two pairs")
        half = (self._total_key_bytes + self._total_value_bytes) // 2
        division = 0
        first_bytes = 0
        for key, value in self._pairs[:-1]:
            first_bytes += len(key) + len(value)
            division += 1
            if first_bytes >= half:
                break
        page1 = self._build_page(self._pairs[:division])
        page2 = self._build_page(self._pairs[division:])
        return page1, self._pairs[division - 1][0], page2

    def build(self) -> Page:
        return self._build_page(self._pairs)


class LeafMutator:
    """Edits a leaf page in place."""

    def __init__(self, page: Page) -> None:
        if page.memory[0] != LEAF:
            raise ValueError(f"page {page.page_number} is not a leaf")
        self._page = page

    @staticmethod
    def sufficient_insert_inplace_space(
        page: Page, position: int, overwrite: bool, new_key: bytes, new_value: bytes
    ) -> bool:
        accessor = LeafAccessor(page)
        remaining = len(page.memory) - accessor.total_length()
        if overwrite:
            required = len(new_key) + len(new_value) - accessor.length_of_pairs(
                position, position + 1
            )
        else:
            required = 2 * _U32 + len(new_key) + len(new_value)
        return required <= remaining

    def insert(self, i: int, overwrite: bool, key: bytes, value: bytes) -> None:
        """Insert a pair at index ``i``, or replace the value there if ``overwrite``."""
        accessor = LeafAccessor(self._page)
        num = accessor.num_pairs()
        if overwrite:
            if not 0 <= i < num:
                raise IndexError(f"no pair at index {i}")
            delta = len(key) + len(value) - accessor.length_of_pairs(i, i + 1)
        else:
            if not 0 <= i <= num:
                raise IndexError(f"cannot insert at index {i}")
            delta = 2 * _U32 + len(key) + len(value)
        if accessor.total_length() + delta > len(self._page.memory):
            raise ValueError("insufficient space in leaf for in-place insert")
        pairs = [(entry.key, entry.value) for entry in accessor.entries()]
        if overwrite:
            pairs[i] = (pairs[i][0], bytes(value))
        else:
            pairs.insert(i, (bytes(key), bytes(value)))
        _write_leaf(self._page.memory, pairs)

    def remove(self, i: int) -> None:
        """Remove the pair at index ``i``; the leaf must keep at least one pair."""
        accessor = LeafAccessor(self._page)
        num = accessor.num_pairs()
        if not 0 <= i < num:
            raise IndexError(f"no pair at index {i}")
        if num <= 1:
            raise ValueError("cannot remove the only pair of a leaf")
        pairs = [(entry.key, entry.value) for entry in accessor.entries()]
        del pairs[i]
        _write_leaf(self._page.memory, pairs)