"""Page storage with transactional bookkeeping used by the B-tree."""

from __future__ import annotations

import enum
import heapq
from dataclasses import dataclass
from typing import MutableSequence

LEAF = 1
BRANCH = 2
PAGE_NUMBER_SIZE = 8


class OutOfSpaceError(Exception):
    """Raised when an allocation does not fit in the available space."""


@dataclass(eq=False)
class Page:
    """A page of storage: its number and its mutable contents."""

    page_number: int
    memory: bytearray


class TransactionalMemory:
    """Allocates pages and tracks which were allocated since the last commit.

    Allocations are rounded up to a power-of-two multiple of ``page_size``;
    at most ``max_pages`` base pages may be in use at once.
    """

    def __init__(self, page_size: int, max_pages: int) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        if max_pages < 0:
            raise ValueError("max_pages must not be negative")
        self.page_size = page_size
        self.max_pages = max_pages
        self._pages: dict[int, Page] = {}
        self._uncommitted: set[int] = set()
        self._free_numbers: list[int] = []
        self._next_number = 0
        self._used = 0

    @property
    def used_pages(self) -> int:
        """Number of base pages currently in use."""
        return self._used

    def allocate(self, size: int) -> Page:
        """Allocate a zeroed page able to hold ``size`` bytes."""
        if size < 0:
            raise ValueError("size must not be negative")
        count = 1
        while count * self.page_size < size:
            count *= 2
        if self._used + count > self.max_pages:
            raise OutOfSpaceError(
                f"cannot allocate {size} bytes: {self._used} of "
                f"{self.max_pages} pages in use"
            )
        if self._free_numbers:
            number = heapq.heappop(self._free_numbers)
        else:
            number = self._next_number
            self._next_number += 1
        page = Page(number, bytearray(count * self.page_size))
        self._pages[number] = page
        self._uncommitted.add(number)
        self._used += count
        return page

    def get_page(self, page_number: int) -> Page:
        """Return the allocated page with this number."""
        try:
            return self._pages[page_number]
        except KeyError:
            raise KeyError(f"page {page_number} is not allocated") from None

    def uncommitted(self, page_number: int) -> bool:
        """Whether the page was allocated since the last commit."""
        return page_number in self._uncommitted

    def free(self, page_number: int) -> None:
        """Release a page; its number may be handed out again."""
        page = self.get_page(page_number)
        del self._pages[page_number]
        self._uncommitted.discard(page_number)
        self._used -= len(page.memory) // self.page_size
        heapq.heappush(self._free_numbers, page_number)

    def free_if_uncommitted(self, page_number: int) -> bool:
        """Free the page if it is uncommitted; report whether it was freed."""
        if self.uncommitted(page_number):
            self.free(page_number)
            return True
        return False

    def commit(self) -> None:
        """Mark every allocated page as committed."""
        self._uncommitted.clear()

    def allocated_pages(self) -> list[int]:
        """Numbers of all allocated pages, in ascending order."""
        return sorted(self._pages)


class FreePolicy(enum.Enum):
    """When pages replaced during a mutation are released."""

    NEVER = "never"
    UNCOMMITTED = "uncommitted"

    def conditional_free(
        self, page: int, freed: MutableSequence[int], mem: TransactionalMemory
    ) -> None:
        """Free ``page`` now if allowed, otherwise record it in ``freed``."""
        if self is FreePolicy.UNCOMMITTED and mem.free_if_uncommitted(page):
            return
        freed.append(page)

    def free_on_drop(self, page: int, mem: TransactionalMemory) -> bool:
        """Whether a guard over ``page`` should free it when released."""
        if self is FreePolicy.NEVER:
            return False
        return mem.uncommitted(page)


def compare_bytes(a: bytes, b: bytes) -> int:
    """Lexicographic comparison: negative, zero or positive."""
    a, b = bytes(a), bytes(b)
    return (a > b) - (a < b)