"""Guards that hand out values stored in pages and clean up when released."""

from __future__ import annotations

import enum
from typing import Optional

from pagetree.leaf import LeafMutator
from pagetree.memory import Page, TransactionalMemory


class _OnRelease(enum.Enum):
    NONE = enum.auto()
    FREE = enum.auto()
    REMOVE_ENTRY = enum.auto()


class AccessGuard:
    """Read access to a value; may free its page or remove its entry on release."""

    def __init__(
        self,
        page: Page,
        offset: int,
        length: int,
        free_on_release: bool,
        mem: TransactionalMemory,
    ) -> None:
        action = _OnRelease.FREE if free_on_release else _OnRelease.NONE
        self._setup(page, page.memory, offset, length, action, None, mem)

    def _setup(
        self,
        page: Optional[Page],
        memory,
        offset: int,
        length: int,
        action: _OnRelease,
        position: Optional[int],
        mem: TransactionalMemory,
    ) -> None:
        if offset < 0 or length < 0 or offset + length > len(memory):
            raise ValueError("value range lies outside the page")
        self._page = page
        self._memory = memory
        self._offset = offset
        self._length = length
        self._action = action
        self._position = position
        self._mem = mem
        self._released = False

    @classmethod
    def with_owned_value(cls, value: bytes, mem: TransactionalMemory) -> "AccessGuard":
        """A guard over a copy of ``value`` that owns no page."""
        guard = cls.__new__(cls)
        data = bytes(value)
        guard._setup(None, data, 0, len(data), _OnRelease.NONE, None, mem)
        return guard

    @classmethod
    def remove_on_release(
        cls,
        page: Page,
        offset: int,
        length: int,
        position: int,
        mem: TransactionalMemory,
    ) -> "AccessGuard":
        """A guard that removes leaf entry ``position`` from ``page`` when released."""
        guard = cls.__new__(cls)
        guard._setup(
            page, page.memory, offset, length, _OnRelease.REMOVE_ENTRY, position, mem
        )
        return guard

    @property
    def released(self) -> bool:
        return self._released

    def value(self) -> bytes:
        if self._released:
            raise ValueError("guard has been released")
        return bytes(self._memory[self._offset : self._offset + self._length])

    def release(self) -> None:
        """Perform the pending cleanup; calling again does nothing."""
        if self._released:
            return
        self._released = True
        if self._action is _OnRelease.FREE:
            self._mem.free(self._page.page_number)
        elif self._action is _OnRelease.REMOVE_ENTRY:
            LeafMutator(self._page).remove(self._position)

    def __enter__(self) -> "AccessGuard":
        return self

    def __exit__(self, *args) -> None:
        self.release()


class AccessGuardMut:
    """Writable access to a value's bytes inside a page."""

    def __init__(self, page: Page, offset: int, length: int) -> None:
        if offset < 0 or length < 0 or offset + length > len(page.memory):
            raise ValueError("value range lies outside the page")
        self._page = page
        self._offset = offset
        self._length = length

    @property
    def page(self) -> Page:
        return self._page

    def value(self) -> bytes:
        return bytes(self._page.memory[self._offset : self._offset + self._length])

    def write(self, data: bytes) -> None:
        """Overwrite the value; ``data`` must have exactly the reserved length."""
        data = bytes(data)
        if len(data) != self._length:
            raise ValueError(
                f"expected {self._length} bytes, got {len(data)}"
            )
        self._page.memory[self._offset : self._offset + self._length] = data

    def __len__(self) -> int:
        return self._length