"""Iteration over B-tree pages and key ranges."""

from __future__ import annotations

import copy
import enum
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Union

from pagetree.branch import BranchAccessor
from pagetree.leaf import EntryAccessor, LeafAccessor
from pagetree.memory import BRANCH, LEAF, Page, TransactionalMemory, compare_bytes

Compare = Callable[[bytes, bytes], int]


class BoundKind(enum.Enum):
    INCLUDED = "included"
    EXCLUDED = "excluded"
    UNBOUNDED = "unbounded"


@dataclass(frozen=True)
class Bound:
    """One end of a key range."""

    kind: BoundKind
    key: Optional[bytes] = None

    @staticmethod
    def included(key: bytes) -> "Bound":
        return Bound(BoundKind.INCLUDED, bytes(key))

    @staticmethod
    def excluded(key: bytes) -> "Bound":
        return Bound(BoundKind.EXCLUDED, bytes(key))

    @staticmethod
    def unbounded() -> "Bound":
        return Bound(BoundKind.UNBOUNDED)


@dataclass(frozen=True, eq=False)
class LeafState:
    """Position at an entry of a leaf page."""

    page: Page
    entry: int
    parent: Optional["State"]


@dataclass(frozen=True, eq=False)
class InternalState:
    """Position at the next child to visit of a branch page."""

    page: Page
    child: int
    parent: Optional["State"]


State = Union[LeafState, InternalState]


def _page_type(page: Page) -> int:
    kind = page.memory[0]
    if kind not in (LEAF, BRANCH):
        raise ValueError(f"page {page.page_number} has unknown type {kind}")
    return kind


def _step(
    state: State, reverse: bool, manager: TransactionalMemory
) -> Optional[State]:
    """The state following ``state`` in the given direction."""
    direction = -1 if reverse else 1
    if isinstance(state, LeafState):
        accessor = LeafAccessor(state.page)
        next_entry = state.entry + direction
        if 0 <= next_entry < accessor.num_pairs():
            return LeafState(state.page, next_entry, state.parent)
        return state.parent

    accessor = BranchAccessor(state.page)
    child_page = manager.get_page(accessor.child_page(state.child))
    parent = state.parent
    next_child = state.child + direction
    if 0 <= next_child < accessor.count_children():
        parent = InternalState(state.page, next_child, parent)
    if _page_type(child_page) == LEAF:
        child_accessor = LeafAccessor(child_page)
        entry = child_accessor.num_pairs() - 1 if reverse else 0
        return LeafState(child_page, entry, parent)
    child_accessor = BranchAccessor(child_page)
    child = child_accessor.count_children() - 1 if reverse else 0
    return InternalState(child_page, child, parent)


def _get_entry(state: State) -> Optional[EntryAccessor]:
    if isinstance(state, LeafState):
        return LeafAccessor(state.page).entry(state.entry)
    return None


def all_page_numbers(root: int, manager: TransactionalMemory) -> Iterator[int]:
    """Yield the number of every page in the tree under ``root``, each once."""
    root_page = manager.get_page(root)
    state: Optional[State]
    if _page_type(root_page) == LEAF:
        state = LeafState(root_page, 0, None)
    else:
        state = InternalState(root_page, 0, None)
    while state is not None:
        number = state.page.page_number
        first_visit = (
            state.entry == 0 if isinstance(state, LeafState) else state.child == 0
        )
        state = _step(state, False, manager)
        if first_visit:
            yield number


def _find_unbounded(
    page: Page,
    parent: Optional[State],
    reverse: bool,
    manager: TransactionalMemory,
) -> State:
    while True:
        if _page_type(page) == LEAF:
            accessor = LeafAccessor(page)
            entry = accessor.num_pairs() - 1 if reverse else 0
            return LeafState(page, entry, parent)
        accessor = BranchAccessor(page)
        child_index = accessor.count_children() - 1 if reverse else 0
        child_page = manager.get_page(accessor.child_page(child_index))
        direction = -1 if reverse else 1
        parent = InternalState(page, child_index + direction, parent)
        page = child_page


def _find_left(
    page: Page,
    query: bytes,
    include_query: bool,
    compare: Compare,
    manager: TransactionalMemory,
) -> tuple[bool, State]:
    """Locate the first state of a range starting at ``query``.

    The flag tells whether the entry the state points at is part of the range.
    """
    parent: Optional[State] = None
    while True:
        if _page_type(page) == LEAF:
            accessor = LeafAccessor(page)
            position, found = accessor.position(query, compare)
            if position < accessor.num_pairs():
                include = include_query or not found
            else:
                position -= 1
                include = False
            return include, LeafState(page, position, parent)
        accessor = BranchAccessor(page)
        child_index, child_number = accessor.child_for_key(query, compare)
        child_page = manager.get_page(child_number)
        if child_index < accessor.count_children() - 1:
            parent = InternalState(page, child_index + 1, parent)
        page = child_page


def _find_right(
    page: Page,
    query: bytes,
    include_query: bool,
    compare: Compare,
    manager: TransactionalMemory,
) -> tuple[bool, State]:
    """Locate the last state of a range ending at ``query``."""
    parent: Optional[State] = None
    while True:
        if _page_type(page) == LEAF:
            accessor = LeafAccessor(page)
            position, found = accessor.position(query, compare)
            if position < accessor.num_pairs():
                include = include_query and found
            else:
                position -= 1
                include = True
            return include, LeafState(page, position, parent)
        accessor = BranchAccessor(page)
        child_index, child_number = accessor.child_for_key(query, compare)
        child_page = manager.get_page(child_number)
        if child_index > 0 and accessor.child_page(child_index - 1) is not None:
            parent = InternalState(page, child_index - 1, parent)
        page = child_page


class BtreeRangeIter:
    """Iterates the entries of a tree whose keys lie between two bounds."""

    def __init__(
        self,
        manager: TransactionalMemory,
        root: Optional[int],
        start: Optional[Bound] = None,
        end: Optional[Bound] = None,
        compare: Compare = compare_bytes,
    ) -> None:
        start = Bound.unbounded() if start is None else start
        end = Bound.unbounded() if end is None else end
        self._manager = manager
        self._reversed = False
        self._left: Optional[State] = None
        self._right: Optional[State] = None
        self._include_left = False
        self._include_right = False
        if root is None:
            return

        if start.kind is BoundKind.UNBOUNDED:
            self._include_left = True
            self._left = _find_unbounded(manager.get_page(root), None, False, manager)
        else:
            self._include_left, self._left = _find_left(
                manager.get_page(root),
                start.key,
                start.kind is BoundKind.INCLUDED,
                compare,
                manager,
            )

        if end.kind is BoundKind.UNBOUNDED:
            self._include_right = True
            self._right = _find_unbounded(manager.get_page(root), None, True, manager)
        else:
            self._include_right, self._right = _find_right(
                manager.get_page(root),
                end.key,
                end.kind is BoundKind.INCLUDED,
                compare,
                manager,
            )

    def reverse(self) -> "BtreeRangeIter":
        """An iterator over the remaining entries in the opposite direction."""
        flipped = copy.copy(self)
        flipped._reversed = not self._reversed
        return flipped

    def __iter__(self) -> "BtreeRangeIter":
        return self

    def __next__(self) -> EntryAccessor:
        entry = self._advance()
        if entry is None:
            raise StopIteration
        return entry

    def _shared_leaf(self) -> Optional[tuple[int, int]]:
        left, right = self._left, self._right
        if (
            isinstance(left, LeafState)
            and isinstance(right, LeafState)
            and left.page.page_number == right.page.page_number
        ):
            return left.entry, right.entry
        return None

    def _advance(self) -> Optional[EntryAccessor]:
        shared = self._shared_leaf()
        if shared is not None:
            left_entry, right_entry = shared
            if left_entry > right_entry or (
                left_entry == right_entry
                and (not self._include_left or not self._include_right)
            ):
                return None

        while True:
            if not self._reversed:
                if not self._include_left:
                    if self._left is None:
                        return None
                    self._left = _step(self._left, False, self._manager)
                if self._left is None:
                    return None
                shared = self._shared_leaf()
                if shared is not None:
                    left_entry, right_entry = shared
                    if left_entry > right_entry or (
                        left_entry == right_entry and not self._include_right
                    ):
                        return None
                self._include_left = False
                entry = _get_entry(self._left)
                if entry is not None:
                    return entry
            else:
                if not self._include_right:
                    if self._right is None:
                        return None
                    self._right = _step(self._right, True, self._manager)
                if self._right is None:
                    return None
                shared = self._shared_leaf()
                if shared is not None:
                    left_entry, right_entry = shared
                    if left_entry > right_entry or (
                        left_entry == right_entry and not self._include_left
                    ):
                        return None
                self._include_right = False
                entry = _get_entry(self._right)
                if entry is not None:
                    return entry