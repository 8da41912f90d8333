"""Insertion and deletion of keys at the root of a B-tree of pages."""

from __future__ import annotations

from typing import Callable, MutableSequence, Optional

from pagetree.branch import BranchBuilder
from pagetree.deletion import (
    DeletedBranch,
    DeletedLeaf,
    PartialBranch,
    PartialLeaf,
    Subtree,
    delete_helper,
)
from pagetree.guards import AccessGuard, AccessGuardMut
from pagetree.insertion import MutationContext, insert_helper
from pagetree.leaf import LeafAccessor, LeafBuilder
from pagetree.memory import FreePolicy, TransactionalMemory, compare_bytes

Compare = Callable[[bytes, bytes], int]


class MutateHelper:
    """Inserts and deletes keys in one tree and keeps track of its root page.

    ``root`` is ``None`` for an empty tree and is updated after every change.
    Pages replaced during a change are freed or recorded in ``freed``,
    according to ``free_policy``.
    """

    def __init__(
        self,
        root: Optional[int],
        free_policy: FreePolicy,
        mem: TransactionalMemory,
        freed: Optional[MutableSequence[int]] = None,
        compare: Compare = compare_bytes,
    ) -> None:
        self.root = root
        self._ctx = MutationContext(
            mem=mem,
            free_policy=free_policy,
            freed=[] if freed is None else freed,
            compare=compare,
        )

    @property
    def freed(self) -> MutableSequence[int]:
        """Pages that were replaced but not yet released."""
        return self._ctx.freed

    @property
    def free_policy(self) -> FreePolicy:
        return self._ctx.free_policy

    @property
    def mem(self) -> TransactionalMemory:
        return self._ctx.mem

    def insert(
        self, key: bytes, value: bytes
    ) -> tuple[Optional[AccessGuard], AccessGuardMut]:
        """Store ``value`` under ``key``.

        Returns a guard over the value previously stored, if any, and a
        writable view of the value just stored.
        """
        key, value = bytes(key), bytes(value)
        mem = self._ctx.mem
        if self.root is None:
            builder = LeafBuilder(mem)
            builder.push(key, value)
            page = builder.build()
            offset = LeafAccessor(page).offset_of_first_value()
            self.root = page.page_number
            return None, AccessGuardMut(page, offset, len(value))

        result = insert_helper(self._ctx, mem.get_page(self.root), key, value)
        new_root = result.new_root
        if result.additional_sibling is not None:
            separator, sibling = result.additional_sibling
            builder = BranchBuilder(mem)
            builder.push_child(new_root)
            builder.push_key(separator)
            builder.push_child(sibling)
            new_root = builder.build().page_number
        self.root = new_root
        return result.old_value, result.inserted_value

    def delete(self, key: bytes) -> Optional[AccessGuard]:
        """Remove ``key``; return a guard over its value, or ``None`` if absent.

        The returned guard must be released before the tree is changed again.
        """
        if self.root is None:
            return None
        mem = self._ctx.mem
        root_number = self.root
        result, found = delete_helper(self._ctx, mem.get_page(root_number), bytes(key))
        if isinstance(result, Subtree):
            new_root: Optional[int] = result.page_number
        elif isinstance(result, DeletedLeaf):
            new_root = None
        elif isinstance(result, PartialLeaf):
            accessor = LeafAccessor(mem.get_page(root_number))
            builder = LeafBuilder(mem)
            builder.push_all_except(accessor, result.deleted_pair)
            new_root = builder.build().page_number
        elif isinstance(result, PartialBranch):
            new_root = result.page_number
        elif isinstance(result, DeletedBranch):
            new_root = result.remaining_child
        else:
            raise TypeError(f"unexpected deletion result {result!r}")
        self.root = new_root
        return found

    def safe_delete(self, key: bytes) -> Optional[AccessGuard]:
        """Delete under a policy that never frees pages during the operation."""
        if self._ctx.free_policy is not FreePolicy.NEVER:
            raise ValueError("safe_delete requires FreePolicy.NEVER")
        return self.delete(key)