"""Recursive insertion of a key and value into a B-tree of pages."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional

from pagetree.branch import BranchAccessor, BranchBuilder, BranchMutator
from pagetree.guards import AccessGuard, AccessGuardMut
from pagetree.leaf import LeafAccessor, LeafBuilder, LeafMutator
from pagetree.memory import (
    BRANCH,
    LEAF,
    FreePolicy,
    Page,
    TransactionalMemory,
    compare_bytes,
)

Compare = Callable[[bytes, bytes], int]


@dataclass
class MutationContext:
    """Shared state of one mutation: storage, free policy and deferred frees."""

    mem: TransactionalMemory
    free_policy: FreePolicy = FreePolicy.NEVER
    freed: list[int] = field(default_factory=list)
    compare: Compare = compare_bytes


@dataclass
class InsertionResult:
    """Outcome of inserting into a subtree."""

    # Root of the rewritten subtree
    new_root: int
    # Separator key and following sibling, if the subtree had to be split
    additional_sibling: Optional[tuple[bytes, int]]
    # Writable view of the value just inserted
    inserted_value: AccessGuardMut
    # The value previously stored under the key, if any
    old_value: Optional[AccessGuard]


def _old_value_guard(
    ctx: MutationContext, page: Page, accessor: LeafAccessor, position: int
) -> AccessGuard:
    """Guard over the replaced value; defers or schedules freeing of ``page``."""
    start, end = accessor.value_range(position)
    free_on_release = ctx.free_policy.free_on_drop(page.page_number, ctx.mem)
    if not free_on_release:
        ctx.freed.append(page.page_number)
    return AccessGuard(page, start, end - start, free_on_release, ctx.mem)


def _insert_into_leaf(
    ctx: MutationContext, page: Page, key: bytes, value: bytes
) -> InsertionResult:
    mem = ctx.mem
    accessor = LeafAccessor(page)
    position, found = accessor.position(key, ctx.compare)
    page_number = page.page_number

    # Avoid rebuilding and splitting a page that holds one large value
    single_large_value = (
        accessor.num_pairs() == 1 and accessor.total_length() >= mem.page_size
    )
    if not found and single_large_value:
        builder = LeafBuilder(mem)
        builder.push(key, value)
        new_page = builder.build()
        offset = LeafAccessor(new_page).offset_of_first_value()
        guard = AccessGuardMut(new_page, offset, len(value))
        if position == 0:
            return InsertionResult(
                new_root=new_page.page_number,
                additional_sibling=(key, page_number),
                inserted_value=guard,
                old_value=None,
            )
        return InsertionResult(
            new_root=page_number,
            additional_sibling=(accessor.last_entry().key, new_page.page_number),
            inserted_value=guard,
            old_value=None,
        )

    # Uncommitted pages can be edited in place
    if mem.uncommitted(page_number) and LeafMutator.sufficient_insert_inplace_space(
        page, position, found, key, value
    ):
        existing = None
        if found:
            existing = AccessGuard.with_owned_value(accessor.entry(position).value, mem)
        LeafMutator(page).insert(position, found, key, value)
        offset = LeafAccessor(page).offset_of_value(position)
        return InsertionResult(
            new_root=page_number,
            additional_sibling=None,
            inserted_value=AccessGuardMut(page, offset, len(value)),
            old_value=existing,
        )

    builder = LeafBuilder(mem)
    for i, entry in enumerate(accessor.entries()):
        if i == position:
            builder.push(key, value)
        if not found or i != position:
            builder.push(entry.key, entry.value)
    if accessor.num_pairs() == position:
        builder.push(key, value)

    if not builder.should_split():
        new_page = builder.build()
        if found:
            existing = _old_value_guard(ctx, page, accessor, position)
        else:
            existing = None
            ctx.free_policy.conditional_free(page_number, ctx.freed, mem)
        offset = LeafAccessor(new_page).offset_of_value(position)
        return InsertionResult(
            new_root=new_page.page_number,
            additional_sibling=None,
            inserted_value=AccessGuardMut(new_page, offset, len(value)),
            old_value=existing,
        )

    new_page1, split_key, new_page2 = builder.build_split()
    if found:
        existing = _old_value_guard(ctx, page, accessor, position)
    else:
        existing = None
        ctx.free_policy.conditional_free(page_number, ctx.freed, mem)
    division = LeafAccessor(new_page1).num_pairs()
    if position < division:
        offset = LeafAccessor(new_page1).offset_of_value(position)
        guard = AccessGuardMut(new_page1, offset, len(value))
    else:
        offset = LeafAccessor(new_page2).offset_of_value(position - division)
        guard = AccessGuardMut(new_page2, offset, len(value))
    return InsertionResult(
        new_root=new_page1.page_number,
        additional_sibling=(split_key, new_page2.page_number),
        inserted_value=guard,
        old_value=existing,
    )


def _insert_into_branch(
    ctx: MutationContext, page: Page, key: bytes, value: bytes
) -> InsertionResult:
    mem = ctx.mem
    accessor = BranchAccessor(page)
    page_number = page.page_number
    child_index, child_page = accessor.child_for_key(key, ctx.compare)
    sub_result = insert_helper(ctx, mem.get_page(child_page), key, value)

    if sub_result.additional_sibling is None:
        if sub_result.new_root == child_page:
            # A descendant was edited in place, so this page is unchanged
            return InsertionResult(
                new_root=page_number,
                additional_sibling=None,
                inserted_value=sub_result.inserted_value,
                old_value=sub_result.old_value,
            )
        if mem.uncommitted(page_number):
            BranchMutator(page).write_child_page(child_index, sub_result.new_root)
            return InsertionResult(
                new_root=page_number,
                additional_sibling=None,
                inserted_value=sub_result.inserted_value,
                old_value=sub_result.old_value,
            )

    def push_replacement(target: BranchBuilder) -> None:
        target.push_child(sub_result.new_root)
        if sub_result.additional_sibling is not None:
            separator, sibling = sub_result.additional_sibling
            target.push_key(separator)
            target.push_child(sibling)

    builder = BranchBuilder(mem)
    if child_index == 0:
        push_replacement(builder)
    else:
        builder.push_child(accessor.child_page(0))
    for i in range(1, accessor.count_children()):
        builder.push_key(accessor.key(i - 1))
        if i == child_index:
            push_replacement(builder)
        else:
            builder.push_child(accessor.child_page(i))

    if builder.should_split():
        new_page1, split_key, new_page2 = builder.build_split()
        result = InsertionResult(
            new_root=new_page1.page_number,
            additional_sibling=(split_key, new_page2.page_number),
            inserted_value=sub_result.inserted_value,
            old_value=sub_result.old_value,
        )
    else:
        new_page = builder.build()
        result = InsertionResult(
            new_root=new_page.page_number,
            additional_sibling=None,
            inserted_value=sub_result.inserted_value,
            old_value=sub_result.old_value,
        )
    # The original page has been replaced
    ctx.free_policy.conditional_free(page_number, ctx.freed, mem)
    return result


def insert_helper(
    ctx: MutationContext, page: Page, key: bytes, value: bytes
) -> InsertionResult:
    """Insert ``key`` and ``value`` into the subtree rooted at ``page``."""
    key, value = bytes(key), bytes(value)
    kind = page.memory[0]
    if kind == LEAF:
        return _insert_into_leaf(ctx, page, key, value)
    if kind == BRANCH:
        return _insert_into_branch(ctx, page, key, value)
    raise ValueError(f"page {page.page_number} has unknown type {kind}")