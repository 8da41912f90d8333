"""Recursive deletion of a key from a B-tree of pages, with rebalancing."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from pagetree.branch import BranchAccessor, BranchBuilder, BranchMutator
from pagetree.guards import AccessGuard
from pagetree.insertion import MutationContext
from pagetree.leaf import LeafAccessor, LeafBuilder
from pagetree.memory import BRANCH, LEAF, FreePolicy, Page


@dataclass(frozen=True)
class Subtree:
    """A proper subtree rooted at ``page_number``."""

    page_number: int


@dataclass(frozen=True)
class DeletedLeaf:
    """The leaf lost its only entry and is gone."""


@dataclass(frozen=True)
class PartialLeaf:
    """The leaf would hold fewer entries than desired once ``deleted_pair`` is dropped."""

    deleted_pair: int


@dataclass(frozen=True)
class PartialBranch:
    """A branch subtree with fewer children than desired."""

    page_number: int


@dataclass(frozen=True)
class DeletedBranch:
    """The branch was removed; ``remaining_child`` is its only remaining child."""

    remaining_child: int


DeletionResult = Union[Subtree, DeletedLeaf, PartialLeaf, PartialBranch, DeletedBranch]


def _delete_from_leaf(
    ctx: MutationContext, page: Page, key: bytes
) -> tuple[DeletionResult, Optional[AccessGuard]]:
    mem = ctx.mem
    accessor = LeafAccessor(page)
    page_number = page.page_number
    position, found = accessor.position(key, ctx.compare)
    if not found:
        return Subtree(page_number), None

    num_pairs = accessor.num_pairs()
    new_kv_bytes = accessor.length_of_pairs(0, num_pairs) - accessor.length_of_pairs(
        position, position + 1
    )
    new_required_bytes = LeafBuilder.required_bytes(num_pairs - 1, new_kv_bytes)
    uncommitted = mem.uncommitted(page_number)

    # Dirty pages that stay well filled are edited in place when the guard is released
    if uncommitted and new_required_bytes >= mem.page_size // 2 and num_pairs > 1:
        start, end = accessor.value_range(position)
        guard = AccessGuard.remove_on_release(page, start, end - start, position, mem)
        return Subtree(page_number), guard

    result: DeletionResult
    if num_pairs == 1:
        result = DeletedLeaf()
    elif new_required_bytes < mem.page_size // 3:
        # Merge below a third full: splits yield half-full pages, so this avoids oscillating
        result = PartialLeaf(position)
    else:
        builder = LeafBuilder(mem)
        builder.push_all_except(accessor, position)
        result = Subtree(builder.build().page_number)

    if not uncommitted or ctx.free_policy is FreePolicy.NEVER:
        # Freed only at the end of the transaction, so the guard may keep reading it
        ctx.freed.append(page_number)
        free_on_release = False
    else:
        free_on_release = True
    start, end = accessor.value_range(position)
    guard = AccessGuard(page, start, end - start, free_on_release, mem)
    return result, guard


def finalize_branch_builder(
    ctx: MutationContext, builder: BranchBuilder
) -> DeletionResult:
    """Turn the collected children into a result, building a page if more than one."""
    only_child = builder.to_single_child()
    if only_child is not None:
        return DeletedBranch(only_child)
    new_page = builder.build()
    # Merge below a third full: splits yield half-full pages, so this avoids oscillating
    if BranchAccessor(new_page).total_length() < ctx.mem.page_size // 3:
        return PartialBranch(new_page.page_number)
    return Subtree(new_page.page_number)


def _push_merged_separator(
    builder: BranchBuilder, accessor: BranchAccessor, child_index: int, merge_with: int
) -> None:
    merged_key_index = max(child_index, merge_with)
    if merged_key_index < accessor.count_children() - 1:
        builder.push_key(accessor.key(merged_key_index))


def _push_other_child(builder: BranchBuilder, accessor: BranchAccessor, i: int) -> None:
    builder.push_child(accessor.child_page(i))
    if i < accessor.count_children() - 1:
        builder.push_key(accessor.key(i))


def _push_branch_children(
    builder: BranchBuilder, ctx: MutationContext, child_builder: BranchBuilder
) -> None:
    if child_builder.should_split():
        new_page1, separator, new_page2 = child_builder.build_split()
        builder.push_child(new_page1.page_number)
        builder.push_key(separator)
        builder.push_child(new_page2.page_number)
    else:
        builder.push_child(child_builder.build().page_number)


def _merge_partial_leaf(
    ctx: MutationContext,
    accessor: BranchAccessor,
    child_index: int,
    child_page_number: int,
    deleted_pair: int,
    original_page_number: int,
) -> tuple[DeletionResult, bool]:
    """Merge a partial leaf with a sibling. The flag tells whether the parent was freed."""
    mem = ctx.mem
    partial_accessor = LeafAccessor(mem.get_page(child_page_number))
    merge_with = 1 if child_index == 0 else child_index - 1
    merge_with_number = accessor.child_page(merge_with)
    merge_accessor = LeafAccessor(mem.get_page(merge_with_number))
    builder = BranchBuilder(mem)

    single_large_value = (
        merge_accessor.num_pairs() == 1
        and merge_accessor.total_length() >= mem.page_size
    )
    # A sibling holding one large value is left alone
    if single_large_value:
        child_builder = LeafBuilder(mem)
        child_builder.push_all_except(partial_accessor, deleted_pair)
        new_page = child_builder.build()
        builder.push_all(accessor)
        builder.replace_child(child_index, new_page.page_number)
        result = finalize_branch_builder(ctx, builder)
        ctx.free_policy.conditional_free(original_page_number, ctx.freed, mem)
        # The partial child is freed by the guard returned for the deleted value
        return result, True

    for i in range(accessor.count_children()):
        if i == child_index:
            continue
        if i != merge_with:
            _push_other_child(builder, accessor, i)
            continue
        child_builder = LeafBuilder(mem)
        if child_index < merge_with:
            child_builder.push_all_except(partial_accessor, deleted_pair)
        child_builder.push_all_except(merge_accessor, None)
        if child_index > merge_with:
            child_builder.push_all_except(partial_accessor, deleted_pair)
        if child_builder.should_split():
            new_page1, split_key, new_page2 = child_builder.build_split()
            builder.push_key(split_key)
            builder.push_child(new_page1.page_number)
            builder.push_child(new_page2.page_number)
        else:
            builder.push_child(child_builder.build().page_number)
        _push_merged_separator(builder, accessor, child_index, merge_with)

    result = finalize_branch_builder(ctx, builder)
    ctx.free_policy.conditional_free(merge_with_number, ctx.freed, mem)
    return result, False


def _merge_deleted_branch(
    ctx: MutationContext,
    accessor: BranchAccessor,
    child_index: int,
    only_grandchild: int,
) -> DeletionResult:
    mem = ctx.mem
    merge_with = 1 if child_index == 0 else child_index - 1
    merge_with_number = accessor.child_page(merge_with)
    merge_accessor = BranchAccessor(mem.get_page(merge_with_number))
    builder = BranchBuilder(mem)
    for i in range(accessor.count_children()):
        if i == child_index:
            continue
        if i != merge_with:
            _push_other_child(builder, accessor, i)
            continue
        child_builder = BranchBuilder(mem)
        separator = accessor.key(min(child_index, merge_with))
        if child_index < merge_with:
            child_builder.push_child(only_grandchild)
            child_builder.push_key(separator)
        child_builder.push_all(merge_accessor)
        if child_index > merge_with:
            child_builder.push_key(separator)
            child_builder.push_child(only_grandchild)
        _push_branch_children(builder, ctx, child_builder)
        _push_merged_separator(builder, accessor, child_index, merge_with)

    result = finalize_branch_builder(ctx, builder)
    ctx.free_policy.conditional_free(merge_with_number, ctx.freed, mem)
    return result


def _merge_partial_branch(
    ctx: MutationContext,
    accessor: BranchAccessor,
    child_index: int,
    partial_child: int,
) -> DeletionResult:
    mem = ctx.mem
    partial_accessor = BranchAccessor(mem.get_page(partial_child))
    merge_with = 1 if child_index == 0 else child_index - 1
    merge_with_number = accessor.child_page(merge_with)
    merge_accessor = BranchAccessor(mem.get_page(merge_with_number))
    builder = BranchBuilder(mem)
    for i in range(accessor.count_children()):
        if i == child_index:
            continue
        if i != merge_with:
            _push_other_child(builder, accessor, i)
            continue
        child_builder = BranchBuilder(mem)
        separator = accessor.key(min(child_index, merge_with))
        if child_index < merge_with:
            child_builder.push_all(partial_accessor)
            child_builder.push_key(separator)
        child_builder.push_all(merge_accessor)
        if child_index > merge_with:
            child_builder.push_key(separator)
            child_builder.push_all(partial_accessor)
        _push_branch_children(builder, ctx, child_builder)
        _push_merged_separator(builder, accessor, child_index, merge_with)

    result = finalize_branch_builder(ctx, builder)
    ctx.free_policy.conditional_free(merge_with_number, ctx.freed, mem)
    ctx.free_policy.conditional_free(partial_child, ctx.freed, mem)
    return result


def _delete_from_branch(
    ctx: MutationContext, page: Page, key: bytes
) -> tuple[DeletionResult, Optional[AccessGuard]]:
    mem = ctx.mem
    accessor = BranchAccessor(page)
    original_page_number = page.page_number
    child_index, child_page_number = accessor.child_for_key(key, ctx.compare)
    result, found = delete_helper(ctx, mem.get_page(child_page_number), key)
    if found is None:
        return Subtree(original_page_number), None

    if isinstance(result, Subtree):
        new_child = result.page_number
        if new_child == child_page_number:
            # A descendant was edited in place, so this page is unchanged
            result_page_number = original_page_number
        elif mem.uncommitted(original_page_number):
            BranchMutator(page).write_child_page(child_index, new_child)
            result_page_number = original_page_number
        else:
            builder = BranchBuilder(mem)
            builder.push_all(accessor)
            builder.replace_child(child_index, new_child)
            new_page = builder.build()
            ctx.free_policy.conditional_free(original_page_number, ctx.freed, mem)
            result_page_number = new_page.page_number
        return Subtree(result_page_number), found

    # The child asks to be merged with a sibling
    if isinstance(result, DeletedLeaf):
        builder = BranchBuilder(mem)
        count = accessor.count_children()
        for i in range(count):
            if i != child_index:
                builder.push_child(accessor.child_page(i))
        # When the last child goes, the key preceding it goes too
        end = count - 2 if child_index == count - 1 else count - 1
        for i in range(end):
            if i != child_index:
                builder.push_key(accessor.key(i))
        final_result = finalize_branch_builder(ctx, builder)
    elif isinstance(result, PartialLeaf):
        final_result, parent_freed = _merge_partial_leaf(
            ctx,
            accessor,
            child_index,
            child_page_number,
            result.deleted_pair,
            original_page_number,
        )
        if parent_freed:
            return final_result, found
    elif isinstance(result, DeletedBranch):
        final_result = _merge_deleted_branch(
            ctx, accessor, child_index, result.remaining_child
        )
    elif isinstance(result, PartialBranch):
        final_result = _merge_partial_branch(
            ctx, accessor, child_index, result.page_number
        )
    else:
        raise TypeError(f"unexpected deletion result {result!r}")

    ctx.free_policy.conditional_free(original_page_number, ctx.freed, mem)
    return final_result, found


def delete_helper(
    ctx: MutationContext, page: Page, key: bytes
) -> tuple[DeletionResult, Optional[AccessGuard]]:
    """Delete ``key`` from the subtree rooted at ``page``.

    Returns the shape of the resulting subtree and a guard over the removed
    value, or ``None`` if the key was absent, in which case nothing changes.
    """
    key = bytes(key)
    kind = page.memory[0]
    if kind == LEAF:
        return _delete_from_leaf(ctx, page, key)
    if kind == BRANCH:
        return _delete_from_branch(ctx, page, key)
    raise ValueError(f"page {page.page_number} has unknown type {kind}")