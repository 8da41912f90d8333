import pytest
from hypothesis import given, settings, strategies as st

from pagetree.branch import BranchAccessor, BranchBuilder
from pagetree.deletion import (
    DeletedBranch,
    DeletedLeaf,
    PartialBranch,
    PartialLeaf,
    Subtree,
    delete_helper,
    finalize_branch_builder,
)
from pagetree.insertion import MutationContext, insert_helper
from pagetree.iters import BtreeRangeIter, all_page_numbers
from pagetree.leaf import LeafAccessor, LeafBuilder
from pagetree.memory import FreePolicy, TransactionalMemory


def _ctx(page_size=4096, max_pages=100000, policy=FreePolicy.NEVER):
    return MutationContext(TransactionalMemory(page_size, max_pages), policy)


def _insert(ctx, root, key, value):
    if root is None:
        builder = LeafBuilder(ctx.mem)
        builder.push(key, value)
        return builder.build().page_number
    result = insert_helper(ctx, ctx.mem.get_page(root), key, value)
    if result.old_value is not None:
        result.old_value.release()
    if result.additional_sibling is None:
        return result.new_root
    separator, sibling = result.additional_sibling
    builder = BranchBuilder(ctx.mem)
    builder.push_child(result.new_root)
    builder.push_key(separator)
    builder.push_child(sibling)
    return builder.build().page_number


def _delete(ctx, root, key):
    result, guard = delete_helper(ctx, ctx.mem.get_page(root), key)
    if isinstance(result, Subtree):
        new_root = result.page_number
    elif isinstance(result, DeletedLeaf):
        new_root = None
    elif isinstance(result, PartialLeaf):
        builder = LeafBuilder(ctx.mem)
        builder.push_all_except(LeafAccessor(ctx.mem.get_page(root)), result.deleted_pair)
        new_root = builder.build().page_number
    elif isinstance(result, PartialBranch):
        new_root = result.page_number
    else:
        new_root = result.remaining_child
    value = None
    if guard is not None:
        value = guard.value()
        guard.release()
    return new_root, value


def _contents(ctx, root):
    return [(e.key, e.value) for e in BtreeRangeIter(ctx.mem, root)]


def _u64(n):
    return n.to_bytes(8, "big")


def test_delete_only_entry_gives_deleted_leaf():
    ctx = _ctx()
    root = _insert(ctx, None, b"hello", b"world")
    result, guard = delete_helper(ctx, ctx.mem.get_page(root), b"hello")
    assert result == DeletedLeaf()
    assert guard.value() == b"world"


def test_missing_key_leaves_tree_unchanged():
    ctx = _ctx()
    root = _insert(ctx, None, b"hello", b"world")
    before = ctx.mem.allocated_pages()
    result, guard = delete_helper(ctx, ctx.mem.get_page(root), b"absent")
    assert result == Subtree(root)
    assert guard is None
    assert ctx.mem.allocated_pages() == before
    assert ctx.freed == []


def test_uncommitted_full_leaf_removes_entry_on_release():
    ctx = _ctx(page_size=128)
    root = _insert(ctx, None, b"aaaa", b"x" * 50)
    root = _insert(ctx, root, b"bbbb", b"y" * 50)
    assert LeafAccessor(ctx.mem.get_page(root)).num_pairs() == 2
    result, guard = delete_helper(ctx, ctx.mem.get_page(root), b"aaaa")
    assert result == Subtree(root)
    assert guard.value() == b"x" * 50
    assert LeafAccessor(ctx.mem.get_page(root)).num_pairs() == 2
    guard.release()
    assert _contents(ctx, root) == [(b"bbbb", b"y" * 50)]


def test_committed_sparse_leaf_is_partial_and_deferred():
    ctx = _ctx()
    root = _insert(ctx, None, b"a", b"1")
    root = _insert(ctx, root, b"b", b"2")
    ctx.mem.commit()
    result, guard = delete_helper(ctx, ctx.mem.get_page(root), b"b")
    assert result == PartialLeaf(1)
    assert root in ctx.freed
    guard.release()
    assert root in ctx.mem.allocated_pages()


def test_unknown_page_type_raises():
    ctx = _ctx()
    page = ctx.mem.allocate(16)
    with pytest.raises(ValueError):
        delete_helper(ctx, page, b"k")


def test_finalize_single_child_is_deleted_branch():
    ctx = _ctx()
    builder = BranchBuilder(ctx.mem)
    builder.push_child(7)
    assert finalize_branch_builder(ctx, builder) == DeletedBranch(7)


def test_finalize_small_branch_is_partial():
    ctx = _ctx(page_size=4096)
    builder = BranchBuilder(ctx.mem)
    builder.push_child(3)
    builder.push_key(b"k" * 10)
    builder.push_child(4)
    result = finalize_branch_builder(ctx, builder)
    assert isinstance(result, PartialBranch)
    accessor = BranchAccessor(ctx.mem.get_page(result.page_number))
    assert [accessor.child_page(0), accessor.child_page(1)] == [3, 4]


def test_finalize_full_branch_is_subtree():
    ctx = _ctx(page_size=64)
    builder = BranchBuilder(ctx.mem)
    builder.push_child(3)
    builder.push_key(b"k" * 10)
    builder.push_child(4)
    result = finalize_branch_builder(ctx, builder)
    assert isinstance(result, Subtree)
    assert BranchAccessor(ctx.mem.get_page(result.page_number)).key(0) == b"k" * 10


def test_deleting_neighbours_keeps_other_keys():
    ctx = _ctx()
    big_value = bytes(1000)
    root = None
    for i in range(20):
        root = _insert(ctx, root, bytes([i]), big_value)
    for i in reversed(range(10, 20)):
        root, value = _delete(ctx, root, bytes([i]))
        assert value == big_value
        keys = [key for key, _ in _contents(ctx, root)]
        assert keys == [bytes([j]) for j in range(i)]


def test_delete_after_commits_keeps_other_values():
    ctx = _ctx(page_size=1024)
    root = None
    for key, value in [(1, 1), (6, 9), (12, 10), (18, 27), (24, 33), (30, 14)]:
        root = _insert(ctx, root, _u64(key), _u64(value))
        ctx.mem.commit()
    root, removed = _delete(ctx, root, _u64(30))
    assert removed == _u64(14)
    assert dict(_contents(ctx, root))[_u64(6)] == _u64(9)
    assert _u64(30) not in dict(_contents(ctx, root))


def test_delete_everything_empties_tree():
    ctx = _ctx(page_size=256)
    root = None
    keys = [_u64(i) for i in range(200)]
    for key in keys:
        root = _insert(ctx, root, key, key * 2)
    ctx.mem.commit()
    for key in keys:
        root, value = _delete(ctx, root, key)
        assert value == key * 2
    assert root is None


@settings(max_examples=40, deadline=None)
@given(
    st.lists(
        st.tuples(st.binary(min_size=1, max_size=8), st.binary(max_size=40)),
        min_size=1,
        max_size=80,
    ),
    st.data(),
)
def test_deletion_matches_dict_and_tracks_pages(pairs, data):
    ctx = _ctx(page_size=128)
    expected = {}
    root = None
    for key, value in pairs:
        root = _insert(ctx, root, key, value)
        expected[key] = value
    if data.draw(st.booleans()):
        ctx.mem.commit()
    doomed = data.draw(st.lists(st.sampled_from(sorted(expected)), unique=True))
    for key in doomed:
        root, value = _delete(ctx, root, key)
        assert value == expected.pop(key)
    assert _contents(ctx, root) if root is not None else [] == sorted(expected.items())
    if root is not None:
        assert _contents(ctx, root) == sorted(expected.items())
        reachable = set(all_page_numbers(root, ctx.mem))
    else:
        assert expected == {}
        reachable = set()
    freed = set(ctx.freed)
    assert reachable.isdisjoint(freed)
    assert set(ctx.mem.allocated_pages()) == reachable | freed


@settings(max_examples=30, deadline=None)
@given(
    st.lists(
        st.tuples(st.binary(min_size=1, max_size=8), st.binary(max_size=40)),
        min_size=1,
        max_size=80,
    ),
    st.data(),
)
def test_uncommitted_policy_releases_replaced_pages(pairs, data):
    ctx = _ctx(page_size=128, policy=FreePolicy.UNCOMMITTED)
    expected = {}
    root = None
    for key, value in pairs:
        root = _insert(ctx, root, key, value)
        expected[key] = value
    doomed = data.draw(st.lists(st.sampled_from(sorted(expected)), unique=True))
    for key in doomed:
        root, value = _delete(ctx, root, key)
        assert value == expected.pop(key)
    if root is None:
        assert expected == {}
        assert ctx.mem.allocated_pages() == []
    else:
        assert _contents(ctx, root) == sorted(expected.items())
        assert ctx.mem.allocated_pages() == sorted(all_page_numbers(root, ctx.mem))


def test_missing_key_in_branch_tree_returns_no_guard():
    ctx = _ctx(page_size=128)
    root = None
    for i in range(50):
        root = _insert(ctx, root, _u64(i), b"v" * 10)
    assert ctx.mem.get_page(root).memory[0] == 2
    result, guard = delete_helper(ctx, ctx.mem.get_page(root), _u64(1000))
    assert result == Subtree(root)
    assert guard is None
    assert len(_contents(ctx, root)) == 50