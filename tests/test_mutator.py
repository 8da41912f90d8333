import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from pagetree.iters import Bound, BtreeRangeIter, all_page_numbers
from pagetree.memory import FreePolicy, TransactionalMemory
from pagetree.mutator import MutateHelper


def make_helper(page_size=4096, policy=FreePolicy.NEVER):
    mem = TransactionalMemory(page_size, 100_000)
    return MutateHelper(None, policy, mem, [])


def put(helper, key, value):
    old, _ = helper.insert(key, value)
    previous = None
    if old is not None:
        previous = old.value()
        old.release()
    return previous


def remove(helper, key):
    guard = helper.delete(key)
    if guard is None:
        return None
    value = guard.value()
    guard.release()
    return value


def lookup(helper, key):
    it = BtreeRangeIter(helper.mem, helper.root, Bound.included(key), Bound.included(key))
    for entry in it:
        return bytes(entry.value)
    return None


def items(helper):
    return [(bytes(e.key), bytes(e.value)) for e in BtreeRangeIter(helper.mem, helper.root)]


def u64(n):
    return n.to_bytes(8, "big")


def test_insert_into_empty_tree_sets_root():
    helper = make_helper()
    old, guard = helper.insert(b"hello", b"world")
    assert old is None
    assert guard.value() == b"world"
    assert helper.root is not None
    assert lookup(helper, b"hello") == b"world"


def test_len_after_inserts():
    helper = make_helper()
    put(helper, b"hello", b"world")
    put(helper, b"hello2", b"world2")
    put(helper, b"hi", b"world")
    assert len(items(helper)) == 3


def test_insert_overwrite_in_place():
    helper = make_helper()
    assert put(helper, b"hello", b"world") is None
    assert put(helper, b"hello", b"replaced") == b"world"
    assert lookup(helper, b"hello") == b"replaced"
    assert len(items(helper)) == 1


def test_insert_overwrite_after_commit_records_old_page():
    helper = make_helper()
    put(helper, b"hello", b"world")
    helper.mem.commit()
    old_root = helper.root
    old, _ = helper.insert(b"hello", b"replaced")
    assert old.value() == b"world"
    old.release()
    assert helper.root != old_root
    assert old_root in helper.freed
    assert lookup(helper, b"hello") == b"replaced"


def test_insert_reserve_then_write():
    helper = make_helper()
    value = b"world"
    _, reserved = helper.insert(b"hello", bytes(len(value)))
    reserved.write(value)
    assert lookup(helper, b"hello") == value


def test_delete():
    helper = make_helper()
    put(helper, b"hello", b"world")
    put(helper, b"hello2", b"world")
    helper.mem.commit()
    assert remove(helper, b"hello") == b"world"
    assert helper.delete(b"hello") is None
    assert lookup(helper, b"hello") is None
    assert len(items(helper)) == 1


def test_delete_from_empty_tree():
    helper = make_helper()
    assert helper.delete(b"missing") is None
    assert helper.root is None


def test_delete_last_key_empties_tree():
    helper = make_helper()
    put(helper, b"only", b"value")
    assert remove(helper, b"only") == b"value"
    assert helper.root is None


def test_safe_delete_requires_never_policy():
    helper = make_helper(policy=FreePolicy.UNCOMMITTED)
    put(helper, b"a", b"b")
    with pytest.raises(ValueError):
        helper.safe_delete(b"a")


def test_safe_delete_returns_value():
    helper = make_helper()
    put(helper, b"a", b"b")
    guard = helper.safe_delete(b"a")
    assert guard.value() == b"b"
    guard.release()
    assert helper.root is None


def test_regression_delete_keeps_neighbours():
    helper = make_helper()
    for key, value in [(1, 1), (6, 9), (12, 10), (18, 27), (24, 33), (30, 14)]:
        put(helper, u64(key), u64(value))
        helper.mem.commit()
    remove(helper, u64(30))
    helper.mem.commit()
    assert lookup(helper, u64(6)) == u64(9)


def test_regression_partial_leaf_deletions():
    helper = make_helper()
    big_value = bytes(1000)
    for i in range(20):
        put(helper, bytes([i]), big_value)
    for i in reversed(range(10, 20)):
        remove(helper, bytes([i]))
        for j in range(i):
            assert lookup(helper, bytes([j])) is not None
    assert [k for k, _ in items(helper)] == [bytes([i]) for i in range(10)]


def test_many_inserts_are_sorted_and_complete():
    helper = make_helper(page_size=256)
    keys = [u64(i * 7919 % 1000) for i in range(300)]
    for key in keys:
        put(helper, key, key + b"v")
    result = items(helper)
    assert [k for k, _ in result] == sorted(set(keys))
    assert all(v == k + b"v" for k, v in result)


def test_reachable_pages_not_in_freed_after_committed_deletes():
    helper = make_helper(page_size=256)
    for i in range(200):
        put(helper, u64(i), bytes(20))
    helper.mem.commit()
    for i in range(0, 200, 3):
        remove(helper, u64(i))
    reachable = set(all_page_numbers(helper.root, helper.mem))
    assert reachable.isdisjoint(helper.freed)
    assert reachable <= set(helper.mem.allocated_pages())
    assert len(items(helper)) == 200 - len(range(0, 200, 3))


def test_uncommitted_policy_does_not_leak_pages():
    helper = make_helper(page_size=256, policy=FreePolicy.UNCOMMITTED)
    for i in range(150):
        put(helper, u64(i), bytes(30))
    for i in range(0, 150, 2):
        remove(helper, u64(i))
    reachable = sorted(all_page_numbers(helper.root, helper.mem))
    assert helper.mem.allocated_pages() == reachable
    assert list(helper.freed) == []


@settings(max_examples=40, deadline=None)
@given(
    st.dictionaries(st.binary(min_size=1, max_size=30), st.binary(max_size=120), max_size=60),
    st.data(),
)
def test_matches_dictionary_model(entries, data):
    helper = make_helper(page_size=256)
    for key, value in entries.items():
        put(helper, key, value)
    to_remove = data.draw(st.lists(st.sampled_from(sorted(entries)), unique=True)) if entries else []
    helper.mem.commit()
    for key in to_remove:
        assert remove(helper, key) == entries[key]
    expected = sorted((k, v) for k, v in entries.items() if k not in to_remove)
    assert items(helper) == expected