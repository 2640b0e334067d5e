from circulation_service.positions import compact_positions, is_contiguous, next_position


def test_compact_closes_gap_behind_removed_entry():
    snapshot = {"a": 1, "b": 2, "c": 3, "d": 4}
    assert compact_positions(snapshot, 2) == {"a": 1, "c": 2, "d": 3}


def test_compact_head_removal_shifts_everyone():
    assert compact_positions({"a": 1, "b": 2}, 1) == {"b": 1}


def test_compact_tail_removal_leaves_others_alone():
    assert compact_positions({"a": 1, "b": 2, "c": 3}, 3) == {"a": 1, "b": 2}


def test_compact_when_removed_entry_already_left_snapshot():
    # the removed row is no longer pending, so it is not in the snapshot
    assert compact_positions({"a": 1, "c": 3}, 2) == {"a": 1, "c": 2}


def test_compact_does_not_mutate_input():
    snapshot = {"a": 1, "b": 2}
    compact_positions(snapshot, 1)
    assert snapshot == {"a": 1, "b": 2}


def test_next_position():
    assert next_position([]) == 1
    assert next_position([1, 2, 3]) == 4


def test_is_contiguous():
    assert is_contiguous([])
    assert is_contiguous([2, 1, 3])
    assert not is_contiguous([1, 3])
    assert not is_contiguous([1, 1, 2])
    assert not is_contiguous([0, 1])
