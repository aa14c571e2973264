"""Tests for the assertion primitives."""
import struct

import pytest

from rwcompliance.assertions import (
    assert_in_epsilon,
    check_has_metric_name,
    check_no_duplicate_labels,
    check_no_empty_label_values,
    check_sorted_labels,
    count_matching,
    count_matching_exact_value,
    for_each_sample,
    is_stale_nan,
    label_must_match,
    require,
)
from rwcompliance.errors import AssertionFailure, ProtocolInvariantViolation
from rwcompliance.series import Batch, Label, Sample, labels_from_strings

UP = labels_from_strings("__name__", "up", "job", "test")
STALE_NAN = struct.unpack("<d", struct.pack("<Q", 0x7FF0000000000002))[0]


def sample(ts, value, *pairs):
    return Sample(tuple(Label(pairs[i], pairs[i + 1]) for i in range(0, len(pairs), 2)), ts, value)


def up_batches():
    return [
        Batch((
            sample(1000, 1.0, "__name__", "up", "instance", "127.0.0.1:1234", "job", "test"),
            sample(1000, 42.0, "__name__", "gauge", "instance", "127.0.0.1:1234", "job", "test"),
        )),
        Batch((
            sample(2000, 1.0, "__name__", "up", "instance", "127.0.0.1:1234", "job", "test"),
        )),
    ]


def test_count_matching_on_no_batches():
    """Nothing received: zero matches and the callback never runs."""
    calls = []
    assert count_matching([], UP, lambda ts, v: calls.append((ts, v))) == 0
    assert calls == []


def test_count_matching_invokes_callback_per_match_in_order():
    calls = []
    assert count_matching(up_batches(), UP, lambda ts, v: calls.append((ts, v))) == 2
    assert calls == [(1000, 1.0), (2000, 1.0)]


def test_count_matching_without_callback():
    assert count_matching(up_batches(), labels_from_strings("job", "test")) == 3


def test_callback_returning_false_excludes_sample():
    assert count_matching(up_batches(), labels_from_strings("job", "test"), lambda ts, v: v == 1.0) == 2


def test_count_matching_exact_value():
    assert count_matching_exact_value(up_batches(), UP, 1.0) == 2
    assert count_matching_exact_value(up_batches(), labels_from_strings("__name__", "missing"), 1.0) == 0


def test_count_matching_exact_value_mismatch_raises():
    with pytest.raises(AssertionFailure, match="expected"):
        count_matching_exact_value(up_batches(), UP, 0.0)


def test_for_each_sample_visits_everything():
    seen = []
    for_each_sample(up_batches(), seen.append)
    assert [s.timestamp for s in seen] == [1000, 1000, 2000]


def test_assert_in_epsilon():
    assert_in_epsilon(1_700_000_000_000.0, 1_700_000_000_500.0, 0.01)
    assert_in_epsilon(0.0, 0.0, 0.01)
    with pytest.raises(AssertionFailure):
        assert_in_epsilon(100.0, 120.0, 0.01)
    with pytest.raises(AssertionFailure):
        assert_in_epsilon(0.0, 1.0, 0.01)
    with pytest.raises(AssertionFailure):
        assert_in_epsilon(1.0, float("nan"), 0.5)


def test_is_stale_nan():
    assert is_stale_nan(STALE_NAN)
    assert not is_stale_nan(float("nan"))
    assert not is_stale_nan(1.0)


def test_label_must_match():
    label_must_match(up_batches(), "instance", r"127\.0\.0\.1:\d+")
    with pytest.raises(AssertionFailure, match="does not match"):
        label_must_match(up_batches(), "instance", r"^localhost:\d+$")
    with pytest.raises(AssertionFailure, match="not found"):
        label_must_match(up_batches(), "zone", ".*")


def test_require():
    require(True, "unused")
    with pytest.raises(AssertionFailure, match="boom"):
        require(False, "boom")


def test_check_sorted_labels():
    check_sorted_labels(up_batches())
    unsorted = [Batch((sample(1, 1.0, "__name__", "test", "b", "2", "a", "1"),))]
    with pytest.raises(ProtocolInvariantViolation, match="not sorted"):
        check_sorted_labels(unsorted)


def test_check_no_duplicate_labels():
    check_no_duplicate_labels(up_batches())
    repeated = [Batch((sample(1, 1.0, "__name__", "test", "a", "1", "a", "1"),))]
    with pytest.raises(ProtocolInvariantViolation, match="repeated 2 times"):
        check_no_duplicate_labels(repeated)


def test_check_no_empty_label_values():
    check_no_empty_label_values(up_batches())
    empty = [Batch((sample(1, 1.0, "__name__", "test", "a", ""),))]
    with pytest.raises(ProtocolInvariantViolation, match="empty labels"):
        check_no_empty_label_values(empty)


def test_check_has_metric_name():
    check_has_metric_name(up_batches())
    nameless = [Batch((sample(1, 1.0, "label", "value"),))]
    with pytest.raises(ProtocolInvariantViolation, match="missing name label"):
        check_has_metric_name(nameless)


def test_protocol_violation_is_an_assertion_failure():
    assert issubclass(ProtocolInvariantViolation, AssertionFailure)
    assert issubclass(AssertionFailure, AssertionError)
