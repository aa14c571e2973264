"""Assertion primitives over received batches.

Presence checks are existential: a case passes when at least one matching
sample arrived during the run. Label constraints are always subset matches,
so labels a sender legitimately adds (``instance``, ``job``) never cause a
failure on their own.
"""
from typing import Callable, Iterable, Optional
import math
import re
import struct

from rwcompliance.errors import AssertionFailure, ProtocolInvariantViolation
from rwcompliance.matcher import labels_contain
from rwcompliance.series import Batch, LabelSet, Sample, format_labels

# Bit pattern Prometheus uses to mark a series as stale.
STALE_NAN_BITS = 0x7FF0000000000002

SampleCallback = Callable[[int, float], Optional[bool]]


def require(condition: bool, message: str):
    """Raise AssertionFailure with ``message`` unless ``condition`` holds."""
    if not condition:
        raise AssertionFailure(message)


def for_each_sample(batches: Iterable[Batch], callback: Callable[[Sample], None]):
    """Call ``callback`` on every sample of every batch, in arrival order."""
    for batch in batches:
        for sample in batch.samples:
            callback(sample)


def count_matching(
    batches: Iterable[Batch],
    constraint: LabelSet,
    callback: Optional[SampleCallback] = None
) -> int:
    """
    Count samples whose labels contain ``constraint``.

    ``callback`` is invoked with (timestamp, value) for each match and may
    raise to fail the check. Returning exactly False excludes the sample
    from the count; any other return value counts it.
    """
    count = 0
    for batch in batches:
        for sample in batch.samples:
            if not labels_contain(sample.labels, constraint):
                continue
            if callback is not None and callback(sample.timestamp, sample.value) is False:
                continue
            count += 1
    return count


def count_matching_exact_value(
    batches: Iterable[Batch],
    constraint: LabelSet,
    expected: float
) -> int:
    """Count samples matching ``constraint``, failing if any has a value other than ``expected``."""
    def check(_timestamp: int, value: float):
        if value != expected:
            raise AssertionFailure(
                f"expected {format_labels(constraint)} == {expected!r}, got {value!r}"
            )

    return count_matching(batches, constraint, check)


def assert_in_epsilon(expected: float, actual: float, epsilon: float):
    """Fail unless ``actual`` is within relative tolerance ``epsilon`` of ``expected``."""
    if math.isnan(expected) or math.isnan(actual):
        raise AssertionFailure(f"cannot compare NaN values: expected={expected!r} actual={actual!r}")
    if expected == 0:
        require(actual == 0, f"expected 0, got {actual!r}")
        return
    relative = abs(expected - actual) / abs(expected)
    require(
        relative <= epsilon,
        f"relative error {relative:.6f} exceeds epsilon {epsilon}: expected={expected!r} actual={actual!r}"
    )


def is_stale_nan(value: float) -> bool:
    """Return True if ``value`` is the Prometheus staleness marker."""
    return struct.unpack("<Q", struct.pack("<d", value))[0] == STALE_NAN_BITS


def label_must_match(batches: Iterable[Batch], name: str, pattern: str):
    """Fail unless every sample has label ``name`` whose value matches ``pattern``."""
    regex = re.compile(pattern)

    def check(sample: Sample):
        value = sample.label_value(name)
        if value is None:
            raise AssertionFailure(f"label '{name}' not found on {format_labels(sample.labels)}")
        if not regex.search(value):
            raise AssertionFailure(f"label {name}='{value}' does not match '{pattern}'")

    for_each_sample(batches, check)


# Protocol invariants. These hold for any conforming sender regardless of
# which metric is being exported.

def check_sorted_labels(batches: Iterable[Batch]):
    def check(sample: Sample):
        names = sample.label_names()
        if list(names) != sorted(names):
            raise ProtocolInvariantViolation(f"'{format_labels(sample.labels)}' is not sorted")

    for_each_sample(batches, check)


def check_no_duplicate_labels(batches: Iterable[Batch]):
    def check(sample: Sample):
        seen = set()
        for name in sample.label_names():
            if name in seen:
                count = sample.label_names().count(name)
                raise ProtocolInvariantViolation(
                    f"label '{name}' is repeated {count} times in {format_labels(sample.labels)}"
                )
            seen.add(name)

    for_each_sample(batches, check)


def check_no_empty_label_values(batches: Iterable[Batch]):
    def check(sample: Sample):
        for label in sample.labels:
            if label.value == "":
                raise ProtocolInvariantViolation(f"'{format_labels(sample.labels)}' contains empty labels")

    for_each_sample(batches, check)


def check_has_metric_name(batches: Iterable[Batch]):
    def check(sample: Sample):
        if sample.label_value("__name__") is None:
            raise ProtocolInvariantViolation(f"metric '{format_labels(sample.labels)}' is missing name label")

    for_each_sample(batches, check)
