"""Catalogue of compliance test cases.

Each case pairs an exposition handler, served to the sender's scraper,
with an expectation evaluated against everything the sender pushed back.
Factories build a fresh case per run so stateful handlers (counters,
staleness) never leak between runs.
"""
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import logging
import threading
import time

from prometheus_client import Counter, Gauge, Histogram

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
from rwcompliance.config import AssertionConfig
from rwcompliance.errors import AssertionFailure, ProtocolInvariantViolation
from rwcompliance.exposition import (
    ExpositionHandler,
    RegistryExposition,
    StaticExposition,
    gauge_func_exposition,
    new_registry,
)
from rwcompliance.matcher import labels_contain
from rwcompliance.receiver import WriteHook
from rwcompliance.series import Batch, Sample, format_labels, labels_from_strings

logger = logging.getLogger(__name__)

Expectation = Callable[[Sequence[Batch], AssertionConfig], None]

NOW = labels_from_strings("__name__", "now")

REQUIRED_HEADERS = (
    ("Content-Encoding", "snappy"),
    ("Content-Type", "application/x-protobuf"),
    ("X-Prometheus-Remote-Write-Version", "0.1.0"),
)


@dataclass
class TestCase:
    """A named scenario: what to expose, and what must arrive."""
    __test__ = False

    name: str
    exposition: ExpositionHandler
    expectation: Expectation
    description: str = ""
    write_hook: Optional[WriteHook] = None

    def exposition_handler(self) -> ExpositionHandler:
        return self.exposition

    def evaluate(self, batches: Sequence[Batch], config: Optional[AssertionConfig] = None) -> Tuple[bool, str]:
        """
        Run the expectation once; returns (passed, failure details).

        Any error raised by the expectation becomes a failed verdict so the
        rest of the suite still runs.
        """
        config = config or AssertionConfig()
        try:
            self.expectation(batches, config)
        except ProtocolInvariantViolation as e:
            return False, f"protocol violation: {e}"
        except AssertionFailure as e:
            return False, str(e)
        except Exception as e:
            logger.error(f"Case '{self.name}' expectation raised {type(e).__name__}: {e}", exc_info=True)
            return False, f"expectation error: {e}"
        return True, ""


def _require_up(batches: Sequence[Batch], value: float):
    ups = count_matching_exact_value(batches, labels_from_strings("__name__", "up", "job", "test"), value)
    require(ups > 0, f'found zero samples for up{{job="test"}} = {value}')


def _constant_gauge() -> RegistryExposition:
    return gauge_func_exposition("gauge", lambda: 42.0)


def _now_gauge() -> RegistryExposition:
    return gauge_func_exposition("now", lambda: float(int(time.time()) * 1000))


def _require_now(batches: Sequence[Batch], epsilon: float):
    nows = count_matching(batches, NOW, lambda ts, v: assert_in_epsilon(float(ts), v, epsilon))
    require(nows > 0, 'found zero samples for {__name__="now"}')


def static_labels_case() -> TestCase:
    def expected(bs, _config):
        tests = count_matching_exact_value(bs, labels_from_strings("__name__", "test", "a", "1"), 1.0)
        require(tests > 0, 'found zero samples for test{a="1"}')

    return TestCase(
        name="StaticLabels",
        exposition=StaticExposition('# HELP test A gauge\n# TYPE test gauge\ntest{a="1"} 1.0\n'),
        expectation=expected,
        description="A constant labelled gauge arrives with its value.",
    )


def up_case() -> TestCase:
    return TestCase(
        name="Up",
        exposition=_constant_gauge(),
        expectation=lambda bs, _config: _require_up(bs, 1.0),
        description="A successful scrape produces up == 1.",
    )


def invalid_case() -> TestCase:
    return TestCase(
        name="Invalid",
        exposition=StaticExposition("# this is not valid prometheus\n1234notvali}{ 444\n"),
        expectation=lambda bs, _config: _require_up(bs, 0.0),
        description="An unparseable scrape produces up == 0.",
    )


def counter_case() -> TestCase:
    registry = new_registry()
    counter = Counter("counter", "Incremented after every scrape", registry=registry)

    def expected(bs, _config):
        state = {"next": 0.0}

        def check(_ts: int, value: float):
            if value != state["next"]:
                raise AssertionFailure(f"counter_total: expected {state['next']!r}, got {value!r}")
            state["next"] += 1.0

        counters = count_matching(bs, labels_from_strings("__name__", "counter_total"), check)
        require(counters > 0, 'found zero samples for {__name__="counter_total"}')

    return TestCase(
        name="Counter",
        exposition=RegistryExposition(registry, after_scrape=counter.inc),
        expectation=expected,
        description="Counter values arrive in scrape order without gaps.",
    )


def gauge_case() -> TestCase:
    return TestCase(
        name="Gauge",
        exposition=_now_gauge(),
        expectation=lambda bs, config: _require_now(bs, config.time_epsilon),
        description="A gauge reporting the current time matches its own sample timestamp.",
    )


def histogram_case() -> TestCase:
    registry = new_registry()
    hist = Histogram("histogram", "Two observations", buckets=[1.0, 2.0], registry=registry)
    hist.observe(1.0)
    hist.observe(2.0)

    def expected(bs, _config):
        le1 = count_matching_exact_value(bs, labels_from_strings("__name__", "histogram_bucket", "le", "1.0"), 1.0)
        le2 = count_matching_exact_value(bs, labels_from_strings("__name__", "histogram_bucket", "le", "2.0"), 2.0)
        inf = count_matching_exact_value(bs, labels_from_strings("__name__", "histogram_bucket", "le", "+Inf"), 2.0)
        total = count_matching_exact_value(bs, labels_from_strings("__name__", "histogram_sum"), 3.0)
        count = count_matching_exact_value(bs, labels_from_strings("__name__", "histogram_count"), 2.0)

        require(count > 0, 'found zero samples for {__name__="histogram_count"}')
        for name, n in (("le=1.0", le1), ("le=2.0", le2), ("le=+Inf", inf), ("sum", total)):
            require(n == count, f"histogram {name} has {n} samples, histogram_count has {count}")

    return TestCase(
        name="Histogram",
        exposition=RegistryExposition(registry),
        expectation=expected,
        description="Histogram buckets, sum and count arrive together.",
    )


def summary_case() -> TestCase:
    contents = (
        "# HELP summary Three observations\n"
        "# TYPE summary summary\n"
        'summary{quantile="0.5"} 2\n'
        'summary{quantile="0.9"} 3\n'
        'summary{quantile="0.99"} 3\n'
        "summary_sum 6\n"
        "summary_count 3\n"
    )

    def expected(bs, _config):
        p50 = count_matching_exact_value(bs, labels_from_strings("__name__", "summary", "quantile", "0.5"), 2.0)
        p90 = count_matching_exact_value(bs, labels_from_strings("__name__", "summary", "quantile", "0.9"), 3.0)
        p99 = count_matching_exact_value(bs, labels_from_strings("__name__", "summary", "quantile", "0.99"), 3.0)
        total = count_matching_exact_value(bs, labels_from_strings("__name__", "summary_sum"), 6.0)
        count = count_matching_exact_value(bs, labels_from_strings("__name__", "summary_count"), 3.0)

        require(count > 0, 'found zero samples for {__name__="summary_count"}')
        for name, n in (("p50", p50), ("p90", p90), ("p99", p99), ("sum", total)):
            require(n == count, f"summary {name} has {n} samples, summary_count has {count}")

    return TestCase(
        name="Summary",
        exposition=StaticExposition(contents),
        expectation=expected,
        description="Summary quantiles, sum and count arrive together.",
    )


def job_label_case() -> TestCase:
    def expected(bs, _config):
        gauges = count_matching_exact_value(bs, labels_from_strings("__name__", "gauge", "job", "test"), 42.0)
        require(gauges > 0, 'found zero samples for gauge{job="test"}')

    return TestCase(
        name="JobLabel",
        exposition=_constant_gauge(),
        expectation=expected,
        description="Scraped samples carry the configured job label.",
    )


def instance_label_case() -> TestCase:
    def expected(bs, config: AssertionConfig):
        gauges = count_matching_exact_value(bs, labels_from_strings("__name__", "gauge"), 42.0)
        require(gauges > 0, 'found zero samples for {__name__="gauge"}')
        label_must_match(bs, "instance", config.instance_pattern)

    return TestCase(
        name="InstanceLabel",
        exposition=_constant_gauge(),
        expectation=expected,
        description="Every sample carries an instance label naming the scrape target.",
    )


def sorted_labels_case() -> TestCase:
    def expected(bs, _config):
        check_sorted_labels(bs)
        tests = count_matching_exact_value(bs, labels_from_strings("__name__", "test", "a", "1", "b", "2"), 1.0)
        require(tests > 0, 'found zero samples for test{a="1",b="2"}')

    return TestCase(
        name="SortedLabels",
        exposition=StaticExposition('# HELP test A gauge\n# TYPE test gauge\ntest{b="2",a="1"} 1.0\n'),
        expectation=expected,
        description="Labels exposed out of order arrive sorted.",
    )


def repeated_labels_case() -> TestCase:
    def expected(bs, _config):
        check_no_duplicate_labels(bs)
        _require_up(bs, 0.0)

    return TestCase(
        name="RepeatedLabels",
        exposition=StaticExposition('# HELP test A gauge\n# TYPE test gauge\ntest{a="1",a="1"} 1.0\n'),
        expectation=expected,
        description="A metric with a repeated label fails the scrape instead of being sent.",
    )


def empty_labels_case() -> TestCase:
    def expected(bs, _config):
        check_no_empty_label_values(bs)
        tests = count_matching_exact_value(bs, labels_from_strings("__name__", "test"), 1.0)
        require(tests > 0, 'found zero samples for {__name__="test"}')

    return TestCase(
        name="EmptyLabels",
        exposition=StaticExposition('# HELP test A gauge\n# TYPE test gauge\ntest{a=""} 1.0\n'),
        expectation=expected,
        description="Empty label values are dropped before sending.",
    )


def name_label_case() -> TestCase:
    def expected(bs, _config):
        check_has_metric_name(bs)
        samples = count_matching(bs, labels_from_strings("label", "value"))
        require(samples == 0, f'found {samples} samples for {{label="value"}}, none expected')

    return TestCase(
        name="NameLabel",
        exposition=StaticExposition('# HELP test A gauge\n# TYPE test gauge\n{label="value"} 1.0\n'),
        expectation=expected,
        description="A sample without a metric name is never sent.",
    )


def honor_labels_case() -> TestCase:
    def expected(bs, _config):
        constraint = labels_from_strings(
            "__name__", "test", "exported_job", "original", "exported_instance", "foo"
        )
        samples = count_matching_exact_value(bs, constraint, 1.0)
        require(samples > 0, f"found zero samples for {format_labels(constraint)}")

    return TestCase(
        name="HonorLabels",
        exposition=StaticExposition(
            '# HELP test A gauge\n# TYPE test gauge\ntest{job="original",instance="foo"} 1.0\n'
        ),
        expectation=expected,
        description="Conflicting target labels are renamed with an exported_ prefix.",
    )


def staleness_case() -> TestCase:
    registry = new_registry()
    gauge = Gauge("stale", "Removed after the first scrape", registry=registry)
    gauge.set(1.0)
    state = {"scraped": False}

    def unregister_once():
        if not state["scraped"]:
            registry.unregister(gauge)
            state["scraped"] = True

    def expected(bs, _config):
        markers = count_matching(bs, labels_from_strings("__name__", "stale"), lambda _ts, v: is_stale_nan(v))
        require(markers > 0, 'found no staleness markers for stale{job="test"}')

    return TestCase(
        name="Staleness",
        exposition=RegistryExposition(registry, after_scrape=unregister_once),
        expectation=expected,
        description="A series that disappears is closed with a staleness marker.",
    )


def timestamp_case() -> TestCase:
    start = int(time.time() * 1000)

    def expected(bs, _config):
        end = int(time.time() * 1000)
        state = {"last": 0}

        def check(sample: Sample):
            require(
                start < sample.timestamp < end,
                f"timestamp {sample.timestamp} of {format_labels(sample.labels)} outside run window ({start}, {end})"
            )
            require(
                sample.timestamp >= state["last"],
                f"timestamp {sample.timestamp} of {format_labels(sample.labels)} went backwards from {state['last']}"
            )
            state["last"] = sample.timestamp

        for_each_sample(bs, check)
        gauges = count_matching_exact_value(bs, labels_from_strings("__name__", "gauge"), 42.0)
        require(gauges > 0, 'found zero samples for {__name__="gauge"}')

    return TestCase(
        name="Timestamp",
        exposition=_constant_gauge(),
        expectation=expected,
        description="Sample timestamps fall inside the run and never decrease.",
    )


def headers_case() -> TestCase:
    lock = threading.Lock()
    problems: List[str] = []

    def check_headers(headers: Mapping[str, str], _batch: Batch) -> Optional[int]:
        with lock:
            for name, value in REQUIRED_HEADERS:
                actual = headers.get(name)
                if actual != value:
                    problems.append(f"header '{name}' != '{value}'; value is '{actual or ''}'")
        return None

    def expected(bs, config: AssertionConfig):
        _require_now(bs, config.time_epsilon)
        with lock:
            seen = sorted(set(problems))
        require(not seen, "; ".join(seen))

    return TestCase(
        name="Headers",
        exposition=_now_gauge(),
        expectation=expected,
        description="Write requests carry the remote write content and version headers.",
        write_hook=check_headers,
    )


def _retry_case(name: str, status: int, resent: bool, description: str) -> TestCase:
    lock = threading.Lock()
    state = {"rejected": False, "timestamp": None}

    def reject_first(_headers: Mapping[str, str], batch: Batch) -> Optional[int]:
        with lock:
            if state["rejected"]:
                return None
            state["rejected"] = True
            for sample in batch:
                if labels_contain(sample.labels, NOW):
                    state["timestamp"] = sample.timestamp
            return status

    def expected(bs, _config):
        with lock:
            rejected, timestamp = state["rejected"], state["timestamp"]
        require(rejected, "no write request arrived to reject")
        found = count_matching(bs, NOW, lambda ts, _v: ts == timestamp)
        if resent:
            require(found > 0, f"failed to find now@{timestamp} that should have been retried after {status}")
        else:
            require(found == 0, f"found now@{timestamp} that should not have been retried after {status}")

    return TestCase(
        name=name,
        exposition=_now_gauge(),
        expectation=expected,
        description=description,
        write_hook=reject_first,
    )


def retries_500_case() -> TestCase:
    return _retry_case(
        "Retries500", 500, resent=True,
        description="A write rejected with 500 is sent again.",
    )


def retries_400_case() -> TestCase:
    return _retry_case(
        "Retries400", 400, resent=False,
        description="A write rejected with 400 is dropped, not retried.",
    )


CASES: Dict[str, Callable[[], TestCase]] = {
    "StaticLabels": static_labels_case,
    "Up": up_case,
    "Invalid": invalid_case,
    "Counter": counter_case,
    "Gauge": gauge_case,
    "Histogram": histogram_case,
    "Summary": summary_case,
    "JobLabel": job_label_case,
    "InstanceLabel": instance_label_case,
    "SortedLabels": sorted_labels_case,
    "RepeatedLabels": repeated_labels_case,
    "EmptyLabels": empty_labels_case,
    "NameLabel": name_label_case,
    "HonorLabels": honor_labels_case,
    "Staleness": staleness_case,
    "Timestamp": timestamp_case,
    "Headers": headers_case,
    "Retries500": retries_500_case,
    "Retries400": retries_400_case,
}


def case_names() -> List[str]:
    return list(CASES)


def build_cases(names: Optional[Iterable[str]] = None) -> List[TestCase]:
    """
    Build fresh cases in catalogue order.

    Raises:
        KeyError: An unknown case name was requested
    """
    names = list(names or CASES)
    unknown = [n for n in names if n not in CASES]
    if unknown:
        raise KeyError(f"Unknown test cases: {unknown}. Available: {case_names()}")

    logger.debug(f"Building {len(names)} cases: {names}")
    return [CASES[n]() for n in names]
