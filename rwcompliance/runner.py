"""Runs test cases against senders and collects verdicts."""
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple
import logging
import time

from rwcompliance.cases import TestCase, build_cases
from rwcompliance.config import Config
from rwcompliance.errors import TargetError
from rwcompliance.receiver import BatchBuffer, Receiver
from rwcompliance.series import Batch
from rwcompliance.targets import Target, TargetOptions

logger = logging.getLogger(__name__)


class CaseState(Enum):
    REGISTERED = "registered"
    RUNNING = "running"
    EVALUATED = "evaluated"


@dataclass
class CaseResult:
    """Verdict for one case against one target."""
    target: str
    case: str
    passed: bool
    details: str = ""
    batches: int = 0
    samples: int = 0
    duration_s: float = 0.0


@dataclass
class CaseRun:
    """
    One execution of a case against a target.

    Owns the batch buffer for the run; nothing is shared with other runs.
    """
    case: TestCase
    target_name: str
    state: CaseState = CaseState.REGISTERED
    buffer: BatchBuffer = field(default_factory=BatchBuffer)

    def _advance(self, expected: CaseState, new: CaseState):
        if self.state is not expected:
            raise RuntimeError(f"Case '{self.case.name}' cannot move from {self.state.value} to {new.value}")
        self.state = new

    def execute(self, target: Target, config: Config) -> CaseResult:
        started = time.monotonic()
        receiver = Receiver(config.receiver, self.buffer, self.case.exposition_handler(), self.case.write_hook)
        failure: Optional[str] = None

        self._advance(CaseState.REGISTERED, CaseState.RUNNING)
        logger.info(f"[{self.target_name}] Running case '{self.case.name}'")
        try:
            receiver.start()
            target(TargetOptions(
                scrape_target=receiver.scrape_target,
                receive_endpoint=receiver.write_url,
                deadline=time.monotonic() + config.run.window_s,
                shutdown_grace_s=config.run.shutdown_grace_s,
            ))
        except TargetError as e:
            failure = f"target failed: {e}"
            logger.error(f"[{self.target_name}] {failure}")
        except (OSError, RuntimeError) as e:
            failure = f"receiver failed: {e}"
            logger.error(f"[{self.target_name}] {failure}", exc_info=True)
        finally:
            receiver.stop()

        batches: Tuple[Batch, ...] = self.buffer.batches()
        self._advance(CaseState.RUNNING, CaseState.EVALUATED)
        if failure is None:
            passed, details = self.case.evaluate(batches, config.assertions)
        else:
            passed, details = False, failure

        result = CaseResult(
            target=self.target_name,
            case=self.case.name,
            passed=passed,
            details=details,
            batches=len(batches),
            samples=sum(len(b) for b in batches),
            duration_s=time.monotonic() - started,
        )
        if passed:
            logger.info(f"[{self.target_name}] PASS {self.case.name} ({result.samples} samples in {result.batches} batches)")
        else:
            logger.warning(f"[{self.target_name}] FAIL {self.case.name}: {details}")
        return result


def run_case(case: TestCase, target: Target, config: Config, target_name: str = "target") -> CaseResult:
    """Run a single case against a single target with a fresh buffer."""
    return CaseRun(case, target_name).execute(target, config)


def run_suite(targets: Dict[str, Target], config: Config, case_names: Optional[List[str]] = None) -> List[CaseResult]:
    """
    Run every selected case against every target.

    A failing case never stops the remaining ones from running.
    """
    names = case_names or config.run.cases or None
    results: List[CaseResult] = []

    for target_name, target in targets.items():
        cases = build_cases(names)
        logger.info(f"Target '{target_name}': {len(cases)} cases, window {config.run.window_s}s")

        if config.run.parallelism > 1:
            with ThreadPoolExecutor(max_workers=config.run.parallelism) as pool:
                futures = [pool.submit(run_case, c, target, config, target_name) for c in cases]
                results.extend(f.result() for f in futures)
        else:
            results.extend(run_case(c, target, config, target_name) for c in cases)

    return results


def log_summary(results: List[CaseResult]) -> bool:
    """Log a pass/fail table; returns True if everything passed."""
    passed = sum(1 for r in results if r.passed)
    failed = len(results) - passed

    logger.info("=" * 60)
    for r in results:
        verdict = "PASS" if r.passed else "FAIL"
        line = f"{verdict}  {r.target}/{r.case}"
        if not r.passed:
            line += f"  - {r.details}"
        logger.info(line)
    logger.info("=" * 60)
    logger.info(f"Results: {passed} passed, {failed} failed")

    return failed == 0
