# src/protoprobe/matrix.py
"""Run a set of scenarios against a set of targets.

Runs are sequential by default. In parallel mode each target gets its own
worker thread; a worker owns its connection handles and run results, and the
results are merged in target order once every worker has finished.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .config import BackendTarget
from .report import Divergence, diff
from .runner import RunResult, ScenarioRunner
from .scenario import Scenario

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INFRASTRUCTURE_FAILURE = 1
EXIT_CONFIGURATION_ERROR = 2
EXIT_DIVERGENCE = 3

Comparison = Tuple[RunResult, RunResult, List[Divergence]]


@dataclass(frozen=True)
class MatrixResult:
    """Every run of a matrix, ordered by target then scenario."""

    targets: Tuple[str, ...]
    results: Tuple[RunResult, ...]
    cancelled: bool = False

    def result(self, scenario: str, target: str) -> Optional[RunResult]:
        for result in self.results:
            if result.scenario == scenario and result.target == target:
                return result
        return None

    @property
    def infrastructure_failures(self) -> Tuple[RunResult, ...]:
        return tuple(result for result in self.results if result.infrastructure_failure)

    def compare(self, left: str, right: str) -> List[Comparison]:
        """Diff every scenario that ran on both targets; skipped runs compare as empty."""
        comparisons = []
        for result in self.results:
            if result.target != left:
                continue
            other = self.result(result.scenario, right)
            if other is None:
                continue
            divergences = [] if result.skipped or other.skipped else diff(result, other)
            comparisons.append((result, other, divergences))
        return comparisons

    def compare_all(self) -> List[Comparison]:
        """Diff the first target against every other target."""
        if len(self.targets) < 2:
            return []
        baseline = self.targets[0]
        comparisons = []
        for other in self.targets[1:]:
            comparisons.extend(self.compare(baseline, other))
        return comparisons

    def exit_code(self, strict: bool = False, comparisons: Optional[Sequence[Comparison]] = None) -> int:
        if self.infrastructure_failures:
            return EXIT_INFRASTRUCTURE_FAILURE
        if strict:
            if comparisons is None:
                comparisons = self.compare_all()
            if any(divergences for _, _, divergences in comparisons):
                return EXIT_DIVERGENCE
        return EXIT_OK


class Matrix:
    """Scenarios x targets, run sequentially or with one worker per target."""

    def __init__(self, targets: Sequence[BackendTarget], scenarios: Sequence[Scenario],
                 runner: Optional[ScenarioRunner] = None):
        self.targets = list(targets)
        self.scenarios = list(scenarios)
        self.runner = runner or ScenarioRunner()
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        """Stop scheduling further runs; runs already in flight finish normally."""
        if not self._cancelled.is_set():
            logger.warning("Cancellation requested, no further scenarios will be started")
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def _run_target(self, target: BackendTarget) -> List[RunResult]:
        results = []
        for scenario in self.scenarios:
            if self._cancelled.is_set():
                logger.info(f"[{target.name}] Cancelled before '{scenario.name}'")
                break
            results.append(self.runner.run_target(scenario, target))
        return results

    def run(self, parallel: bool = False) -> MatrixResult:
        logger.info(f"Running {len(self.scenarios)} scenario(s) against {len(self.targets)} target(s)"
                    f"{' in parallel' if parallel else ''}")
        per_target: Dict[str, List[RunResult]] = {}

        if parallel and len(self.targets) > 1:
            futures: Dict[Future, str] = {}
            with ThreadPoolExecutor(max_workers=len(self.targets), thread_name_prefix="protoprobe") as executor:
                for target in self.targets:
                    futures[executor.submit(self._run_target, target)] = target.name
                for future in as_completed(futures):
                    per_target[futures[future]] = future.result()
        else:
            for target in self.targets:
                per_target[target.name] = self._run_target(target)

        merged = []
        for target in self.targets:
            merged.extend(per_target.get(target.name, ()))
        return MatrixResult(
            targets=tuple(target.name for target in self.targets),
            results=tuple(merged),
            cancelled=self._cancelled.is_set(),
        )
