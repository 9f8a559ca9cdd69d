# src/protoprobe/report.py
"""Rendering and positional diffing of run results."""

import datetime
import decimal
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Optional, Sequence

from .backends import UNKNOWN_COUNT
from .runner import Observation, RunResult


class DivergenceKind(str, Enum):
    ROW_COUNT_MISMATCH = "row-count-mismatch"
    ERROR_VS_SUCCESS = "error-vs-success"
    VALUE_MISMATCH = "value-mismatch"
    ORDERING_MISMATCH = "ordering-mismatch"
    LENGTH_MISMATCH = "length-mismatch"


@dataclass(frozen=True)
class Divergence:
    """A difference between two runs at one observation position. Never raised."""

    index: int
    kind: DivergenceKind
    left: Optional[Observation]
    right: Optional[Observation]
    message: str

    def to_dict(self):
        return {
            'index': self.index,
            'kind': self.kind.value,
            'message': self.message,
            'left': self.left.to_dict() if self.left else None,
            'right': self.right.to_dict() if self.right else None,
        }


def _sort_key(row) -> str:
    return repr(row)


def _counts_agree(left: Sequence[int], right: Sequence[int]) -> bool:
    """Per-row batch codes agree when equal or when either side cannot tell."""
    return all(a == b or UNKNOWN_COUNT in (a, b) for a, b in zip(left, right))


def _compare(index: int, left: Observation, right: Observation) -> Optional[Divergence]:
    def divergence(kind: DivergenceKind, message: str) -> Divergence:
        return Divergence(index, kind, left, right, message)

    if left.action != right.action or left.step != right.step:
        return divergence(DivergenceKind.ORDERING_MISMATCH,
                          f"'{left.action}' (step {left.step}) vs '{right.action}' (step {right.step})")
    if left.ok != right.ok:
        failed = left if not left.ok else right
        return divergence(DivergenceKind.ERROR_VS_SUCCESS,
                          f"only one side failed: {failed.error_kind}: {failed.error_message}")
    if not left.ok:
        if left.error_kind != right.error_kind:
            return divergence(DivergenceKind.VALUE_MISMATCH,
                              f"error kinds differ: {left.error_kind} vs {right.error_kind}")
        return None

    if left.row_count != right.row_count:
        return divergence(DivergenceKind.ROW_COUNT_MISMATCH, f"{left.row_count} vs {right.row_count} rows")
    if left.rows != right.rows:
        if left.rows is not None and right.rows is not None and \
                sorted(left.rows, key=_sort_key) == sorted(right.rows, key=_sort_key):
            return divergence(DivergenceKind.ORDERING_MISMATCH, "same rows in a different order")
        return divergence(DivergenceKind.VALUE_MISMATCH, f"rows {left.rows!r} vs {right.rows!r}")

    left_counts, right_counts = left.batch_counts, right.batch_counts
    if (left_counts is None) != (right_counts is None) or \
            (left_counts is not None and len(left_counts) != len(right_counts)):
        return divergence(DivergenceKind.ROW_COUNT_MISMATCH, f"batch counts {left_counts!r} vs {right_counts!r}")
    if left_counts is not None and not _counts_agree(left_counts, right_counts):
        return divergence(DivergenceKind.VALUE_MISMATCH, f"batch counts {left_counts!r} vs {right_counts!r}")
    if left.update_count != right.update_count and left_counts is None:
        return divergence(DivergenceKind.ROW_COUNT_MISMATCH,
                          f"{left.update_count} vs {right.update_count} rows affected")

    if left.listing != right.listing:
        # Listing order is not stable on any backend; compare statement texts only
        left_texts = sorted(str(entry[-1]) for entry in left.listing or ())
        right_texts = sorted(str(entry[-1]) for entry in right.listing or ())
        if left_texts != right_texts:
            return divergence(DivergenceKind.VALUE_MISMATCH, f"prepared statements {left_texts!r} vs {right_texts!r}")

    if dict(left.detail) != dict(right.detail):
        return divergence(DivergenceKind.VALUE_MISMATCH, f"detail {dict(left.detail)!r} vs {dict(right.detail)!r}")
    return None


def diff(left: RunResult, right: RunResult) -> List[Divergence]:
    """Compare two runs position by position; durations are ignored."""
    divergences = []
    left_obs, right_obs = left.observations, right.observations
    for index, (a, b) in enumerate(zip(left_obs, right_obs)):
        found = _compare(index, a, b)
        if found is not None:
            divergences.append(found)
    if len(left_obs) != len(right_obs):
        index = min(len(left_obs), len(right_obs))
        divergences.append(Divergence(
            index=index,
            kind=DivergenceKind.LENGTH_MISMATCH,
            left=left_obs[index] if index < len(left_obs) else None,
            right=right_obs[index] if index < len(right_obs) else None,
            message=f"{len(left_obs)} vs {len(right_obs)} observations",
        ))
    return divergences


def render(result: RunResult) -> str:
    """Human-readable report of one run."""
    version = f", server {result.server_version}" if result.server_version else ""
    lines = [f"********** {result.scenario} on {result.target}{version} **********"]
    if result.skipped:
        lines.append(f"  skipped: {result.skipped}")
        return '\n'.join(lines)
    if result.isolation_level:
        lines.append(f"  isolation: {result.isolation_level}")
    for observation in result.observations:
        label = "event" if observation.synthetic else f"step {observation.step}"
        lines.append(f"  [{observation.index}] {label} {observation.description}")
        lines.append(f"      -> {observation.summary()} ({observation.duration * 1000:.1f} ms)")
    if result.aborted:
        status = "infrastructure failure" if result.infrastructure_failure else "aborted"
        lines.append(f"  {status}")
    return '\n'.join(lines)


def render_divergences(left: RunResult, right: RunResult, divergences: Sequence[Divergence]) -> str:
    header = f"########## {left.scenario}: {left.target} vs {right.target} ##########"
    if left.skipped or right.skipped:
        return f"{header}\n  not compared, skipped on {left.target if left.skipped else right.target}"
    if not divergences:
        return f"{header}\n  no divergence"
    lines = [header]
    for divergence in divergences:
        lines.append(f"  [{divergence.index}] {divergence.kind.value}: {divergence.message}")
        for side, observation in ((left.target, divergence.left), (right.target, divergence.right)):
            if observation is not None:
                lines.append(f"      {side}: {observation.description} -> {observation.summary()}")
    return '\n'.join(lines)


def json_serializer(obj):
    """Handles serialization of types not supported by default JSON encoder."""
    if isinstance(obj, (datetime.datetime, datetime.date, datetime.time)):
        return obj.isoformat()
    if isinstance(obj, datetime.timedelta):
        return str(obj)
    if isinstance(obj, decimal.Decimal):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Object of type {obj.__class__.__name__} is not JSON serializable")


def to_json(results: Iterable[RunResult], comparisons: Iterable[Any] = ()) -> str:
    """Structured output: every run plus every comparison ``(left, right, divergences)``."""
    document = {
        'results': [result.to_dict() for result in results],
        'comparisons': [
            {
                'scenario': left.scenario,
                'left': left.target,
                'right': right.target,
                'divergences': [divergence.to_dict() for divergence in divergences],
            }
            for left, right, divergences in comparisons
        ],
    }
    return json.dumps(document, indent=2, ensure_ascii=False, default=json_serializer)
