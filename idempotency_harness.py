"""
================================================================================
 PROOFKIT IDEMPOTENCY TEST HARNESS
 ---------------------------------
 Runs the automation twice in PREVIEW mode and asserts the second pass
 plans zero mutations.

 Strategies:
   repeatability  both passes see the same, untouched account state.
                  Catches routines that re-plan the same change forever.
   convergence    run-1's planned mutations are applied to a simulated
                  account between passes (apply_between_runs callback).
                  Catches routines that never recognise their own target
                  state once it has been reached.

 Log markers (read back by the promote gate and by operators):
   TEST_START, FIRST_RUN_COMPLETE, SECOND_RUN_COMPLETE,
   IDEMPOTENCY_CONFIRMED | IDEMPOTENCY_VIOLATION, TEST_COMPLETE

 The verdict is persisted only once both passes have completed; an
 exception in either pass propagates and nothing is written.
================================================================================
"""

import logging
import threading
import weakref
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from run_context import MutationRecord, RunContext, RunMode, RunSnapshot, utc_now, utc_now_iso
from run_log import IDEMPOTENCY_TEST, RunLog

logger = logging.getLogger("IdempotencyHarness")

REPEATABILITY = "repeatability"
CONVERGENCE = "convergence"
STRATEGIES = (REPEATABILITY, CONVERGENCE)

FAILURE_RECOMMENDATIONS = [
    "Check for missing idempotency guards in the script",
    "Verify that all state checks happen before mutations",
    "Ensure proper exclusion logic is working",
    "Review label guards and existing entity detection",
]

# One lock per account: interleaved runs would corrupt the shared recorder.
# Entries drop out once no run holds a reference to the lock.
_ACCOUNT_LOCKS: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
_ACCOUNT_LOCKS_GUARD = threading.Lock()


def account_lock(account_id: str) -> threading.Lock:
    with _ACCOUNT_LOCKS_GUARD:
        lock = _ACCOUNT_LOCKS.get(account_id)
        if lock is None:
            lock = threading.Lock()
            _ACCOUNT_LOCKS[account_id] = lock
        return lock


@dataclass
class IdempotencyVerdict:
    passed: bool
    run_id: str
    account_id: str
    strategy: str
    first_run: RunSnapshot
    second_run: RunSnapshot
    timestamp: str
    guard_status: Dict[str, Any] = field(default_factory=dict)
    events: List[Dict[str, str]] = field(default_factory=list)

    def unexpected_mutations(self) -> List[MutationRecord]:
        return list(self.second_run.mutations)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "runId": self.run_id,
            "accountId": self.account_id,
            "strategy": self.strategy,
            "firstRun": self.first_run.to_dict(),
            "secondRun": self.second_run.to_dict(),
            "timestamp": self.timestamp,
            "guardStatus": dict(self.guard_status),
            "events": list(self.events),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IdempotencyVerdict":
        return cls(
            passed=bool(data["passed"]),
            run_id=data.get("runId", ""),
            account_id=data.get("accountId", ""),
            strategy=data.get("strategy", REPEATABILITY),
            first_run=RunSnapshot.from_dict(data["firstRun"]),
            second_run=RunSnapshot.from_dict(data["secondRun"]),
            timestamp=data["timestamp"],
            guard_status=dict(data.get("guardStatus") or {}),
            events=list(data.get("events") or []),
        )


def mutation_table(mutations: List[MutationRecord]) -> str:
    """Legible one-row-per-mutation rendering (type, details, timestamp)."""
    if not mutations:
        return "  (none)"
    df = pd.DataFrame([{
        "type": m.type.value,
        "details": ", ".join(f"{k}={v}" for k, v in sorted(m.details.items())),
        "timestamp": m.timestamp,
    } for m in mutations])
    return df.to_string(index=False)


def failure_report(verdict: IdempotencyVerdict) -> str:
    first_types = {m.type for m in verdict.first_run.mutations}
    unexpected_types = sorted({m.type.value for m in verdict.second_run.mutations
                               if m.type not in first_types})
    lines = [
        f"Idempotency test failed - second run planned "
        f"{verdict.second_run.mutation_count} mutations (expected 0)",
        f"First run: {verdict.first_run.mutation_count} mutations "
        f"({verdict.first_run.started_at} .. {verdict.first_run.finished_at})",
        f"Second run: {verdict.second_run.mutation_count} mutations "
        f"({verdict.second_run.started_at} .. {verdict.second_run.finished_at})",
        "Unexpected second-run mutations:",
        mutation_table(verdict.second_run.mutations),
    ]
    if unexpected_types:
        lines.append(f"Mutation types not seen in first run: {', '.join(unexpected_types)}")
    lines.append("Recommendations:")
    lines.extend(f"  - {r}" for r in FAILURE_RECOMMENDATIONS)
    return "\n".join(lines)


# ══════════════════════════════════════════════════════════════════════════════
# HARNESS
# ══════════════════════════════════════════════════════════════════════════════

class IdempotencyTestHarness:
    """
    Dual-run idempotency check for one account.

    Usage:
        harness = IdempotencyTestHarness(FileRunLog("run_logs", create=True), "123-456-7890")
        verdict = harness.run(routine, context=routine.new_context("123-456-7890"))
    """

    def __init__(self, run_log: Optional[RunLog] = None, account_id: str = "default",
                 strategy: str = REPEATABILITY):
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown strategy {strategy!r} (expected one of {STRATEGIES})")
        self.run_log = run_log
        self.account_id = account_id
        self.strategy = strategy
        self.last_persist_error: Optional[str] = None

    def run(self, routine: Callable[[RunContext], Any], context: Optional[RunContext] = None,
            apply_between_runs: Optional[Callable[[List[MutationRecord]], Any]] = None
            ) -> IdempotencyVerdict:
        if self.strategy == CONVERGENCE and apply_between_runs is None:
            raise ValueError("convergence strategy needs an apply_between_runs callback")
        context = context or RunContext(account_id=self.account_id)

        with account_lock(context.account_id):
            verdict = self._run_locked(routine, context, apply_between_runs)

        self._persist(verdict)
        return verdict

    def _run_locked(self, routine, context: RunContext, apply_between_runs) -> IdempotencyVerdict:
        run_id = utc_now().strftime("%Y%m%dT%H%M%S%fZ") + "_idempotency_test"
        context.log_event("TEST_START", f"Beginning idempotency validation "
                                        f"({self.strategy}, account {context.account_id})")
        try:
            context.set_mode(RunMode.PREVIEW)
            context.log_event("FIRST_RUN_START", "Starting first preview run")
            try:
                routine(context)
            except Exception as e:
                context.log_event("TEST_ERROR", f"First run raised: {e}", level="ERROR")
                raise
            first_run = context.recorder.snapshot()
            context.log_event("FIRST_RUN_COMPLETE",
                              f"First run planned {first_run.mutation_count} mutations")

            if apply_between_runs is not None:
                apply_between_runs(list(first_run.mutations))
                context.log_event("SIMULATED_APPLY",
                                  f"Applied {first_run.mutation_count} first-run mutations "
                                  f"to simulated state")

            context.set_mode(RunMode.PREVIEW)
            context.log_event("SECOND_RUN_START", "Starting second preview run")
            try:
                routine(context)
            except Exception as e:
                context.log_event("TEST_ERROR",
                                  f"Second run raised: {e} (first run succeeded with "
                                  f"{first_run.mutation_count} planned mutations)",
                                  level="ERROR")
                raise
            second_run = context.recorder.snapshot()
            guard_status = context.guards.status(context)
            context.log_event("SECOND_RUN_COMPLETE",
                              f"Second run planned {second_run.mutation_count} mutations")

            passed = second_run.mutation_count == 0
            if passed:
                context.log_event("IDEMPOTENCY_CONFIRMED", "Script behavior is idempotent")
            else:
                context.log_event("IDEMPOTENCY_VIOLATION",
                                  f"Second run planned {second_run.mutation_count} "
                                  f"mutations (expected 0)", level="WARNING")
            context.log_event("TEST_COMPLETE",
                              f"Idempotency test {'PASSED' if passed else 'FAILED'}")

            verdict = IdempotencyVerdict(
                passed=passed,
                run_id=run_id,
                account_id=context.account_id,
                strategy=self.strategy,
                first_run=first_run,
                second_run=second_run,
                timestamp=utc_now_iso(),
                guard_status=guard_status,
                events=list(context.events),
            )
            if not passed:
                logger.warning("TEST_FAILURE_DETAIL:\n" + failure_report(verdict))
            return verdict
        finally:
            context.set_mode(RunMode.PRODUCTION)

    def _persist(self, verdict: IdempotencyVerdict):
        self.last_persist_error = None
        if self.run_log is None:
            return
        try:
            self.run_log.append(IDEMPOTENCY_TEST, verdict.to_dict())
        except Exception as e:
            self.last_persist_error = str(e)
            logger.error(f"PERSIST_ERROR: idempotency verdict {verdict.run_id} not saved: {e}")


def promote_check(verdict: Optional[IdempotencyVerdict]) -> Dict[str, Any]:
    """Single-check gate object for a just-computed verdict."""
    passed = verdict is not None and verdict.passed
    return {
        "gate": "IDEMPOTENCY_CHECK",
        "passed": passed,
        "canPromote": passed,
        "runId": verdict.run_id if verdict else None,
        "timestamp": verdict.timestamp if verdict else utc_now_iso(),
        "details": ("Script passed idempotency validation - safe to promote to production"
                    if passed else
                    "Script failed idempotency validation - DO NOT promote to production"),
    }
