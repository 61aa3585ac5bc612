"""
================================================================================
 PROOFKIT RUN CONTEXT
 --------------------
 Run-mode controller and mutation recorder for one automation run.

 Modes:
   PRODUCTION        real side effects, but only when the PROMOTE flag is set
   PREVIEW           full decision logic, mutations recorded, nothing applied
   IDEMPOTENCY_TEST  same as PREVIEW, tagged for harness runs

 Every mutation site in the automation goes through RunContext.plan_mutation,
 which consults the exclusion guard, the reserved-keyword veto and is_live()
 in that order. is_live() is the only predicate that unlocks a real
 mutation or the label guard.
================================================================================
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("RunContext")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RunMode(Enum):
    PRODUCTION = "PRODUCTION"
    PREVIEW = "PREVIEW"
    IDEMPOTENCY_TEST = "IDEMPOTENCY_TEST"

    @classmethod
    def parse(cls, value) -> "RunMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(
                f"Invalid run mode {value!r} (expected one of "
                f"{', '.join(m.value for m in cls)})"
            )


class MutationType(Enum):
    """Kinds of account mutations the automation can plan."""
    BUDGET_CHANGE = "BUDGET_CHANGE"
    BIDDING_STRATEGY_CHANGE = "BIDDING_STRATEGY_CHANGE"
    CPC_CEILING_CHANGE = "CPC_CEILING_CHANGE"
    AD_SCHEDULE_ADD = "AD_SCHEDULE_ADD"
    MASTER_NEGATIVE_ADD = "MASTER_NEGATIVE_ADD"
    NEGATIVE_KEYWORD_ADD = "NEGATIVE_KEYWORD_ADD"
    NEGATIVE_LIST_ATTACH = "NEGATIVE_LIST_ATTACH"
    AUDIENCE_ATTACH = "AUDIENCE_ATTACH"
    RSA_CREATE = "RSA_CREATE"
    LABEL_APPLY = "LABEL_APPLY"


# Mutation kinds that add a negative / exclusion term (subject to NEG_GUARD)
NEGATIVE_TYPES = frozenset({
    MutationType.MASTER_NEGATIVE_ADD,
    MutationType.NEGATIVE_KEYWORD_ADD,
})


@dataclass(frozen=True)
class MutationRecord:
    """One planned or applied change. Immutable once created."""
    type: MutationType
    details: Dict[str, Any]
    mode: RunMode
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "details": dict(self.details),
            "timestamp": self.timestamp,
            "mode": self.mode.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MutationRecord":
        return cls(
            type=MutationType(data["type"]),
            details=dict(data.get("details") or {}),
            mode=RunMode.parse(data.get("mode", "PREVIEW")),
            timestamp=data.get("timestamp") or utc_now_iso(),
        )


@dataclass
class RunSnapshot:
    """Recorder contents at the end of one run."""
    mode: RunMode
    mutation_count: int
    mutations: List[MutationRecord]
    started_at: str
    finished_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "mutationCount": self.mutation_count,
            "mutations": [m.to_dict() for m in self.mutations],
            "timestampRange": [self.started_at, self.finished_at],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunSnapshot":
        started, finished = (data.get("timestampRange") or ["", ""])[:2]
        mutations = [MutationRecord.from_dict(m) for m in data.get("mutations", [])]
        return cls(
            mode=RunMode.parse(data.get("mode", "PREVIEW")),
            mutation_count=int(data.get("mutationCount", len(mutations))),
            mutations=mutations,
            started_at=started,
            finished_at=finished,
        )


# ══════════════════════════════════════════════════════════════════════════════
# MUTATION RECORDER
# ══════════════════════════════════════════════════════════════════════════════

class MutationRecorder:
    """
    Append-only ledger of mutations for a single run.
    No deduplication: a repeated record is a real idempotency bug and must
    surface as-is.
    """

    def __init__(self, mode: RunMode = RunMode.PRODUCTION):
        self.mode = mode
        self.started_at = utc_now_iso()
        self._mutations: List[MutationRecord] = []

    def reset(self, mode: Optional[RunMode] = None):
        if mode is not None:
            self.mode = mode
        self.started_at = utc_now_iso()
        self._mutations = []

    def record(self, mutation: MutationRecord):
        self._mutations.append(mutation)

    def snapshot(self) -> RunSnapshot:
        return RunSnapshot(
            mode=self.mode,
            mutation_count=len(self._mutations),
            mutations=list(self._mutations),
            started_at=self.started_at,
            finished_at=utc_now_iso(),
        )


# ══════════════════════════════════════════════════════════════════════════════
# MODE STORE
# ══════════════════════════════════════════════════════════════════════════════

class ModeStore:
    """Remembers the chosen run mode across invocations."""

    def get(self) -> Optional[RunMode]:
        raise NotImplementedError

    def set(self, mode: RunMode):
        raise NotImplementedError


class InMemoryModeStore(ModeStore):

    def __init__(self, mode: Optional[RunMode] = None):
        self._mode = mode

    def get(self) -> Optional[RunMode]:
        return self._mode

    def set(self, mode: RunMode):
        self._mode = mode


class JsonFileModeStore(ModeStore):
    """Mode persisted as {"run_mode": ...} in a small JSON file."""

    def __init__(self, path: str):
        self.path = path

    def get(self) -> Optional[RunMode]:
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path) as f:
                return RunMode.parse(json.load(f).get("run_mode"))
        except (OSError, ValueError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable mode store {self.path}: {e}")
            return None

    def set(self, mode: RunMode):
        with open(self.path, "w") as f:
            json.dump({"run_mode": mode.value, "updated_at": utc_now_iso()}, f, indent=2)


# ══════════════════════════════════════════════════════════════════════════════
# RUN CONTEXT (RUN-MODE CONTROLLER)
# ══════════════════════════════════════════════════════════════════════════════

class RunContext:
    """
    Per-run state threaded through the automation routine, the guards and
    the harness. Replaces the script-global RUN_MODE / MUTATION_LOG pair.
    """

    def __init__(self, account_id: str = "default", promote: bool = False,
                 guards=None, mode_store: Optional[ModeStore] = None):
        from safety_guards import SafetyGuards

        self.account_id = account_id
        self.promote = bool(promote)
        self.guards = guards if guards is not None else SafetyGuards()
        self.mode_store = mode_store or InMemoryModeStore()
        self.mode = self.mode_store.get() or RunMode.PRODUCTION
        self.recorder = MutationRecorder(self.mode)
        self.events: List[Dict[str, str]] = []

    def set_mode(self, mode) -> RunMode:
        """
        Switch mode. Side effect: the recorder is reset so each mode
        transition starts from an empty ledger.
        """
        self.mode = RunMode.parse(mode)
        self.recorder.reset(self.mode)
        self.guards.reset_counters()
        try:
            self.mode_store.set(self.mode)
        except OSError as e:
            logger.warning(f"Could not persist run mode {self.mode.value}: {e}")
        self.log_event("RUN_MODE", f"Mode set to {self.mode.value}")
        return self.mode

    def is_live(self) -> bool:
        return self.mode == RunMode.PRODUCTION and self.promote

    def log_event(self, tag: str, message: str, level: str = "INFO"):
        self.events.append({
            "timestamp": utc_now_iso(),
            "level": level,
            "tag": tag,
            "message": message,
        })
        logger.log(getattr(logging, level, logging.INFO), f"{tag}: {message}")

    def error_events(self) -> List[Dict[str, str]]:
        return [e for e in self.events if e["level"] == "ERROR"]

    # ── MUTATION SITE ────────────────────────────────────────────────────────

    def plan_mutation(self, mutation_type: MutationType, details: Dict[str, Any],
                      apply: Optional[Callable[[], Any]] = None) -> bool:
        """
        Single entry point for every mutation. Returns True when the
        mutation was applied (live) or recorded (non-live); False when a
        guard skipped it or PROMOTE=FALSE held it back.
        """
        campaign = details.get("campaign")
        ad_group = details.get("ad_group")
        if campaign is not None and self.guards.excludes(campaign, ad_group):
            self.log_event("EXCLUSION_GUARD",
                           f"Skipped {mutation_type.value} on excluded {campaign}"
                           + (f" / {ad_group}" if ad_group else ""))
            return False

        if mutation_type in NEGATIVE_TYPES:
            term = str(details.get("term", ""))
            if self.guards.blocks_negative(term):
                self.log_event("NEG_GUARD",
                               f"Blocked reserved keyword '{term}' ({mutation_type.value})")
                return False

        if self.is_live():
            if apply is not None:
                try:
                    apply()
                except Exception as e:
                    self.log_event("MUTATION_ERROR",
                                   f"{mutation_type.value} failed: {e}", level="ERROR")
                    raise
            self.recorder.record(MutationRecord(mutation_type, dict(details), self.mode))
            self.log_event("MUTATION_APPLIED", f"{mutation_type.value}: {_describe(details)}")
            return True

        if self.mode == RunMode.PRODUCTION:
            # PROMOTE=FALSE: nothing applied, so nothing recorded
            self.log_event("MUTATION_PLANNED",
                           f"{mutation_type.value}: {_describe(details)} [PROMOTE=FALSE]")
            return False

        self.recorder.record(MutationRecord(mutation_type, dict(details), self.mode))
        self.log_event("MUTATION_PLANNED",
                       f"{mutation_type.value}: {_describe(details)} [PREVIEW]")
        return True


def _describe(details: Dict[str, Any]) -> str:
    return json.dumps(details, sort_keys=True, default=str)
