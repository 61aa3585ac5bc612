"""
================================================================================
 PROOFKIT PROMOTE GATE
 ---------------------
 Final checkpoint before live mutations are allowed on an account.

 Reads the latest idempotency verdict plus auxiliary safety evidence and
 renders a single PROMOTE / BLOCK decision:

   idempotencyTest    latest verdict passed
   testRecency        verdict younger than the staleness window (24h)
   noErrors           no ERROR events in the test run, no check errors
   backendGate        backend reports the account's PROMOTE gate OPEN
   labelGuard         label guard ran live in a recent run
   mutationLimits     second-run mutations within the per-run ceiling
   warningsThreshold  fewer than 5 warnings collected

 States: EVALUATING -> PROMOTE | BLOCK | ERROR. ERROR (unreadable log
 directory, required verdict missing) never promotes. The gate never
 mutates the account; its only write is the decision record.
================================================================================
"""

import base64
import hashlib
import hmac
import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from idempotency_harness import IdempotencyVerdict
from run_context import parse_timestamp, utc_now
from run_log import IDEMPOTENCY_TEST, PRODUCTION_RUN, PROMOTE_GATE, RunLog, RunLogUnavailableError

logger = logging.getLogger("PromoteGate")

# ──────────────────────────────────────────────────────────────────────────────
# DEFAULTS
# ──────────────────────────────────────────────────────────────────────────────

DEFAULT_MAX_VERDICT_AGE_MINUTES = 24 * 60
DEFAULT_MAX_MUTATIONS_PER_RUN = 100
DEFAULT_MAX_WARNINGS = 5
DEFAULT_GUARD_SCAN_DEPTH = 3
DEFAULT_BACKEND_TIMEOUT_SECONDS = 8.0
CLOCK_SKEW_TOLERANCE_MINUTES = 5

# LABEL_GUARD messages written only when the guard actually ran live
LABEL_ACTIVE_MESSAGES = ("already present", "Created label")

CHECK_NAMES = [
    "idempotencyTest",
    "testRecency",
    "noErrors",
    "backendGate",
    "labelGuard",
    "mutationLimits",
    "warningsThreshold",
]

SUMMARY_PROMOTE = "✅ All safety checks passed - Script is safe for production deployment"
SUMMARY_BLOCK = "❌ Safety checks failed - DO NOT deploy to production"

PROMOTE_RECOMMENDATIONS = [
    "Deploy to production environment",
    "Monitor initial runs for expected behavior",
    "Keep idempotency test logs for audit trail",
]
BLOCK_RECOMMENDATIONS = [
    "Fix failing idempotency tests before deployment",
    "Review mutation logs for unexpected changes",
    "Verify all entity creation has proper guards",
    "Re-run tests after fixes are implemented",
]
TARGETED_RECOMMENDATIONS = {
    "idempotencyTest": "Check script for missing label guards or state detection",
    "testRecency": "Run fresh idempotency tests before deployment",
    "noErrors": "Investigate and resolve test execution errors",
    "backendGate": "Confirm the backend PROMOTE gate is OPEN for this account",
    "labelGuard": "Ensure the routine consults the label guard before touching entities",
    "mutationLimits": "Reduce planned mutations below the per-run ceiling before promoting",
    "warningsThreshold": "Review and clear gate warnings before deployment",
}


class GateConfigurationError(Exception):
    """Gate cannot evaluate (missing evidence it is configured to require)."""


class BackendUnavailableError(Exception):
    """Backend gate status could not be obtained."""


class GateState(Enum):
    EVALUATING = "EVALUATING"
    PROMOTE = "PROMOTE"
    BLOCK = "BLOCK"
    ERROR = "ERROR"


@dataclass
class GateConfig:
    max_verdict_age_minutes: float = DEFAULT_MAX_VERDICT_AGE_MINUTES
    require_idempotency_test: bool = True
    require_fresh_verdict: bool = True
    require_backend_validation: bool = True
    require_label_guard: bool = True
    require_warnings_threshold: bool = False
    max_mutations_per_run: int = DEFAULT_MAX_MUTATIONS_PER_RUN
    max_warnings: int = DEFAULT_MAX_WARNINGS
    guard_scan_depth: int = DEFAULT_GUARD_SCAN_DEPTH
    backend_timeout_seconds: float = DEFAULT_BACKEND_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls, **overrides) -> "GateConfig":
        """Defaults, then PROOFKIT_* environment variables, then overrides."""
        env = {
            "max_verdict_age_minutes": os.getenv("PROOFKIT_MAX_VERDICT_AGE_MINUTES"),
            "max_mutations_per_run": os.getenv("PROOFKIT_MAX_MUTATIONS_PER_RUN"),
            "backend_timeout_seconds": os.getenv("PROOFKIT_BACKEND_TIMEOUT_SECONDS"),
        }
        values = {}
        for key, raw in env.items():
            if raw:
                values[key] = type(getattr(cls, key))(float(raw))
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


@dataclass
class CheckResult:
    passed: bool
    details: str
    required: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"passed": self.passed, "details": self.details, "required": self.required}


@dataclass
class GateDecision:
    state: GateState
    can_promote: bool
    checks: Dict[str, CheckResult]
    summary: str
    recommendations: List[str]
    timestamp: str
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    error: Optional[str] = None
    account_id: Optional[str] = None
    verdict_run_id: Optional[str] = None
    log_location: Optional[str] = None

    @property
    def gate(self) -> str:
        return "PROMOTE_GATE_ERROR" if self.state == GateState.ERROR else "PROMOTE_GATE"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gate": self.gate,
            "state": self.state.value,
            "canPromote": self.can_promote,
            "timestamp": self.timestamp,
            "summary": self.summary,
            "checks": {name: check.to_dict() for name, check in self.checks.items()},
            "recommendations": list(self.recommendations),
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "error": self.error,
            "accountId": self.account_id,
            "verdictRunId": self.verdict_run_id,
        }


# ══════════════════════════════════════════════════════════════════════════════
# BACKEND GATE STATUS
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class BackendGateStatus:
    gate_status: str
    promote: bool
    timestamp: str


def sign(payload: str, secret: str) -> str:
    """HMAC-SHA256, base64 without padding (backend request signature)."""
    digest = hmac.new(secret.encode(), payload.encode(), hashlib.sha256).digest()
    return base64.b64encode(digest).decode().rstrip("=")


class BackendGateClient:
    """Queries the backend for a tenant's PROMOTE gate status."""

    def __init__(self, base_url: Optional[str], shared_secret: str = "",
                 timeout: float = DEFAULT_BACKEND_TIMEOUT_SECONDS):
        self.base_url = (base_url or "").rstrip("/")
        self.shared_secret = shared_secret or ""
        self.timeout = timeout

    @classmethod
    def from_env(cls, timeout: float = DEFAULT_BACKEND_TIMEOUT_SECONDS) -> "BackendGateClient":
        return cls(os.getenv("PROOFKIT_BACKEND_URL"), os.getenv("PROOFKIT_HMAC_SECRET", ""), timeout)

    def get_status(self, tenant: str) -> BackendGateStatus:
        if not self.base_url:
            raise BackendUnavailableError("No backend URL configured")
        params = {"tenant": tenant, "sig": sign(f"GET:{tenant}:promote_status", self.shared_secret)}
        try:
            response = requests.get(f"{self.base_url}/promote/status", params=params,
                                    headers={"User-Agent": "Proofkit-PromoteGate/1.0"},
                                    timeout=self.timeout)
        except requests.Timeout:
            raise BackendUnavailableError(f"Backend timed out after {self.timeout}s")
        except requests.RequestException as e:
            raise BackendUnavailableError(f"Backend request failed: {e}")

        if response.status_code != 200:
            raise BackendUnavailableError(f"Backend HTTP {response.status_code}: {response.text[:120]}")
        try:
            data = response.json()
        except ValueError:
            raise BackendUnavailableError("Backend returned non-JSON response")

        promote = data.get("promote") is True or str(data.get("promote")).lower() == "true"
        gate_status = str(data.get("gateStatus") or ("OPEN" if promote else "CLOSED")).upper()
        return BackendGateStatus(gate_status, promote, data.get("timestamp") or utc_now().isoformat())


# ══════════════════════════════════════════════════════════════════════════════
# GATE EVALUATOR
# ══════════════════════════════════════════════════════════════════════════════

class PromoteGate:
    """
    Aggregates safety evidence for one account into a GateDecision.
    Stateless between evaluations; every call to evaluate() starts fresh.
    """

    def __init__(self, run_log: RunLog, config: GateConfig = None,
                 backend: Optional[BackendGateClient] = None,
                 account_id: Optional[str] = None,
                 clock: Callable = utc_now):
        self.run_log = run_log
        self.config = config or GateConfig()
        self.backend = backend
        self.account_id = account_id
        self.clock = clock
        self.state = GateState.EVALUATING
        self.warnings: List[str] = []
        self.errors: List[str] = []

    def evaluate(self) -> GateDecision:
        self.state = GateState.EVALUATING
        self.warnings, self.errors = [], []
        logger.info("🔒 ProofKit PROMOTE Gate - Evaluating deployment safety...")

        try:
            decision = self._evaluate()
        except (RunLogUnavailableError, GateConfigurationError) as e:
            logger.error(f"PROMOTE gate evaluation failed: {e}")
            decision = self._error_decision(str(e))
        except Exception as e:
            logger.exception(f"PROMOTE gate evaluation failed unexpectedly: {e}")
            decision = self._error_decision(f"Unexpected evaluator failure: {e}")

        self.state = decision.state
        self._persist(decision)
        return decision

    # ── EVALUATION ───────────────────────────────────────────────────────────

    def _evaluate(self) -> GateDecision:
        cfg = self.config
        verdict = self._latest_verdict()
        account_id = self.account_id or (verdict.account_id if verdict else None)

        checks: Dict[str, CheckResult] = {}
        checks["idempotencyTest"] = self._check_idempotency(verdict)
        checks["testRecency"] = self._check_recency(verdict)
        checks["backendGate"] = self._check_backend(account_id)
        checks["labelGuard"] = self._check_label_guard()
        self._check_reserved_keywords()
        checks["mutationLimits"] = self._check_mutation_limits(verdict)
        checks["noErrors"] = self._check_errors(verdict)
        checks["warningsThreshold"] = self._advisory(
            len(self.warnings) < cfg.max_warnings,
            f"{len(self.warnings)} warnings detected" if self.warnings else "No warnings",
            cfg.require_warnings_threshold,
        )
        checks = {name: checks[name] for name in CHECK_NAMES}

        can_promote = all(c.passed for c in checks.values())
        state = GateState.PROMOTE if can_promote else GateState.BLOCK
        error = None
        if verdict is None and cfg.require_idempotency_test:
            state = GateState.ERROR
            can_promote = False
            error = "No idempotency test results found - test required before promotion"

        return self._decision(state, can_promote, checks, account_id, verdict, error)

    def _latest_verdict(self) -> Optional[IdempotencyVerdict]:
        record = self.run_log.latest(IDEMPOTENCY_TEST)
        if record is None:
            return None
        try:
            verdict = IdempotencyVerdict.from_dict(record.payload)
            parse_timestamp(verdict.timestamp)
            return verdict
        except (KeyError, TypeError, ValueError) as e:
            raise GateConfigurationError(f"Latest idempotency record is unreadable: {e}")

    def _advisory(self, ok: bool, details: str, required: bool) -> CheckResult:
        if ok or required:
            return CheckResult(ok, details, required)
        return CheckResult(True, f"{details} (advisory)", required=False)

    def _check_idempotency(self, verdict: Optional[IdempotencyVerdict]) -> CheckResult:
        required = self.config.require_idempotency_test
        if verdict is None:
            if not required:
                self.warnings.append("No idempotency test results found")
            return self._advisory(False, "No idempotency verdict found", required)
        return CheckResult(
            verdict.passed,
            f"Test result: {'PASSED' if verdict.passed else 'FAILED'} "
            f"(second run planned {verdict.second_run.mutation_count} mutations)",
        )

    def _check_recency(self, verdict: Optional[IdempotencyVerdict]) -> CheckResult:
        required = self.config.require_fresh_verdict
        if verdict is None:
            return self._advisory(False, "No timestamp found", required and self.config.require_idempotency_test)
        age_minutes = (self.clock() - parse_timestamp(verdict.timestamp)).total_seconds() / 60
        if age_minutes < -CLOCK_SKEW_TOLERANCE_MINUTES:
            logger.warning(f"Latest idempotency test is dated {round(-age_minutes)} minutes in the future")
            if not required:
                self.warnings.append("Latest idempotency test has a future timestamp")
            return self._advisory(False, f"Test timestamp is {round(-age_minutes)} minutes in the future",
                                  required)
        ok = age_minutes <= self.config.max_verdict_age_minutes
        details = (f"Test age: {round(age_minutes)} minutes "
                   f"(limit {round(self.config.max_verdict_age_minutes)})")
        if not ok:
            logger.warning(f"Latest idempotency test is too old ({round(age_minutes)} minutes ago)")
            if not required:
                self.warnings.append("Latest idempotency test is stale")
        return self._advisory(ok, details, required)

    def _check_backend(self, account_id: Optional[str]) -> CheckResult:
        if not self.config.require_backend_validation:
            logger.info("⚠️  Backend validation disabled")
            return CheckResult(True, "Backend validation disabled", required=False)
        if self.backend is None:
            self.warnings.append("Backend gate status unavailable: no backend client configured")
            return CheckResult(False, "Backend status: UNAVAILABLE (no backend configured)")
        try:
            status = self.backend.get_status(account_id or "default")
        except BackendUnavailableError as e:
            self.warnings.append(f"Backend gate status unavailable: {e}")
            logger.warning(f"Backend gate unavailable: {e}")
            return CheckResult(False, f"Backend status: UNAVAILABLE ({e})")
        logger.info(f"✓ Backend PROMOTE gate: {status.gate_status}")
        return CheckResult(status.gate_status == "OPEN",
                           f"Backend status: {status.gate_status} (promote={status.promote})")

    def _recent_runs(self) -> List[Dict[str, Any]]:
        depth = self.config.guard_scan_depth
        records = (self.run_log.recent(IDEMPOTENCY_TEST, limit=depth)
                   + self.run_log.recent(PRODUCTION_RUN, limit=depth))
        records.sort(key=lambda r: parse_timestamp(r.timestamp), reverse=True)
        return [r.payload for r in records[:depth]]

    def _scan_evidence(self, structured: Callable[[Dict[str, Any]], bool],
                       event: Callable[[Dict[str, Any]], bool],
                       markers: Tuple[str, ...]) -> Optional[str]:
        """
        Newest run first. A run carrying a structured guard status is judged
        on that status alone; runs without one fall back to guard events,
        then to raw text markers.
        """
        for payload in self._recent_runs():
            status = payload.get("guardStatus") or payload.get("guard_status")
            if isinstance(status, dict) and status:
                if structured(status):
                    return "structured guard status"
                continue
            events = [e for e in (payload.get("events") or []) if isinstance(e, dict)]
            if any(event(e) for e in events):
                return "guard events"
            text = json.dumps(payload, default=str)
            if any(m in text for m in markers):
                return "log markers"
        return None

    def _check_label_guard(self) -> CheckResult:
        source = self._scan_evidence(
            lambda s: bool(s.get("label_guard_active")),
            lambda e: e.get("tag") == "LABEL_GUARD" and any(
                m in str(e.get("message", "")) for m in LABEL_ACTIVE_MESSAGES),
            ("LABEL_GUARD: Created label", "already present"),
        )
        if source:
            logger.info("✓ Label guard: ACTIVE")
            return self._advisory(True, f"Label guard active ({source})", self.config.require_label_guard)
        self.warnings.append("Label guard status unclear from recent logs")
        logger.warning("⚠️  Label guard status unclear")
        return self._advisory(False, "Label guard status unclear", self.config.require_label_guard)

    def _check_reserved_keywords(self) -> bool:
        source = self._scan_evidence(
            lambda s: bool(s.get("reserved_keywords")),
            lambda e: e.get("tag") in ("NEG_GUARD", "RESERVED_KEYWORDS"),
            ("NEG_GUARD: Blocked reserved keyword", "RESERVED_KEYWORDS"),
        )
        if source:
            logger.info(f"✓ Reserved keyword protection: ACTIVE ({source})")
            return True
        self.warnings.append("Reserved keyword protection not detected in recent logs")
        logger.warning("⚠️  Reserved keyword protection status unclear")
        return False

    def _check_mutation_limits(self, verdict: Optional[IdempotencyVerdict]) -> CheckResult:
        ceiling = self.config.max_mutations_per_run
        count = 0
        if verdict is not None:
            count = verdict.second_run.mutation_count
        ok = count <= ceiling
        if ok:
            logger.info(f"✓ Mutation limit: {count}/{ceiling}")
        else:
            self.errors.append(f"Mutation count {count} exceeds limit {ceiling}")
            logger.error(f"❌ Mutation limit exceeded: {count}/{ceiling}")
        if count > ceiling / 2:
            self.warnings.append(f"High mutation count detected: {count}")
            logger.warning(f"⚠️  High mutation count: {count}")
        return CheckResult(ok, f"Mutations: {count}/{ceiling}")

    def _check_errors(self, verdict: Optional[IdempotencyVerdict]) -> CheckResult:
        run_errors = [f"{e.get('tag')}: {e.get('message')}" for e in (verdict.events if verdict else [])
                      if isinstance(e, dict) and e.get("level") == "ERROR"]
        self.errors = run_errors + self.errors
        if self.errors:
            return CheckResult(False, f"{len(self.errors)} errors found")
        return CheckResult(True, "No errors detected")

    # ── DECISION ─────────────────────────────────────────────────────────────

    def _recommendations(self, can_promote: bool, checks: Dict[str, CheckResult]) -> List[str]:
        if can_promote:
            return list(PROMOTE_RECOMMENDATIONS)
        recs = list(BLOCK_RECOMMENDATIONS)
        recs.extend(TARGETED_RECOMMENDATIONS[name] for name in CHECK_NAMES
                    if name in checks and not checks[name].passed)
        return recs

    def _decision(self, state: GateState, can_promote: bool, checks: Dict[str, CheckResult],
                  account_id: Optional[str], verdict: Optional[IdempotencyVerdict],
                  error: Optional[str]) -> GateDecision:
        return GateDecision(
            state=state,
            can_promote=can_promote,
            checks=checks,
            summary=SUMMARY_PROMOTE if can_promote else SUMMARY_BLOCK,
            recommendations=self._recommendations(can_promote, checks),
            timestamp=self.clock().isoformat(),
            warnings=list(self.warnings),
            errors=list(self.errors),
            error=error,
            account_id=account_id,
            verdict_run_id=verdict.run_id if verdict else None,
        )

    def _error_decision(self, message: str) -> GateDecision:
        self.errors.append(message)
        return self._decision(GateState.ERROR, False, {}, self.account_id, None, message)

    def _persist(self, decision: GateDecision):
        try:
            record = self.run_log.append(PROMOTE_GATE, decision.to_dict())
            decision.log_location = record.location
        except Exception as e:
            logger.error(f"⚠️  Could not write gate decision log: {e}")


def format_decision(decision: GateDecision) -> str:
    """Operator report: summary, one line per check, recommendations."""
    lines = ["=" * 60, "🔐 PROMOTE GATE DECISION", "=" * 60, "", decision.summary, ""]
    if decision.error:
        lines.extend([f"Error: {decision.error}", ""])
    if decision.checks:
        lines.append("Detailed Checks:")
        for name, check in decision.checks.items():
            glyph = "✅" if check.passed else "❌"
            lines.append(f"  {glyph} {name}: {check.details}")
    if decision.warnings:
        lines.extend(["", "Warnings:"])
        lines.extend(f"  ⚠️  {w}" for w in decision.warnings)
    if decision.recommendations:
        lines.extend(["", "Recommendations:"])
        lines.extend(f"  • {r}" for r in decision.recommendations)
    if decision.log_location:
        lines.extend(["", f"📄 Gate decision logged to: {decision.log_location}"])
    lines.extend(["", "=" * 60])
    return "\n".join(lines)
