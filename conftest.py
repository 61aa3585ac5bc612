# Root conftest.py - shared fixtures for the tests/ directory.
# PROOFKIT_* variables are cleared for every test so a developer's .env
# never changes gate defaults under test.

from datetime import timedelta

import pytest

from ads_mutation_engine import AutopilotConfig, AutopilotRoutine, CampaignState, InMemoryAdsAccount
from promote_gate import BackendGateStatus, BackendUnavailableError
from run_context import utc_now
from run_log import InMemoryRunLog

PROOFKIT_ENV = [
    "PROOFKIT_BACKEND_URL",
    "PROOFKIT_HMAC_SECRET",
    "PROOFKIT_ACCOUNT_ID",
    "PROOFKIT_LOG_DIR",
    "PROOFKIT_MAX_VERDICT_AGE_MINUTES",
    "PROOFKIT_MAX_MUTATIONS_PER_RUN",
    "PROOFKIT_BACKEND_TIMEOUT_SECONDS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in PROOFKIT_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def run_log():
    return InMemoryRunLog()


def campaign_a(budget=15.0, **overrides):
    """Campaign-A: TARGET_SPEND at the 2.00 ceiling, scheduled, on the master list."""
    values = dict(
        name="Campaign-A",
        budget=budget,
        bidding_strategy="TARGET_SPEND",
        cpc_ceiling=2.0,
        has_ad_schedule=True,
        negative_lists=["Proofkit - Master Negatives"],
    )
    values.update(overrides)
    return CampaignState(**values)


@pytest.fixture
def make_routine():
    """Factory: (campaigns, **config) -> (account, routine)."""
    def _make(campaigns=None, negative_lists=None, **config):
        account = InMemoryAdsAccount(
            campaigns=[campaign_a()] if campaigns is None else campaigns,
            negative_lists=negative_lists,
        )
        values = {"budget_caps": {"Campaign-A": 10.0}, "cpc_ceiling_default": 2.0}
        values.update(config)
        return account, AutopilotRoutine(account, AutopilotConfig(**values))
    return _make


def verdict_payload(passed=True, first=0, second=0, timestamp=None, events=None,
                    guard_status=None, account_id="123-456-7890"):
    """Idempotency verdict in its persisted shape."""
    now = timestamp or utc_now().isoformat()

    def run(count):
        mutations = [{
            "type": "BUDGET_CHANGE",
            "details": {"campaign": f"Campaign-{i}", "old_amount": 15.0, "new_amount": 10.0},
            "timestamp": now,
            "mode": "PREVIEW",
        } for i in range(count)]
        return {"mode": "PREVIEW", "mutationCount": count, "mutations": mutations,
                "timestampRange": [now, now]}

    return {
        "passed": passed,
        "runId": "20261016T120000000000Z_idempotency_test",
        "accountId": account_id,
        "strategy": "repeatability",
        "firstRun": run(first),
        "secondRun": run(second),
        "timestamp": now,
        "guardStatus": {
            "label": "PROOFKIT_AUTOMATED",
            "label_guard_active": False,
            "reserved_keywords": ["proofkit", "brand"],
            "reserved_blocks": 0,
            "excluded_entities": [],
            "excluded_skips": 0,
            "mode": "PRODUCTION",
        } if guard_status is None else guard_status,
        "events": [
            {"timestamp": now, "level": "INFO", "tag": "LABEL_GUARD",
             "message": "Inactive for label 'PROOFKIT_AUTOMATED' [PREVIEW]"},
        ] if events is None else events,
    }


def production_payload(label_guard_active=True, timestamp=None, account_id="123-456-7890"):
    """Live production run summary in its persisted shape."""
    now = timestamp or utc_now().isoformat()
    return {
        "account_id": account_id,
        "live": True,
        "timestamp": now,
        "run": {"mode": "PRODUCTION", "mutationCount": 0, "mutations": [],
                "timestampRange": [None, None]},
        "guard_status": {
            "label": "PROOFKIT_AUTOMATED",
            "label_guard_active": label_guard_active,
            "reserved_keywords": ["brand"],
            "reserved_blocks": 0,
            "excluded_entities": [],
            "excluded_skips": 0,
            "mode": "PRODUCTION",
        },
        "events": [
            {"timestamp": now, "level": "INFO", "tag": "LABEL_GUARD",
             "message": "Created label 'PROOFKIT_AUTOMATED'"},
        ],
    }


def minutes_ago(minutes):
    return (utc_now() - timedelta(minutes=minutes)).isoformat()


class FakeBackend:
    """Stands in for BackendGateClient."""

    def __init__(self, gate_status="OPEN", error=None):
        self.gate_status = gate_status
        self.error = error
        self.tenants = []

    def get_status(self, tenant):
        self.tenants.append(tenant)
        if self.error:
            raise BackendUnavailableError(self.error)
        return BackendGateStatus(self.gate_status, self.gate_status == "OPEN",
                                 utc_now().isoformat())


@pytest.fixture
def open_backend():
    return FakeBackend("OPEN")
