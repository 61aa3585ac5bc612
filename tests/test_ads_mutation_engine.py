import json

import pytest

from ads_mutation_engine import (
    DEFAULT_MASTER_LIST, AutopilotConfig, GoogleAdsAccount, InMemoryAdsAccount, _hour_minute,
    run_production,
)
from conftest import campaign_a
from run_context import MutationRecord, MutationType, RunMode
from run_log import PRODUCTION_RUN


def planned_types(ctx):
    return [m.type for m in ctx.recorder.snapshot().mutations]


def preview(routine):
    ctx = routine.new_context("acct")
    ctx.set_mode(RunMode.PREVIEW)
    routine(ctx)
    return ctx


def test_config_from_sheet_keys():
    cfg = AutopilotConfig.from_dict({
        "PROMOTE": "TRUE",
        "BUDGET_CAPS": {"Campaign-A": 10.0},
        "RESERVED_KEYWORDS": ["brand"],
        "business_days_csv": "MONDAY",
        "unknown_key": 1,
    })
    assert cfg.promote is True
    assert cfg.budget_caps == {"Campaign-A": 10.0}
    assert cfg.business_days == "MONDAY"
    assert cfg.guards().reserved_keywords == ["brand"]
    assert AutopilotConfig.from_dict({"PROMOTE": "false"}).promote is False


def test_config_load(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"label": "CANARY", "EXCLUSIONS": {"Campaign-B": True}}))
    cfg = AutopilotConfig.load(str(path))
    assert cfg.label == "CANARY"
    assert cfg.guards().exclusions == {"Campaign-B": True}


def test_preview_plans_budget_cap_without_applying(make_routine):
    account, routine = make_routine()
    ctx = preview(routine)

    mutations = ctx.recorder.snapshot().mutations
    assert [m.type for m in mutations] == [MutationType.BUDGET_CHANGE]
    assert mutations[0].details == {"campaign": "Campaign-A", "old_amount": 15.0, "new_amount": 10.0}
    assert account.campaign("Campaign-A").budget == 15.0


def test_already_at_target_plans_nothing(make_routine):
    _, routine = make_routine(campaigns=[campaign_a(budget=10.0)])
    assert planned_types(preview(routine)) == []


def test_bidding_and_schedule(make_routine):
    generic = campaign_a(name="Campaign-B", budget=5.0, bidding_strategy="MANUAL_CPC",
                         cpc_ceiling=None, has_ad_schedule=False)
    _, routine = make_routine(campaigns=[generic], add_business_hours_if_none=True)
    ctx = preview(routine)

    assert planned_types(ctx) == [MutationType.BIDDING_STRATEGY_CHANGE, MutationType.AD_SCHEDULE_ADD]
    bid = ctx.recorder.snapshot().mutations[0]
    assert bid.details["ceiling"] == 2.0


def test_ceiling_only_change_on_target_spend(make_routine):
    account, routine = make_routine(campaigns=[campaign_a(budget=10.0, cpc_ceiling=1.5)])
    ctx = preview(routine)

    mutations = ctx.recorder.snapshot().mutations
    assert [m.type for m in mutations] == [MutationType.CPC_CEILING_CHANGE]
    assert mutations[0].details == {"campaign": "Campaign-A", "old_ceiling": 1.5, "ceiling": 2.0}

    account.apply_mutations(mutations)
    assert account.campaign("Campaign-A").bidding_strategy == "TARGET_SPEND"
    assert account.campaign("Campaign-A").cpc_ceiling == 2.0
    assert planned_types(preview(routine)) == []


def test_campaign_negatives_add_and_converge(make_routine):
    account, routine = make_routine(
        campaigns=[campaign_a(budget=10.0, negative_keywords=["cheap"])],
        campaign_negatives={"Campaign-A": ["free", "Free", "CHEAP", "brand jobs", " "]},
        reserved_keywords=["brand"],
    )
    ctx = preview(routine)
    mutations = ctx.recorder.snapshot().mutations

    assert [(m.type, m.details["term"]) for m in mutations] == [
        (MutationType.NEGATIVE_KEYWORD_ADD, "free"),
    ]
    assert ctx.guards.reserved_blocks == 1

    account.apply_mutations(mutations)
    assert account.campaign("Campaign-A").negative_keywords == ["cheap", "free"]
    assert planned_types(preview(routine)) == []


def test_campaign_negatives_from_sheet_keys():
    cfg = AutopilotConfig.from_dict({"CAMPAIGN_NEGATIVES": {"Campaign-A": ["free"]}})
    assert cfg.campaign_negatives == {"Campaign-A": ["free"]}


def test_live_run_applies_then_converges(make_routine):
    account, routine = make_routine(promote=True)

    first = run_production(routine, "acct")
    assert first["live"] is True
    assert [m["type"] for m in first["run"]["mutations"]] == ["BUDGET_CHANGE", "LABEL_APPLY"]
    assert account.campaign("Campaign-A").budget == 10.0
    assert account.campaign("Campaign-A").labels == ["PROOFKIT_AUTOMATED"]
    assert first["guard_status"]["label_guard_active"] is True

    second = run_production(routine, "acct")
    assert second["run"]["mutationCount"] == 0


def test_production_without_promote_changes_nothing(make_routine, run_log):
    account, routine = make_routine()

    summary = run_production(routine, "acct", run_log)
    assert summary["live"] is False
    assert summary["run"]["mutationCount"] == 0
    assert account.campaign("Campaign-A").budget == 15.0
    assert any("[PROMOTE=FALSE]" in e["message"] for e in summary["events"])
    assert run_log.latest(PRODUCTION_RUN).payload["account_id"] == "acct"


def test_excluded_campaign_is_skipped(make_routine):
    _, routine = make_routine(exclusions={"Campaign-A": True}, master_negatives=["free"])
    ctx = preview(routine)

    for m in ctx.recorder.snapshot().mutations:
        assert m.details.get("campaign") != "Campaign-A"
    assert planned_types(ctx) == [MutationType.MASTER_NEGATIVE_ADD]


def test_master_negatives_upsert(make_routine):
    generic = campaign_a(name="Campaign-B", budget=5.0, negative_lists=[])
    _, routine = make_routine(
        campaigns=[campaign_a(budget=10.0), generic],
        negative_lists={DEFAULT_MASTER_LIST: ["cheap"]},
        master_negatives=["free", "FREE", "Cheap", "brand jobs", ""],
        reserved_keywords=["brand"],
    )
    ctx = preview(routine)
    mutations = ctx.recorder.snapshot().mutations

    assert [(m.type, m.details.get("term") or m.details.get("campaign")) for m in mutations] == [
        (MutationType.MASTER_NEGATIVE_ADD, "free"),
        (MutationType.NEGATIVE_LIST_ATTACH, "Campaign-B"),
    ]
    assert ctx.guards.reserved_blocks == 1


def test_label_include_scopes_campaigns(make_routine):
    canary = campaign_a(name="Campaign-C", labels=["CANARY"])
    _, routine = make_routine(campaigns=[campaign_a(), canary],
                              budget_caps={"Campaign-A": 10.0, "Campaign-C": 10.0},
                              label_include="CANARY")
    ctx = preview(routine)
    assert [m.details["campaign"] for m in ctx.recorder.snapshot().mutations] == ["Campaign-C"]


def test_disabled_config_does_nothing(make_routine):
    _, routine = make_routine(enabled=False)
    ctx = preview(routine)
    assert planned_types(ctx) == []
    assert ctx.events[-1]["tag"] == "CONFIG"


def test_replay_planned_mutations(make_routine):
    account, routine = make_routine(master_negatives=["free"],
                                    campaigns=[campaign_a(negative_lists=[])])
    ctx = preview(routine)
    account.apply_mutations(ctx.recorder.snapshot().mutations)

    assert account.campaign("Campaign-A").budget == 10.0
    assert account.negative_list_terms(DEFAULT_MASTER_LIST) == ["free"]
    assert account.campaign("Campaign-A").negative_lists == [DEFAULT_MASTER_LIST]
    assert planned_types(preview(routine)) == []


def test_replay_keeps_unmodelled_types():
    account = InMemoryAdsAccount()
    rsa = MutationRecord(MutationType.RSA_CREATE, {"ad_group": "G1"}, RunMode.PREVIEW)
    account.apply_mutations([rsa])
    assert account.other_applied == [rsa]


def test_fixture_round_trip(tmp_path):
    account = InMemoryAdsAccount(campaigns=[campaign_a()], labels=["X"],
                                 negative_lists={"L": ["a"]})
    path = str(tmp_path / "account.json")
    account.save(path)
    loaded = InMemoryAdsAccount.load(path)
    assert loaded.to_dict() == account.to_dict()


def test_unknown_campaign_raises():
    with pytest.raises(KeyError):
        InMemoryAdsAccount().set_budget("nope", 1.0)


def test_google_ads_account_requires_connection(monkeypatch):
    account = GoogleAdsAccount("123-456-7890")
    monkeypatch.setattr(account, "connect", lambda: False)
    assert account.customer_id == "1234567890"
    with pytest.raises(ConnectionError):
        account.labels()


@pytest.mark.parametrize("value,expected", [
    ("09:00", (9, 0)),
    ("18:30", (18, 30)),
    ("bad", (7, 0)),
    ("", (7, 0)),
])
def test_hour_minute(value, expected):
    assert _hour_minute(value, 7) == expected
