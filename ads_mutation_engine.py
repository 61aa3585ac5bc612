"""
================================================================================
 PROOFKIT ADS MUTATION ENGINE
 ----------------------------
 The autopilot routine and the accounts it mutates.

 Routine steps (one pass over in-scope Search campaigns):
   1. Label guard       (ownership label, live runs only)
   2. Budget caps       (lower budgets above the tenant cap)
   3. Bidding           (TARGET_SPEND, or a new CPC ceiling when already on it)
   4. Business hours    (ad schedule when none exists)
   5. Campaign negatives (per-campaign terms, NEG_GUARD vetoes reserved terms)
   6. Master negatives  (shared list upsert, NEG_GUARD vetoes reserved terms)
   7. List attach       (master list on every campaign)

 Every decision is a pure function of the account's current state and
 is routed through RunContext.plan_mutation, so the same state never
 produces a mutation twice once it has been applied.

 Accounts:
   InMemoryAdsAccount  JSON fixture account, used by tests and the harness
   GoogleAdsAccount    live executor on the google-ads client library
================================================================================
"""

import copy
import json
import logging
import os
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

import pandas as pd

from run_context import MutationRecord, MutationType, RunContext, RunMode
from run_log import PRODUCTION_RUN
from safety_guards import (
    DEFAULT_LABEL, DEFAULT_RESERVED_KEYWORDS, SafetyGuards, apply_label, ensure_label,
)

logger = logging.getLogger("MutationEngine")

# ──────────────────────────────────────────────────────────────────────────────
# CONSTANTS
# ──────────────────────────────────────────────────────────────────────────────

TARGET_SPEND = "TARGET_SPEND"
DEFAULT_BUSINESS_DAYS = "MONDAY,TUESDAY,WEDNESDAY,THURSDAY,FRIDAY"
DEFAULT_MASTER_LIST = "Proofkit - Master Negatives"


@dataclass
class CampaignState:
    """What the routine can see about one campaign."""
    name: str
    budget: float
    bidding_strategy: str = "MANUAL_CPC"
    cpc_ceiling: Optional[float] = None
    has_ad_schedule: bool = False
    labels: List[str] = field(default_factory=list)
    negative_lists: List[str] = field(default_factory=list)
    negative_keywords: List[str] = field(default_factory=list)
    campaign_id: Optional[str] = None
    budget_resource: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CampaignState":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class AutopilotConfig:
    """Tenant configuration for the autopilot routine."""
    enabled: bool = True
    promote: bool = False
    label: str = DEFAULT_LABEL
    label_include: Optional[str] = None
    budget_caps: Dict[str, float] = field(default_factory=dict)
    daily_budget_cap_default: Optional[float] = None
    manage_bidding: bool = True
    cpc_ceilings: Dict[str, float] = field(default_factory=dict)
    cpc_ceiling_default: Optional[float] = None
    add_business_hours_if_none: bool = False
    business_days: str = DEFAULT_BUSINESS_DAYS
    business_start: str = "09:00"
    business_end: str = "18:00"
    master_neg_list_name: str = DEFAULT_MASTER_LIST
    master_negatives: List[str] = field(default_factory=list)
    campaign_negatives: Dict[str, List[str]] = field(default_factory=dict)
    reserved_keywords: List[str] = field(default_factory=lambda: list(DEFAULT_RESERVED_KEYWORDS))
    exclusions: Dict[str, Any] = field(default_factory=dict)

    # Keys used by the tenant config sheet
    SHEET_KEYS = {
        "PROMOTE": "promote",
        "BUDGET_CAPS": "budget_caps",
        "CPC_CEILINGS": "cpc_ceilings",
        "EXCLUSIONS": "exclusions",
        "MASTER_NEGATIVES": "master_negatives",
        "CAMPAIGN_NEGATIVES": "campaign_negatives",
        "RESERVED_KEYWORDS": "reserved_keywords",
        "business_days_csv": "business_days",
    }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutopilotConfig":
        values = {}
        for key, value in (data or {}).items():
            name = cls.SHEET_KEYS.get(key, key)
            if name in cls.__dataclass_fields__:
                values[name] = value
        if "promote" in values:
            values["promote"] = str(values["promote"]).strip().lower() == "true"
        return cls(**values)

    @classmethod
    def load(cls, path: str) -> "AutopilotConfig":
        with open(path) as f:
            return cls.from_dict(json.load(f))

    def guards(self) -> SafetyGuards:
        return SafetyGuards(label=self.label,
                            reserved_keywords=self.reserved_keywords,
                            exclusions=self.exclusions)


# ══════════════════════════════════════════════════════════════════════════════
# ACCOUNTS
# ══════════════════════════════════════════════════════════════════════════════

class AdsAccount:
    """Read and write surface the routine needs from an advertising account."""

    def campaigns(self) -> List[CampaignState]:
        raise NotImplementedError

    def labels(self) -> List[str]:
        raise NotImplementedError

    def negative_list_terms(self, list_name: str) -> Optional[List[str]]:
        raise NotImplementedError

    def set_budget(self, campaign: str, amount: float):
        raise NotImplementedError

    def set_bidding(self, campaign: str, strategy: str, ceiling: Optional[float]):
        raise NotImplementedError

    def add_ad_schedule(self, campaign: str, days: str, start: str, end: str):
        raise NotImplementedError

    def add_list_negative(self, list_name: str, term: str):
        raise NotImplementedError

    def attach_negative_list(self, campaign: str, list_name: str):
        raise NotImplementedError

    def add_campaign_negative(self, campaign: str, term: str):
        raise NotImplementedError

    def create_label(self, name: str, description: str = ""):
        raise NotImplementedError

    def apply_label(self, campaign: str, label: str):
        raise NotImplementedError


class InMemoryAdsAccount(AdsAccount):
    """
    Account held in memory, loadable from a JSON fixture:
        {"campaigns": [...], "labels": [...], "negative_lists": {name: [terms]}}
    """

    def __init__(self, campaigns: List[CampaignState] = None,
                 labels: List[str] = None,
                 negative_lists: Dict[str, List[str]] = None):
        self._campaigns = {c.name: c for c in (campaigns or [])}
        self._labels = list(labels or [])
        self._negative_lists = {k: list(v) for k, v in (negative_lists or {}).items()}
        self.other_applied: List[MutationRecord] = []

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InMemoryAdsAccount":
        return cls(
            campaigns=[CampaignState.from_dict(c) for c in data.get("campaigns", [])],
            labels=data.get("labels", []),
            negative_lists=data.get("negative_lists", {}),
        )

    @classmethod
    def load(cls, path: str) -> "InMemoryAdsAccount":
        with open(path) as f:
            return cls.from_dict(json.load(f))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "campaigns": [asdict(c) for c in self._campaigns.values()],
            "labels": list(self._labels),
            "negative_lists": copy.deepcopy(self._negative_lists),
        }

    def save(self, path: str):
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)

    # ── READS ────────────────────────────────────────────────────────────────

    def campaigns(self) -> List[CampaignState]:
        return [copy.deepcopy(c) for c in self._campaigns.values()]

    def campaign(self, name: str) -> CampaignState:
        if name not in self._campaigns:
            raise KeyError(f"Unknown campaign: {name}")
        return self._campaigns[name]

    def labels(self) -> List[str]:
        return list(self._labels)

    def negative_list_terms(self, list_name: str) -> Optional[List[str]]:
        terms = self._negative_lists.get(list_name)
        return None if terms is None else list(terms)

    # ── WRITES ───────────────────────────────────────────────────────────────

    def set_budget(self, campaign: str, amount: float):
        self.campaign(campaign).budget = float(amount)

    def set_bidding(self, campaign: str, strategy: str, ceiling: Optional[float]):
        c = self.campaign(campaign)
        c.bidding_strategy = strategy
        if ceiling is not None:
            c.cpc_ceiling = float(ceiling)

    def add_ad_schedule(self, campaign: str, days: str, start: str, end: str):
        self.campaign(campaign).has_ad_schedule = True

    def add_list_negative(self, list_name: str, term: str):
        self._negative_lists.setdefault(list_name, []).append(term)

    def attach_negative_list(self, campaign: str, list_name: str):
        self._negative_lists.setdefault(list_name, [])
        c = self.campaign(campaign)
        if list_name not in c.negative_lists:
            c.negative_lists.append(list_name)

    def add_campaign_negative(self, campaign: str, term: str):
        self.campaign(campaign).negative_keywords.append(term)

    def create_label(self, name: str, description: str = ""):
        if name not in self._labels:
            self._labels.append(name)

    def apply_label(self, campaign: str, label: str):
        c = self.campaign(campaign)
        if label not in c.labels:
            c.labels.append(label)

    # ── REPLAY ───────────────────────────────────────────────────────────────

    def apply_mutations(self, mutations: List[MutationRecord]):
        """Apply recorded (planned) mutations to this account's state."""
        for m in mutations:
            d = m.details
            if m.type == MutationType.BUDGET_CHANGE:
                self.set_budget(d["campaign"], d["new_amount"])
            elif m.type == MutationType.BIDDING_STRATEGY_CHANGE:
                self.set_bidding(d["campaign"], d["strategy"], d.get("ceiling"))
            elif m.type == MutationType.CPC_CEILING_CHANGE:
                c = self.campaign(d["campaign"])
                self.set_bidding(c.name, c.bidding_strategy, d["ceiling"])
            elif m.type == MutationType.AD_SCHEDULE_ADD:
                self.add_ad_schedule(d["campaign"], d.get("days", ""),
                                     d.get("start", ""), d.get("end", ""))
            elif m.type == MutationType.MASTER_NEGATIVE_ADD:
                self.add_list_negative(d["list"], d["term"])
            elif m.type == MutationType.NEGATIVE_KEYWORD_ADD:
                self.add_campaign_negative(d["campaign"], d["term"])
            elif m.type == MutationType.NEGATIVE_LIST_ATTACH:
                self.attach_negative_list(d["campaign"], d["list"])
            elif m.type == MutationType.LABEL_APPLY:
                self.create_label(d["label"])
                self.apply_label(d["campaign"], d["label"])
            elif m.type in (MutationType.AUDIENCE_ATTACH, MutationType.RSA_CREATE):
                self.other_applied.append(m)
            else:
                raise ValueError(f"Unhandled mutation type: {m.type}")


class GoogleAdsAccount(AdsAccount):
    """
    Live executor on the google-ads Python library.
    Campaigns are addressed by name; ids and resource names are cached
    from the last campaigns() read.
    """

    MINUTES = {0: "ZERO", 15: "FIFTEEN", 30: "THIRTY", 45: "FORTY_FIVE"}

    def __init__(self, customer_id: str, login_customer_id: str = None,
                 developer_token: str = None):
        self.customer_id = customer_id.replace("-", "")
        self.login_customer_id = (login_customer_id or "").replace("-", "")
        self.developer_token = developer_token or os.environ.get("GOOGLE_ADS_DEVELOPER_TOKEN", "")
        self.client = None
        self._connected = False
        self._campaigns: Dict[str, CampaignState] = {}
        self._label_resources: Dict[str, str] = {}
        self._shared_sets: Dict[str, str] = {}

    def connect(self) -> bool:
        """Connect to Google Ads API."""
        try:
            from google.ads.googleads.client import GoogleAdsClient

            config = {
                "developer_token": self.developer_token,
                "use_proto_plus": True,
            }
            if self.login_customer_id:
                config["login_customer_id"] = self.login_customer_id

            self.client = GoogleAdsClient.load_from_dict(config)
            self._connected = True
            logger.info(f"Connected to Google Ads API (customer: {self.customer_id})")
            return True
        except Exception as e:
            logger.error(f"Connection failed: {e}")
            return False

    def _require_client(self):
        if not self._connected and not self.connect():
            raise ConnectionError(f"Google Ads API unavailable for {self.customer_id}")

    def query(self, gaql: str, extract) -> pd.DataFrame:
        """Run a GAQL query; extract(row) -> dict per result row."""
        self._require_client()
        ga_service = self.client.get_service("GoogleAdsService")
        stream = ga_service.search_stream(customer_id=self.customer_id, query=gaql.strip())
        rows = [extract(row) for batch in stream for row in batch.results]
        return pd.DataFrame(rows)

    # ── READS ────────────────────────────────────────────────────────────────

    def campaigns(self) -> List[CampaignState]:
        df = self.query("""
            SELECT campaign.id, campaign.name, campaign.bidding_strategy_type,
                   campaign.target_spend.cpc_bid_ceiling_micros,
                   campaign_budget.amount_micros, campaign_budget.resource_name
            FROM campaign
            WHERE campaign.advertising_channel_type = SEARCH
              AND campaign.status IN ('ENABLED', 'PAUSED')
        """, lambda r: {
            "campaign_id": str(r.campaign.id),
            "name": r.campaign.name,
            "bidding_strategy": r.campaign.bidding_strategy_type.name,
            "cpc_ceiling": (r.campaign.target_spend.cpc_bid_ceiling_micros / 1e6) or None,
            "budget": r.campaign_budget.amount_micros / 1e6,
            "budget_resource": r.campaign_budget.resource_name,
        })
        if df.empty:
            self._campaigns = {}
            return []

        schedules = self.query("""
            SELECT campaign.name FROM campaign_criterion
            WHERE campaign_criterion.type = AD_SCHEDULE
        """, lambda r: {"name": r.campaign.name})
        labels = self.query(
            "SELECT campaign.name, label.name FROM campaign_label",
            lambda r: {"name": r.campaign.name, "label": r.label.name})
        lists = self.query("""
            SELECT campaign.name, shared_set.name FROM campaign_shared_set
            WHERE campaign_shared_set.status = ENABLED
              AND shared_set.type = NEGATIVE_KEYWORDS
        """, lambda r: {"name": r.campaign.name, "list": r.shared_set.name})
        negatives = self.query("""
            SELECT campaign.name, campaign_criterion.keyword.text FROM campaign_criterion
            WHERE campaign_criterion.type = KEYWORD AND campaign_criterion.negative = TRUE
        """, lambda r: {"name": r.campaign.name, "term": r.campaign_criterion.keyword.text})

        scheduled = set(schedules["name"]) if not schedules.empty else set()
        result = []
        for row in df.to_dict("records"):
            name = row["name"]
            row["has_ad_schedule"] = name in scheduled
            row["labels"] = (labels.loc[labels["name"] == name, "label"].tolist()
                             if not labels.empty else [])
            row["negative_lists"] = (lists.loc[lists["name"] == name, "list"].tolist()
                                     if not lists.empty else [])
            row["negative_keywords"] = (negatives.loc[negatives["name"] == name, "term"].tolist()
                                        if not negatives.empty else [])
            result.append(CampaignState.from_dict(row))
        self._campaigns = {c.name: c for c in result}
        return copy.deepcopy(result)

    def labels(self) -> List[str]:
        df = self.query("SELECT label.name, label.resource_name FROM label",
                        lambda r: {"name": r.label.name, "resource": r.label.resource_name})
        self._label_resources = dict(zip(df["name"], df["resource"])) if not df.empty else {}
        return list(self._label_resources)

    def negative_list_terms(self, list_name: str) -> Optional[List[str]]:
        sets = self.query("""
            SELECT shared_set.name, shared_set.resource_name FROM shared_set
            WHERE shared_set.type = NEGATIVE_KEYWORDS AND shared_set.status = ENABLED
        """, lambda r: {"name": r.shared_set.name, "resource": r.shared_set.resource_name})
        self._shared_sets = dict(zip(sets["name"], sets["resource"])) if not sets.empty else {}
        if list_name not in self._shared_sets:
            return None
        terms = self.query(f"""
            SELECT shared_criterion.keyword.text FROM shared_criterion
            WHERE shared_set.resource_name = '{self._shared_sets[list_name]}'
        """, lambda r: {"term": r.shared_criterion.keyword.text})
        return terms["term"].tolist() if not terms.empty else []

    # ── WRITES ───────────────────────────────────────────────────────────────

    def _campaign(self, name: str) -> CampaignState:
        if name not in self._campaigns:
            self.campaigns()
        if name not in self._campaigns:
            raise KeyError(f"Unknown campaign: {name}")
        return self._campaigns[name]

    def _campaign_path(self, name: str) -> str:
        service = self.client.get_service("CampaignService")
        return service.campaign_path(self.customer_id, self._campaign(name).campaign_id)

    def set_budget(self, campaign: str, amount: float):
        self._require_client()
        budget_service = self.client.get_service("CampaignBudgetService")
        budget_op = self.client.get_type("CampaignBudgetOperation")
        budget = budget_op.update
        budget.resource_name = self._campaign(campaign).budget_resource
        budget.amount_micros = int(round(amount * 1e6))
        self.client.copy_from(
            budget_op.update_mask,
            self.client.get_type("FieldMask")(paths=["amount_micros"])
        )
        budget_service.mutate_campaign_budgets(customer_id=self.customer_id,
                                               operations=[budget_op])

    def set_bidding(self, campaign: str, strategy: str, ceiling: Optional[float]):
        if strategy != TARGET_SPEND:
            raise ValueError(f"Unsupported bidding strategy: {strategy}")
        self._require_client()
        campaign_service = self.client.get_service("CampaignService")
        campaign_op = self.client.get_type("CampaignOperation")
        c = campaign_op.update
        c.resource_name = self._campaign_path(campaign)
        paths = ["target_spend.cpc_bid_ceiling_micros"]
        c.target_spend.cpc_bid_ceiling_micros = int(round((ceiling or 0) * 1e6))
        self.client.copy_from(
            campaign_op.update_mask,
            self.client.get_type("FieldMask")(paths=paths)
        )
        campaign_service.mutate_campaigns(customer_id=self.customer_id,
                                          operations=[campaign_op])

    def add_ad_schedule(self, campaign: str, days: str, start: str, end: str):
        self._require_client()
        criterion_service = self.client.get_service("CampaignCriterionService")
        (sh, sm), (eh, em) = _hour_minute(start, 9), _hour_minute(end, 18)
        operations = []
        for day in [d.strip() for d in (days or DEFAULT_BUSINESS_DAYS).split(",") if d.strip()]:
            op = self.client.get_type("CampaignCriterionOperation")
            criterion = op.create
            criterion.campaign = self._campaign_path(campaign)
            schedule = criterion.ad_schedule
            schedule.day_of_week = getattr(self.client.enums.DayOfWeekEnum, day.upper())
            schedule.start_hour = sh
            schedule.start_minute = getattr(self.client.enums.MinuteOfHourEnum,
                                            self.MINUTES.get(sm, "ZERO"))
            schedule.end_hour = eh
            schedule.end_minute = getattr(self.client.enums.MinuteOfHourEnum,
                                          self.MINUTES.get(em, "ZERO"))
            operations.append(op)
        criterion_service.mutate_campaign_criteria(customer_id=self.customer_id,
                                                   operations=operations)

    def _shared_set(self, list_name: str) -> str:
        if list_name not in self._shared_sets:
            self.negative_list_terms(list_name)
        if list_name in self._shared_sets:
            return self._shared_sets[list_name]

        shared_set_service = self.client.get_service("SharedSetService")
        op = self.client.get_type("SharedSetOperation")
        op.create.name = list_name
        op.create.type_ = self.client.enums.SharedSetTypeEnum.NEGATIVE_KEYWORDS
        response = shared_set_service.mutate_shared_sets(customer_id=self.customer_id,
                                                         operations=[op])
        self._shared_sets[list_name] = response.results[0].resource_name
        logger.info(f"  Created shared negative list: {list_name}")
        return self._shared_sets[list_name]

    def add_list_negative(self, list_name: str, term: str):
        self._require_client()
        service = self.client.get_service("SharedCriterionService")
        op = self.client.get_type("SharedCriterionOperation")
        op.create.shared_set = self._shared_set(list_name)
        op.create.keyword.text = term
        op.create.keyword.match_type = self.client.enums.KeywordMatchTypeEnum.PHRASE
        service.mutate_shared_criteria(customer_id=self.customer_id, operations=[op])

    def attach_negative_list(self, campaign: str, list_name: str):
        self._require_client()
        service = self.client.get_service("CampaignSharedSetService")
        op = self.client.get_type("CampaignSharedSetOperation")
        op.create.campaign = self._campaign_path(campaign)
        op.create.shared_set = self._shared_set(list_name)
        service.mutate_campaign_shared_sets(customer_id=self.customer_id, operations=[op])

    def add_campaign_negative(self, campaign: str, term: str):
        self._require_client()
        service = self.client.get_service("CampaignCriterionService")
        op = self.client.get_type("CampaignCriterionOperation")
        op.create.campaign = self._campaign_path(campaign)
        op.create.negative = True
        op.create.keyword.text = term
        op.create.keyword.match_type = self.client.enums.KeywordMatchTypeEnum.PHRASE
        service.mutate_campaign_criteria(customer_id=self.customer_id, operations=[op])

    def create_label(self, name: str, description: str = ""):
        self._require_client()
        service = self.client.get_service("LabelService")
        op = self.client.get_type("LabelOperation")
        op.create.name = name
        op.create.description = description
        response = service.mutate_labels(customer_id=self.customer_id, operations=[op])
        self._label_resources[name] = response.results[0].resource_name

    def apply_label(self, campaign: str, label: str):
        self._require_client()
        if label not in self._label_resources:
            self.labels()
        service = self.client.get_service("CampaignLabelService")
        op = self.client.get_type("CampaignLabelOperation")
        op.create.campaign = self._campaign_path(campaign)
        op.create.label = self._label_resources[label]
        service.mutate_campaign_labels(customer_id=self.customer_id, operations=[op])


def _hour_minute(value: str, default_hour: int):
    parts = str(value or "").split(":")
    try:
        hour = int(parts[0])
    except ValueError:
        hour = default_hour
    minute = int(parts[1]) if len(parts) > 1 and parts[1].isdigit() else 0
    return hour, minute


# ══════════════════════════════════════════════════════════════════════════════
# AUTOPILOT ROUTINE
# ══════════════════════════════════════════════════════════════════════════════

class AutopilotRoutine:
    """
    One autopilot pass over an account. Call with a RunContext; the
    context's mode and PROMOTE flag decide whether anything is applied.
    """

    def __init__(self, account: AdsAccount, config: AutopilotConfig = None):
        self.account = account
        self.config = config or AutopilotConfig()

    def new_context(self, account_id: str = "default", mode_store=None) -> RunContext:
        """RunContext carrying this tenant's guards and PROMOTE flag."""
        return RunContext(account_id=account_id, promote=self.config.promote,
                          guards=self.config.guards(), mode_store=mode_store)

    def __call__(self, context: RunContext):
        cfg = self.config
        if not cfg.enabled:
            context.log_event("CONFIG", "Config disabled; nothing to do")
            return

        ensure_label(self.account, cfg.label, context)

        camps = [c for c in self.account.campaigns()
                 if not cfg.label_include or cfg.label_include in c.labels]
        context.log_event("SCOPE", f"In scope: {len(camps)} Search campaigns"
                          + (" (canary labeled)" if cfg.label_include else ""))
        if context.guards.reserved_keywords:
            context.log_event("RESERVED_KEYWORDS",
                              f"NEG_GUARD protecting {len(context.guards.reserved_keywords)} terms")

        touched = set()
        for c in camps:
            if context.guards.excludes(c.name):
                context.log_event("EXCLUSION_GUARD", f"Skipping excluded campaign {c.name}")
                continue
            if self._cap_budget(c, context):
                touched.add(c.name)
            if cfg.manage_bidding and self._set_bidding(c, context):
                touched.add(c.name)
            if cfg.add_business_hours_if_none and self._add_schedule(c, context):
                touched.add(c.name)
            if self._add_campaign_negatives(c, context):
                touched.add(c.name)

        if cfg.master_negatives:
            self._upsert_master_negatives(context)
            for c in camps:
                if context.guards.excludes(c.name):
                    continue
                if self._attach_list(c, context):
                    touched.add(c.name)

        for c in camps:
            if c.name in touched:
                apply_label(self.account, c, cfg.label, context)

        context.log_event("RUN_COMPLETE",
                          f"Proofkit run complete ({context.recorder.snapshot().mutation_count} "
                          f"mutations {'applied' if context.is_live() else 'recorded'})")

    # ── STEPS ────────────────────────────────────────────────────────────────

    def _cap_budget(self, c: CampaignState, context: RunContext) -> bool:
        cap = self.config.budget_caps.get(c.name, self.config.daily_budget_cap_default)
        if not cap or c.budget <= cap:
            return False
        return context.plan_mutation(
            MutationType.BUDGET_CHANGE,
            {"campaign": c.name, "old_amount": c.budget, "new_amount": cap},
            apply=lambda: self.account.set_budget(c.name, cap),
        )

    def _set_bidding(self, c: CampaignState, context: RunContext) -> bool:
        ceiling = self.config.cpc_ceilings.get(c.name, self.config.cpc_ceiling_default)
        if c.bidding_strategy == TARGET_SPEND:
            if not ceiling or c.cpc_ceiling == ceiling:
                return False
            return context.plan_mutation(
                MutationType.CPC_CEILING_CHANGE,
                {"campaign": c.name, "old_ceiling": c.cpc_ceiling, "ceiling": ceiling},
                apply=lambda: self.account.set_bidding(c.name, TARGET_SPEND, ceiling),
            )
        return context.plan_mutation(
            MutationType.BIDDING_STRATEGY_CHANGE,
            {"campaign": c.name, "strategy": TARGET_SPEND, "ceiling": ceiling},
            apply=lambda: self.account.set_bidding(c.name, TARGET_SPEND, ceiling),
        )

    def _add_schedule(self, c: CampaignState, context: RunContext) -> bool:
        if c.has_ad_schedule:
            return False
        cfg = self.config
        return context.plan_mutation(
            MutationType.AD_SCHEDULE_ADD,
            {"campaign": c.name, "days": cfg.business_days,
             "start": cfg.business_start, "end": cfg.business_end},
            apply=lambda: self.account.add_ad_schedule(
                c.name, cfg.business_days, cfg.business_start, cfg.business_end),
        )

    def _add_campaign_negatives(self, c: CampaignState, context: RunContext) -> bool:
        have = {t.lower() for t in c.negative_keywords}
        added = False
        for raw in self.config.campaign_negatives.get(c.name, []):
            term = str(raw or "").strip()
            if not term or term.lower() in have:
                continue
            have.add(term.lower())
            if context.plan_mutation(
                MutationType.NEGATIVE_KEYWORD_ADD,
                {"campaign": c.name, "term": term},
                apply=lambda t=term: self.account.add_campaign_negative(c.name, t),
            ):
                added = True
        return added

    def _upsert_master_negatives(self, context: RunContext) -> int:
        list_name = self.config.master_neg_list_name
        have = {t.lower() for t in (self.account.negative_list_terms(list_name) or [])}
        added = 0
        for raw in self.config.master_negatives:
            term = str(raw or "").strip()
            if not term or term.lower() in have:
                continue
            have.add(term.lower())
            if context.plan_mutation(
                MutationType.MASTER_NEGATIVE_ADD,
                {"term": term, "list": list_name},
                apply=lambda t=term: self.account.add_list_negative(list_name, t),
            ):
                added += 1
        if added:
            context.log_event("NEGATIVES", f"Master negatives {'added' if context.is_live() else 'planned'}: {added}")
        return added

    def _attach_list(self, c: CampaignState, context: RunContext) -> bool:
        list_name = self.config.master_neg_list_name
        if list_name in c.negative_lists:
            return False
        return context.plan_mutation(
            MutationType.NEGATIVE_LIST_ATTACH,
            {"campaign": c.name, "list": list_name},
            apply=lambda: self.account.attach_negative_list(c.name, list_name),
        )


def run_production(routine: AutopilotRoutine, account_id: str = "default",
                   run_log=None) -> Dict[str, Any]:
    """
    One PRODUCTION pass. Mutations are applied only when the tenant's
    PROMOTE flag is set. The run summary (with guard status) is appended
    to the run log so the promote gate can see guard evidence.
    """
    context = routine.new_context(account_id)
    context.set_mode(RunMode.PRODUCTION)
    routine(context)
    snapshot = context.recorder.snapshot()
    summary = {
        "account_id": account_id,
        "promote": context.promote,
        "live": context.is_live(),
        "run": snapshot.to_dict(),
        "guard_status": context.guards.status(context),
        "events": list(context.events),
    }
    if run_log is not None:
        try:
            run_log.append(PRODUCTION_RUN, summary)
        except Exception as e:
            logger.error(f"Could not persist production run summary: {e}")
    return summary
