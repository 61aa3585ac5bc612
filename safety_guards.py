"""
================================================================================
 PROOFKIT SAFETY GUARDS
 ----------------------
 Guards consulted by the automation before any mutation:

   LABEL_GUARD      tags touched entities with the ownership label
                    (advisory: failures are logged, never raised)
   NEG_GUARD        reserved terms never become negatives, in any mode
   EXCLUSION_GUARD  operator deny-list of campaigns / ad groups
================================================================================
"""

from typing import Any, Dict, Iterable, List, Optional

from run_context import MutationType


DEFAULT_LABEL = "PROOFKIT_AUTOMATED"
DEFAULT_LABEL_DESCRIPTION = "Touched by Proofkit"
DEFAULT_RESERVED_KEYWORDS = ["proofkit", "brand", "competitor", "important"]


# ── PURE GUARD FUNCTIONS ─────────────────────────────────────────────────────

def is_reserved_keyword(term: str, reserved: Iterable[str]) -> bool:
    """True if term contains any reserved substring (case-insensitive)."""
    lowered = str(term or "").lower()
    return any(r and str(r).lower() in lowered for r in (reserved or []))


def is_excluded_campaign(exclusions: Optional[Dict[str, Any]], campaign: str) -> bool:
    if not isinstance(exclusions, dict):
        return False
    return exclusions.get(campaign) is True


def is_excluded_ad_group(exclusions: Optional[Dict[str, Any]], campaign: str,
                         ad_group: str) -> bool:
    if not isinstance(exclusions, dict):
        return False
    groups = exclusions.get(campaign)
    if not isinstance(groups, dict):
        return False
    return bool(groups.get(ad_group))


# ── LABEL GUARD ──────────────────────────────────────────────────────────────

def ensure_label(account, name: str, context) -> bool:
    """
    Make sure the ownership label exists on the account. Creates it only
    when absent. Returns False when the guard is inactive or the platform
    refused; never raises.
    """
    if not context.is_live():
        context.log_event("LABEL_GUARD", f"Inactive for label '{name}' "
                                         f"[{_inactive_reason(context)}]")
        return False
    try:
        if name in account.labels():
            context.log_event("LABEL_GUARD", f"Label '{name}' already present")
            return True
        account.create_label(name, DEFAULT_LABEL_DESCRIPTION)
        context.log_event("LABEL_GUARD", f"Created label '{name}'")
        return True
    except Exception as e:
        context.log_event("LABEL_GUARD", f"Label error for '{name}': {e}", level="WARNING")
        return False


def apply_label(account, campaign, name: str, context) -> bool:
    """Tag a touched campaign with the ownership label (live runs only)."""
    if not context.is_live() or name in campaign.labels:
        return False
    try:
        account.apply_label(campaign.name, name)
    except Exception as e:
        context.log_event("LABEL_GUARD", f"Label error on {campaign.name}: {e}",
                          level="WARNING")
        return False
    return context.plan_mutation(MutationType.LABEL_APPLY,
                                 {"campaign": campaign.name, "label": name})


def _inactive_reason(context) -> str:
    return "PROMOTE=FALSE" if context.mode.value == "PRODUCTION" else "PREVIEW"


# ══════════════════════════════════════════════════════════════════════════════
# GUARD BUNDLE
# ══════════════════════════════════════════════════════════════════════════════

class SafetyGuards:
    """
    Label name, reserved-keyword list and exclusion map for one tenant,
    plus counters of how often the vetoes fired during the run.
    """

    def __init__(self, label: str = DEFAULT_LABEL,
                 reserved_keywords: Optional[List[str]] = None,
                 exclusions: Optional[Dict[str, Any]] = None):
        self.label = label
        self.reserved_keywords = list(
            DEFAULT_RESERVED_KEYWORDS if reserved_keywords is None else reserved_keywords
        )
        self.exclusions = dict(exclusions or {})
        self.reserved_blocks = 0
        self.excluded_skips = 0

    def excludes(self, campaign: str, ad_group: Optional[str] = None) -> bool:
        excluded = is_excluded_campaign(self.exclusions, campaign) or (
            ad_group is not None and is_excluded_ad_group(self.exclusions, campaign, ad_group)
        )
        if excluded:
            self.excluded_skips += 1
        return excluded

    def blocks_negative(self, term: str) -> bool:
        blocked = is_reserved_keyword(term, self.reserved_keywords)
        if blocked:
            self.reserved_blocks += 1
        return blocked

    def reset_counters(self):
        self.reserved_blocks = 0
        self.excluded_skips = 0

    def status(self, context) -> Dict[str, Any]:
        """Structured guard record persisted with every run."""
        return {
            "label": self.label,
            "label_guard_active": context.is_live(),
            "reserved_keywords": list(self.reserved_keywords),
            "reserved_blocks": self.reserved_blocks,
            "excluded_entities": sorted(self.exclusions),
            "excluded_skips": self.excluded_skips,
            "mode": context.mode.value,
        }
