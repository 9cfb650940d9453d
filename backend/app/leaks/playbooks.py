from __future__ import annotations

from typing import Dict, List, TypedDict


class Playbook(TypedDict):
    title: str
    goal: str
    steps: List[str]


LEAK_PLAYBOOKS: Dict[str, Playbook] = {
    "failed_payments": {
        "title": "Failed Payments Playbook",
        "goal": "Recover revenue from failed invoices and reduce involuntary churn.",
        "steps": [
            "Enable Smart Retries and set a retry schedule (e.g., day 1/3/5/7).",
            "Turn on Card Updater and ensure retry rules apply to all plans.",
            "Add an in-app banner asking past_due customers to update their payment method.",
            "Send a 3-email dunning sequence (Day 0, Day 3, Day 7) with a direct update link.",
            "Measure recovery rate weekly (recovered / failed). Aim for 40-70% depending on ICP.",
        ],
    },
    "recovery_gap": {
        "title": "Recovery Gap Playbook",
        "goal": "Shorten time-to-recovery and stop invoices getting stuck.",
        "steps": [
            "Check retry rules and email deliverability (SPF/DKIM).",
            "Add a grace period policy and communicate it clearly.",
            "Pause non-critical features for past_due users to prompt action.",
            "Offer an annual switch discount if churn risk is high.",
            "Review 10 recent stuck invoices and identify the pattern (cards, regions, plan).",
        ],
    },
    "churn_spike": {
        "title": "Churn Spike Playbook",
        "goal": "Identify root cause quickly and stop the bleeding.",
        "steps": [
            "Segment churn by plan, cohort, country and acquisition source.",
            "Check the last 14 days for product releases, outages and pricing changes.",
            "Review cancel reasons (if captured) and support tickets.",
            "Run a save campaign: offer downgrade, pause, or annual discount.",
            "Add an exit survey at cancellation to capture the reason.",
        ],
    },
    "silent_churn": {
        "title": "Silent Churn Playbook",
        "goal": "Explain unexplained MRR drops (downgrades, proration, unpaid).",
        "steps": [
            "Add subscription event tracking (upgrades/downgrades/proration).",
            "Inspect invoices with proration and negative line items.",
            "Check unpaid / incomplete subscriptions and whether they are counted in MRR.",
            "Verify currency conversion rules (if multi-currency).",
            "Reconcile MRR movements to subscription item deltas.",
        ],
    },
    "expansion_opportunity": {
        "title": "Expansion Opportunity Playbook",
        "goal": "Convert power users to higher tiers and capture underpricing.",
        "steps": [
            "Identify long-tenure customers on the lowest tier with consistent usage.",
            "Create a clear upgrade path (feature gating or usage-based tier).",
            "Add in-app upgrade prompts at the moment of need.",
            "Run a targeted upsell campaign (10-30% of accounts).",
            "Track upgrade conversion and time-to-upgrade by cohort.",
        ],
    },
}


def get_playbook(leak_type: str) -> Playbook | None:
    return LEAK_PLAYBOOKS.get(leak_type)
