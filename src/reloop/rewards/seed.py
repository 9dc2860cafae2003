"""Built-in rule catalog: waste categories, social actions, missions and badges.

Mission windows are generated around the load time: the monthly mission runs
for the current calendar month, the others for the current quarter. Deployments
with fixed campaign dates ship a catalog file instead (RELOOP_RULE_CATALOG_PATH).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

CATEGORIES: list[dict[str, Any]] = [
    {"category_name": "PLASTIC", "points_per_kg": 10, "co2_factor_per_kg": 1.5},
    {"category_name": "PAPER", "points_per_kg": 5, "co2_factor_per_kg": 0.9},
    {"category_name": "METAL", "points_per_kg": 15, "co2_factor_per_kg": 4.0},
    {"category_name": "GLASS", "points_per_kg": 4, "co2_factor_per_kg": 0.3},
    {"category_name": "ORGANIC", "points_per_kg": 2, "co2_factor_per_kg": 0.5},
    {"category_name": "E_WASTE", "points_per_kg": 25, "co2_factor_per_kg": 2.0},
    {"category_name": "TEXTILE", "points_per_kg": 8, "co2_factor_per_kg": 3.6},
    {"category_name": "BATTERIES", "points_per_kg": 30, "co2_factor_per_kg": 1.2},
]

SOCIAL_ACTIONS: list[dict[str, Any]] = [
    {"action_type": "POST_CREATED", "points": 5},
    {"action_type": "COMMENT_CREATED", "points": 2},
    {"action_type": "POST_LIKED", "points": 1},
    {"action_type": "EVENT_ATTENDED", "points": 50},
]

MISSIONS: list[dict[str, Any]] = [
    {
        "mission_id": "monthly_50kg",
        "title": "Monthly Recycler",
        "description": "Recycle 50kg this month to earn bonus points",
        "type": "RECYCLING",
        "target_value": 50,
        "points_reward": 200,
        "window": "month",
    },
    {
        "mission_id": "plastic_free_week",
        "title": "Plastic Purge",
        "description": "Bring 10kg of plastic to a drop point",
        "type": "RECYCLING",
        "category_name": "PLASTIC",
        "target_value": 10,
        "points_reward": 100,
        "window": "quarter",
        "max_participants": 500,
    },
    {
        "mission_id": "community_voice",
        "title": "Community Voice",
        "description": "Share five posts with the community",
        "type": "COMMUNITY",
        "action_type": "POST_CREATED",
        "target_value": 5,
        "points_reward": 50,
        "window": "quarter",
    },
    {
        "mission_id": "ten_drops",
        "title": "Ten Drops",
        "description": "Make ten separate recycling submissions",
        "type": "CHALLENGE",
        "target_value": 10,
        "points_reward": 75,
        "window": "quarter",
    },
]

BADGES: list[dict[str, Any]] = [
    {
        "badge_id": "first_drop",
        "name": "First Drop",
        "description": "Recycle your very first item",
        "metric": "submissions_count",
        "threshold": 1,
    },
    {
        "badge_id": "recycler_10kg",
        "name": "Getting Started",
        "description": "Recycle 10kg of waste",
        "metric": "total_weight_recycled_kg",
        "threshold": 10,
    },
    {
        "badge_id": "eco_warrior",
        "name": "Eco Warrior",
        "description": "Recycle 100kg of waste",
        "metric": "total_weight_recycled_kg",
        "threshold": 100,
    },
    {
        "badge_id": "carbon_cutter",
        "name": "Carbon Cutter",
        "description": "Save 50kg of CO2",
        "metric": "co2_saved_kg",
        "threshold": 50,
    },
    {
        "badge_id": "plastic_hero",
        "name": "Plastic Hero",
        "description": "Recycle 25kg of plastic",
        "metric": "category_weight_kg",
        "category_name": "PLASTIC",
        "threshold": 25,
    },
    {
        "badge_id": "community_builder",
        "name": "Community Builder",
        "description": "Take part in ten community actions",
        "metric": "social_actions_count",
        "threshold": 10,
    },
    {
        "badge_id": "mission_master",
        "name": "Mission Master",
        "description": "Complete three missions",
        "metric": "completed_missions",
        "threshold": 3,
    },
    {
        "badge_id": "points_1k",
        "name": "Point Collector",
        "description": "Hold 1,000 points",
        "metric": "points_balance",
        "threshold": 1000,
    },
]


def _month_window(now: datetime) -> tuple[datetime, datetime]:
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    following = (start + timedelta(days=32)).replace(day=1)
    return start, following - timedelta(seconds=1)


def _quarter_window(now: datetime) -> tuple[datetime, datetime]:
    first_month = 3 * ((now.month - 1) // 3) + 1
    start = now.replace(month=first_month, day=1, hour=0, minute=0, second=0, microsecond=0)
    if first_month == 10:
        following = start.replace(year=start.year + 1, month=1)
    else:
        following = start.replace(month=first_month + 3)
    return start, following - timedelta(seconds=1)


def seed_catalog_data(now: datetime | None = None) -> dict[str, Any]:
    """Catalog document with mission windows covering ``now`` (default: current UTC time)."""
    now = now or datetime.now(timezone.utc)
    windows = {"month": _month_window(now), "quarter": _quarter_window(now)}

    missions = []
    for mission in MISSIONS:
        doc = {k: v for k, v in mission.items() if k != "window"}
        start, end = windows[mission["window"]]
        doc["start_date"] = start.isoformat()
        doc["end_date"] = end.isoformat()
        missions.append(doc)

    return {
        "categories": list(CATEGORIES),
        "social_actions": list(SOCIAL_ACTIONS),
        "missions": missions,
        "badges": list(BADGES),
    }
