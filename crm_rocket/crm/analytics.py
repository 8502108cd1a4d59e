"""Dashboard aggregations over rows that are already loaded and row-scoped."""

from __future__ import annotations

import math
from collections import Counter
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from crm_rocket.crm.pipeline import (
    CLOSED_STAGES,
    OPEN_STAGES,
    DealStage,
    as_aware,
    days_in_stage,
    weighted_pipeline_value,
)

MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
RECENT_WINDOW = timedelta(days=30)
FOLLOW_UP_DAYS = {"high": 2, "medium": 7, "low": 14}
BOTTLENECK_FACTOR = 1.5


def round_half_up(value: float, digits: int = 0) -> float:
    quantum = Decimal(1).scaleb(-digits)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def round_percent(numerator: float, denominator: float, digits: int = 0) -> float:
    if not denominator:
        return 0
    rounded = round_half_up(numerator / denominator * 100, digits)
    return int(rounded) if digits == 0 else rounded


def _value(row: Any) -> float:
    return float(getattr(row, "value", None) or 0)


def _won(deals: Iterable[Any]) -> list[Any]:
    return [deal for deal in deals if deal.stage == DealStage.CLOSED_WON]


def _lost(deals: Iterable[Any]) -> list[Any]:
    return [deal for deal in deals if deal.stage == DealStage.CLOSED_LOST]


def _is_open(deal: Any) -> bool:
    return deal.stage not in CLOSED_STAGES


def revenue_by_month(deals: Iterable[Any], *, year: int, target: float) -> list[dict[str, Any]]:
    buckets = [{"month": month, "forecast": 0.0, "actual": 0.0, "target": target} for month in MONTHS]
    for deal in deals:
        close_date = deal.expected_close_date
        if close_date is None or close_date.year != year:
            continue
        bucket = buckets[close_date.month - 1]
        bucket["forecast"] += _value(deal)
        if deal.stage == DealStage.CLOSED_WON and deal.actual_close_date is not None:
            bucket["actual"] += _value(deal)
    return buckets


def performance_metrics(deals: Sequence[Any], *, quota: float) -> dict[str, Any]:
    won = _won(deals)
    achieved = sum(_value(deal) for deal in won)
    return {
        "quota": quota,
        "achieved": achieved,
        "percentage": round_percent(achieved, quota),
        "deals_won": len(won),
        "deals_lost": len(_lost(deals)),
        "avg_deal_size": int(round_half_up(achieved / len(won))) if won else 0,
        "conversion_rate": round_percent(len(won), len(deals), 1),
    }


def win_rate_by_month(deals: Iterable[Any], *, year: int) -> list[dict[str, Any]]:
    buckets = [{"period": month, "won": 0, "total": 0, "win_rate": 0} for month in MONTHS]
    for deal in deals:
        if deal.created_at is None:
            continue
        created = as_aware(deal.created_at)
        if created.year != year:
            continue
        bucket = buckets[created.month - 1]
        bucket["total"] += 1
        if deal.stage == DealStage.CLOSED_WON:
            bucket["won"] += 1
    for bucket in buckets:
        bucket["win_rate"] = round_percent(bucket["won"], bucket["total"])
    return buckets


def pipeline_summary(deals: Sequence[Any]) -> dict[str, Any]:
    open_deals = [deal for deal in deals if _is_open(deal)]
    won = _won(deals)
    closed = len(won) + len(_lost(deals))
    return {
        "total_value": round(sum(_value(deal) for deal in deals), 2),
        "weighted_value": weighted_pipeline_value(open_deals),
        "open_deals": len(open_deals),
        "won_value": round(sum(_value(deal) for deal in won), 2),
        "win_rate": round_percent(len(won), closed),
    }


def stage_velocity(deals: Iterable[Any], now: datetime) -> list[dict[str, Any]]:
    per_stage: dict[str, list[int]] = {stage.value: [] for stage in OPEN_STAGES}
    for deal in deals:
        stage = deal.stage or DealStage.LEAD.value
        if stage in per_stage:
            per_stage[stage].append(days_in_stage(deal, now))
    return [
        {
            "stage": stage,
            "deal_count": len(samples),
            "average_days": round_half_up(sum(samples) / len(samples), 1) if samples else 0.0,
        }
        for stage, samples in per_stage.items()
    ]


def bottleneck_stages(stage_data: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    """Stages whose average dwell time exceeds 1.5x the mean across stages, slowest first."""
    if not stage_data:
        return []
    mean_days = sum(item["average_days"] for item in stage_data) / len(stage_data)
    slow = [item for item in stage_data if item["average_days"] > mean_days * BOTTLENECK_FACTOR]
    return sorted(slow, key=lambda item: item["average_days"], reverse=True)


def average_days_in_pipeline(deals: Iterable[Any]) -> int:
    durations: list[int] = []
    for deal in deals:
        if deal.actual_close_date is None or deal.created_at is None:
            continue
        durations.append((deal.actual_close_date - as_aware(deal.created_at).date()).days)
    if not durations:
        return 0
    return int(round_half_up(sum(durations) / len(durations)))


def conversion_rate(deals: Sequence[Any]) -> int:
    return int(round_percent(len(_won(deals)), len(deals)))


def average_deal_size(won_deals: Sequence[Any]) -> float:
    if not won_deals:
        return 0
    return round_half_up(sum(_value(deal) for deal in won_deals) / len(won_deals), 2)


def next_follow_up_date(last_contact: datetime, priority: str | None) -> datetime:
    return as_aware(last_contact) + timedelta(days=FOLLOW_UP_DAYS.get(priority or "", 7))


def contact_stats(contacts: Iterable[Any]) -> dict[str, Any]:
    rows = list(contacts)
    statuses = Counter(contact.status for contact in rows)
    lead_sources = Counter(contact.lead_source or "unknown" for contact in rows)
    return {
        "total": len(rows),
        "active": statuses.get("active", 0),
        "prospects": statuses.get("prospect", 0),
        "customers": statuses.get("customer", 0),
        "lead_sources": dict(lead_sources),
    }


def company_stats(companies: Iterable[Any], now: datetime) -> dict[str, Any]:
    rows = list(companies)
    cutoff = now - RECENT_WINDOW
    return {
        "total": len(rows),
        "by_industry": dict(Counter(company.industry or "Unknown" for company in rows)),
        "by_size": dict(Counter(company.size or "Unknown" for company in rows)),
        "recently_added": sum(1 for company in rows if as_aware(company.created_at) > cutoff),
    }


def activity_stats(activities: Iterable[Any]) -> dict[str, Any]:
    rows = list(activities)
    types = Counter(activity.type for activity in rows)
    calls = [activity for activity in rows if activity.type == "call" and activity.duration_minutes]
    total_call_time = sum(activity.duration_minutes for activity in calls)
    return {
        "total": len(rows),
        "emails": types.get("email", 0),
        "calls": types.get("call", 0),
        "meetings": types.get("meeting", 0),
        "notes": types.get("note", 0),
        "total_call_time": total_call_time,
        "avg_call_duration": int(round_half_up(total_call_time / len(calls))) if calls else 0,
    }


def is_overdue(task: Any, now: datetime) -> bool:
    return task.due_date is not None and as_aware(task.due_date) < now and task.status != "completed"


def days_until_due(task: Any, now: datetime) -> int | None:
    if task.due_date is None:
        return None
    return math.ceil((as_aware(task.due_date) - now) / timedelta(days=1))


def task_stats(tasks: Iterable[Any], now: datetime) -> dict[str, Any]:
    rows = list(tasks)
    statuses = Counter(task.status for task in rows)
    return {
        "total": len(rows),
        "pending": statuses.get("pending", 0),
        "in_progress": statuses.get("in_progress", 0),
        "completed": statuses.get("completed", 0),
        "overdue": sum(1 for task in rows if is_overdue(task, now)),
        "high_priority": sum(1 for task in rows if task.priority in ("high", "urgent")),
        "completion_rate": round_percent(statuses.get("completed", 0), len(rows)),
    }


def user_stats(users: Iterable[Any], now: datetime) -> dict[str, Any]:
    rows = list(users)
    cutoff = now - RECENT_WINDOW
    return {
        "total": len(rows),
        "active": sum(1 for user in rows if user.is_active),
        "inactive": sum(1 for user in rows if not user.is_active),
        "by_role": dict(Counter(user.role or "unknown" for user in rows)),
        "recently_joined": sum(1 for user in rows if as_aware(user.created_at) > cutoff),
    }


def company_summary(contacts: Sequence[Any], deals: Sequence[Any], activities: Sequence[Any]) -> dict[str, Any]:
    won = _won(deals)
    return {
        "total_contacts": len(contacts),
        "total_deals": len(deals),
        "total_deal_value": round(sum(_value(deal) for deal in deals), 2),
        "active_deal_value": round(sum(_value(deal) for deal in deals if _is_open(deal)), 2),
        "won_deals": len(won),
        "lost_deals": len(_lost(deals)),
        "total_activities": len(activities),
        "win_rate": round_percent(len(won), len(won) + len(_lost(deals)), 1),
    }


def relationship_health(
    activities: Sequence[Any],
    contacts: Sequence[Any],
    deals: Sequence[Any],
    now: datetime,
) -> dict[str, Any]:
    score = 0
    factors: list[str] = []

    cutoff = now - RECENT_WINDOW
    recent = [activity for activity in activities if as_aware(activity.created_at) > cutoff]
    if len(recent) >= 5:
        score += 30
        factors.append("High activity level")
    elif len(recent) >= 2:
        score += 20
        factors.append("Moderate activity level")
    else:
        factors.append("Low activity level")

    if len(contacts) >= 3:
        score += 25
        factors.append("Multiple contacts")
    elif len(contacts) >= 2:
        score += 15
        factors.append("Good contact coverage")

    active = [deal for deal in deals if _is_open(deal)]
    if len(active) >= 2:
        score += 25
        factors.append("Multiple active opportunities")
    elif len(active) == 1:
        score += 15
        factors.append("Active opportunity")

    if deals:
        win_rate = len(_won(deals)) / len(deals)
        if win_rate >= 0.5:
            score += 20
            factors.append("High win rate")
        elif win_rate >= 0.25:
            score += 10
            factors.append("Moderate win rate")

    score = min(score, 100)
    if score >= 80:
        level = "Excellent"
    elif score >= 60:
        level = "Good"
    elif score >= 40:
        level = "Fair"
    else:
        level = "Poor"
    return {"score": score, "level": level, "factors": factors}


def user_activity_summary(
    activities: Sequence[Any],
    tasks: Sequence[Any],
    deals: Sequence[Any],
    *,
    days: int,
) -> dict[str, Any]:
    return {
        "total_activities": len(activities),
        "total_tasks": len(tasks),
        "completed_tasks": sum(1 for task in tasks if task.status == "completed"),
        "total_deals": len(deals),
        "won_deals": len(_won(deals)),
        "total_deal_value": round(sum(_value(deal) for deal in deals), 2),
        "period": days,
    }
