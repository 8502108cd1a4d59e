"""Deal pipeline rules: the stage table, the grouped pipeline board and stage follow-up tasks."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime, timedelta, timezone
from enum import StrEnum
from typing import Any, Protocol


class DealStage(StrEnum):
    LEAD = "lead"
    QUALIFIED = "qualified"
    PROPOSAL = "proposal"
    NEGOTIATION = "negotiation"
    CLOSED_WON = "closed_won"
    CLOSED_LOST = "closed_lost"


STAGE_PROBABILITIES: dict[str, int] = {
    DealStage.LEAD: 10,
    DealStage.QUALIFIED: 25,
    DealStage.PROPOSAL: 50,
    DealStage.NEGOTIATION: 75,
    DealStage.CLOSED_WON: 100,
    DealStage.CLOSED_LOST: 0,
}
DEFAULT_PROBABILITY = 10

STAGE_TITLES: dict[str, str] = {
    DealStage.LEAD: "Lead",
    DealStage.QUALIFIED: "Qualified",
    DealStage.PROPOSAL: "Proposal",
    DealStage.NEGOTIATION: "Negotiation",
    DealStage.CLOSED_WON: "Closed Won",
    DealStage.CLOSED_LOST: "Closed Lost",
}

OPEN_STAGES = (DealStage.LEAD, DealStage.QUALIFIED, DealStage.PROPOSAL, DealStage.NEGOTIATION)
CLOSED_STAGES = (DealStage.CLOSED_WON, DealStage.CLOSED_LOST)

STAGE_TRANSITION_ACTIONS: dict[str, str] = {
    "lead_to_qualified": "Complete discovery call and needs assessment",
    "qualified_to_proposal": "Prepare and send detailed proposal",
    "proposal_to_negotiation": "Schedule negotiation meeting with stakeholders",
    "negotiation_to_closed_won": "Finalize contract terms and get signatures",
}

UNTITLED_DEAL = "Untitled Deal"


class DealLike(Protocol):
    name: str | None
    value: float | None
    stage: str | None
    probability: int | None
    created_at: datetime | None
    updated_at: datetime | None


def is_known_stage(stage: str | None) -> bool:
    return stage in STAGE_PROBABILITIES


def probability_for_stage(stage: str | None) -> int:
    if stage is None:
        return DEFAULT_PROBABILITY
    return STAGE_PROBABILITIES.get(stage, DEFAULT_PROBABILITY)


def as_aware(value: datetime) -> datetime:
    # sqlite hands back naive datetimes; every stored timestamp is UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def whole_days_between(later: datetime, earlier: datetime) -> int:
    return (as_aware(later) - as_aware(earlier)) // timedelta(days=1)


def days_in_stage(deal: DealLike, now: datetime) -> int:
    reference = deal.updated_at or deal.created_at
    if reference is None:
        return 0
    return max(0, whole_days_between(now, reference))


def deal_probability(deal: DealLike) -> int:
    if deal.probability is not None:
        return deal.probability
    return probability_for_stage(deal.stage)


def weighted_value(deal: DealLike) -> float:
    return float(deal.value or 0) * deal_probability(deal) / 100


def weighted_pipeline_value(deals: Iterable[DealLike]) -> float:
    return round(sum(weighted_value(deal) for deal in deals), 2)


def _person_name(person: Any) -> str | None:
    if person is None:
        return None
    name = " ".join(part for part in (getattr(person, "first_name", None), getattr(person, "last_name", None)) if part)
    return name or None


def pipeline_card(deal: Any, now: datetime) -> dict[str, Any]:
    company = getattr(deal, "company", None)
    return {
        "id": deal.id,
        "title": deal.name or UNTITLED_DEAL,
        "company": company.name if company is not None else None,
        "contact": _person_name(getattr(deal, "contact", None)),
        "owner": _person_name(getattr(deal, "owner", None)),
        "value": float(deal.value or 0),
        "probability": deal_probability(deal),
        "stage": deal.stage or DealStage.LEAD.value,
        "expected_close_date": deal.expected_close_date,
        "days_in_stage": days_in_stage(deal, now),
    }


def group_pipeline(deals: Iterable[Any], now: datetime | None = None) -> list[dict[str, Any]]:
    """Bucket deals into the six pipeline columns, in stage order.

    A deal without a stage is shown as a lead. Deals carrying a stage outside
    the table are left off the board.
    """
    current = now or datetime.now(timezone.utc)
    columns: dict[str, dict[str, Any]] = {
        stage.value: {
            "id": stage.value,
            "title": STAGE_TITLES[stage],
            "probability": STAGE_PROBABILITIES[stage],
            "deals": [],
            "count": 0,
            "total_value": 0.0,
            "weighted_value": 0.0,
        }
        for stage in DealStage
    }

    for deal in deals:
        stage = deal.stage or DealStage.LEAD.value
        column = columns.get(stage)
        if column is None:
            continue
        card = pipeline_card(deal, current)
        column["deals"].append(card)
        column["count"] += 1
        column["total_value"] += card["value"]
        column["weighted_value"] += card["value"] * card["probability"] / 100

    for column in columns.values():
        column["total_value"] = round(column["total_value"], 2)
        column["weighted_value"] = round(column["weighted_value"], 2)
    return list(columns.values())


def stage_transition_title(to_stage: str) -> str:
    # only the first underscore is replaced: "closed_won" -> "CLOSED WON"
    return f"{to_stage.replace('_', ' ', 1).upper()} stage actions"


def stage_transition_action(from_stage: str, to_stage: str) -> str:
    return STAGE_TRANSITION_ACTIONS.get(f"{from_stage}_to_{to_stage}", f"Complete actions for {to_stage} stage")


def stage_transition_task(from_stage: str, to_stage: str, now: datetime | None = None) -> dict[str, Any]:
    current = now or datetime.now(timezone.utc)
    return {
        "title": stage_transition_title(to_stage),
        "description": stage_transition_action(from_stage, to_stage),
        "priority": "high",
        "status": "pending",
        "due_date": current + timedelta(days=2),
    }


def follow_up_task(description: str | None, now: datetime | None = None) -> dict[str, Any]:
    current = now or datetime.now(timezone.utc)
    return {
        "title": "Follow up on deal",
        "description": description,
        "priority": "medium",
        "status": "pending",
        "due_date": current + timedelta(days=1),
    }


def validate_deal_fields(
    *,
    name: str | None,
    value: float | None,
    stage: str | None,
    expected_close_date: date | None,
    today: date | None = None,
) -> list[str]:
    errors: list[str] = []
    if not name or not name.strip():
        errors.append("Deal name is required")
    if value is not None and value < 0:
        errors.append("Deal value must be positive")
    if expected_close_date is not None and expected_close_date < (today or date.today()):
        errors.append("Expected close date cannot be in the past")
    if stage is not None and not is_known_stage(stage):
        errors.append("Invalid deal stage")
    return errors
