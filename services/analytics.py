"""Read-only analytics snapshot for the admin dashboard."""

from __future__ import annotations

import re
from collections import Counter, defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.comment import Comment
from models.document_request import DocumentRequest
from models.points_ledger import PointsLedger
from models.response import Response
from models.user import User
from services.lifecycle import STATUS_COMPLETED
from services.points import LEVEL_NAMES, level_for_points
from services.timestamps import as_utc, utcnow

# Monday first, matching datetime.weekday().
WEEKDAY_NAMES = ("Lunes", "Martes", "Miércoles", "Jueves", "Viernes", "Sábado", "Domingo")
WEEKDAY_SHORT = ("Lun", "Mar", "Mié", "Jue", "Vie", "Sáb", "Dom")
UNSPECIFIED_COUNTRY = "Sin especificar"
TREND_MONTHS = 6

DOI_PREFIX_PUBLISHERS = {
    "1016": "Elsevier",
    "1038": "Nature",
    "1126": "Science/AAAS",
    "1002": "Wiley",
    "1080": "Taylor & Francis",
    "1007": "Springer",
    "1093": "Oxford University Press",
    "1177": "SAGE",
    "1371": "PLOS",
    "3389": "Frontiers",
    "1136": "BMJ",
    "1056": "NEJM",
    "1001": "ACS Publications",
    "1021": "ACS Publications",
    "1039": "Royal Society of Chemistry",
    "1186": "BioMed Central",
    "1155": "Hindawi",
    "3390": "MDPI",
    "1515": "De Gruyter",
    "1097": "Lippincott Williams & Wilkins",
}

TITLE_JOURNAL_KEYWORDS = (
    (("nature",), "Nature"),
    (("science", "scientific"), "Science"),
    (("lancet",), "The Lancet"),
    (("nejm", "new england"), "NEJM"),
    (("jama",), "JAMA"),
    (("bmj", "british medical"), "BMJ"),
    (("plos",), "PLOS"),
    (("cell",), "Cell"),
    (("ieee",), "IEEE"),
    (("acm",), "ACM"),
)

_DOI_PREFIX_RE = re.compile(r"10\.(\d+)")


def publisher_for_doi(doi: str) -> Optional[str]:
    match = _DOI_PREFIX_RE.search(doi or "")
    if not match:
        return None
    prefix = match.group(1)
    return DOI_PREFIX_PUBLISHERS.get(prefix, f"Editorial ({prefix})")


def journal_hint_from_title(title: str) -> Optional[str]:
    lowered = (title or "").lower()
    for keywords, name in TITLE_JOURNAL_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return name
    return None


def _month_keys(now: datetime, months: int = TREND_MONTHS) -> List[str]:
    keys = []
    year, month = now.year, now.month
    for _ in range(months):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(keys))


def _month_key(value: Optional[datetime]) -> Optional[str]:
    moment = as_utc(value)
    return f"{moment.year:04d}-{moment.month:02d}" if moment else None


def _top(counter: Counter, limit: int) -> List[Dict[str, Any]]:
    ordered = sorted(counter.items(), key=lambda item: (-item[1], item[0]))
    return [{"name": name, "value": value} for name, value in ordered[:limit]]


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def _ratio(part: float, whole: int) -> float:
    return round(part / whole, 2) if whole else 0.0


def _is_resolved(request: DocumentRequest) -> bool:
    return request.status == STATUS_COMPLETED


async def _load_rows(db: AsyncSession) -> Tuple[list, list, list, list, list]:
    requests = (await db.execute(select(DocumentRequest))).scalars().all()
    users = (await db.execute(select(User))).scalars().all()
    responses = (await db.execute(select(Response))).scalars().all()
    comment_request_ids = (await db.execute(select(Comment.request_id))).scalars().all()
    ledger = (
        await db.execute(select(PointsLedger.entry_type, PointsLedger.delta_points, PointsLedger.created_at))
    ).all()
    return requests, users, responses, comment_request_ids, ledger


async def build_analytics_snapshot(db: AsyncSession, now: Optional[datetime] = None) -> Dict[str, Any]:
    current = now or utcnow()
    requests, users, responses, comment_request_ids, ledger = await _load_rows(db)
    users_by_id = {user.id: user for user in users}
    total_requests = len(requests)

    category_counts: Counter = Counter()
    country_counts: Counter = Counter()
    hour_counts: Counter = Counter()
    weekday_counts: Counter = Counter()
    heatmap: Counter = Counter()
    journal_counts: Counter = Counter()
    month_keys = _month_keys(current)
    monthly_trend = {key: 0 for key in month_keys}

    for request in requests:
        created = as_utc(request.created_at)
        category_counts[request.category or "Otro"] += 1
        owner = users_by_id.get(request.owner_id)
        country_counts[(owner.country if owner else None) or UNSPECIFIED_COUNTRY] += 1
        if created:
            hour_counts[created.hour] += 1
            weekday_counts[created.weekday()] += 1
            heatmap[(created.weekday(), created.hour)] += 1
        if request.doi:
            publisher = publisher_for_doi(request.doi)
            if publisher:
                journal_counts[publisher] += 1
        else:
            hint = journal_hint_from_title(request.title)
            if hint:
                journal_counts[hint] += 1
        key = _month_key(request.created_at)
        if key in monthly_trend:
            monthly_trend[key] += 1

    total_resolved = sum(1 for request in requests if _is_resolved(request))

    first_response_at: Dict[str, datetime] = {}
    for response in responses:
        created = as_utc(response.created_at)
        existing = first_response_at.get(response.request_id)
        if created and (existing is None or created < existing):
            first_response_at[response.request_id] = created
    wait_hours = [
        (first_response_at[request.id] - as_utc(request.created_at)).total_seconds() / 3600
        for request in requests
        if request.id in first_response_at and request.created_at
    ]
    best_answers = sum(1 for response in responses if response.rating == "best_answer")

    level_counts: Counter = Counter(level_for_points(user.points) for user in users)
    user_growth = {key: 0 for key in month_keys}
    institution_counts: Counter = Counter()
    for user in users:
        key = _month_key(user.created_at)
        if key in user_growth:
            user_growth[key] += 1
        if user.institution:
            institution_counts[user.institution] += 1

    activity: Dict[str, Dict[str, int]] = defaultdict(lambda: {"requests": 0, "responses": 0})
    for request in requests:
        activity[request.owner_id]["requests"] += 1
    for response in responses:
        activity[response.contributor_id]["responses"] += 1
    top_active = []
    for user_id, counts in activity.items():
        user = users_by_id.get(user_id)
        top_active.append(
            {
                "name": (user.full_name or user.email) if user else "Usuario",
                "requests": counts["requests"],
                "responses": counts["responses"],
                "total": counts["requests"] + counts["responses"],
            }
        )
    top_active.sort(key=lambda item: (-item["total"], item["name"]))

    points_flow = {key: {"earned": 0, "spent": 0} for key in month_keys}
    for _entry_type, delta, created_at in ledger:
        key = _month_key(created_at)
        if key not in points_flow:
            continue
        if delta >= 0:
            points_flow[key]["earned"] += int(delta)
        else:
            points_flow[key]["spent"] += -int(delta)

    urgent = [request for request in requests if request.is_urgent]
    normal = [request for request in requests if not request.is_urgent]
    with_doi = sum(1 for request in requests if (request.doi or "").strip())
    total_points = sum(int(user.points or 0) for user in users)

    return {
        "generated_at": current.isoformat(),
        "category_counts": _top(category_counts, 8),
        "country_counts": _top(country_counts, 8),
        "hourly_distribution": [{"hour": f"{hour:02d}:00", "count": hour_counts.get(hour, 0)} for hour in range(24)],
        "daily_distribution": [
            {"day": name, "count": weekday_counts.get(index, 0)} for index, name in enumerate(WEEKDAY_NAMES)
        ],
        "journal_counts": _top(journal_counts, 8),
        "monthly_trend": [{"month": key, "count": monthly_trend[key]} for key in month_keys],
        "resolution_rate": _rate(total_resolved, total_requests),
        "avg_response_time_hours": round(sum(wait_hours) / len(wait_hours), 2) if wait_hours else 0.0,
        "avg_responses_per_request": _ratio(len(responses), total_requests),
        "best_answer_rate": _rate(best_answers, len(responses)),
        "total_resolved": total_resolved,
        "total_pending": total_requests - total_resolved,
        "level_distribution": [{"name": name, "value": level_counts.get(name, 0)} for name in LEVEL_NAMES],
        "user_growth": [{"month": key, "count": user_growth[key]} for key in month_keys],
        "top_active_users": top_active[:10],
        "institution_distribution": _top(institution_counts, 10),
        "total_points": total_points,
        "avg_points_per_user": round(total_points / len(users), 1) if users else 0.0,
        "points_flow": [{"month": key, **points_flow[key]} for key in month_keys],
        "heatmap": [
            {"day": WEEKDAY_SHORT[day], "hour": hour, "count": heatmap.get((day, hour), 0)}
            for day in range(7)
            for hour in range(24)
        ],
        "urgent_analysis": {
            "urgent_count": len(urgent),
            "normal_count": len(normal),
            "urgent_resolution_rate": _rate(sum(1 for r in urgent if _is_resolved(r)), len(urgent)),
            "normal_resolution_rate": _rate(sum(1 for r in normal if _is_resolved(r)), len(normal)),
        },
        "doi_analysis": {"with_doi": with_doi, "without_doi": total_requests - with_doi},
        "avg_comments_per_request": _ratio(len(comment_request_ids), total_requests),
    }
