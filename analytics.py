"""Aggregates recomputed from stored records on every call."""
import csv
import io
import re
from datetime import date as date_cls, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
from pymongo.collection import Collection

from database import as_utc, now, query_time
from schemas import REQUEST_STATUSES, day_start

ON_TIME_MINUTES = 15
TIMEFRAME_DAYS = {"week": 7, "month": 30}

# Named slots offered by the request form, in UTC
SLOT_TIMES = {"morning": (9, 0), "afternoon": (14, 0), "evening": (18, 0)}
_CLOCK = re.compile(r"^(\d{1,2}):(\d{2})")


def status_counts(collection: Collection, match: Dict[str, Any]) -> Dict[str, int]:
    counts = {status: 0 for status in REQUEST_STATUSES}
    for row in collection.aggregate([
        {"$match": match},
        {"$group": {"_id": "$status", "count": {"$sum": 1}}},
    ]):
        if row["_id"] in counts:
            counts[row["_id"]] = row["count"]
    return counts


def expense_analytics(collection: Collection, owner_id: str,
                      start_date: Optional[date_cls] = None, end_date: Optional[date_cls] = None) -> Dict[str, Any]:
    match: Dict[str, Any] = {"owner_id": owner_id}
    if start_date and end_date:
        match["date"] = {
            "$gte": query_time(day_start(start_date)),
            "$lt": query_time(day_start(end_date) + timedelta(days=1)),
        }
    monthly = collection.aggregate([
        {"$match": match},
        {"$group": {
            "_id": {"year": {"$year": "$date"}, "month": {"$month": "$date"}},
            "total_amount": {"$sum": "$amount"},
        }},
    ])
    monthly_totals = sorted(
        ({"month": f"{row['_id']['year']}-{row['_id']['month']}",
          "year": row["_id"]["year"], "month_number": row["_id"]["month"],
          "total_amount": row["total_amount"]} for row in monthly),
        key=lambda r: (r["year"], r["month_number"]),
    )
    categories = collection.aggregate([
        {"$match": match},
        {"$group": {"_id": "$category", "total_amount": {"$sum": "$amount"}}},
    ])
    category_totals = sorted(
        ({"category": row["_id"], "total_amount": row["total_amount"]} for row in categories),
        key=lambda r: r["category"],
    )
    return {"monthly_totals": monthly_totals, "category_totals": category_totals}


# ------------------ Collector performance ------------------

def scheduled_at(day: Any, slot: Optional[str]) -> Optional[datetime]:
    """Start of the requested slot, or None when the slot can't be read."""
    if isinstance(day, str):
        try:
            day = date_cls.fromisoformat(day[:10])
        except ValueError:
            return None
    if isinstance(day, datetime):
        day = as_utc(day).date()
    if not isinstance(day, date_cls) or not slot:
        return None
    slot = slot.strip().lower()
    if slot in SLOT_TIMES:
        hour, minute = SLOT_TIMES[slot]
    else:
        m = _CLOCK.match(slot)
        if not m:
            return None
        hour, minute = int(m.group(1)), int(m.group(2))
        if hour > 23 or minute > 59:
            return None
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


def minutes_late(day: Any, slot: Optional[str], completed_at: Any) -> Optional[float]:
    if isinstance(completed_at, str):
        completed_at = datetime.fromisoformat(completed_at)
    if not isinstance(completed_at, datetime):
        return None
    scheduled = scheduled_at(day, slot)
    if scheduled is None:
        return None
    return (as_utc(completed_at) - scheduled).total_seconds() / 60


def is_on_time(lateness: Optional[float]) -> bool:
    return lateness is not None and abs(lateness) <= ON_TIME_MINUTES


def efficiency_score(on_time: int, collections: int, satisfaction: float) -> float:
    if collections <= 0:
        return 0.0
    on_time_rate = on_time / collections
    return round(100 * (0.6 * on_time_rate + 0.4 * satisfaction / 5), 2)


def timeframe_window(timeframe: str, until: Optional[datetime] = None):
    days = TIMEFRAME_DAYS.get(timeframe, TIMEFRAME_DAYS["month"])
    end = until or now()
    return end - timedelta(days=days), end, days


def completed_pickups(sources: Iterable, collector_id: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
    docs: List[Dict[str, Any]] = []
    for source in sources:
        docs.extend(source.completed_by(collector_id, start, end))
    docs.sort(key=lambda d: as_utc(d["completed_at"]))
    return docs


def collector_performance(sources: Iterable, collector_id: str, timeframe: str = "month",
                          until: Optional[datetime] = None) -> Dict[str, Any]:
    """Pickup, earnings and punctuality figures over the last week or month.

    `sources` are the request lifecycles to read completed pickups from.
    """
    start, end, days = timeframe_window(timeframe, until)
    docs = completed_pickups(sources, collector_id, start, end)

    earnings = np.array([float(d.get("earnings") or 0) for d in docs], dtype=float)
    kinds = np.array([d.get("kind", "regular") for d in docs])
    lateness = np.array(
        [x for x in (minutes_late(d.get("date"), d.get("time"), d.get("completed_at")) for d in docs) if x is not None],
        dtype=float,
    )

    per_day: Dict[str, int] = {}
    if docs:
        labels, counts = np.unique([as_utc(d["completed_at"]).date().isoformat() for d in docs], return_counts=True)
        per_day = dict(zip(labels.tolist(), counts.tolist()))
    pickups_over_time = []
    day = as_utc(start).date()
    while day <= as_utc(end).date():
        label = day.isoformat()
        pickups_over_time.append({"date": label, "pickups": per_day.get(label, 0)})
        day += timedelta(days=1)

    return {
        "timeframe": timeframe if timeframe in TIMEFRAME_DAYS else "month",
        "total_pickups": len(docs),
        "total_earnings": float(earnings.sum()) if earnings.size else 0.0,
        "average_daily_pickups": len(docs) / days,
        "average_lateness_minutes": round(float(lateness.mean()), 2) if lateness.size else 0.0,
        "on_time_pickups": int(np.count_nonzero(np.abs(lateness) <= ON_TIME_MINUTES)) if lateness.size else 0,
        "pickups_over_time": pickups_over_time,
        "earnings_breakdown": [
            {"category": kind, "amount": float(earnings[kinds == kind].sum()) if earnings.size else 0.0}
            for kind in ("regular", "bulk")
        ],
    }


EXPORT_HEADER = ["Date", "Pickup Type", "Waste Type", "Address", "Earnings", "Minutes Late"]


def export_csv(sources: Iterable, collector_id: str, timeframe: str = "month",
               until: Optional[datetime] = None) -> str:
    start, end, _ = timeframe_window(timeframe, until)
    out = io.StringIO()
    writer = csv.writer(out)
    writer.writerow(EXPORT_HEADER)
    for d in completed_pickups(sources, collector_id, start, end):
        late = minutes_late(d.get("date"), d.get("time"), d.get("completed_at"))
        writer.writerow([
            as_utc(d["completed_at"]).date().isoformat(),
            d.get("kind", "regular"),
            d.get("waste_type", ""),
            d.get("address", ""),
            float(d.get("earnings") or 0),
            "" if late is None else round(late, 1),
        ])
    return out.getvalue()
