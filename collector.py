"""Collector-facing flows: profile, location, work views and status updates
across both request kinds, plus the cumulative performance counters."""
import logging
from typing import Any, Callable, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import analytics
import errors
import events
from auth import CollectorIdentity
from database import as_utc, create_document, now, serialize
from lifecycle import RequestLifecycle, present
from schemas import (CollectorProfile, CollectorProfileCreate, CollectorProfileUpdate, LocationUpdate,
                     validate_payload)

logger = logging.getLogger(__name__)


class CollectorService:
    def __init__(self, db: Database, lifecycles: List[RequestLifecycle], bus: events.EventBus):
        self.profiles = db["collector_profile"]
        self.lifecycles = lifecycles
        self.bus = bus
        self._db = db
        self._unsubscribers: List[Callable[[], None]] = []

    # ------------------ Bus wiring ------------------

    def subscribe(self) -> None:
        self._unsubscribers = [
            self.bus.subscribe(events.REQUEST_COMPLETED, self.record_completion),
            self.bus.subscribe(events.REQUEST_RATED, self.record_rating),
        ]

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    # ------------------ Profile ------------------

    def create_profile(self, account_id: str, payload: Any) -> Dict[str, Any]:
        body = validate_payload(CollectorProfileCreate, payload)
        profile = CollectorProfile(account_id=account_id, **body.model_dump())
        try:
            create_document(self._db, "collector_profile", profile)
        except DuplicateKeyError:
            raise errors.ValidationError("Collector profile already exists", fields=["account_id"])
        logger.info("Created collector profile for %s", account_id)
        return self.get_profile(account_id)

    def get_profile(self, account_id: str) -> Dict[str, Any]:
        doc = self.profiles.find_one({"account_id": account_id})
        if not doc:
            raise errors.ProfileNotFound()
        return serialize(doc)

    def update_profile(self, collector: CollectorIdentity, payload: Any) -> Dict[str, Any]:
        body = validate_payload(CollectorProfileUpdate, payload)
        # nested sections are replaced whole, with their defaults filled in
        dumped = body.model_dump()
        updates = {k: dumped[k] for k in body.model_fields_set if dumped[k] is not None}
        updates["updated_at"] = now()
        doc = self.profiles.find_one_and_update({"account_id": collector.id}, {"$set": updates},
                                                return_document=ReturnDocument.AFTER)
        if not doc:
            raise errors.ProfileNotFound()
        return serialize(doc)

    def update_location(self, collector: CollectorIdentity, payload: Any) -> Dict[str, Any]:
        body = validate_payload(LocationUpdate, payload)
        stamp = now()
        location = {"type": "Point", "coordinates": [body.longitude, body.latitude], "updated_at": stamp}
        doc = self.profiles.find_one_and_update(
            {"account_id": collector.id},
            {"$set": {"current_location": location, "updated_at": stamp}},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise errors.ProfileNotFound()
        self.bus.emit(events.COLLECTOR_LOCATION,
                      {"collector_id": collector.id, "location": {"latitude": body.latitude, "longitude": body.longitude}},
                      [f"collector:{collector.id}"])
        return serialize(doc)["current_location"]

    # ------------------ Work views ------------------

    def assigned_requests(self, collector: CollectorIdentity) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        for lifecycle in self.lifecycles:
            items.extend(lifecycle.list_assigned(collector.id))
        return sorted(items, key=lambda r: (r["date"], r["id"]))

    def available_requests(self) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        for lifecycle in self.lifecycles:
            items.extend(lifecycle.list_available())
        return sorted(items, key=lambda r: (r["date"], r["id"]))

    def routes(self, collector: CollectorIdentity) -> List[Dict[str, Any]]:
        """Accepted pickups grouped per day, each day ordered by slot start."""
        days: Dict[str, List[Dict[str, Any]]] = {}
        for item in self.assigned_requests(collector):
            if item["status"] == "accepted":
                days.setdefault(item["date"], []).append(item)
        routes = []
        for day in sorted(days):
            routes.append({"date": day, "stops": sorted(days[day], key=_slot_order)})
        return routes

    def history(self, collector: CollectorIdentity, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        page = max(page, 1)
        limit = max(limit, 1)
        total = sum(source.count_completed(collector.id) for source in self.lifecycles)
        start = (page - 1) * limit
        docs: List[Dict[str, Any]] = []
        if start < total:
            # each kind holds at most start + limit candidates for this page
            for source in self.lifecycles:
                docs.extend(source.latest_completed(collector.id, start + limit))
            docs.sort(key=lambda d: (as_utc(d["completed_at"]), d["_id"]), reverse=True)
        return {
            "requests": [present(d) for d in docs[start:start + limit]],
            "total": total,
            "pages": -(-total // limit),
            "current_page": page,
        }

    def transition(self, collector: CollectorIdentity, request_id: str, status: str,
                   earnings: Optional[float] = None) -> Dict[str, Any]:
        for lifecycle in self.lifecycles:
            if lifecycle.contains(request_id):
                return lifecycle.transition(collector, request_id, status, earnings=earnings)
        raise errors.NotFoundError("Request not found")

    # ------------------ Analytics ------------------

    def performance(self, collector: CollectorIdentity, timeframe: str = "month") -> Dict[str, Any]:
        return analytics.collector_performance(self.lifecycles, collector.id, timeframe)

    def export(self, collector: CollectorIdentity, timeframe: str = "month") -> str:
        return analytics.export_csv(self.lifecycles, collector.id, timeframe)

    # ------------------ Counters ------------------

    def record_completion(self, event: events.Event) -> None:
        record = event.data
        collector_id = record.get("collector_id")
        if not collector_id:
            return
        late = analytics.minutes_late(record.get("date"), record.get("time"), record.get("completed_at"))
        self.profiles.update_one({"account_id": collector_id}, {"$inc": {
            "performance.total_collections": 1,
            "performance.total_earnings": float(record.get("earnings") or 0),
            "performance.on_time_collections": 1 if analytics.is_on_time(late) else 0,
        }})
        self._refresh_scores(collector_id)

    def record_rating(self, event: events.Event) -> None:
        record = event.data
        collector_id = record.get("collector_id")
        if not collector_id or record.get("rating") is None:
            return
        self.profiles.update_one({"account_id": collector_id}, {"$inc": {
            "performance.rating_total": record["rating"],
            "performance.rating_count": 1,
        }})
        self._refresh_scores(collector_id)

    def _refresh_scores(self, collector_id: str) -> None:
        doc = self.profiles.find_one({"account_id": collector_id}, {"performance": 1})
        if not doc:
            return
        perf = doc.get("performance") or {}
        count = perf.get("rating_count") or 0
        satisfaction = round(perf.get("rating_total", 0) / count, 2) if count else 0.0
        score = analytics.efficiency_score(perf.get("on_time_collections", 0), perf.get("total_collections", 0),
                                           satisfaction)
        self.profiles.update_one({"account_id": collector_id}, {"$set": {
            "performance.customer_satisfaction": satisfaction,
            "performance.efficiency_score": score,
        }})


def _slot_order(record: Dict[str, Any]):
    # unreadable slots go last
    start = analytics.scheduled_at(record["date"], record["time"])
    return (start is None, start.timestamp() if start else 0, record["id"])
