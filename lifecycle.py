"""Collection request lifecycle.

Regular and bulk requests share one state machine:

    pending  -> accepted   (any collector while unassigned; claims the request)
    pending  -> rejected   (assigned collector)
    pending  -> cancelled  (owner)
    accepted -> completed  (assigned collector, stamps completed_at)

rejected, completed and cancelled are terminal. Every status write is a
compare-and-set on the status read beforehand, so a transition repeated or
raced by two callers applies at most once.
"""
import logging
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database

import errors
import events
from analytics import status_counts
from auth import Identity
from database import as_utc, create_document, now, query_time, serialize, to_object_id
from schemas import (BulkRequest, BulkRequestCreate, RatingRequest, RequestCreate, WasteRequest,
                     day_start, validate_payload)

logger = logging.getLogger(__name__)

OWNER = "owner"
COLLECTOR = "collector"

TRANSITIONS = {
    ("pending", "accepted"): COLLECTOR,
    ("pending", "rejected"): COLLECTOR,
    ("pending", "cancelled"): OWNER,
    ("accepted", "completed"): COLLECTOR,
}

# kind -> (collection, owner roles, create body, stored document)
KINDS = {
    "regular": ("waste_request", ("resident", "business"), RequestCreate, WasteRequest),
    "bulk": ("bulk_request", ("business",), BulkRequestCreate, BulkRequest),
}

NOT_FOUND = "Request not found"


def present(doc: Dict[str, Any]) -> Dict[str, Any]:
    record = serialize(doc)
    if doc.get("date") is not None:
        record["date"] = as_utc(doc["date"]).date().isoformat()
    return record


class RequestLifecycle:
    def __init__(self, db: Database, kind: str, bus: events.EventBus):
        self.kind = kind
        self.collection_name, self.owner_roles, self.create_model, self.document_model = KINDS[kind]
        self.collection = db[self.collection_name]
        self.bus = bus
        self._db = db

    # ------------------ Owner operations ------------------

    def create(self, owner: Identity, payload: Any) -> Dict[str, Any]:
        if owner.role not in self.owner_roles:
            raise errors.Forbidden("Insufficient permissions")
        body = validate_payload(self.create_model, payload)
        fields = body.model_dump()
        fields["date"] = day_start(body.date)
        doc = self.document_model(owner_id=owner.id, owner_role=owner.role, **fields)
        rid = create_document(self._db, self.collection_name, doc)
        record = present(self.collection.find_one({"_id": to_object_id(rid)}))
        logger.info("Created %s request %s for %s", self.kind, rid, owner.id)
        self.bus.emit(events.REQUEST_CREATED, record, [f"user:{owner.id}"])
        return record

    def list_by_owner(self, owner: Identity) -> List[Dict[str, Any]]:
        cursor = self.collection.find({"owner_id": owner.id}).sort([("created_at", DESCENDING), ("_id", DESCENDING)])
        return [present(d) for d in cursor]

    def get_by_id(self, owner: Identity, request_id: str) -> Dict[str, Any]:
        return present(self._owned(owner, request_id))

    def cancel(self, owner: Identity, request_id: str) -> Dict[str, Any]:
        self._owned(owner, request_id)
        return self.transition(owner, request_id, "cancelled")

    def status_counts(self, owner: Identity) -> Dict[str, int]:
        return status_counts(self.collection, {"owner_id": owner.id})

    def rate(self, owner: Identity, request_id: str, payload: Any) -> Dict[str, Any]:
        body = validate_payload(RatingRequest, payload)
        doc = self._owned(owner, request_id)
        updated = self.collection.find_one_and_update(
            {"_id": doc["_id"], "owner_id": owner.id, "status": "completed",
             "collector_id": {"$ne": None}, "rating": None},
            {"$set": {"rating": body.rating, "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise errors.ValidationError("Only completed, unrated requests can be rated", fields=["rating"])
        record = present(updated)
        self.bus.emit(events.REQUEST_RATED, record, [])
        self.bus.emit(events.REQUEST_UPDATED, record, self._rooms(updated))
        return record

    # ------------------ Transitions ------------------

    def transition(self, actor: Identity, request_id: str, target: str,
                   earnings: Optional[float] = None) -> Dict[str, Any]:
        doc = self._visible(actor, request_id)
        current = doc["status"]
        allowed = TRANSITIONS.get((current, target))
        if allowed is None:
            raise errors.InvalidTransition(current, target)
        if allowed == OWNER and doc["owner_id"] != actor.id:
            raise errors.Forbidden("Only the owner can cancel a request")
        if allowed == COLLECTOR and actor.role != "collector":
            raise errors.Forbidden("Only a collector can set this status")
        if allowed == COLLECTOR and target != "accepted" and doc.get("collector_id") != actor.id:
            # only accepting may claim an unassigned request
            raise errors.NotFoundError(NOT_FOUND)

        stamp = now()
        match = {"_id": doc["_id"], "status": current}
        updates: Dict[str, Any] = {"status": target, "updated_at": stamp}
        if allowed == COLLECTOR:
            match["collector_id"] = doc.get("collector_id")
            updates["collector_id"] = actor.id
        if target == "completed":
            updates["completed_at"] = stamp
            if earnings is not None:
                updates["earnings"] = float(earnings)

        updated = self.collection.find_one_and_update(match, {"$set": updates}, return_document=ReturnDocument.AFTER)
        if updated is None:
            # lost a race; report the state that won
            fresh = self.collection.find_one({"_id": doc["_id"]}, {"status": 1})
            raise errors.InvalidTransition(fresh["status"] if fresh else current, target)

        record = present(updated)
        logger.info("%s request %s: %s -> %s by %s %s", self.kind, record["id"], current, target,
                    actor.role, actor.id)
        topic = events.REQUEST_CANCELLED if target == "cancelled" else events.REQUEST_UPDATED
        self.bus.emit(topic, record, self._rooms(updated))
        if target == "completed":
            self.bus.emit(events.REQUEST_COMPLETED, record, [])
        return record

    # ------------------ Collector views ------------------

    def contains(self, request_id: str) -> bool:
        oid = to_object_id(request_id)
        return oid is not None and self.collection.find_one({"_id": oid}, {"_id": 1}) is not None

    def list_assigned(self, collector_id: str) -> List[Dict[str, Any]]:
        cursor = self.collection.find(
            {"collector_id": collector_id, "status": {"$in": ["pending", "accepted"]}}
        ).sort([("date", ASCENDING), ("_id", ASCENDING)])
        return [present(d) for d in cursor]

    def list_available(self) -> List[Dict[str, Any]]:
        cursor = self.collection.find({"collector_id": None, "status": "pending"}).sort([("date", ASCENDING), ("_id", ASCENDING)])
        return [present(d) for d in cursor]

    def completed_by(self, collector_id: str, since=None, until=None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"collector_id": collector_id, "status": "completed"}
        if since is not None or until is not None:
            window = {}
            if since is not None:
                window["$gte"] = query_time(since)
            if until is not None:
                window["$lte"] = query_time(until)
            query["completed_at"] = window
        return list(self.collection.find(query).sort("completed_at", ASCENDING))

    def latest_completed(self, collector_id: str, limit: int) -> List[Dict[str, Any]]:
        """Newest completed pickups first, at most `limit` of them."""
        query = {"collector_id": collector_id, "status": "completed"}
        cursor = self.collection.find(query).sort([("completed_at", DESCENDING), ("_id", DESCENDING)])
        return list(cursor.limit(limit))

    def count_completed(self, collector_id: str) -> int:
        return self.collection.count_documents({"collector_id": collector_id, "status": "completed"})


    # ------------------ Helpers ------------------

    def _owned(self, owner: Identity, request_id: str) -> Dict[str, Any]:
        oid = to_object_id(request_id)
        doc = self.collection.find_one({"_id": oid, "owner_id": owner.id}) if oid else None
        if not doc:
            raise errors.NotFoundError(NOT_FOUND)
        return doc

    def _visible(self, actor: Identity, request_id: str) -> Dict[str, Any]:
        oid = to_object_id(request_id)
        doc = self.collection.find_one({"_id": oid}) if oid else None
        if not doc:
            raise errors.NotFoundError(NOT_FOUND)
        if doc["owner_id"] == actor.id:
            return doc
        if actor.role == "collector":
            assigned = doc.get("collector_id")
            if assigned == actor.id or (assigned is None and doc["status"] == "pending"):
                return doc
        raise errors.NotFoundError(NOT_FOUND)

    @staticmethod
    def _rooms(doc: Dict[str, Any]) -> List[Optional[str]]:
        rooms = [f"user:{doc['owner_id']}"]
        if doc.get("collector_id"):
            rooms.append(f"collector:{doc['collector_id']}")
        return rooms
