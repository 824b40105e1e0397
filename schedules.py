"""Recurring pickups for businesses. No status machine, only an active flag."""
import logging
from typing import Any, Dict, List

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

import errors
from auth import Identity
from database import as_utc, create_document, now, serialize, to_object_id
from schemas import ActiveToggle, ScheduledPickup, ScheduledPickupCreate, day_start, validate_payload

logger = logging.getLogger(__name__)


def present(doc: Dict[str, Any]) -> Dict[str, Any]:
    record = serialize(doc)
    record["start_date"] = as_utc(doc["start_date"]).date().isoformat()
    return record


class ScheduleService:
    def __init__(self, db: Database):
        self.schedules = db["scheduled_pickup"]
        self._db = db

    def create(self, owner: Identity, payload: Any) -> Dict[str, Any]:
        body = validate_payload(ScheduledPickupCreate, payload)
        fields = body.model_dump()
        fields["start_date"] = day_start(body.start_date)
        sid = create_document(self._db, "scheduled_pickup", ScheduledPickup(owner_id=owner.id, **fields))
        logger.info("Created %s scheduled pickup %s for %s", body.frequency, sid, owner.id)
        return present(self.schedules.find_one({"_id": to_object_id(sid)}))

    def list(self, owner: Identity) -> List[Dict[str, Any]]:
        cursor = self.schedules.find({"owner_id": owner.id}).sort([("created_at", DESCENDING), ("_id", DESCENDING)])
        return [present(d) for d in cursor]

    def set_active(self, owner: Identity, schedule_id: str, payload: Any) -> Dict[str, Any]:
        body = validate_payload(ActiveToggle, payload)
        oid = to_object_id(schedule_id)
        doc = self.schedules.find_one_and_update(
            {"_id": oid, "owner_id": owner.id},
            {"$set": {"is_active": body.is_active, "updated_at": now()}},
            return_document=ReturnDocument.AFTER,
        ) if oid else None
        if not doc:
            raise errors.NotFoundError("Scheduled pickup not found")
        return present(doc)
