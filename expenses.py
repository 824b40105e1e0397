"""Business expense records tied to bulk requests."""
import logging
from datetime import date as date_cls, timedelta
from typing import Any, Dict, List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

import errors
import events
from analytics import expense_analytics
from auth import Identity
from database import create_document, now, query_time, serialize, to_object_id
from schemas import Expense, ExpenseCreate, ExpenseUpdate, day_start, validate_payload

logger = logging.getLogger(__name__)

NOT_FOUND = "Expense not found"


class ExpenseService:
    def __init__(self, db: Database, bus: events.EventBus):
        self.expenses = db["expense"]
        self.bulk_requests = db["bulk_request"]
        self.bus = bus
        self._db = db

    def _present(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        record = serialize(doc)
        request = self.bulk_requests.find_one({"_id": to_object_id(doc["request_id"])},
                                              {"waste_type": 1, "quantity": 1})
        record["request"] = serialize(request) if request else None
        return record

    def list(self, owner: Identity, start_date: Optional[date_cls] = None,
             end_date: Optional[date_cls] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"owner_id": owner.id}
        if start_date and end_date:
            query["date"] = {
                "$gte": query_time(day_start(start_date)),
                "$lt": query_time(day_start(end_date) + timedelta(days=1)),
            }
        cursor = self.expenses.find(query).sort([("date", DESCENDING), ("_id", DESCENDING)])
        return [self._present(d) for d in cursor]

    def create(self, owner: Identity, payload: Any) -> Dict[str, Any]:
        body = validate_payload(ExpenseCreate, payload)
        request_oid = to_object_id(body.request_id)
        if request_oid is None or not self.bulk_requests.find_one({"_id": request_oid, "owner_id": owner.id}, {"_id": 1}):
            raise errors.NotFoundError("Waste request not found")
        expense = Expense(
            owner_id=owner.id,
            request_id=body.request_id,
            amount=body.amount,
            category=body.category,
            date=day_start(body.date) if body.date else now(),
            description=body.description,
        )
        eid = create_document(self._db, "expense", expense)
        record = self._present(self.expenses.find_one({"_id": to_object_id(eid)}))
        logger.info("Created expense %s for %s", eid, owner.id)
        self.bus.emit(events.EXPENSE_CREATED, record, [f"business:{owner.id}"])
        return record

    def get(self, owner: Identity, expense_id: str) -> Dict[str, Any]:
        return self._present(self._owned(owner, expense_id))

    def update(self, owner: Identity, expense_id: str, payload: Any) -> Dict[str, Any]:
        body = validate_payload(ExpenseUpdate, payload)
        updates = {k: v for k, v in body.model_dump(exclude_unset=True).items() if v is not None}
        if "date" in updates:
            updates["date"] = day_start(updates["date"])
        updates["updated_at"] = now()
        doc = self.expenses.find_one_and_update(
            {"_id": self._owned(owner, expense_id)["_id"], "owner_id": owner.id},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise errors.NotFoundError(NOT_FOUND)
        return self._present(doc)

    def delete(self, owner: Identity, expense_id: str) -> None:
        oid = to_object_id(expense_id)
        result = self.expenses.delete_one({"_id": oid, "owner_id": owner.id}) if oid else None
        if not result or result.deleted_count == 0:
            raise errors.NotFoundError(NOT_FOUND)
        logger.info("Deleted expense %s for %s", expense_id, owner.id)

    def analytics(self, owner: Identity, start_date: Optional[date_cls] = None,
                  end_date: Optional[date_cls] = None) -> Dict[str, Any]:
        return expense_analytics(self.expenses, owner.id, start_date, end_date)

    def _owned(self, owner: Identity, expense_id: str) -> Dict[str, Any]:
        oid = to_object_id(expense_id)
        doc = self.expenses.find_one({"_id": oid, "owner_id": owner.id}) if oid else None
        if not doc:
            raise errors.NotFoundError(NOT_FOUND)
        return doc
