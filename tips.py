"""Waste tips grouped by category; collectors add them, anyone may read them."""
from typing import Any, Dict, List

from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

import config
import errors
from auth import Identity
from database import create_document, get_documents, serialize, to_object_id
from schemas import WASTE_TYPES, WasteTip, WasteTipCreate, validate_payload


class TipService:
    def __init__(self, db: Database):
        self.tips = db["waste_tip"]
        self._db = db

    def grouped(self) -> Dict[str, List[Dict[str, Any]]]:
        groups: Dict[str, List[Dict[str, Any]]] = {category: [] for category in WASTE_TYPES}
        for doc in get_documents(self._db, "waste_tip", sort=[("category", ASCENDING), ("created_at", DESCENDING)]):
            groups.setdefault(doc["category"], []).append(serialize(doc))
        return groups

    def create(self, author: Identity, payload: Any) -> Dict[str, Any]:
        if author.role not in config.PRIVILEGED_ROLES:
            raise errors.Forbidden("Insufficient permissions")
        body = validate_payload(WasteTipCreate, payload)
        tid = create_document(self._db, "waste_tip", WasteTip(**body.model_dump()))
        return serialize(self.tips.find_one({"_id": to_object_id(tid)}))
