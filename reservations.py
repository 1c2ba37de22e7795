"""
Reservation workflow: the booking cap and ownership rules on top of the ledger.

Every operation takes the caller resolved by the auth dependency and derives
its rights from that identity alone; ``user`` and ``restaurant`` fields in a
request body are never trusted.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument

from database import RESERVATIONS, RESTAURANTS, Database, now, serialize, to_obj_id
from errors import AdmissionDenied, Forbidden, NotFound, ValidationError, field_errors
from restaurants import RestaurantService
from schemas import Reservation as ReservationSchema, ReservationCreate, ReservationUpdate

logger = logging.getLogger(__name__)

# restaurant fields copied onto each reservation when it is read back
POPULATE_FIELDS = {"name": 1, "address": 1, "tel": 1}


def is_admin(caller: Dict) -> bool:
    return caller.get("role") == "admin"


def validate_reservation(doc: Dict[str, Any]) -> Dict[str, Any]:
    try:
        data = ReservationSchema(**doc).model_dump()
    except PydanticValidationError as exc:
        raise ValidationError(errors=field_errors(exc.errors()))
    appt: datetime = data["apptDate"]
    if appt.tzinfo is not None:
        data["apptDate"] = appt.astimezone(timezone.utc).replace(tzinfo=None)
    return data


class ReservationService:
    def __init__(self, db: Database, max_active: int = 3):
        self.db = db
        self.max_active = max_active
        self.restaurants = RestaurantService(db)

    # Ledger access

    def _find(self, reservation_id: str) -> Dict:
        oid = to_obj_id(reservation_id, "reservation")
        doc = self.db[RESERVATIONS].find_one({"_id": oid})
        if not doc:
            raise NotFound(f"No reservation with the id of {reservation_id}")
        return doc

    def _populate(self, docs: List[Dict]) -> List[Dict]:
        ids = list({d["restaurant"] for d in docs})
        found = {}
        if ids:
            found = {r["_id"]: serialize(r) for r in self.db[RESTAURANTS].find({"_id": {"$in": ids}}, POPULATE_FIELDS)}
        out = []
        for d in docs:
            item = serialize(d)
            item["restaurant"] = found.get(d["restaurant"])
            out.append(item)
        return out

    def count_for(self, user_id: ObjectId) -> int:
        return self.db[RESERVATIONS].count_documents({"user": user_id})

    def _check_owner(self, caller: Dict, doc: Dict, action: str) -> None:
        if str(doc["user"]) != caller["id"] and not is_admin(caller):
            raise Forbidden(f"User {caller['id']} is not authorized to {action} this reservation")

    # Operations

    def list(self, caller: Dict, restaurant_id: Optional[str] = None) -> List[Dict]:
        if not is_admin(caller):
            query: Dict[str, Any] = {"user": ObjectId(caller["id"])}
        elif restaurant_id:
            query = {"restaurant": to_obj_id(restaurant_id, "restaurant")}
        else:
            query = {}
        docs = list(self.db[RESERVATIONS].find(query).sort("apptDate", 1))
        return self._populate(docs)

    def get(self, caller: Dict, reservation_id: str) -> Dict:
        doc = self._find(reservation_id)
        self._check_owner(caller, doc, "view")
        return self._populate([doc])[0]

    def create(self, caller: Dict, restaurant_id: str, payload: ReservationCreate) -> Dict:
        rid = to_obj_id(restaurant_id, "restaurant")
        if not self.restaurants.exists(rid):
            raise NotFound(f"No restaurant with the id of {restaurant_id}")

        user_id = ObjectId(caller["id"])
        capped = not is_admin(caller)
        denied = f"The user with ID {caller['id']} has already made {self.max_active} reservations"
        if capped and self.count_for(user_id) >= self.max_active:
            logger.info("Reservation refused for user %s: cap of %d reached", caller["id"], self.max_active)
            raise AdmissionDenied(denied)

        doc = validate_reservation({
            "apptDate": payload.apptDate,
            "user": user_id,
            "restaurant": rid,
            "createdAt": now(),
        })
        res = self.db[RESERVATIONS].insert_one(doc)
        doc["_id"] = res.inserted_id

        # A concurrent request may have inserted between the count and the insert.
        if capped and self.count_for(user_id) > self.max_active:
            self.db[RESERVATIONS].delete_one({"_id": res.inserted_id})
            logger.warning("Reservation %s rolled back for user %s: concurrent cap overrun", res.inserted_id, caller["id"])
            raise AdmissionDenied(denied)

        logger.info("Reservation %s created for user %s at restaurant %s", res.inserted_id, caller["id"], rid)
        return serialize(doc)

    def update(self, caller: Dict, reservation_id: str, payload: ReservationUpdate) -> Dict:
        doc = self._find(reservation_id)
        self._check_owner(caller, doc, "update")
        patch = payload.model_dump(exclude_unset=True)
        if "apptDate" not in patch:
            return serialize(doc)
        merged = {k: v for k, v in doc.items() if k != "_id"}
        merged["apptDate"] = patch["apptDate"]
        validated = validate_reservation(merged)
        updated = self.db[RESERVATIONS].find_one_and_update(
            {"_id": doc["_id"]},
            {"$set": {"apptDate": validated["apptDate"]}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise NotFound(f"No reservation with the id of {reservation_id}")
        return serialize(updated)

    def delete(self, caller: Dict, reservation_id: str) -> None:
        doc = self._find(reservation_id)
        self._check_owner(caller, doc, "delete")
        self.db[RESERVATIONS].delete_one({"_id": doc["_id"]})
        logger.info("Reservation %s deleted by user %s", doc["_id"], caller["id"])
