"""Restaurant catalog: listing, CRUD and the cascade onto the reservation ledger."""

import logging
from typing import Any, Dict, List, Mapping, Tuple

from bson import ObjectId
from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import RESERVATIONS, RESTAURANTS, Database, now, serialize, to_obj_id
from errors import NotFound, ValidationError, field_errors
from query import pagination, parse_list_query
from schemas import Restaurant as RestaurantSchema, RestaurantCreate, RestaurantUpdate

logger = logging.getLogger(__name__)

VIRTUAL_FIELDS = ("reservations",)


def validate_restaurant(doc: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return RestaurantSchema(**doc).model_dump()
    except PydanticValidationError as exc:
        raise ValidationError(errors=field_errors(exc.errors()))


class RestaurantService:
    def __init__(self, db: Database):
        self.db = db

    def _find(self, restaurant_id: str) -> Dict:
        oid = to_obj_id(restaurant_id, "restaurant")
        doc = self.db[RESTAURANTS].find_one({"_id": oid})
        if not doc:
            raise NotFound(f"No restaurant with the id of {restaurant_id}")
        return doc

    def exists(self, restaurant_id: ObjectId) -> bool:
        return self.db[RESTAURANTS].find_one({"_id": restaurant_id}, {"_id": 1}) is not None

    def reservations_for(self, restaurant_ids: List[ObjectId]) -> Dict[ObjectId, List[Dict]]:
        """Query-time join of the ledger onto a page of restaurants."""
        grouped: Dict[ObjectId, List[Dict]] = {rid: [] for rid in restaurant_ids}
        if not restaurant_ids:
            return grouped
        for r in self.db[RESERVATIONS].find({"restaurant": {"$in": restaurant_ids}}):
            grouped.setdefault(r["restaurant"], []).append(serialize(r))
        return grouped

    def list(self, params: Mapping[str, str]) -> Tuple[List[Dict], Dict, int]:
        q = parse_list_query(params, VIRTUAL_FIELDS)
        total = self.db[RESTAURANTS].count_documents(q.filter)
        cursor = (
            self.db[RESTAURANTS]
            .find(q.filter, q.projection)
            .sort(q.sort)
            .skip(q.skip)
            .limit(q.limit)
        )
        docs = list(cursor)
        joined = self.reservations_for([d["_id"] for d in docs]) if q.wants("reservations") else {}
        results = []
        for d in docs:
            item = serialize(d)
            if q.wants("reservations"):
                item["reservations"] = joined.get(d["_id"], [])
            if not q.wants("id"):
                item.pop("id", None)
            results.append(item)
        return results, pagination(q.page, q.limit, total), total

    def get(self, restaurant_id: str) -> Dict:
        return serialize(self._find(restaurant_id))

    def create(self, payload: RestaurantCreate) -> Dict:
        doc = validate_restaurant({**payload.model_dump(), "createdAt": now()})
        try:
            res = self.db[RESTAURANTS].insert_one(doc)
        except DuplicateKeyError:
            raise ValidationError("Restaurant name already exists", errors={"name": "Restaurant name already exists"})
        doc["_id"] = res.inserted_id
        logger.info("Created restaurant %s", res.inserted_id)
        return serialize(doc)

    def update(self, restaurant_id: str, payload: RestaurantUpdate) -> Dict:
        existing = self._find(restaurant_id)
        patch = payload.model_dump(exclude_unset=True)
        merged = {k: v for k, v in existing.items() if k != "_id"}
        merged.update(patch)
        doc = validate_restaurant(merged)
        if not patch:
            return serialize(existing)
        try:
            updated = self.db[RESTAURANTS].find_one_and_update(
                {"_id": existing["_id"]},
                {"$set": {k: doc[k] for k in patch}},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            raise ValidationError("Restaurant name already exists", errors={"name": "Restaurant name already exists"})
        if updated is None:
            raise NotFound(f"No restaurant with the id of {restaurant_id}")
        return serialize(updated)

    def delete(self, restaurant_id: str) -> None:
        """Delete a restaurant and every reservation referencing it.

        Dependents go first: if the second step fails the restaurant is still
        there and the delete can be retried, and no reservation is left
        pointing at a missing restaurant.
        """
        doc = self._find(restaurant_id)
        removed = self.db[RESERVATIONS].delete_many({"restaurant": doc["_id"]}).deleted_count
        logger.info("Reservations being removed from restaurant %s: %d", doc["_id"], removed)
        self.db[RESTAURANTS].delete_one({"_id": doc["_id"]})
        logger.info("Deleted restaurant %s", doc["_id"])
