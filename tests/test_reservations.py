"""
Tests for the reservation workflow: booking cap, ownership and scoping.
"""

from datetime import datetime

import pytest
from bson import ObjectId
from fastapi import status

from database import RESERVATIONS, RESTAURANTS, now
from errors import AdmissionDenied, Forbidden, NotFound, ValidationError
from reservations import ReservationService
from schemas import ReservationCreate, ReservationUpdate

from .helpers import API, book, create_restaurant


class TestReservationAPI:
    def test_create_reservation(self, client, user, restaurant):
        response = book(client, user, restaurant["id"], appt="2026-12-24T19:00:00")
        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()["data"]
        assert data["user"] == user["id"]
        assert data["restaurant"] == restaurant["id"]
        assert data["apptDate"].startswith("2026-12-24T19:00:00")
        assert "createdAt" in data

    def test_client_cannot_book_on_behalf_of_someone_else(self, client, user, other_user, restaurant):
        response = client.post(
            f"{API}/restaurants/{restaurant['id']}/reservations",
            json={"apptDate": "2026-12-24T19:00:00", "user": other_user["id"], "restaurant": "64b7f0c2a1b2c3d4e5f60718"},
            headers=user["headers"],
        )
        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()["data"]
        assert data["user"] == user["id"]
        assert data["restaurant"] == restaurant["id"]

    def test_create_requires_session(self, client, restaurant):
        response = client.post(
            f"{API}/restaurants/{restaurant['id']}/reservations", json={"apptDate": "2026-12-24T19:00:00"}
        )
        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_create_requires_date(self, client, user, restaurant):
        response = client.post(
            f"{API}/restaurants/{restaurant['id']}/reservations", json={}, headers=user["headers"]
        )
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "apptDate" in response.json()["errors"]

    def test_unknown_restaurant_creates_nothing(self, client, user, db):
        response = book(client, user, "64b7f0c2a1b2c3d4e5f60718")
        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["success"] is False
        assert db[RESERVATIONS].count_documents({}) == 0

    def test_third_succeeds_fourth_is_denied(self, client, admin, user):
        first = create_restaurant(client, admin, "First")
        second = create_restaurant(client, admin, "Second")
        for rid in (first["id"], second["id"], first["id"]):
            assert book(client, user, rid).status_code == status.HTTP_201_CREATED

        response = book(client, user, second["id"])
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["message"] == f"The user with ID {user['id']} has already made 3 reservations"
        listing = client.get(f"{API}/reservations", headers=user["headers"]).json()
        assert listing["count"] == 3

    def test_cap_frees_up_after_delete(self, client, user, restaurant):
        ids = [book(client, user, restaurant["id"]).json()["data"]["id"] for _ in range(3)]
        assert book(client, user, restaurant["id"]).status_code == status.HTTP_400_BAD_REQUEST
        client.delete(f"{API}/reservations/{ids[0]}", headers=user["headers"])
        assert book(client, user, restaurant["id"]).status_code == status.HTTP_201_CREATED

    def test_admin_is_not_capped(self, client, admin, restaurant):
        for _ in range(5):
            assert book(client, admin, restaurant["id"]).status_code == status.HTTP_201_CREATED

    def test_user_list_only_shows_own(self, client, user, other_user, restaurant):
        mine = book(client, user, restaurant["id"]).json()["data"]
        book(client, other_user, restaurant["id"])
        book(client, other_user, restaurant["id"])

        body = client.get(f"{API}/reservations", headers=user["headers"]).json()
        assert body["count"] == 1
        assert [r["id"] for r in body["data"]] == [mine["id"]]

    def test_user_restaurant_scope_still_only_shows_own(self, client, user, other_user, restaurant):
        book(client, user, restaurant["id"])
        book(client, other_user, restaurant["id"])
        body = client.get(f"{API}/restaurants/{restaurant['id']}/reservations", headers=user["headers"]).json()
        assert body["count"] == 1
        assert body["data"][0]["user"] == user["id"]

    def test_admin_lists_all_or_by_restaurant(self, client, admin, user, other_user):
        one = create_restaurant(client, admin, "One")
        two = create_restaurant(client, admin, "Two")
        book(client, user, one["id"])
        book(client, other_user, one["id"])
        book(client, other_user, two["id"])

        everything = client.get(f"{API}/reservations", headers=admin["headers"]).json()
        assert everything["count"] == 3

        scoped = client.get(f"{API}/restaurants/{two['id']}/reservations", headers=admin["headers"]).json()
        assert scoped["count"] == 1
        assert scoped["data"][0]["restaurant"]["id"] == two["id"]

    def test_listing_populates_only_public_restaurant_fields(self, client, user, restaurant):
        book(client, user, restaurant["id"])
        populated = client.get(f"{API}/reservations", headers=user["headers"]).json()["data"][0]["restaurant"]
        assert populated == {
            "id": restaurant["id"],
            "name": restaurant["name"],
            "address": restaurant["address"],
            "tel": restaurant["tel"],
        }

    def test_get_by_owner_and_admin(self, client, admin, user, restaurant):
        booking = book(client, user, restaurant["id"]).json()["data"]
        for who in (user, admin):
            response = client.get(f"{API}/reservations/{booking['id']}", headers=who["headers"])
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["data"]["restaurant"]["name"] == restaurant["name"]

    def test_get_by_stranger_is_forbidden(self, client, user, other_user, restaurant):
        booking = book(client, user, restaurant["id"]).json()["data"]
        response = client.get(f"{API}/reservations/{booking['id']}", headers=other_user["headers"])
        assert response.status_code == status.HTTP_403_FORBIDDEN
        assert response.json()["success"] is False

    def test_get_unknown(self, client, user):
        response = client.get(f"{API}/reservations/64b7f0c2a1b2c3d4e5f60718", headers=user["headers"])
        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_update_by_owner(self, client, user, restaurant):
        booking = book(client, user, restaurant["id"]).json()["data"]
        response = client.put(
            f"{API}/reservations/{booking['id']}",
            json={"apptDate": "2027-01-05T12:30:00"},
            headers=user["headers"],
        )
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["data"]["apptDate"].startswith("2027-01-05T12:30:00")

    def test_update_ignores_ownership_fields(self, client, user, other_user, restaurant):
        booking = book(client, user, restaurant["id"]).json()["data"]
        response = client.put(
            f"{API}/reservations/{booking['id']}",
            json={"user": other_user["id"]},
            headers=user["headers"],
        )
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["data"]["user"] == user["id"]

    def test_update_with_null_date_is_rejected(self, client, user, restaurant):
        booking = book(client, user, restaurant["id"]).json()["data"]
        response = client.put(f"{API}/reservations/{booking['id']}", json={"apptDate": None}, headers=user["headers"])
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "apptDate" in response.json()["errors"]

    def test_update_by_stranger_is_forbidden(self, client, user, other_user, restaurant):
        booking = book(client, user, restaurant["id"]).json()["data"]
        response = client.put(
            f"{API}/reservations/{booking['id']}",
            json={"apptDate": "2027-01-05T12:30:00"},
            headers=other_user["headers"],
        )
        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_update_by_admin(self, client, admin, user, restaurant):
        booking = book(client, user, restaurant["id"]).json()["data"]
        response = client.put(
            f"{API}/reservations/{booking['id']}",
            json={"apptDate": "2027-02-01T18:00:00"},
            headers=admin["headers"],
        )
        assert response.status_code == status.HTTP_200_OK

    def test_delete_by_stranger_is_forbidden_then_owner_succeeds(self, client, user, other_user, restaurant, db):
        booking = book(client, user, restaurant["id"]).json()["data"]
        denied = client.delete(f"{API}/reservations/{booking['id']}", headers=other_user["headers"])
        assert denied.status_code == status.HTTP_403_FORBIDDEN
        assert db[RESERVATIONS].count_documents({}) == 1

        allowed = client.delete(f"{API}/reservations/{booking['id']}", headers=user["headers"])
        assert allowed.status_code == status.HTTP_200_OK
        assert allowed.json() == {"success": True, "data": {}}
        assert db[RESERVATIONS].count_documents({}) == 0

    def test_delete_by_admin(self, client, admin, user, restaurant):
        booking = book(client, user, restaurant["id"]).json()["data"]
        response = client.delete(f"{API}/reservations/{booking['id']}", headers=admin["headers"])
        assert response.status_code == status.HTTP_200_OK

    def test_delete_unknown(self, client, user):
        response = client.delete(f"{API}/reservations/not-an-id", headers=user["headers"])
        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestReservationService:
    """Workflow rules exercised directly against the store."""

    @pytest.fixture
    def service(self, db):
        return ReservationService(db, max_active=3)

    @pytest.fixture
    def restaurant_id(self, db):
        return db[RESTAURANTS].insert_one({
            "name": "Service Bistro",
            "address": "1 Main St",
            "tel": "1",
            "openingHours": "09:00-22:00",
            "createdAt": now(),
        }).inserted_id

    @pytest.fixture
    def caller(self):
        return {"id": str(ObjectId()), "role": "user"}

    def reserve(self, service, caller, restaurant_id):
        return service.create(caller, str(restaurant_id), ReservationCreate(apptDate=datetime(2026, 12, 24, 19)))

    def test_cap_counts_across_restaurants(self, service, db, caller, restaurant_id):
        other = db[RESTAURANTS].insert_one({
            "name": "Elsewhere", "address": "2", "tel": "2", "openingHours": "x", "createdAt": now(),
        }).inserted_id
        self.reserve(service, caller, restaurant_id)
        self.reserve(service, caller, other)
        self.reserve(service, caller, restaurant_id)
        with pytest.raises(AdmissionDenied):
            self.reserve(service, caller, other)

    def test_concurrent_overrun_is_rolled_back(self, service, db, caller, restaurant_id, monkeypatch):
        for _ in range(3):
            self.reserve(service, caller, restaurant_id)

        # simulate a racing request that counted before the other inserts landed
        counts = iter([2])
        real_count = service.count_for
        monkeypatch.setattr(service, "count_for", lambda uid: next(counts, None) or real_count(uid))

        with pytest.raises(AdmissionDenied):
            self.reserve(service, caller, restaurant_id)
        assert db[RESERVATIONS].count_documents({"user": ObjectId(caller["id"])}) == 3

    def test_unknown_restaurant(self, service, db, caller):
        with pytest.raises(NotFound):
            self.reserve(service, caller, ObjectId())
        assert db[RESERVATIONS].count_documents({}) == 0

    def test_ownership_rule(self, service, caller, restaurant_id):
        booking = self.reserve(service, caller, restaurant_id)
        stranger = {"id": str(ObjectId()), "role": "user"}
        admin = {"id": str(ObjectId()), "role": "admin"}

        with pytest.raises(Forbidden):
            service.get(stranger, booking["id"])
        with pytest.raises(Forbidden):
            service.update(stranger, booking["id"], ReservationUpdate(apptDate="2027-01-01T10:00:00"))
        with pytest.raises(Forbidden):
            service.delete(stranger, booking["id"])

        assert service.get(caller, booking["id"])["id"] == booking["id"]
        assert service.get(admin, booking["id"])["id"] == booking["id"]

    def test_update_rejects_malformed_date(self, service, caller, restaurant_id):
        booking = self.reserve(service, caller, restaurant_id)
        with pytest.raises(ValidationError) as exc_info:
            service.update(caller, booking["id"], ReservationUpdate(apptDate="not a date"))
        assert "apptDate" in exc_info.value.errors

    def test_update_without_date_changes_nothing(self, service, caller, restaurant_id):
        booking = self.reserve(service, caller, restaurant_id)
        unchanged = service.update(caller, booking["id"], ReservationUpdate())
        assert unchanged["apptDate"] == booking["apptDate"]

    def test_populate_handles_missing_restaurant(self, service, db, caller, restaurant_id):
        booking = self.reserve(service, caller, restaurant_id)
        db[RESTAURANTS].delete_one({"_id": restaurant_id})
        assert service.get(caller, booking["id"])["restaurant"] is None

    def test_admin_scope_with_second_user(self, service, db, restaurant_id, caller):
        self.reserve(service, caller, restaurant_id)
        someone = {"id": str(ObjectId()), "role": "user"}
        self.reserve(service, someone, restaurant_id)
        admin = {"id": str(ObjectId()), "role": "admin"}
        assert len(service.list(admin, str(restaurant_id))) == 2
        assert len(service.list(someone)) == 1
