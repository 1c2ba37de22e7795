"""Request helpers shared by the API tests."""

API = "/api/v1"


def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, email, role="user", password="secret123", name="Test User"):
    response = client.post(
        f"{API}/auth/register",
        json={"name": name, "tel": "02-2187000", "email": email, "password": password, "role": role},
    )
    assert response.status_code == 201, response.text
    # the session cookie would otherwise authenticate later anonymous requests
    client.cookies.clear()
    token = response.json()["token"]
    me = client.get(f"{API}/auth/me", headers=auth_headers(token)).json()["data"]
    return {"token": token, "headers": auth_headers(token), "id": me["id"], "role": me["role"]}


def restaurant_payload(name="Happy Restaurant", **overrides):
    data = {
        "name": name,
        "address": "121 Sukhumvit Road",
        "tel": "02-2187000",
        "openingHours": "09:00-22:00",
    }
    data.update(overrides)
    return data


def create_restaurant(client, admin, name="Happy Restaurant", **overrides):
    response = client.post(f"{API}/restaurants", json=restaurant_payload(name, **overrides), headers=admin["headers"])
    assert response.status_code == 201, response.text
    return response.json()["data"]


def book(client, who, restaurant_id, appt="2026-12-24T19:00:00"):
    return client.post(
        f"{API}/restaurants/{restaurant_id}/reservations",
        json={"apptDate": appt},
        headers=who["headers"],
    )
