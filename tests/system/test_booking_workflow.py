"""
System tests for the complete borrowing workflow.
Drives the API the way the frontend does: register, log in, book, return, pay penalties.
"""
from datetime import datetime, timedelta, timezone

from conftest import available_quantity, future_date, total_penalties


def _login(client, email, password):
    resp = client.post("/login", json={"email": email, "password": password})
    assert resp.status_code == 200
    return {"Authorization": f"Bearer {resp.get_json()['token']}"}


def test_two_unit_component_walkthrough(client, db, admin, student):
    """available=2: over-asking fails, exact booking round-trips the stock."""
    _, admin_headers = admin
    _, student_headers = student

    resp = client.post(
        "/api/components",
        json={
            "component_code": "OSC-01",
            "component_name": "Oscilloscope",
            "category": "Measurement",
            "total_quantity": 2,
        },
        headers=admin_headers,
    )
    assert resp.status_code == 201
    component_id = resp.get_json()["componentId"]
    assert available_quantity(db, component_id) == 2

    payload = {"component_id": component_id, "expected_return_date": future_date(3)}
    resp = client.post("/api/bookings", json={**payload, "quantity": 3}, headers=student_headers)
    assert resp.status_code == 400

    resp = client.post("/api/bookings", json={**payload, "quantity": 2}, headers=student_headers)
    assert resp.status_code == 201
    booking_id = resp.get_json()["bookingId"]

    client.patch(f"/api/bookings/{booking_id}/approve", headers=admin_headers)
    assert available_quantity(db, component_id) == 0

    client.patch(f"/api/bookings/{booking_id}/return", headers=student_headers)
    client.patch(f"/api/bookings/{booking_id}/approve-return", headers=admin_headers)
    assert available_quantity(db, component_id) == 2


def test_registered_student_full_journey(client, db, admin, make_component):
    _, admin_headers = admin
    component_id = make_component(total=3, name="Raspberry Pi 4")

    resp = client.post(
        "/register",
        json={
            "email": "journey@lab.test",
            "password": "Journey123",
            "full_name": "Journey Student",
            "student_id": "011209999",
            "department": "CSE",
        },
    )
    assert resp.status_code == 201
    user_id = resp.get_json()["userId"]
    student_headers = _login(client, "journey@lab.test", "Journey123")

    # Book something that is already late, so the overdue penalty is charged
    late = (datetime.now(timezone.utc) - timedelta(days=2, hours=1)).strftime("%Y-%m-%d %H:%M:%S")
    resp = client.post(
        "/api/bookings",
        json={"component_id": component_id, "quantity": 1, "expected_return_date": late},
        headers=student_headers,
    )
    booking_id = resp.get_json()["bookingId"]
    assert client.patch(f"/api/bookings/{booking_id}/approve", headers=admin_headers).status_code == 200

    resp = client.patch(f"/api/bookings/{booking_id}/overdue", headers=admin_headers)
    assert resp.status_code == 200
    overdue = resp.get_json()
    assert overdue["daysOverdue"] == 3
    assert overdue["penaltyAmount"] == 150
    assert total_penalties(db, user_id) == 150

    penalties = client.get("/api/penalties/my", headers=student_headers).get_json()["penalties"]
    assert len(penalties) == 1
    assert penalties[0]["component_name"] == "Raspberry Pi 4"
    assert "3 day(s) overdue" in penalties[0]["notes"]

    stats = client.get("/api/dashboard/user/stats", headers=student_headers).get_json()["stats"]
    assert stats["activeBookings"] == 1
    assert stats["overdueBookings"] == 1
    assert stats["totalPendingAmount"] == 150

    client.patch(f"/api/bookings/{booking_id}/return", headers=student_headers)
    client.patch(f"/api/bookings/{booking_id}/approve-return", headers=admin_headers)
    assert available_quantity(db, component_id) == 3

    resp = client.patch(
        f"/api/penalties/{overdue['penaltyId']}/status",
        json={"status": "paid"},
        headers=admin_headers,
    )
    assert resp.status_code == 200
    assert total_penalties(db, user_id) == 0

    profile = client.get("/api/users/profile", headers=student_headers).get_json()["user"]
    assert profile["total_penalties"] == 0
    assert "password_hash" not in profile


def test_waitlist_then_notify_when_stock_returns(client, db, admin, make_user, make_component):
    _, admin_headers = admin
    _, holder_headers = make_user("student")
    _, waiting_headers = make_user("student")
    component_id = make_component(total=1)

    booking_id = client.post(
        "/api/bookings",
        json={"component_id": component_id, "quantity": 1, "expected_return_date": future_date()},
        headers=holder_headers,
    ).get_json()["bookingId"]
    client.patch(f"/api/bookings/{booking_id}/approve", headers=admin_headers)

    resp = client.post("/api/waitlist", json={"component_id": component_id}, headers=waiting_headers)
    assert resp.status_code == 201

    client.patch(f"/api/bookings/{booking_id}/return", headers=holder_headers)
    client.patch(f"/api/bookings/{booking_id}/approve-return", headers=admin_headers)

    resp = client.post(f"/api/waitlist/notify/{component_id}", headers=admin_headers)
    assert resp.get_json()["message"] == "1 users notified successfully"
    entries = client.get("/api/waitlist/my", headers=waiting_headers).get_json()["waitlist"]
    assert entries[0]["status"] == "notified"
    assert entries[0]["notification_sent_date"] is not None
