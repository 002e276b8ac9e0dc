import sqlite3

import pytest


def _join(client, headers, component_id, **extra):
    return client.post("/api/waitlist", json={"component_id": component_id, **extra}, headers=headers)


def test_join_waitlist(client, db, student, make_component):
    user_id, headers = student
    component_id = make_component(available=0, total=2)
    resp = _join(client, headers, component_id, requested_quantity=2, notes="Need for thesis")
    assert resp.status_code == 201
    row = db.execute(
        "SELECT * FROM waitlist WHERE waitlist_id = ?", (resp.get_json()["waitlistId"],)
    ).fetchone()
    assert row["user_id"] == user_id
    assert row["status"] == "waiting"
    assert row["requested_quantity"] == 2


def test_duplicate_waiting_entry_rejected(client, db, student, make_component):
    _, headers = student
    component_id = make_component()
    assert _join(client, headers, component_id).status_code == 201
    resp = _join(client, headers, component_id)
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "You are already on the waitlist for this component"
    assert db.execute("SELECT COUNT(*) FROM waitlist").fetchone()[0] == 1


def test_can_rejoin_after_cancel(client, student, make_component):
    _, headers = student
    component_id = make_component()
    waitlist_id = _join(client, headers, component_id).get_json()["waitlistId"]
    assert client.patch(f"/api/waitlist/{waitlist_id}/cancel", headers=headers).status_code == 200
    assert client.patch(f"/api/waitlist/{waitlist_id}/cancel", headers=headers).status_code == 400
    assert _join(client, headers, component_id).status_code == 201


def test_unique_index_blocks_second_waiting_row(db, student, make_component):
    user_id, _ = student
    component_id = make_component()
    insert = (
        "INSERT INTO waitlist (user_id, component_id, status, requested_date) "
        "VALUES (?, ?, 'waiting', '2024-01-01 00:00:00')"
    )
    db.execute(insert, (user_id, component_id))
    with pytest.raises(sqlite3.IntegrityError):
        db.execute(insert, (user_id, component_id))


def test_join_unknown_component(client, student):
    _, headers = student
    assert _join(client, headers, 404).status_code == 404


def test_owner_can_update_others_cannot(client, make_user, make_component):
    _, owner_headers = make_user("student")
    _, other_headers = make_user("student")
    waitlist_id = _join(client, owner_headers, make_component()).get_json()["waitlistId"]

    resp = client.put(f"/api/waitlist/{waitlist_id}", json={"requested_quantity": 3}, headers=owner_headers)
    assert resp.status_code == 200
    entry = client.get(f"/api/waitlist/{waitlist_id}", headers=owner_headers).get_json()["entry"]
    assert entry["requested_quantity"] == 3

    assert client.put(f"/api/waitlist/{waitlist_id}", json={"notes": "x"}, headers=other_headers).status_code == 403
    assert client.patch(f"/api/waitlist/{waitlist_id}/cancel", headers=other_headers).status_code == 403
    assert client.get(f"/api/waitlist/{waitlist_id}", headers=other_headers).status_code == 403


def test_component_queue_is_first_come_first_served(client, make_user, make_component):
    component_id = make_component()
    first_id, first_headers = make_user("student")
    second_id, second_headers = make_user("student")
    _join(client, first_headers, component_id)
    _join(client, second_headers, component_id)

    queue = client.get(f"/api/waitlist/component/{component_id}", headers=first_headers).get_json()["waitlist"]
    assert [entry["user_id"] for entry in queue] == [first_id, second_id]


def test_admin_status_change_and_delete(client, db, admin, student, make_component):
    _, admin_headers = admin
    _, student_headers = student
    waitlist_id = _join(client, student_headers, make_component()).get_json()["waitlistId"]

    resp = client.patch(
        f"/api/waitlist/{waitlist_id}/status", json={"status": "notified"}, headers=admin_headers
    )
    assert resp.status_code == 200
    row = db.execute("SELECT * FROM waitlist WHERE waitlist_id = ?", (waitlist_id,)).fetchone()
    assert row["status"] == "notified"
    assert row["notification_sent_date"] is not None

    resp = client.patch(
        f"/api/waitlist/{waitlist_id}/status", json={"status": "done"}, headers=admin_headers
    )
    assert resp.status_code == 400

    waiting = client.get("/api/waitlist?status=waiting", headers=admin_headers).get_json()["waitlist"]
    assert waiting == []

    assert client.delete(f"/api/waitlist/{waitlist_id}", headers=admin_headers).status_code == 200
    assert client.delete(f"/api/waitlist/{waitlist_id}", headers=admin_headers).status_code == 404


def test_notify_counts_only_waiting_entries(client, admin, make_user, make_component):
    _, admin_headers = admin
    component_id = make_component()
    other_component = make_component()
    for _ in range(2):
        _, headers = make_user("student")
        _join(client, headers, component_id)
    _, headers = make_user("student")
    _join(client, headers, other_component)

    resp = client.post(f"/api/waitlist/notify/{component_id}", headers=admin_headers)
    data = resp.get_json()
    assert data["notifiedCount"] == 2
    assert data["message"] == "2 users notified successfully"

    resp = client.post(f"/api/waitlist/notify/{component_id}", headers=admin_headers)
    assert resp.get_json()["notifiedCount"] == 0
