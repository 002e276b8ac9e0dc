from werkzeug.security import check_password_hash


def test_profile_update(client, db, student):
    user_id, headers = student
    resp = client.put(
        "/api/users/profile",
        json={"full_name": "Renamed Student", "phone_number": "01700000000"},
        headers=headers,
    )
    assert resp.status_code == 200
    row = db.execute("SELECT full_name, phone_number FROM users WHERE user_id = ?", (user_id,)).fetchone()
    assert row["full_name"] == "Renamed Student"
    assert row["phone_number"] == "01700000000"


def test_change_password(client, db, make_user):
    user_id, headers = make_user("student", password="Password1")
    resp = client.put(
        "/api/users/change-password",
        json={"currentPassword": "Wrong1234", "newPassword": "Password2"},
        headers=headers,
    )
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Current password is incorrect"

    resp = client.put(
        "/api/users/change-password",
        json={"currentPassword": "Password1", "newPassword": "Password2"},
        headers=headers,
    )
    assert resp.status_code == 200
    stored = db.execute("SELECT password_hash FROM users WHERE user_id = ?", (user_id,)).fetchone()[0]
    assert check_password_hash(stored, "Password2")


def test_admin_creates_and_lists_users(client, admin):
    _, headers = admin
    resp = client.post(
        "/api/users",
        json={
            "email": "ta@lab.test",
            "password": "Password9",
            "full_name": "Teaching Assistant",
            "role": "admin",
            "department": "EEE",
        },
        headers=headers,
    )
    assert resp.status_code == 201
    new_id = resp.get_json()["userId"]

    users = client.get("/api/users?role=admin&department=EEE", headers=headers).get_json()["users"]
    assert [u["user_id"] for u in users] == [new_id]
    assert all("password_hash" not in u for u in users)

    found = client.get("/api/users/search?query=Teaching", headers=headers).get_json()["users"]
    assert found[0]["email"] == "ta@lab.test"


def test_admin_patch_user_whitelist(client, db, admin, student):
    _, headers = admin
    user_id, _ = student
    resp = client.patch(f"/api/users/{user_id}", json={"password_hash": "x"}, headers=headers)
    assert resp.status_code == 400

    resp = client.patch(f"/api/users/{user_id}", json={"department": "ME"}, headers=headers)
    assert resp.status_code == 200
    assert db.execute("SELECT department FROM users WHERE user_id = ?", (user_id,)).fetchone()[0] == "ME"

    resp = client.patch(f"/api/users/{user_id}", json={"role": "faculty"}, headers=headers)
    assert resp.status_code == 400


def test_admin_reset_password(client, db, admin, student):
    _, headers = admin
    user_id, _ = student
    resp = client.put(
        f"/api/users/{user_id}/reset-password", json={"newPassword": "Fresh1234"}, headers=headers
    )
    assert resp.status_code == 200
    stored = db.execute("SELECT password_hash FROM users WHERE user_id = ?", (user_id,)).fetchone()[0]
    assert check_password_hash(stored, "Fresh1234")

    resp = client.put("/api/users/9999/reset-password", json={"newPassword": "Fresh1234"}, headers=headers)
    assert resp.status_code == 404


def test_delete_user(client, admin, student):
    admin_id, headers = admin
    user_id, _ = student
    assert client.delete(f"/api/users/{admin_id}", headers=headers).status_code == 400
    assert client.delete(f"/api/users/{user_id}", headers=headers).status_code == 200
    assert client.get(f"/api/users/{user_id}", headers=headers).status_code == 404


def test_delete_user_with_bookings_is_blocked(client, admin, student, make_component):
    _, admin_headers = admin
    user_id, student_headers = student
    client.post(
        "/api/bookings",
        json={"component_id": make_component(), "quantity": 1, "expected_return_date": "2030-01-01"},
        headers=student_headers,
    )
    resp = client.delete(f"/api/users/{user_id}", headers=admin_headers)
    assert resp.status_code == 400
