"""
Unit tests for the pure helpers: overdue math, validation and the transition table.
"""
from datetime import datetime, timedelta, timezone

import pytest

import app as app_module

NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "expected, days",
    [
        (NOW - timedelta(days=3), 3),
        (NOW - timedelta(days=2, hours=1), 3),
        (NOW - timedelta(minutes=5), 1),
        (NOW + timedelta(days=2), 1),
        (None, 1),
    ],
)
def test_days_overdue(expected, days):
    assert app_module.calculate_days_overdue(expected, NOW) == days


def test_overdue_penalty_scales_with_quantity():
    assert app_module.calculate_overdue_penalty(3, 2) == 300
    assert app_module.calculate_overdue_penalty(1, 1) == app_module.OVERDUE_PENALTY_PER_DAY


def test_overdue_penalty_custom_amount_wins():
    assert app_module.calculate_overdue_penalty(10, 4, custom_amount=25.5) == 25.5


def test_only_pending_penalties_count_towards_total():
    assert app_module.pending_contribution("pending", 80) == 80
    assert app_module.pending_contribution("paid", 80) == 0
    assert app_module.pending_contribution("waived", 80) == 0


def test_parse_datetime_accepts_dates_and_timestamps():
    assert app_module.parse_datetime("2024-05-10") == datetime(2024, 5, 10, tzinfo=timezone.utc)
    assert app_module.parse_datetime("2024-05-10 08:30:00").hour == 8
    assert app_module.parse_datetime("not a date") is None
    assert app_module.parse_datetime(None) is None


def test_transition_table():
    transitions = app_module.BOOKING_TRANSITIONS
    assert transitions["approve"] == ("requested", "approved")
    assert transitions["reject"] == ("requested", "rejected")
    assert transitions["return"] == ("approved", "return_pending")
    assert transitions["approve_return"] == ("return_pending", "returned")
    # rejected and returned are terminal
    sources = {source for source, _ in transitions.values()}
    assert "rejected" not in sources
    assert "returned" not in sources


@pytest.mark.parametrize(
    "password, ok",
    [("Password1", True), ("short1", False), ("longpassword", False), (None, False)],
)
def test_password_rule(password, ok):
    assert (app_module.validate_password(password) == []) is ok


def test_validate_user_data():
    ok, errors = app_module.validate_user_data(
        {"email": "a@lab.test", "password": "Password1", "full_name": "A"}
    )
    assert ok and errors == []

    ok, errors = app_module.validate_user_data({"email": "a@lab.test"})
    assert not ok
    assert "Missing required fields" in errors[0]

    ok, errors = app_module.validate_user_data(
        {"email": "bad-email", "password": "Password1", "full_name": "A", "role": "faculty"}
    )
    assert not ok
    assert len(errors) == 2


def test_validate_component_quantities():
    base = {"component_name": "Pi", "component_code": "PI", "status": "active"}

    ok, _, quantities = app_module.validate_component_data(
        {**base, "total_quantity": "10", "available_quantity": 6,
         "damaged_quantity": 2, "under_maintenance_quantity": 2}
    )
    assert ok
    assert quantities["total_quantity"] == 10

    ok, errors, _ = app_module.validate_component_data(
        {**base, "total_quantity": 5, "available_quantity": 4, "damaged_quantity": 2}
    )
    assert not ok
    assert "cannot exceed total_quantity" in errors[0]

    ok, errors, _ = app_module.validate_component_data(
        {**base, "total_quantity": -1, "available_quantity": 0}
    )
    assert not ok
    assert errors == ["total_quantity must be at least 0."]


@pytest.mark.parametrize("value", [True, False, 2.5, "three"])
def test_parse_int_rejects_non_integers(value):
    with pytest.raises(app_module.ApiError):
        app_module.parse_int(value, "quantity")


def test_component_totals_include_units_on_loan():
    values = {
        "component_name": "Pi", "component_code": "PI", "status": "active",
        "total_quantity": 5, "available_quantity": 2,
    }
    assert app_module.validate_component_data(values, on_loan=3)[0]
    ok, errors, _ = app_module.validate_component_data({**values, "total_quantity": 4}, on_loan=3)
    assert not ok
    assert "3 currently on loan" in errors[0]
    assert app_module.validate_component_data(
        {**values, "total_quantity": 4}, on_loan=3, check_totals=False
    )[0]
