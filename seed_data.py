"""
Script to create demo accounts and sample components for manual testing.
Run it once after starting the API so there is something to log in with.
"""
import logging
import sqlite3

from werkzeug.security import generate_password_hash

import app as app_module

logger = logging.getLogger(__name__)

TEST_USERS = [
    {
        "student_id": None,
        "full_name": "Lab Admin",
        "email": "admin@lab.test",
        "role": "admin",
        "department": "CSE",
        "password": "Admin1234",
    },
    {
        "student_id": "011201001",
        "full_name": "Test Student",
        "email": "student@lab.test",
        "role": "student",
        "department": "EEE",
        "password": "Student1234",
    },
]

SAMPLE_COMPONENTS = [
    {
        "component_code": "ARD-UNO",
        "component_name": "Arduino Uno R3",
        "category": "Microcontroller",
        "description": "ATmega328P development board",
        "total_quantity": 20,
    },
    {
        "component_code": "RPI-4B",
        "component_name": "Raspberry Pi 4 Model B",
        "category": "Single Board Computer",
        "description": "4GB RAM",
        "total_quantity": 8,
    },
    {
        "component_code": "SEN-HCSR04",
        "component_name": "HC-SR04 Ultrasonic Sensor",
        "category": "Sensor",
        "description": "2cm-400cm distance sensor",
        "total_quantity": 30,
    },
    {
        "component_code": "MM-DT830",
        "component_name": "Digital Multimeter",
        "category": "Measurement",
        "description": "DT830 series handheld multimeter",
        "total_quantity": 4,
    },
]


def create_test_users(conn):
    """Insert the demo accounts; existing emails are skipped. Returns (created, skipped)."""
    created = 0
    skipped = 0
    for user in TEST_USERS:
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO users
                    (student_id, full_name, email, password_hash, role, department,
                     total_penalties, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                    """,
                    (
                        user["student_id"],
                        user["full_name"],
                        user["email"],
                        generate_password_hash(user["password"]),
                        user["role"],
                        user["department"],
                        app_module._now(),
                    ),
                )
            created += 1
            logger.info("Created user %s (%s)", user["email"], user["role"])
        except sqlite3.IntegrityError:
            skipped += 1
            logger.info("User %s already exists, skipping", user["email"])
    return created, skipped


def create_sample_components(conn):
    created = 0
    skipped = 0
    for component in SAMPLE_COMPONENTS:
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO components
                    (component_code, component_name, category, description, status,
                     total_quantity, available_quantity, created_at)
                    VALUES (?, ?, ?, ?, 'active', ?, ?, ?)
                    """,
                    (
                        component["component_code"],
                        component["component_name"],
                        component["category"],
                        component["description"],
                        component["total_quantity"],
                        component["total_quantity"],
                        app_module._now(),
                    ),
                )
            created += 1
        except sqlite3.IntegrityError:
            skipped += 1
            logger.info("Component %s already exists, skipping", component["component_code"])
    return created, skipped


def seed(conn):
    app_module.init_schema(conn)
    users = create_test_users(conn)
    components = create_sample_components(conn)
    return {"users": users, "components": components}


def main():
    conn = app_module.get_db_connection()
    try:
        summary = seed(conn)
    finally:
        if app_module.DATABASE != ":memory:":
            conn.close()

    logger.info("Users: %s created, %s skipped", *summary["users"])
    logger.info("Components: %s created, %s skipped", *summary["components"])
    for user in TEST_USERS:
        logger.info("Login with %s / %s (%s)", user["email"], user["password"], user["role"])


if __name__ == "__main__":
    main()
