import sqlite3
from functools import wraps
import logging
import math
import uuid

from dotenv import load_dotenv
from flask import Flask, request, jsonify, send_from_directory, g
from flask_cors import CORS
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.security import generate_password_hash, check_password_hash
from werkzeug.utils import secure_filename
import re
import os
import jwt
import datetime
from datetime import timezone

# --- Configuration ---
load_dotenv()

app = Flask(__name__)
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
CORS(app, resources={r"/*": {"origins": CORS_ORIGINS}})

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATABASE = os.getenv("LAB_INVENTORY_DB", os.path.join(BASE_DIR, "lab_inventory.db"))
# Secret used for signing JWTs. In production, set via environment variable.
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")
JWT_EXP_DELTA_SECONDS = int(os.getenv("JWT_EXP_DELTA_SECONDS", 3600))

UPLOAD_FOLDER = os.getenv("UPLOAD_FOLDER", os.path.join(BASE_DIR, "uploads"))
ALLOWED_IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "webp"}
app.config["MAX_CONTENT_LENGTH"] = 5 * 1024 * 1024

OVERDUE_PENALTY_PER_DAY = float(os.getenv("OVERDUE_PENALTY_PER_DAY", 50))
PENALTY_DUE_DAYS = int(os.getenv("PENALTY_DUE_DAYS", 7))
LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", 5))

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

VALID_ROLES = ("admin", "student")
COMPONENT_STATUSES = ("active", "inactive", "maintenance")
PENALTY_TYPES = ("overdue", "damage", "lost", "other")
PENALTY_STATUSES = ("pending", "paid", "waived")
WAITLIST_STATUSES = ("waiting", "notified", "cancelled")
DAMAGE_SEVERITIES = ("minor", "moderate", "severe")

# action -> (required current status, resulting status)
BOOKING_TRANSITIONS = {
    "approve": ("requested", "approved"),
    "reject": ("requested", "rejected"),
    "return": ("approved", "return_pending"),
    "approve_return": ("return_pending", "returned"),
}
# Statuses in which the booked quantity is out of the available pool.
STOCK_HOLDING_STATUSES = ("approved", "return_pending")

# --- Database Setup ---

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    user_id INTEGER PRIMARY KEY AUTOINCREMENT,
    student_id TEXT UNIQUE,
    full_name TEXT NOT NULL,
    email TEXT UNIQUE NOT NULL,
    password_hash TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'student',
    department TEXT,
    phone_number TEXT,
    total_penalties REAL NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS components (
    component_id INTEGER PRIMARY KEY AUTOINCREMENT,
    component_code TEXT UNIQUE NOT NULL,
    component_name TEXT NOT NULL,
    category TEXT,
    description TEXT,
    image TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    total_quantity INTEGER NOT NULL DEFAULT 0,
    available_quantity INTEGER NOT NULL DEFAULT 0,
    damaged_quantity INTEGER NOT NULL DEFAULT 0,
    under_maintenance_quantity INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS bookings (
    booking_id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    component_id INTEGER NOT NULL,
    quantity INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'requested',
    requested_date TEXT NOT NULL,
    expected_return_date TEXT,
    actual_return_date TEXT,
    is_overdue INTEGER NOT NULL DEFAULT 0,
    reason TEXT,
    updated_at TEXT,
    FOREIGN KEY (user_id) REFERENCES users(user_id),
    FOREIGN KEY (component_id) REFERENCES components(component_id)
);

CREATE TABLE IF NOT EXISTS damage_reports (
    damage_report_id INTEGER PRIMARY KEY AUTOINCREMENT,
    component_id INTEGER NOT NULL,
    booking_id INTEGER,
    reported_by_user_id INTEGER NOT NULL,
    verified_by_user_id INTEGER,
    damage_type TEXT NOT NULL,
    severity TEXT NOT NULL DEFAULT 'minor',
    description TEXT,
    damage_date TEXT,
    reported_date TEXT NOT NULL,
    is_verified INTEGER NOT NULL DEFAULT 0,
    verification_date TEXT,
    replacement_required INTEGER NOT NULL DEFAULT 0,
    FOREIGN KEY (component_id) REFERENCES components(component_id),
    FOREIGN KEY (booking_id) REFERENCES bookings(booking_id),
    FOREIGN KEY (reported_by_user_id) REFERENCES users(user_id),
    FOREIGN KEY (verified_by_user_id) REFERENCES users(user_id)
);

CREATE TABLE IF NOT EXISTS penalties (
    penalty_id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    booking_id INTEGER NOT NULL,
    damage_report_id INTEGER,
    penalty_type TEXT NOT NULL,
    amount REAL NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    penalty_date TEXT NOT NULL,
    due_date TEXT,
    paid_date TEXT,
    notes TEXT,
    FOREIGN KEY (user_id) REFERENCES users(user_id),
    FOREIGN KEY (booking_id) REFERENCES bookings(booking_id),
    FOREIGN KEY (damage_report_id) REFERENCES damage_reports(damage_report_id)
);

CREATE TABLE IF NOT EXISTS waitlist (
    waitlist_id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    component_id INTEGER NOT NULL,
    requested_quantity INTEGER NOT NULL DEFAULT 1,
    status TEXT NOT NULL DEFAULT 'waiting',
    requested_date TEXT NOT NULL,
    estimated_availability_date TEXT,
    notification_sent_date TEXT,
    notes TEXT,
    FOREIGN KEY (user_id) REFERENCES users(user_id),
    FOREIGN KEY (component_id) REFERENCES components(component_id)
);

-- One active waitlist entry per (user, component).
CREATE UNIQUE INDEX IF NOT EXISTS idx_waitlist_one_waiting
    ON waitlist(user_id, component_id) WHERE status = 'waiting';
"""


def get_db_connection():
    """Connects to the SQLite database."""
    conn = sqlite3.connect(DATABASE)
    conn.row_factory = sqlite3.Row  # This allows accessing columns by name
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def get_db():
    """Return the connection for the current request, opening it on first use."""
    if "db" not in g:
        g.db = get_db_connection()
    return g.db


@app.teardown_appcontext
def close_db(exc):
    conn = g.pop("db", None)
    # Tests share one in-memory connection across requests.
    if conn is not None and DATABASE != ":memory:":
        conn.close()


def init_schema(conn):
    """Create every table and index on the given connection."""
    conn.executescript(SCHEMA)
    conn.execute("PRAGMA foreign_keys = ON")
    conn.commit()


def init_db():
    """Initializes the database schema if it doesn't exist."""
    logger.info("Initializing database at %s", DATABASE)
    conn = get_db_connection()
    try:
        init_schema(conn)
    finally:
        if DATABASE != ":memory:":
            conn.close()
    logger.info("Database initialization complete.")


# --- Errors ---

class ApiError(Exception):
    """An error rendered as a JSON response with the given status code.

    Raising it inside a ``with conn:`` block rolls the transaction back.
    """

    def __init__(self, message, status_code=400, **extra):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.extra = extra


@app.errorhandler(ApiError)
def handle_api_error(error):
    body = {"message": error.message, "success": False}
    body.update(error.extra)
    return jsonify(body), error.status_code


@app.errorhandler(sqlite3.Error)
def handle_database_error(error):
    logger.error("Database error on %s %s", request.method, request.path, exc_info=error)
    return jsonify({
        "message": "A database error occurred.",
        "error": str(error),
        "success": False,
    }), 500


@app.errorhandler(404)
def handle_not_found(error):
    return jsonify({"message": "Route not found", "success": False}), 404


@app.errorhandler(405)
def handle_method_not_allowed(error):
    return jsonify({"message": "Method not allowed", "success": False}), 405


@app.errorhandler(RequestEntityTooLarge)
def handle_too_large(error):
    return jsonify({"message": "Uploaded file is too large.", "success": False}), 413


# --- Helper Functions ---

def _now():
    """Current UTC time as a SQLite-friendly string."""
    return datetime.datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def parse_datetime(value):
    """
    Parse an ISO date or datetime string into an aware UTC datetime.
    Returns None for empty or unparseable values.
    """
    if not value:
        return None
    try:
        parsed = datetime.datetime.fromisoformat(str(value).strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def get_json_body():
    # silent=True so malformed JSON gets our JSON error instead of an HTML page
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ApiError("Invalid JSON payload.")
    return data


def get_optional_json():
    """Body for actions where every field is optional."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def parse_int(value, field, minimum=0):
    """Coerce a request value to an int no smaller than ``minimum``."""
    if isinstance(value, bool):
        raise ApiError(f"{field} must be a whole number.")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ApiError(f"{field} must be a whole number.")
    if isinstance(value, float) and value != number:
        raise ApiError(f"{field} must be a whole number.")
    if number < minimum:
        raise ApiError(f"{field} must be at least {minimum}.")
    return number


def parse_amount(value, field="amount"):
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ApiError(f"{field} must be a number.")
    if amount <= 0:
        raise ApiError(f"{field} must be greater than zero.")
    return amount


def parse_optional_date(value, field):
    if value in (None, ""):
        return None
    parsed = parse_datetime(value)
    if parsed is None:
        raise ApiError(f"Invalid {field} format.")
    return parsed.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def query_int(name, default):
    """Read a positive integer query parameter, falling back to ``default``."""
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def as_flag(value):
    if isinstance(value, str):
        return 1 if value.strip().lower() in ("1", "true", "yes", "on") else 0
    return 1 if value else 0


def rows_to_list(rows):
    return [dict(row) for row in rows]


def fetch_one_or_404(conn, query, params, message):
    row = conn.execute(query, params).fetchone()
    if row is None:
        raise ApiError(message, 404)
    return row


# --- Authentication ---

def _generate_token(payload: dict) -> str:
    """Return a JWT for the given payload (adds expiry)."""
    payload_copy = payload.copy()
    expiry = datetime.datetime.now(timezone.utc) + datetime.timedelta(
        seconds=JWT_EXP_DELTA_SECONDS
    )
    payload_copy["exp"] = expiry
    token = jwt.encode(payload_copy, SECRET_KEY, algorithm="HS256")
    if isinstance(token, bytes):
        token = token.decode("utf-8")
    return token


def verify_token():
    """Extract and verify the JWT from the Authorization header."""
    auth = request.headers.get("Authorization", None)
    if not auth or not auth.startswith("Bearer "):
        raise ApiError("No token provided", 401)

    token = auth.split(" ", 1)[1]
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise ApiError("Token expired", 401)
    except jwt.InvalidTokenError:
        raise ApiError("Invalid token", 401)


def require_auth(f):
    """Decorator to require authentication for an endpoint."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token_data = verify_token()
        if token_data.get("role") not in VALID_ROLES:
            raise ApiError("Forbidden: Admins and students only", 403)
        request.current_user = token_data
        return f(*args, **kwargs)
    return decorated_function


def require_role(*allowed_roles):
    """Decorator to require specific role(s) for an endpoint."""
    def decorator(f):
        @wraps(f)
        @require_auth
        def decorated_function(*args, **kwargs):
            if request.current_user.get("role") not in allowed_roles:
                raise ApiError("Forbidden: Admin access required", 403)
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def current_user_id():
    return request.current_user.get("userId")


def is_admin():
    return request.current_user.get("role") == "admin"


def ensure_owner_or_admin(owner_id):
    if not is_admin() and current_user_id() != owner_id:
        raise ApiError("Forbidden: Access denied", 403)


# --- User Validation ---

EMAIL_REGEX = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"


def validate_password(password):
    """Return a list of complaints about the password (empty when it is acceptable)."""
    errors = []
    if not isinstance(password, str) or len(password) < 8:
        errors.append("Password must be at least 8 characters long.")
    elif not re.search(r"\d", password):
        errors.append("Password must contain at least one number.")
    return errors


def validate_user_data(data, require_password=True):
    """
    Validates user data for registration and admin creation:
    1. email and full_name are required (plus password when creating).
    2. Email format validation.
    3. Password length and digit rule.
    4. Role must be admin or student when given.
    """
    errors = []

    required = ["email", "full_name"] + (["password"] if require_password else [])
    if not all(data.get(key) for key in required):
        errors.append(f"Missing required fields: {', '.join(required)} are required.")
        return False, errors

    if not re.match(EMAIL_REGEX, str(data["email"])):
        errors.append("Invalid email format.")

    role = data.get("role")
    if role is not None and role not in VALID_ROLES:
        errors.append(f"Invalid role. Must be one of: {', '.join(VALID_ROLES)}.")

    if require_password:
        errors.extend(validate_password(data["password"]))

    return not errors, errors


def insert_user(conn, data, role):
    """Insert a user with a hashed password and return the new user_id."""
    try:
        with conn:
            cursor = conn.execute(
                """
                INSERT INTO users
                (student_id, full_name, email, password_hash, role, department,
                 phone_number, total_penalties, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    data.get("student_id") or None,
                    data["full_name"].strip(),
                    data["email"].strip().lower(),
                    generate_password_hash(str(data["password"])),
                    role,
                    data.get("department"),
                    data.get("phone_number"),
                    _now(),
                ),
            )
    except sqlite3.IntegrityError as e:
        if "users.email" in str(e) or "users.student_id" in str(e):
            raise ApiError("Email or Student ID already exists")
        raise
    return cursor.lastrowid


USER_COLUMNS = (
    "user_id, student_id, email, full_name, role, department, "
    "phone_number, total_penalties, created_at"
)


# --- Auth Endpoints ---

@app.route("/")
def index():
    return jsonify({"message": "Lab Inventory API is running", "success": True}), 200


@app.route("/register", methods=["POST"])
def handle_registration():
    """Self-service registration; always creates a student account."""
    data = get_json_body()
    is_valid, errors = validate_user_data(data)
    if not is_valid:
        raise ApiError("Validation failed: " + ", ".join(errors))

    user_id = insert_user(get_db(), data, "student")
    logger.info("Registered student %s (user_id=%s)", data["email"], user_id)
    return jsonify({
        "message": "User registered successfully",
        "userId": user_id,
        "success": True,
    }), 201


@app.route("/login", methods=["POST"])
def handle_login():
    """Authenticate user and return JWT token on success."""
    data = get_json_body()
    email = str(data.get("email") or "").strip().lower()
    password = str(data.get("password") or "")
    if not email or not password:
        raise ApiError("Email and password required.")

    row = get_db().execute("SELECT * FROM users WHERE email = ? LIMIT 1", (email,)).fetchone()

    # Do not leak whether the user exists
    if row is None or not check_password_hash(row["password_hash"], password):
        raise ApiError("Invalid credentials")

    token = _generate_token({"userId": row["user_id"], "role": row["role"], "email": row["email"]})
    return jsonify({
        "message": "Login successful",
        "token": token,
        "user": {
            "user_id": row["user_id"],
            "student_id": row["student_id"],
            "email": row["email"],
            "full_name": row["full_name"],
            "role": row["role"],
            "department": row["department"],
            "phone_number": row["phone_number"],
        },
        "success": True,
    }), 200


# --- User Endpoints ---

def _user_filters(search_param):
    """Build the WHERE clause shared by user listing and search."""
    query = f"SELECT {USER_COLUMNS} FROM users WHERE 1=1"
    values = []

    role = request.args.get("role")
    if role:
        query += " AND role = ?"
        values.append(role)

    department = request.args.get("department")
    if department:
        query += " AND department = ?"
        values.append(department)

    search = request.args.get(search_param)
    if search:
        query += " AND (full_name LIKE ? OR email LIKE ? OR student_id LIKE ?)"
        term = f"%{search}%"
        values.extend([term, term, term])

    return query + " ORDER BY full_name ASC", values


@app.route("/api/users/profile", methods=["GET"])
@require_auth
def get_profile():
    row = fetch_one_or_404(
        get_db(),
        f"SELECT {USER_COLUMNS} FROM users WHERE user_id = ?",
        (current_user_id(),),
        "User not found",
    )
    return jsonify({"user": dict(row), "success": True}), 200


@app.route("/api/users/profile", methods=["PUT"])
@require_auth
def update_profile():
    data = get_json_body()
    conn = get_db()
    user = fetch_one_or_404(
        conn, "SELECT * FROM users WHERE user_id = ?", (current_user_id(),), "User not found"
    )
    full_name = data.get("full_name", user["full_name"])
    if not full_name or not str(full_name).strip():
        raise ApiError("full_name cannot be empty.")

    with conn:
        conn.execute(
            "UPDATE users SET full_name = ?, phone_number = ?, department = ? WHERE user_id = ?",
            (
                str(full_name).strip(),
                data.get("phone_number", user["phone_number"]),
                data.get("department", user["department"]),
                user["user_id"],
            ),
        )
    return jsonify({"message": "Profile updated successfully", "success": True}), 200


@app.route("/api/users/change-password", methods=["PUT"])
@require_auth
def change_password():
    data = get_json_body()
    current_password = data.get("currentPassword")
    new_password = data.get("newPassword")
    if not current_password or not new_password:
        raise ApiError("currentPassword and newPassword are required.")

    conn = get_db()
    user = fetch_one_or_404(
        conn, "SELECT password_hash FROM users WHERE user_id = ?", (current_user_id(),),
        "User not found",
    )
    if not check_password_hash(user["password_hash"], str(current_password)):
        raise ApiError("Current password is incorrect")

    errors = validate_password(new_password)
    if errors:
        raise ApiError("Validation failed: " + ", ".join(errors))

    with conn:
        conn.execute(
            "UPDATE users SET password_hash = ? WHERE user_id = ?",
            (generate_password_hash(new_password), current_user_id()),
        )
    return jsonify({"message": "Password changed successfully", "success": True}), 200


@app.route("/api/users", methods=["GET"])
@require_role("admin")
def get_all_users():
    query, values = _user_filters("search")
    rows = get_db().execute(query, values).fetchall()
    return jsonify({"users": rows_to_list(rows), "success": True}), 200


@app.route("/api/users/search", methods=["GET"])
@require_role("admin")
def search_users():
    query, values = _user_filters("query")
    rows = get_db().execute(query, values).fetchall()
    return jsonify({"users": rows_to_list(rows), "success": True}), 200


@app.route("/api/users/<int:user_id>", methods=["GET"])
@require_role("admin")
def get_user_by_id(user_id):
    row = fetch_one_or_404(
        get_db(), f"SELECT {USER_COLUMNS} FROM users WHERE user_id = ?", (user_id,),
        "User not found",
    )
    return jsonify({"user": dict(row), "success": True}), 200


@app.route("/api/users", methods=["POST"])
@require_role("admin")
def create_user():
    data = get_json_body()
    is_valid, errors = validate_user_data(data)
    if not is_valid:
        raise ApiError("Validation failed: " + ", ".join(errors))

    user_id = insert_user(get_db(), data, data.get("role") or "student")
    logger.info("Admin %s created user %s", current_user_id(), user_id)
    return jsonify({"message": "User created successfully", "userId": user_id, "success": True}), 201


USER_EDITABLE_FIELDS = (
    "email", "full_name", "student_id", "role", "department", "phone_number", "total_penalties",
)


def _update_user(user_id, data, partial):
    conn = get_db()
    user = fetch_one_or_404(conn, "SELECT * FROM users WHERE user_id = ?", (user_id,), "User not found")

    changes = {key: data[key] for key in USER_EDITABLE_FIELDS if key in data}
    if not changes:
        raise ApiError("No valid fields provided to update")

    merged = {key: changes.get(key, user[key]) for key in USER_EDITABLE_FIELDS}
    if not partial:
        is_valid, errors = validate_user_data(data, require_password=False)
        if not is_valid:
            raise ApiError("Validation failed: " + ", ".join(errors))
    if not merged["email"] or not re.match(EMAIL_REGEX, str(merged["email"])):
        raise ApiError("Invalid email format.")
    if merged["role"] not in VALID_ROLES:
        raise ApiError(f"Invalid role. Must be one of: {', '.join(VALID_ROLES)}.")
    if not merged["full_name"]:
        raise ApiError("full_name cannot be empty.")
    try:
        merged["total_penalties"] = max(0.0, float(merged["total_penalties"] or 0))
    except (TypeError, ValueError):
        raise ApiError("total_penalties must be a number.")

    assignments = ", ".join(f"{key} = ?" for key in USER_EDITABLE_FIELDS)
    try:
        with conn:
            conn.execute(
                f"UPDATE users SET {assignments} WHERE user_id = ?",
                [merged[key] for key in USER_EDITABLE_FIELDS] + [user_id],
            )
    except sqlite3.IntegrityError:
        raise ApiError("Email or Student ID already exists")
    return jsonify({"message": "User updated successfully", "success": True}), 200


@app.route("/api/users/<int:user_id>", methods=["PUT"])
@require_role("admin")
def update_user(user_id):
    return _update_user(user_id, get_json_body(), partial=False)


@app.route("/api/users/<int:user_id>", methods=["PATCH"])
@require_role("admin")
def update_user_partial(user_id):
    return _update_user(user_id, get_json_body(), partial=True)


@app.route("/api/users/<int:user_id>/reset-password", methods=["PUT"])
@require_role("admin")
def reset_user_password(user_id):
    data = get_json_body()
    new_password = data.get("newPassword")
    errors = validate_password(new_password)
    if errors:
        raise ApiError("Validation failed: " + ", ".join(errors))

    conn = get_db()
    with conn:
        cursor = conn.execute(
            "UPDATE users SET password_hash = ? WHERE user_id = ?",
            (generate_password_hash(new_password), user_id),
        )
    if cursor.rowcount == 0:
        raise ApiError("User not found", 404)
    logger.info("Admin %s reset password for user %s", current_user_id(), user_id)
    return jsonify({"message": "Password reset successfully", "success": True}), 200


@app.route("/api/users/<int:user_id>", methods=["DELETE"])
@require_role("admin")
def delete_user(user_id):
    if user_id == current_user_id():
        raise ApiError("You cannot delete your own account")
    conn = get_db()
    try:
        with conn:
            cursor = conn.execute("DELETE FROM users WHERE user_id = ?", (user_id,))
    except sqlite3.IntegrityError:
        raise ApiError("Cannot delete user. It is referenced by bookings, penalties or reports.")
    if cursor.rowcount == 0:
        raise ApiError("User not found", 404)
    return jsonify({"message": "User deleted successfully", "success": True}), 200


# --- Component Management Functions ---

QUANTITY_FIELDS = (
    "total_quantity", "available_quantity", "damaged_quantity", "under_maintenance_quantity",
)
COMPONENT_TEXT_FIELDS = ("component_name", "component_code", "category", "description", "status")


def component_image_folder():
    return os.path.join(UPLOAD_FOLDER, "components")


def allowed_image(filename):
    return "." in filename and filename.rsplit(".", 1)[1].lower() in ALLOWED_IMAGE_EXTENSIONS


def save_component_image(file_storage):
    """Store an uploaded image and return the stored file name."""
    if not file_storage or not file_storage.filename:
        return None
    if not allowed_image(file_storage.filename):
        raise ApiError(
            "Invalid image type. Allowed: " + ", ".join(sorted(ALLOWED_IMAGE_EXTENSIONS))
        )
    folder = component_image_folder()
    os.makedirs(folder, exist_ok=True)
    filename = f"{uuid.uuid4().hex}_{secure_filename(file_storage.filename)}"
    file_storage.save(os.path.join(folder, filename))
    return filename


def read_component_payload():
    """Components accept either JSON or multipart form data (for the image)."""
    if request.files or request.form:
        return request.form.to_dict()
    return get_json_body()


def validate_component_data(values, on_loan=0, check_totals=True):
    """
    Validates merged component values.
    Quantities must be non-negative. When ``check_totals`` is set, units that
    are available, on loan, damaged or under maintenance cannot add up to
    more than the total.
    """
    errors = []
    if not values.get("component_name") or not str(values["component_name"]).strip():
        errors.append("component_name is required.")
    if not values.get("component_code") or not str(values["component_code"]).strip():
        errors.append("component_code is required.")
    if values.get("status") not in COMPONENT_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(COMPONENT_STATUSES)}.")

    quantities = {}
    for field in QUANTITY_FIELDS:
        try:
            quantities[field] = parse_int(values.get(field) or 0, field)
        except ApiError as e:
            errors.append(e.message)
    if check_totals and len(quantities) == len(QUANTITY_FIELDS):
        accounted = (
            quantities["available_quantity"]
            + on_loan
            + quantities["damaged_quantity"]
            + quantities["under_maintenance_quantity"]
        )
        if accounted > quantities["total_quantity"]:
            errors.append(
                "available, on loan, damaged and under maintenance quantities "
                f"cannot exceed total_quantity ({on_loan} currently on loan)."
            )
    return not errors, errors, quantities


def quantity_on_loan(conn, component_id):
    """Units of the component held by approved or return-pending bookings."""
    placeholders = ", ".join("?" for _ in STOCK_HOLDING_STATUSES)
    row = conn.execute(
        f"SELECT COALESCE(SUM(quantity), 0) AS on_loan FROM bookings "
        f"WHERE component_id = ? AND status IN ({placeholders})",
        (component_id, *STOCK_HOLDING_STATUSES),
    ).fetchone()
    return row["on_loan"]


# --- Component Endpoints ---

@app.route("/api/components/categories", methods=["GET"])
def get_categories():
    rows = get_db().execute(
        "SELECT DISTINCT category FROM components WHERE category IS NOT NULL ORDER BY category ASC"
    ).fetchall()
    return jsonify({"categories": [row["category"] for row in rows], "success": True}), 200


@app.route("/api/components", methods=["GET"])
def get_components():
    query = "SELECT * FROM components WHERE 1=1"
    values = []

    category = request.args.get("category")
    if category:
        query += " AND category = ?"
        values.append(category)

    status = request.args.get("status")
    if status:
        query += " AND status = ?"
        values.append(status)

    search = request.args.get("search")
    if search:
        query += " AND (component_name LIKE ? OR component_code LIKE ? OR description LIKE ?)"
        term = f"%{search}%"
        values.extend([term, term, term])

    if request.args.get("available") == "true":
        query += " AND available_quantity > 0"

    rows = get_db().execute(query + " ORDER BY component_name ASC", values).fetchall()
    return jsonify({"components": rows_to_list(rows), "success": True}), 200


@app.route("/api/components/<int:component_id>", methods=["GET"])
def get_component_by_id(component_id):
    row = fetch_one_or_404(
        get_db(), "SELECT * FROM components WHERE component_id = ?", (component_id,),
        "Component not found",
    )
    return jsonify({"component": dict(row), "success": True}), 200


@app.route("/api/components/code/<code>", methods=["GET"])
def get_component_by_code(code):
    row = fetch_one_or_404(
        get_db(), "SELECT * FROM components WHERE component_code = ?", (code,),
        "Component not found",
    )
    return jsonify({"component": dict(row), "success": True}), 200


@app.route("/api/components/<int:component_id>/image", methods=["GET"])
def get_component_image(component_id):
    row = get_db().execute(
        "SELECT image FROM components WHERE component_id = ?", (component_id,)
    ).fetchone()
    if row is None or not row["image"]:
        raise ApiError("Image not found", 404)
    if not os.path.exists(os.path.join(component_image_folder(), row["image"])):
        raise ApiError("Image file not found", 404)
    return send_from_directory(component_image_folder(), row["image"])


@app.route("/uploads/<path:filename>", methods=["GET"])
def serve_upload(filename):
    return send_from_directory(UPLOAD_FOLDER, filename)


@app.route("/api/components", methods=["POST"])
@require_role("admin")
def create_component():
    """Create a component (admin only); accepts an optional image upload."""
    data = read_component_payload()
    values = {field: data.get(field) for field in COMPONENT_TEXT_FIELDS + QUANTITY_FIELDS}
    values["status"] = values["status"] or "active"
    if values["available_quantity"] in (None, ""):
        values["available_quantity"] = values["total_quantity"]

    is_valid, errors, quantities = validate_component_data(values)
    if not is_valid:
        raise ApiError("Validation failed: " + ", ".join(errors))

    image = save_component_image(request.files.get("image"))
    conn = get_db()
    try:
        with conn:
            cursor = conn.execute(
                """
                INSERT INTO components
                (component_code, component_name, category, description, image, status,
                 total_quantity, available_quantity, damaged_quantity,
                 under_maintenance_quantity, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(values["component_code"]).strip(),
                    str(values["component_name"]).strip(),
                    values["category"],
                    values["description"],
                    image,
                    values["status"],
                    quantities["total_quantity"],
                    quantities["available_quantity"],
                    quantities["damaged_quantity"],
                    quantities["under_maintenance_quantity"],
                    _now(),
                ),
            )
    except sqlite3.IntegrityError as e:
        if "components.component_code" in str(e):
            raise ApiError("Component code already exists")
        raise
    logger.info("Created component %s (%s)", cursor.lastrowid, values["component_code"])
    return jsonify({
        "message": "Component created successfully",
        "componentId": cursor.lastrowid,
        "success": True,
    }), 201


def _update_component(component_id, data, partial):
    conn = get_db()
    component = fetch_one_or_404(
        conn, "SELECT * FROM components WHERE component_id = ?", (component_id,),
        "Component not found",
    )
    fields = COMPONENT_TEXT_FIELDS + QUANTITY_FIELDS
    changes = {key: data[key] for key in fields if key in data}
    image_file = request.files.get("image")
    if not changes and not image_file:
        raise ApiError("No fields provided to update")
    if not partial:
        missing = [key for key in ("component_name", "component_code") if not data.get(key)]
        if missing:
            raise ApiError(f"Missing required fields: {', '.join(missing)}")

    merged = {key: changes.get(key, component[key]) for key in fields}
    # Totals are re-checked only when this request changes a quantity.
    quantity_changed = any(
        key in changes and str(changes[key]) != str(component[key]) for key in QUANTITY_FIELDS
    )
    is_valid, errors, quantities = validate_component_data(
        merged,
        on_loan=quantity_on_loan(conn, component_id) if quantity_changed else 0,
        check_totals=quantity_changed,
    )
    if not is_valid:
        raise ApiError("Validation failed: " + ", ".join(errors))
    merged.update(quantities)
    merged["image"] = save_component_image(image_file) or component["image"]
    merged["updated_at"] = _now()

    columns = fields + ("image", "updated_at")
    assignments = ", ".join(f"{key} = ?" for key in columns)
    try:
        with conn:
            conn.execute(
                f"UPDATE components SET {assignments} WHERE component_id = ?",
                [merged[key] for key in columns] + [component_id],
            )
    except sqlite3.IntegrityError as e:
        if "components.component_code" in str(e):
            raise ApiError("Component code already exists")
        raise
    return jsonify({"message": "Component updated successfully", "success": True}), 200


@app.route("/api/components/<int:component_id>", methods=["PUT"])
@require_role("admin")
def update_component(component_id):
    return _update_component(component_id, read_component_payload(), partial=False)


@app.route("/api/components/<int:component_id>", methods=["PATCH"])
@require_role("admin")
def update_component_partial(component_id):
    return _update_component(component_id, get_json_body(), partial=True)


@app.route("/api/components/<int:component_id>", methods=["DELETE"])
@require_role("admin")
def delete_component(component_id):
    conn = get_db()
    active = conn.execute(
        "SELECT COUNT(*) AS count FROM bookings WHERE component_id = ? "
        "AND status IN ('requested', 'approved', 'return_pending')",
        (component_id,),
    ).fetchone()["count"]
    if active:
        raise ApiError("Cannot delete component with active bookings")

    waiting = conn.execute(
        "SELECT COUNT(*) AS count FROM waitlist WHERE component_id = ? AND status = 'waiting'",
        (component_id,),
    ).fetchone()["count"]
    if waiting:
        raise ApiError("Cannot delete component with active waitlist entries")

    try:
        with conn:
            cursor = conn.execute("DELETE FROM components WHERE component_id = ?", (component_id,))
    except sqlite3.IntegrityError:
        raise ApiError(
            "Cannot delete component. It is referenced by other records (bookings, waitlist, etc.)"
        )
    if cursor.rowcount == 0:
        raise ApiError("Component not found", 404)
    return jsonify({"message": "Component deleted successfully", "success": True}), 200


# --- Booking Lifecycle ---

BOOKING_SELECT = """
    SELECT b.*, u.full_name, u.student_id, u.email, u.department,
           c.component_name, c.component_code, c.category, c.available_quantity
    FROM bookings b
    JOIN users u ON b.user_id = u.user_id
    JOIN components c ON b.component_id = c.component_id
"""


def load_booking(conn, booking_id):
    return fetch_one_or_404(
        conn, "SELECT * FROM bookings WHERE booking_id = ?", (booking_id,), "Booking not found"
    )


def reserve_stock(conn, component_id, quantity):
    """Take ``quantity`` out of the available pool, failing if there is not enough."""
    cursor = conn.execute(
        """
        UPDATE components
        SET available_quantity = available_quantity - ?, updated_at = ?
        WHERE component_id = ? AND available_quantity >= ?
        """,
        (quantity, _now(), component_id, quantity),
    )
    if cursor.rowcount == 0:
        raise ApiError("Insufficient quantity available")


def release_stock(conn, component_id, quantity):
    conn.execute(
        """
        UPDATE components
        SET available_quantity = MIN(total_quantity, available_quantity + ?), updated_at = ?
        WHERE component_id = ?
        """,
        (quantity, _now(), component_id),
    )


def transition_booking(conn, booking, action, **changes):
    """
    Move a booking along BOOKING_TRANSITIONS. The status check is repeated in
    the UPDATE so two concurrent transitions cannot both succeed.
    """
    source, target = BOOKING_TRANSITIONS[action]
    message = f"Booking is not in {source.replace('_', ' ')} status"
    if booking["status"] != source:
        raise ApiError(message)

    changes["status"] = target
    changes["updated_at"] = _now()
    assignments = ", ".join(f"{column} = ?" for column in changes)
    cursor = conn.execute(
        f"UPDATE bookings SET {assignments} WHERE booking_id = ? AND status = ?",
        list(changes.values()) + [booking["booking_id"], source],
    )
    if cursor.rowcount == 0:
        raise ApiError(message)


def calculate_days_overdue(expected_return, now=None):
    """Whole days past the expected return date, never less than one."""
    if expected_return is None:
        return 1
    now = now or datetime.datetime.now(timezone.utc)
    seconds = (now - expected_return).total_seconds()
    return max(1, math.ceil(seconds / 86400))


def calculate_overdue_penalty(days_overdue, quantity, custom_amount=None):
    if custom_amount:
        return custom_amount
    return days_overdue * OVERDUE_PENALTY_PER_DAY * quantity


# --- Booking Endpoints ---

@app.route("/api/bookings", methods=["POST"])
@require_auth
def create_booking():
    """Create a new booking request for the current user."""
    data = get_json_body()
    required_fields = ["component_id", "quantity", "expected_return_date"]
    if not all(data.get(field) not in (None, "") for field in required_fields):
        raise ApiError(
            "Missing required fields: component_id, quantity and expected_return_date are required"
        )

    quantity = parse_int(data["quantity"], "quantity", minimum=1)
    expected_return_date = parse_optional_date(data["expected_return_date"], "expected_return_date")

    conn = get_db()
    component = fetch_one_or_404(
        conn,
        "SELECT component_name, available_quantity, status FROM components WHERE component_id = ?",
        (data["component_id"],),
        "Component not found",
    )
    if component["status"] != "active":
        raise ApiError("Component is not available for booking")
    if component["available_quantity"] < quantity:
        raise ApiError(
            "Insufficient quantity available",
            available=component["available_quantity"],
            requested=quantity,
        )

    with conn:
        cursor = conn.execute(
            """
            INSERT INTO bookings
            (user_id, component_id, quantity, status, requested_date, expected_return_date, reason)
            VALUES (?, ?, ?, 'requested', ?, ?, ?)
            """,
            (current_user_id(), data["component_id"], quantity, _now(),
             expected_return_date, data.get("reason")),
        )
    logger.info("User %s requested booking %s", current_user_id(), cursor.lastrowid)
    return jsonify({
        "message": "Booking created successfully",
        "bookingId": cursor.lastrowid,
        "success": True,
    }), 201


@app.route("/api/bookings", methods=["GET"])
@require_role("admin")
def get_all_bookings():
    query = BOOKING_SELECT + " WHERE 1=1"
    values = []

    status = request.args.get("status")
    if status:
        query += " AND b.status = ?"
        values.append(status)

    start_date = request.args.get("startDate")
    if start_date:
        query += " AND DATE(b.requested_date) >= DATE(?)"
        values.append(start_date)

    end_date = request.args.get("endDate")
    if end_date:
        query += " AND DATE(b.requested_date) <= DATE(?)"
        values.append(end_date)

    rows = get_db().execute(query + " ORDER BY b.requested_date DESC, b.booking_id DESC", values)
    return jsonify({"bookings": rows_to_list(rows.fetchall()), "success": True}), 200


@app.route("/api/bookings/my", methods=["GET"])
@require_auth
def get_my_bookings():
    rows = get_db().execute(
        BOOKING_SELECT + " WHERE b.user_id = ? ORDER BY b.requested_date DESC, b.booking_id DESC",
        (current_user_id(),),
    ).fetchall()
    return jsonify({"bookings": rows_to_list(rows), "success": True}), 200


@app.route("/api/bookings/pending", methods=["GET"])
@require_role("admin")
def get_pending_bookings():
    """Get all requested bookings, oldest first (admin only)."""
    rows = get_db().execute(
        BOOKING_SELECT + " WHERE b.status = 'requested' ORDER BY b.requested_date ASC, b.booking_id ASC"
    ).fetchall()
    return jsonify({"bookings": rows_to_list(rows), "success": True}), 200


@app.route("/api/bookings/user/<int:user_id>", methods=["GET"])
@require_auth
def get_user_bookings(user_id):
    ensure_owner_or_admin(user_id)
    rows = get_db().execute(
        BOOKING_SELECT + " WHERE b.user_id = ? ORDER BY b.requested_date DESC, b.booking_id DESC",
        (user_id,),
    ).fetchall()
    return jsonify({"bookings": rows_to_list(rows), "success": True}), 200


@app.route("/api/bookings/<int:booking_id>", methods=["GET"])
@require_auth
def get_booking_by_id(booking_id):
    row = fetch_one_or_404(
        get_db(), BOOKING_SELECT + " WHERE b.booking_id = ?", (booking_id,), "Booking not found"
    )
    ensure_owner_or_admin(row["user_id"])
    return jsonify({"booking": dict(row), "success": True}), 200


@app.route("/api/bookings/<int:booking_id>/approve", methods=["PATCH"])
@require_role("admin")
def approve_booking(booking_id):
    """Approve a requested booking and take its quantity out of stock."""
    conn = get_db()
    booking = load_booking(conn, booking_id)
    with conn:
        transition_booking(conn, booking, "approve")
        reserve_stock(conn, booking["component_id"], booking["quantity"])
    logger.info("Booking %s approved by admin %s", booking_id, current_user_id())
    return jsonify({"message": "Booking approved successfully", "success": True}), 200


@app.route("/api/bookings/<int:booking_id>/reject", methods=["PATCH"])
@require_role("admin")
def reject_booking(booking_id):
    data = get_optional_json()
    conn = get_db()
    booking = load_booking(conn, booking_id)
    reason = f"{booking['reason'] or ''} | Rejection: {data.get('reason') or 'No reason provided'}"
    with conn:
        transition_booking(conn, booking, "reject", reason=reason)
    logger.info("Booking %s rejected by admin %s", booking_id, current_user_id())
    return jsonify({"message": "Booking rejected successfully", "success": True}), 200


@app.route("/api/bookings/<int:booking_id>/return", methods=["PATCH"])
@require_auth
def return_booking(booking_id):
    """Owner (or admin) asks to return; stock is restored only when an admin approves."""
    conn = get_db()
    booking = load_booking(conn, booking_id)
    ensure_owner_or_admin(booking["user_id"])
    with conn:
        transition_booking(conn, booking, "return")
    logger.info("Return requested for booking %s", booking_id)
    return jsonify({
        "message": "Return request submitted. Awaiting admin approval.",
        "success": True,
    }), 200


@app.route("/api/bookings/<int:booking_id>/approve-return", methods=["PATCH"])
@require_role("admin")
def approve_return(booking_id):
    conn = get_db()
    booking = load_booking(conn, booking_id)
    with conn:
        transition_booking(conn, booking, "approve_return", actual_return_date=_now())
        release_stock(conn, booking["component_id"], booking["quantity"])
    logger.info("Return of booking %s approved by admin %s", booking_id, current_user_id())
    return jsonify({"message": "Return approved. Component quantity restored.", "success": True}), 200


@app.route("/api/bookings/<int:booking_id>/overdue", methods=["PATCH"])
@require_role("admin")
def mark_overdue(booking_id):
    """
    Flag an approved booking as overdue and charge the borrower.

    The flag, the penalty row and the user's running total are written in one
    transaction, so either all three land or none do.
    """
    data = get_optional_json()
    custom_amount = None
    if data.get("penaltyAmount") not in (None, "", 0):
        custom_amount = parse_amount(data["penaltyAmount"], "penaltyAmount")

    conn = get_db()
    booking = fetch_one_or_404(
        conn,
        """
        SELECT b.*, c.component_name
        FROM bookings b
        JOIN components c ON b.component_id = c.component_id
        WHERE b.booking_id = ? AND b.status = 'approved'
        """,
        (booking_id,),
        "Booking not found or not in approved status",
    )
    if booking["is_overdue"]:
        raise ApiError("Booking is already marked as overdue")

    now = datetime.datetime.now(timezone.utc)
    days_overdue = calculate_days_overdue(parse_datetime(booking["expected_return_date"]), now)
    amount = calculate_overdue_penalty(days_overdue, booking["quantity"], custom_amount)
    due_date = (now + datetime.timedelta(days=PENALTY_DUE_DAYS)).strftime("%Y-%m-%d %H:%M:%S")
    notes = (
        f"Late return penalty for {booking['component_name']}. "
        f"{days_overdue} day(s) overdue."
    )

    with conn:
        cursor = conn.execute(
            "UPDATE bookings SET is_overdue = 1, updated_at = ? "
            "WHERE booking_id = ? AND is_overdue = 0 AND status = 'approved'",
            (_now(), booking_id),
        )
        if cursor.rowcount == 0:
            raise ApiError("Booking is already marked as overdue")
        cursor = conn.execute(
            """
            INSERT INTO penalties
            (user_id, booking_id, penalty_type, amount, status, penalty_date, due_date, notes)
            VALUES (?, ?, 'overdue', ?, 'pending', ?, ?, ?)
            """,
            (booking["user_id"], booking_id, amount, _now(), due_date, notes),
        )
        penalty_id = cursor.lastrowid
        adjust_user_penalties(conn, booking["user_id"], amount)

    logger.info(
        "Booking %s marked overdue (%s day(s)); penalty %s of %s created",
        booking_id, days_overdue, penalty_id, amount,
    )
    return jsonify({
        "message": "Booking marked as overdue and penalty created",
        "penaltyId": penalty_id,
        "penaltyAmount": amount,
        "daysOverdue": days_overdue,
        "success": True,
    }), 200


BOOKING_EDITABLE_FIELDS = ("user_id", "component_id", "quantity", "expected_return_date", "reason")


def _update_booking(booking_id, data, partial):
    if "status" in data:
        raise ApiError(
            "Booking status can only be changed through the approve, reject, return and overdue actions"
        )
    conn = get_db()
    booking = load_booking(conn, booking_id)

    changes = {key: data[key] for key in BOOKING_EDITABLE_FIELDS if key in data}
    if not changes:
        raise ApiError("No fields provided to update")
    if not partial:
        missing = [key for key in BOOKING_EDITABLE_FIELDS[:4] if data.get(key) in (None, "")]
        if missing:
            raise ApiError(f"Missing required fields: {', '.join(missing)}")

    for key in ("user_id", "component_id"):
        if key in changes:
            changes[key] = parse_int(changes[key], key, minimum=1)
    if "quantity" in changes:
        changes["quantity"] = parse_int(changes["quantity"], "quantity", minimum=1)

    stock_fields = {"user_id", "component_id", "quantity"}
    if booking["status"] != "requested" and any(
        changes[key] != booking[key] for key in stock_fields & changes.keys()
    ):
        raise ApiError("Only requested bookings can change user, component or quantity")

    if "expected_return_date" in changes:
        changes["expected_return_date"] = parse_optional_date(
            changes["expected_return_date"], "expected_return_date"
        )
    if "component_id" in changes:
        fetch_one_or_404(
            conn, "SELECT 1 FROM components WHERE component_id = ?", (changes["component_id"],),
            "Component not found",
        )
    if "user_id" in changes:
        fetch_one_or_404(
            conn, "SELECT 1 FROM users WHERE user_id = ?", (changes["user_id"],), "User not found"
        )

    changes["updated_at"] = _now()
    assignments = ", ".join(f"{key} = ?" for key in changes)
    with conn:
        conn.execute(
            f"UPDATE bookings SET {assignments} WHERE booking_id = ?",
            list(changes.values()) + [booking_id],
        )
    return jsonify({
        "message": "Booking updated successfully",
        "updatedFields": [key for key in changes if key != "updated_at"],
        "success": True,
    }), 200


@app.route("/api/bookings/<int:booking_id>", methods=["PUT"])
@require_role("admin")
def update_booking(booking_id):
    return _update_booking(booking_id, get_json_body(), partial=False)


@app.route("/api/bookings/<int:booking_id>", methods=["PATCH"])
@require_role("admin")
def update_booking_partial(booking_id):
    return _update_booking(booking_id, get_json_body(), partial=True)


@app.route("/api/bookings/<int:booking_id>", methods=["DELETE"])
@require_role("admin")
def delete_booking(booking_id):
    """Delete a booking, putting back any stock it was holding."""
    conn = get_db()
    booking = load_booking(conn, booking_id)
    try:
        with conn:
            if booking["status"] in STOCK_HOLDING_STATUSES:
                release_stock(conn, booking["component_id"], booking["quantity"])
            conn.execute("DELETE FROM bookings WHERE booking_id = ?", (booking_id,))
    except sqlite3.IntegrityError:
        raise ApiError("Cannot delete booking. It is referenced by penalties or damage reports.")
    return jsonify({"message": "Booking deleted successfully", "success": True}), 200


# --- Penalty Engine ---

PENALTY_SELECT = """
    SELECT p.*, u.full_name, u.email, u.student_id,
           b.component_id, c.component_name
    FROM penalties p
    JOIN users u ON p.user_id = u.user_id
    JOIN bookings b ON p.booking_id = b.booking_id
    LEFT JOIN components c ON b.component_id = c.component_id
"""


def pending_contribution(status, amount):
    """How much a penalty adds to its user's running total."""
    return amount if status == "pending" else 0


def adjust_user_penalties(conn, user_id, delta):
    """Shift a user's running penalty total, never below zero."""
    if not delta:
        return
    conn.execute(
        "UPDATE users SET total_penalties = MAX(0, COALESCE(total_penalties, 0) + ?) "
        "WHERE user_id = ?",
        (delta, user_id),
    )


def load_penalty(conn, penalty_id):
    return fetch_one_or_404(
        conn, "SELECT * FROM penalties WHERE penalty_id = ?", (penalty_id,), "Penalty not found"
    )


@app.route("/api/penalties", methods=["GET"])
@require_role("admin")
def get_all_penalties():
    query = PENALTY_SELECT + " WHERE 1=1"
    values = []
    for param, column in (("status", "p.status"), ("type", "p.penalty_type")):
        if request.args.get(param):
            query += f" AND {column} = ?"
            values.append(request.args[param])
    rows = get_db().execute(query + " ORDER BY p.due_date DESC, p.penalty_id DESC", values)
    return jsonify({"penalties": rows_to_list(rows.fetchall()), "success": True}), 200


@app.route("/api/penalties/my", methods=["GET"])
@require_auth
def get_my_penalties():
    rows = get_db().execute(
        PENALTY_SELECT + " WHERE p.user_id = ? ORDER BY p.due_date DESC, p.penalty_id DESC",
        (current_user_id(),),
    ).fetchall()
    return jsonify({"penalties": rows_to_list(rows), "success": True}), 200


@app.route("/api/penalties/user/<int:user_id>", methods=["GET"])
@require_auth
def get_penalties_by_user(user_id):
    ensure_owner_or_admin(user_id)
    rows = get_db().execute(
        PENALTY_SELECT + " WHERE p.user_id = ? ORDER BY p.due_date DESC, p.penalty_id DESC",
        (user_id,),
    ).fetchall()
    return jsonify({"penalties": rows_to_list(rows), "success": True}), 200


@app.route("/api/penalties/stats", methods=["GET"])
@require_role("admin")
def get_penalty_stats():
    row = get_db().execute(
        """
        SELECT
            COUNT(*) AS total_penalties,
            COALESCE(SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END), 0) AS pending_count,
            COALESCE(SUM(CASE WHEN status = 'paid' THEN 1 ELSE 0 END), 0) AS paid_count,
            COALESCE(SUM(CASE WHEN status = 'waived' THEN 1 ELSE 0 END), 0) AS waived_count,
            COALESCE(SUM(CASE WHEN status = 'pending' THEN amount ELSE 0 END), 0)
                AS total_pending_amount,
            COALESCE(SUM(CASE WHEN status = 'paid' THEN amount ELSE 0 END), 0)
                AS total_paid_amount,
            COALESCE(SUM(CASE WHEN penalty_type = 'overdue' THEN 1 ELSE 0 END), 0)
                AS overdue_count,
            COALESCE(SUM(CASE WHEN penalty_type = 'damage' THEN 1 ELSE 0 END), 0)
                AS damage_count
        FROM penalties
        """
    ).fetchone()
    return jsonify({"stats": dict(row), "success": True}), 200


@app.route("/api/penalties/<int:penalty_id>", methods=["GET"])
@require_auth
def get_penalty_by_id(penalty_id):
    row = fetch_one_or_404(
        get_db(), PENALTY_SELECT + " WHERE p.penalty_id = ?", (penalty_id,), "Penalty not found"
    )
    ensure_owner_or_admin(row["user_id"])
    return jsonify({"penalty": dict(row), "success": True}), 200


@app.route("/api/penalties", methods=["POST"])
@require_role("admin")
def create_penalty():
    data = get_json_body()
    required = ("user_id", "booking_id", "penalty_type", "amount")
    if not all(data.get(key) not in (None, "") for key in required):
        raise ApiError(
            "Missing required fields: user_id, booking_id, penalty_type, and amount are required"
        )
    if data["penalty_type"] not in PENALTY_TYPES:
        raise ApiError(f"Invalid penalty_type. Must be one of: {', '.join(PENALTY_TYPES)}.")
    amount = parse_amount(data["amount"])
    due_date = parse_optional_date(data.get("due_date"), "due_date")

    conn = get_db()
    fetch_one_or_404(conn, "SELECT 1 FROM users WHERE user_id = ?", (data["user_id"],), "User not found")
    fetch_one_or_404(
        conn, "SELECT 1 FROM bookings WHERE booking_id = ?", (data["booking_id"],), "Booking not found"
    )
    if data.get("damage_report_id"):
        fetch_one_or_404(
            conn, "SELECT 1 FROM damage_reports WHERE damage_report_id = ?",
            (data["damage_report_id"],), "Damage report not found",
        )

    with conn:
        cursor = conn.execute(
            """
            INSERT INTO penalties
            (user_id, booking_id, damage_report_id, penalty_type, amount, status,
             penalty_date, due_date, notes)
            VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?)
            """,
            (data["user_id"], data["booking_id"], data.get("damage_report_id"),
             data["penalty_type"], amount, _now(), due_date, data.get("notes")),
        )
        adjust_user_penalties(conn, data["user_id"], amount)
    logger.info("Penalty %s of %s created for user %s", cursor.lastrowid, amount, data["user_id"])
    return jsonify({
        "message": "Penalty created successfully",
        "penaltyId": cursor.lastrowid,
        "success": True,
    }), 201


@app.route("/api/penalties/<int:penalty_id>", methods=["PUT"])
@require_role("admin")
def update_penalty(penalty_id):
    data = get_json_body()
    conn = get_db()
    penalty = load_penalty(conn, penalty_id)

    penalty_type = data.get("penalty_type", penalty["penalty_type"])
    if penalty_type not in PENALTY_TYPES:
        raise ApiError(f"Invalid penalty_type. Must be one of: {', '.join(PENALTY_TYPES)}.")
    status = data.get("status", penalty["status"])
    if status not in PENALTY_STATUSES:
        raise ApiError(f"Invalid status. Must be one of: {', '.join(PENALTY_STATUSES)}.")
    amount = parse_amount(data["amount"]) if "amount" in data else penalty["amount"]
    due_date = parse_optional_date(data.get("due_date", penalty["due_date"]), "due_date")
    paid_date = parse_optional_date(data.get("paid_date", penalty["paid_date"]), "paid_date")
    if status == "paid" and not paid_date:
        paid_date = _now()

    delta = pending_contribution(status, amount) - pending_contribution(
        penalty["status"], penalty["amount"]
    )
    with conn:
        conn.execute(
            """
            UPDATE penalties
            SET penalty_type = ?, amount = ?, status = ?, due_date = ?, paid_date = ?, notes = ?
            WHERE penalty_id = ?
            """,
            (penalty_type, amount, status, due_date, paid_date,
             data.get("notes", penalty["notes"]), penalty_id),
        )
        adjust_user_penalties(conn, penalty["user_id"], delta)
    return jsonify({"message": "Penalty updated successfully", "success": True}), 200


@app.route("/api/penalties/<int:penalty_id>/status", methods=["PATCH"])
@require_role("admin")
def update_penalty_status(penalty_id):
    """Mark a penalty paid, waived, or back to pending; keeps the user's total in step."""
    data = get_json_body()
    status = data.get("status")
    if status not in PENALTY_STATUSES:
        raise ApiError(f"Invalid status. Must be one of: {', '.join(PENALTY_STATUSES)}.")

    conn = get_db()
    penalty = load_penalty(conn, penalty_id)
    paid_date = _now() if status == "paid" else None
    delta = pending_contribution(status, penalty["amount"]) - pending_contribution(
        penalty["status"], penalty["amount"]
    )
    with conn:
        conn.execute(
            "UPDATE penalties SET status = ?, paid_date = ?, notes = ? WHERE penalty_id = ?",
            (status, paid_date, data.get("notes") or penalty["notes"], penalty_id),
        )
        adjust_user_penalties(conn, penalty["user_id"], delta)
    logger.info("Penalty %s moved %s -> %s", penalty_id, penalty["status"], status)
    return jsonify({"message": "Penalty status updated successfully", "success": True}), 200


@app.route("/api/penalties/<int:penalty_id>", methods=["DELETE"])
@require_role("admin")
def delete_penalty(penalty_id):
    conn = get_db()
    penalty = load_penalty(conn, penalty_id)
    with conn:
        conn.execute("DELETE FROM penalties WHERE penalty_id = ?", (penalty_id,))
        adjust_user_penalties(
            conn, penalty["user_id"], -pending_contribution(penalty["status"], penalty["amount"])
        )
    return jsonify({"message": "Penalty deleted successfully", "success": True}), 200


# --- Waitlist Endpoints ---

WAITLIST_SELECT = """
    SELECT w.*, u.full_name, u.email, u.student_id,
           c.component_name, c.component_code, c.available_quantity
    FROM waitlist w
    JOIN users u ON w.user_id = u.user_id
    JOIN components c ON w.component_id = c.component_id
"""
ALREADY_WAITING = "You are already on the waitlist for this component"


def load_waitlist_entry(conn, waitlist_id):
    return fetch_one_or_404(
        conn, "SELECT * FROM waitlist WHERE waitlist_id = ?", (waitlist_id,),
        "Waitlist entry not found",
    )


@app.route("/api/waitlist", methods=["GET"])
@require_role("admin")
def get_all_waitlist():
    query = WAITLIST_SELECT
    values = []
    if request.args.get("status"):
        query += " WHERE w.status = ?"
        values.append(request.args["status"])
    rows = get_db().execute(query + " ORDER BY w.requested_date ASC, w.waitlist_id ASC", values)
    return jsonify({"waitlist": rows_to_list(rows.fetchall()), "success": True}), 200


@app.route("/api/waitlist/my", methods=["GET"])
@require_auth
def get_my_waitlist():
    rows = get_db().execute(
        WAITLIST_SELECT + " WHERE w.user_id = ? ORDER BY w.requested_date DESC, w.waitlist_id DESC",
        (current_user_id(),),
    ).fetchall()
    return jsonify({"waitlist": rows_to_list(rows), "success": True}), 200


@app.route("/api/waitlist/component/<int:component_id>", methods=["GET"])
@require_auth
def get_waitlist_by_component(component_id):
    """Waiting entries for one component, first come first served."""
    rows = get_db().execute(
        WAITLIST_SELECT
        + " WHERE w.component_id = ? AND w.status = 'waiting'"
        + " ORDER BY w.requested_date ASC, w.waitlist_id ASC",
        (component_id,),
    ).fetchall()
    return jsonify({"waitlist": rows_to_list(rows), "success": True}), 200


@app.route("/api/waitlist/<int:waitlist_id>", methods=["GET"])
@require_auth
def get_waitlist_by_id(waitlist_id):
    row = fetch_one_or_404(
        get_db(), WAITLIST_SELECT + " WHERE w.waitlist_id = ?", (waitlist_id,),
        "Waitlist entry not found",
    )
    ensure_owner_or_admin(row["user_id"])
    return jsonify({"entry": dict(row), "success": True}), 200


@app.route("/api/waitlist", methods=["POST"])
@require_auth
def add_to_waitlist():
    data = get_json_body()
    if data.get("component_id") in (None, ""):
        raise ApiError("component_id is required")
    requested_quantity = parse_int(data.get("requested_quantity", 1), "requested_quantity", minimum=1)
    estimated = parse_optional_date(
        data.get("estimated_availability_date"), "estimated_availability_date"
    )

    conn = get_db()
    fetch_one_or_404(
        conn, "SELECT 1 FROM components WHERE component_id = ?", (data["component_id"],),
        "Component not found",
    )
    existing = conn.execute(
        "SELECT 1 FROM waitlist WHERE user_id = ? AND component_id = ? AND status = 'waiting'",
        (current_user_id(), data["component_id"]),
    ).fetchone()
    if existing:
        raise ApiError(ALREADY_WAITING)

    try:
        with conn:
            cursor = conn.execute(
                """
                INSERT INTO waitlist
                (user_id, component_id, requested_quantity, status, requested_date,
                 estimated_availability_date, notes)
                VALUES (?, ?, ?, 'waiting', ?, ?, ?)
                """,
                (current_user_id(), data["component_id"], requested_quantity, _now(),
                 estimated, data.get("notes")),
            )
    except sqlite3.IntegrityError:
        # lost a race with a concurrent request; the partial unique index caught it
        raise ApiError(ALREADY_WAITING)
    return jsonify({
        "message": "Added to waitlist successfully",
        "waitlistId": cursor.lastrowid,
        "success": True,
    }), 201


@app.route("/api/waitlist/<int:waitlist_id>", methods=["PUT"])
@require_auth
def update_waitlist(waitlist_id):
    data = get_json_body()
    conn = get_db()
    entry = load_waitlist_entry(conn, waitlist_id)
    ensure_owner_or_admin(entry["user_id"])

    requested_quantity = parse_int(
        data.get("requested_quantity", entry["requested_quantity"]), "requested_quantity", minimum=1
    )
    estimated = parse_optional_date(
        data.get("estimated_availability_date", entry["estimated_availability_date"]),
        "estimated_availability_date",
    )
    with conn:
        conn.execute(
            """
            UPDATE waitlist
            SET requested_quantity = ?, estimated_availability_date = ?, notes = ?
            WHERE waitlist_id = ?
            """,
            (requested_quantity, estimated, data.get("notes", entry["notes"]), waitlist_id),
        )
    return jsonify({"message": "Waitlist entry updated successfully", "success": True}), 200


@app.route("/api/waitlist/<int:waitlist_id>/status", methods=["PATCH"])
@require_role("admin")
def update_waitlist_status(waitlist_id):
    data = get_json_body()
    status = data.get("status")
    if status not in WAITLIST_STATUSES:
        raise ApiError(f"Invalid status. Must be one of: {', '.join(WAITLIST_STATUSES)}.")

    conn = get_db()
    load_waitlist_entry(conn, waitlist_id)
    notification_sent_date = _now() if status == "notified" else None
    try:
        with conn:
            conn.execute(
                """
                UPDATE waitlist
                SET status = ?, notification_sent_date = ?, notes = COALESCE(?, notes)
                WHERE waitlist_id = ?
                """,
                (status, notification_sent_date, data.get("notes"), waitlist_id),
            )
    except sqlite3.IntegrityError:
        raise ApiError("User already has a waiting entry for this component")
    return jsonify({"message": "Waitlist status updated successfully", "success": True}), 200


@app.route("/api/waitlist/<int:waitlist_id>/cancel", methods=["PATCH"])
@require_auth
def cancel_waitlist(waitlist_id):
    conn = get_db()
    entry = load_waitlist_entry(conn, waitlist_id)
    ensure_owner_or_admin(entry["user_id"])
    if entry["status"] == "cancelled":
        raise ApiError("Waitlist entry is already cancelled")
    with conn:
        conn.execute("UPDATE waitlist SET status = 'cancelled' WHERE waitlist_id = ?", (waitlist_id,))
    return jsonify({"message": "Waitlist entry cancelled successfully", "success": True}), 200


@app.route("/api/waitlist/<int:waitlist_id>", methods=["DELETE"])
@require_role("admin")
def delete_waitlist(waitlist_id):
    conn = get_db()
    with conn:
        cursor = conn.execute("DELETE FROM waitlist WHERE waitlist_id = ?", (waitlist_id,))
    if cursor.rowcount == 0:
        raise ApiError("Waitlist entry not found", 404)
    return jsonify({"message": "Waitlist entry deleted successfully", "success": True}), 200


@app.route("/api/waitlist/notify/<int:component_id>", methods=["POST"])
@require_role("admin")
def notify_waitlist_users(component_id):
    """Flip every waiting entry for the component to notified."""
    conn = get_db()
    with conn:
        cursor = conn.execute(
            """
            UPDATE waitlist
            SET status = 'notified', notification_sent_date = ?
            WHERE component_id = ? AND status = 'waiting'
            """,
            (_now(), component_id),
        )
    notified = cursor.rowcount
    logger.info("Notified %s waitlisted user(s) for component %s", notified, component_id)
    return jsonify({
        "message": f"{notified} users notified successfully",
        "notifiedCount": notified,
        "success": True,
    }), 200


# --- Damage Report Endpoints ---

DAMAGE_REPORT_SELECT = """
    SELECT dr.*, c.component_name, c.component_code,
           u.full_name AS reported_by_name, u.student_id AS reported_by_student_id,
           v.full_name AS verified_by_name
    FROM damage_reports dr
    JOIN components c ON dr.component_id = c.component_id
    JOIN users u ON dr.reported_by_user_id = u.user_id
    LEFT JOIN users v ON dr.verified_by_user_id = v.user_id
"""


def load_damage_report(conn, report_id):
    return fetch_one_or_404(
        conn, "SELECT * FROM damage_reports WHERE damage_report_id = ?", (report_id,),
        "Damage report not found",
    )


def validate_severity(severity):
    if severity not in DAMAGE_SEVERITIES:
        raise ApiError(f"Invalid severity. Must be one of: {', '.join(DAMAGE_SEVERITIES)}.")
    return severity


@app.route("/api/damage-reports", methods=["GET"])
@require_role("admin")
def get_all_damage_reports():
    rows = get_db().execute(
        DAMAGE_REPORT_SELECT + " ORDER BY dr.reported_date DESC, dr.damage_report_id DESC"
    ).fetchall()
    return jsonify({"reports": rows_to_list(rows), "success": True}), 200


@app.route("/api/damage-reports/unverified", methods=["GET"])
@require_role("admin")
def get_unverified_reports():
    rows = get_db().execute(
        DAMAGE_REPORT_SELECT
        + " WHERE dr.is_verified = 0 ORDER BY dr.reported_date DESC, dr.damage_report_id DESC"
    ).fetchall()
    return jsonify({"reports": rows_to_list(rows), "success": True}), 200


@app.route("/api/damage-reports/component/<int:component_id>", methods=["GET"])
@require_auth
def get_damage_reports_by_component(component_id):
    rows = get_db().execute(
        DAMAGE_REPORT_SELECT
        + " WHERE dr.component_id = ? ORDER BY dr.reported_date DESC, dr.damage_report_id DESC",
        (component_id,),
    ).fetchall()
    return jsonify({"reports": rows_to_list(rows), "success": True}), 200


@app.route("/api/damage-reports/booking/<int:booking_id>", methods=["GET"])
@require_auth
def get_damage_reports_by_booking(booking_id):
    rows = get_db().execute(
        DAMAGE_REPORT_SELECT + " WHERE dr.booking_id = ? ORDER BY dr.damage_report_id ASC",
        (booking_id,),
    ).fetchall()
    return jsonify({"reports": rows_to_list(rows), "success": True}), 200


@app.route("/api/damage-reports/<int:report_id>", methods=["GET"])
@require_auth
def get_damage_report_by_id(report_id):
    row = fetch_one_or_404(
        get_db(), DAMAGE_REPORT_SELECT + " WHERE dr.damage_report_id = ?", (report_id,),
        "Damage report not found",
    )
    ensure_owner_or_admin(row["reported_by_user_id"])
    return jsonify({"report": dict(row), "success": True}), 200


@app.route("/api/damage-reports", methods=["POST"])
@require_auth
def create_damage_report():
    """File a damage report and count one more damaged unit on the component."""
    data = get_json_body()
    if data.get("component_id") in (None, "") or not data.get("damage_type"):
        raise ApiError("Missing required fields: component_id and damage_type are required")
    severity = validate_severity(data.get("severity") or "minor")
    damage_date = parse_optional_date(data.get("damage_date"), "damage_date")

    conn = get_db()
    fetch_one_or_404(
        conn, "SELECT 1 FROM components WHERE component_id = ?", (data["component_id"],),
        "Component not found",
    )
    if data.get("booking_id"):
        booking = load_booking(conn, data["booking_id"])
        ensure_owner_or_admin(booking["user_id"])
        if booking["component_id"] != int(data["component_id"]):
            raise ApiError("Booking does not belong to this component")

    with conn:
        cursor = conn.execute(
            """
            INSERT INTO damage_reports
            (component_id, booking_id, reported_by_user_id, damage_type, severity,
             description, damage_date, reported_date, is_verified, replacement_required)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
            """,
            (data["component_id"], data.get("booking_id") or None, current_user_id(),
             data["damage_type"], severity, data.get("description"), damage_date, _now(),
             as_flag(data.get("replacement_required"))),
        )
        conn.execute(
            "UPDATE components SET damaged_quantity = COALESCE(damaged_quantity, 0) + 1, "
            "updated_at = ? WHERE component_id = ?",
            (_now(), data["component_id"]),
        )
    logger.info("Damage report %s filed for component %s", cursor.lastrowid, data["component_id"])
    return jsonify({
        "message": "Damage report created successfully",
        "damageReportId": cursor.lastrowid,
        "success": True,
    }), 201


@app.route("/api/damage-reports/<int:report_id>", methods=["PUT"])
@require_role("admin")
def update_damage_report(report_id):
    data = get_json_body()
    conn = get_db()
    report = load_damage_report(conn, report_id)

    damage_type = data.get("damage_type", report["damage_type"])
    if not damage_type:
        raise ApiError("damage_type cannot be empty")
    severity = validate_severity(data.get("severity", report["severity"]))
    damage_date = parse_optional_date(data.get("damage_date", report["damage_date"]), "damage_date")
    replacement = (
        as_flag(data["replacement_required"]) if "replacement_required" in data
        else report["replacement_required"]
    )
    with conn:
        conn.execute(
            """
            UPDATE damage_reports
            SET damage_type = ?, severity = ?, description = ?, damage_date = ?,
                replacement_required = ?
            WHERE damage_report_id = ?
            """,
            (damage_type, severity, data.get("description", report["description"]),
             damage_date, replacement, report_id),
        )
    return jsonify({"message": "Damage report updated successfully", "success": True}), 200


@app.route("/api/damage-reports/<int:report_id>/verify", methods=["PATCH"])
@require_role("admin")
def verify_damage_report(report_id):
    conn = get_db()
    report = load_damage_report(conn, report_id)
    if report["is_verified"]:
        raise ApiError("Damage report is already verified")
    with conn:
        conn.execute(
            """
            UPDATE damage_reports
            SET is_verified = 1, verified_by_user_id = ?, verification_date = ?
            WHERE damage_report_id = ?
            """,
            (current_user_id(), _now(), report_id),
        )
    logger.info("Damage report %s verified by admin %s", report_id, current_user_id())
    return jsonify({"message": "Damage report verified successfully", "success": True}), 200


@app.route("/api/damage-reports/<int:report_id>", methods=["DELETE"])
@require_role("admin")
def delete_damage_report(report_id):
    conn = get_db()
    report = load_damage_report(conn, report_id)
    try:
        with conn:
            conn.execute("DELETE FROM damage_reports WHERE damage_report_id = ?", (report_id,))
            conn.execute(
                "UPDATE components SET damaged_quantity = MAX(0, COALESCE(damaged_quantity, 0) - 1), "
                "updated_at = ? WHERE component_id = ?",
                (_now(), report["component_id"]),
            )
    except sqlite3.IntegrityError:
        raise ApiError("Cannot delete damage report. It is referenced by a penalty.")
    return jsonify({"message": "Damage report deleted successfully", "success": True}), 200


# --- Dashboard Endpoints ---

def collect_stats(conn, queries):
    """Run independent single-row aggregate queries and merge their columns."""
    stats = {}
    for query, params in queries:
        row = conn.execute(query, params).fetchone()
        stats.update({key: row[key] or 0 for key in row.keys()})
    return stats


@app.route("/api/dashboard/admin/stats", methods=["GET"])
@require_role("admin")
def get_admin_dashboard_stats():
    queries = [
        ("SELECT COUNT(*) AS totalUsers FROM users", ()),
        ("SELECT COUNT(*) AS totalStudents FROM users WHERE role = 'student'", ()),
        ("SELECT COUNT(*) AS totalComponents FROM components", ()),
        ("SELECT COUNT(*) AS activeComponents FROM components WHERE status = 'active'", ()),
        (
            """
            SELECT
                COUNT(*) AS totalBookings,
                SUM(CASE WHEN status = 'requested' THEN 1 ELSE 0 END) AS pendingBookings,
                SUM(CASE WHEN status = 'approved' THEN 1 ELSE 0 END) AS approvedBookings,
                SUM(CASE WHEN status = 'return_pending' THEN 1 ELSE 0 END) AS returnPendingBookings,
                SUM(CASE WHEN status = 'returned' THEN 1 ELSE 0 END) AS returnedBookings,
                SUM(CASE WHEN status = 'rejected' THEN 1 ELSE 0 END) AS rejectedBookings,
                SUM(CASE WHEN is_overdue = 1 THEN 1 ELSE 0 END) AS overdueBookings
            FROM bookings
            """,
            (),
        ),
        (
            """
            SELECT
                COUNT(*) AS totalPenalties,
                SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) AS pendingPenalties,
                SUM(CASE WHEN status = 'pending' THEN amount ELSE 0 END) AS totalPendingAmount
            FROM penalties
            """,
            (),
        ),
        ("SELECT COUNT(*) AS waitlistCount FROM waitlist WHERE status = 'waiting'", ()),
        (
            "SELECT COUNT(*) AS unverifiedDamageReports FROM damage_reports WHERE is_verified = 0",
            (),
        ),
        (
            "SELECT COUNT(*) AS lowStockComponents FROM components "
            "WHERE available_quantity <= ? AND available_quantity > 0",
            (LOW_STOCK_THRESHOLD,),
        ),
        (
            "SELECT COUNT(*) AS outOfStockComponents FROM components WHERE available_quantity = 0",
            (),
        ),
    ]
    return jsonify({"stats": collect_stats(get_db(), queries), "success": True}), 200


@app.route("/api/dashboard/user/stats", methods=["GET"])
@require_auth
def get_user_dashboard_stats():
    user_id = current_user_id()
    queries = [
        (
            """
            SELECT
                COUNT(*) AS totalBookings,
                SUM(CASE WHEN status = 'requested' THEN 1 ELSE 0 END) AS pendingBookings,
                SUM(CASE WHEN status = 'approved' THEN 1 ELSE 0 END) AS activeBookings,
                SUM(CASE WHEN status = 'returned' THEN 1 ELSE 0 END) AS returnedBookings,
                SUM(CASE WHEN is_overdue = 1 THEN 1 ELSE 0 END) AS overdueBookings
            FROM bookings WHERE user_id = ?
            """,
            (user_id,),
        ),
        (
            """
            SELECT
                COUNT(*) AS totalPenalties,
                SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) AS pendingPenalties,
                SUM(CASE WHEN status = 'pending' THEN amount ELSE 0 END) AS totalPendingAmount
            FROM penalties WHERE user_id = ?
            """,
            (user_id,),
        ),
        (
            "SELECT COUNT(*) AS waitlistCount FROM waitlist WHERE user_id = ? AND status = 'waiting'",
            (user_id,),
        ),
    ]
    return jsonify({"stats": collect_stats(get_db(), queries), "success": True}), 200


@app.route("/api/dashboard/recent-bookings", methods=["GET"])
@require_role("admin")
def get_recent_bookings():
    rows = get_db().execute(
        BOOKING_SELECT + " ORDER BY b.requested_date DESC, b.booking_id DESC LIMIT ?",
        (query_int("limit", 10),),
    ).fetchall()
    return jsonify({"bookings": rows_to_list(rows), "success": True}), 200


@app.route("/api/dashboard/booking-trends", methods=["GET"])
@require_role("admin")
def get_booking_trends():
    days = query_int("days", 30)
    rows = get_db().execute(
        """
        SELECT DATE(requested_date) AS date, COUNT(*) AS count
        FROM bookings
        WHERE DATE(requested_date) >= DATE('now', ?)
        GROUP BY DATE(requested_date)
        ORDER BY date ASC
        """,
        (f"-{days} days",),
    ).fetchall()
    return jsonify({"trends": rows_to_list(rows), "success": True}), 200


@app.route("/api/dashboard/top-components", methods=["GET"])
@require_role("admin")
def get_top_borrowed_components():
    rows = get_db().execute(
        """
        SELECT c.component_id, c.component_name, c.component_code, c.category,
               COUNT(b.booking_id) AS booking_count,
               COALESCE(SUM(b.quantity), 0) AS total_quantity_borrowed
        FROM components c
        LEFT JOIN bookings b ON c.component_id = b.component_id
        GROUP BY c.component_id
        ORDER BY booking_count DESC, c.component_name ASC
        LIMIT ?
        """,
        (query_int("limit", 10),),
    ).fetchall()
    return jsonify({"components": rows_to_list(rows), "success": True}), 200


@app.route("/api/dashboard/category-summary", methods=["GET"])
@require_auth
def get_category_summary():
    rows = get_db().execute(
        """
        SELECT category,
               COUNT(*) AS component_count,
               COALESCE(SUM(total_quantity), 0) AS total_items,
               COALESCE(SUM(available_quantity), 0) AS available_items,
               COALESCE(SUM(damaged_quantity), 0) AS damaged_items
        FROM components
        GROUP BY category
        ORDER BY component_count DESC, category ASC
        """
    ).fetchall()
    return jsonify({"categories": rows_to_list(rows), "success": True}), 200


@app.route("/api/dashboard/top-penalties", methods=["GET"])
@require_role("admin")
def get_users_with_most_penalties():
    rows = get_db().execute(
        """
        SELECT u.user_id, u.full_name, u.student_id, u.email, u.department,
               COUNT(p.penalty_id) AS penalty_count,
               SUM(p.amount) AS total_penalty_amount
        FROM users u
        JOIN penalties p ON u.user_id = p.user_id
        GROUP BY u.user_id
        ORDER BY total_penalty_amount DESC
        LIMIT ?
        """,
        (query_int("limit", 10),),
    ).fetchall()
    return jsonify({"users": rows_to_list(rows), "success": True}), 200


@app.route("/api/dashboard/overdue-bookings", methods=["GET"])
@require_role("admin")
def get_overdue_bookings():
    """Bookings flagged overdue, plus approved ones already past their return date."""
    rows = get_db().execute(
        BOOKING_SELECT
        + """
        WHERE b.is_overdue = 1
           OR (b.status = 'approved' AND b.expected_return_date < ?)
        ORDER BY b.expected_return_date ASC
        """,
        (_now(),),
    ).fetchall()
    return jsonify({"bookings": rows_to_list(rows), "success": True}), 200


@app.route("/api/dashboard/low-stock", methods=["GET"])
@require_auth
def get_low_stock_components():
    rows = get_db().execute(
        """
        SELECT * FROM components
        WHERE available_quantity <= ? AND status = 'active'
        ORDER BY available_quantity ASC, component_name ASC
        """,
        (query_int("threshold", LOW_STOCK_THRESHOLD),),
    ).fetchall()
    return jsonify({"components": rows_to_list(rows), "success": True}), 200


# --- Application Runner ---
# Initialize database on startup
init_db()

if __name__ == "__main__":
    # Use environment variable for debug mode (default: False for security)
    debug_mode = os.getenv("FLASK_DEBUG", "False").lower() == "true"
    app.run(debug=debug_mode, port=int(os.getenv("PORT", 5000)))
