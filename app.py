from flask import Flask, g, jsonify, request, session
import logging
import os
import secrets
from functools import wraps
from urllib.parse import urlparse

try:
    import redis
except ImportError:
    redis = None
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

from utils.attempts import save_draft, submit_attempt
from utils.auth import hash_password, is_valid_email, normalize_email, verify_password
from utils.authoring import (
    AuthoringError,
    clean_optional,
    insert_choices,
    move_question,
    next_question_position,
    normalize_choices,
    parse_question_type,
    replace_choices,
    validate_correct_choices,
    validate_question_choices,
)
from utils.db import db_session, get_cursor, get_db, insert_and_get_id, integrity_errors
from utils.migrations import run_migrations
from utils.quiz_logic import SINGLE_CHOICE, PayloadError, ScoringError, normalize_answers, parse_id
from utils.rate_limit import RateLimiter


app = Flask(__name__)
flask_env = os.getenv("FLASK_ENV", "").lower()
configured_secret = os.getenv("FLASK_SECRET_KEY")
database_url = os.getenv("DATABASE_URL", "").strip()
if flask_env == "production" and not configured_secret:
    raise RuntimeError("FLASK_SECRET_KEY must be set in production.")
if flask_env == "production" and not database_url:
    raise RuntimeError("DATABASE_URL must be set in production.")

app.secret_key = configured_secret or secrets.token_hex(32)
app.config.update(
    SESSION_COOKIE_SECURE=flask_env == "production",
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
    MAX_CONTENT_LENGTH=1024 * 1024,
)

logger = logging.getLogger(__name__)
if not logger.handlers:
    logging.basicConfig(level=logging.INFO)

_redis_client = None
redis_url = os.getenv("REDIS_URL", "").strip()
trust_proxy = os.getenv("TRUST_PROXY", "0") == "1"

if redis_url:
    if redis is None:
        if flask_env == "production":
            raise RuntimeError("Redis package is not installed in production.")
        logger.warning("Redis package not installed; using in-memory rate limiting in development.")
    else:
        try:
            _redis_client = redis.Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
                health_check_interval=30,
            )
            _redis_client.ping()
            logger.info("Redis rate limiter enabled.")
        except Exception as redis_err:
            _redis_client = None
            if flask_env == "production":
                raise RuntimeError("Unable to connect to Redis in production.") from redis_err
            logger.warning("Redis unavailable, falling back to in-memory rate limiting: %s", redis_err)

rate_limiter = RateLimiter(_redis_client, fail_closed=flask_env == "production")

ROLE_USER = "user"
ROLE_ADMIN = "admin"


class ApiError(Exception):
    def __init__(self, message, status=400, code=None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code


def json_ok(payload=None, status=200):
    body = {"ok": True}
    body.update(payload or {})
    return jsonify(body), status


def json_error(message, status=400, code=None):
    error = {"message": message}
    if code:
        error["code"] = code
    return jsonify({"ok": False, "error": error}), status


def get_client_ip():
    if trust_proxy:
        forwarded_for = request.headers.get("X-Forwarded-For", "")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
    return request.remote_addr or "anon"


def rate_limited(key, limit, window=60):
    def decorator(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            user_id = session.get("user_id")
            scope = f"user:{user_id}" if user_id else f"ip:{get_client_ip()}"
            result = rate_limiter.hit(f"{key}:{scope}", limit, window)
            g.rate_limit = result
            if not result.ok:
                raise ApiError("Too many requests.", 429, "rate_limited")
            return f(*args, **kwargs)

        return wrapper

    return decorator


def login_required(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        if "user_id" not in session:
            raise ApiError("Unauthorized.", 401, "unauthenticated")
        return f(*args, **kwargs)

    return wrapper


def admin_required(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        if "user_id" not in session:
            raise ApiError("Unauthorized.", 401, "unauthenticated")
        if session.get("role") != ROLE_ADMIN:
            raise ApiError("Forbidden.", 403, "forbidden")
        return f(*args, **kwargs)

    return wrapper


def is_admin():
    return session.get("role") == ROLE_ADMIN


def get_json_body():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ApiError("Invalid JSON body.", 400, "invalid_payload")
    return body


def require_id(body, field="id"):
    value = parse_id(body.get(field))
    if value is None:
        raise ApiError(f"{field} is required.", 400, "invalid_payload")
    return value


def parse_optional_id(value, field):
    if value is None:
        return None
    parsed = parse_id(value)
    if parsed is None:
        raise ApiError(f"Invalid {field}.", 400, "invalid_payload")
    return parsed


def parse_time_limit(value):
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ApiError("timeLimitSeconds must be a positive integer.", 400, "invalid_payload")
    return value


def clean_text(value, max_len):
    if not isinstance(value, str):
        return ""
    return value.strip()[:max_len]


@app.before_request
def reject_cross_origin_writes():
    if request.method not in ("POST", "PUT", "PATCH", "DELETE"):
        return None

    origin = request.headers.get("Origin")
    if origin:
        origin_host = urlparse(origin).netloc
        if origin_host and origin_host != request.host:
            return json_error("Cross-origin request rejected.", 403, "forbidden")
    return None


@app.after_request
def apply_response_headers(response):
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
    response.headers["Cache-Control"] = "no-store"
    if flask_env == "production":
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

    result = g.get("rate_limit")
    if result is not None:
        response.headers["x-ratelimit-limit"] = str(result.limit)
        response.headers["x-ratelimit-remaining"] = str(result.remaining)
        response.headers["x-ratelimit-reset"] = str(result.reset_ms)
    return response


@app.errorhandler(ApiError)
def handle_api_error(error):
    return json_error(error.message, error.status, error.code)


@app.errorhandler(RequestEntityTooLarge)
def handle_large_request(_error):
    return json_error("Request too large.", 413, "payload_too_large")


@app.errorhandler(HTTPException)
def handle_http_error(error):
    return json_error(error.description or error.name, error.code or 500)


@app.errorhandler(Exception)
def handle_internal_error(error):
    logger.exception("Unhandled server error: %s", error)
    return json_error("Something went wrong. Please try again.", 500, "internal_error")


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def category_json(row):
    return {
        "id": row["id"],
        "name": row["name"],
        "slug": row["slug"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def quiz_json(row):
    quiz = {
        "id": row["id"],
        "title": row["title"],
        "description": row["description"],
        "isPublished": bool(row["is_published"]),
        "timeLimitSeconds": row["time_limit_seconds"],
        "categoryId": row["category_id"],
        "createdById": row["created_by_id"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
        "category": None,
    }
    if row["category_id"] is not None and row["category_name"] is not None:
        quiz["category"] = {
            "id": row["category_id"],
            "name": row["category_name"],
            "slug": row["category_slug"],
        }
    return quiz


def choice_json(row, include_correct):
    choice = {"id": row["id"], "text": row["text"], "order": row["position"]}
    if include_correct:
        choice["isCorrect"] = bool(row["is_correct"])
    return choice


def question_json(row, choices):
    return {
        "id": row["id"],
        "quizId": row["quiz_id"],
        "prompt": row["prompt"],
        "hint": row["hint"],
        "rationale": row["rationale"],
        "type": row["type"],
        "order": row["position"],
        "choices": choices,
    }


_QUIZ_SELECT = """
    SELECT q.id, q.title, q.description, q.is_published, q.time_limit_seconds,
           q.category_id, q.created_by_id, q.created_at, q.updated_at,
           c.name AS category_name, c.slug AS category_slug
    FROM quizzes q
    LEFT JOIN categories c ON c.id = q.category_id
"""


def fetch_quiz(cur, quiz_id):
    cur.execute(f"{_QUIZ_SELECT} WHERE q.id = ?", (quiz_id,))
    return cur.fetchone()


def fetch_questions(cur, quiz_id, include_correct, question_id=None):
    if question_id is None:
        cur.execute(
            """
            SELECT id, quiz_id, prompt, hint, rationale, type, position
            FROM questions
            WHERE quiz_id = ?
            ORDER BY position ASC
            """,
            (quiz_id,),
        )
    else:
        cur.execute(
            """
            SELECT id, quiz_id, prompt, hint, rationale, type, position
            FROM questions
            WHERE id = ?
            """,
            (question_id,),
        )
    question_rows = cur.fetchall()
    if not question_rows:
        return []

    choices_by_question = {row["id"]: [] for row in question_rows}
    if question_id is None:
        cur.execute(
            """
            SELECT ch.id, ch.question_id, ch.text, ch.is_correct, ch.position
            FROM choices ch
            JOIN questions q ON q.id = ch.question_id
            WHERE q.quiz_id = ?
            ORDER BY ch.position ASC
            """,
            (quiz_id,),
        )
    else:
        cur.execute(
            """
            SELECT id, question_id, text, is_correct, position
            FROM choices
            WHERE question_id = ?
            ORDER BY position ASC
            """,
            (question_id,),
        )
    for row in cur.fetchall():
        choices_by_question[row["question_id"]].append(choice_json(row, include_correct))

    return [question_json(row, choices_by_question[row["id"]]) for row in question_rows]


def fetch_quiz_detail(cur, quiz_id, include_correct):
    row = fetch_quiz(cur, quiz_id)
    if not row:
        return None
    quiz = quiz_json(row)
    quiz["questions"] = fetch_questions(cur, quiz_id, include_correct)
    return quiz


def fetch_question(cur, question_id):
    questions = fetch_questions(cur, None, include_correct=True, question_id=question_id)
    return questions[0] if questions else None


def require_published_quiz(cur, quiz_id):
    cur.execute("SELECT id, is_published FROM quizzes WHERE id = ?", (quiz_id,))
    quiz = cur.fetchone()
    if not quiz or not quiz["is_published"]:
        raise ApiError("Quiz not available.", 404, "not_found")
    return quiz


# ---------------------------------------------------------------------------
# Health and authentication
# ---------------------------------------------------------------------------


@app.route("/healthz")
def healthz():
    try:
        db = get_db()
        cur = get_cursor(db)
        cur.execute("SELECT 1")
        db.close()
        return json_ok({"db": "ok"})
    except Exception:
        logger.exception("Health check failed.")
        return jsonify({"ok": False, "db": "error"}), 500


@app.route("/api/auth/register", methods=["POST"])
@rate_limited("auth:register", limit=10)
def register():
    body = get_json_body()
    email = normalize_email(body.get("email"))
    password = body.get("password") or ""
    name = clean_optional(body.get("name"), 100)
    admin_code = clean_text(body.get("adminCode"), 200)

    if not is_valid_email(email):
        raise ApiError("Please provide a valid email.", 400, "invalid_payload")
    if not isinstance(password, str) or len(password) < 8:
        raise ApiError("Password must be at least 8 characters.", 400, "invalid_payload")

    admin_secret = os.getenv("ADMIN_REGISTRATION_SECRET", "")
    role = ROLE_USER
    if admin_secret and admin_code and secrets.compare_digest(admin_code, admin_secret):
        role = ROLE_ADMIN

    with db_session() as (_conn, cur):
        cur.execute("SELECT id FROM users WHERE email = ?", (email,))
        if cur.fetchone():
            raise ApiError("Email already in use.", 409, "conflict")

        try:
            user_id = insert_and_get_id(
                cur,
                """
                INSERT INTO users (email, name, password_hash, role)
                VALUES (?, ?, ?, ?)
                """,
                (email, name, hash_password(password), role),
            )
        except integrity_errors() as err:
            raise ApiError("Email already in use.", 409, "conflict") from err

    logger.info("Registered user id=%s role=%s", user_id, role)
    return json_ok({"user": {"id": user_id, "email": email, "name": name, "role": role}}, 201)


@app.route("/api/auth/login", methods=["POST"])
@rate_limited("auth:login", limit=20)
def login():
    body = get_json_body()
    email = normalize_email(body.get("email"))
    password = body.get("password") or ""

    if not email or not isinstance(password, str) or not password:
        raise ApiError("Email and password are required.", 400, "invalid_payload")

    with db_session() as (_conn, cur):
        cur.execute(
            "SELECT id, email, name, role, password_hash FROM users WHERE email = ?",
            (email,),
        )
        user = cur.fetchone()

    if not user or not verify_password(password, user["password_hash"]):
        raise ApiError("Invalid email or password.", 401, "unauthenticated")

    session.clear()
    session["user_id"] = user["id"]
    session["email"] = user["email"]
    session["role"] = user["role"]
    return json_ok({"user": {"id": user["id"], "email": user["email"], "name": user["name"], "role": user["role"]}})


@app.route("/api/auth/logout", methods=["POST"])
@login_required
def logout():
    session.clear()
    return json_ok()


# ---------------------------------------------------------------------------
# Quiz taking
# ---------------------------------------------------------------------------


@app.route("/api/quiz", methods=["GET"])
@rate_limited("quiz:get", limit=120)
def get_quiz():
    raw_id = request.args.get("id")
    category_slug = request.args.get("category")

    with db_session() as (_conn, cur):
        if raw_id:
            quiz_id = parse_id(raw_id)
            quiz = fetch_quiz_detail(cur, quiz_id, include_correct=False) if quiz_id else None
            # Unpublished quizzes look exactly like missing ones to non-admins.
            if not quiz or (not quiz["isPublished"] and not is_admin()):
                raise ApiError("Quiz not found.", 404, "not_found")
            return json_ok({"quiz": quiz})

        if category_slug:
            cur.execute(
                f"{_QUIZ_SELECT} WHERE q.is_published = ? AND c.slug = ? ORDER BY q.created_at DESC, q.id DESC",
                (True, category_slug),
            )
        else:
            cur.execute(
                f"{_QUIZ_SELECT} WHERE q.is_published = ? ORDER BY q.created_at DESC, q.id DESC",
                (True,),
            )
        quizzes = [quiz_json(row) for row in cur.fetchall()]

    return json_ok({"quizzes": quizzes})


def _parse_attempt_payload():
    body = get_json_body()
    quiz_id = parse_id(body.get("quizId"))
    if quiz_id is None or not isinstance(body.get("answers"), list):
        raise ApiError("Invalid payload.", 400, "invalid_payload")

    try:
        answers = normalize_answers(body["answers"])
    except PayloadError as err:
        raise ApiError(str(err), 400, "invalid_payload") from err

    return quiz_id, parse_id(body.get("attemptId")), answers


@app.route("/api/quiz/save", methods=["POST"])
@login_required
@rate_limited("quiz:save", limit=120)
def save_quiz():
    quiz_id, attempt_id, answers = _parse_attempt_payload()
    user_id = session["user_id"]

    with db_session() as (conn, cur):
        require_published_quiz(cur, quiz_id)
        try:
            attempt = save_draft(conn, cur, user_id, quiz_id, answers, attempt_id)
        except integrity_errors() as err:
            logger.warning("Draft save rejected for user=%s quiz=%s: %s", user_id, quiz_id, err)
            raise ApiError("Invalid answers.", 400, "invalid_payload") from err

    return json_ok({"attemptId": attempt["id"], "attemptNo": attempt["attempt_no"]})


@app.route("/api/quiz/submit", methods=["POST"])
@login_required
@rate_limited("quiz:submit", limit=30)
def submit_quiz():
    quiz_id, attempt_id, answers = _parse_attempt_payload()
    user_id = session["user_id"]

    with db_session() as (conn, cur):
        require_published_quiz(cur, quiz_id)
        try:
            result = submit_attempt(conn, cur, user_id, quiz_id, answers, attempt_id)
        except ScoringError as err:
            raise ApiError(str(err), 400, "invalid_payload") from err

    return json_ok(
        {
            "attempt": {
                "id": result["id"],
                "score": result["score"],
                "attemptNo": result["attempt_no"],
            },
            "totalQuestions": result["total_questions"],
        }
    )


@app.route("/api/quiz/attempts", methods=["GET"])
@login_required
@rate_limited("quiz:attempts", limit=120)
def attempt_history():
    quiz_id = parse_optional_id(request.args.get("quizId"), "quizId")
    params = [session["user_id"]]
    quiz_filter = ""
    if quiz_id is not None:
        quiz_filter = "AND a.quiz_id = ?"
        params.append(quiz_id)

    with db_session() as (_conn, cur):
        cur.execute(
            f"""
            SELECT a.id, a.quiz_id, a.attempt_no, a.status, a.score,
                   a.started_at, a.submitted_at, q.title
            FROM attempts a
            JOIN quizzes q ON q.id = a.quiz_id
            WHERE a.user_id = ? {quiz_filter}
            ORDER BY a.started_at DESC, a.id DESC
            LIMIT 100
            """,
            tuple(params),
        )
        attempts = [
            {
                "id": row["id"],
                "quizId": row["quiz_id"],
                "quizTitle": row["title"],
                "attemptNo": row["attempt_no"],
                "status": row["status"],
                "score": row["score"],
                "startedAt": row["started_at"],
                "submittedAt": row["submitted_at"],
            }
            for row in cur.fetchall()
        ]

    return json_ok({"attempts": attempts})


# ---------------------------------------------------------------------------
# Admin: quizzes
# ---------------------------------------------------------------------------


@app.route("/api/admin/quiz", methods=["GET"])
@admin_required
@rate_limited("admin:quiz:get", limit=240)
def admin_get_quiz():
    raw_id = request.args.get("id")

    with db_session() as (_conn, cur):
        if raw_id:
            quiz_id = parse_id(raw_id)
            quiz = fetch_quiz_detail(cur, quiz_id, include_correct=True) if quiz_id else None
            if not quiz:
                raise ApiError("Quiz not found.", 404, "not_found")
            return json_ok({"quiz": quiz})

        cur.execute(
            """
            SELECT q.id, q.title, q.description, q.is_published, q.time_limit_seconds,
                   q.category_id, q.created_by_id, q.created_at, q.updated_at,
                   c.name AS category_name, c.slug AS category_slug,
                   (SELECT COUNT(*) FROM questions WHERE quiz_id = q.id) AS question_count,
                   (SELECT COUNT(*) FROM attempts WHERE quiz_id = q.id) AS attempt_count
            FROM quizzes q
            LEFT JOIN categories c ON c.id = q.category_id
            ORDER BY q.created_at DESC, q.id DESC
            """
        )
        quizzes = []
        for row in cur.fetchall():
            quiz = quiz_json(row)
            quiz["counts"] = {"questions": row["question_count"], "attempts": row["attempt_count"]}
            quizzes.append(quiz)

    return json_ok({"quizzes": quizzes})


@app.route("/api/admin/quiz", methods=["POST"])
@admin_required
@rate_limited("admin:quiz:post", limit=60)
def admin_create_quiz():
    body = get_json_body()
    title = clean_text(body.get("title"), 200)
    if not title:
        raise ApiError("Title is required.", 400, "invalid_payload")

    description = clean_optional(body.get("description"))
    category_id = parse_optional_id(body.get("categoryId"), "categoryId")
    time_limit = parse_time_limit(body.get("timeLimitSeconds"))
    is_published = bool(body.get("isPublished"))

    with db_session() as (_conn, cur):
        try:
            quiz_id = insert_and_get_id(
                cur,
                """
                INSERT INTO quizzes (title, description, is_published, time_limit_seconds, category_id, created_by_id)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (title, description, is_published, time_limit, category_id, session["user_id"]),
            )
        except integrity_errors() as err:
            raise ApiError("Invalid categoryId.", 400, "invalid_payload") from err
        quiz = quiz_json(fetch_quiz(cur, quiz_id))

    return json_ok({"quiz": quiz}, 201)


_QUIZ_UPDATABLE = {
    "title": "title",
    "description": "description",
    "categoryId": "category_id",
    "timeLimitSeconds": "time_limit_seconds",
    "isPublished": "is_published",
}


@app.route("/api/admin/quiz", methods=["PUT"])
@admin_required
@rate_limited("admin:quiz:put", limit=120)
def admin_update_quiz():
    body = get_json_body()
    quiz_id = require_id(body)

    updates = {}
    for field, column in _QUIZ_UPDATABLE.items():
        if field not in body:
            continue
        value = body[field]
        if field == "title":
            value = clean_text(value, 200)
            if not value:
                raise ApiError("Title is required.", 400, "invalid_payload")
        elif field == "description":
            value = clean_optional(value)
        elif field == "categoryId":
            value = parse_optional_id(value, "categoryId")
        elif field == "timeLimitSeconds":
            value = parse_time_limit(value)
        else:
            value = bool(value)
        updates[column] = value

    with db_session() as (_conn, cur):
        if not fetch_quiz(cur, quiz_id):
            raise ApiError("Quiz not found.", 404, "not_found")

        if updates:
            assignments = ", ".join(f"{column} = ?" for column in updates)
            try:
                cur.execute(
                    f"UPDATE quizzes SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (*updates.values(), quiz_id),
                )
            except integrity_errors() as err:
                raise ApiError("Invalid categoryId.", 400, "invalid_payload") from err

        quiz = quiz_json(fetch_quiz(cur, quiz_id))

    return json_ok({"quiz": quiz})


@app.route("/api/admin/quiz", methods=["DELETE"])
@admin_required
@rate_limited("admin:quiz:delete", limit=60)
def admin_delete_quiz():
    body = get_json_body()
    quiz_id = require_id(body)

    with db_session() as (_conn, cur):
        if not fetch_quiz(cur, quiz_id):
            raise ApiError("Quiz not found.", 404, "not_found")

        # Attempts go first so their answers no longer pin the quiz's questions.
        cur.execute("DELETE FROM attempts WHERE quiz_id = ?", (quiz_id,))
        cur.execute("DELETE FROM quizzes WHERE id = ?", (quiz_id,))

    logger.info("Deleted quiz id=%s", quiz_id)
    return json_ok()


# ---------------------------------------------------------------------------
# Admin: questions
# ---------------------------------------------------------------------------


def _authoring_error(err):
    codes = {404: "not_found", 409: "conflict"}
    code = codes.get(err.status, "invalid_payload")
    return ApiError(err.message, err.status, code)


@app.route("/api/admin/question", methods=["GET"])
@admin_required
@rate_limited("admin:question:get", limit=240)
def admin_list_questions():
    quiz_id = parse_id(request.args.get("quizId"))
    if quiz_id is None:
        raise ApiError("quizId is required.", 400, "invalid_payload")

    with db_session() as (_conn, cur):
        questions = fetch_questions(cur, quiz_id, include_correct=True)

    return json_ok({"questions": questions})


@app.route("/api/admin/question", methods=["POST"])
@admin_required
@rate_limited("admin:question:post", limit=120)
def admin_create_question():
    body = get_json_body()
    quiz_id = parse_id(body.get("quizId"))
    prompt = clean_text(body.get("prompt"), 2000)
    if quiz_id is None or not prompt:
        raise ApiError("quizId and prompt are required.", 400, "invalid_payload")

    if not isinstance(body.get("choices"), list) or len(body["choices"]) < 2:
        raise ApiError("At least 2 choices are required.", 400, "invalid_payload")

    order = body.get("order")
    if order is not None and (isinstance(order, bool) or not isinstance(order, int) or order < 0):
        raise ApiError("order must be a non-negative integer.", 400, "invalid_payload")

    try:
        question_type = parse_question_type(body.get("type"))
        choices = normalize_choices(body["choices"])
        validate_question_choices(question_type, choices)
    except AuthoringError as err:
        raise _authoring_error(err) from err

    with db_session() as (_conn, cur):
        if not fetch_quiz(cur, quiz_id):
            raise ApiError("Quiz not found.", 404, "not_found")

        if order is None:
            order = next_question_position(cur, quiz_id)

        try:
            question_id = insert_and_get_id(
                cur,
                """
                INSERT INTO questions (quiz_id, prompt, hint, rationale, type, position)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    quiz_id,
                    prompt,
                    clean_optional(body.get("hint")),
                    clean_optional(body.get("rationale")),
                    question_type,
                    order,
                ),
            )
        except integrity_errors() as err:
            raise ApiError("Question order already in use.", 409, "conflict") from err

        insert_choices(cur, question_id, choices)
        question = fetch_question(cur, question_id)

    return json_ok({"question": question}, 201)


@app.route("/api/admin/question", methods=["PUT"])
@admin_required
@rate_limited("admin:question:put", limit=240)
def admin_update_question():
    body = get_json_body()
    question_id = require_id(body)

    if body.get("move"):
        with db_session() as (_conn, cur):
            try:
                move_question(cur, question_id, body["move"])
            except AuthoringError as err:
                raise _authoring_error(err) from err
        return json_ok()

    updates = {}
    if "prompt" in body:
        prompt = clean_text(body.get("prompt"), 2000)
        if not prompt:
            raise ApiError("prompt cannot be empty.", 400, "invalid_payload")
        updates["prompt"] = prompt
    if "hint" in body:
        updates["hint"] = clean_optional(body.get("hint"))
    if "rationale" in body:
        updates["rationale"] = clean_optional(body.get("rationale"))
    if "order" in body:
        order = body.get("order")
        if isinstance(order, bool) or not isinstance(order, int) or order < 0:
            raise ApiError("order must be a non-negative integer.", 400, "invalid_payload")
        updates["position"] = order

    try:
        if "type" in body:
            updates["type"] = parse_question_type(body.get("type"))
        incoming = normalize_choices(body["choices"]) if body.get("choices") is not None else None
    except AuthoringError as err:
        raise _authoring_error(err) from err

    with db_session() as (_conn, cur):
        current = fetch_question(cur, question_id)
        if not current:
            raise ApiError("Question not found.", 404, "not_found")

        effective_type = updates.get("type", current["type"])
        try:
            if incoming is not None:
                validate_question_choices(effective_type, incoming)
            elif effective_type == SINGLE_CHOICE and effective_type != current["type"]:
                existing = [{"is_correct": choice["isCorrect"]} for choice in current["choices"]]
                message = validate_correct_choices(effective_type, existing)
                if message:
                    raise AuthoringError(message)
        except AuthoringError as err:
            raise _authoring_error(err) from err

        if updates:
            assignments = ", ".join(f"{column} = ?" for column in updates)
            try:
                cur.execute(
                    f"UPDATE questions SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (*updates.values(), question_id),
                )
            except integrity_errors() as err:
                raise ApiError("Question order already in use.", 409, "conflict") from err

        if incoming is not None:
            try:
                replace_choices(cur, question_id, incoming)
            except AuthoringError as err:
                raise _authoring_error(err) from err

        question = fetch_question(cur, question_id)

    return json_ok({"question": question})


@app.route("/api/admin/question", methods=["DELETE"])
@admin_required
@rate_limited("admin:question:delete", limit=120)
def admin_delete_question():
    body = get_json_body()
    question_id = require_id(body)

    with db_session() as (_conn, cur):
        cur.execute("SELECT id FROM questions WHERE id = ?", (question_id,))
        if not cur.fetchone():
            raise ApiError("Question not found.", 404, "not_found")

        try:
            cur.execute("DELETE FROM questions WHERE id = ?", (question_id,))
        except integrity_errors() as err:
            raise ApiError(
                "Unable to delete question (may have existing answers).", 409, "conflict"
            ) from err

    return json_ok()


# ---------------------------------------------------------------------------
# Admin: categories
# ---------------------------------------------------------------------------


@app.route("/api/admin/category", methods=["GET"])
@admin_required
@rate_limited("admin:category:get", limit=240)
def admin_list_categories():
    with db_session() as (_conn, cur):
        cur.execute("SELECT id, name, slug, created_at, updated_at FROM categories ORDER BY name ASC")
        categories = [category_json(row) for row in cur.fetchall()]

    return json_ok({"categories": categories})


@app.route("/api/admin/category", methods=["POST"])
@admin_required
@rate_limited("admin:category:post", limit=60)
def admin_create_category():
    body = get_json_body()
    name = clean_text(body.get("name"), 100)
    slug = clean_text(body.get("slug"), 100)
    if not name or not slug:
        raise ApiError("name and slug are required.", 400, "invalid_payload")

    with db_session() as (_conn, cur):
        try:
            category_id = insert_and_get_id(
                cur,
                "INSERT INTO categories (name, slug) VALUES (?, ?)",
                (name, slug),
            )
        except integrity_errors() as err:
            raise ApiError("Category already exists.", 409, "conflict") from err

        cur.execute(
            "SELECT id, name, slug, created_at, updated_at FROM categories WHERE id = ?",
            (category_id,),
        )
        category = category_json(cur.fetchone())

    return json_ok({"category": category}, 201)


@app.route("/api/admin/category", methods=["PUT"])
@admin_required
@rate_limited("admin:category:put", limit=120)
def admin_update_category():
    body = get_json_body()
    category_id = require_id(body)

    updates = {}
    for field in ("name", "slug"):
        if field in body:
            value = clean_text(body.get(field), 100)
            if not value:
                raise ApiError(f"{field} cannot be empty.", 400, "invalid_payload")
            updates[field] = value

    with db_session() as (_conn, cur):
        cur.execute("SELECT id FROM categories WHERE id = ?", (category_id,))
        if not cur.fetchone():
            raise ApiError("Category not found.", 404, "not_found")

        if updates:
            assignments = ", ".join(f"{column} = ?" for column in updates)
            try:
                cur.execute(
                    f"UPDATE categories SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                    (*updates.values(), category_id),
                )
            except integrity_errors() as err:
                raise ApiError("Category already exists.", 409, "conflict") from err

        cur.execute(
            "SELECT id, name, slug, created_at, updated_at FROM categories WHERE id = ?",
            (category_id,),
        )
        category = category_json(cur.fetchone())

    return json_ok({"category": category})


@app.route("/api/admin/category", methods=["DELETE"])
@admin_required
@rate_limited("admin:category:delete", limit=60)
def admin_delete_category():
    body = get_json_body()
    category_id = require_id(body)

    with db_session() as (_conn, cur):
        cur.execute("DELETE FROM categories WHERE id = ?", (category_id,))
        if cur.rowcount == 0:
            raise ApiError("Category not found.", 404, "not_found")

    return json_ok()


if __name__ == "__main__":
    run_migrations()
    debug_mode = os.getenv("FLASK_DEBUG", "0") == "1"
    app.run(debug=debug_mode)
