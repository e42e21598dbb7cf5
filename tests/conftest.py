import pytest


ADMIN_CODE = "test-admin-code"
PASSWORD = "strong-pass-123"


@pytest.fixture()
def app(tmp_path, monkeypatch):
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("FLASK_ENV", "development")
    monkeypatch.setenv("SQLITE_DB_PATH", str(db_path))
    monkeypatch.setenv("ADMIN_REGISTRATION_SECRET", ADMIN_CODE)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("REDIS_URL", raising=False)

    from app import app as flask_app, rate_limiter
    from utils.migrations import run_migrations

    run_migrations()
    rate_limiter.reset()
    flask_app.config.update(TESTING=True)
    yield flask_app
    rate_limiter.reset()


@pytest.fixture()
def client(app):
    return app.test_client()


def register_and_login(client, email, admin=False):
    payload = {"email": email, "password": PASSWORD, "name": email.split("@")[0]}
    if admin:
        payload["adminCode"] = ADMIN_CODE
    register = client.post("/api/auth/register", json=payload)
    assert register.status_code == 201, register.json

    login = client.post("/api/auth/login", json={"email": email, "password": PASSWORD})
    assert login.status_code == 200, login.json
    return login.json["user"]


@pytest.fixture()
def admin_client(app):
    admin = app.test_client()
    register_and_login(admin, "admin@example.com", admin=True)
    return admin


@pytest.fixture()
def user_client(app):
    user = app.test_client()
    register_and_login(user, "player@example.com")
    return user


def create_question(admin_client, quiz_id, prompt, question_type, choices):
    response = admin_client.post(
        "/api/admin/question",
        json={"quizId": quiz_id, "prompt": prompt, "type": question_type, "choices": choices},
    )
    assert response.status_code == 201, response.json
    return response.json["question"]


@pytest.fixture()
def seeded_quiz(admin_client):
    """Published quiz: q1 SINGLE_CHOICE (A correct, B), q2 MULTIPLE_CHOICE (C, D correct, E)."""
    created = admin_client.post(
        "/api/admin/quiz",
        json={"title": "Networking Basics", "description": "Ports and protocols", "isPublished": True},
    )
    assert created.status_code == 201, created.json
    quiz_id = created.json["quiz"]["id"]

    q1 = create_question(
        admin_client,
        quiz_id,
        "Which protocol is encrypted?",
        "SINGLE_CHOICE",
        [{"text": "SSH", "isCorrect": True}, {"text": "Telnet"}],
    )
    q2 = create_question(
        admin_client,
        quiz_id,
        "Which ports are commonly used for HTTPS and SSH?",
        "MULTIPLE_CHOICE",
        [{"text": "443", "isCorrect": True}, {"text": "22", "isCorrect": True}, {"text": "21"}],
    )

    a, b = (choice["id"] for choice in q1["choices"])
    c, d, e = (choice["id"] for choice in q2["choices"])
    return {
        "quiz_id": quiz_id,
        "q1": q1["id"],
        "q2": q2["id"],
        "A": a,
        "B": b,
        "C": c,
        "D": d,
        "E": e,
    }
