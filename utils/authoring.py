"""Question and choice authoring rules for the admin API."""

from utils.attempts import IN_PROGRESS
from utils.quiz_logic import QUESTION_TYPES, SINGLE_CHOICE, parse_id

MOVE_UP = "UP"
MOVE_DOWN = "DOWN"


class AuthoringError(ValueError):
    def __init__(self, message, status=400):
        super().__init__(message)
        self.message = message
        self.status = status


def clean_optional(value, max_len=2000):
    if value is None:
        return None
    text = str(value).strip()[:max_len]
    return text or None


def parse_question_type(value, default=SINGLE_CHOICE):
    if value is None:
        return default
    if value not in QUESTION_TYPES:
        raise AuthoringError("type must be SINGLE_CHOICE or MULTIPLE_CHOICE.")
    return value


def normalize_choices(inputs):
    """Trim choice text, drop blank choices and default ``order`` to the input position."""
    if not isinstance(inputs, list):
        raise AuthoringError("choices must be a list.")

    normalized = []
    for index, raw in enumerate(inputs):
        if not isinstance(raw, dict):
            raise AuthoringError("Each choice must be an object.")

        text = str(raw.get("text") or "").strip()[:500]
        if not text:
            continue

        order = raw.get("order")
        if order is None:
            order = index
        elif isinstance(order, bool) or not isinstance(order, int) or order < 0:
            raise AuthoringError("Choice order must be a non-negative integer.")

        choice_id = None
        if raw.get("id") is not None:
            choice_id = parse_id(raw.get("id"))
            if choice_id is None:
                raise AuthoringError("Invalid choice id.")

        normalized.append(
            {
                "id": choice_id,
                "text": text,
                "is_correct": bool(raw.get("isCorrect")),
                "order": order,
            }
        )

    orders = [choice["order"] for choice in normalized]
    if len(set(orders)) != len(orders):
        raise AuthoringError("Choice order values must be unique.")

    return normalized


def validate_correct_choices(question_type, choices):
    """Return an error message when the correct-choice count is invalid, else None."""
    correct_count = sum(1 for choice in choices if choice["is_correct"])
    if correct_count < 1:
        return "At least 1 correct choice is required."
    if question_type == SINGLE_CHOICE and correct_count != 1:
        return "Single-choice questions must have exactly 1 correct choice."
    return None


def validate_question_choices(question_type, choices):
    if len(choices) < 2:
        raise AuthoringError("At least 2 non-empty choices are required.")
    message = validate_correct_choices(question_type, choices)
    if message:
        raise AuthoringError(message)


def next_question_position(cur, quiz_id):
    cur.execute("SELECT MAX(position) AS last_position FROM questions WHERE quiz_id = ?", (quiz_id,))
    row = cur.fetchone()
    last_position = row["last_position"] if row else None
    return (last_position if last_position is not None else -1) + 1


def insert_choices(cur, question_id, choices):
    for choice in choices:
        cur.execute(
            """
            INSERT INTO choices (question_id, text, is_correct, position)
            VALUES (?, ?, ?, ?)
            """,
            (question_id, choice["text"], choice["is_correct"], choice["order"]),
        )


def replace_choices(cur, question_id, choices):
    """Sync a question's choices with ``choices``.

    Choices whose id is not listed are deleted, listed ids are updated in
    place and choices without an id are created. Removing a choice that a
    submitted attempt selected raises ``AuthoringError`` with status 409.
    """
    cur.execute("SELECT id FROM choices WHERE question_id = ?", (question_id,))
    existing_ids = {row["id"] for row in cur.fetchall()}
    incoming_ids = {choice["id"] for choice in choices if choice["id"] is not None}

    unknown = incoming_ids - existing_ids
    if unknown:
        raise AuthoringError("Choice does not belong to this question.")

    removed_ids = sorted(existing_ids - incoming_ids)
    if removed_ids:
        placeholders = ", ".join("?" for _ in removed_ids)
        cur.execute(
            f"""
            SELECT COUNT(*) AS used
            FROM answer_choices ac
            JOIN answers a ON a.id = ac.answer_id
            JOIN attempts t ON t.id = a.attempt_id
            WHERE ac.choice_id IN ({placeholders}) AND t.status <> ?
            """,
            (*removed_ids, IN_PROGRESS),
        )
        # Submitted selections must keep matching their stored score.
        if cur.fetchone()["used"]:
            raise AuthoringError("Unable to remove choices selected in submitted attempts.", status=409)

    for choice_id in removed_ids:
        cur.execute("DELETE FROM choices WHERE id = ?", (choice_id,))

    # Park kept choices on negative positions so reordering cannot collide.
    cur.execute(
        "UPDATE choices SET position = -1 - id WHERE question_id = ?",
        (question_id,),
    )

    for choice in choices:
        if choice["id"] is None:
            continue
        cur.execute(
            """
            UPDATE choices
            SET text = ?, is_correct = ?, position = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (choice["text"], choice["is_correct"], choice["order"], choice["id"]),
        )

    insert_choices(cur, question_id, [choice for choice in choices if choice["id"] is None])


def move_question(cur, question_id, direction):
    """Swap a question's position with its previous (UP) or next (DOWN) neighbor.

    Returns False when the question is already first/last. Raises
    ``AuthoringError`` with status 404 when the question does not exist.
    """
    if direction not in (MOVE_UP, MOVE_DOWN):
        raise AuthoringError("move must be UP or DOWN.")

    cur.execute("SELECT id, quiz_id, position FROM questions WHERE id = ?", (question_id,))
    question = cur.fetchone()
    if not question:
        raise AuthoringError("Question not found.", status=404)

    if direction == MOVE_UP:
        cur.execute(
            """
            SELECT id, position FROM questions
            WHERE quiz_id = ? AND position < ?
            ORDER BY position DESC
            LIMIT 1
            """,
            (question["quiz_id"], question["position"]),
        )
    else:
        cur.execute(
            """
            SELECT id, position FROM questions
            WHERE quiz_id = ? AND position > ?
            ORDER BY position ASC
            LIMIT 1
            """,
            (question["quiz_id"], question["position"]),
        )
    neighbor = cur.fetchone()
    if not neighbor:
        return False

    cur.execute(
        "SELECT MIN(position) AS min_position FROM questions WHERE quiz_id = ?",
        (question["quiz_id"],),
    )
    parking = cur.fetchone()["min_position"] - 1

    cur.execute("UPDATE questions SET position = ? WHERE id = ?", (parking, question["id"]))
    cur.execute(
        "UPDATE questions SET position = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
        (question["position"], neighbor["id"]),
    )
    cur.execute(
        "UPDATE questions SET position = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
        (neighbor["position"], question["id"]),
    )
    return True
