"""Attempt reconciliation for draft saves and submissions.

Every user/quiz pair has at most one IN_PROGRESS attempt. Saves and submits
resolve that attempt (or create the next numbered one) and upsert answers
inside a single write transaction opened with ``begin_write``.
"""

import logging

from utils.db import begin_write, insert_and_get_id
from utils.quiz_logic import score_submission

logger = logging.getLogger(__name__)

IN_PROGRESS = "IN_PROGRESS"
SUBMITTED = "SUBMITTED"
# Reserved for manual grading; nothing transitions an attempt here yet.
GRADED = "GRADED"
ATTEMPT_STATUSES = (IN_PROGRESS, SUBMITTED, GRADED)


def _lock_key(user_id, quiz_id):
    return f"attempt:{user_id}:{quiz_id}"


def resolve_attempt(cur, user_id, quiz_id, attempt_id=None):
    """Return the IN_PROGRESS attempt to write to, or None when one must be created.

    A hinted ``attempt_id`` is used only if it belongs to this user and quiz
    and is still in progress; otherwise the most recently started in-progress
    attempt wins.
    """
    if attempt_id is not None:
        cur.execute(
            """
            SELECT id, attempt_no, status
            FROM attempts
            WHERE id = ? AND user_id = ? AND quiz_id = ? AND status = ?
            """,
            (attempt_id, user_id, quiz_id, IN_PROGRESS),
        )
        row = cur.fetchone()
        if row:
            return dict(row)

    cur.execute(
        """
        SELECT id, attempt_no, status
        FROM attempts
        WHERE user_id = ? AND quiz_id = ? AND status = ?
        ORDER BY started_at DESC, id DESC
        LIMIT 1
        """,
        (user_id, quiz_id, IN_PROGRESS),
    )
    row = cur.fetchone()
    return dict(row) if row else None


def next_attempt_no(cur, user_id, quiz_id):
    cur.execute(
        "SELECT MAX(attempt_no) AS last_no FROM attempts WHERE user_id = ? AND quiz_id = ?",
        (user_id, quiz_id),
    )
    row = cur.fetchone()
    last_no = row["last_no"] if row else None
    return (last_no or 0) + 1


def upsert_answers(cur, attempt_id, answers):
    """Replace the selected choice set of each answered question in ``attempt_id``."""
    for question_id, choice_ids in answers.items():
        cur.execute(
            "SELECT id FROM answers WHERE attempt_id = ? AND question_id = ?",
            (attempt_id, question_id),
        )
        existing = cur.fetchone()

        if existing:
            answer_id = existing["id"]
            cur.execute("DELETE FROM answer_choices WHERE answer_id = ?", (answer_id,))
            cur.execute(
                "UPDATE answers SET updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (answer_id,),
            )
        else:
            answer_id = insert_and_get_id(
                cur,
                "INSERT INTO answers (attempt_id, question_id) VALUES (?, ?)",
                (attempt_id, question_id),
            )

        for choice_id in sorted(choice_ids):
            cur.execute(
                "INSERT INTO answer_choices (answer_id, choice_id) VALUES (?, ?)",
                (answer_id, choice_id),
            )


def load_grading_schema(cur, quiz_id):
    """Load every question of ``quiz_id`` with its choices and correctness flags."""
    cur.execute(
        "SELECT id, type FROM questions WHERE quiz_id = ? ORDER BY position ASC",
        (quiz_id,),
    )
    questions = [{"id": row["id"], "type": row["type"], "choices": []} for row in cur.fetchall()]
    if not questions:
        return questions

    by_id = {question["id"]: question for question in questions}
    cur.execute(
        """
        SELECT c.id, c.question_id, c.is_correct
        FROM choices c
        JOIN questions q ON q.id = c.question_id
        WHERE q.quiz_id = ?
        ORDER BY c.position ASC
        """,
        (quiz_id,),
    )
    for row in cur.fetchall():
        by_id[row["question_id"]]["choices"].append(
            {"id": row["id"], "is_correct": bool(row["is_correct"])}
        )
    return questions


def save_draft(conn, cur, user_id, quiz_id, answers, attempt_id=None):
    begin_write(conn, cur, _lock_key(user_id, quiz_id))

    attempt = resolve_attempt(cur, user_id, quiz_id, attempt_id)
    if attempt is None:
        attempt_no = next_attempt_no(cur, user_id, quiz_id)
        new_id = insert_and_get_id(
            cur,
            """
            INSERT INTO attempts (user_id, quiz_id, attempt_no, status)
            VALUES (?, ?, ?, ?)
            """,
            (user_id, quiz_id, attempt_no, IN_PROGRESS),
        )
        attempt = {"id": new_id, "attempt_no": attempt_no, "status": IN_PROGRESS}
        logger.info("Started attempt %s (#%s) for user=%s quiz=%s", new_id, attempt_no, user_id, quiz_id)
    else:
        cur.execute(
            "UPDATE attempts SET updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (attempt["id"],),
        )

    upsert_answers(cur, attempt["id"], answers)
    return attempt


def submit_attempt(conn, cur, user_id, quiz_id, answers, attempt_id=None):
    """Score ``answers`` and finalize the user's attempt.

    Raises ``ScoringError`` before anything is written when the submission is
    invalid. Returns the finalized attempt plus the quiz's question count.
    """
    questions = load_grading_schema(cur, quiz_id)
    score = score_submission(questions, answers)

    begin_write(conn, cur, _lock_key(user_id, quiz_id))

    attempt = resolve_attempt(cur, user_id, quiz_id, attempt_id)
    if attempt is None:
        attempt_no = next_attempt_no(cur, user_id, quiz_id)
        submitted_id = insert_and_get_id(
            cur,
            """
            INSERT INTO attempts (user_id, quiz_id, attempt_no, status, score, submitted_at)
            VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            """,
            (user_id, quiz_id, attempt_no, SUBMITTED, score),
        )
    else:
        submitted_id = attempt["id"]
        attempt_no = attempt["attempt_no"]
        cur.execute(
            """
            UPDATE attempts
            SET status = ?, score = ?, submitted_at = CURRENT_TIMESTAMP, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND status = ?
            """,
            (SUBMITTED, score, submitted_id, IN_PROGRESS),
        )

    upsert_answers(cur, submitted_id, answers)
    logger.info(
        "Submitted attempt %s (#%s) for user=%s quiz=%s score=%s/%s",
        submitted_id,
        attempt_no,
        user_id,
        quiz_id,
        score,
        len(questions),
    )

    return {
        "id": submitted_id,
        "score": score,
        "attempt_no": attempt_no,
        "total_questions": len(questions),
    }
