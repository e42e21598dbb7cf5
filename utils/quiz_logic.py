"""Answer normalization and scoring for quiz submissions.

Scoring is all-or-nothing per question and fails fast for the whole
submission when an answer references a question outside the quiz or a
choice outside its question.
"""

SINGLE_CHOICE = "SINGLE_CHOICE"
MULTIPLE_CHOICE = "MULTIPLE_CHOICE"
QUESTION_TYPES = (SINGLE_CHOICE, MULTIPLE_CHOICE)


class ScoringError(ValueError):
    pass


class PayloadError(ValueError):
    pass


def parse_id(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


def normalize_answers(raw_answers):
    """Turn ``[{questionId, choiceIds}]`` into ``{question_id: frozenset(choice_ids)}``.

    Empty choice ids are dropped and duplicates collapse. A question listed
    twice keeps the choice set of its last entry.
    """
    if not isinstance(raw_answers, list):
        raise PayloadError("Invalid payload.")

    answers = {}
    for item in raw_answers:
        if not isinstance(item, dict):
            raise PayloadError("Invalid payload.")

        question_id = parse_id(item.get("questionId"))
        if question_id is None:
            raise PayloadError("Invalid questionId.")

        raw_choice_ids = item.get("choiceIds")
        if raw_choice_ids is None:
            raw_choice_ids = []
        if not isinstance(raw_choice_ids, list):
            raise PayloadError("Invalid payload.")

        choice_ids = set()
        for raw_choice_id in raw_choice_ids:
            if raw_choice_id in (None, ""):
                continue
            choice_id = parse_id(raw_choice_id)
            if choice_id is None:
                raise PayloadError("Invalid choiceId.")
            choice_ids.add(choice_id)

        answers.pop(question_id, None)
        answers[question_id] = frozenset(choice_ids)

    return answers


def is_answer_correct(question_type, correct, submitted):
    if question_type == SINGLE_CHOICE:
        if len(submitted) != 1:
            return False
        (choice_id,) = submitted
        return choice_id in correct and len(correct) == 1

    return submitted == correct


def score_submission(questions, answers):
    """Return the number of correctly answered questions.

    ``questions`` is a list of ``{"id", "type", "choices": [{"id", "is_correct"}]}``
    and ``answers`` maps question ids to sets of choice ids. Questions with no
    answer count as incorrect.
    """
    if not questions:
        raise ScoringError("Quiz has no questions.")

    by_question_id = {question["id"]: question for question in questions}

    for question_id, submitted in answers.items():
        question = by_question_id.get(question_id)
        if question is None:
            raise ScoringError("Invalid questionId.")

        valid_choice_ids = {choice["id"] for choice in question["choices"]}
        if not submitted <= valid_choice_ids:
            raise ScoringError("Invalid choiceId.")

    score = 0
    for question in questions:
        if question["id"] not in answers:
            continue
        submitted = answers[question["id"]]
        correct = frozenset(choice["id"] for choice in question["choices"] if choice["is_correct"])
        if is_answer_correct(question["type"], correct, submitted):
            score += 1

    return score
