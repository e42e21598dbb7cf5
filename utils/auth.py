from werkzeug.security import check_password_hash, generate_password_hash


def hash_password(password):
    return generate_password_hash(password)


def verify_password(password, password_hash):
    if not password_hash:
        return False
    return check_password_hash(password_hash, password)


def normalize_email(value):
    if not isinstance(value, str):
        return ""
    return value.strip().lower()[:120]


def is_valid_email(email):
    if not email or "@" not in email:
        return False
    local, _, domain = email.partition("@")
    return bool(local and domain)
