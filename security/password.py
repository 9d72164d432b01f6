import bcrypt
from flask import current_app

_dummy_hash = None


def hash_password(plain_password: str, rounds: int = None) -> str:
    if not isinstance(plain_password, str) or len(plain_password) == 0:
        raise ValueError("Password must be a non-empty string")

    if rounds is None:
        rounds = current_app.config.get("PASSWORD_BCRYPT_ROUNDS", 12)
    # bcrypt expects bytes
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(plain_password.encode("utf-8"), salt)
    return hashed.decode("utf-8")


def verify_password(plain_password: str, password_hash: str) -> bool:
    if not plain_password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(
            plain_password.encode("utf-8"),
            password_hash.encode("utf-8")
        )
    except ValueError:
        # malformed stored hash
        return False


def check_user_password(user, plain_password: str) -> bool:
    """
    Verify a login password. Unknown users are checked against a dummy
    hash so both paths cost one bcrypt comparison.
    """
    global _dummy_hash
    if user is None:
        if _dummy_hash is None:
            _dummy_hash = hash_password("sessionguard-dummy-password")
        verify_password(plain_password or "x", _dummy_hash)
        return False
    return verify_password(plain_password, user.password_hash)
