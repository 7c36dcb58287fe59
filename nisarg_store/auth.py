import bcrypt
from flask import jsonify
from flask_jwt_extended import get_jwt

MIN_PASSWORD_LENGTH = 8


def hash_password(password: str) -> bytes:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())


def check_password(password: str, stored_hash) -> bool:
    if not password or not stored_hash:
        return False
    if isinstance(stored_hash, str):
        stored_hash = stored_hash.encode("utf-8")
    try:
        return bcrypt.checkpw(password.encode("utf-8"), stored_hash)
    except ValueError:
        # Legacy plain-text rows are not valid bcrypt hashes.
        return False


def require_admin():
    """Return an error response unless the current JWT belongs to an admin."""
    claims = get_jwt()
    if not claims.get("is_admin"):
        return (
            jsonify({"error": "You need additional permissions to perform this action."}),
            403,
        )
    return None
