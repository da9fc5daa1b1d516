import secrets
import string

USER_ID_PREFIX = "USR"
_ALPHABET = string.ascii_uppercase + string.digits


def generate_user_id(prefix: str = USER_ID_PREFIX) -> str:
    """
    Short opaque user id such as 'USR-1F2A9C3D'.

    SQLAlchemy calls column defaults with no arguments, so `prefix` must
    stay optional.
    """
    block = "".join(secrets.choice(_ALPHABET) for _ in range(8))
    return f"{prefix}-{block}" if prefix else block
