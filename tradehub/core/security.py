import hashlib
from typing import Any

from beanie import PydanticObjectId
from bson.errors import InvalidId
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from tradehub.core.config import get_settings
from tradehub.core.exceptions import BadRequestError

SESSION_MAX_AGE_SECONDS = 7 * 24 * 3600


def get_session_serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(
        settings.secret_key,
        salt="tradehub-session",
        signer_kwargs={"key_derivation": "hmac", "digest_method": hashlib.sha256},
    )


def create_session_cookie(payload: dict[str, Any]) -> str:
    serializer = get_session_serializer()
    return serializer.dumps(payload)


def load_session_cookie(cookie_value: str) -> dict[str, Any] | None:
    serializer = get_session_serializer()
    try:
        return serializer.loads(cookie_value, max_age=SESSION_MAX_AGE_SECONDS)
    except (BadSignature, SignatureExpired):
        return None


def parse_object_id(value: str, label: str = "ID") -> PydanticObjectId:
    """Parse a path/body identifier; malformed ids are a client error, not a miss."""
    try:
        return PydanticObjectId(value)
    except (InvalidId, TypeError) as e:
        raise BadRequestError(f"Invalid {label} format") from e
