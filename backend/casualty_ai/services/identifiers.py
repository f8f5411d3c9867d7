"""Object id helpers shared by every service that accepts external identifiers."""
import re
import secrets
from typing import Iterable, List

from casualty_ai.errors import InvalidIdentifierError

_OBJECT_ID_RE = re.compile(r"^[0-9a-fA-F]{24}$")


def is_valid_object_id(value: object) -> bool:
    return isinstance(value, str) and bool(_OBJECT_ID_RE.match(value))


def validate_object_id(value: object, field: str = "id") -> str:
    """Return the normalized (lower-case) id or raise InvalidIdentifierError."""
    if not is_valid_object_id(value):
        raise InvalidIdentifierError(value, field)
    return value.lower()


def validate_object_ids(values: Iterable[object], field: str = "id") -> List[str]:
    return [validate_object_id(v, field) for v in values]


def new_object_id() -> str:
    return secrets.token_hex(12)
