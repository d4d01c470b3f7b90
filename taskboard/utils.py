import uuid
from typing import Optional


def new_uuid() -> str:
    return str(uuid.uuid4())


def strip_or_none(value: Optional[str]) -> Optional[str]:
    """Trim free text; empty strings become ``None``."""
    if value is None:
        return None
    value = value.strip()
    return value or None


def etag_for(version: int) -> str:
    return f'"{version}"'


def matches_etag(if_match: Optional[str], version: int) -> bool:
    if if_match is None:
        return True
    return if_match.strip().strip('"') == str(version)
