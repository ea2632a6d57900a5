import re
import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional
from peer_tutoring.errors import ValidationError

TIME_PATTERN = re.compile(r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$")

def is_valid_uuid(uuid_str: str) -> bool:
    """Validate UUID string format."""
    if not uuid_str:
        return False
    try:
        # Validate length and format
        if len(uuid_str) != 36:
            return False
        # Try to parse as UUID to validate format
        uuid_obj = uuid.UUID(uuid_str)
        return str(uuid_obj) == uuid_str.lower()
    except (ValueError, AttributeError, TypeError):
        return False

def validate_id(value: str, name: str = "id") -> str:
    """Reject malformed identifiers before they reach the database."""
    if not is_valid_uuid(value):
        raise ValidationError(f"Invalid {name}")
    return value.lower()

def generate_uuid() -> str:
    """Generate a string UUID."""
    return str(uuid.uuid4()).lower()

def utcnow() -> datetime:
    """Naive UTC timestamp, the form every datetime column is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)

def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value

def is_valid_time(value) -> bool:
    return isinstance(value, str) and bool(TIME_PATTERN.match(value))

def minutes_of_day(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)

def compute_duration(start_time: str, end_time: str) -> int:
    """Duration in minutes between two HH:MM strings.

    Raises:
        ValidationError: if either time is malformed or the end is not after the start.
    """
    if not is_valid_time(start_time) or not is_valid_time(end_time):
        raise ValidationError("Time must be in HH:MM format")
    duration = minutes_of_day(end_time) - minutes_of_day(start_time)
    if duration <= 0:
        raise ValidationError("End time must be after start time")
    return duration

def normalize_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip()

def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """Trim, lower-case and de-duplicate tags, keeping first-seen order."""
    seen = []
    for tag in tags or []:
        tag = str(tag).strip().lower()
        if tag and tag not in seen:
            seen.append(tag)
    return seen

def split_csv(value: Optional[str]) -> List[str]:
    """Split a comma separated query value into trimmed, non-empty tokens."""
    if value is None:
        return []
    return [token.strip() for token in str(value).split(",") if token.strip()]

def escape_like(value: str) -> str:
    """Escape LIKE wildcards so client input only ever matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
