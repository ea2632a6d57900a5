"""
Turns the flat query parameters of GET /sessions into a normalized query plan.

The plan only holds cleaned values (lower-cased tokens, validated enums,
clamped pagination). SessionStore translates it into SQL; nothing from the
raw query string reaches the database directly.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Optional, Tuple
from peer_tutoring.database.database import LocationType, SessionLevel, SessionStatus
from peer_tutoring.errors import ValidationError
from peer_tutoring.utilities import split_csv, utcnow, validate_id

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100

# Public sort key -> TutoringSession column
SORTABLE_FIELDS = {
    "schedule.date": "schedule_date",
    "subject": "subject",
    "level": "level",
    "createdAt": "created_at",
    "capacity.maxParticipants": "max_participants",
    "capacity.currentEnrolled": "current_enrolled",
}
DEFAULT_SORT_FIELD = "schedule.date"

TRUE_VALUES = {"true", "1", "yes", "on"}


@dataclass(frozen=True)
class SessionFilter:
    subjects: Tuple[str, ...] = ()
    levels: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()
    tutor_id: Optional[str] = None
    participant_id: Optional[str] = None
    location_type: Optional[str] = None
    status: Optional[str] = None
    available_seats_only: bool = False
    # Only sessions on or after this instant; None lifts the date restriction
    not_before: Optional[datetime] = None


@dataclass(frozen=True)
class SortSpec:
    field: str = DEFAULT_SORT_FIELD
    descending: bool = False

    @property
    def column(self) -> str:
        return SORTABLE_FIELDS[self.field]


@dataclass(frozen=True)
class QueryPlan:
    filter: SessionFilter = field(default_factory=SessionFilter)
    sort: SortSpec = field(default_factory=SortSpec)
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


def parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in TRUE_VALUES


def parse_int(value, default: int) -> int:
    """parseInt-like: non-numeric or zero values fall back to the default."""
    try:
        return int(str(value).strip()) or default
    except (TypeError, ValueError):
        return default


def parse_pagination(page, limit) -> Tuple[int, int]:
    page = max(1, parse_int(page, 1))
    limit = min(MAX_PAGE_SIZE, max(1, parse_int(limit, DEFAULT_PAGE_SIZE)))
    return page, limit


def parse_sort(sort_by: Optional[str], sort_order: Optional[str]) -> SortSpec:
    if not sort_by or sort_by not in SORTABLE_FIELDS:
        return SortSpec(DEFAULT_SORT_FIELD, False)
    order = str(sort_order or "asc").strip().lower()
    return SortSpec(sort_by, order in ("desc", "-1"))


def parse_levels(value: Optional[str]) -> Tuple[str, ...]:
    """Comma separated levels; tokens that are not a known level are dropped."""
    allowed = {level.value for level in SessionLevel}
    levels = []
    for token in split_csv(value):
        token = token.lower()
        if token in allowed and token not in levels:
            levels.append(token)
    return tuple(levels)


def _lowered_tokens(value: Optional[str]) -> Tuple[str, ...]:
    return tuple(dict.fromkeys(token.lower() for token in split_csv(value)))


def build_query_plan(params: Mapping[str, object], now: Optional[datetime] = None) -> QueryPlan:
    """
    Build a query plan from GET /sessions parameters.

    Args:
        params: subject, grade|level, tutor, tag, locationType, availableSeatsOnly,
            status, includeCompleted, page, limit, sortBy, sortOrder. Missing keys
            and None values are ignored.
        now: reference time for the upcoming-only default.

    Raises:
        ValidationError: for a malformed tutor id, or a status or location type
            outside their enums.
    """
    params = {key: value for key, value in params.items() if value is not None and value != ""}
    now = now or utcnow()

    include_completed = parse_bool(params.get("includeCompleted"))
    status = None
    if "status" in params:
        status = str(params["status"]).strip().lower()
        if status not in {s.value for s in SessionStatus}:
            raise ValidationError("Status must be one of: scheduled, in-progress, completed, or cancelled")
    elif not include_completed:
        status = SessionStatus.SCHEDULED.value

    location_type = None
    if "locationType" in params:
        location_type = str(params["locationType"]).strip().lower()
        if location_type not in {t.value for t in LocationType}:
            raise ValidationError("Location type must be online, offline, or hybrid")

    tutor_id = None
    if "tutor" in params:
        tutor_id = validate_id(str(params["tutor"]), "tutor id")

    session_filter = SessionFilter(
        subjects=_lowered_tokens(params.get("subject")),
        # grade is the older name for level
        levels=parse_levels(params.get("level", params.get("grade"))),
        tags=_lowered_tokens(params.get("tag")),
        tutor_id=tutor_id,
        location_type=location_type,
        status=status,
        available_seats_only=parse_bool(params.get("availableSeatsOnly")),
        not_before=None if include_completed else now,
    )
    page, limit = parse_pagination(params.get("page"), params.get("limit"))
    return QueryPlan(
        filter=session_filter,
        sort=parse_sort(params.get("sortBy"), params.get("sortOrder")),
        page=page,
        limit=limit,
    )
