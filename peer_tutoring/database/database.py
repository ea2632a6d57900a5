from sqlalchemy import create_engine, Column, Integer, String, Text, DateTime, Boolean, ForeignKey, Enum, Index, CheckConstraint, UniqueConstraint, JSON
from sqlalchemy.orm import relationship, declarative_base, sessionmaker
from datetime import datetime
from typing import Optional
from peer_tutoring.config import get_settings
from peer_tutoring.errors import (
    BadRequestError,
    CapacityExceededError,
    DuplicateEnrollmentError,
    NotEnrolledError,
    ValidationError,
)
from peer_tutoring.utilities import (
    compute_duration,
    generate_uuid,
    is_valid_time,
    is_valid_uuid,
    normalize_tags,
    normalize_text,
    to_naive_utc,
    utcnow,
)
import enum

"""
Database models for the peer tutoring platform.
Includes models for users, tutoring sessions, participants and session tags.
Uses SQLAlchemy ORM with PostgreSQL/SQLite backend.

TutoringSession is the aggregate root: every change to its schedule,
capacity or roster goes through its methods, which validate the change
before touching any column.
"""

# Base class for ORM models
Base = declarative_base()

# Enum for user roles
class UserRole(enum.Enum):
    ADMIN = "admin"
    STUDENT = "student"
    TUTOR = "tutor"

class SessionStatus(enum.Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class SessionLevel(enum.Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"

class LocationType(enum.Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    HYBRID = "hybrid"

class ParticipantStatus(enum.Enum):
    ENROLLED = "enrolled"
    ATTENDED = "attended"
    DROPPED = "dropped"
    CANCELLED = "cancelled"

# Participants in these states occupy a seat
SEAT_HOLDING = {ParticipantStatus.ENROLLED.value, ParticipantStatus.ATTENDED.value}

STATUS_TRANSITIONS = {
    SessionStatus.SCHEDULED.value: {SessionStatus.IN_PROGRESS.value, SessionStatus.CANCELLED.value},
    SessionStatus.IN_PROGRESS.value: {SessionStatus.COMPLETED.value, SessionStatus.CANCELLED.value},
    SessionStatus.COMPLETED.value: set(),
    SessionStatus.CANCELLED.value: set(),
}

UPDATABLE_FIELDS = (
    "subject", "description", "topic", "schedule", "location", "level", "grade",
    "duration", "tags", "notes", "status", "capacity", "cancellation_reason",
)

MAX_CAPACITY = 100

def _values(enum_cls) -> list:
    return [member.value for member in enum_cls]

def _parse_date(value):
    if isinstance(value, datetime):
        return to_naive_utc(value)
    try:
        return to_naive_utc(datetime.fromisoformat(str(value)))
    except ValueError:
        return None

# User Model
class User(Base):
    """User model with role-based access control."""
    __tablename__ = 'users'
    id = Column(String(36), primary_key=True, default=generate_uuid)
    role = Column(Enum(UserRole), nullable=False)  # Use Enum for role
    email = Column(String(255), unique=True, nullable=False, index=True)  # Email should be unique and indexed
    name = Column(String(100), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @classmethod
    def get_by_id(cls, db, user_id: str) -> Optional['User']:
        """Get user by UUID string."""
        if not is_valid_uuid(user_id):
            return None
        return db.query(cls).filter(cls.id == user_id).first()

    def __repr__(self):
        """String representation of the User object."""
        return f"<User(id={self.id}, email={self.email}, role={self.role})>"

# Participant Model
class Participant(Base):
    """One enrollment record on a session roster. Row order is join order."""
    __tablename__ = 'session_participants'
    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(36), ForeignKey('tutoring_sessions.id', ondelete='CASCADE'), nullable=False)
    user_id = Column(String(36), ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    joined_at = Column(DateTime, default=utcnow, nullable=False)
    status = Column(String(20), default=ParticipantStatus.ENROLLED.value, nullable=False)
    feedback_given = Column(Boolean, default=False, nullable=False)
    rating = Column(Integer, nullable=True)
    feedback = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint('session_id', 'user_id', name='uq_participant_session_user'),
        CheckConstraint('rating IS NULL OR (rating >= 1 AND rating <= 5)', name='check_participant_rating_range'),
    )

    session = relationship("TutoringSession", back_populates="participants")
    user = relationship("User", lazy='joined')

    @property
    def holds_seat(self) -> bool:
        return self.status in SEAT_HOLDING

    def __repr__(self):
        return f"<Participant(session_id={self.session_id}, user_id={self.user_id}, status={self.status})>"

# Session Tag Model
class SessionTag(Base):
    __tablename__ = 'session_tags'
    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(36), ForeignKey('tutoring_sessions.id', ondelete='CASCADE'), nullable=False)
    name = Column(String(30), nullable=False)

    def __repr__(self):
        return f"<SessionTag(session_id={self.session_id}, name={self.name})>"

# Tutoring Session Model
class TutoringSession(Base):
    """A scheduled tutoring meeting with a capacity-bounded participant roster."""
    __tablename__ = 'tutoring_sessions'
    id = Column(String(36), primary_key=True, default=generate_uuid)
    tutor_id = Column(String(36), ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    subject = Column(String(50), nullable=False)
    description = Column(Text, nullable=False)
    topic = Column(String(100), nullable=True)

    # Schedule
    schedule_date = Column(DateTime, nullable=False)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    duration = Column(Integer, nullable=False) # Duration in minutes, derived from start/end time

    # Location
    location_type = Column(String(10), default=LocationType.ONLINE.value, nullable=False)
    address = Column(JSON, nullable=True)
    meeting_link = Column(String(500), nullable=True)

    # Capacity ledger
    max_participants = Column(Integer, nullable=False)
    current_enrolled = Column(Integer, default=0, nullable=False)

    status = Column(String(20), default=SessionStatus.SCHEDULED.value, nullable=False)
    level = Column(String(20), default=SessionLevel.INTERMEDIATE.value, nullable=False)
    notes = Column(Text, nullable=True)
    cancellation_reason = Column(String(300), nullable=True)
    is_published = Column(Boolean, default=True, nullable=False)
    external_calendar_ref = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Optimistic locking version counter
    version = Column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint('current_enrolled >= 0', name='check_current_enrolled_non_negative'),
        CheckConstraint('current_enrolled <= max_participants', name='check_enrolled_lte_capacity'),
        CheckConstraint('max_participants >= 1 AND max_participants <= 100', name='check_capacity_range'),
        CheckConstraint('duration > 0', name='check_duration_positive'),
    )
    __mapper_args__ = {"version_id_col": version}

    # Relationships
    tutor = relationship("User", foreign_keys=[tutor_id], lazy='joined')
    participants = relationship(
        "Participant",
        back_populates="session",
        cascade='all, delete-orphan',
        order_by="Participant.id",
        lazy='selectin'
    )
    tag_rows = relationship(
        "SessionTag",
        cascade='all, delete-orphan',
        order_by="SessionTag.id",
        lazy='selectin'
    )

    ###########################
    ### CONSTRUCTION/UPDATE ###
    ###########################

    @classmethod
    def create(cls, tutor_id: str, data: dict, now: Optional[datetime] = None) -> 'TutoringSession':
        """
        Build a new session from a creation payload.

        Args:
            tutor_id (str): The owning tutor.
            data (dict): subject, description, schedule {date, start_time, end_time},
                capacity {max_participants} and the optional fields.
            now (datetime): Reference time for the future-date check.

        Raises:
            ValidationError: listing every violated field.
        """
        now = now or utcnow()
        errors = []

        subject = normalize_text(data.get("subject"))
        description = normalize_text(data.get("description"))
        if not subject or not description or not data.get("schedule"):
            errors.append("subject, description and schedule are required")
        if subject is not None:
            subject = subject.lower()
            cls._check_subject(subject, errors)
        if description is not None:
            cls._check_description(description, errors)

        topic = cls._check_topic(data.get("topic"), errors)
        notes = cls._check_notes(data.get("notes"), errors)

        schedule = data.get("schedule") or {}
        schedule_date = None
        duration = None
        start_time, end_time = schedule.get("start_time"), schedule.get("end_time")
        if schedule:
            if not schedule.get("date") or not start_time or not end_time:
                errors.append("schedule must include date, start_time and end_time")
            else:
                schedule_date = _parse_date(schedule["date"])
                if schedule_date is None or schedule_date <= now:
                    errors.append("Session date must be a valid future date")
                duration = cls._check_times(start_time, end_time, errors)

        capacity = data.get("capacity") or {}
        max_participants = cls._check_capacity(capacity.get("max_participants"), errors)

        level = cls._check_level(data.get("level") or data.get("grade") or SessionLevel.INTERMEDIATE.value, errors)

        location = data.get("location") or {}
        location_type = cls._check_location_type(location.get("type") or LocationType.ONLINE.value, errors)

        tags = cls._check_tags(data.get("tags"), errors)

        if errors:
            raise ValidationError(errors)

        session = cls(
            id=generate_uuid(),
            tutor_id=tutor_id,
            subject=subject,
            description=description,
            topic=topic,
            schedule_date=schedule_date,
            start_time=start_time,
            end_time=end_time,
            duration=duration,
            location_type=location_type,
            address=location.get("address"),
            meeting_link=location.get("meeting_link"),
            max_participants=max_participants,
            current_enrolled=0,
            status=SessionStatus.SCHEDULED.value,
            level=level,
            notes=notes,
            is_published=True,
            created_at=now,
            updated_at=now,
        )
        session.tag_rows = [SessionTag(name=tag) for tag in tags]
        return session

    def apply_update(self, updates: dict, now: Optional[datetime] = None) -> 'TutoringSession':
        """
        Apply a sparse update. Unknown keys are ignored.

        The schedule date is not re-checked against the current time here;
        only creation requires a future date. A top-level `duration` is
        accepted for compatibility but the stored duration is always derived
        from the schedule times.

        Raises:
            ValidationError: listing every violated field.
        """
        data = {key: updates[key] for key in UPDATABLE_FIELDS if key in updates}
        errors = []
        changes = {}

        if "subject" in data:
            subject = (normalize_text(data["subject"]) or "").lower()
            self._check_subject(subject, errors)
            changes["subject"] = subject
        if "description" in data:
            description = normalize_text(data["description"]) or ""
            self._check_description(description, errors)
            changes["description"] = description
        if "topic" in data:
            changes["topic"] = self._check_topic(data["topic"], errors)
        if "notes" in data:
            changes["notes"] = self._check_notes(data["notes"], errors)
        if "cancellation_reason" in data:
            reason = normalize_text(data["cancellation_reason"]) or None
            if reason and len(reason) > 300:
                errors.append("Cancellation reason cannot exceed 300 characters")
            changes["cancellation_reason"] = reason

        schedule = data.get("schedule")
        if schedule:
            if schedule.get("date"):
                schedule_date = _parse_date(schedule["date"])
                if schedule_date is None:
                    errors.append("Invalid schedule date")
                changes["schedule_date"] = schedule_date
            if schedule.get("start_time") or schedule.get("end_time"):
                start_time = schedule.get("start_time") or self.start_time
                end_time = schedule.get("end_time") or self.end_time
                changes["duration"] = self._check_times(start_time, end_time, errors)
                changes["start_time"] = start_time
                changes["end_time"] = end_time

        level = data.get("level") or data.get("grade")
        if level:
            changes["level"] = self._check_level(level, errors)

        location = data.get("location")
        if location:
            if location.get("type"):
                changes["location_type"] = self._check_location_type(location["type"], errors)
            if "address" in location:
                changes["address"] = location["address"]
            if "meeting_link" in location:
                changes["meeting_link"] = location["meeting_link"]

        capacity = data.get("capacity")
        if capacity and capacity.get("max_participants") is not None:
            max_participants = self._check_capacity(capacity["max_participants"], errors)
            if max_participants is not None and max_participants < self.current_enrolled:
                errors.append(f"max_participants cannot be lower than the {self.current_enrolled} enrolled participants")
            changes["max_participants"] = max_participants

        if "tags" in data:
            changes["tags"] = self._check_tags(data["tags"], errors)

        if data.get("status"):
            changes["status"] = self._check_status_transition(data["status"], errors)

        if errors:
            raise ValidationError(errors)

        tags = changes.pop("tags", None)
        for key, value in changes.items():
            setattr(self, key, value)
        if tags is not None:
            self.tag_rows = [SessionTag(name=tag) for tag in tags]
        self.updated_at = now or utcnow()
        return self

    ######################
    ### ROSTER CHANGES ###
    ######################

    def find_participant(self, user_id: str) -> Optional[Participant]:
        for participant in self.participants:
            if participant.user_id == user_id:
                return participant
        return None

    def add_participant(self, user_id: str, now: Optional[datetime] = None) -> Participant:
        """
        Enroll a user, taking one seat.

        A user whose record was dropped or cancelled is re-enrolled on the
        same record, so a roster never holds two records for one user.

        Raises:
            CapacityExceededError: if no seat is free.
            DuplicateEnrollmentError: if the user already holds a seat.
        """
        now = now or utcnow()
        if self.is_full:
            raise CapacityExceededError()

        participant = self.find_participant(user_id)
        if participant is not None and participant.holds_seat:
            raise DuplicateEnrollmentError()

        if participant is None:
            participant = Participant(user_id=user_id, joined_at=now, status=ParticipantStatus.ENROLLED.value, feedback_given=False)
            self.participants.append(participant)
        else:
            participant.status = ParticipantStatus.ENROLLED.value
            participant.joined_at = now
        self.current_enrolled = self.current_enrolled + 1
        self.updated_at = now
        return participant

    def remove_participant(self, user_id: str, now: Optional[datetime] = None) -> None:
        """
        Remove a user's record from the roster, releasing their seat.

        Raises:
            NotEnrolledError: if the user has no record on this session.
        """
        participant = self.find_participant(user_id)
        if participant is None:
            raise NotEnrolledError()

        if participant.holds_seat:
            self.current_enrolled = max(0, self.current_enrolled - 1)
        self.participants.remove(participant)
        self.updated_at = now or utcnow()

    def set_participant_status(self, user_id: str, status: str, now: Optional[datetime] = None) -> Participant:
        """
        Change a participant's status, moving the seat count with it.

        Raises:
            ValidationError: on an unknown status.
            NotEnrolledError: if the user has no record on this session.
            CapacityExceededError: when restoring a seat on a full session.
        """
        if status not in _values(ParticipantStatus):
            raise ValidationError(f"Participant status must be one of: {', '.join(_values(ParticipantStatus))}")
        participant = self.find_participant(user_id)
        if participant is None:
            raise NotEnrolledError()

        takes_seat = status in SEAT_HOLDING
        if participant.holds_seat and not takes_seat:
            self.current_enrolled = max(0, self.current_enrolled - 1)
        elif not participant.holds_seat and takes_seat:
            if self.is_full:
                raise CapacityExceededError()
            self.current_enrolled = self.current_enrolled + 1
        participant.status = status
        self.updated_at = now or utcnow()
        return participant

    def add_feedback(self, user_id: str, rating: int, feedback: Optional[str] = None, now: Optional[datetime] = None) -> Participant:
        """
        Record a participant's rating and feedback. Both are write-once.

        Raises:
            ValidationError: if the rating is outside 1-5 or the text is too long.
            NotEnrolledError: if the user has no record on this session.
            BadRequestError: if feedback was already given.
        """
        if not isinstance(rating, int) or isinstance(rating, bool) or rating < 1 or rating > 5:
            raise ValidationError("Rating must be between 1 and 5")
        feedback = normalize_text(feedback) or None
        if feedback and len(feedback) > 500:
            raise ValidationError("Feedback cannot exceed 500 characters")

        participant = self.find_participant(user_id)
        if participant is None:
            raise NotEnrolledError()
        if participant.feedback_given:
            raise BadRequestError("Feedback already provided by this user")

        participant.rating = rating
        participant.feedback = feedback
        participant.feedback_given = True
        self.updated_at = now or utcnow()
        return participant

    #####################
    ### DERIVED VIEWS ###
    #####################

    @property
    def available_seats(self) -> int:
        return self.max_participants - self.current_enrolled

    @property
    def is_full(self) -> bool:
        return self.current_enrolled >= self.max_participants

    @property
    def is_past(self) -> bool:
        return self.schedule_date < utcnow()

    @property
    def tags(self) -> list:
        return [tag.name for tag in self.tag_rows]

    @property
    def feedback_count(self) -> int:
        return sum(1 for p in self.participants if p.feedback_given)

    @property
    def average_rating(self) -> Optional[float]:
        ratings = [p.rating for p in self.participants if p.feedback_given and p.rating is not None]
        if not ratings:
            return None
        return round(sum(ratings) / len(ratings), 2)

    def enrolled_user_ids(self) -> list:
        return [p.user_id for p in self.participants if p.holds_seat]

    ##################
    ### VALIDATORS ###
    ##################

    @staticmethod
    def _check_subject(subject: str, errors: list) -> None:
        if not 3 <= len(subject) <= 50:
            errors.append("Subject must be 3-50 characters")

    @staticmethod
    def _check_description(description: str, errors: list) -> None:
        if not 10 <= len(description) <= 500:
            errors.append("Description must be 10-500 characters")

    @staticmethod
    def _check_topic(topic, errors: list) -> Optional[str]:
        topic = normalize_text(topic) or None
        if topic and len(topic) > 100:
            errors.append("Topic cannot exceed 100 characters")
        return topic

    @staticmethod
    def _check_notes(notes, errors: list) -> Optional[str]:
        notes = normalize_text(notes) or None
        if notes and len(notes) > 500:
            errors.append("Notes cannot exceed 500 characters")
        return notes

    @staticmethod
    def _check_times(start_time, end_time, errors: list) -> Optional[int]:
        if not is_valid_time(start_time) or not is_valid_time(end_time):
            errors.append("Time must be in HH:MM format")
            return None
        try:
            return compute_duration(start_time, end_time)
        except ValidationError as e:
            errors.extend(e.errors)
            return None

    @staticmethod
    def _check_capacity(value, errors: list) -> Optional[int]:
        try:
            max_participants = int(value)
        except (TypeError, ValueError):
            errors.append("capacity.max_participants is required")
            return None
        if max_participants < 1 or max_participants > MAX_CAPACITY:
            errors.append(f"capacity.max_participants must be between 1 and {MAX_CAPACITY}")
            return None
        return max_participants

    @staticmethod
    def _check_level(level, errors: list) -> Optional[str]:
        level = str(level).strip().lower()
        if level not in _values(SessionLevel):
            errors.append("Level must be beginner, intermediate, or advanced")
            return None
        return level

    @staticmethod
    def _check_location_type(location_type, errors: list) -> Optional[str]:
        location_type = str(location_type).strip().lower()
        if location_type not in _values(LocationType):
            errors.append("Location type must be online, offline, or hybrid")
            return None
        return location_type

    @staticmethod
    def _check_tags(tags, errors: list) -> list:
        tags = normalize_tags(tags)
        if any(len(tag) > 30 for tag in tags):
            errors.append("Tag cannot exceed 30 characters")
        return tags

    def _check_status_transition(self, status, errors: list) -> Optional[str]:
        status = str(status).strip().lower()
        if status not in _values(SessionStatus):
            errors.append("Status must be one of: scheduled, in-progress, completed, or cancelled")
            return None
        if status != self.status and status not in STATUS_TRANSITIONS[self.status]:
            errors.append(f"Cannot change status from {self.status} to {status}")
            return None
        return status

    def __repr__(self):
        """String representation of the TutoringSession object."""
        return f"<TutoringSession(id={self.id}, subject={self.subject}, enrolled={self.current_enrolled}/{self.max_participants})>"

# Add indexes for frequently queried columns
Index('idx_session_tutor_status', TutoringSession.tutor_id, TutoringSession.status)
Index('idx_session_date', TutoringSession.schedule_date)
Index('idx_session_subject', TutoringSession.subject)
Index('idx_session_status', TutoringSession.status)
Index('idx_participant_user', Participant.user_id)
Index('idx_tag_name', SessionTag.name)

def create_db_engine(url: str):
    """Create an engine; SQLite gets a busy timeout so concurrent writers queue instead of failing."""
    if url.startswith("sqlite"):
        return create_engine(url, echo=False, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30
    )

# Database setup
DATABASE_URL = get_settings().db_url
engine = create_db_engine(DATABASE_URL)
Base.metadata.create_all(engine)
SessionLocal = sessionmaker(bind=engine)

# Dependency to get DB session
def get_db():
    """Provides a transactional scope around a series of operations."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
