from pydantic import BaseModel, ConfigDict, field_validator
from typing import List, Optional
from datetime import datetime
from bleach import clean

"""
Request and response bodies for the /sessions endpoints.

Request models only guarantee shape and strip markup; range and format
rules are enforced by TutoringSession itself so they also hold for callers
that bypass the HTTP layer.
"""

def sanitize(v):
    if v is None:
        return v
    return clean(v, tags=set(), strip=True)

###############################
### SESSION REQUEST SCHEMAS ###
###############################

class ScheduleIn(BaseModel):
    """Schedule of a new session. Times are HH:MM (24h)."""
    date: datetime
    start_time: str
    end_time: str

class ScheduleUpdate(BaseModel):
    date: Optional[datetime] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None

class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None

class LocationIn(BaseModel):
    type: Optional[str] = None
    address: Optional[Address] = None
    meeting_link: Optional[str] = None

class CapacityIn(BaseModel):
    max_participants: int

class SessionCreate(BaseModel):
    """Session creation data. Admins may name the tutor who will own the session."""
    subject: str
    description: str
    topic: Optional[str] = None
    schedule: ScheduleIn
    location: Optional[LocationIn] = None
    capacity: CapacityIn
    level: Optional[str] = None
    grade: Optional[str] = None
    tags: List[str] = []
    notes: Optional[str] = None
    tutor_id: Optional[str] = None

    @field_validator('subject', 'description', 'topic', 'notes')
    def sanitize_text(cls, v):
        return sanitize(v)

    @field_validator('tags')
    def sanitize_tags(cls, v):
        return [sanitize(tag) for tag in v]

class SessionUpdate(BaseModel):
    """Sparse session update; only the fields sent are applied."""
    subject: Optional[str] = None
    description: Optional[str] = None
    topic: Optional[str] = None
    schedule: Optional[ScheduleUpdate] = None
    location: Optional[LocationIn] = None
    capacity: Optional[CapacityIn] = None
    level: Optional[str] = None
    grade: Optional[str] = None
    duration: Optional[int] = None
    tags: Optional[List[str]] = None
    notes: Optional[str] = None
    status: Optional[str] = None
    cancellation_reason: Optional[str] = None

    @field_validator('subject', 'description', 'topic', 'notes', 'cancellation_reason')
    def sanitize_text(cls, v):
        return sanitize(v)

    @field_validator('tags')
    def sanitize_tags(cls, v):
        if v is None:
            return v
        return [sanitize(tag) for tag in v]

class ParticipantStatusUpdate(BaseModel):
    status: str

class FeedbackCreate(BaseModel):
    """A participant's rating (1-5) with optional written feedback"""
    rating: int
    feedback: Optional[str] = None

    @field_validator('feedback')
    def sanitize_feedback(cls, v):
        return sanitize(v)

################################
### SESSION RESPONSE SCHEMAS ###
################################

class UserSummary(BaseModel):
    id: str
    name: str
    email: str
    role: str

    @classmethod
    def from_model(cls, user) -> Optional['UserSummary']:
        if user is None:
            return None
        role = user.role.value if hasattr(user.role, "value") else user.role
        return cls(id=user.id, name=user.name, email=user.email, role=role)

class ParticipantResponse(BaseModel):
    user_id: str
    joined_at: datetime
    status: str
    feedback_given: bool
    rating: Optional[int] = None
    feedback: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

class ScheduleResponse(BaseModel):
    date: datetime
    start_time: str
    end_time: str
    duration: int

class LocationResponse(BaseModel):
    type: str
    address: Optional[Address] = None
    meeting_link: Optional[str] = None

class CapacityResponse(BaseModel):
    max_participants: int
    current_enrolled: int
    available_seats: int
    is_full: bool

class SessionResponse(BaseModel):
    """Session response data"""
    id: str
    tutor: Optional[UserSummary] = None
    tutor_id: str
    subject: str
    description: str
    topic: Optional[str] = None
    schedule: ScheduleResponse
    location: LocationResponse
    capacity: CapacityResponse
    participants: List[ParticipantResponse] = []
    status: str
    level: str
    tags: List[str] = []
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    is_published: bool
    is_past: bool
    average_rating: Optional[float] = None
    feedback_count: int = 0
    external_calendar_ref: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, session) -> 'SessionResponse':
        return cls(
            id=session.id,
            tutor=UserSummary.from_model(session.tutor),
            tutor_id=session.tutor_id,
            subject=session.subject,
            description=session.description,
            topic=session.topic,
            schedule=ScheduleResponse(
                date=session.schedule_date,
                start_time=session.start_time,
                end_time=session.end_time,
                duration=session.duration,
            ),
            location=LocationResponse(
                type=session.location_type,
                address=session.address,
                meeting_link=session.meeting_link,
            ),
            capacity=CapacityResponse(
                max_participants=session.max_participants,
                current_enrolled=session.current_enrolled,
                available_seats=session.available_seats,
                is_full=session.is_full,
            ),
            participants=[ParticipantResponse.model_validate(p) for p in session.participants],
            status=session.status,
            level=session.level,
            tags=session.tags,
            notes=session.notes,
            cancellation_reason=session.cancellation_reason,
            is_published=session.is_published,
            is_past=session.is_past,
            average_rating=session.average_rating,
            feedback_count=session.feedback_count,
            external_calendar_ref=session.external_calendar_ref,
            created_at=session.created_at,
            updated_at=session.updated_at,
        )

class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int

class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]
    pagination: PaginationResponse

class EnrollmentResponse(BaseModel):
    """Join/leave response data"""
    session_id: str
    current_enrolled: int
    available_seats: int
    message: str

class MessageResponse(BaseModel):
    message: str
