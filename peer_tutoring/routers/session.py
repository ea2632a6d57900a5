"""
Tutoring session router.
Endpoints for creating, browsing, updating and deleting sessions, and for
joining, leaving and rating them. All rules live in SessionService; this
module only maps HTTP onto it, handles the response cache and hands the
calendar sync to BackgroundTasks.
"""
from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.orm import Session
from typing import List, Optional
from peer_tutoring.database.database import get_db
from peer_tutoring.database.redis import redis_client
from peer_tutoring.auth_tools import get_current_user, tutor_or_admin
from peer_tutoring.schemas.authentication_schema import DecodedAccessToken
from peer_tutoring.schemas.session_schema import (
    EnrollmentResponse,
    FeedbackCreate,
    MessageResponse,
    ParticipantStatusUpdate,
    SessionCreate,
    SessionListResponse,
    SessionResponse,
    SessionUpdate,
)
from peer_tutoring.services.calendar_sync import CalendarSync, get_calendar_sync
from peer_tutoring.services.session_service import SessionService
from peer_tutoring.rate_limit import limiter, WRITE_LIMIT
from peer_tutoring.logger import logger
from peer_tutoring.config import get_settings

# Check if we should use Redis
USE_REDIS = get_settings().use_redis
router = APIRouter(prefix='/sessions')

def get_session_service(background_tasks: BackgroundTasks, db: Session = Depends(get_db),
                        calendar: CalendarSync = Depends(get_calendar_sync)) -> SessionService:
    """Service for one request; calendar sync runs after the response is sent."""
    return SessionService(db, calendar, dispatch=background_tasks.add_task)

def invalidate_session_cache(session_id: str):
    if USE_REDIS:
        redis_client.delete_cache(redis_client.session_key(session_id))

###############
### READING ###
###############

@router.get('/', response_model=SessionListResponse)
def list_sessions(
    subject: Optional[str] = None,
    grade: Optional[str] = None,
    level: Optional[str] = None,
    tutor: Optional[str] = None,
    tag: Optional[str] = None,
    location_type: Optional[str] = Query(None, alias="locationType"),
    available_seats_only: Optional[str] = Query(None, alias="availableSeatsOnly"),
    status: Optional[str] = None,
    include_completed: Optional[str] = Query(None, alias="includeCompleted"),
    page: Optional[str] = None,
    limit: Optional[str] = None,
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: Optional[str] = Query(None, alias="sortOrder"),
    service: SessionService = Depends(get_session_service),
):
    """
    Browse sessions. Without `status` or `includeCompleted` only upcoming
    scheduled sessions are listed.

    Args:
        subject, tag: comma separated, case-insensitive partial matches.
        grade / level: comma separated levels (grade is the older name).
        tutor: tutor id.
        locationType: online, offline or hybrid.
        availableSeatsOnly, includeCompleted: "true" to enable.
        page, limit: pagination (limit capped at 100).
        sortBy, sortOrder: e.g. sortBy=schedule.date&sortOrder=desc.

    Returns:
        SessionListResponse: the page of sessions and pagination info.
    """
    params = {
        "subject": subject,
        "grade": grade,
        "level": level,
        "tutor": tutor,
        "tag": tag,
        "locationType": location_type,
        "availableSeatsOnly": available_seats_only,
        "status": status,
        "includeCompleted": include_completed,
        "page": page,
        "limit": limit,
        "sortBy": sort_by,
        "sortOrder": sort_order,
    }
    sessions, pagination = service.list_sessions(params)
    return SessionListResponse(
        sessions=[SessionResponse.from_model(s) for s in sessions],
        pagination=pagination,
    )

@router.get('/my-enrolled', response_model=List[SessionResponse])
def get_my_enrolled_sessions(current_user: DecodedAccessToken = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    """Sessions the current user has a roster record on, soonest first."""
    return [SessionResponse.from_model(s) for s in service.get_enrolled_sessions(current_user)]

@router.get('/tutor/{tutor_id}', response_model=List[SessionResponse])
def get_tutor_sessions(tutor_id: str, service: SessionService = Depends(get_session_service)):
    """All sessions of a tutor, newest date first."""
    return [SessionResponse.from_model(s) for s in service.get_tutor_sessions(tutor_id)]

@router.get('/{session_id}', response_model=SessionResponse)
def get_session(session_id: str, service: SessionService = Depends(get_session_service)):
    """
    Get a single session.

    Raises:
        ValidationError: malformed id (400).
        SessionNotFoundError: unknown id (404).
    """
    if USE_REDIS:
        cached_data = redis_client.get_cache(redis_client.session_key(session_id))
        if cached_data:
            logger.info(f"Returning cached session {session_id}")
            return SessionResponse.model_validate_json(cached_data)

    response = SessionResponse.from_model(service.get_session(session_id))
    if USE_REDIS:
        redis_client.set_cache(redis_client.session_key(response.id), response.model_dump_json(), expiration=get_settings().session_cache_seconds)
    return response

###############
### WRITING ###
###############

@router.post('/', response_model=SessionResponse, status_code=201)
@limiter.limit(WRITE_LIMIT)
def create_session(request: Request, data: SessionCreate, current_user: DecodedAccessToken = Depends(tutor_or_admin), service: SessionService = Depends(get_session_service)):
    """
    Create a session. Tutors create their own sessions; admins may pass
    `tutor_id` to create one for a tutor.

    Returns:
        SessionResponse: the created session (201).
    """
    session = service.create(current_user, data.model_dump())
    return SessionResponse.from_model(session)

@router.api_route('/{session_id}', methods=['PUT', 'PATCH'], response_model=SessionResponse)
@limiter.limit(WRITE_LIMIT)
def update_session(request: Request, session_id: str, data: SessionUpdate, current_user: DecodedAccessToken = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    """
    Update a session (owning tutor or admin). Only the fields sent are applied.
    """
    session = service.update(current_user, session_id, data.model_dump(exclude_unset=True))
    invalidate_session_cache(session.id)
    return SessionResponse.from_model(session)

@router.delete('/{session_id}', response_model=MessageResponse)
@limiter.limit(WRITE_LIMIT)
def delete_session(request: Request, session_id: str, current_user: DecodedAccessToken = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    """Delete a session (owning tutor or admin) and its calendar event."""
    service.delete(current_user, session_id)
    invalidate_session_cache(session_id)
    return MessageResponse(message="Session deleted successfully")

@router.post('/{session_id}/join', response_model=EnrollmentResponse)
@limiter.limit(WRITE_LIMIT)
def join_session(request: Request, session_id: str, current_user: DecodedAccessToken = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    """
    Join a session.

    Raises:
        BadRequestError: session full or already enrolled (400).
        ConcurrentUpdateError: too many concurrent writers (409).
    """
    result = service.join(current_user, session_id)
    invalidate_session_cache(result.session_id)
    return EnrollmentResponse(
        session_id=result.session_id,
        current_enrolled=result.current_enrolled,
        available_seats=result.available_seats,
        message="Successfully joined the session",
    )

@router.post('/{session_id}/leave', response_model=EnrollmentResponse)
@limiter.limit(WRITE_LIMIT)
def leave_session(request: Request, session_id: str, current_user: DecodedAccessToken = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    """Leave a session the current user is enrolled in."""
    result = service.leave(current_user, session_id)
    invalidate_session_cache(result.session_id)
    return EnrollmentResponse(
        session_id=result.session_id,
        current_enrolled=result.current_enrolled,
        available_seats=result.available_seats,
        message="Successfully left the session",
    )

@router.patch('/{session_id}/participants/{user_id}', response_model=SessionResponse)
@limiter.limit(WRITE_LIMIT)
def update_participant_status(request: Request, session_id: str, user_id: str, data: ParticipantStatusUpdate, current_user: DecodedAccessToken = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    """Mark a participant enrolled, attended, dropped or cancelled (owning tutor or admin)."""
    session = service.set_participant_status(current_user, session_id, user_id, data.status)
    invalidate_session_cache(session.id)
    return SessionResponse.from_model(session)

@router.post('/{session_id}/feedback', response_model=SessionResponse)
@limiter.limit(WRITE_LIMIT)
def give_feedback(request: Request, session_id: str, data: FeedbackCreate, current_user: DecodedAccessToken = Depends(get_current_user), service: SessionService = Depends(get_session_service)):
    """Rate a session the current user participates in. Feedback can only be given once."""
    session = service.add_feedback(current_user, session_id, data.rating, data.feedback)
    invalidate_session_cache(session.id)
    return SessionResponse.from_model(session)
