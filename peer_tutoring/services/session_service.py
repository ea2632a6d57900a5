"""
Tutoring session lifecycle - the only entry point that mutates sessions.

SessionService:
- Checks who may do what (auth_tools.check_session_permission)
- Delegates every rule to the TutoringSession entity
- Persists through SessionStore, roster changes under optimistic locking
- Hands calendar sync to a dispatcher after the change is committed

Calendar sync is best effort. The dispatcher is FastAPI's
BackgroundTasks.add_task in the routers, so create/update/join/leave never
wait for the calendar; delete calls it inline so the event is removed
before the session that references it.
"""
from dataclasses import dataclass
from math import ceil
from typing import Callable, Iterable, List, Mapping, Optional, Tuple
from sqlalchemy.orm import Session
from peer_tutoring.auth_tools import check_session_permission
from peer_tutoring.config import get_settings
from peer_tutoring.database.database import TutoringSession, User, UserRole
from peer_tutoring.database.session_store import SessionStore
from peer_tutoring.errors import (
    BadRequestError,
    NotFoundError,
    RosterError,
    SessionNotFoundError,
    UnauthorizedError,
    ValidationError,
)
from peer_tutoring.logger import audit_logger, logger
from peer_tutoring.schemas.authentication_schema import DecodedAccessToken
from peer_tutoring.services.calendar_sync import CalendarSync
from peer_tutoring.services.query_builder import build_query_plan
from peer_tutoring.utilities import validate_id

Dispatch = Callable[..., None]
PreCreateHook = Callable[[SessionStore, TutoringSession], None]

def run_inline(fn, *args, **kwargs) -> None:
    fn(*args, **kwargs)

def reject_duplicate_session(store: SessionStore, session: TutoringSession) -> None:
    """Pre-create hook: one scheduled session per tutor, subject, date and start time."""
    existing = store.find_conflicting(session.tutor_id, session.subject, session.schedule_date, session.start_time)
    if existing is not None:
        raise ValidationError("A session with this subject is already scheduled at that time")

def default_pre_create_hooks(settings) -> List[PreCreateHook]:
    return [reject_duplicate_session] if settings.prevent_duplicate_sessions else []

@dataclass(frozen=True)
class EnrollmentResult:
    session_id: str
    current_enrolled: int
    available_seats: int

class SessionService:
    """Service for tutoring session operations."""

    def __init__(self, db: Session, calendar: CalendarSync, dispatch: Dispatch = run_inline,
                 settings=None, pre_create_hooks: Optional[Iterable[PreCreateHook]] = None) -> None:
        settings = settings or get_settings()
        self.db = db
        self.store = SessionStore(db, max_retries=settings.enrollment_max_retries)
        self.calendar = calendar
        self.dispatch = dispatch
        self.pre_create_hooks = list(pre_create_hooks) if pre_create_hooks is not None else default_pre_create_hooks(settings)

    ###############
    ### READING ###
    ###############

    def list_sessions(self, params: Mapping[str, object]) -> Tuple[List[TutoringSession], dict]:
        """Return one page of sessions matching `params` plus the pagination block."""
        plan = build_query_plan(params)
        total = self.store.count(plan)
        sessions = self.store.find_many(plan)
        pagination = {
            "page": plan.page,
            "limit": plan.limit,
            "total": total,
            "total_pages": ceil(total / plan.limit),
        }
        return sessions, pagination

    def get_session(self, session_id: str) -> TutoringSession:
        """
        Raises:
            ValidationError: If the id is not a valid UUID.
            SessionNotFoundError: If the session does not exist.
        """
        return self._load(session_id)

    def get_tutor_sessions(self, tutor_id: str) -> List[TutoringSession]:
        return self.store.find_by_tutor(validate_id(tutor_id, "tutor id"))

    def get_enrolled_sessions(self, actor: Optional[DecodedAccessToken]) -> List[TutoringSession]:
        if actor is None:
            raise UnauthorizedError("Authentication required")
        return self.store.find_by_participant(actor.sub)

    ###############
    ### WRITING ###
    ###############

    def create(self, actor: Optional[DecodedAccessToken], payload: dict) -> TutoringSession:
        """
        Create a session owned by the acting tutor, or by the tutor an admin names.

        Raises:
            UnauthorizedError: If the actor is neither tutor nor admin.
            NotFoundError: If the tutor does not exist.
            ValidationError: If the tutor lacks the tutor role or the payload is invalid.
        """
        if actor is None or actor.role not in (UserRole.TUTOR.value, UserRole.ADMIN.value):
            raise UnauthorizedError("Only tutors and admins can create sessions")

        tutor_id = self._resolve_tutor(actor, payload.get("tutor_id"))
        session = TutoringSession.create(tutor_id, payload)
        for hook in self.pre_create_hooks:
            hook(self.store, session)
        self.store.add(session)

        logger.info(f"Session {session.id} created by {actor.sub} for tutor {tutor_id}")
        audit_logger.log_event("session_created", actor.sub, {"session_id": session.id, "tutor_id": tutor_id})
        self.dispatch(self.calendar.create_event, session.id, self.calendar.event_for(session))
        return session

    def update(self, actor: Optional[DecodedAccessToken], session_id: str, updates: dict) -> TutoringSession:
        """
        Raises:
            SessionNotFoundError: If the session does not exist.
            UnauthorizedError: If the actor is not the owning tutor or an admin.
            ValidationError: If an updated field is invalid.
        """
        session = self._load(session_id)
        check_session_permission(actor, session, "update")

        session = self.store.mutate(session.id, lambda s: s.apply_update(updates))

        logger.info(f"Session {session.id} updated by {actor.sub}")
        audit_logger.log_event("session_updated", actor.sub, {"session_id": session.id, "fields": sorted(updates)})
        self._sync_update(session)
        return session

    def delete(self, actor: Optional[DecodedAccessToken], session_id: str) -> None:
        """
        Delete a session. Its calendar event is deleted first; a calendar
        failure is logged and the session is removed anyway. A roster change
        that commits meanwhile is picked up and the delete is retried.
        """
        session_id = validate_id(session_id, "session id")
        removed_refs = set()

        def remove_event(session: TutoringSession) -> None:
            check_session_permission(actor, session, "delete")
            ref = session.external_calendar_ref
            if ref and ref not in removed_refs:
                self.calendar.delete_event(session.id, ref)
                removed_refs.add(ref)

        self.store.delete(session_id, remove_event)
        logger.info(f"Session {session_id} deleted by {actor.sub}")
        audit_logger.log_event("session_deleted", actor.sub, {"session_id": session_id})

    def join(self, actor: Optional[DecodedAccessToken], session_id: str) -> EnrollmentResult:
        """
        Enroll the actor. Roster rule violations come back as BadRequestError.

        Raises:
            SessionNotFoundError: If the session does not exist.
            BadRequestError: If the session is full or the actor already enrolled.
            ConcurrentUpdateError: If optimistic retries are exhausted.
        """
        check_session_permission(actor, None, "join")
        session_id = validate_id(session_id, "session id")

        def enroll(session: TutoringSession) -> EnrollmentResult:
            session.add_participant(actor.sub)
            return EnrollmentResult(session.id, session.current_enrolled, session.available_seats)

        result = self._roster_change(session_id, enroll)
        logger.info(f"User {actor.sub} joined session {session_id} ({result.current_enrolled} enrolled)")
        audit_logger.log_event("session_joined", actor.sub, {"session_id": session_id, "current_enrolled": result.current_enrolled})
        self._sync_update(self.store.get(session_id))
        return result

    def leave(self, actor: Optional[DecodedAccessToken], session_id: str) -> EnrollmentResult:
        """
        Withdraw the actor from a session.

        Raises:
            SessionNotFoundError: If the session does not exist.
            BadRequestError: If the actor is not enrolled.
        """
        check_session_permission(actor, None, "leave")
        session_id = validate_id(session_id, "session id")

        def withdraw(session: TutoringSession) -> EnrollmentResult:
            session.remove_participant(actor.sub)
            return EnrollmentResult(session.id, session.current_enrolled, session.available_seats)

        result = self._roster_change(session_id, withdraw)
        logger.info(f"User {actor.sub} left session {session_id} ({result.current_enrolled} enrolled)")
        audit_logger.log_event("session_left", actor.sub, {"session_id": session_id, "current_enrolled": result.current_enrolled})
        self._sync_update(self.store.get(session_id))
        return result

    def set_participant_status(self, actor: Optional[DecodedAccessToken], session_id: str, user_id: str, status: str) -> TutoringSession:
        """Owning tutor or admin marks a participant enrolled, attended, dropped or cancelled."""
        session = self._load(session_id)
        check_session_permission(actor, session, "manage_participants")
        user_id = validate_id(user_id, "user id")

        self._roster_change(session.id, lambda s: s.set_participant_status(user_id, status))
        audit_logger.log_event("participant_status_changed", actor.sub, {"session_id": session.id, "user_id": user_id, "status": status})
        session = self.store.get(session.id)
        self._sync_update(session)
        return session

    def add_feedback(self, actor: Optional[DecodedAccessToken], session_id: str, rating: int, feedback: Optional[str] = None) -> TutoringSession:
        """A participant rates a session once."""
        check_session_permission(actor, None, "feedback")
        session_id = validate_id(session_id, "session id")

        self._roster_change(session_id, lambda s: s.add_feedback(actor.sub, rating, feedback))
        audit_logger.log_event("feedback_given", actor.sub, {"session_id": session_id, "rating": rating})
        return self.store.get(session_id)

    ###############
    ### HELPERS ###
    ###############

    def _load(self, session_id: str) -> TutoringSession:
        session_id = validate_id(session_id, "session id")
        session = self.store.get(session_id, refresh=True)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _resolve_tutor(self, actor: DecodedAccessToken, requested: Optional[str]) -> str:
        tutor_id = actor.sub
        if actor.is_admin and requested and requested != actor.sub:
            tutor_id = validate_id(requested, "tutor id")

        tutor = User.get_by_id(self.db, tutor_id)
        if tutor is None:
            raise NotFoundError("Tutor not found")
        if tutor.role != UserRole.TUTOR:
            raise ValidationError("Tutor must be a valid user with tutor role")
        return tutor_id

    def _roster_change(self, session_id: str, change):
        """Run a roster change under optimistic locking; roster errors become BadRequestError."""
        try:
            return self.store.mutate(session_id, change)
        except RosterError as e:
            raise BadRequestError(e.message) from e

    def _sync_update(self, session: Optional[TutoringSession]) -> None:
        if session is None or not session.external_calendar_ref:
            return
        self.dispatch(self.calendar.update_event, session.id, session.external_calendar_ref, self.calendar.event_for(session))
