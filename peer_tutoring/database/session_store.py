"""
Persistence for tutoring sessions (repository pattern).

The store is the only place that talks to the ORM session for tutoring
sessions. Roster and counter changes go through `mutate`, which applies a
change to a freshly loaded session and commits it guarded by the session's
version column. If another writer committed first, SQLAlchemy raises
StaleDataError, the transaction is rolled back and the change is re-applied
to the new state. Two concurrent joins can therefore never both pass the
capacity check against the same snapshot. `delete` runs through the same
loop, so a roster change that lands mid-delete is re-read instead of failing.
Only the roster unique constraint counts as a race; any other integrity
error is raised on the first attempt.
"""
from typing import Callable, List, Optional, TypeVar
from sqlalchemy import asc, desc, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from peer_tutoring.database.database import Participant, SessionTag, TutoringSession
from peer_tutoring.errors import ConcurrentUpdateError, SessionNotFoundError, TutoringError
from peer_tutoring.logger import logger
from peer_tutoring.services.query_builder import QueryPlan, SessionFilter
from peer_tutoring.utilities import escape_like

T = TypeVar("T")

def _contains(column, token: str):
    return column.ilike(f"%{escape_like(token)}%", escape="\\")

ROSTER_CONSTRAINT = "uq_participant_session_user"

def is_roster_race(error: IntegrityError) -> bool:
    """True when the violated constraint is the one-record-per-user roster constraint."""
    diag = getattr(error.orig, "diag", None)
    if getattr(diag, "constraint_name", None) == ROSTER_CONSTRAINT:
        return True
    # SQLite names the columns instead of the constraint
    message = str(error.orig)
    return ROSTER_CONSTRAINT in message or "UNIQUE constraint failed: session_participants.session_id" in message

class SessionStore:
    """SQLAlchemy-backed store for TutoringSession aggregates."""

    def __init__(self, db: Session, max_retries: int = 5) -> None:
        self.db = db
        self.max_retries = max(1, max_retries)

    ###############
    ### READING ###
    ###############

    def get(self, session_id: str, refresh: bool = False) -> Optional[TutoringSession]:
        """Return a session by id, or None. `refresh` reloads a cached instance from the database."""
        return self.db.get(TutoringSession, session_id, populate_existing=refresh)

    def find_many(self, plan: QueryPlan) -> List[TutoringSession]:
        column = getattr(TutoringSession, plan.sort.column)
        order = desc(column) if plan.sort.descending else asc(column)
        query = self._filtered(plan.filter).order_by(order, asc(TutoringSession.id))
        return query.offset(plan.skip).limit(plan.limit).all()

    def count(self, plan: QueryPlan) -> int:
        return self._filtered(plan.filter).count()

    def find_by_tutor(self, tutor_id: str) -> List[TutoringSession]:
        return (
            self.db.query(TutoringSession)
            .filter(TutoringSession.tutor_id == tutor_id)
            .order_by(desc(TutoringSession.schedule_date), asc(TutoringSession.id))
            .all()
        )

    def find_by_participant(self, user_id: str) -> List[TutoringSession]:
        return (
            self.db.query(TutoringSession)
            .filter(TutoringSession.participants.any(Participant.user_id == user_id))
            .order_by(asc(TutoringSession.schedule_date), asc(TutoringSession.id))
            .all()
        )

    def find_conflicting(self, tutor_id: str, subject: str, schedule_date, start_time: str) -> Optional[TutoringSession]:
        """A scheduled session of the same tutor, subject, date and start time."""
        return (
            self.db.query(TutoringSession)
            .filter(
                TutoringSession.tutor_id == tutor_id,
                TutoringSession.subject == subject,
                TutoringSession.schedule_date == schedule_date,
                TutoringSession.start_time == start_time,
                TutoringSession.status == "scheduled",
            )
            .first()
        )

    def _filtered(self, criteria: SessionFilter):
        query = self.db.query(TutoringSession)
        if criteria.not_before is not None:
            query = query.filter(TutoringSession.schedule_date >= criteria.not_before)
        if criteria.status:
            query = query.filter(TutoringSession.status == criteria.status)
        if criteria.tutor_id:
            query = query.filter(TutoringSession.tutor_id == criteria.tutor_id)
        if criteria.participant_id:
            query = query.filter(TutoringSession.participants.any(Participant.user_id == criteria.participant_id))
        if criteria.subjects:
            query = query.filter(or_(*[_contains(TutoringSession.subject, s) for s in criteria.subjects]))
        if criteria.levels:
            query = query.filter(TutoringSession.level.in_(criteria.levels))
        if criteria.tags:
            query = query.filter(TutoringSession.tag_rows.any(or_(*[_contains(SessionTag.name, t) for t in criteria.tags])))
        if criteria.location_type:
            query = query.filter(TutoringSession.location_type == criteria.location_type)
        if criteria.available_seats_only:
            query = query.filter(TutoringSession.current_enrolled < TutoringSession.max_participants)
        return query

    ###############
    ### WRITING ###
    ###############

    def add(self, session: TutoringSession) -> TutoringSession:
        self.db.add(session)
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(session)
        return session

    def delete(self, session_id: str, prepare: Optional[Callable[[TutoringSession], None]] = None) -> None:
        """
        Delete a session under optimistic locking.

        `prepare` runs against the freshly loaded session before each delete
        attempt; it may raise a TutoringError to abort. A writer that commits
        between load and delete makes the attempt stale and it is retried on
        the new state.

        Raises:
            SessionNotFoundError: if the session does not exist (or vanished mid-retry).
            ConcurrentUpdateError: if every attempt lost against another writer.
        """
        def remove(session: TutoringSession) -> None:
            if prepare is not None:
                prepare(session)
            self.db.delete(session)

        self._commit_with_retries(session_id, remove)

    def mutate(self, session_id: str, change: Callable[[TutoringSession], T]) -> T:
        """
        Apply `change` to the session and commit it under optimistic locking.

        `change` receives the loaded session and may raise a TutoringError to
        abort; its return value is handed back to the caller.

        Raises:
            SessionNotFoundError: if the session does not exist (or vanished mid-retry).
            ConcurrentUpdateError: if every attempt lost against another writer.
            IntegrityError: for constraint violations other than a roster race.
        """
        return self._commit_with_retries(session_id, change)

    def _commit_with_retries(self, session_id: str, change: Callable[[TutoringSession], T]) -> T:
        for attempt in range(1, self.max_retries + 1):
            session = self.get(session_id, refresh=True)
            if session is None:
                raise SessionNotFoundError(session_id)
            try:
                result = change(session)
                self.db.commit()
                return result
            except TutoringError:
                self.db.rollback()
                raise
            except StaleDataError:
                self.db.rollback()
                logger.info(f"Session {session_id} changed concurrently, retrying ({attempt}/{self.max_retries})")
            except IntegrityError as e:
                self.db.rollback()
                if not is_roster_race(e):
                    logger.error(f"Constraint violation on session {session_id}: {str(e.orig)}")
                    raise
                # Unique (session, user) lost to a concurrent insert; retrying sees the winner's row
                logger.info(f"Roster conflict on session {session_id}, retrying ({attempt}/{self.max_retries})")
        logger.warning(f"Giving up on session {session_id} after {self.max_retries} concurrent update attempts")
        raise ConcurrentUpdateError(session_id)
