"""
Best-effort mirroring of tutoring sessions into an external calendar.

Calendar calls never decide the outcome of a session operation: every call
runs on a worker thread with a bounded timeout, and any exception or timeout
is logged and dropped. CalendarSync is handed to FastAPI BackgroundTasks for
create/update so the HTTP response does not wait for the calendar.
"""
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Callable, Optional
import requests
from peer_tutoring.config import get_settings
from peer_tutoring.database.database import SessionLocal, TutoringSession
from peer_tutoring.database.redis import redis_client
from peer_tutoring.database.session_store import SessionStore
from peer_tutoring.logger import logger
from peer_tutoring.utilities import minutes_of_day

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="calendar-sync")

def calendar_event_from_session(session: TutoringSession, time_zone: str) -> dict:
    """
    Snapshot of a session in Google Calendar event form.

    Built while the ORM session is still open so the background task does
    not need to touch the database to read it.
    """
    start = datetime.combine(session.schedule_date.date(), datetime.min.time()) + timedelta(minutes=minutes_of_day(session.start_time))
    end = start + timedelta(minutes=session.duration)
    attendees = [
        {"email": p.user.email}
        for p in session.participants
        if p.holds_seat and p.user is not None and p.user.email
    ]
    event = {
        "summary": session.subject.title(),
        "description": session.description,
        "start": {"dateTime": start.isoformat(), "timeZone": time_zone},
        "end": {"dateTime": end.isoformat(), "timeZone": time_zone},
        "attendees": attendees,
    }
    if session.meeting_link:
        event["location"] = session.meeting_link
    return event

class CalendarAdapter(ABC):
    """Interface for the external calendar. Every method may raise."""

    @abstractmethod
    def create(self, event: dict) -> Optional[str]:
        """Create an event and return its external reference."""
        ...

    @abstractmethod
    def update(self, external_ref: str, event: dict) -> None:
        ...

    @abstractmethod
    def delete(self, external_ref: str) -> None:
        ...

class DisabledCalendarAdapter(CalendarAdapter):
    """Used when no Google credentials are configured."""

    def create(self, event: dict) -> Optional[str]:
        logger.debug("Calendar create skipped: calendar not configured")
        return None

    def update(self, external_ref: str, event: dict) -> None:
        logger.debug("Calendar update skipped: calendar not configured")

    def delete(self, external_ref: str) -> None:
        logger.debug("Calendar delete skipped: calendar not configured")

class GoogleCalendarAdapter(CalendarAdapter):
    """
    Google Calendar v3 over plain HTTPS.

    An access token is obtained from the stored refresh token on every call;
    sync traffic is low enough that caching it is not worth the state.
    """

    def __init__(self, client_id: str, client_secret: str, refresh_token: str, calendar_id: str = "primary",
                 token_url: str = "https://oauth2.googleapis.com/token",
                 api_url: str = "https://www.googleapis.com/calendar/v3", timeout: float = 10.0):
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token
        self.calendar_id = calendar_id
        self.token_url = token_url
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def _access_token(self) -> str:
        response = requests.post(
            self.token_url,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": self.refresh_token,
                "grant_type": "refresh_token",
            },
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()["access_token"]

    def _events_url(self, external_ref: Optional[str] = None) -> str:
        url = f"{self.api_url}/calendars/{requests.utils.quote(self.calendar_id, safe='')}/events"
        if external_ref:
            url = f"{url}/{requests.utils.quote(external_ref, safe='')}"
        return url

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self._access_token()}"}

    def create(self, event: dict) -> Optional[str]:
        response = requests.post(self._events_url(), json=event, headers=self._headers(), timeout=self.timeout)
        response.raise_for_status()
        return response.json()["id"]

    def update(self, external_ref: str, event: dict) -> None:
        response = requests.put(self._events_url(external_ref), json=event, headers=self._headers(), timeout=self.timeout)
        response.raise_for_status()

    def delete(self, external_ref: str) -> None:
        response = requests.delete(self._events_url(external_ref), headers=self._headers(), timeout=self.timeout)
        response.raise_for_status()

class CalendarSync:
    """
    Runs calendar adapter calls with a timeout and contains every failure.

    Args:
        adapter (CalendarAdapter): The calendar backend.
        session_factory: Callable returning a new ORM session; used to store
            the reference of a freshly created event.
        timeout (float): Seconds to wait for a single adapter call.
        time_zone (str): Time zone written into calendar events.
        cache: Optional RedisClient; the cached copy of a session is dropped
            once its event reference is stored.
    """

    def __init__(self, adapter: CalendarAdapter, session_factory: Callable = SessionLocal,
                 timeout: float = 10.0, time_zone: str = "UTC", max_retries: int = 5, cache=None):
        self.adapter = adapter
        self.session_factory = session_factory
        self.timeout = timeout
        self.time_zone = time_zone
        self.max_retries = max_retries
        self.cache = cache

    def event_for(self, session: TutoringSession) -> dict:
        return calendar_event_from_session(session, self.time_zone)

    def _call(self, action: str, session_id: str, fn, *args):
        """Run one adapter call. Returns its result, or None on failure or timeout."""
        future = _executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            logger.warning(f"Calendar {action} for session {session_id} timed out after {self.timeout}s")
        except Exception as e:
            logger.error(f"Calendar {action} failed for session {session_id}: {str(e)}")
        return None

    def create_event(self, session_id: str, event: dict) -> Optional[str]:
        """Create the calendar event and store its reference on the session."""
        external_ref = self._call("create", session_id, self.adapter.create, event)
        if not external_ref:
            return None

        db = self.session_factory()
        try:
            store = SessionStore(db, max_retries=self.max_retries)

            def attach(session: TutoringSession):
                session.external_calendar_ref = external_ref

            store.mutate(session_id, attach)
            logger.info(f"Session {session_id} linked to calendar event {external_ref}")
        except Exception as e:
            logger.error(f"Could not store calendar reference for session {session_id}: {str(e)}")
        finally:
            db.close()
        self._forget_cached(session_id)
        return external_ref

    def _forget_cached(self, session_id: str) -> None:
        if self.cache is None:
            return
        try:
            self.cache.delete_cache(self.cache.session_key(session_id))
        except Exception as e:
            logger.error(f"Could not drop cached session {session_id}: {str(e)}")

    def update_event(self, session_id: str, external_ref: str, event: dict) -> None:
        self._call("update", session_id, self.adapter.update, external_ref, event)

    def delete_event(self, session_id: str, external_ref: str) -> None:
        self._call("delete", session_id, self.adapter.delete, external_ref)

def build_calendar_adapter(settings) -> CalendarAdapter:
    if not settings.calendar_configured:
        logger.warning("Google Calendar disabled: missing credentials in settings")
        return DisabledCalendarAdapter()
    return GoogleCalendarAdapter(
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        refresh_token=settings.google_refresh_token,
        calendar_id=settings.google_calendar_id,
        token_url=settings.google_token_url,
        api_url=settings.google_calendar_api_url,
        timeout=settings.calendar_timeout_seconds,
    )

@lru_cache()
def get_calendar_sync() -> CalendarSync:
    """Dependency providing the process-wide CalendarSync. Tests override it."""
    settings = get_settings()
    return CalendarSync(
        build_calendar_adapter(settings),
        session_factory=SessionLocal,
        timeout=settings.calendar_timeout_seconds,
        time_zone=settings.calendar_time_zone,
        max_retries=settings.enrollment_max_retries,
        cache=redis_client if settings.use_redis else None,
    )
