import pytest
from fastapi import HTTPException

from peer_tutoring.auth_tools import check_session_permission, create_access_token, get_current_user, verify_user_role
from peer_tutoring.database.database import UserRole
from peer_tutoring.errors import UnauthorizedError
from peer_tutoring.schemas.authentication_schema import DecodedAccessToken
from peer_tutoring.utilities import generate_uuid


class FakeSession:
    def __init__(self, tutor_id):
        self.tutor_id = tutor_id


def actor(role: str, user_id=None) -> DecodedAccessToken:
    return DecodedAccessToken(sub=user_id or generate_uuid(), name="Test", email="test@example.com", role=role, exp=0)


def test_token_decodes_to_actor():
    user_id = generate_uuid()
    token = create_access_token(user_id, "Tina", "tina@example.com", "tutor")

    user = get_current_user(token)
    assert user.sub == user_id
    assert user.role == "tutor"
    assert user.is_admin is False


def test_expired_token_is_rejected():
    token = create_access_token(generate_uuid(), "Tina", "tina@example.com", "tutor", expires_in=-5)
    with pytest.raises(HTTPException) as exc:
        get_current_user(token)
    assert exc.value.status_code == 401


def test_verify_user_role():
    assert verify_user_role(actor("admin"), [UserRole.ADMIN]).role == "admin"
    with pytest.raises(HTTPException) as exc:
        verify_user_role(actor("student"), [UserRole.TUTOR, UserRole.ADMIN])
    assert exc.value.status_code == 403


def test_owner_and_admin_manage_sessions():
    owner = actor("tutor")
    session = FakeSession(owner.sub)

    for action in ("update", "delete", "manage_participants"):
        check_session_permission(owner, session, action)
        check_session_permission(actor("admin"), session, action)
        with pytest.raises(UnauthorizedError):
            check_session_permission(actor("tutor"), session, action)


def test_any_authenticated_user_can_join_and_leave():
    session = FakeSession(generate_uuid())
    student = actor("student")

    check_session_permission(student, session, "join")
    check_session_permission(student, session, "leave")
    with pytest.raises(UnauthorizedError):
        check_session_permission(None, session, "join")


def test_unknown_action_is_denied():
    owner = actor("tutor")
    with pytest.raises(UnauthorizedError):
        check_session_permission(owner, FakeSession(owner.sub), "transfer")
