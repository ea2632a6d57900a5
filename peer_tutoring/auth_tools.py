from typing import Any, List, Optional
from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from peer_tutoring.logger import logger
from peer_tutoring.database.database import UserRole
from peer_tutoring.errors import UnauthorizedError
from peer_tutoring.schemas.authentication_schema import DecodedAccessToken
from peer_tutoring.config import get_settings
from datetime import datetime, timedelta, timezone

# security scheme
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")

# Actions a caller can take on an existing session
MANAGE_ACTIONS = {"update", "delete", "manage_participants"}
MEMBER_ACTIONS = {"join", "leave", "feedback"}

##################################
### AUTHORIZATION DEPENDENCIES ###
##################################

def create_access_token(user_id: str, name: str, email: str, role: str, expires_in: Optional[int] = None) -> str:
    """Create an access token. Tokens are normally issued by the identity service; this is for local development and tests."""
    settings = get_settings()
    expires_in = expires_in if expires_in is not None else settings.access_token_expire_minutes
    to_encode = {
        "sub": str(user_id),
        "name": name,
        "email": email,
        "role": role,
        "logged_in": True,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_in),
    }
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.hash_algorithm)

def get_current_user(token: str = Depends(oauth2_scheme)) -> DecodedAccessToken:
    """
    Get the current user from the token.

    Args:
    - token (str): The user's token

    Returns:
    - DecodedAccessToken: The user's data
    """
    settings = get_settings()
    try:
        payload : dict[str, Any] = jwt.decode(token, settings.secret_key, algorithms=[settings.hash_algorithm])
    except JWTError as e:
        logger.error(f"Error decoding token: {str(e)}")
        raise HTTPException(status_code=401, detail="Invalid token. Could not decode token.")

    if not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token. Missing user ID.")

    if payload.get("logged_in") is False:
        raise HTTPException(status_code=401, detail="User is not logged in.")

    try:
        return DecodedAccessToken(**payload)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid token. Malformed payload.")

def verify_user_role(user: DecodedAccessToken, allowed_roles: List[UserRole]) -> DecodedAccessToken:
    """
    Verify that the user has the required role.

    Args:
    - user (DecodedAccessToken): The user's data
    - allowed_roles (list): List of allowed roles

    Returns:
    - DecodedAccessToken: the same user
    """
    if not user or user.role not in [role.value for role in allowed_roles]:
        raise HTTPException(status_code=403,
                            detail=f"User must have one of these roles: {[role.value for role in allowed_roles]}")

    return user

def require_roles(*roles: UserRole):
    def dependency(current_user: DecodedAccessToken = Depends(get_current_user)) -> DecodedAccessToken:
        return verify_user_role(current_user, list(roles))
    return dependency

# Only tutors and admins may create sessions
tutor_or_admin = require_roles(UserRole.TUTOR, UserRole.ADMIN)

#############################
### SESSION CAPABILITIES ###
#############################

def can_manage_session(actor: DecodedAccessToken, session) -> bool:
    """Admins manage every session, tutors only the ones they own."""
    return actor.is_admin or str(session.tutor_id) == str(actor.sub)

def check_session_permission(actor: Optional[DecodedAccessToken], session, action: str) -> None:
    """
    Decide whether `actor` may perform `action` on `session`.

    Manage actions (update, delete, manage_participants) need the owning
    tutor or an admin; member actions (join, leave, feedback) only need an
    authenticated identity.

    Raises:
        UnauthorizedError: when the action is not allowed.
    """
    if actor is None:
        raise UnauthorizedError("Authentication required")
    if action in MEMBER_ACTIONS:
        return
    if action in MANAGE_ACTIONS and can_manage_session(actor, session):
        return
    raise UnauthorizedError()
