from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from ..crud import crud_user
from ..database import get_db
from ..realtime.auth import verifier
from ..realtime.errors import AuthenticationError
from ..realtime.protocol import ConnectionIdentity
from ..realtime.roles import is_agent, normalize_role

# Tokens are issued by the accounts service; this app only verifies them.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


def get_current_identity(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
    request: Request = None,
) -> ConnectionIdentity:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    jwt_token = token or (request.cookies.get("access_token") if request else None)
    try:
        user_id = verifier.decode(jwt_token)
    except AuthenticationError:
        raise credentials_exception
    user = crud_user.get_user(db, user_id)
    if user is None:
        raise credentials_exception
    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Inactive user")
    role = normalize_role(user.role)
    if role is None:
        raise credentials_exception
    return ConnectionIdentity(user_id=int(user.id), role=role, connection_id="http")


def get_current_agent(identity: ConnectionIdentity = Depends(get_current_identity)) -> ConnectionIdentity:
    """Ensure the caller is a support agent or admin."""
    if not is_agent(identity.role):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only support agents can perform this action.",
        )
    return identity
