from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional

from .models import User
from .utils import username_from_token
from ..database import get_db

bearer_scheme = HTTPBearer()



def _invalid_credentials(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )



def user_for_token(db: Session, token: str) -> Optional[User]:
    """load the account a bearer token was issued to"""
    username = username_from_token(token)
    if username is None:
        return None
    return db.query(User).filter(User.username == username).first()



async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    db: Session = Depends(get_db)
) -> User:
    """any signed-in account, pending or approved; touches last_seen"""
    user = user_for_token(db, credentials.credentials)
    if user is None:
        raise _invalid_credentials()

    user.last_seen = datetime.utcnow()
    db.commit()
    return user



async def get_current_approved_user(
    current_user: User = Depends(get_current_user)
) -> User:
    if not current_user.is_approved:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Your account is awaiting approval"
        )
    return current_user
