from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List

from .permissions import require_role
from ..auth.dependencies import get_current_approved_user
from ..auth.lookup import profile_from_user
from ..auth.models import User
from ..auth.roles import Role, UserStatus
from ..auth.schemas import UserResponse
from ..chat.engine import ChatEngine, get_engine
from ..config import settings
from ..database import get_db
from ..errors import NotFound
from ..logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])




def _get_user_or_404(db: Session, username: str) -> User:
    target_user = db.query(User).filter(User.username == username).first()
    if not target_user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )
    return target_user




@router.get("/users", response_model=List[UserResponse])
async def list_all_users(
    current_user: User = Depends(require_role(Role.CO_OWNER)),
    db: Session = Depends(get_db)
):
    """get list of all users (co-owners and owners)"""
    return [UserResponse.model_validate(user) for user in db.query(User).all()]




@router.put("/users/{username}/approve")
async def approve_user(
    username: str,
    current_user: User = Depends(require_role(Role.CO_OWNER)),
    db: Session = Depends(get_db),
    engine: ChatEngine = Depends(get_engine)
):
    """approve a pending account so it can connect (co-owners and owners)"""

    target_user = _get_user_or_404(db, username)
    if target_user.is_approved:
        return {"message": f"User '{username}' is already approved"}

    target_user.status = UserStatus.APPROVED.value
    db.commit()

    profile = profile_from_user(target_user)
    engine.router.refresh_profile(profile)
    try:
        await engine.rooms.join(settings.DEFAULT_CHANNEL, profile.user_id)
    except NotFound:
        logger.warning("Default channel '%s' is missing", settings.DEFAULT_CHANNEL)

    logger.info("%s approved %s", current_user.username, username)
    return {"message": f"User '{username}' has been approved"}




@router.put("/users/{username}/role")
async def change_user_role(
    username: str,
    new_role: Role,
    current_user: User = Depends(require_role(Role.OWNER)),
    db: Session = Depends(get_db),
    engine: ChatEngine = Depends(get_engine)
):
    """change a user's role.. owners only"""

    target_user = _get_user_or_404(db, username)

    # don't allow changing own role
    if target_user.id == current_user.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot change your own role"
        )

    old_role = target_user.role
    target_user.role = new_role.value
    db.commit()

    engine.router.refresh_profile(profile_from_user(target_user))

    return {
        "message": f"User '{target_user.username}' role changed from '{old_role}' to '{new_role.value}'"
    }




@router.delete("/rooms/{room_id}")
async def delete_room(
    room_id: str,
    current_user: User = Depends(get_current_approved_user),
    engine: ChatEngine = Depends(get_engine)
):
    """delete a channel (its creator, co-owners and owners)"""
    room = await engine.rooms.delete_room(room_id, current_user.username)
    engine.publish(engine.router.room_deleted(room))
    return {"message": f"Room '{room_id}' has been deleted"}




@router.delete("/rooms/{room_id}/messages/{message_id}")
async def moderate_delete_message(
    room_id: str,
    message_id: int,
    current_user: User = Depends(get_current_approved_user),
    engine: ChatEngine = Depends(get_engine)
):
    """delete a message as its author or as a moderator"""
    await engine.rooms.delete_message(room_id, message_id, current_user.username)
    engine.publish(engine.router.message_deleted(room_id, message_id))
    return {
        "message": f"Message {message_id} in '{room_id}' has been removed",
        "moderated_by": current_user.username
    }
