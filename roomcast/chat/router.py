import asyncio
from fastapi import APIRouter, Depends, HTTPException, status, Query
from pydantic import BaseModel
from typing import List, Optional

from .engine import ChatEngine, get_engine
from .presence import OnlineUser
from .rooms import Room, RoomKind, Visibility
from .schemas import MessageOut, RoomSnapshot, RoomSummary, message_out, room_snapshot, room_summary
from ..auth.dependencies import get_current_approved_user
from ..auth.models import User



router = APIRouter(prefix="/chat", tags=["chat"])



class ChatHistory(BaseModel):
    messages: List[MessageOut]
    has_more: bool




def _readable_room(engine: ChatEngine, room_id: str, user: User) -> Room:
    room = engine.rooms.get(room_id)
    is_public_channel = room.kind == RoomKind.CHANNEL and room.visibility == Visibility.PUBLIC
    if not is_public_channel and user.username not in room.members:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not a member of this room"
        )
    return room




@router.get("/rooms", response_model=List[RoomSummary])
async def get_available_rooms(
    current_user: User = Depends(get_current_approved_user),
    engine: ChatEngine = Depends(get_engine)
):
    """get list of chat rooms the user can see"""
    return [room_summary(room) for room in engine.rooms.visible_rooms(current_user.username)]




@router.get("/rooms/{room_id}", response_model=RoomSnapshot)
async def get_room_details(
    room_id: str,
    current_user: User = Depends(get_current_approved_user),
    engine: ChatEngine = Depends(get_engine)
):
    room = _readable_room(engine, room_id, current_user)
    return room_snapshot(engine.directory, room, limit=50)




@router.get("/rooms/{room_id}/messages", response_model=ChatHistory)
async def get_room_messages(
    room_id: str,
    before: Optional[int] = Query(None, ge=1, description="Only messages with a smaller id"),
    size: int = Query(50, ge=1, le=100, description="Messages per page"),
    current_user: User = Depends(get_current_approved_user),
    engine: ChatEngine = Depends(get_engine)
):
    """get message history, replaying from storage once the backlog runs out"""

    room = _readable_room(engine, room_id, current_user)
    upper = before or room.next_id

    messages = [m for m in room.backlog if m.id < upper][-size:]
    oldest_in_memory = room.backlog[0].id if room.backlog else room.next_id
    if len(messages) < size and oldest_in_memory > 1 and engine.store is not None:
        older = await asyncio.to_thread(
            engine.store.load_messages, room_id, min(upper, oldest_in_memory), size - len(messages)
        )
        messages = older + messages

    return ChatHistory(
        messages=[message_out(engine.directory, room, m) for m in messages],
        has_more=bool(messages) and messages[0].id > 1
    )




@router.get("/online", response_model=List[OnlineUser])
async def get_online_users(
    current_user: User = Depends(get_current_approved_user),
    engine: ChatEngine = Depends(get_engine)
):
    return engine.presence.snapshot()




@router.post("/blocks/{user_id}")
async def block_user(
    user_id: str,
    current_user: User = Depends(get_current_approved_user),
    engine: ChatEngine = Depends(get_engine)
):
    """stop direct messages between you and another user"""
    if user_id == current_user.username:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot block yourself"
        )
    engine.directory.block(current_user.username, user_id)
    return {"message": f"'{user_id}' has been blocked"}




@router.delete("/blocks/{user_id}")
async def unblock_user(
    user_id: str,
    current_user: User = Depends(get_current_approved_user),
    engine: ChatEngine = Depends(get_engine)
):
    engine.directory.unblock(current_user.username, user_id)
    return {"message": f"'{user_id}' has been unblocked"}
