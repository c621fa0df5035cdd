from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .lookup import profile_from_user
from .models import User
from .roles import UserStatus
from .schemas import UserCreate, UserLogin, Token, UserResponse
from .utils import hash_password, verify_password, create_access_token
from .dependencies import get_current_user
from ..chat.engine import ChatEngine, get_engine
from ..config import settings
from ..database import get_db
from ..errors import NotFound
from ..logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["authentication"])

@router.post("/signup", response_model=dict)
async def signup(
    user_data: UserCreate,
    db: Session = Depends(get_db),
    engine: ChatEngine = Depends(get_engine)
):
    """Register a new user account"""

    # Check if username is taken
    existing_user = db.query(User).filter(User.username == user_data.username).first()
    if existing_user:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="This username is already taken"
        )

    # Check if email is taken
    existing_email = db.query(User).filter(User.email == user_data.email).first()
    if existing_email:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="An account with this email already exists"
        )

    status_value = UserStatus.PENDING if settings.REQUIRE_APPROVAL else UserStatus.APPROVED
    new_user = User(
        username=user_data.username,
        email=user_data.email,
        hashed_password=hash_password(user_data.password),
        display_name=user_data.display_name or user_data.username,
        avatar=user_data.avatar,
        status=status_value.value,
    )

    db.add(new_user)
    db.commit()
    db.refresh(new_user)

    profile = profile_from_user(new_user)
    engine.router.refresh_profile(profile)
    if profile.is_approved:
        try:
            await engine.rooms.join(settings.DEFAULT_CHANNEL, profile.user_id)
        except NotFound:
            logger.warning("Default channel '%s' is missing", settings.DEFAULT_CHANNEL)
        message = "Account created successfully! You can now login."
    else:
        engine.publish(engine.router.notify_pending_user(profile))
        message = "Account created! An owner must approve it before you can chat."

    logger.info("New account %s (%s)", new_user.username, new_user.status)
    return {
        "message": message,
        "user_id": new_user.id,
        "username": new_user.username,
        "status": new_user.status,
    }

@router.post("/login", response_model=Token)
async def login(credentials: UserLogin, db: Session = Depends(get_db)):
    """Login with username and password"""

    user = db.query(User).filter(User.username == credentials.username.lower()).first()

    if not user or not verify_password(credentials.password, user.hashed_password):
        logger.warning("Failed login for '%s'", credentials.username.lower())
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password"
        )

    if not user.is_approved:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Your account is awaiting approval."
        )

    return Token(
        access_token=create_access_token(user.username),
        token_type="bearer",
        user=UserResponse.model_validate(user)
    )

@router.get("/me", response_model=UserResponse)
async def get_my_profile(current_user: User = Depends(get_current_user)):
    """Get current user's profile information"""
    return UserResponse.model_validate(current_user)
