from pydantic import BaseModel, EmailStr, validator
from typing import Optional
from datetime import datetime

from .roles import Role, UserStatus



class UserCreate(BaseModel):
    username: str
    email: EmailStr
    password: str
    display_name: Optional[str] = None
    avatar: Optional[str] = None


    @validator('username')
    def username_must_be_valid(cls, v):
        if len(v) < 3 or len(v) > 20:
            raise ValueError('Username must be between 3 and 20 characters')
        if not v.replace('_', '').isalnum():
            raise ValueError('Username can only contain letters, numbers, and underscores')
        return v.lower()


    @validator('password')
    def password_must_be_strong(cls, v):
        if len(v) < 6:
            raise ValueError('Password must be at least 6 characters long')
        return v


    @validator('display_name')
    def display_name_length(cls, v):
        if v is not None and not 1 <= len(v.strip()) <= 50:
            raise ValueError('Display name must be between 1 and 50 characters')
        return v.strip() if v else v




class UserLogin(BaseModel):
    username: str
    password: str




class UserResponse(BaseModel):
    id: int
    username: str
    email: str
    display_name: Optional[str] = None
    avatar: Optional[str] = None
    role: Role
    status: UserStatus
    created_at: datetime
    last_seen: Optional[datetime] = None


    class Config:
        from_attributes = True




class Token(BaseModel):
    access_token: str
    token_type: str
    user: UserResponse
