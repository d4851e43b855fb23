# src/auth/services.py
import logging

from fastapi import HTTPException
from sqlalchemy.orm import Session
from jose import jwt
from passlib.context import CryptContext
from datetime import datetime, timedelta, timezone
from typing import Optional
from auth.models import User
from auth.schemas import UserCreate, UserResponse
from config import settings
from database import commit_or_raise

logger = logging.getLogger(__name__)


class AuthService:
    pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash a password using bcrypt."""
        return AuthService.pwd_context.hash(password)

    @staticmethod
    def verify_password(plain_password: str, hashed_password: str) -> bool:
        """Verify a password against its hash."""
        return AuthService.pwd_context.verify(plain_password, hashed_password)

    @staticmethod
    def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
        """Create a JWT access token."""
        to_encode = data.copy()
        expire = datetime.now(timezone.utc) + (
            expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        )
        to_encode.update({"exp": expire})
        return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)

    @staticmethod
    def get_user_by_email(email: str, db: Session) -> Optional[User]:
        """Retrieve a user by email."""
        return db.query(User).filter(User.email == email.lower()).first()

    @staticmethod
    def authenticate_user(email: str, password: str, db: Session) -> Optional[User]:
        user = AuthService.get_user_by_email(email, db)
        if not user or not AuthService.verify_password(password, user.password_hash):
            return None
        return user

    @staticmethod
    def create_user(user_data: UserCreate, db: Session) -> UserResponse:
        if AuthService.get_user_by_email(user_data.email, db):
            raise HTTPException(status_code=400, detail="User already exists")

        new_user = User(
            email=user_data.email.lower(),
            name=user_data.name.strip(),
            password_hash=AuthService.hash_password(user_data.password),
            role="member",
        )
        db.add(new_user)
        commit_or_raise(db, f"register user {new_user.email}")
        db.refresh(new_user)
        logger.info(f"Registered user {new_user.id}")
        return UserResponse.model_validate(new_user)
