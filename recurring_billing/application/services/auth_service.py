from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import HTTPException, status
from jose import JWTError, jwt

from ...domain.models import User

logger = logging.getLogger(__name__)


class AuthService:
    """Verifies caller tokens issued by the platform's identity provider."""

    def __init__(self, secret_key: str, algorithm: str = "HS256") -> None:
        if not secret_key:
            raise RuntimeError("AUTH_TOKEN_SECRET not configured.")
        if secret_key == "change-me":
            logger.warning("AUTH_TOKEN_SECRET uses the default value. Configure a real secret in production.")
        self._secret_key = secret_key
        self._algorithm = algorithm

    def verify_token(self, token: str) -> User:
        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[self._algorithm])
        except JWTError as exc:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token.") from exc
        user_id = payload.get("sub")
        if not user_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token.")
        return User(id=str(user_id), role=payload.get("role") or "user", email=payload.get("email"))

    def create_token(self, user: User, expires_minutes: Optional[int] = 60) -> str:
        """Issue a token for ``user``; used by operators and tests."""
        payload = {"sub": str(user.id), "role": user.role}
        if user.email:
            payload["email"] = user.email
        if expires_minutes:
            payload["exp"] = datetime.now(tz=timezone.utc) + timedelta(minutes=expires_minutes)
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)
