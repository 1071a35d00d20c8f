import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import HTTPException
from jose import jwt
from jose.exceptions import JWTError
from starlette.requests import Request

from sitechat.config import Settings


logger = logging.getLogger("sitechat.auth")


@dataclass
class Principal:
    subject: str
    claims: Dict[str, Any]


class AuthConfig:
    algorithm = "HS256"

    def __init__(self, settings: Settings) -> None:
        self.secret = str(settings.auth_secret or "").strip()

    @property
    def configured(self) -> bool:
        return bool(self.secret)


class AuthService:
    """Bearer-token authorizer for the API.

    With no secret configured every request is allowed, which keeps local
    use and the bootstrap assistant working without tokens.
    """

    def __init__(self, cfg: AuthConfig) -> None:
        self.cfg = cfg

    def verify_bearer(self, header: str) -> Optional[Principal]:
        scheme, _, token = str(header or "").strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        try:
            claims = jwt.decode(token.strip(), self.cfg.secret, algorithms=[self.cfg.algorithm])
        except JWTError as exc:
            logger.info("[auth] rejected token: %s", exc)
            return None
        subject = str(claims.get("sub", "") or "").strip()
        if not subject:
            return None
        return Principal(subject=subject, claims=claims)

    def authorize(self, request: Request) -> Optional[Principal]:
        if not self.cfg.configured:
            return None
        principal = self.verify_bearer(request.headers.get("Authorization", ""))
        if principal is None:
            raise HTTPException(
                status_code=401,
                detail="Missing or invalid bearer token.",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return principal
