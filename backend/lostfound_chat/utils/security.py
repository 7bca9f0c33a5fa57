from typing import Dict, Iterable, Optional

import structlog
from jose import JWTError, jwt
from pydantic import ValidationError

from lostfound_chat import config
from lostfound_chat.errors import NotAuthenticated
from lostfound_chat.repositories.user_repository import UserRepository
from lostfound_chat.schemas.user import Principal, TokenPayload


logger = structlog.get_logger(__name__)


def decode_access_token(token: str, secret: Optional[str] = None, algorithm: Optional[str] = None) -> TokenPayload:
    payload = jwt.decode(token, secret or config.JWT_SECRET, algorithms=[algorithm or config.JWT_ALGORITHM])
    return TokenPayload.model_validate(payload)


def create_access_token(principal_id: Optional[str], secret: Optional[str] = None, algorithm: Optional[str] = None, **claims) -> str:
    payload = dict(claims)
    if principal_id:
        payload["sub"] = principal_id
    return jwt.encode(payload, secret or config.JWT_SECRET, algorithm=algorithm or config.JWT_ALGORITHM)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


class IdentityService:
    """Turns bearer credentials into principals with their display attributes."""

    def __init__(self, users: UserRepository, secret: Optional[str] = None, algorithm: Optional[str] = None) -> None:
        self._users = users
        self._secret = secret
        self._algorithm = algorithm

    async def authenticate(self, token: Optional[str]) -> Principal:
        if not token:
            raise NotAuthenticated()
        try:
            payload = decode_access_token(token, self._secret, self._algorithm)
        except (JWTError, ValidationError) as exc:
            logger.info("token_rejected", reason=str(exc))
            raise NotAuthenticated("Invalid token") from exc
        if not payload.principal_id:
            raise NotAuthenticated("Invalid token")
        principal = await self.lookup(payload.principal_id)
        if principal is None:
            raise NotAuthenticated("User not found or inactive")
        return principal

    async def lookup(self, principal_id: str) -> Optional[Principal]:
        user = await self._users.get_user_by_id(principal_id)
        if not user or user.get("is_active") is False:
            return None
        return self._principal(user)

    async def display_attributes(self, principal_ids: Iterable[str]) -> Dict[str, Principal]:
        users = await self._users.get_users_by_ids(set(principal_ids))
        return {u["_id"]: self._principal(u) for u in users}

    @staticmethod
    def _principal(user) -> Principal:
        return Principal(
            id=user["_id"],
            name=user.get("name"),
            avatar=user.get("avatar"),
            trust_score=user.get("trust_score"),
        )
