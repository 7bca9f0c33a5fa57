from typing import Optional

from pydantic import BaseModel, ConfigDict


class Principal(BaseModel):

    model_config = ConfigDict(frozen=True)

    id: str
    name: Optional[str] = None
    avatar: Optional[str] = None
    trust_score: Optional[float] = None

    def display(self) -> dict:
        return {"id": self.id, "name": self.name, "avatar": self.avatar}


class TokenPayload(BaseModel):

    sub: Optional[str] = None
    # tokens issued by the legacy auth routes carry ``userId``
    userId: Optional[str] = None
    exp: Optional[int] = None

    @property
    def principal_id(self) -> Optional[str]:
        return self.sub or self.userId
