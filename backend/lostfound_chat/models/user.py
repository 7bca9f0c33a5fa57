from typing import Optional, TypedDict


class UserDocument(TypedDict, total=False):

    _id: str
    name: str
    email: str
    avatar: Optional[str]
    trust_score: float
    is_active: bool
