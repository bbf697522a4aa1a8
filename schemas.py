"""
Request and response schemas for the JusPost API.

Field names are snake_case in Python and camelCase on the wire
(``likerId``, ``uniqueId``, ``createdAt`` ...), matching what the web
client sends and expects.
"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models import RoleEnum


class CamelModel(BaseModel):
    """Base schema that reads ORM objects and speaks camelCase JSON"""
    model_config = ConfigDict(alias_generator=to_camel,
                              populate_by_name=True,
                              from_attributes=True)


# Requests

class PostCreate(CamelModel):
    """Body of POST /posts"""
    message: str = ""
    username: Optional[str] = None
    nickname: Optional[str] = None


class LikeRequest(CamelModel):
    """Body of POST /posts/{id}/like"""
    liker_id: str = ""


class DeletePostRequest(CamelModel):
    """Body of DELETE /posts/{id}"""
    username: Optional[str] = None


class NicknamesRequest(CamelModel):
    """Body of POST /posts/nicknames"""
    user_ids: List[str] = Field(default_factory=list)


class PrivatePostCreate(CamelModel):
    """Body of POST /private-posts. expires_in is in milliseconds."""
    message: str = ""
    author_id: str = ""
    nickname: Optional[str] = None
    expires_in: Optional[int] = None


class DeletePrivatePostRequest(CamelModel):
    """Body of DELETE /private-posts/{uniqueId}"""
    user_id: Optional[str] = None
    user_role: Optional[str] = None


class LoginRequest(CamelModel):
    """Body of POST /users/login"""
    username: str = ""
    nickname: str = ""


class NicknameUpdate(CamelModel):
    """Body of PUT /users/{username}"""
    nickname: str = ""


class DeleteUserRequest(CamelModel):
    """Body of DELETE /users/{username}"""
    admin_username: Optional[str] = None


# Responses

class PostOut(CamelModel):
    id: int
    username: str
    nickname: str
    message: str
    likes: List[str] = Field(default_factory=list)
    created_at: datetime


class PrivatePostOut(CamelModel):
    id: int
    unique_id: str
    author_id: str
    nickname: Optional[str] = None
    message: str
    created_at: datetime
    expires_at: Optional[datetime] = None


class UserOut(CamelModel):
    id: int
    username: str
    nickname: str
    role: RoleEnum
    created_at: Optional[datetime] = None


def dump(schema, obj) -> dict:
    """Serialize an ORM object through ``schema`` into wire JSON"""
    return schema.model_validate(obj).model_dump(by_alias=True, mode="json")
