"""SQLAlchemy models defining User, Post, PostLike and PrivatePost for JusPost."""
import enum
from datetime import datetime, timezone
from sqlalchemy import (Column, Integer, String, Text, DateTime, ForeignKey,
                        Enum, UniqueConstraint)
from sqlalchemy.orm import relationship
from database import Base


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the form every column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class RoleEnum(str, enum.Enum):
    """Enumeration for user roles in the system."""
    admin = "admin"
    user = "user"


class User(Base):
    """Registered user. The username is private and never changes."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(100), unique=True, index=True, nullable=False)
    nickname = Column(String(100), nullable=False)
    role = Column(Enum(RoleEnum), nullable=False, default=RoleEnum.user)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Post(Base):
    """Public post shown in the feed."""
    __tablename__ = "posts"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(150), index=True, nullable=False)
    nickname = Column(String(100), nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    like_rows = relationship("PostLike",
                             back_populates="post",
                             cascade="all, delete-orphan",
                             order_by="PostLike.id")

    @property
    def likes(self):
        """Liker identifiers in the order the likes were given."""
        return [like.liker_id for like in self.like_rows]


class PostLike(Base):
    """One liker identifier on one post; the pair is unique."""
    __tablename__ = "post_likes"
    __table_args__ = (UniqueConstraint("post_id", "liker_id", name="uq_post_liker"),)

    id = Column(Integer, primary_key=True)
    post_id = Column(Integer, ForeignKey("posts.id", ondelete="CASCADE"), nullable=False, index=True)
    liker_id = Column(String(150), nullable=False)

    post = relationship("Post", back_populates="like_rows")


class PrivatePost(Base):
    """Link-only post, reachable solely through its unique_id."""
    __tablename__ = "private_posts"

    id = Column(Integer, primary_key=True, index=True)
    unique_id = Column(String(64), unique=True, index=True, nullable=False)
    author_id = Column(String(150), index=True, nullable=False)
    nickname = Column(String(100), nullable=True)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=True)

    def is_expired(self, now: datetime | None = None) -> bool:
        """True once expires_at is set and has been reached"""
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())
