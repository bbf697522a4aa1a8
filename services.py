"""Post, private post and user operations behind the HTTP routes.

Each function takes a SQLAlchemy session, is the only place that writes
the corresponding records, and raises the errors from ``errors``. Route
handlers stay thin: they call in here and publish realtime events.
"""
import secrets
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import models
from errors import ForbiddenError, NotFoundError, ServerError, ValidationError
from logging_config import get_logger

logger = get_logger("api")

ANONYMOUS_PREFIX = "anonymous_"
ANONYMOUS_NICKNAME = "Anonymous"
DELETED_PREFIX = "deleted_"
# ten years
MAX_EXPIRES_IN_MS = 10 * 365 * 24 * 60 * 60 * 1000


@contextmanager
def persistence(db: Session):
    """Turn database failures into a generic ServerError after rolling back"""
    try:
        yield
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Database operation failed")
        raise ServerError()


def _required(value: Optional[str]) -> str:
    return (value or "").strip()


def get_user_by_username(db: Session, username: str):
    """Retrieve a user from the database by username"""
    return db.query(models.User).filter(models.User.username == username).first()


def get_post_by_id(db: Session, post_id: int):
    """Retrieve a public post from the database by its ID"""
    return db.query(models.Post).filter(models.Post.id == post_id).first()


def get_private_post_by_unique_id(db: Session, unique_id: str):
    """Retrieve a private post by its access token, expired or not"""
    return db.query(models.PrivatePost).filter(models.PrivatePost.unique_id == unique_id).first()


def is_admin(user) -> bool:
    return user is not None and user.role == models.RoleEnum.admin


def require_admin(db: Session, username: Optional[str]):
    """Return the named user if it exists and has the admin role"""
    user = get_user_by_username(db, username) if username else None
    if not is_admin(user):
        logger.warning("Admin check failed for %r", username)
        raise ForbiddenError("Not authorized")
    return user


def check_author_or_admin(db: Session, author: str, requester: Optional[str]):
    """Allow the author of a resource or any admin, refuse everyone else"""
    if requester and requester == author:
        return
    if requester and is_admin(get_user_by_username(db, requester)):
        return
    logger.warning("%r may not modify a resource owned by %r", requester, author)
    raise ForbiddenError("Not authorized to delete this post")


# Public posts

def create_post(db: Session, message: str, username: Optional[str], nickname: Optional[str]):
    """Store a new public post with no likes"""
    message = _required(message)
    if not message:
        raise ValidationError("Message is required")
    post = models.Post(message=message,
                       username=_required(username) or "anonymous",
                       nickname=_required(nickname) or ANONYMOUS_NICKNAME)
    with persistence(db):
        db.add(post)
        db.commit()
        db.refresh(post)
    logger.info("Post %s created by %s", post.id, post.username)
    return post


def list_posts(db: Session) -> List[models.Post]:
    """All public posts, newest first"""
    with persistence(db):
        return (db.query(models.Post)
                .order_by(models.Post.created_at.desc(), models.Post.id.desc())
                .all())


def toggle_like(db: Session, post_id: int, liker_id: str):
    """Add liker_id to the post's likes, or remove it if already there.

    The toggle is a delete-or-insert on the unique (post, liker) row, so two
    concurrent toggles can never leave a duplicate like behind.
    """
    liker_id = _required(liker_id)
    if not liker_id:
        raise ValidationError("likerId is required")
    with persistence(db):
        post = get_post_by_id(db, post_id)
        if not post:
            raise NotFoundError("Post not found")
        removed = (db.query(models.PostLike)
                   .filter(models.PostLike.post_id == post_id,
                           models.PostLike.liker_id == liker_id)
                   .delete(synchronize_session=False))
        if not removed:
            db.add(models.PostLike(post_id=post_id, liker_id=liker_id))
        try:
            db.commit()
        except IntegrityError:
            # a concurrent request inserted the same like first
            db.rollback()
        db.refresh(post)
    logger.info("Post %s %s by %s", post_id, "unliked" if removed else "liked", liker_id)
    return post


def delete_post(db: Session, post_id: int, requester: Optional[str]):
    """Delete a public post if the requester is its author or an admin"""
    with persistence(db):
        post = get_post_by_id(db, post_id)
        if not post:
            raise NotFoundError("Post not found")
        check_author_or_admin(db, post.username, requester)
        db.delete(post)
        db.commit()
    logger.info("Post %s deleted by %s", post_id, requester)


def resolve_liker_nicknames(db: Session, liker_ids: Iterable[str]) -> Dict[str, str]:
    """Map liker identifiers to display nicknames.

    Anonymous identifiers get the fixed anonymous label; identifiers that
    match no user are left out.
    """
    ids = {i for i in liker_ids if i}
    nicknames = {i: ANONYMOUS_NICKNAME for i in ids if i.startswith(ANONYMOUS_PREFIX)}
    registered = ids.difference(nicknames)
    if registered:
        with persistence(db):
            users = db.query(models.User).filter(models.User.username.in_(registered)).all()
        nicknames.update({user.username: user.nickname for user in users})
    return nicknames


# Private posts

def create_private_post(db: Session,
                        message: str,
                        author_id: str,
                        nickname: Optional[str] = None,
                        expires_in: Optional[int] = None,
                        now: Optional[datetime] = None):
    """Store a link-only post. expires_in is a lifetime in milliseconds."""
    message, author_id = _required(message), _required(author_id)
    if not message:
        raise ValidationError("Message is required")
    if not author_id:
        raise ValidationError("authorId is required")
    if expires_in is not None and expires_in <= 0:
        raise ValidationError("expiresIn must be a positive number of milliseconds")
    if expires_in is not None and expires_in > MAX_EXPIRES_IN_MS:
        raise ValidationError("expiresIn is too large")

    created_at = now or models.utcnow()
    try:
        expires_at = created_at + timedelta(milliseconds=expires_in) if expires_in else None
    except OverflowError:
        raise ValidationError("expiresIn is too large")
    post = models.PrivatePost(unique_id=secrets.token_urlsafe(16),
                              author_id=author_id,
                              nickname=_required(nickname) or None,
                              message=message,
                              created_at=created_at,
                              expires_at=expires_at)
    with persistence(db):
        db.add(post)
        db.commit()
        db.refresh(post)
    logger.info("Private post %s created by %s (expires %s)", post.id, author_id, expires_at or "never")
    return post


def fetch_private_post(db: Session, unique_id: str, now: Optional[datetime] = None):
    """Return a private post, treating an expired one as absent"""
    with persistence(db):
        post = get_private_post_by_unique_id(db, unique_id)
    if not post or post.is_expired(now):
        raise NotFoundError("Post not found or has expired.")
    return post


def list_private_posts(db: Session,
                       author_id: Optional[str] = None,
                       admin_username: Optional[str] = None,
                       now: Optional[datetime] = None) -> List[models.PrivatePost]:
    """An author's live private posts, or every private post for an admin"""
    query = db.query(models.PrivatePost)
    if admin_username:
        require_admin(db, admin_username)
        with persistence(db):
            return query.order_by(models.PrivatePost.created_at.desc()).all()
    if not author_id:
        raise ValidationError("authorId or adminUsername is required")
    with persistence(db):
        posts = (query.filter(models.PrivatePost.author_id == author_id)
                 .order_by(models.PrivatePost.created_at.desc())
                 .all())
    return [p for p in posts if not p.is_expired(now)]


def delete_private_post(db: Session,
                        unique_id: str,
                        requester_id: Optional[str],
                        requester_role: Optional[str] = None):
    """Delete a private post if the requester is its author or an admin.

    The claimed role is only a hint; admin rights are checked against the
    stored user.
    """
    with persistence(db):
        post = get_private_post_by_unique_id(db, unique_id)
        if not post:
            raise NotFoundError("Post not found")
        check_author_or_admin(db, post.author_id, requester_id)
        db.delete(post)
        db.commit()
    logger.info("Private post %s deleted by %s (claimed role %s)", unique_id, requester_id, requester_role)


# Users

def login_or_register(db: Session,
                      username: str,
                      nickname: str,
                      reserved_admin: str) -> Tuple[models.User, bool]:
    """Return (user, created). Unknown usernames are registered as plain users."""
    username, nickname = _required(username), _required(nickname)
    if not username or not nickname:
        raise ValidationError("Username and nickname are required")
    with persistence(db):
        user = get_user_by_username(db, username)
        if user:
            return user, False
        if username == reserved_admin:
            logger.warning("Refused to register reserved admin handle %r", username)
            raise ForbiddenError("Cannot register admin user this way.")
        user = models.User(username=username, nickname=nickname, role=models.RoleEnum.user)
        db.add(user)
        db.commit()
        db.refresh(user)
    logger.info("Registered new user %s", username)
    return user, True


def list_users(db: Session, admin_username: str) -> List[models.User]:
    """Every user, for admins only"""
    require_admin(db, admin_username)
    with persistence(db):
        return db.query(models.User).order_by(models.User.id).all()


def update_nickname(db: Session, username: str, nickname: str):
    """Change a user's display name. Existing posts keep their snapshot."""
    nickname = _required(nickname)
    if not nickname:
        raise ValidationError("Nickname is required")
    with persistence(db):
        user = get_user_by_username(db, username)
        if not user:
            raise NotFoundError("User not found")
        user.nickname = nickname
        db.commit()
        db.refresh(user)
    logger.info("User %s changed nickname", username)
    return user


def delete_user(db: Session, username_to_delete: str, admin_username: Optional[str]) -> List[models.Post]:
    """Delete a user and anonymize their public posts in place.

    Returns the anonymized posts; their ids and messages are untouched.
    """
    require_admin(db, admin_username)
    posts = _delete_and_anonymize(db, username_to_delete)
    logger.info("User %s deleted by %s, %d post(s) anonymized",
                username_to_delete, admin_username, len(posts))
    return posts


def delete_own_account(db: Session, username: str) -> List[models.Post]:
    """Self-service account deletion; posts are anonymized as for an admin delete"""
    posts = _delete_and_anonymize(db, username)
    logger.info("User %s deleted their account, %d post(s) anonymized", username, len(posts))
    return posts


def _delete_and_anonymize(db: Session, username: str) -> List[models.Post]:
    with persistence(db):
        user = get_user_by_username(db, username)
        if not user:
            raise NotFoundError("User to delete not found")
        posts = db.query(models.Post).filter(models.Post.username == user.username).all()
        for post in posts:
            post.username = f"{DELETED_PREFIX}{user.username}"
            post.nickname = ANONYMOUS_NICKNAME
        db.delete(user)
        db.commit()
        for post in posts:
            db.refresh(post)
    return posts
