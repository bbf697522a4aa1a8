"""Main application module: JusPost HTTP API and realtime feed."""
import os
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Depends, Query, Response, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session
import models
import services
from broadcaster import (Broadcaster, ConnectionManager, NEW_POST, UPDATE_POST,
                         DELETE_POST, POSTS_UPDATED)
from database import engine, SessionLocal
from errors import ForbiddenError, UnauthorizedError, register_error_handlers
from logging_config import get_logger, setup_logging
from schemas import (PostCreate, LikeRequest, DeletePostRequest, NicknamesRequest,
                     PrivatePostCreate, DeletePrivatePostRequest, LoginRequest,
                     NicknameUpdate, DeleteUserRequest, PostOut, PrivatePostOut,
                     UserOut, dump)


load_dotenv()

SECRET_KEY = os.getenv("SECRET_KEY")

if not SECRET_KEY:
    raise ValueError("SECRET_KEY environment variable not set! Run generate_key.py to create one.")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "harsh-admin")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

setup_logging()
logger = get_logger("api")

app = FastAPI(title="JusPost API")
models.Base.metadata.create_all(bind=engine)
register_error_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_URL, "https://juspost.com"],
    allow_credentials=True,
    allow_methods=["GET", "HEAD", "PUT", "PATCH", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
)

manager = ConnectionManager()
bearer = HTTPBearer(auto_error=False)


def create_access_token(data: dict, expires_delta: timedelta | None = None):
    """Create a new JWT access token"""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def token_for(user: models.User) -> str:
    """Session token identifying a user by username"""
    return create_access_token({
        "sub": user.username,
        "role": user.role.value if hasattr(user.role, "value") else user.role
    })


def get_db():
    """Dependency function that provides a database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_broadcaster() -> Broadcaster:
    """Dependency returning the realtime channel that route handlers publish to"""
    return manager


def get_current_username(cred: HTTPAuthorizationCredentials | None = Depends(bearer)) -> str:
    """Username from the bearer token sent by the client"""
    if cred is None:
        raise UnauthorizedError("Not authenticated")
    try:
        payload = jwt.decode(cred.credentials, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise UnauthorizedError("Invalid token")
    username = payload.get("sub")
    if not username:
        raise UnauthorizedError("Invalid token")
    return username


db_dependency = Annotated[Session, Depends(get_db)]
broadcaster_dependency = Annotated[Broadcaster, Depends(get_broadcaster)]


@app.get("/")
async def read_root():
    """Liveness check"""
    return {"message": "JusPost API is running"}


@app.websocket("/ws")
async def feed_socket(websocket: WebSocket):
    """Realtime feed: pushes new_post, update_post, delete_post and posts_updated"""
    await manager.connect(websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)


# Public posts

@app.get("/posts", status_code=status.HTTP_200_OK)
async def get_posts(db: db_dependency):
    """Retrieve every public post, newest first"""
    posts = services.list_posts(db)
    return {"success": True, "data": [dump(PostOut, p) for p in posts]}


@app.post("/posts", status_code=status.HTTP_201_CREATED)
async def create_post(body: PostCreate, db: db_dependency, broadcaster: broadcaster_dependency):
    """Create a public post and announce it to every connected client"""
    post = services.create_post(db, body.message, body.username, body.nickname)
    data = dump(PostOut, post)
    await broadcaster.publish(NEW_POST, data)
    return {"success": True, "data": data}


@app.post("/posts/nicknames", status_code=status.HTTP_200_OK)
async def get_liker_nicknames(body: NicknamesRequest, db: db_dependency):
    """Resolve liker identifiers to display nicknames"""
    return {"success": True, "nicknames": services.resolve_liker_nicknames(db, body.user_ids)}


@app.post("/posts/{post_id}/like", status_code=status.HTTP_200_OK)
async def like_post(post_id: int, body: LikeRequest, db: db_dependency, broadcaster: broadcaster_dependency):
    """Toggle a like and broadcast the updated post"""
    post = services.toggle_like(db, post_id, body.liker_id)
    data = dump(PostOut, post)
    await broadcaster.publish(UPDATE_POST, data)
    return {"success": True, "data": data}


@app.delete("/posts/{post_id}", status_code=status.HTTP_200_OK)
async def delete_post(post_id: int, body: DeletePostRequest, db: db_dependency, broadcaster: broadcaster_dependency):
    """Delete a post. Only the author or an admin can delete it"""
    services.delete_post(db, post_id, body.username)
    await broadcaster.publish(DELETE_POST, {"id": post_id})
    return {"success": True, "message": "Post deleted"}


# Private posts, never broadcast

@app.post("/private-posts", status_code=status.HTTP_201_CREATED)
async def create_private_post(body: PrivatePostCreate, db: db_dependency):
    """Create a private post reachable only through its uniqueId"""
    post = services.create_private_post(db, body.message, body.author_id, body.nickname, body.expires_in)
    return {"success": True, "data": dump(PrivatePostOut, post)}


@app.get("/private-posts", status_code=status.HTTP_200_OK)
async def get_private_posts(db: db_dependency,
                            author_id: Annotated[Optional[str], Query(alias="authorId")] = None,
                            admin_username: Annotated[Optional[str], Query(alias="adminUsername")] = None):
    """List an author's own private posts, or all of them for an admin"""
    posts = services.list_private_posts(db, author_id=author_id, admin_username=admin_username)
    return {"success": True, "data": [dump(PrivatePostOut, p) for p in posts]}


@app.get("/private-posts/{unique_id}", status_code=status.HTTP_200_OK)
async def get_private_post(unique_id: str, db: db_dependency):
    """Retrieve a private post by link; expired posts are not found"""
    post = services.fetch_private_post(db, unique_id)
    return {"success": True, "data": dump(PrivatePostOut, post)}


@app.delete("/private-posts/{unique_id}", status_code=status.HTTP_200_OK)
async def delete_private_post(unique_id: str, body: DeletePrivatePostRequest, db: db_dependency):
    """Delete a private post. Only the author or an admin can delete it"""
    services.delete_private_post(db, unique_id, body.user_id, body.user_role)
    return {"success": True, "message": "Private post deleted"}


# Users

@app.post("/users/login", status_code=status.HTTP_200_OK)
async def login(body: LoginRequest, response: Response, db: db_dependency):
    """Log in an existing user or register a new one"""
    user, created = services.login_or_register(db, body.username, body.nickname, ADMIN_USERNAME)
    if created:
        response.status_code = status.HTTP_201_CREATED
    data = dump(UserOut, user)
    data["token"] = token_for(user)
    return {"success": True, "data": data}


@app.get("/users/{admin_username}", status_code=status.HTTP_200_OK)
async def get_all_users(admin_username: str, db: db_dependency):
    """Retrieve all users. Only accessible by admin users"""
    users = services.list_users(db, admin_username)
    return {"success": True, "data": [dump(UserOut, u) for u in users]}


@app.put("/users/{username}", status_code=status.HTTP_200_OK)
async def update_user(username: str,
                      body: NicknameUpdate,
                      db: db_dependency,
                      current_username: str = Depends(get_current_username)):
    """Change the nickname of the logged-in user"""
    if current_username != username:
        logger.warning("%s tried to edit the profile of %s", current_username, username)
        raise ForbiddenError("You can only update your own profile")
    user = services.update_nickname(db, username, body.nickname)
    return {"success": True, "data": dump(UserOut, user)}


@app.delete("/users/me", status_code=status.HTTP_200_OK)
async def delete_me(db: db_dependency,
                    broadcaster: broadcaster_dependency,
                    current_username: str = Depends(get_current_username)):
    """Delete the logged-in user's own account and anonymize their posts"""
    posts = services.delete_own_account(db, current_username)
    await broadcaster.publish(POSTS_UPDATED, [dump(PostOut, p) for p in posts])
    return {"success": True, "message": "Account deleted and posts anonymized."}


@app.delete("/users/{username_to_delete}", status_code=status.HTTP_200_OK)
async def delete_user(username_to_delete: str,
                      body: DeleteUserRequest,
                      db: db_dependency,
                      broadcaster: broadcaster_dependency):
    """Delete a user and anonymize their posts. Only accessible by admin users"""
    posts = services.delete_user(db, username_to_delete, body.admin_username)
    await broadcaster.publish(POSTS_UPDATED, [dump(PostOut, p) for p in posts])
    return {"success": True, "message": "User deleted and posts anonymized."}
