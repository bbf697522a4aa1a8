"""Python client for the JusPost API and its realtime feed.

``PostStore`` keeps one session's view of the public feed in sync: an
initial fetch, realtime events from the server, and optimistic likes that
are rolled back when the server refuses them. Identity lives in an
``Identity`` object backed by an injected ``Storage`` so the store never
touches global state.
"""
import copy
import json
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

import keyring
import requests
from keyring.errors import PasswordDeleteError
from requests import Session
from websockets.exceptions import WebSocketException
from websockets.sync.client import connect

from logging_config import get_logger

logger = get_logger("client")

SERVICE_NAME = "juspost"
ANONYMOUS_PREFIX = "anonymous_"
ANONYMOUS_LABEL = "Anonymous"


# === identity persistence ===

class Storage:
    """Key/value persistence used for the session identity"""
    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def clear(self, key: str) -> None:
        raise NotImplementedError


class MemoryStorage(Storage):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def clear(self, key: str) -> None:
        self._data.pop(key, None)


class KeyringStorage(Storage):
    """Stores values in the OS keyring under the ``juspost`` service"""
    def __init__(self, service: str = SERVICE_NAME):
        self.service = service

    def get(self, key: str) -> Optional[str]:
        return keyring.get_password(self.service, key)

    def set(self, key: str, value: str) -> None:
        keyring.set_password(self.service, key, value)

    def clear(self, key: str) -> None:
        try:
            keyring.delete_password(self.service, key)
        except PasswordDeleteError:
            pass


def generate_anonymous_id() -> str:
    return f"{ANONYMOUS_PREFIX}{uuid.uuid4().hex}"


class Identity:
    """Who this session acts as: a logged-in user or a stable anonymous id.

    The user record is kept as JSON under ``user``; the anonymous id under
    ``anonymousId``. A corrupt user record is discarded.
    """
    USER_KEY = "user"
    ANONYMOUS_KEY = "anonymousId"

    def __init__(self, storage: Storage):
        self.storage = storage
        self.user: Optional[Dict[str, Any]] = None
        self.anonymous_id: Optional[str] = None

        stored = storage.get(self.USER_KEY)
        if stored:
            try:
                self.user = json.loads(stored)
            except ValueError:
                logger.warning("Discarding unreadable stored user")
                storage.clear(self.USER_KEY)
        if self.user is None:
            self.anonymous_id = storage.get(self.ANONYMOUS_KEY) or generate_anonymous_id()
            storage.set(self.ANONYMOUS_KEY, self.anonymous_id)

    @property
    def liker_id(self) -> Optional[str]:
        """Identifier used for likes and private-post authorship"""
        if self.user:
            return self.user.get("username")
        return self.anonymous_id

    @property
    def username(self) -> Optional[str]:
        return self.user.get("username") if self.user else None

    @property
    def nickname(self) -> Optional[str]:
        return self.user.get("nickname") if self.user else None

    @property
    def role(self) -> str:
        return (self.user or {}).get("role") or "user"

    @property
    def token(self) -> Optional[str]:
        return self.user.get("token") if self.user else None

    def login(self, user: Dict[str, Any]) -> None:
        self.storage.set(self.USER_KEY, json.dumps(user))
        self.user = dict(user)
        self.storage.clear(self.ANONYMOUS_KEY)
        self.anonymous_id = None

    def logout(self) -> None:
        self.storage.clear(self.USER_KEY)
        self.user = None
        self.anonymous_id = generate_anonymous_id()
        self.storage.set(self.ANONYMOUS_KEY, self.anonymous_id)


# === lightweight data objects ===

@dataclass
class Result:
    """Outcome of an API call: data on success, a message on failure"""
    ok: bool
    data: Any = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str) -> "Result":
        return cls(ok=False, error=error)


@dataclass
class FeedPost:
    id: int
    username: str
    nickname: str
    message: str
    likes: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    liker_nicknames: Dict[str, str] = field(default_factory=dict)


def _parse_time(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime) or value is None:
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def convert_post(p: Dict[str, Any]) -> FeedPost:
    """Build a FeedPost from the wire representation"""
    return FeedPost(
        id=p.get("id"),
        username=p.get("username") or "",
        nickname=p.get("nickname") or ANONYMOUS_LABEL,
        message=p.get("message") or "",
        likes=list(p.get("likes") or []),
        created_at=_parse_time(p.get("createdAt")),
    )


# === HTTP client ===

class JusPostAPI:
    """HTTP client for the JusPost backend.

    Methods never raise for HTTP or transport failures; they return a
    ``Result`` whose ``error`` holds the server's message when there is one.
    """
    def __init__(self, base_url: str, timeout: float = 5.0, session: Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()

    def _request(self, method: str, path: str, json_payload: Dict[str, Any] | None = None,
                 params: Dict[str, Any] | None = None, headers: Dict[str, str] | None = None) -> Result:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            resp = self.session.request(method, url, json=json_payload, params=params,
                                        headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error("%s %s failed: %s", method, path, e)
            return Result.failure("Network error")
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code >= 400 or not body.get("success", False):
            error = body.get("error") or body.get("message") or f"Request failed ({resp.status_code})"
            logger.warning("%s %s -> %s: %s", method, path, resp.status_code, error)
            return Result.failure(error)
        return Result(ok=True, data=body)

    def login(self, username: str, nickname: str) -> Result:
        return self._unwrap(self._request("POST", "/users/login",
                                          {"username": username, "nickname": nickname}))

    def get_posts(self) -> Result:
        return self._unwrap(self._request("GET", "/posts"))

    def create_post(self, message: str, username: str, nickname: Optional[str]) -> Result:
        return self._unwrap(self._request("POST", "/posts", {
            "message": message, "username": username, "nickname": nickname}))

    def toggle_like(self, post_id: int, liker_id: str) -> Result:
        return self._unwrap(self._request("POST", f"/posts/{post_id}/like", {"likerId": liker_id}))

    def delete_post(self, post_id: int, username: str) -> Result:
        return self._request("DELETE", f"/posts/{post_id}", {"username": username})

    def get_nicknames(self, liker_ids: Iterable[str]) -> Result:
        result = self._request("POST", "/posts/nicknames", {"userIds": list(liker_ids)})
        if result.ok:
            result.data = result.data.get("nicknames", {})
        return result

    def create_private_post(self, message: str, author_id: str, nickname: Optional[str],
                            expires_in: Optional[int] = None) -> Result:
        payload = {"message": message, "authorId": author_id, "nickname": nickname}
        if expires_in:
            payload["expiresIn"] = expires_in
        return self._unwrap(self._request("POST", "/private-posts", payload))

    def get_private_post(self, unique_id: str) -> Result:
        return self._unwrap(self._request("GET", f"/private-posts/{unique_id}"))

    def get_private_posts(self, author_id: str) -> Result:
        return self._unwrap(self._request("GET", "/private-posts", params={"authorId": author_id}))

    def delete_private_post(self, unique_id: str, user_id: str, user_role: str) -> Result:
        return self._request("DELETE", f"/private-posts/{unique_id}",
                             {"userId": user_id, "userRole": user_role})

    def update_nickname(self, username: str, nickname: str, token: str) -> Result:
        return self._unwrap(self._request("PUT", f"/users/{username}", {"nickname": nickname},
                                          headers={"Authorization": f"Bearer {token}"}))

    def delete_account(self, token: str) -> Result:
        return self._request("DELETE", "/users/me", headers={"Authorization": f"Bearer {token}"})

    @staticmethod
    def _unwrap(result: Result) -> Result:
        if result.ok:
            result.data = result.data.get("data")
        return result


# === client post store ===

class PostStore:
    """One session's copy of the public feed plus its own private posts.

    Realtime events are applied with ``apply_event``. Likes are applied
    optimistically and rolled back from a snapshot if the server call
    fails; creates and deletes only change state through the server.
    The lock is never held while a request is in flight, because the
    server may deliver an event for that same request meanwhile.
    """

    def __init__(self, api: JusPostAPI, identity: Identity,
                 notify: Optional[Callable[[str], None]] = None):
        self.api = api
        self.identity = identity
        self.notify = notify or (lambda message: logger.info("notice: %s", message))
        self.posts: List[FeedPost] = []
        self.private_posts: List[Dict[str, Any]] = []
        self._lock = threading.RLock()

    # --- lookups ---
    def get(self, post_id: int) -> Optional[FeedPost]:
        with self._lock:
            return next((p for p in self.posts if p.id == post_id), None)

    def _index(self, post_id: int) -> int:
        for i, p in enumerate(self.posts):
            if p.id == post_id:
                return i
        return -1

    # --- server -> store ---
    def fetch_posts(self) -> Result:
        """Replace the feed with the server's current list"""
        result = self.api.get_posts()
        if not result.ok:
            self.notify(result.error or "Could not fetch posts.")
            return result
        posts = [convert_post(p) for p in result.data]
        with self._lock:
            self.posts = posts
        liker_ids = {liker for p in posts for liker in p.likes}
        if liker_ids:
            self.fetch_liker_nicknames(liker_ids)
        return result

    def resync(self) -> Result:
        """Called after (re)connecting; missed events are never replayed"""
        return self.fetch_posts()

    def apply_event(self, event: str, payload: Any) -> None:
        with self._lock:
            if event == "new_post":
                post = convert_post(payload)
                if self._index(post.id) == -1:
                    self.posts.insert(0, post)
            elif event == "update_post":
                self._replace(convert_post(payload))
            elif event == "delete_post":
                index = self._index(payload.get("id"))
                if index != -1:
                    del self.posts[index]
            elif event == "posts_updated":
                for p in payload or []:
                    self._replace(convert_post(p))
            else:
                logger.debug("Ignoring unknown event %s", event)

    def _replace(self, post: FeedPost) -> None:
        index = self._index(post.id)
        if index == -1:
            return
        post.liker_nicknames = self.posts[index].liker_nicknames
        self.posts[index] = post

    # --- local actions ---
    def like_post(self, post_id: int) -> Result:
        """Toggle the current identity's like, optimistically"""
        liker_id = self.identity.liker_id
        if not liker_id:
            return Result.failure("No identity")
        with self._lock:
            index = self._index(post_id)
            if index == -1:
                return Result.failure("Post not found")
            snapshot = copy.deepcopy(self.posts[index])
            post = self.posts[index]
            if liker_id in post.likes:
                post.likes = [i for i in post.likes if i != liker_id]
            else:
                post.likes = post.likes + [liker_id]

        result = self.api.toggle_like(post_id, liker_id)

        if not result.ok:
            with self._lock:
                index = self._index(post_id)
                if index != -1:
                    self.posts[index] = snapshot
            self.notify("Could not update like.")
            return result
        if result.data and result.data.get("likes"):
            self.fetch_liker_nicknames(result.data["likes"])
        return result

    def create_post(self, message: str, is_private: bool = False,
                    expires_in: Optional[int] = None) -> Result:
        """Create a post; the public feed is updated by the new_post event"""
        author_id = self.identity.liker_id
        if not author_id:
            return Result.failure("No identity")
        if is_private:
            result = self.api.create_private_post(message, author_id, self.identity.nickname, expires_in)
            if result.ok:
                self.notify("Private post created!")
                self.fetch_private_posts()
            else:
                self.notify(result.error or "Failed to create private post.")
            return result
        result = self.api.create_post(message, author_id, self.identity.nickname)
        self.notify("Post created!" if result.ok else "Failed to create post.")
        return result

    def delete_post(self, post_id: int) -> Result:
        """Delete a public post; the feed is updated by the delete_post event"""
        if not self.identity.username:
            return Result.failure("You must be logged in to delete posts.")
        result = self.api.delete_post(post_id, self.identity.username)
        self.notify("Post deleted!" if result.ok else "Failed to delete post.")
        return result

    def fetch_private_posts(self) -> Result:
        author_id = self.identity.liker_id
        if not author_id:
            with self._lock:
                self.private_posts = []
            return Result(ok=True, data=[])
        result = self.api.get_private_posts(author_id)
        if result.ok:
            with self._lock:
                self.private_posts = list(result.data)
        else:
            self.notify(result.error or "Could not fetch private posts.")
        return result

    def delete_private_post(self, unique_id: str) -> Result:
        user_id = self.identity.liker_id
        if not user_id:
            return Result.failure("No identity")
        result = self.api.delete_private_post(unique_id, user_id, self.identity.role)
        if result.ok:
            with self._lock:
                self.private_posts = [p for p in self.private_posts if p.get("uniqueId") != unique_id]
            self.notify("Private post deleted!")
        else:
            self.notify("Failed to delete private post.")
        return result

    def delete_account(self) -> Result:
        """Delete the logged-in account, then continue as a fresh anonymous session"""
        token = self.identity.token
        if not token:
            return Result.failure("You must be logged in to delete your account.")
        result = self.api.delete_account(token)
        if result.ok:
            self.identity.logout()
            with self._lock:
                self.private_posts = []
            self.notify("Account deleted.")
        else:
            self.notify(result.error or "Failed to delete account.")
        return result

    # --- liker nicknames (display only) ---
    def fetch_liker_nicknames(self, liker_ids: Iterable[str]) -> Result:
        result = self.api.get_nicknames(set(liker_ids))
        if not result.ok:
            logger.error("Failed to fetch liker nicknames: %s", result.error)
            return result
        with self._lock:
            for p in self.posts:
                p.liker_nicknames.update(result.data)
        return result

    def nickname_for(self, post: FeedPost, liker_id: str) -> str:
        return post.liker_nicknames.get(liker_id, ANONYMOUS_LABEL)


# === realtime listener ===

class FeedListener:
    """Applies realtime events from the server's /ws endpoint to a PostStore.

    Every (re)connect triggers a full resync since the server keeps no
    backlog of events.
    """
    def __init__(self, url: str, store: PostStore, retry_delay: float = 2.0):
        self.url = url
        self.store = store
        self.retry_delay = retry_delay
        self._stopped = threading.Event()

    def handle_message(self, raw: str | bytes) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring malformed realtime message")
            return
        if not isinstance(message, dict):
            logger.warning("Ignoring realtime message that is not an object")
            return
        self.store.apply_event(message.get("event"), message.get("data"))

    def stop(self) -> None:
        self._stopped.set()

    def run(self) -> None:
        while not self._stopped.is_set():
            try:
                with connect(self.url) as websocket:
                    logger.info("Connected to %s", self.url)
                    self.store.resync()
                    for raw in websocket:
                        if self._stopped.is_set():
                            break
                        self.handle_message(raw)
            except (WebSocketException, OSError) as e:
                # closed connections and rejected handshakes alike; retry and resync
                logger.warning("Realtime connection lost: %s", e)
            if not self._stopped.is_set():
                time.sleep(self.retry_delay)
