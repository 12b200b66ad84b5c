import json
import os
import threading
from contextlib import contextmanager
from typing import Dict, Iterator

import redis
from pydantic import ValidationError
from redis.exceptions import LockError, LockNotOwnedError

from models.workflow_context import WorkflowContext
from services.datadog_service import DataDogService
from utils.config import ActiveConfig
from utils.logger import logger


class FileSessionStore:
    """Session persistence in a single JSON file, keyed by session id."""

    def __init__(self, filename: str = "sessions.json"):
        """
        Initialize the file session store.

        Args:
            filename (str, optional): File path for session storage. Defaults to "sessions.json".
        """
        self.filename = filename
        self._locks: Dict[str, threading.Lock] = {}
        self._waiters: Dict[str, int] = {}
        self._guard = threading.Lock()
        logger.debug(f"Initialized FileSessionStore with filename: {filename}")

    def _read_all(self) -> dict:
        if not os.path.exists(self.filename):
            return {}
        try:
            with open(self.filename, "r") as f:
                content = f.read().strip()
                return json.loads(content) if content else {}
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Failed to read sessions: {e}", exc_info=True)
            return {}

    def load(self, session_id: str) -> WorkflowContext:
        """
        Load the context for a session.

        Args:
            session_id (str): Unique session identifier

        Returns:
            WorkflowContext: Stored context, or a fresh one when absent or unreadable
        """
        raw = self._read_all().get(session_id)
        if raw is None:
            logger.debug(f"No stored context for session {session_id}, starting fresh")
            return WorkflowContext(session_id=session_id)
        try:
            ctx = WorkflowContext.model_validate(raw)
            logger.info(f"Loaded context for session {session_id}")
            return ctx
        except ValidationError as e:
            logger.error(f"Stored context for session {session_id} is invalid: {e}")
            return WorkflowContext(session_id=session_id)

    def save(self, ctx: WorkflowContext) -> None:
        """
        Save the context for its session, keeping other sessions intact.

        Args:
            ctx (WorkflowContext): Context to persist
        """
        with self._guard:
            data = self._read_all()
            data[ctx.session_id] = ctx.model_dump(mode="json")
            try:
                with open(self.filename, "w") as f:
                    json.dump(data, f)
                logger.info(f"Context saved for session {ctx.session_id}")
            except IOError as e:
                logger.error(f"Failed to save context: {e}", exc_info=True)
                raise

    @contextmanager
    def lock(self, session_id: str) -> Iterator[None]:
        """Serialize turns for one session within this process; a lock nobody holds or waits on is dropped."""
        with self._guard:
            session_lock = self._locks.setdefault(session_id, threading.Lock())
            self._waiters[session_id] = self._waiters.get(session_id, 0) + 1
        try:
            with session_lock:
                yield
        finally:
            with self._guard:
                self._waiters[session_id] -= 1
                if not self._waiters[session_id]:
                    del self._waiters[session_id]
                    del self._locks[session_id]


class RedisSessionStore:
    """Session persistence in Redis with a TTL and a per-session lock."""

    def __init__(self, client: redis.Redis = None, ttl: int = None, lock_timeout: int = None):
        """
        Initialize the Redis session store.

        Args:
            client (redis.Redis, optional): Redis client. Built from ActiveConfig when omitted.
            ttl (int, optional): Session expiry in seconds
            lock_timeout (int, optional): Seconds before a held session lock expires
        """
        self.client = client or redis.Redis(
            host=ActiveConfig.REDIS_HOST,
            port=ActiveConfig.REDIS_PORT,
            decode_responses=True,
        )
        self.ttl = ttl or ActiveConfig.SESSION_TTL_SECONDS
        self.lock_timeout = lock_timeout or ActiveConfig.SESSION_LOCK_TIMEOUT_SECONDS
        logger.debug("Initialized RedisSessionStore")

    @staticmethod
    def _key(session_id: str) -> str:
        return f"session:{session_id}"

    def load(self, session_id: str) -> WorkflowContext:
        raw = self.client.get(self._key(session_id))
        if not raw:
            logger.debug(f"No stored context for session {session_id}, starting fresh")
            return WorkflowContext(session_id=session_id)
        try:
            ctx = WorkflowContext.model_validate_json(raw)
            logger.info(f"Loaded context for session {session_id}")
            return ctx
        except ValidationError as e:
            logger.error(f"Stored context for session {session_id} is invalid: {e}")
            return WorkflowContext(session_id=session_id)

    def save(self, ctx: WorkflowContext) -> None:
        self.client.setex(self._key(ctx.session_id), self.ttl, ctx.model_dump_json())
        logger.info(f"Context saved for session {ctx.session_id}")

    @contextmanager
    def lock(self, session_id: str) -> Iterator[None]:
        """
        Serialize turns for one session across processes.

        The redis lock expires after lock_timeout seconds. While the turn runs
        a keep-alive thread extends it every third of that, so slow provider
        calls cannot let a second turn for the session in.

        Args:
            session_id (str): Unique session identifier
        """
        session_lock = self.client.lock(f"{self._key(session_id)}:lock", timeout=self.lock_timeout, thread_local=False)
        session_lock.acquire()
        stop = threading.Event()
        keeper = threading.Thread(target=self._keep_alive, args=(session_lock, stop, session_id), daemon=True)
        keeper.start()
        try:
            yield
        finally:
            stop.set()
            keeper.join()
            try:
                session_lock.release()
            except LockNotOwnedError as e:
                logger.warning(f"Session lock for {session_id} expired before release: {e}")
                DataDogService.increment_metric("entity_resolution.lock_expired", tags={"store": "redis"})

    def _keep_alive(self, session_lock, stop: threading.Event, session_id: str) -> None:
        while not stop.wait(self.lock_timeout / 3):
            try:
                session_lock.reacquire()
            except LockError as e:
                logger.warning(f"Could not extend session lock for {session_id}: {e}")
                return


def build_session_store():
    """Create the session store selected by ActiveConfig.SESSION_STORE."""
    if ActiveConfig.SESSION_STORE == "redis":
        return RedisSessionStore()
    return FileSessionStore(ActiveConfig.SESSION_FILE)
