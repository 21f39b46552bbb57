import asyncio
import json
import threading
from collections import OrderedDict
from typing import Optional

import redis

from constants import (
    REDIS_HOST,
    REDIS_PORT,
    REDIS_PASSWORD,
    STATE_BACKEND,
    SESSION_TTL_SECONDS,
    POOL_LOCK_TIMEOUT_SECONDS,
)
from redis_keys import (
    REDIS_CONN_KEY,
    REDIS_CONN_CHANNEL,
    REDIS_ONLINE_KEY,
    REDIS_POOL_KEY,
    REDIS_POOL_SEQ_KEY,
    REDIS_POOL_LOCK_KEY,
    REDIS_ROOM_USERS_KEY,
)
from schemas.session import Session
from logging_config import get_logger

logger = get_logger(__name__)


class MemorySubscription:
    """Mailbox for one connection, backed by an asyncio.Queue."""

    def __init__(self, connection_id: str, mailboxes: dict):
        self.connection_id = connection_id
        self.queue: asyncio.Queue = asyncio.Queue()
        self._mailboxes = mailboxes
        mailboxes[connection_id] = self.queue

    async def get(self) -> dict:
        return await self.queue.get()

    def close(self):
        if self._mailboxes.get(self.connection_id) is self.queue:
            del self._mailboxes[self.connection_id]


class MemoryBackend:
    """Process-local state: sessions, waiting pools, room registry and mailboxes.

    All operations are synchronous, so when they run on a single event loop each
    one is atomic with respect to the others. Pool access is additionally guarded
    by a lock per category for callers running in threads.
    """

    def __init__(self):
        self._sessions: dict[str, Session] = {}
        self._pools: dict[str, OrderedDict] = {}
        self._pool_locks: dict[str, threading.Lock] = {}
        self._rooms: dict[str, set] = {}
        self._mailboxes: dict[str, asyncio.Queue] = {}
        logger.info("Initializing MemoryBackend")

    # Sessions

    def create_session(self, session: Session):
        self._sessions[session.connection_id] = session
        logger.debug(f"Session {session.connection_id} created")
        return session.connection_id

    def get_session(self, connection_id: str) -> Optional[Session]:
        return self._sessions.get(connection_id)

    def update_session(self, connection_id: str, **fields) -> bool:
        session = self._sessions.get(connection_id)
        if session is None:
            logger.debug(f"Cannot update session {connection_id}: not found")
            return False
        for key, value in fields.items():
            setattr(session, key, value)
        return True

    def delete_session(self, connection_id: str):
        self._sessions.pop(connection_id, None)
        logger.debug(f"Session {connection_id} deleted")
        return True

    def session_count(self) -> int:
        return len(self._sessions)

    # Waiting pools

    def pool_lock(self, category: str):
        return self._pool_locks.setdefault(category, threading.Lock())

    def add_waiter(self, category: str, connection_id: str):
        self._pools.setdefault(category, OrderedDict())[connection_id] = None

    def pop_waiter(self, category: str) -> Optional[str]:
        pool = self._pools.get(category)
        if not pool:
            return None
        connection_id, _ = pool.popitem(last=False)
        return connection_id

    def remove_waiter(self, category: str, connection_id: str) -> bool:
        pool = self._pools.get(category)
        if pool is None or connection_id not in pool:
            return False
        del pool[connection_id]
        return True

    def is_waiting(self, category: str, connection_id: str) -> bool:
        return connection_id in self._pools.get(category, ())

    def waiting_count(self, category: str) -> int:
        return len(self._pools.get(category, ()))

    # Room registry

    def add_room_member(self, room_id: str, connection_id: str):
        self._rooms.setdefault(room_id, set()).add(connection_id)

    def room_members(self, room_id: str) -> set:
        return set(self._rooms.get(room_id, ()))

    def delete_room(self, room_id: str):
        self._rooms.pop(room_id, None)
        return True

    # Mailboxes

    def subscribe(self, connection_id: str) -> MemorySubscription:
        logger.debug(f"Opening mailbox for connection {connection_id}")
        return MemorySubscription(connection_id, self._mailboxes)

    def publish(self, connection_id: str, message: dict) -> bool:
        queue = self._mailboxes.get(connection_id)
        if queue is None:
            logger.debug(f"No mailbox for connection {connection_id}, dropping {message.get('event')}")
            return False
        queue.put_nowait(message)
        return True


class RedisSubscription:
    """Mailbox for one connection, backed by a Redis pub/sub channel."""

    def __init__(self, connection_id: str, pubsub):
        self.connection_id = connection_id
        self.pubsub = pubsub

    def _get_message(self):
        """Blocking call to get next message from Redis pub/sub with timeout."""
        try:
            return self.pubsub.get_message(timeout=1.0, ignore_subscribe_messages=True)
        except Exception as e:
            logger.error(f"Error in pubsub.get_message() for connection {self.connection_id}: {e}", exc_info=True)
            return None

    async def get(self) -> dict:
        loop = asyncio.get_event_loop()
        while True:
            message = await loop.run_in_executor(None, self._get_message)
            if message is None or message.get("type") != "message":
                continue
            try:
                return json.loads(message["data"])
            except json.JSONDecodeError as e:
                logger.error(f"Error parsing mailbox message for connection {self.connection_id}: {e}")

    def close(self):
        try:
            self.pubsub.close()
            logger.debug(f"Closed pub/sub connection for connection {self.connection_id}")
        except Exception as e:
            logger.error(f"Error closing pub/sub for connection {self.connection_id}: {e}")


class RedisBackend:
    """Shared state in Redis so several app instances can pair and relay together."""

    def __init__(self, redis_client=None, pubsub_client=None):
        logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")
        self.redis_client = redis_client or self._connect("Redis client")
        # Separate connection for pub/sub (required by Redis)
        self.pubsub_client = pubsub_client or self._connect("Redis pub/sub client")

    @staticmethod
    def _connect(label: str):
        try:
            client = redis.Redis(host=REDIS_HOST, port=REDIS_PORT, password=REDIS_PASSWORD, decode_responses=True)
            client.ping()
            logger.info(f"{label} connected successfully to {REDIS_HOST}:{REDIS_PORT}")
            return client
        except Exception as e:
            logger.error(f"Failed to connect {label} at {REDIS_HOST}:{REDIS_PORT}: {e}", exc_info=True)
            raise

    # Sessions

    def create_session(self, session: Session):
        key = REDIS_CONN_KEY.format(connection_id=session.connection_id)
        # Skip None values, Redis hashes cannot hold them
        mapping = {k: str(v) for k, v in session.model_dump().items() if v is not None}
        self.redis_client.hset(key, mapping=mapping)
        self.redis_client.expire(key, SESSION_TTL_SECONDS)
        self.redis_client.sadd(REDIS_ONLINE_KEY, session.connection_id)
        logger.debug(f"Session {session.connection_id} created with key: {key}")
        return session.connection_id

    def get_session(self, connection_id: str) -> Optional[Session]:
        data = self.redis_client.hgetall(REDIS_CONN_KEY.format(connection_id=connection_id))
        if not data:
            return None
        return Session(**data)

    def update_session(self, connection_id: str, **fields) -> bool:
        key = REDIS_CONN_KEY.format(connection_id=connection_id)
        if not self.redis_client.exists(key):
            logger.debug(f"Cannot update session {connection_id}: not found")
            return False
        to_set = {k: str(v) for k, v in fields.items() if v is not None}
        to_delete = [k for k, v in fields.items() if v is None]
        pipe = self.redis_client.pipeline()
        if to_set:
            pipe.hset(key, mapping=to_set)
        if to_delete:
            pipe.hdel(key, *to_delete)
        pipe.expire(key, SESSION_TTL_SECONDS)
        pipe.execute()
        return True

    def delete_session(self, connection_id: str):
        deleted = self.redis_client.delete(REDIS_CONN_KEY.format(connection_id=connection_id))
        self.redis_client.srem(REDIS_ONLINE_KEY, connection_id)
        logger.debug(f"Session {connection_id} deleted: {deleted}")
        return True

    def session_count(self) -> int:
        return self.redis_client.scard(REDIS_ONLINE_KEY)

    # Waiting pools

    def pool_lock(self, category: str):
        return self.redis_client.lock(
            REDIS_POOL_LOCK_KEY.format(category=category),
            timeout=POOL_LOCK_TIMEOUT_SECONDS,
            blocking_timeout=POOL_LOCK_TIMEOUT_SECONDS,
        )

    def add_waiter(self, category: str, connection_id: str):
        score = self.redis_client.incr(REDIS_POOL_SEQ_KEY.format(category=category))
        self.redis_client.zadd(REDIS_POOL_KEY.format(category=category), {connection_id: score})

    def pop_waiter(self, category: str) -> Optional[str]:
        popped = self.redis_client.zpopmin(REDIS_POOL_KEY.format(category=category))
        if not popped:
            return None
        connection_id, _ = popped[0]
        return connection_id

    def remove_waiter(self, category: str, connection_id: str) -> bool:
        return bool(self.redis_client.zrem(REDIS_POOL_KEY.format(category=category), connection_id))

    def is_waiting(self, category: str, connection_id: str) -> bool:
        return self.redis_client.zscore(REDIS_POOL_KEY.format(category=category), connection_id) is not None

    def waiting_count(self, category: str) -> int:
        return self.redis_client.zcard(REDIS_POOL_KEY.format(category=category))

    # Room registry

    def add_room_member(self, room_id: str, connection_id: str):
        key = REDIS_ROOM_USERS_KEY.format(room_id=room_id)
        self.redis_client.sadd(key, connection_id)
        self.redis_client.expire(key, SESSION_TTL_SECONDS)

    def room_members(self, room_id: str) -> set:
        return set(self.redis_client.smembers(REDIS_ROOM_USERS_KEY.format(room_id=room_id)))

    def delete_room(self, room_id: str):
        self.redis_client.delete(REDIS_ROOM_USERS_KEY.format(room_id=room_id))
        return True

    # Mailboxes

    def subscribe(self, connection_id: str) -> RedisSubscription:
        channel = REDIS_CONN_CHANNEL.format(connection_id=connection_id)
        logger.debug(f"Subscribing to Redis channel {channel}")
        pubsub = self.pubsub_client.pubsub()
        pubsub.subscribe(channel)
        return RedisSubscription(connection_id, pubsub)

    def publish(self, connection_id: str, message: dict) -> bool:
        channel = REDIS_CONN_CHANNEL.format(connection_id=connection_id)
        subscribers = self.redis_client.publish(channel, json.dumps(message))
        logger.debug(f"Published {message.get('event')} to channel {channel}, {subscribers} subscribers")
        return subscribers > 0


def create_backend(kind: str = STATE_BACKEND):
    if kind == "redis":
        return RedisBackend()
    if kind != "memory":
        raise ValueError(f"Unknown state backend: {kind}")
    return MemoryBackend()
