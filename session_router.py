from datetime import datetime
from typing import Any, Optional

import redis
from pydantic import ValidationError

from constants import CHAT_CATEGORIES, DEFAULT_CATEGORY, RELAY_EVENTS
from matchmaker import Matchmaker, Pairing
from schemas.events import JoinCategoryRequest, NextRequest, RelayRequest, OutboundEvent
from schemas.session import Session
from logging_config import get_logger

logger = get_logger(__name__)


class SessionRouter:
    """Owns per-connection session fields and routes room-scoped traffic.

    Every operation is best effort: misuse and stale state are logged and
    ignored, nothing is ever reported back to the client as an error.
    """

    def __init__(self, backend, matchmaker: Optional[Matchmaker] = None,
                 categories=CHAT_CATEGORIES, default_category: str = DEFAULT_CATEGORY):
        self.backend = backend
        self.matchmaker = matchmaker or Matchmaker(backend)
        self.categories = tuple(categories)
        self.default_category = default_category

    def emit(self, connection_id: str, event: str, data: Any = None) -> bool:
        message = OutboundEvent(event=event, data=data).model_dump()
        return self.backend.publish(connection_id, message)

    def connect(self, connection_id: str) -> Session:
        session = Session(connection_id=connection_id, connected_at=datetime.now().isoformat())
        self.backend.create_session(session)
        logger.info(f"Connection {connection_id} registered")
        return session

    def join_category(self, connection_id: str, category: Optional[str] = None) -> Optional[str]:
        category = category or self.default_category
        session = self.backend.get_session(connection_id)
        if session is None:
            logger.warning(f"Ignoring join from unknown connection {connection_id}")
            return None
        if category not in self.categories:
            logger.warning(f"Ignoring join to unknown category {category!r} from {connection_id}")
            return None
        if session.room:
            logger.warning(f"Ignoring join from {connection_id}: already paired in room {session.room}")
            return None
        if any(self.backend.is_waiting(c, connection_id) for c in self.categories):
            logger.warning(f"Ignoring join from {connection_id}: already waiting")
            return None
        return self._pair_or_wait(connection_id, category)

    def next(self, connection_id: str, category: Optional[str] = None) -> Optional[str]:
        session = self.backend.get_session(connection_id)
        if session is None:
            logger.warning(f"Ignoring next from unknown connection {connection_id}")
            return None
        category = category or session.category or self.default_category
        if category not in self.categories:
            logger.warning(f"Ignoring next to unknown category {category!r} from {connection_id}")
            return None

        if session.room:
            self._dissolve_room(connection_id, session.room)
        if session.category and session.category != category:
            self.matchmaker.cancel_wait(connection_id, session.category)
        self.matchmaker.cancel_wait(connection_id, category)
        return self._pair_or_wait(connection_id, category)

    def leave(self, connection_id: str):
        session = self.backend.get_session(connection_id)
        if session is None:
            return
        if session.room:
            self._dissolve_room(connection_id, session.room)
        if session.category:
            self.matchmaker.cancel_wait(connection_id, session.category)
        self.backend.update_session(connection_id, category=None, room=None)
        logger.info(f"Connection {connection_id} is idle")

    def relay(self, connection_id: str, event: str, room_id: str, payload: Any) -> bool:
        session = self.backend.get_session(connection_id)
        if session is None or session.room != room_id:
            logger.debug(f"Dropping {event} from {connection_id}: not a member of room {room_id}")
            return False

        delivered = False
        for peer in self.backend.room_members(room_id) - {connection_id}:
            delivered = self.emit(peer, event, payload) or delivered
        logger.debug(f"Relayed {event} from {connection_id} in room {room_id}: delivered={delivered}")
        return delivered

    def disconnect(self, connection_id: str):
        session = self.backend.get_session(connection_id)
        if session is None:
            return
        try:
            if session.category:
                self.matchmaker.cancel_wait(connection_id, session.category)
            if session.room:
                self._dissolve_room(connection_id, session.room)
        finally:
            self.backend.delete_session(connection_id)
        logger.info(f"Connection {connection_id} disconnected")

    def handle_event(self, connection_id: str, event: str, data: Optional[dict] = None):
        data = data or {}
        try:
            if event == "join-category":
                request = JoinCategoryRequest(**data)
                self.join_category(connection_id, request.category)
            elif event == "next":
                request = NextRequest(**data)
                self.next(connection_id, request.category)
            elif event == "leave":
                self.leave(connection_id)
            elif event in RELAY_EVENTS:
                request = RelayRequest(**data)
                self.relay(connection_id, event, request.room, request.payload)
            else:
                logger.warning(f"Ignoring unknown event {event!r} from {connection_id}")
        except ValidationError as e:
            logger.warning(f"Ignoring malformed {event!r} from {connection_id}: {e.error_count()} errors")
        except redis.RedisError as e:
            logger.error(f"State backend error handling {event!r} from {connection_id}: {e}", exc_info=True)

    def _pair_or_wait(self, connection_id: str, category: str) -> Optional[str]:
        self.backend.update_session(connection_id, category=category, room=None)
        while True:
            pairing = self.matchmaker.request_match(connection_id, category)
            if pairing is None:
                return None
            if self._open_room(connection_id, pairing):
                break
            logger.warning(f"Waiter {pairing.peer} disconnected before room {pairing.room_id} opened, retrying")

        for member in (connection_id, pairing.peer):
            self.emit(member, "ready", {"room": pairing.room_id})
        return pairing.room_id

    def _open_room(self, connection_id: str, pairing: Pairing) -> bool:
        # The peer may disconnect between leaving the pool and joining the room
        if not self.backend.update_session(pairing.peer, room=pairing.room_id):
            return False
        self.backend.update_session(connection_id, room=pairing.room_id)
        for member in (connection_id, pairing.peer):
            self.backend.add_room_member(pairing.room_id, member)
        if self.backend.get_session(pairing.peer) is None:
            self.backend.delete_room(pairing.room_id)
            self.backend.update_session(connection_id, room=None)
            return False
        return True

    def _dissolve_room(self, connection_id: str, room_id: str):
        members = self.backend.room_members(room_id)
        self.backend.delete_room(room_id)
        self.backend.update_session(connection_id, room=None)
        for peer in members - {connection_id}:
            peer_session = self.backend.get_session(peer)
            if peer_session is not None and peer_session.room == room_id:
                self.backend.update_session(peer, room=None)
            self.emit(peer, "peer-left", {})
        logger.info(f"Room {room_id} dissolved by {connection_id}")
