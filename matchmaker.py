from typing import NamedTuple, Optional

from logging_config import get_logger

logger = get_logger(__name__)


class Pairing(NamedTuple):
    room_id: str
    peer: str


def make_room_id(connection_id: str, peer: str) -> str:
    # Order dependent; connection ids are uuid4 so the pair is unique while both live
    return f"{connection_id}-{peer}"


class Matchmaker:
    """Pairs a connection with the oldest waiter of its category, or parks it in the pool."""

    def __init__(self, backend):
        self.backend = backend

    def request_match(self, connection_id: str, category: str) -> Optional[Pairing]:
        """Pop a live waiter and pair with it, or enqueue ``connection_id``.

        Pop and pair happen under the category's pool lock, so a waiter is only
        ever handed to one requester. The caller must have taken the connection
        out of any pool and room beforehand.
        """
        with self.backend.pool_lock(category):
            while True:
                peer = self.backend.pop_waiter(category)
                if peer is None:
                    self.backend.add_waiter(category, connection_id)
                    logger.info(f"Connection {connection_id} waiting in {category} pool")
                    return None
                if self._is_stale(peer, connection_id):
                    logger.warning(f"Discarding stale waiter {peer} from {category} pool")
                    continue
                room_id = make_room_id(connection_id, peer)
                logger.info(f"Paired {connection_id} with {peer} in {category} room {room_id}")
                return Pairing(room_id=room_id, peer=peer)

    def _is_stale(self, peer: str, connection_id: str) -> bool:
        if peer == connection_id:
            return True
        session = self.backend.get_session(peer)
        return session is None or session.room is not None

    def cancel_wait(self, connection_id: str, category: str) -> bool:
        with self.backend.pool_lock(category):
            removed = self.backend.remove_waiter(category, connection_id)
        if removed:
            logger.debug(f"Connection {connection_id} removed from {category} pool")
        return removed

    def waiting_count(self, category: str) -> int:
        return self.backend.waiting_count(category)
