import pytest

from backend import MemoryBackend
from matchmaker import Matchmaker
from session_router import SessionRouter


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def matchmaker(backend):
    return Matchmaker(backend)


@pytest.fixture
def router(backend, matchmaker):
    return SessionRouter(backend, matchmaker, categories=("video", "text"), default_category="video")


@pytest.fixture
def connect(backend, router):
    """Register a connection with an open mailbox and return the mailbox."""
    mailboxes = {}

    def _connect(connection_id):
        mailboxes[connection_id] = backend.subscribe(connection_id)
        router.connect(connection_id)
        return mailboxes[connection_id]

    return _connect
