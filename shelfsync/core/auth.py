"""In-process holder for the signed-in user's session."""

import threading
from typing import Optional

from shelfsync.core.interfaces import AuthProvider, Session
from shelfsync.core.logger import setup_logger

logger = setup_logger(__name__)


class SessionHolder(AuthProvider):
    """Keeps the current session set by the host application's login flow."""

    def __init__(self, session: Optional[Session] = None):
        self._session = session
        self._lock = threading.Lock()

    def get_session(self) -> Optional[Session]:
        with self._lock:
            return self._session

    def sign_in(self, token: str, user_id: Optional[str] = None) -> Session:
        if not token:
            raise ValueError("Session token is required")
        session = Session(token=token, user_id=user_id)
        with self._lock:
            self._session = session
        logger.info(f"Session started for user {user_id or '<anonymous>'}")
        return session

    def sign_out(self) -> None:
        with self._lock:
            had_session = self._session is not None
            self._session = None
        if had_session:
            logger.info("Session cleared")
