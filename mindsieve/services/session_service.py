"""Session and turn bookkeeping.

Sessions are server-owned: the browser holds the id and a random key, and
a pair that does not match the stored session is replaced by a new one.
Ownership checks are soft; mismatches between the server session and a
client-supplied session id are logged, not rejected.
"""

import logging
import secrets
import uuid
from dataclasses import dataclass
from typing import Optional

from mindsieve.models import Session, Turn, now_ms
from mindsieve.models.base import drop_none
from mindsieve.services.document_store import DocumentStore

logger = logging.getLogger(__name__)

SESSION_KEY_BYTES = 24  # 48 hex chars


def new_session_key() -> str:
    return secrets.token_hex(SESSION_KEY_BYTES)


@dataclass
class SessionState:
    """The verified session for one request."""
    session: Session
    anon_id: str
    created: bool = False
    anon_created: bool = False

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def session_key(self) -> str:
        return self.session.session_key


class SessionService:
    """Creates, verifies and touches sessions; records turns."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def _load(self, session_id: str) -> Optional[Session]:
        data = await self.store.get(Session.COLLECTION, session_id)
        return Session.from_dict(data) if data else None

    async def ensure_session(
        self,
        session_id: Optional[str] = None,
        session_key: Optional[str] = None,
        anon_id: Optional[str] = None,
    ) -> SessionState:
        """Return a valid session for the caller, creating one if needed.

        Args:
            session_id: Session id from header or cookie
            session_key: Session key from header or cookie
            anon_id: Anonymous browser id from cookie

        Returns:
            SessionState flagging whether new cookies must be set
        """
        anon_created = not anon_id
        anon_id = anon_id or str(uuid.uuid4())

        if session_id and session_key:
            existing = await self._load(session_id)
            if existing is not None and secrets.compare_digest(existing.session_key, session_key):
                existing.updated_at = now_ms()
                await self.store.set(
                    Session.COLLECTION,
                    session_id,
                    {"updatedAt": existing.updated_at},
                    merge=True,
                )
                return SessionState(session=existing, anon_id=anon_id, anon_created=anon_created)
            logger.warning(f"Session {session_id} missing or key mismatch, issuing a new session")

        session = Session(
            session_id=str(uuid.uuid4()),
            session_key=new_session_key(),
            anon_id=anon_id,
        )
        await self.store.set(Session.COLLECTION, session.session_id, session.to_dict())
        logger.info(f"Created session {session.session_id}")
        return SessionState(session=session, anon_id=anon_id, created=True, anon_created=anon_created)

    def check_ownership(self, state: SessionState, client_session_id: Optional[str], where: str) -> bool:
        """Soft check that the client's session id is the server's."""
        if client_session_id and client_session_id != state.session_id:
            logger.warning(
                f"[{where}] session mismatch: server={state.session_id} client={client_session_id}"
            )
            return False
        return True

    async def record_turn(
        self,
        session_id: str,
        query: str,
        turn_id: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> str:
        """Create or update a turn; ``createdAt`` is only set on creation.

        Returns:
            The turn id
        """
        turn_id = turn_id or uuid.uuid4().hex
        now = now_ms()
        turn = Turn(
            id=turn_id,
            session_id=session_id,
            user_query=query,
            owner_id=owner_id or None,
            created_at=now,
            updated_at=now,
        )
        data = drop_none(turn.to_dict())

        existing = await self.store.get(Turn.COLLECTION, turn_id)
        if existing is not None:
            for key in Turn.CREATE_ONLY:
                data.pop(key, None)
        await self.store.set(Turn.COLLECTION, turn_id, data, merge=True)
        return turn_id
