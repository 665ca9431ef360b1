"""
CSR Conversation Memory - per-session turn history

Sessions are created lazily and live for the process lifetime.

Bounds:
- max_conversation_length: turns returned by get_context()
- summarize_after: stored turns that trigger compaction; older turns are
  folded into Session.summary and only the most recent
  max_conversation_length turns are kept

Mutation of one session is serialized by its own asyncio.Lock; other
sessions are never blocked.
"""

import asyncio
import inspect
import logging
import re
import time
from typing import Awaitable, Callable, Dict, List, Optional, Union

from .types import Session, Turn

logger = logging.getLogger(__name__)

# summarizer(previous_summary, turns_to_compact) -> new summary
Summarizer = Callable[[str, List[Turn]], Union[str, Awaitable[str]]]

ENTITY_PATTERNS = {
    "orders": re.compile(r"\bORD-[A-Z0-9]+\b", re.IGNORECASE),
    "products": re.compile(r"\bPROD-[A-Z0-9]+\b", re.IGNORECASE),
    "tickets": re.compile(r"\bTKT-[A-Z0-9-]+\b", re.IGNORECASE),
    "refunds": re.compile(r"\bREF-[A-Z0-9-]+\b", re.IGNORECASE),
}

MAX_SUMMARY_CHARS = 2000


def _first_sentence(text: str, limit: int = 120) -> str:
    text = " ".join(text.split())
    match = re.match(r"(.+?[.!?])(\s|$)", text)
    sentence = match.group(1) if match else text
    return sentence if len(sentence) <= limit else sentence[: limit - 3] + "..."


def extractive_summary(previous: str, turns: List[Turn]) -> str:
    """Default summarizer: first sentence of each compacted turn, newest kept."""
    lines = [line for line in previous.splitlines() if line]
    for turn in turns:
        speaker = "Customer" if turn.role == "user" else "Agent"
        lines.append(f"- {speaker}: {_first_sentence(turn.content)}")

    summary = "\n".join(lines)
    while len(summary) > MAX_SUMMARY_CHARS and len(lines) > 1:
        lines.pop(0)
        summary = "\n".join(lines)
    return summary


def extract_entities(text: str) -> Dict[str, List[str]]:
    """Order/product/ticket/refund ids mentioned in text, uppercased."""
    found = {}
    for kind, pattern in ENTITY_PATTERNS.items():
        ids = [m.upper() for m in pattern.findall(text)]
        if ids:
            found[kind] = ids
    return found


class ConversationMemory:
    def __init__(
        self,
        max_conversation_length: int = 20,
        summarize_after: int = 50,
        summarizer: Optional[Summarizer] = None,
        entity_extraction: bool = True,
    ):
        if summarize_after <= max_conversation_length:
            summarize_after = max_conversation_length + 1
            logger.warning(f"summarize_after must exceed max_conversation_length, using {summarize_after}")
        self.max_conversation_length = max_conversation_length
        self.summarize_after = summarize_after
        self.summarizer = summarizer or extractive_summary
        self.entity_extraction = entity_extraction

        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    async def get_or_create(self, session_id: str, user_id: Optional[str] = None) -> Session:
        async with self._lock_for(session_id):
            session = self._sessions.get(session_id)
            if session is None:
                session = self._sessions[session_id] = Session(id=session_id, user_id=user_id)
                logger.debug(f"Session created: {session_id}")
            elif user_id and not session.user_id:
                session.user_id = user_id
            return session

    async def append(self, session_id: str, turn: Turn) -> None:
        async with self._lock_for(session_id):
            session = self._sessions.get(session_id)
            if session is None:
                session = self._sessions[session_id] = Session(id=session_id)

            session.turns.append(turn)
            session.last_active_at = turn.timestamp or time.time()

            if self.entity_extraction:
                for kind, ids in extract_entities(turn.content).items():
                    known = session.entities.setdefault(kind, [])
                    known.extend(i for i in dict.fromkeys(ids) if i not in known)

            if len(session.turns) > self.summarize_after:
                await self._compact(session)

    async def get_context(self, session_id: str, max_turns: Optional[int] = None) -> List[Turn]:
        """Most recent turns for prompting, oldest first."""
        session = self._sessions.get(session_id)
        if session is None:
            return []
        limit = self.max_conversation_length
        if max_turns is not None:
            limit = max(0, min(max_turns, limit))
        if limit == 0:
            return []
        return list(session.turns[-limit:])

    def clear(self, session_id: str) -> bool:
        self._locks.pop(session_id, None)
        return self._sessions.pop(session_id, None) is not None

    def stats(self) -> Dict[str, int]:
        return {
            "sessions": len(self._sessions),
            "turns": sum(len(s.turns) for s in self._sessions.values()),
        }

    async def _compact(self, session: Session) -> None:
        cut = len(session.turns) - self.max_conversation_length
        older, recent = session.turns[:cut], session.turns[cut:]

        summary = self.summarizer(session.summary, older)
        if inspect.isawaitable(summary):
            summary = await summary

        session.summary = summary
        session.turns = recent
        logger.info(f"Session {session.id}: compacted {len(older)} turns into summary")
