"""
End-of-session summarization.

Ending a session is idempotent: once ``ended`` is set, repeated calls
return the stored state without another LLM call unless ``force`` is
passed. Sessions without any messages get a fixed minimal summary.
"""

from typing import Dict, Any, List, Optional
from datetime import datetime
import hashlib
import logging

from .config import get_settings
from .db import Database
from .errors import NotFoundError, UpstreamError
from .llm_client import get_llm_client
from .prompts import build_summary_messages
from .summary import decode_summary, encode_summary, has_markers, minimal_summary
from .utils import determine_language, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 2000


def build_transcript(messages: List[Dict[str, Any]], max_chars: int) -> str:
    """
    Role-tagged transcript in chronological order.

    Lines are taken from the newest backwards until max_chars would be
    exceeded, so an over-long session keeps its latest exchanges.
    """
    lines: List[str] = []
    total = 0
    for message in reversed(messages):
        content = (message.get("content") or "").strip()
        if not content:
            continue
        role = "User" if message.get("is_client") else "Assistant"
        line = f"{role}: {content}"
        if total + len(line) + 1 > max_chars:
            break
        lines.append(line)
        total += len(line) + 1
    return "\n".join(reversed(lines))


def summary_etag(session_id: Any, content: str) -> str:
    digest = hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]
    return f'"sum_{session_id}_{digest}"'


class Summarizer:
    def __init__(self, db: Database):
        self.db = db
        self.settings = get_settings()
        self.llm_client = get_llm_client()

    async def _load_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.fetchone(
            """
            SELECT id, main_session_id, "number", language, created, ended, summary
            FROM session
            WHERE id = $1
            """,
            session_id
        )

    async def end_session(
        self,
        session_id: str,
        force: bool = False,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Mark the session ended and store its two-block summary.

        Raises:
            NotFoundError: unknown session
            UpstreamError: the summarizer LLM returned nothing; nothing is written
        """
        session = await self._load_session(session_id)
        if not session:
            raise NotFoundError("Session not found", code="session_not_found")

        if session.get("ended") and not force:
            logger.info(f"Session {session_id} already ended; skipping summarization")
            return {
                "id": session["id"],
                "ended": session["ended"],
                "message": "already_ended",
            }

        messages = await self.db.fetch(
            """
            SELECT created, language, is_client, content
            FROM message
            WHERE session_id = $1
            ORDER BY created ASC
            """,
            session_id
        )
        last_client_language = next(
            (m.get("language") for m in reversed(messages) if m.get("is_client")),
            None
        )
        language = determine_language(
            [session.get("language"), last_client_language],
            self.settings.default_language
        )

        ended_at = now or utcnow()
        transcript = build_transcript(messages, self.settings.transcript_max_chars)

        if not transcript:
            summary_text = encode_summary(minimal_summary(language))
            logger.info(f"Session {session_id} has no messages; storing minimal summary")
        else:
            started_at = parse_timestamp(session.get("created")) or ended_at
            summary_text = await self.llm_client.complete(
                build_summary_messages(
                    language=language,
                    session_number=session.get("number") or 1,
                    started_at=started_at,
                    ended_at=ended_at,
                    transcript=transcript
                ),
                temperature=0,
                top_p=1
            )
            if not summary_text:
                raise UpstreamError("Summary generation failed", code="summary_failed")
            if not has_markers(summary_text):
                logger.warning(f"Summary for session {session_id} has no block markers; storing as public text")

        async with self.db.transaction() as conn:
            row = await conn.fetchrow(
                """
                UPDATE session
                SET ended = $2, summary = $3
                WHERE id = $1
                RETURNING id, ended
                """,
                session_id,
                ended_at,
                summary_text
            )

        logger.info(f"Ended session {session_id} ({len(summary_text)} summary chars)")
        return {
            "id": row["id"],
            "ended": row["ended"],
            "summary": summary_text,
            "summary_preview": summary_text[:PREVIEW_CHARS],
        }

    async def get_summary(self, session_id: str, include_coach: bool = False) -> Dict[str, Any]:
        """
        Decoded summary for display; summarizes on the spot when none is stored yet.
        """
        session = await self._load_session(session_id)
        if not session:
            raise NotFoundError("Session not found", code="session_not_found")

        if not session.get("summary"):
            try:
                await self.end_session(session_id)
            except UpstreamError as e:
                logger.warning(f"On-demand summary for session {session_id} failed: {e}")
            session = await self._load_session(session_id)

        summary = decode_summary(session.get("summary") if session else None)
        if summary is None:
            raise NotFoundError("Summary not found", code="summary_not_found")

        combined = summary.combined(include_coach)
        return {
            "id": session["id"],
            "mainSessionId": session.get("main_session_id"),
            "sessionNumber": session.get("number"),
            "created": session.get("created"),
            "ended": session.get("ended"),
            "summary_markdown": summary.public_text,
            "coach_markdown": summary.coach_text if include_coach else None,
            "combined": combined,
            "etag": summary_etag(session["id"], combined),
        }
