"""
Conversation turn pipeline: audio in, coached reply (text + audio) out.

Stages:
1. STT on the uploaded clip; an empty or failed transcript short-circuits
   to a canned "please repeat" reply
2. persist the user message, then assemble the prompt (persona, profile,
   earlier-session summaries, bounded history)
3. LLM reply; persisted in the same transaction as the user message, so a
   failed completion leaves neither row behind
4. TTS on the reply, after commit
"""

from dataclasses import dataclass
from typing import Dict, Any, List, Optional
import base64
import logging
import time

from .config import get_settings
from .db import Database
from .errors import NotFoundError, UpstreamError
from .llm_client import get_llm_client
from .prompts import build_developer_message, build_past_summaries_block, build_system_prompt
from .speech_client import AUDIO_MIME, get_speech_client
from .summary import decode_summary
from .utils import determine_language, fallback_utterance, gender_label

logger = logging.getLogger(__name__)

INSERT_MESSAGE_SQL = """
    INSERT INTO message (session_id, language, is_client, content)
    VALUES ($1, $2, $3, $4)
    RETURNING id, created
"""


@dataclass
class TurnResult:
    session_id: str
    user_message_id: Optional[Any]
    ai_message_id: Any
    transcript: str
    ai_text: str
    audio: Optional[bytes]
    fallback: bool = False

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "sessionId": self.session_id,
            "userMessageId": self.user_message_id,
            "aiMessageId": self.ai_message_id,
            "transcript": self.transcript,
            "aiText": self.ai_text,
            "audioBase64": base64.b64encode(self.audio).decode("ascii") if self.audio else None,
            "audioMime": AUDIO_MIME if self.audio else None,
        }
        if self.fallback:
            payload["fallback"] = True
        return payload


def bound_history(
    messages: List[Dict[str, Any]],
    max_messages: int,
    max_chars: int
) -> List[Dict[str, str]]:
    """
    Most recent messages first-to-last, capped by count and total characters.

    The newest message is always kept, even when it alone exceeds max_chars.
    """
    tail = messages[-max_messages:] if max_messages > 0 else []
    kept: List[Dict[str, str]] = []
    total = 0
    for message in reversed(tail):
        content = message.get("content") or ""
        total += len(content)
        if kept and total > max_chars:
            break
        kept.append({
            "role": "user" if message.get("is_client") else "assistant",
            "content": content,
        })
    kept.reverse()
    return kept


def assemble_prompt(
    system_prompt: str,
    developer_message: str,
    past_summaries_block: str,
    history: List[Dict[str, str]]
) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "system", "content": developer_message},
        {"role": "system", "content": past_summaries_block},
        *history,
    ]


class ConversationOrchestrator:
    def __init__(self, db: Database):
        self.db = db
        self.settings = get_settings()
        self.llm_client = get_llm_client()
        self.speech_client = get_speech_client()

    async def _load_session_meta(self, session_id: str) -> Optional[Dict[str, Any]]:
        return await self.db.fetchone(
            """
            SELECT s.id, s.client_id, s.main_session_id, s."number", s.language,
                   c.username, c.gender, c.language AS client_language,
                   t.name AS therapist_name, t.voice_id
            FROM session s
            JOIN client c ON c.id = s.client_id
            LEFT JOIN therapist t ON t.id = s.therapist_id
            WHERE s.id = $1
            """,
            session_id
        )

    def _voice_for(self, meta: Dict[str, Any]) -> str:
        return meta.get("voice_id") or self.settings.default_voice_id

    async def handle_audio_turn(
        self,
        session_id: str,
        audio: bytes,
        filename: str = "audio.ogg",
        content_type: str = "audio/ogg",
        language: Optional[str] = None
    ) -> TurnResult:
        """
        Run one spoken turn.

        Raises:
            NotFoundError: unknown session
            UpstreamError: LLM produced no reply (nothing persisted), or TTS
                failed while TTS failures are configured as fatal
        """
        meta = await self._load_session_meta(session_id)
        if not meta:
            raise NotFoundError("Session not found", code="session_not_found")

        turn_language = determine_language(
            [language, meta.get("language"), meta.get("client_language")],
            self.settings.default_language
        )

        started = time.monotonic()
        transcript = await self.speech_client.transcribe(
            audio,
            filename=filename,
            content_type=content_type,
            language=turn_language
        )
        logger.info(f"[turn {session_id}] stt={int((time.monotonic() - started) * 1000)}ms")

        if not transcript:
            return await self._fallback_turn(meta, turn_language)

        async with self.db.transaction() as conn:
            user_row = await conn.fetchrow(
                INSERT_MESSAGE_SQL,
                session_id, turn_language, True, transcript
            )

            messages = await conn.fetch(
                """
                SELECT created, language, is_client, content
                FROM message
                WHERE session_id = $1
                ORDER BY created ASC
                """,
                session_id
            )
            past_rows = await conn.fetch(
                """
                SELECT "number", created, summary
                FROM session
                WHERE main_session_id = $1
                  AND "number" < $2
                  AND summary IS NOT NULL
                  AND deleted = FALSE
                ORDER BY "number" ASC
                LIMIT $3
                """,
                meta["main_session_id"],
                meta["number"],
                self.settings.turn_past_summaries_limit
            )

            prompt = self.build_prompt(meta, messages, past_rows, turn_language)

            llm_started = time.monotonic()
            ai_text = await self.llm_client.complete(prompt, temperature=0.2, top_p=0.8)
            logger.info(f"[turn {session_id}] llm={int((time.monotonic() - llm_started) * 1000)}ms")
            if not ai_text:
                raise UpstreamError("Reply generation failed", code="llm_failed")

            ai_row = await conn.fetchrow(
                INSERT_MESSAGE_SQL,
                session_id, turn_language, False, ai_text
            )

        tts_started = time.monotonic()
        reply_audio = await self.speech_client.synthesize(ai_text, self._voice_for(meta))
        logger.info(f"[turn {session_id}] tts={int((time.monotonic() - tts_started) * 1000)}ms")
        if reply_audio is None and self.settings.tts_failure_fatal:
            raise UpstreamError("Speech synthesis failed", code="tts_failed")

        logger.info(f"[turn {session_id}] total={int((time.monotonic() - started) * 1000)}ms")
        return TurnResult(
            session_id=session_id,
            user_message_id=user_row["id"],
            ai_message_id=ai_row["id"],
            transcript=transcript,
            ai_text=ai_text,
            audio=reply_audio,
        )

    def build_prompt(
        self,
        meta: Dict[str, Any],
        messages: List[Dict[str, Any]],
        past_rows: List[Dict[str, Any]],
        turn_language: str
    ) -> List[Dict[str, str]]:
        first_language = messages[0].get("language") if messages else None
        developer = build_developer_message({
            "username": meta.get("username"),
            "gender": gender_label(meta.get("gender")),
            "therapist_name": meta.get("therapist_name"),
            "language": determine_language([first_language, turn_language], turn_language),
        })

        summaries = []
        for row in past_rows:
            decoded = decode_summary(row.get("summary"))
            if decoded:
                summaries.append({
                    "number": row["number"],
                    "created": row.get("created"),
                    "summary_text": decoded.public_text,
                })

        return assemble_prompt(
            build_system_prompt(turn_language),
            developer,
            build_past_summaries_block(summaries, self.settings.summary_clamp_chars),
            bound_history(messages, self.settings.history_max_messages, self.settings.history_max_chars)
        )

    async def _fallback_turn(self, meta: Dict[str, Any], language: str) -> TurnResult:
        """Nothing was heard: store and speak a canned 'please repeat' reply."""
        session_id = str(meta["id"])
        ai_text = fallback_utterance(language)
        logger.info(f"[turn {session_id}] empty transcript; using fallback reply")

        async with self.db.transaction() as conn:
            ai_row = await conn.fetchrow(
                INSERT_MESSAGE_SQL,
                session_id, language, False, ai_text
            )

        reply_audio = await self.speech_client.synthesize(ai_text, self._voice_for(meta))
        if reply_audio is None:
            logger.warning(f"[turn {session_id}] fallback TTS failed; returning text only")

        return TurnResult(
            session_id=session_id,
            user_message_id=None,
            ai_message_id=ai_row["id"],
            transcript="",
            ai_text=ai_text,
            audio=reply_audio,
            fallback=True,
        )
