"""
Session Manager - main-session grouping, numbering and administration

Every client owns at most one active main session, created lazily with the
client's first coaching session; its ``created`` timestamp anchors the
trial window. Sessions are numbered 1..N inside their main session:
- the main-session row is locked for the creating transaction, so two
  concurrent creations for the same client take numbers one after another
- the insert still runs behind a savepoint and is retried once with a
  recomputed number if the unique index rejects it; a second violation
  propagates
"""

from typing import Dict, Any, Optional
from datetime import datetime
import base64
import logging

import asyncpg

from .config import get_settings
from .db import Database
from .entitlement import EntitlementEvaluator, is_trial_active
from .errors import NotFoundError, PaymentRequiredError
from .llm_client import get_llm_client
from .prompts import build_opener_messages, fallback_opener
from .speech_client import AUDIO_MIME, get_speech_client
from .summary import decode_summary
from .utils import determine_language, utcnow

logger = logging.getLogger(__name__)

INTRO_INTENTS = ("kaygi", "zihin", "deneme", "sohbet")
DEFAULT_INTENT = "sohbet"

PAYMENT_REQUIRED_MESSAGE = (
    "Your subscription does not appear to be active. "
    "Please subscribe or renew your subscription to continue."
)

INSERT_SESSION_SQL = """
    INSERT INTO session (client_id, therapist_id, main_session_id, "number", language)
    VALUES ($1, $2, $3, $4, $5)
    RETURNING id, created, "number", main_session_id, language
"""


def normalize_intent(intent: Optional[str]) -> str:
    value = (intent or "").strip().lower()
    return value if value in INTRO_INTENTS else DEFAULT_INTENT


class SessionManager:
    def __init__(self, db: Database, entitlements: Optional[EntitlementEvaluator] = None):
        self.db = db
        self.settings = get_settings()
        self.entitlements = entitlements or EntitlementEvaluator(db)
        self.llm_client = get_llm_client()
        self.speech_client = get_speech_client()

    async def create_session(
        self,
        client_id: str,
        therapist_id: str,
        intent: Optional[str] = None,
        language: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Create the next numbered session for a client.

        Raises:
            NotFoundError: unknown client or therapist
            PaymentRequiredError: trial over and no active entitlement
        """
        client = await self.db.fetchone(
            "SELECT id, username, language FROM client WHERE id = $1",
            client_id
        )
        if not client:
            raise NotFoundError("Client not found", code="client_not_found")

        therapist = await self.db.fetchone(
            "SELECT id, name, voice_id FROM therapist WHERE id = $1",
            therapist_id
        )
        if not therapist:
            raise NotFoundError("Therapist not found", code="therapist_not_found")

        access = await self.entitlements.evaluate(client, now=now)
        if not access.allowed:
            raise PaymentRequiredError(PAYMENT_REQUIRED_MESSAGE)

        session_language = determine_language(
            [language, client.get("language")],
            self.settings.default_language
        )

        async with self.db.transaction() as conn:
            main_session_id = await conn.fetchval(
                "SELECT get_or_create_main_session($1)",
                client_id
            )
            if not main_session_id:
                raise RuntimeError("main_session_not_found")

            await conn.execute(
                "SELECT id FROM main_session WHERE id = $1 FOR UPDATE",
                main_session_id
            )
            row = await self._insert_numbered_session(
                conn,
                client_id=client_id,
                therapist_id=therapist_id,
                main_session_id=main_session_id,
                language=session_language
            )

        number = row["number"]
        logger.info(f"Created session {row['id']} #{number} for client {client_id}")

        intent_key = normalize_intent(intent)
        intro_url = None
        opening: Dict[str, Any] = {"text": None, "audioBase64": None, "audioMime": None}
        if number == 1:
            intro_url = self.intro_url(session_language, intent_key, therapist["id"])
        else:
            opening = await self.build_opening(
                main_session_id=main_session_id,
                number=number,
                language=session_language,
                therapist=therapist
            )

        return {
            "id": row["id"],
            "created": row["created"],
            "number": number,
            "mainSessionId": row["main_session_id"],
            "language": session_language,
            "therapyIntent": intent_key,
            "access": access.decision.value,
            "trial": access.trial_payload(),
            "introUrl": intro_url,
            "openingText": opening["text"],
            "openingAudioBase64": opening["audioBase64"],
            "openingAudioMime": opening["audioMime"],
        }

    async def _insert_numbered_session(
        self,
        conn,
        client_id: str,
        therapist_id: str,
        main_session_id: Any,
        language: str
    ) -> Dict[str, Any]:
        number = await conn.fetchval("SELECT next_session_number($1)", main_session_id) or 1
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    INSERT_SESSION_SQL,
                    client_id, therapist_id, main_session_id, number, language
                )
        except asyncpg.UniqueViolationError:
            retry_number = await conn.fetchval("SELECT next_session_number($1)", main_session_id) or number + 1
            logger.warning(
                f"Session number {number} taken in main session {main_session_id}; retrying with {retry_number}"
            )
            row = await conn.fetchrow(
                INSERT_SESSION_SQL,
                client_id, therapist_id, main_session_id, retry_number, language
            )
        return dict(row)

    def intro_url(self, language: str, intent: str, therapist_id: Any) -> str:
        base = self.settings.static_base_url.rstrip("/")
        return f"{base}/voices/intro/{language}/{intent}/{therapist_id}.mp3"

    async def build_opening(
        self,
        main_session_id: Any,
        number: int,
        language: str,
        therapist: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Short spoken opener for a follow-up session, grounded in recent summaries.

        Never raises: any failure yields a canned opener without audio.
        """
        try:
            rows = await self.db.fetch(
                """
                SELECT "number", summary
                FROM session
                WHERE main_session_id = $1
                  AND "number" < $2
                  AND summary IS NOT NULL
                  AND deleted = FALSE
                ORDER BY "number" DESC
                LIMIT $3
                """,
                main_session_id,
                number,
                self.settings.opener_past_summaries_limit
            )
            summaries = []
            for row in rows:
                decoded = decode_summary(row.get("summary"))
                if decoded:
                    summaries.append({"number": row["number"], "summary_text": decoded.public_text})

            text = None
            if summaries:
                text = await self.llm_client.complete(
                    build_opener_messages(
                        language,
                        therapist.get("name"),
                        summaries,
                        self.settings.summary_clamp_chars
                    ),
                    temperature=0.3,
                    max_tokens=200
                )
            if not text:
                text = fallback_opener(language)

            audio = None
            if therapist.get("voice_id"):
                audio = await self.speech_client.synthesize(text, therapist["voice_id"])

            return {
                "text": text,
                "audioBase64": base64.b64encode(audio).decode("ascii") if audio else None,
                "audioMime": AUDIO_MIME if audio else None,
            }
        except Exception as e:
            logger.error(f"Opening generation failed for main session {main_session_id}: {e}")
            return {"text": fallback_opener(language), "audioBase64": None, "audioMime": None}

    async def list_sessions(
        self,
        client_id: str,
        status: Optional[str] = None,
        sort: str = "created_desc",
        limit: int = 50,
        offset: int = 0
    ) -> Dict[str, Any]:
        limit = min(max(limit, 1), 100)
        offset = max(offset, 0)
        order = "ASC" if sort == "created_asc" else "DESC"

        where = ["s.client_id = $1", "s.deleted = FALSE"]
        if status == "active":
            where.append("s.ended IS NULL")
        elif status == "ended":
            where.append("s.ended IS NOT NULL")

        rows = await self.db.fetch(
            f"""
            SELECT s.id, s.created, s.ended, s."number", s.language,
                   s.therapist_id, t.name AS therapist_name, t.gender AS therapist_gender,
                   COUNT(*) OVER() AS total
            FROM session s
            LEFT JOIN therapist t ON t.id = s.therapist_id
            WHERE {" AND ".join(where)}
            ORDER BY s.created {order}
            LIMIT $2 OFFSET $3
            """,
            client_id,
            limit,
            offset
        )
        total = int(rows[0]["total"]) if rows else 0
        return {
            "items": [
                {
                    "id": r["id"],
                    "created": r["created"],
                    "ended": r["ended"],
                    "number": r["number"],
                    "language": r.get("language"),
                    "therapistId": r["therapist_id"],
                    "therapistName": r.get("therapist_name"),
                    "therapistGender": r.get("therapist_gender"),
                }
                for r in rows
            ],
            "paging": {"limit": limit, "offset": offset, "total": total},
        }

    async def soft_delete_all(self, client_id: str) -> Dict[str, Any]:
        """Flag every session of the client as deleted; the main session (trial anchor) stays."""
        async with self.db.transaction() as conn:
            client = await conn.fetchrow(
                "SELECT id, username FROM client WHERE id = $1",
                client_id
            )
            if not client:
                raise NotFoundError("Client not found", code="client_not_found")
            deleted = await conn.fetchval(
                """
                WITH flagged AS (
                    UPDATE session SET deleted = TRUE
                    WHERE client_id = $1 AND deleted = FALSE
                    RETURNING 1
                )
                SELECT count(*) FROM flagged
                """,
                client_id
            )

        logger.info(f"Soft-deleted {deleted} sessions for client {client_id}")
        return {
            "clientId": client_id,
            "username": client["username"],
            "mainSessionsDeleted": 0,
            "sessionsDeleted": int(deleted or 0),
        }

    async def mock_expire_trial(self, client_id: str, days: int = 8) -> Dict[str, Any]:
        """
        Test-only: drop all payments and move the main session back ``days`` days.
        """
        days = max(1, int(days))
        async with self.db.transaction() as conn:
            exists = await conn.fetchval("SELECT 1 FROM client WHERE id = $1", client_id)
            if not exists:
                raise NotFoundError("Client not found", code="client_not_found")

            deleted_payments = await conn.fetchval(
                """
                WITH removed AS (
                    DELETE FROM client_payment WHERE client_id = $1 RETURNING 1
                )
                SELECT count(*) FROM removed
                """,
                client_id
            )

            row = await conn.fetchrow(
                """
                UPDATE main_session
                SET created = NOW() - make_interval(days => $2)
                WHERE client_id = $1 AND deleted = FALSE
                RETURNING id, created
                """,
                client_id,
                days
            )
            if row is None:
                row = await conn.fetchrow(
                    """
                    INSERT INTO main_session (client_id, created)
                    VALUES ($1, NOW() - make_interval(days => $2))
                    RETURNING id, created
                    """,
                    client_id,
                    days
                )

        created = row["created"]
        return {
            "clientId": client_id,
            "mainSessionId": row["id"],
            "mainSessionCreated": created,
            "shiftedDays": days,
            "deletedPayments": int(deleted_payments or 0),
            "trial": {"active": is_trial_active(created, utcnow(), self.settings.trial_days)},
        }
