"""
Client registration and therapist catalog lookups.
"""

from typing import Dict, Any, List, Optional
from uuid import uuid4
import logging

from .config import get_settings
from .db import Database
from .errors import NotFoundError, ValidationError
from .utils import gender_label, normalize_language, parse_gender

logger = logging.getLogger(__name__)


class ClientDirectory:
    def __init__(self, db: Database):
        self.db = db
        self.settings = get_settings()

    async def upsert_client(
        self,
        client_id: Optional[str] = None,
        username: Optional[str] = None,
        gender: Any = None,
        language: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Create or update a client by id.

        A missing id gets a generated one; a missing username is generated on
        insert and left untouched on update.
        """
        cid = (client_id or "").strip() or str(uuid4())

        gender_code = 0
        if gender is not None and gender != "":
            gender_code = parse_gender(gender)
            if gender_code is None:
                raise ValidationError("gender must be 0|1|2 or unknown|male|female")

        explicit_username = (username or "").strip() or None
        lang = normalize_language(language) or self.settings.default_language

        row = await self.db.fetchone(
            """
            INSERT INTO client (id, username, gender, language)
            VALUES ($1, COALESCE($2, 'user-' || substr(md5(random()::text), 1, 8)), $3, $4)
            ON CONFLICT (id) DO UPDATE
                SET username = COALESCE($2, client.username),
                    gender   = EXCLUDED.gender,
                    language = EXCLUDED.language
            RETURNING id
            """,
            cid,
            explicit_username,
            gender_code,
            lang
        )
        logger.info(f"Upserted client {row['id']}")
        return {"id": row["id"]}

    async def list_clients(self) -> List[Dict[str, Any]]:
        rows = await self.db.fetch(
            "SELECT id, username, gender, language, created FROM client ORDER BY created DESC"
        )
        return [
            {
                "id": r["id"],
                "username": r["username"],
                "gender": r["gender"],
                "genderLabel": gender_label(r["gender"]),
                "language": r.get("language"),
                "created": r.get("created"),
            }
            for r in rows
        ]


class TherapistDirectory:
    def __init__(self, db: Database):
        self.db = db

    async def list_therapists(
        self,
        q: Optional[str] = None,
        gender: Optional[int] = None,
        limit: int = 50,
        offset: int = 0
    ) -> Dict[str, Any]:
        limit = min(max(limit, 1), 100)
        offset = max(offset, 0)

        where: List[str] = []
        params: List[Any] = []
        if q and q.strip():
            params.append(f"%{q.strip()}%")
            where.append(f"(name ILIKE ${len(params)} OR description ILIKE ${len(params)})")
        if gender is not None:
            params.append(gender)
            where.append(f"gender = ${len(params)}")
        params.extend([limit, offset])

        rows = await self.db.fetch(
            f"""
            SELECT id, name, gender, voice_id, description, audio_preview_url,
                   COUNT(*) OVER() AS total
            FROM therapist
            {"WHERE " + " AND ".join(where) if where else ""}
            ORDER BY name ASC
            LIMIT ${len(params) - 1} OFFSET ${len(params)}
            """,
            *params
        )
        total = int(rows[0]["total"]) if rows else 0
        return {
            "items": [
                {
                    "id": r["id"],
                    "name": r["name"],
                    "gender": r["gender"],
                    "genderLabel": gender_label(r["gender"]),
                    "voiceId": r.get("voice_id"),
                    "description": r.get("description"),
                    "audioPreviewUrl": r.get("audio_preview_url"),
                }
                for r in rows
            ],
            "paging": {"limit": limit, "offset": offset, "total": total},
        }

    async def get_voice_preview(self, therapist_id: str) -> Dict[str, Any]:
        row = await self.db.fetchone(
            "SELECT id, audio_preview_url FROM therapist WHERE id = $1",
            therapist_id
        )
        if not row:
            raise NotFoundError("Therapist not found", code="therapist_not_found")
        if not row.get("audio_preview_url"):
            raise NotFoundError("Voice preview not found", code="voice_preview_not_found")
        return {"therapistId": row["id"], "audioUrl": row["audio_preview_url"]}
