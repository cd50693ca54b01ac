"""
Payment recording.

Rows are keyed by (provider, transaction_id). Redelivering the same
transaction updates amount/currency/status in place, keeps the earliest
paid_at and never replaces a stored session_id, raw_payload or note with
NULL.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging
import re
from uuid import UUID

import asyncpg

from .db import Database
from .errors import NotFoundError, UnauthorizedError, ValidationError
from .utils import parse_timestamp

logger = logging.getLogger(__name__)

PROVIDER_CODES = {"ios": 1, "android": 2, "web": 3}
PROVIDER_LABELS = {v: k for k, v in PROVIDER_CODES.items()}
STATUS_CODES = {"pending": 0, "completed": 1, "refunded": 2, "revoked": 3}
STATUS_LABELS = {v: k for k, v in STATUS_CODES.items()}

# RevenueCat store -> provider; anything else is treated as web
STORE_PROVIDERS = {
    "app_store": "ios",
    "appstore": "ios",
    "apple": "ios",
    "play_store": "android",
    "google_play": "android",
    "playstore": "android",
}

# RevenueCat event type -> status; unknown types count as completed
EVENT_STATUSES = {
    "PENDING": "pending",
    "INITIAL_PURCHASE": "completed",
    "RENEWAL": "completed",
    "PRODUCT_CHANGE": "completed",
    "CANCELLATION": "revoked",
    "EXPIRATION": "revoked",
    "BILLING_ISSUE": "pending",
}

_CURRENCY_RE = re.compile(r"^[A-Za-z]{3}$")

UPSERT_PAYMENT_SQL = """
    INSERT INTO client_payment
        (client_id, session_id, provider, transaction_id, amount, currency, status, paid_at, raw_payload, note)
    VALUES
        ($1, $2, $3, $4, $5, $6, $7, COALESCE($8, NOW()), $9, $10)
    ON CONFLICT (provider, transaction_id) DO UPDATE
        SET client_id   = EXCLUDED.client_id,
            session_id  = COALESCE(EXCLUDED.session_id, client_payment.session_id),
            amount      = EXCLUDED.amount,
            currency    = EXCLUDED.currency,
            status      = EXCLUDED.status,
            paid_at     = LEAST(client_payment.paid_at, EXCLUDED.paid_at),
            raw_payload = COALESCE(EXCLUDED.raw_payload, client_payment.raw_payload),
            note        = COALESCE(EXCLUDED.note, client_payment.note)
    RETURNING id, client_id, session_id, provider, transaction_id, amount, currency,
              status, paid_at, created, note
"""


def _enum_code(value: Any, codes: Dict[str, int]) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value if value in codes.values() else None
    text = str(value).strip().lower()
    if text.isdigit():
        return _enum_code(int(text), codes)
    return codes.get(text)


def parse_provider(value: Any) -> Optional[int]:
    return _enum_code(value, PROVIDER_CODES)


def parse_status(value: Any) -> Optional[int]:
    return _enum_code(value, STATUS_CODES)


def map_store(store: Any) -> str:
    return STORE_PROVIDERS.get(str(store or "").strip().lower(), "web")


def map_event_type(event_type: Any) -> str:
    return EVENT_STATUSES.get(str(event_type or "").strip().upper(), "completed")


def validate_payment(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Check and normalize an incoming payment; raises ValidationError before any write."""
    client_id = fields.get("clientId")
    transaction_id = fields.get("transactionId")
    amount = fields.get("amount")
    currency = fields.get("currency")
    provider = fields.get("provider")

    if not client_id or not transaction_id or amount is None or not currency or provider is None:
        raise ValidationError("clientId, provider, transactionId, amount, currency are required")
    if isinstance(amount, bool) or not isinstance(amount, (int, float, Decimal)) or amount < 0:
        raise ValidationError("amount must be a number >= 0")
    if not _CURRENCY_RE.match(str(currency)):
        raise ValidationError("currency must be a 3-letter code (e.g. TRY, USD)")

    provider_code = parse_provider(provider)
    if provider_code is None:
        raise ValidationError("provider must be ios|android|web (or 1|2|3)")

    status_code = parse_status(fields.get("status", "completed"))
    if status_code is None:
        raise ValidationError("status must be pending|completed|refunded|revoked (or 0|1|2|3)")

    paid_at_raw = fields.get("paidAt")
    paid_at = parse_timestamp(paid_at_raw) if paid_at_raw else None
    if paid_at_raw and paid_at is None:
        raise ValidationError("paidAt must be an ISO-8601 timestamp")

    session_id = fields.get("sessionId") or None
    if session_id is not None:
        try:
            session_id = str(UUID(str(session_id)))
        except ValueError:
            raise ValidationError("sessionId must be a UUID")

    raw_payload = fields.get("rawPayload")
    if raw_payload is not None and not isinstance(raw_payload, (dict, list)):
        raise ValidationError("rawPayload must be a JSON object")

    return {
        "client_id": str(client_id),
        "session_id": session_id,
        "provider": provider_code,
        "transaction_id": str(transaction_id),
        "amount": Decimal(str(amount)),
        "currency": str(currency).upper(),
        "status": status_code,
        "paid_at": paid_at,
        "raw_payload": raw_payload,
        "note": fields.get("note") or None,
    }


def serialize_payment(row: Dict[str, Any]) -> Dict[str, Any]:
    amount = row.get("amount")
    return {
        "id": row["id"],
        "clientId": row["client_id"],
        "sessionId": row.get("session_id"),
        "provider": row["provider"],
        "providerLabel": PROVIDER_LABELS.get(row["provider"]),
        "transactionId": row["transaction_id"],
        "amount": float(amount) if amount is not None else None,
        "currency": row["currency"],
        "status": row["status"],
        "statusLabel": STATUS_LABELS.get(row["status"]),
        "paidAt": row.get("paid_at"),
        "created": row.get("created"),
        "note": row.get("note"),
    }


def parse_revenuecat_event(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Translate a RevenueCat webhook body into payment fields."""
    event = payload.get("event") if isinstance(payload.get("event"), dict) else payload
    event_type = str(event.get("type") or "").upper()

    paid_at = None
    if event.get("purchased_at_ms") is not None:
        try:
            paid_at = datetime.fromtimestamp(int(event["purchased_at_ms"]) / 1000, tz=timezone.utc)
        except (TypeError, ValueError):
            paid_at = None
    elif event.get("purchased_at"):
        paid_at = parse_timestamp(event.get("purchased_at"))

    price = event.get("price")
    amount = price if isinstance(price, (int, float)) and not isinstance(price, bool) else None

    product_id = event.get("product_id")
    note = f"RC product_id={product_id}; type={event_type}" if product_id else f"RC event_type={event_type}"

    return {
        "clientId": event.get("app_user_id"),
        "transactionId": event.get("transaction_id"),
        "amount": amount,
        "currency": str(event["currency"]).upper() if event.get("currency") else None,
        "provider": map_store(event.get("store")),
        "status": map_event_type(event_type),
        "paidAt": paid_at.isoformat() if paid_at else None,
        "sessionId": None,
        "note": note,
        "rawPayload": payload,
    }


class PaymentRecorder:
    def __init__(self, db: Database):
        self.db = db

    async def record_payment(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        values = validate_payment(fields)
        try:
            row = await self.db.fetchone(
                UPSERT_PAYMENT_SQL,
                values["client_id"],
                values["session_id"],
                values["provider"],
                values["transaction_id"],
                values["amount"],
                values["currency"],
                values["status"],
                values["paid_at"],
                values["raw_payload"],
                values["note"]
            )
        except asyncpg.ForeignKeyViolationError as e:
            constraint = getattr(e, "constraint_name", "") or ""
            code = "session_not_found" if "session" in constraint else "client_not_found"
            raise NotFoundError("Referenced client or session does not exist", code=code)

        logger.info(
            f"Recorded payment {row['id']} provider={values['provider']} "
            f"tx={values['transaction_id']} status={values['status']}"
        )
        return serialize_payment(row)

    async def _log_webhook(self, source: str, body: Any) -> Optional[int]:
        try:
            return await self.db.fetchval(
                "INSERT INTO payment_webhook_raw (source, body) VALUES ($1, $2) RETURNING id",
                source,
                body
            )
        except Exception as e:
            logger.error(f"payment_webhook_raw insert failed: {e}")
            return None

    async def _mark_webhook_error(self, log_id: Optional[int], error: str) -> None:
        if log_id is None:
            return
        try:
            await self.db.execute(
                "UPDATE payment_webhook_raw SET error = $2 WHERE id = $1",
                log_id,
                error[:2000]
            )
        except Exception as e:
            logger.error(f"payment_webhook_raw error update failed: {e}")

    async def handle_revenuecat_webhook(
        self,
        payload: Dict[str, Any],
        authorized: bool = True
    ) -> Dict[str, Any]:
        """
        Audit-log the raw body first, then authorize and interpret it.

        The audit row is written on its own connection so it survives any
        later failure; rejections and interpretation errors are noted on that row.
        """
        log_id = await self._log_webhook("revenuecat", payload)
        if not authorized:
            await self._mark_webhook_error(log_id, "unauthorized: webhook secret mismatch")
            raise UnauthorizedError("Invalid webhook authorization")
        try:
            fields = parse_revenuecat_event(payload if isinstance(payload, dict) else {})
            if not fields["clientId"] or not fields["transactionId"] or fields["amount"] is None or not fields["currency"]:
                raise ValidationError("missing clientId/transactionId/amount/currency from RevenueCat payload")
            payment = await self.record_payment(fields)
        except Exception as e:
            await self._mark_webhook_error(log_id, str(e) or type(e).__name__)
            raise

        return {
            "ok": True,
            "paymentId": payment["id"],
            "clientId": payment["clientId"],
            "provider": payment["provider"],
            "status": payment["status"],
            "transactionId": payment["transactionId"],
        }

    async def list_payments(
        self,
        client_id: Optional[str] = None,
        provider: Optional[int] = None,
        status: Optional[int] = None,
        limit: int = 100,
        offset: int = 0
    ) -> Dict[str, Any]:
        limit = min(max(limit, 1), 200)
        offset = max(offset, 0)

        where: List[str] = []
        params: List[Any] = []
        if client_id:
            params.append(client_id)
            where.append(f"p.client_id = ${len(params)}")
        if provider is not None:
            params.append(provider)
            where.append(f"p.provider = ${len(params)}")
        if status is not None:
            params.append(status)
            where.append(f"p.status = ${len(params)}")
        params.extend([limit, offset])

        rows = await self.db.fetch(
            f"""
            SELECT p.id, p.client_id, c.username AS client_username, p.session_id,
                   p.provider, p.transaction_id, p.amount, p.currency, p.status,
                   p.paid_at, p.created, p.note
            FROM client_payment p
            LEFT JOIN client c ON c.id = p.client_id
            {"WHERE " + " AND ".join(where) if where else ""}
            ORDER BY p.paid_at DESC NULLS LAST, p.created DESC
            LIMIT ${len(params) - 1} OFFSET ${len(params)}
            """,
            *params
        )
        items = []
        for row in rows:
            item = serialize_payment(row)
            item["clientUsername"] = row.get("client_username")
            items.append(item)
        return {"count": len(items), "limit": limit, "offset": offset, "items": items}
