"""
Trial and subscription evaluation.

The decision itself is a pure function over already-loaded rows
(``evaluate_access``); ``EntitlementEvaluator`` only loads those rows.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
import logging

from .config import get_settings
from .db import Database
from .utils import parse_timestamp, utcnow

logger = logging.getLogger(__name__)

STATUS_COMPLETED = 1


class AccessDecision(str, Enum):
    BLOCKED = "blocked"
    TRIAL_ACTIVE = "trial_active"
    ENTITLED = "entitled"
    BYPASSED = "bypassed"


@dataclass
class AccessStatus:
    decision: AccessDecision
    trial_active: bool
    trial_days_left: int
    main_session_created: Optional[datetime] = None

    @property
    def allowed(self) -> bool:
        return self.decision is not AccessDecision.BLOCKED

    def trial_payload(self) -> Dict[str, Any]:
        if self.trial_active:
            return {"active": True, "days_left": self.trial_days_left}
        return {"active": False, "days_left": 0}


def is_trial_active(main_session_created: Optional[datetime], now: datetime, trial_days: int) -> bool:
    """No main session yet means the trial starts with the session about to be created."""
    if main_session_created is None:
        return True
    return main_session_created >= now - timedelta(days=trial_days)


def trial_days_left(main_session_created: Optional[datetime], now: datetime, trial_days: int) -> int:
    anchor = main_session_created or now
    elapsed_days = int((now - anchor).total_seconds() // 86400)
    return max(0, trial_days - elapsed_days)


def _expiry_from_payload(raw_payload: Any) -> Optional[datetime]:
    if not isinstance(raw_payload, dict):
        return None
    subscription = raw_payload.get("subscription") or {}
    customer_info = raw_payload.get("customerInfo") or {}
    event = raw_payload.get("event") or {}
    candidates = [
        subscription.get("expiresDate") if isinstance(subscription, dict) else None,
        customer_info.get("latestExpirationDate") if isinstance(customer_info, dict) else None,
    ]
    if isinstance(event, dict) and event.get("expiration_at_ms"):
        try:
            candidates.append(datetime.fromtimestamp(int(event["expiration_at_ms"]) / 1000, tz=timezone.utc))
        except (TypeError, ValueError):
            pass
    for value in candidates:
        if value in (None, ""):
            continue
        parsed = parse_timestamp(value)
        if parsed:
            return parsed
    return None


def payment_grants_entitlement(row: Dict[str, Any], now: datetime, grace_days: int) -> bool:
    """
    A completed payment entitles the client when:
    - it carries a structured payload whose expiry is still in the future, or
    - it has no payload and was paid within the grace window (manual/legacy rows).
    """
    if int(row.get("status", -1)) != STATUS_COMPLETED:
        return False
    raw_payload = row.get("raw_payload")
    if raw_payload is not None:
        expiry = _expiry_from_payload(raw_payload)
        return bool(expiry and expiry >= now)
    paid_at = parse_timestamp(row.get("paid_at"))
    return bool(paid_at and paid_at >= now - timedelta(days=grace_days))


def has_active_entitlement(rows: Iterable[Dict[str, Any]], now: datetime, grace_days: int) -> bool:
    return any(payment_grants_entitlement(row, now, grace_days) for row in rows)


def _in_list(username: Optional[str], names: List[str]) -> bool:
    if not username:
        return False
    return username.strip().lower() in {n.strip().lower() for n in names}


def evaluate_access(
    *,
    username: Optional[str],
    main_session_created: Optional[datetime],
    payments: Iterable[Dict[str, Any]],
    now: datetime,
    trial_days: int,
    grace_days: int,
    bypass_usernames: List[str],
    force_paywall_usernames: List[str]
) -> AccessStatus:
    trial = is_trial_active(main_session_created, now, trial_days)
    if _in_list(username, force_paywall_usernames):
        trial = False
    days_left = trial_days_left(main_session_created, now, trial_days) if trial else 0

    if _in_list(username, bypass_usernames):
        decision = AccessDecision.BYPASSED
    elif trial:
        decision = AccessDecision.TRIAL_ACTIVE
    elif has_active_entitlement(payments, now, grace_days):
        decision = AccessDecision.ENTITLED
    else:
        decision = AccessDecision.BLOCKED

    return AccessStatus(
        decision=decision,
        trial_active=trial,
        trial_days_left=days_left,
        main_session_created=main_session_created
    )


class EntitlementEvaluator:
    def __init__(self, db: Database):
        self.db = db
        self.settings = get_settings()

    async def get_main_session_created(self, client_id: str) -> Optional[datetime]:
        row = await self.db.fetchone(
            """
            SELECT id, created
            FROM main_session
            WHERE client_id = $1 AND deleted = FALSE
            LIMIT 1
            """,
            client_id
        )
        return parse_timestamp(row.get("created")) if row else None

    async def get_completed_payments(self, client_id: str) -> List[Dict[str, Any]]:
        return await self.db.fetch(
            """
            SELECT status, paid_at, raw_payload
            FROM client_payment
            WHERE client_id = $1 AND status = $2
            ORDER BY paid_at DESC
            """,
            client_id,
            STATUS_COMPLETED
        )

    async def is_trial_active(self, client_id: str, now: Optional[datetime] = None) -> bool:
        created = await self.get_main_session_created(client_id)
        return is_trial_active(created, now or utcnow(), self.settings.trial_days)

    async def has_active_entitlement(self, client_id: str, now: Optional[datetime] = None) -> bool:
        rows = await self.get_completed_payments(client_id)
        return has_active_entitlement(rows, now or utcnow(), self.settings.payment_grace_days)

    async def evaluate(
        self,
        client: Dict[str, Any],
        now: Optional[datetime] = None
    ) -> AccessStatus:
        """client: row with at least id and username"""
        now = now or utcnow()
        created = await self.get_main_session_created(client["id"])
        payments = await self.get_completed_payments(client["id"])
        status = evaluate_access(
            username=client.get("username"),
            main_session_created=created,
            payments=payments,
            now=now,
            trial_days=self.settings.trial_days,
            grace_days=self.settings.payment_grace_days,
            bypass_usernames=self.settings.paywall_bypass_usernames,
            force_paywall_usernames=self.settings.paywall_force_usernames
        )
        logger.info(f"Access for client {client['id']}: {status.decision.value}")
        return status
