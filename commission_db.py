import logging
from datetime import datetime
from typing import Any, Dict, Optional

from psycopg import Connection

from commission_engine import CommissionPolicy, PaymentEvent
from db.db import get_conn
from db.repositories import insert_affiliate_event
from ledger_engine import safe_commission_flow

logger = logging.getLogger(__name__)


def record_payment_db(
    payment: PaymentEvent,
    policy: CommissionPolicy,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    DB-backed handling of a successful payment.

    computes the commission and records the pending ledger event.
    delivering the same provider event twice is a no-op ("duplicate").
    """
    with get_conn() as conn:
        try:
            result = _record_payment_db_in_tx(conn, payment, policy, now=now)
            conn.commit()
            return result
        except Exception:
            conn.rollback()
            raise


def _record_payment_db_in_tx(
    conn: Connection,
    payment: PaymentEvent,
    policy: CommissionPolicy,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    # 1) only successful charges accrue commission
    if payment.status != "succeeded":
        raise ValueError(
            f"Payment {payment.provider_event_id} has status {payment.status!r}; "
            "only succeeded payments accrue commission."
        )

    # 2) pure computation
    result, pending = safe_commission_flow(payment, policy, now=now)

    # 3) idempotent insert
    event_id, created = insert_affiliate_event(conn, pending)

    if not created:
        logger.info("duplicate payment event %s/%s", payment.provider, payment.provider_event_id)
        return {
            "status": "duplicate",
            "event_id": event_id,
            "idempotency_key": result.idempotency_key,
            "event": None,
        }

    return {
        "status": "applied",
        "event_id": event_id,
        "idempotency_key": result.idempotency_key,
        "event": pending,
    }
