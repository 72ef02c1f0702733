from datetime import datetime, timezone
from typing import Optional

from commission_engine import CommissionPolicy, plus_days
from ledger_engine import AffiliateEventType, Trigger


def _utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def should_void_pending_commission(
    payment_created_at: datetime,
    refund_created_at: datetime,
    policy: CommissionPolicy,
) -> bool:
    """
    refund strictly before the hold ends -> the pending commission is voided.
    a refund exactly at hold_until is too late.
    """
    hold_until = plus_days(payment_created_at, policy.hold_days)
    return _utc(refund_created_at) < hold_until


def is_within_clawback(
    payment_created_at: datetime,
    refund_created_at: datetime,
    policy: CommissionPolicy,
) -> bool:
    """inclusive: a refund exactly at the clawback deadline still counts."""
    deadline = plus_days(payment_created_at, policy.clawback_days)
    return _utc(refund_created_at) <= deadline


def refund_trigger(
    current: AffiliateEventType,
    payment_created_at: datetime,
    refund_created_at: datetime,
    policy: CommissionPolicy,
) -> Optional[Trigger]:
    """
    given the commission's persisted state and the refund timing, which
    transition (if any) the refund should drive.

      pending  + refund before hold ends   -> void
      approved + refund inside clawback    -> reverse
      anything else                        -> None (nothing to do)
    """
    # rows read back from the db carry plain strings
    current = AffiliateEventType(current)
    if current is AffiliateEventType.commission_pending:
        if should_void_pending_commission(payment_created_at, refund_created_at, policy):
            return Trigger.void
        return None
    if current is AffiliateEventType.commission_approved:
        if is_within_clawback(payment_created_at, refund_created_at, policy):
            return Trigger.reverse
        return None
    return None
