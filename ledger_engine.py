import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict

from commission_engine import (
    CommissionPolicy,
    CommissionResult,
    PaymentEvent,
    RateSource,
    compute_commission,
)

logger = logging.getLogger(__name__)


class AffiliateEventType(str, Enum):
    commission_pending = "commission_pending"
    commission_approved = "commission_approved"
    commission_voided = "commission_voided"
    commission_reversed = "commission_reversed"


class Trigger(str, Enum):
    approve = "approve"  # hold elapsed
    void = "void"  # refund inside the hold period
    reverse = "reverse"  # refund / chargeback inside the clawback window


PENDING = AffiliateEventType.commission_pending
APPROVED = AffiliateEventType.commission_approved
VOIDED = AffiliateEventType.commission_voided
REVERSED = AffiliateEventType.commission_reversed

# every legal edge; anything missing here is a caller bug
TRANSITIONS: Dict[Tuple[AffiliateEventType, Trigger], AffiliateEventType] = {
    (PENDING, Trigger.approve): APPROVED,
    (PENDING, Trigger.void): VOIDED,
    (APPROVED, Trigger.reverse): REVERSED,
}


class IllegalTransition(Exception):
    def __init__(self, current: AffiliateEventType, trigger: Trigger):
        self.current = current
        self.trigger = trigger
        super().__init__(f"cannot apply {trigger.value!r} to a {current.value} event")


class AffiliateEvent(BaseModel):
    """
    one row in the commission ledger. commission_cents is negative only
    for reversals.
    source_event_id is the refund / chargeback id a reversal answers to;
    it keeps several partial refunds of one payment apart.
    """

    model_config = ConfigDict(frozen=True)

    event_type: AffiliateEventType
    code: Optional[str] = None
    user_id: str
    provider: str
    provider_event_id: str
    currency: str
    amount_cents: int
    commission_cents: int
    rate_bps: int
    rate_source: RateSource
    plan_key: str
    created_at: datetime
    hold_until: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    note: Optional[str] = None
    source_event_id: Optional[str] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def reversal_cents(commission_cents: int, amount_cents: int, refund_cents: int) -> int:
    """
    -floor(commission * clamp(refund / max(1, amount), 0, 1)), in integers.
    """
    denominator = max(1, amount_cents)
    refunded = min(max(refund_cents, 0), denominator)
    return -((commission_cents * refunded) // denominator)


def transition(
    event: AffiliateEvent,
    trigger: Union[Trigger, str],
    at: Optional[datetime] = None,
    refund_cents: int = 0,
    note: Optional[str] = None,
    source_event_id: Optional[str] = None,
) -> AffiliateEvent:
    """
    the only way to move a commission along its lifecycle:

        pending  --approve--> approved --reverse--> reversed
        pending  --void-----> voided

    raises IllegalTransition for any other (state, trigger) pair.
    """
    trigger = Trigger(trigger)
    target = TRANSITIONS.get((event.event_type, trigger))
    if target is None:
        raise IllegalTransition(event.event_type, trigger)

    at = at or _now()

    if target is APPROVED:
        update = {
            "approved_at": at,
            "note": note or "Hold elapsed, commission approved",
        }
    elif target is VOIDED:
        update = {"commission_cents": 0, "note": note}
    else:
        update = {
            "commission_cents": reversal_cents(
                event.commission_cents, event.amount_cents, refund_cents
            ),
            "note": note or "Proportional reversal due to refund or chargeback",
            "created_at": at,
            "source_event_id": source_event_id,
        }

    update["event_type"] = target
    return event.model_copy(update=update)


# ---------
# builders
# ---------


def build_pending_event(
    payment: PaymentEvent,
    result: CommissionResult,
    now: Optional[datetime] = None,
) -> AffiliateEvent:
    return AffiliateEvent(
        event_type=PENDING,
        code=payment.affiliate_code or payment.coupon_code or None,
        user_id=payment.user_id,
        provider=payment.provider,
        provider_event_id=payment.provider_event_id,
        currency=payment.currency,
        amount_cents=payment.amount_cents,
        commission_cents=result.commission_cents,
        rate_bps=result.rate_bps,
        rate_source=result.rate_source,
        plan_key=payment.plan_key,
        created_at=now or _now(),
        hold_until=result.hold_until,
    )


def build_approved_event(pending: AffiliateEvent, approved_at: Optional[datetime] = None) -> AffiliateEvent:
    return transition(pending, Trigger.approve, at=approved_at)


def build_voided_event(pending: AffiliateEvent, reason: str) -> AffiliateEvent:
    return transition(pending, Trigger.void, note=reason)


def build_reversal_event(
    approved: AffiliateEvent,
    refund_cents: int,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
    source_event_id: Optional[str] = None,
) -> AffiliateEvent:
    return transition(
        approved,
        Trigger.reverse,
        at=now,
        refund_cents=refund_cents,
        note=note,
        source_event_id=source_event_id,
    )


def safe_commission_flow(
    payment: PaymentEvent,
    policy: CommissionPolicy,
    now: Optional[datetime] = None,
):
    """
    compute + build the pending event in one go. returns (result, pending).
    """
    try:
        result = compute_commission(payment, policy)
        pending = build_pending_event(payment, result, now=now)
    except Exception:
        logger.exception("commission compute failed for %s", payment.provider_event_id)
        raise
    return result, pending
