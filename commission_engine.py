import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import Settings

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10_000

RateSource = Literal["coupon", "affiliate", "plan", "default"]
PaymentStatus = Literal["succeeded", "refunded", "chargeback", "failed", "canceled"]


class PaymentEvent(BaseModel):
    provider: str
    provider_event_id: str = Field(..., description="Provider's unique id, used for idempotency")
    user_id: str
    plan_key: str = Field(..., description="pro_monthly, pro_yearly, vip_monthly, vip_yearly")
    amount_cents: int = Field(..., description="Payment amount in minor units")
    currency: str
    status: PaymentStatus = "succeeded"
    created_at: datetime
    coupon_code: Optional[str] = None
    affiliate_code: Optional[str] = None
    is_first_paid: bool = False


class RateOverride(BaseModel):
    first_bps: Optional[int] = None
    recurring_bps: Optional[int] = None
    note: Optional[str] = None


class CouponOverride(BaseModel):
    bps: int
    note: Optional[str] = None


def _normalize_code(code: Optional[str]) -> Optional[str]:
    if not code:
        return None
    return code.strip().lower() or None


class CommissionPolicy(BaseModel):
    """
    rates are in basis points (3000 = 30%).
    coupon / affiliate keys are matched case-insensitively.
    """

    model_config = ConfigDict(frozen=True)

    default_first_bps: int
    default_recurring_bps: int
    plan_overrides: Dict[str, RateOverride] = Field(default_factory=dict)
    coupon_overrides: Dict[str, CouponOverride] = Field(default_factory=dict)
    affiliate_overrides: Dict[str, RateOverride] = Field(default_factory=dict)
    hold_days: int = 14
    clawback_days: int = 30

    @field_validator("coupon_overrides", "affiliate_overrides", mode="before")
    @classmethod
    def _lower_keys(cls, value):
        if isinstance(value, dict):
            return {_normalize_code(k) or k: v for k, v in value.items()}
        return value


class CommissionResult(BaseModel):
    commission_cents: int
    rate_bps: int
    rate_source: RateSource
    currency: str
    hold_until: datetime
    idempotency_key: str


def default_commission_policy(settings: Settings) -> CommissionPolicy:
    first = settings.affiliate_default_first_bps
    recurring = settings.affiliate_default_recurring_bps
    return CommissionPolicy(
        default_first_bps=first,
        default_recurring_bps=recurring,
        plan_overrides={
            "pro_yearly": RateOverride(first_bps=first, recurring_bps=recurring),
            "vip_yearly": RateOverride(first_bps=first, recurring_bps=recurring),
        },
        hold_days=settings.affiliate_hold_days,
        clawback_days=settings.affiliate_clawback_days,
    )


def plus_days(ts: datetime, days: int) -> datetime:
    """utc day arithmetic; naive datetimes are taken as utc."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc) + timedelta(days=int(days or 0))


def fmt_bps(bps: int) -> str:
    return f"{bps / 100:.2f}%"


def _pick_rate(override: RateOverride, first: bool, policy: CommissionPolicy) -> int:
    if first:
        return override.first_bps if override.first_bps is not None else policy.default_first_bps
    return override.recurring_bps if override.recurring_bps is not None else policy.default_recurring_bps


def resolve_rate(payment: PaymentEvent, policy: CommissionPolicy):
    """
    returns (rate_bps, rate_source). precedence:
      coupon > affiliate > plan > default
    """
    first = payment.is_first_paid
    coupon = _normalize_code(payment.coupon_code)
    affiliate = _normalize_code(payment.affiliate_code)

    # 1) coupon: flat rate, no first/recurring split
    if coupon and coupon in policy.coupon_overrides:
        return policy.coupon_overrides[coupon].bps, "coupon"

    # 2) affiliate
    if affiliate and affiliate in policy.affiliate_overrides:
        return _pick_rate(policy.affiliate_overrides[affiliate], first, policy), "affiliate"

    # 3) plan
    if payment.plan_key in policy.plan_overrides:
        return _pick_rate(policy.plan_overrides[payment.plan_key], first, policy), "plan"

    # 4) default
    if first:
        return policy.default_first_bps, "default"
    return policy.default_recurring_bps, "default"


def compute_commission(
    payment: PaymentEvent,
    policy: CommissionPolicy,
    idempotency_key: Optional[str] = None,
) -> CommissionResult:
    """
    commission = floor(amount_cents * rate_bps / 10000), never below zero.
    hold_until = payment.created_at + hold_days.
    """
    rate_bps, rate_source = resolve_rate(payment, policy)
    commission_cents = max(0, (payment.amount_cents * rate_bps) // BPS_DENOMINATOR)

    logger.info(
        "commission %s: %s of %s %s -> %s (%s)",
        payment.provider_event_id,
        fmt_bps(rate_bps),
        payment.amount_cents,
        payment.currency,
        commission_cents,
        rate_source,
    )

    return CommissionResult(
        commission_cents=commission_cents,
        rate_bps=rate_bps,
        rate_source=rate_source,
        currency=payment.currency,
        hold_until=plus_days(payment.created_at, policy.hold_days),
        idempotency_key=idempotency_key or payment.provider_event_id,
    )
