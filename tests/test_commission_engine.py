from datetime import datetime, timezone

from commission_engine import (
    CommissionPolicy,
    CouponOverride,
    PaymentEvent,
    RateOverride,
    compute_commission,
    default_commission_policy,
    fmt_bps,
    plus_days,
)
from config import Settings

T0 = datetime(2026, 1, 10, 9, 30, tzinfo=timezone.utc)


def _payment(**overrides):
    base = dict(
        provider="paypal",
        provider_event_id="evt_1",
        user_id="user_1",
        plan_key="pro_monthly",
        amount_cents=5000,
        currency="USD",
        status="succeeded",
        created_at=T0,
        is_first_paid=True,
    )
    base.update(overrides)
    return PaymentEvent(**base)


def _policy(**overrides):
    base = dict(default_first_bps=3000, default_recurring_bps=2000, hold_days=14, clawback_days=30)
    base.update(overrides)
    return CommissionPolicy(**base)


def test_default_rate_first_purchase():
    """
    5000 cents at the 30% default -> 1500.
    """
    result = compute_commission(_payment(), _policy())

    assert result.commission_cents == 1500
    assert result.rate_bps == 3000
    assert result.rate_source == "default"
    assert result.currency == "USD"
    assert result.idempotency_key == "evt_1"
    assert result.hold_until == datetime(2026, 1, 24, 9, 30, tzinfo=timezone.utc)


def test_default_rate_recurring():
    result = compute_commission(_payment(is_first_paid=False), _policy())
    assert result.commission_cents == 1000
    assert result.rate_source == "default"


def test_affiliate_override():
    """
    jane gets 40% on first purchases -> 2000.
    """
    policy = _policy(affiliate_overrides={"jane": RateOverride(first_bps=4000)})
    result = compute_commission(_payment(affiliate_code="jane"), policy)

    assert result.commission_cents == 2000
    assert result.rate_source == "affiliate"


def test_affiliate_override_missing_subfield_falls_back_to_default():
    policy = _policy(affiliate_overrides={"jane": RateOverride(first_bps=4000)})
    result = compute_commission(_payment(affiliate_code="jane", is_first_paid=False), policy)

    # recurring not overridden -> policy default recurring, still credited to the affiliate rule
    assert result.rate_bps == 2000
    assert result.rate_source == "affiliate"


def test_coupon_beats_affiliate():
    policy = _policy(
        coupon_overrides={"SPRING": CouponOverride(bps=1000)},
        affiliate_overrides={"jane": RateOverride(first_bps=4000, recurring_bps=4000)},
    )
    result = compute_commission(_payment(coupon_code=" spring ", affiliate_code="JANE"), policy)

    assert result.rate_source == "coupon"
    assert result.rate_bps == 1000
    assert result.commission_cents == 500


def test_unknown_coupon_falls_through_to_affiliate():
    policy = _policy(affiliate_overrides={"jane": {"first_bps": 4000}})
    result = compute_commission(_payment(coupon_code="nope", affiliate_code="jane"), policy)
    assert result.rate_source == "affiliate"


def test_plan_override():
    policy = _policy(plan_overrides={"vip_yearly": RateOverride(first_bps=2500, recurring_bps=1500)})

    first = compute_commission(_payment(plan_key="vip_yearly"), policy)
    assert (first.rate_bps, first.rate_source) == (2500, "plan")

    recurring = compute_commission(_payment(plan_key="vip_yearly", is_first_paid=False), policy)
    assert (recurring.rate_bps, recurring.rate_source) == (1500, "plan")

    # affiliate override sits above the plan
    policy = _policy(
        plan_overrides={"vip_yearly": RateOverride(first_bps=2500)},
        affiliate_overrides={"jane": RateOverride(first_bps=4500)},
    )
    result = compute_commission(_payment(plan_key="vip_yearly", affiliate_code="jane"), policy)
    assert result.rate_source == "affiliate"


def test_explicit_zero_override_is_honored():
    policy = _policy(coupon_overrides={"free": CouponOverride(bps=0)})
    result = compute_commission(_payment(coupon_code="free"), policy)

    assert result.rate_source == "coupon"
    assert result.commission_cents == 0


def test_floor_and_clamp():
    # 999 * 3333 / 10000 = 332.9667 -> 332
    result = compute_commission(_payment(amount_cents=999), _policy(default_first_bps=3333))
    assert result.commission_cents == 332

    negative = compute_commission(_payment(amount_cents=-5000), _policy())
    assert negative.commission_cents == 0


def test_explicit_idempotency_key():
    result = compute_commission(_payment(), _policy(), idempotency_key="order-77")
    assert result.idempotency_key == "order-77"


def test_plus_days_is_utc_day_arithmetic():
    assert plus_days(datetime(2026, 1, 31, 23, 0), 1) == datetime(2026, 2, 1, 23, 0, tzinfo=timezone.utc)
    assert plus_days(T0, 0) == T0


def test_fmt_bps():
    assert fmt_bps(3000) == "30.00%"
    assert fmt_bps(1234) == "12.34%"


def test_default_policy_from_settings():
    settings = Settings(
        affiliate_default_first_bps=3500,
        affiliate_default_recurring_bps=1500,
        affiliate_hold_days=7,
        affiliate_clawback_days=60,
    )
    policy = default_commission_policy(settings)

    assert policy.default_first_bps == 3500
    assert policy.hold_days == 7
    assert policy.clawback_days == 60
    assert policy.plan_overrides["pro_yearly"].first_bps == 3500
    assert policy.plan_overrides["vip_yearly"].recurring_bps == 1500
    assert policy.coupon_overrides == {}
