import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from attribution_engine import (
    build_affiliate_referral_upsert,
    extract_attribution,
    safe_redirect,
    to_analytics_event,
)
from commission_db import record_payment_db
from commission_engine import PaymentEvent, compute_commission, default_commission_policy, fmt_bps
from config import AttributionConfig, get_settings
from signal_engine import RequestLike

settings = get_settings()
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# built once per process, passed explicitly into the engines
ATTRIBUTION = AttributionConfig.from_settings(settings)
POLICY = default_commission_policy(settings)


app = FastAPI(title="Polaris Affiliate Ledger", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------
# attribution
# ---------


@app.get("/api/attribution/touch")
def attribution_touch(
    request: Request,
    redirect: Optional[str] = Query(None, description="Where to send the visitor afterwards"),
):
    """
    record-free touch endpoint: classify the visit, refresh the
    first/last-touch cookies, and hand back the referral + analytics payloads.
    if `redirect` is on-site, respond with a 302 to it instead.
    """
    extracted = extract_attribution(
        RequestLike(
            url=str(request.url),
            headers=request.headers,
            ip=request.client.host if request.client else None,
        ),
        ATTRIBUTION,
    )
    signal = extracted.attribution

    target = safe_redirect(redirect, ATTRIBUTION)
    if target:
        response = RedirectResponse(target, status_code=302)
    else:
        response = JSONResponse(
            {
                "request_id": signal.request_id,
                "channel": signal.channel.value,
                "affiliate_code": signal.affiliate_code,
                "referral": build_affiliate_referral_upsert(signal, extracted.history),
                "event": to_analytics_event(signal, "touch"),
            }
        )

    for cookie in (extracted.cookies.first_touch, extracted.cookies.last_touch):
        if cookie:
            response.headers.append("set-cookie", cookie)
    return response


# ---------
# commissions
# ---------


@app.post("/api/commission/preview")
def commission_preview(payload: PaymentEvent):
    """
    pure calculation, nothing is written.
    """
    result = compute_commission(payload, POLICY)
    response = result.model_dump(mode="json")
    response["rate"] = fmt_bps(result.rate_bps)
    return response


@app.post("/api/webhook/payment")
def webhook_payment(payload: PaymentEvent):
    """
    payment ingestion webhook.
    calls record_payment_db and returns either 'applied' or 'duplicate'.
    """
    try:
        result = record_payment_db(payload, POLICY)
    except ValueError as e:
        # e.g. a refunded/failed payment sent to the accrual webhook
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception("payment webhook failed for %s", payload.provider_event_id)
        raise HTTPException(status_code=500, detail="Internal server error")

    if result.get("event") is not None:
        result["event"] = result["event"].model_dump(mode="json")

    return result
