from typing import Optional, Tuple

from psycopg import Connection

from ledger_engine import AffiliateEvent

EVENT_COLUMNS = (
    "event_type",
    "code",
    "user_id",
    "provider",
    "provider_event_id",
    "currency",
    "amount_cents",
    "commission_cents",
    "rate_bps",
    "rate_source",
    "plan_key",
    "created_at",
    "hold_until",
    "approved_at",
    "note",
    "source_event_id",
)


def event_row(event: AffiliateEvent) -> Tuple:
    """
    flatten an AffiliateEvent into column order for INSERT.
    enums go in as their plain string values; a missing source_event_id
    is stored as "" so it takes part in the unique key.
    """
    data = event.model_dump()
    data["event_type"] = event.event_type.value
    data["source_event_id"] = event.source_event_id or ""
    return tuple(data[col] for col in EVENT_COLUMNS)


def insert_affiliate_event(
    conn: Connection,
    event: AffiliateEvent,
) -> Tuple[Optional[int], bool]:
    """
    insert a ledger event if not already present (idempotent).
    returns (event_pk_id, created: bool).

    uses the unique constraint on
    (provider, provider_event_id, event_type, source_event_id): one event of
    each type per payment, and one reversal per refund id.
    """
    columns = ", ".join(EVENT_COLUMNS)
    placeholders = ", ".join(["%s"] * len(EVENT_COLUMNS))
    with conn.cursor() as cur:
        cur.execute(
            f"""
            INSERT INTO affiliate_events ({columns})
            VALUES ({placeholders})
            ON CONFLICT (provider, provider_event_id, event_type, source_event_id) DO NOTHING
            RETURNING id
            """,
            event_row(event),
        )
        row = cur.fetchone()
        if row is None:
            # conflict: this event was already recorded
            cur.execute(
                """
                SELECT id FROM affiliate_events
                WHERE provider = %s AND provider_event_id = %s AND event_type = %s
                  AND source_event_id = %s
                """,
                (
                    event.provider,
                    event.provider_event_id,
                    event.event_type.value,
                    event.source_event_id or "",
                ),
            )
            existing = cur.fetchone()
            return (existing[0] if existing else None, False)
        else:
            return (row[0], True)
