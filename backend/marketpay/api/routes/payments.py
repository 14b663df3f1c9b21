"""Payment sync routes: snapshot, live stream, and outbound commands.

Commands return 202 ``submitted``: the provider accepted the request, and the
reconciled result reaches the client through the stream once the webhook lands.
"""

import json
import time

import structlog
from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import StreamingResponse

from marketpay.api.deps import get_sync_service
from marketpay.core.auth import AuthUser, require_auth
from marketpay.core.config import get_settings
from marketpay.schemas.payments import (
    AttachMethodRequest,
    ChargeRequest,
    CommandAccepted,
    PaymentSnapshot,
)
from marketpay.services.sync_service import PaymentSyncService

logger = structlog.get_logger(__name__)

router = APIRouter()

_POLL_SECONDS = 1.0


def _snapshot_event(snapshot: PaymentSnapshot) -> str:
    return f"event: snapshot\ndata: {snapshot.model_dump_json()}\n\n"


@router.get("/state", response_model=PaymentSnapshot)
async def get_payment_state(
    user: AuthUser = Depends(require_auth),
    sync: PaymentSyncService = Depends(get_sync_service),
):
    """Current snapshot; also the manual-refresh fallback for the stream."""
    return await sync.load(user.user_id)


@router.get("/stream")
async def stream_payment_state(
    request: Request,
    user: AuthUser = Depends(require_auth),
    sync: PaymentSyncService = Depends(get_sync_service),
):
    """Stream payment snapshots via SSE with heartbeat keepalive.

    Sends the current snapshot first, then a new one whenever the change feed
    reports a committed change or the periodic refresh finds a difference.
    Leaving the stream (disconnect or cancellation) unsubscribes.
    """
    settings = get_settings()
    heartbeat_seconds = settings.sse_heartbeat_seconds
    refresh_seconds = settings.observer_refresh_seconds

    async def event_generator():
        async with sync.observe(user.user_id) as observer:
            yield _snapshot_event(observer.snapshot)
            last_heartbeat = last_refresh = time.monotonic()

            while True:
                if await request.is_disconnected():
                    return

                now = time.monotonic()
                changed = await observer.wait_for_change(_POLL_SECONDS)
                if changed or now - last_refresh >= refresh_seconds:
                    previous = observer.snapshot
                    snapshot = await observer.load()
                    last_refresh = time.monotonic()
                    if snapshot != previous:
                        yield _snapshot_event(snapshot)
                        last_heartbeat = last_refresh
                        continue

                if time.monotonic() - last_heartbeat >= heartbeat_seconds:
                    yield "event: heartbeat\ndata: {}\n\n"
                    last_heartbeat = time.monotonic()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/methods", response_model=CommandAccepted, status_code=202)
async def attach_payment_method(
    body: AttachMethodRequest,
    user: AuthUser = Depends(require_auth),
    sync: PaymentSyncService = Depends(get_sync_service),
):
    return await sync.request_attach(user.user_id, body.instrument_id)


@router.delete("/methods/{instrument_id}", response_model=CommandAccepted, status_code=202)
async def detach_payment_method(
    instrument_id: str,
    user: AuthUser = Depends(require_auth),
    sync: PaymentSyncService = Depends(get_sync_service),
):
    return await sync.request_detach(user.user_id, instrument_id)


@router.post("/methods/{instrument_id}/default", response_model=CommandAccepted, status_code=202)
async def set_default_payment_method(
    instrument_id: str,
    user: AuthUser = Depends(require_auth),
    sync: PaymentSyncService = Depends(get_sync_service),
):
    return await sync.request_set_default(user.user_id, instrument_id)


@router.post("/charges", response_model=CommandAccepted, status_code=202)
async def create_charge(
    body: ChargeRequest,
    user: AuthUser = Depends(require_auth),
    sync: PaymentSyncService = Depends(get_sync_service),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """Charge the owner; a pending transaction appears in the snapshot immediately."""
    return await sync.request_charge(
        user.user_id,
        amount=body.amount,
        currency=body.currency,
        description=body.description,
        instrument_id=body.instrument_id,
        idempotency_key=idempotency_key,
    )
