"""Endpoints for other gitforge processes on the same host (the SSH gateway)."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError

from app.context import AppContext
from app.routers.deps import get_ctx
from app.services.events import INTERNAL_SIGNATURE_HEADER, decode_events, verify_body

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/internal", tags=["internal"], include_in_schema=False)


@router.post("/events", status_code=202)
async def publish_events(request: Request, ctx: AppContext = Depends(get_ctx)):
    """Publish events a push over SSH produced."""
    body = await request.body()
    signature = request.headers.get(INTERNAL_SIGNATURE_HEADER, "")
    if not verify_body(ctx.settings.internal_token, body, signature):
        logger.warning(f"Rejected internal event post from {request.client.host if request.client else '?'}")
        raise HTTPException(status_code=403, detail="Invalid signature")

    try:
        events = decode_events(body)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))

    await ctx.event_bus.publish(events)
    return {"published": len(events)}
