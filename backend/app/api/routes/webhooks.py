from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from backend.app.api.deps import get_email_sender
from backend.app.db import get_db
from backend.app.domain.contracts import WebhookResult
from backend.app.services import webhook_service
from backend.app.services.notification_service import EmailSender


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/stripe/{webhook_token}", response_model=WebhookResult)
async def stripe_webhook(
    webhook_token: str,
    request: Request,
    db: Session = Depends(get_db),
    sender: Optional[EmailSender] = Depends(get_email_sender),
):
    body = await request.body()
    # processing does blocking database and email I/O
    return await run_in_threadpool(
        webhook_service.process_stripe_webhook,
        db,
        webhook_token=webhook_token,
        headers=dict(request.headers),
        body=body,
        sender=sender,
    )
