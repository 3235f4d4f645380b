"""Webhook endpoints called by sandboxes.

These routes are not behind the identity header. Each request is
authenticated by the HMAC signature over its raw body, so the body is
read as bytes and handed to the services before any JSON parsing. The
services are synchronous, so they run in a worker thread.
Failures are always answered with the JSON error envelope.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from abraxas.api.dependencies import get_sandbox_manager, get_settings, get_vault
from abraxas.api.schemas import WebhookAck
from abraxas.config import Settings
from abraxas.db.connection import get_db
from abraxas.errors import DomainError, to_failure
from abraxas.services.credential_vault import CredentialVault
from abraxas.services.execution_callbacks import SIGNATURE_HEADER, ExecutionCallbackService
from abraxas.services.manifest_service import ManifestService
from abraxas.services.sandbox_manager import SandboxManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def _failure_response(error: DomainError, operation: str) -> JSONResponse:
    failure = to_failure(error, operation)
    return JSONResponse(status_code=failure.status_code, content=failure.to_envelope())


@router.post("/sandbox/{task_id}", response_model=WebhookAck)
async def sandbox_callback(
    task_id: str,
    request: Request,
    signature: str | None = Header(None, alias=SIGNATURE_HEADER),
    db: Session = Depends(get_db),
    sandboxes: SandboxManager = Depends(get_sandbox_manager),
    settings: Settings = Depends(get_settings),
):
    """Apply a signed event from a task sandbox."""
    raw_body = await request.body()
    try:
        service = ExecutionCallbackService(db, sandboxes, settings)
        event_type = await asyncio.to_thread(service.handle, task_id, raw_body, signature)
    except DomainError as e:
        return _failure_response(e, "process sandbox callback")
    return WebhookAck(type=event_type)


@router.post("/manifest/{manifest_id}", response_model=WebhookAck)
async def manifest_callback(
    manifest_id: str,
    request: Request,
    signature: str | None = Header(None, alias=SIGNATURE_HEADER),
    db: Session = Depends(get_db),
    vault: CredentialVault = Depends(get_vault),
    sandboxes: SandboxManager = Depends(get_sandbox_manager),
    settings: Settings = Depends(get_settings),
):
    """Apply a signed event from a manifest sandbox."""
    raw_body = await request.body()
    try:
        service = ManifestService(db, vault, sandboxes, settings)
        event_type = await asyncio.to_thread(
            service.handle_callback, manifest_id, raw_body, signature
        )
    except DomainError as e:
        return _failure_response(e, "process manifest callback")
    return WebhookAck(type=event_type)
