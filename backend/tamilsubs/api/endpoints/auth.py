from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Response
from pydantic import BaseModel

from tamilsubs.api.deps import get_ledger_store
from tamilsubs.api.endpoints.account import status_payload
from tamilsubs.core.errors import InvalidInput
from tamilsubs.core.security import (
    clear_session_cookie,
    get_current_account_id,
    require_dev_login_allowed,
    set_session_cookie,
    verify_google_credential,
)
from tamilsubs.core.settings import settings
from tamilsubs.schemas.account import ProfileHints
from tamilsubs.services.ledger_store import LedgerStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth")


class GoogleLoginRequest(BaseModel):
    credential: Optional[str] = None


class DevLoginRequest(BaseModel):
    userId: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None


@router.post("/google")
async def google_login(
    payload: GoogleLoginRequest,
    response: Response,
    store: LedgerStore = Depends(get_ledger_store),
):
    credential = (payload.credential or "").strip()
    if not credential:
        raise InvalidInput("Missing credential")
    claims = await asyncio.to_thread(verify_google_credential, credential)
    account = await store.get_or_create(
        claims.subject_id,
        ProfileHints(display_name=claims.name, email=claims.email, avatar_url=claims.picture),
    )
    set_session_cookie(response, account.account_id)
    logger.info("auth.google_login account=%s", account.account_id)
    return status_payload(account)


@router.post("/dev-login", dependencies=[Depends(require_dev_login_allowed)])
async def dev_login(
    response: Response,
    payload: Optional[DevLoginRequest] = Body(default=None),
    store: LedgerStore = Depends(get_ledger_store),
):
    body = payload or DevLoginRequest()
    account_id = (body.userId if body.userId is not None else settings.dev_bypass_user_id).strip()
    if not account_id:
        raise InvalidInput("Missing userId")
    account = await store.get_or_create(
        account_id,
        ProfileHints(
            display_name=(body.name if body.name is not None else settings.dev_bypass_name),
            email=(body.email if body.email is not None else settings.dev_bypass_email),
        ),
    )
    set_session_cookie(response, account.account_id)
    logger.warning("auth.dev_login account=%s", account.account_id)
    return status_payload(account)


@router.post("/logout")
async def logout(response: Response, account_id: str = Depends(get_current_account_id)):
    clear_session_cookie(response)
    logger.info("auth.logout account=%s", account_id)
    return {"ok": True}
