from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from tamilsubs.api.deps import get_resolver
from tamilsubs.core.security import get_current_account_id
from tamilsubs.core.settings import settings
from tamilsubs.schemas.account import Account, public_account
from tamilsubs.services.entitlements import EntitlementResolver
from tamilsubs.services.pricing import public_plans


router = APIRouter()


def status_payload(account: Account) -> dict[str, Any]:
    return {
        "user": public_account(account),
        "plans": public_plans(),
        "gatewayKeyId": settings.razorpay_key_id,
    }


@router.get("/status")
async def status(
    account_id: str = Depends(get_current_account_id),
    resolver: EntitlementResolver = Depends(get_resolver),
):
    account = await resolver.refresh_status(account_id)
    return status_payload(account)
