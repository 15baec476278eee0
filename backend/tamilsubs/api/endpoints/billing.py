from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import AliasChoices, BaseModel, Field

from tamilsubs.api.deps import get_gateway, get_resolver
from tamilsubs.core.errors import Forbidden, InvalidInput, InvalidSignature
from tamilsubs.core.security import get_current_account_id
from tamilsubs.schemas.account import public_account
from tamilsubs.services.billing import GatewayOrder, RazorpayGateway
from tamilsubs.services.entitlements import EntitlementResolver
from tamilsubs.services.pricing import CURRENCY, MIN_WALLET_TOPUP, get_plan

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscription")


class CreateOrderRequest(BaseModel):
    intent: Optional[str] = None
    plan_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("planId", "plan_id"))
    amount: Optional[int] = Field(default=None, validation_alias=AliasChoices("amount", "amountInPaise"))


class ConfirmRequest(BaseModel):
    order_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("orderId", "razorpay_order_id"))
    payment_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("paymentId", "razorpay_payment_id")
    )
    signature: Optional[str] = Field(default=None, validation_alias=AliasChoices("signature", "razorpay_signature"))
    intent: Optional[str] = None
    plan_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("planId", "plan_id"))
    amount: Optional[int] = Field(default=None, validation_alias=AliasChoices("amount", "amountInPaise"))


def _normalize_intent(raw: str | None) -> str:
    intent = (raw or "").strip().lower()
    if intent not in {"plan", "wallet"}:
        raise InvalidInput("Invalid intent")
    return intent


def _expected_amount(intent: str, plan_id: str | None, amount: int | None) -> int:
    if intent == "plan":
        plan = get_plan(plan_id)
        if plan is None:
            raise InvalidInput("Invalid plan")
        return int(plan["price"])
    if amount is None or int(amount) <= 0:
        raise InvalidInput("Missing top-up amount")
    return int(amount)


def _check_order(
    order: GatewayOrder,
    *,
    account_id: str,
    order_id: str,
    intent: str,
    plan_id: str | None,
    amount: int,
) -> None:
    if order.order_id and order.order_id != order_id:
        raise InvalidSignature("Order mismatch")
    owner = str(order.notes.get("userId") or "")
    if owner and owner != account_id:
        logger.warning("billing.order_owner_mismatch order=%s account=%s", order_id, account_id)
        raise Forbidden("Order does not belong to this account")
    noted_intent = str(order.notes.get("intent") or "")
    if noted_intent and noted_intent != intent:
        raise InvalidInput("Payment intent does not match order")
    noted_plan = str(order.notes.get("planId") or "")
    if intent == "plan" and noted_plan and noted_plan != (plan_id or "").strip().lower():
        raise InvalidInput("Plan does not match order")
    if order.amount != amount:
        logger.warning("billing.amount_mismatch order=%s expected=%s actual=%s", order_id, amount, order.amount)
        raise InvalidInput("Payment amount does not match order")


@router.post("/start-trial")
async def start_trial(
    account_id: str = Depends(get_current_account_id),
    resolver: EntitlementResolver = Depends(get_resolver),
):
    grant = await resolver.start_trial(account_id)
    trial = grant.trial.model_dump(mode="json", by_alias=True)
    if grant.already_active:
        return {"trial": trial, "message": "Trial already active"}
    return {"trial": trial}


@router.post("/create-order")
async def create_order(
    payload: CreateOrderRequest,
    account_id: str = Depends(get_current_account_id),
    gateway: RazorpayGateway = Depends(get_gateway),
):
    intent = _normalize_intent(payload.intent)
    millis = int(time.time() * 1000)
    notes = {"userId": account_id, "intent": intent}
    if intent == "plan":
        plan = get_plan(payload.plan_id)
        if plan is None:
            raise InvalidInput("Invalid plan")
        plan_key = str(payload.plan_id).strip().lower()
        amount = int(plan["price"])
        receipt = f"plan_{plan_key}_{millis}"
        notes["planId"] = plan_key
    else:
        if payload.amount is None or int(payload.amount) < MIN_WALLET_TOPUP:
            raise InvalidInput(f"Minimum wallet recharge is ₹{MIN_WALLET_TOPUP // 100}")
        amount = int(payload.amount)
        receipt = f"wallet_{millis}"

    order = await gateway.create_order(amount=amount, currency=CURRENCY, receipt=receipt, notes=notes)
    logger.info("billing.create_order account=%s intent=%s order=%s", account_id, intent, order.order_id)
    return {"order": order.public()}


@router.post("/confirm")
async def confirm(
    payload: ConfirmRequest,
    account_id: str = Depends(get_current_account_id),
    resolver: EntitlementResolver = Depends(get_resolver),
    gateway: RazorpayGateway = Depends(get_gateway),
):
    order_id = (payload.order_id or "").strip()
    payment_id = (payload.payment_id or "").strip()
    if not order_id or not payment_id:
        raise InvalidSignature("Missing Razorpay confirmation data")
    gateway.verify_payment_signature(order_id, payment_id, payload.signature)

    intent = _normalize_intent(payload.intent)
    amount = _expected_amount(intent, payload.plan_id, payload.amount)
    order = await gateway.fetch_order(order_id)
    _check_order(order, account_id=account_id, order_id=order_id, intent=intent, plan_id=payload.plan_id, amount=amount)

    account = await resolver.apply_payment(
        account_id,
        intent=intent,
        order_id=order_id,
        payment_id=payment_id,
        plan_id=payload.plan_id,
        amount=amount,
    )
    return {"user": public_account(account)}
