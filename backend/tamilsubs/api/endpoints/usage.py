from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from pydantic import BaseModel

from tamilsubs.api.deps import get_resolver, get_subtitle_generator
from tamilsubs.core.errors import InvalidInput, ServiceError
from tamilsubs.core.security import get_current_account_id
from tamilsubs.schemas.account import public_account
from tamilsubs.services.entitlements import EntitlementResolver, UsageOutcome
from tamilsubs.services.transcription import (
    MAX_AUDIO_BYTES,
    SubtitleGenerator,
    SubtitlePreferences,
    audio_format_for,
    normalize_language,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class ConsumeRequest(BaseModel):
    minutes: Optional[Any] = None


def usage_payload(outcome: UsageOutcome) -> dict[str, Any]:
    out: dict[str, Any] = {
        "source": outcome.source.value,
        "minutes": outcome.minutes,
        "user": public_account(outcome.account),
    }
    if outcome.debited is not None:
        out["debited"] = outcome.debited
    return out


@router.post("/usage/consume")
async def consume(
    payload: ConsumeRequest,
    account_id: str = Depends(get_current_account_id),
    resolver: EntitlementResolver = Depends(get_resolver),
):
    outcome = await resolver.consume(account_id, payload.minutes)
    return usage_payload(outcome)


@router.post("/transcribe")
async def transcribe(
    request: Request,
    audio: UploadFile = File(...),
    minutes: str = Form(...),
    language: str = Form("Thanglish"),
    maxLength: int = Form(7),
    minDuration: float = Form(0.1),
    gap: int = Form(0),
    lines: str = Form("Single"),
    account_id: str = Depends(get_current_account_id),
    resolver: EntitlementResolver = Depends(get_resolver),
    generator: SubtitleGenerator = Depends(get_subtitle_generator),
):
    output_language = normalize_language(language)
    preferences = SubtitlePreferences(
        max_length=maxLength,
        min_duration=minDuration,
        gap=gap,
        lines=lines,
    ).validated()
    audio_format_for(audio.content_type)
    data = await audio.read(MAX_AUDIO_BYTES + 1)
    if not data:
        raise InvalidInput("Missing audio")
    if len(data) > MAX_AUDIO_BYTES:
        raise InvalidInput("Audio file too large")

    # Debit first: a failed generation is not refunded.
    outcome = await resolver.consume(account_id, minutes)
    try:
        srt = await generator.generate(
            audio=data,
            mime_type=audio.content_type,
            language=output_language,
            preferences=preferences,
        )
    except ServiceError:
        logger.exception(
            "transcription.failed_after_debit account=%s source=%s minutes=%s",
            account_id,
            outcome.source.value,
            outcome.minutes,
        )
        raise

    if await request.is_disconnected():
        logger.info("transcription.client_gone account=%s minutes=%s", account_id, outcome.minutes)
    return {"srt": srt, "usage": usage_payload(outcome)}
