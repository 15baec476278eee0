from __future__ import annotations

from functools import lru_cache

from fastapi import Depends

from tamilsubs.core.database import SessionLocal
from tamilsubs.core.settings import settings
from tamilsubs.services.billing import RazorpayGateway, gateway_from_settings
from tamilsubs.services.entitlements import EntitlementResolver
from tamilsubs.services.ledger_store import LedgerStore
from tamilsubs.services.mutation_queue import build_queue
from tamilsubs.services.transcription import SubtitleGenerator, generator_from_settings


@lru_cache(maxsize=1)
def get_ledger_store() -> LedgerStore:
    return LedgerStore(SessionLocal, build_queue(settings.ledger_queue_mode))


def get_resolver(store: LedgerStore = Depends(get_ledger_store)) -> EntitlementResolver:
    return EntitlementResolver(store)


@lru_cache(maxsize=1)
def get_gateway() -> RazorpayGateway:
    return gateway_from_settings()


@lru_cache(maxsize=1)
def get_subtitle_generator() -> SubtitleGenerator:
    return generator_from_settings()
