"""FastAPI dependencies: one store, resolver and notifier per process."""

from functools import lru_cache

from fastapi import Depends

from chatbridge.config import settings
from chatbridge.fanout import HttpNotifier, LocalNotifier, Notifier, RoomRegistry
from chatbridge.identity import IdentityResolver, SqlIdentityResolver
from chatbridge.service import BridgeService
from chatbridge.sql_store import SqlBridgeStore
from chatbridge.storage import SessionLocal
from chatbridge.store import BridgeStore

# Live sessions held by this process
rooms = RoomRegistry()


def get_rooms() -> RoomRegistry:
    return rooms


@lru_cache()
def get_store() -> BridgeStore:
    return SqlBridgeStore(SessionLocal)


@lru_cache()
def get_resolver() -> IdentityResolver:
    return SqlIdentityResolver(SessionLocal)


@lru_cache()
def get_notifier() -> Notifier:
    if settings.FANOUT_URL:
        return HttpNotifier(
            settings.FANOUT_URL,
            settings.WEBHOOK_SECRET,
            timeout=settings.FANOUT_TIMEOUT_SECONDS,
        )
    return LocalNotifier(rooms, timeout=settings.FANOUT_TIMEOUT_SECONDS)


def get_service(
    store: BridgeStore = Depends(get_store),
    resolver: IdentityResolver = Depends(get_resolver),
    notifier: Notifier = Depends(get_notifier),
) -> BridgeService:
    return BridgeService(
        store=store,
        resolver=resolver,
        notifier=notifier,
        channel_address=settings.CHANNEL_ADDRESS,
        claim_batch_limit=settings.CLAIM_BATCH_LIMIT,
    )
