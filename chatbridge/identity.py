"""
Identity resolution between platform user ids and channel phone numbers.

The account directory is owned elsewhere; the bridge only needs two pure
lookups. A missing mapping raises IdentityNotFound and ends the operation
in progress: callers never retry or guess.
"""

import logging
from abc import ABC, abstractmethod
from typing import Mapping

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from chatbridge.errors import IdentityNotFound
from chatbridge.models import DirectoryEntry
from chatbridge.storage import SessionLocal

logger = logging.getLogger(__name__)


class IdentityResolver(ABC):

    @abstractmethod
    def resolve_user_phone(self, user_id: str) -> str:
        """Phone number of ``user_id``; raises IdentityNotFound."""

    @abstractmethod
    def resolve_user_by_phone(self, phone: str) -> str:
        """User id owning ``phone``; raises IdentityNotFound."""


class StaticIdentityResolver(IdentityResolver):
    """Resolver over a fixed ``{user_id: phone}`` mapping."""

    def __init__(self, phones_by_user: Mapping[str, str]):
        self._phones = {u: p for u, p in phones_by_user.items() if p}
        self._users = {p: u for u, p in self._phones.items()}

    def resolve_user_phone(self, user_id: str) -> str:
        try:
            return self._phones[user_id]
        except KeyError:
            raise IdentityNotFound("user", user_id) from None

    def resolve_user_by_phone(self, phone: str) -> str:
        try:
            return self._users[phone]
        except KeyError:
            raise IdentityNotFound("phone", phone) from None


class SqlIdentityResolver(IdentityResolver):
    """Resolver reading the ``user_directory`` table."""

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    def resolve_user_phone(self, user_id: str) -> str:
        with self._session_factory() as session:
            phone = session.execute(
                select(DirectoryEntry.phone_number).where(DirectoryEntry.user_id == user_id)
            ).scalar_one_or_none()
        if not phone:
            logger.info(f"No phone number on record for user {user_id}")
            raise IdentityNotFound("user", user_id)
        return phone

    def resolve_user_by_phone(self, phone: str) -> str:
        with self._session_factory() as session:
            user_id = session.execute(
                select(DirectoryEntry.user_id).where(DirectoryEntry.phone_number == phone)
            ).scalar_one_or_none()
        if not user_id:
            logger.info(f"No user on record for phone {phone}")
            raise IdentityNotFound("phone", phone)
        return user_id
