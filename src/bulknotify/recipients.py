"""Recipient resolution for bulk notification tasks."""
from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from .db import session_scope
from .exceptions import RecipientResolutionError
from .models import DeviceToken, User, UserCategory
from .schemas import Recipient, RecipientFilter

logger = logging.getLogger(__name__)

# Used when a task carries no filter at all.
DEFAULT_FILTER = RecipientFilter(is_verified=True)


class UserDirectory(Protocol):
    """User lookups the dispatch core needs from the marketplace."""

    def find_by_filter(self, recipient_filter: RecipientFilter) -> list[Recipient]: ...

    def get_device_tokens(self, user_id: int) -> list[str]: ...


def build_conditions(recipient_filter: RecipientFilter) -> list:
    """Compile a filter into SQLAlchemy WHERE clauses, one per populated field."""
    f = recipient_filter
    conditions = []

    if f.role:
        conditions.append(User.role == f.role)
    if f.is_verified is not None:
        conditions.append(User.is_verified == f.is_verified)
    if f.created_after is not None:
        conditions.append(User.created_at > f.created_after)
    if f.created_before is not None:
        conditions.append(User.created_at < f.created_before)
    if f.last_login_after is not None:
        conditions.append(User.last_login_at > f.last_login_after)
    if f.last_login_before is not None:
        conditions.append(User.last_login_at < f.last_login_before)
    if f.has_listings is not None:
        conditions.append(User.listings.any() if f.has_listings else ~User.listings.any())
    if f.specific_ids:
        conditions.append(User.id.in_(f.specific_ids))
    if f.category_ids:
        conditions.append(User.category_interests.any(UserCategory.category_id.in_(f.category_ids)))

    return conditions


class SqlUserDirectory:
    """UserDirectory backed by the marketplace user tables.

    ``find_by_filter`` returns contact fields only. Push delivery asks
    ``get_device_tokens`` for each recipient, so email and SMS tasks never
    read the token table.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def find_by_filter(self, recipient_filter: RecipientFilter) -> list[Recipient]:
        stmt = (
            select(User)
            .where(*build_conditions(recipient_filter))
            .order_by(User.id.asc())
        )
        with session_scope(self.session_factory) as session:
            return [
                Recipient(
                    id=user.id,
                    email=user.email,
                    name=user.name,
                    phone_number=user.phone_number,
                )
                for user in session.scalars(stmt)
            ]

    def get_device_tokens(self, user_id: int) -> list[str]:
        stmt = select(DeviceToken.token).where(DeviceToken.user_id == user_id).order_by(DeviceToken.id)
        with session_scope(self.session_factory) as session:
            return list(session.scalars(stmt))


class RecipientResolver:
    """Turns a recipient filter into the concrete list of users to notify."""

    def __init__(self, directory: UserDirectory) -> None:
        self.directory = directory

    def resolve(self, recipient_filter: RecipientFilter | None) -> list[Recipient]:
        effective = recipient_filter if recipient_filter is not None else DEFAULT_FILTER
        try:
            recipients = list(self.directory.find_by_filter(effective))
        except Exception as exc:
            raise RecipientResolutionError(
                f"Failed to resolve recipients: {exc}",
                cause=exc,
                context={"filter": effective.to_payload()},
            ) from exc

        if not recipients:
            logger.info("Recipient filter %s matched no users", effective.to_payload())
        return recipients


__all__ = ["DEFAULT_FILTER", "RecipientResolver", "SqlUserDirectory", "UserDirectory", "build_conditions"]
