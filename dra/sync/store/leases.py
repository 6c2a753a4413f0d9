"""
Per-entity leases persisted in the database.

A lease is the exclusive right to run a sync (per data source) or a
refresh (per data model). Leases are rows with a unique (entity_type,
entity_id) key, so exclusion holds across worker processes; an expired
lease can be taken over.
"""

import logging
import os
import socket
import uuid
from contextlib import contextmanager
from datetime import timedelta
from typing import Callable, Iterator, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from dra.sync.models import EntityLeaseModel, utc_now

logger = logging.getLogger(__name__)


class LeaseManager:
    """Acquire and release entity leases."""

    def __init__(self, session_factory: sessionmaker, default_ttl_seconds: int = 7200):
        self._session_factory = session_factory
        self.default_ttl_seconds = default_ttl_seconds
        self._holder_prefix = f"{socket.gethostname()}:{os.getpid()}"

    def _new_token(self) -> str:
        return f"{self._holder_prefix}:{uuid.uuid4().hex[:12]}"

    def acquire(self, entity_type: str, entity_id: int, ttl_seconds: Optional[int] = None) -> Optional[str]:
        """
        Try to take the lease.

        Returns:
            Holder token on success, None if another holder owns a live lease
        """
        ttl = ttl_seconds or self.default_ttl_seconds
        token = self._new_token()
        now = utc_now()
        expires_at = now + timedelta(seconds=ttl)

        session = self._session_factory()
        try:
            session.add(EntityLeaseModel(
                entity_type=entity_type,
                entity_id=entity_id,
                holder=token,
                acquired_at=now,
                expires_at=expires_at,
            ))
            session.commit()
            logger.debug(f"Lease acquired: {entity_type}:{entity_id} by {token}")
            return token
        except IntegrityError:
            session.rollback()
        finally:
            session.close()

        # Take over an expired lease
        session = self._session_factory()
        try:
            result = session.execute(
                update(EntityLeaseModel)
                .where(
                    EntityLeaseModel.entity_type == entity_type,
                    EntityLeaseModel.entity_id == entity_id,
                    EntityLeaseModel.expires_at <= now,
                )
                .values(holder=token, acquired_at=now, expires_at=expires_at)
            )
            session.commit()
            if result.rowcount == 1:
                logger.warning(f"Took over expired lease {entity_type}:{entity_id}")
                return token
            return None
        finally:
            session.close()

    def release(self, entity_type: str, entity_id: int, token: str) -> bool:
        """Release a lease held by ``token``."""
        session = self._session_factory()
        try:
            result = session.execute(
                delete(EntityLeaseModel).where(
                    EntityLeaseModel.entity_type == entity_type,
                    EntityLeaseModel.entity_id == entity_id,
                    EntityLeaseModel.holder == token,
                )
            )
            session.commit()
            released = result.rowcount == 1
            if not released:
                logger.warning(f"Lease {entity_type}:{entity_id} was no longer held by {token}")
            return released
        finally:
            session.close()

    def is_held(self, entity_type: str, entity_id: int) -> bool:
        """Whether a live lease exists."""
        session = self._session_factory()
        try:
            lease = session.execute(
                select(EntityLeaseModel).where(
                    EntityLeaseModel.entity_type == entity_type,
                    EntityLeaseModel.entity_id == entity_id,
                )
            ).scalar_one_or_none()
            return lease is not None and lease.expires_at > utc_now()
        finally:
            session.close()

    @contextmanager
    def lease(self, entity_type: str, entity_id: int,
              on_conflict: Callable[[], Exception], ttl_seconds: Optional[int] = None) -> Iterator[str]:
        """Hold a lease for the duration of the block, raising ``on_conflict()`` if taken."""
        token = self.acquire(entity_type, entity_id, ttl_seconds)
        if token is None:
            raise on_conflict()
        try:
            yield token
        finally:
            self.release(entity_type, entity_id, token)
