"""Profile completeness providers.

Profile data is owned by an external profile system. The reconciler only
asks whether an owner's profile is complete, through one of:

- HttpProfileProvider: live lookup against the profile system
  (GET {base_url}/profiles/{owner_id}/completeness -> {"completed": bool})
- SqlProfileSignalStore: last value carried by profile:completed events,
  persisted in the profile_signals table, for deployments where the profile
  system only publishes events (through the bus or POST /events/profile-completed)
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import httpx

from docintake.db.models import ProfileSignalRecord

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from docintake.core.config import ProfileSettings
    from docintake.services.events import ProfileCompletionEvent

logger = logging.getLogger(__name__)


class ProfileLookupError(Exception):
    """The profile system could not answer."""


@runtime_checkable
class ProfileEventObserver(Protocol):
    """Provider that learns completeness from profile events."""

    async def observe(self, event: ProfileCompletionEvent) -> None:
        """Record the completeness carried by a profile event."""
        ...


class HttpProfileProvider:
    """Asks the profile system over HTTP."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._http_client = http_client
        self._owns_client = http_client is None

    @classmethod
    def from_settings(cls, settings: ProfileSettings) -> HttpProfileProvider:
        if not settings.base_url:
            msg = "Profile system base URL is not configured"
            raise ValueError(msg)
        return cls(settings.base_url, timeout=settings.timeout)

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def is_complete(self, owner_id: str) -> bool:
        """Live profile completeness.

        Raises:
            ProfileLookupError: If the profile system fails or answers garbage.
        """
        url = f"{self._base_url}/profiles/{owner_id}/completeness"
        try:
            client = await self._get_http_client()
            response = await client.get(url)
            if response.status_code == 404:
                return False
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Profile lookup failed for %s: %s", owner_id, e)
            raise ProfileLookupError(f"Profile lookup failed for {owner_id}: {e}") from e

        completed = payload.get("completed") if isinstance(payload, dict) else None
        if not isinstance(completed, bool):
            raise ProfileLookupError(f"Unexpected profile completeness payload for {owner_id}")
        return completed


class SqlProfileSignalStore:
    """Last profile:completed value per owner, persisted in profile_signals.

    Written by the reconciler's profile event consumer and read on every
    reconciliation, so completeness survives restarts. Events older than the
    stored one are ignored. Owners never seen are treated as incomplete.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def observe(self, event: ProfileCompletionEvent) -> None:
        async with self._session_factory() as session:
            record = await session.get(ProfileSignalRecord, event.owner_id, with_for_update=True)
            if record is None:
                session.add(
                    ProfileSignalRecord(
                        owner_id=event.owner_id,
                        role=event.role,
                        profile_completed=event.profile_completed,
                        completion_percentage=event.completion_percentage,
                        observed_at=event.timestamp,
                    )
                )
            elif _as_utc(record.observed_at) > _as_utc(event.timestamp):
                logger.info(
                    "Ignoring stale profile signal for %s (event %s, stored %s)",
                    event.owner_id,
                    event.timestamp.isoformat(),
                    record.observed_at.isoformat(),
                )
                return
            else:
                record.role = event.role
                record.profile_completed = event.profile_completed
                record.completion_percentage = event.completion_percentage
                record.observed_at = event.timestamp
                record.updated_at = datetime.now(UTC)

            # A concurrent first insert raises IntegrityError; the bus redelivers
            await session.commit()

    async def is_complete(self, owner_id: str) -> bool:
        async with self._session_factory() as session:
            record = await session.get(ProfileSignalRecord, owner_id)
        return record is not None and record.profile_completed


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timezone-aware columns back naive
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
