"""Per-credential-type refresh locks.

At most one refresh runs per credential type. Callers that arrive while one
is in flight await the same future and observe the same credential or the
same exception.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from healtrack.auth.models.credentials import Credential, CredentialType

logger = logging.getLogger(__name__)


@dataclass
class InFlightRefresh:
    """A running refresh and the session generation it started under."""

    credential_type: CredentialType
    generation: int
    future: asyncio.Future[Credential]
    task: asyncio.Task[None] | None = None

    async def wait(self) -> Credential:
        # Shielded so one cancelled caller does not cancel the shared refresh
        return await asyncio.shield(self.future)


class RefreshLocks:
    """Registry of in-flight refreshes keyed by credential type."""

    def __init__(self) -> None:
        self._in_flight: dict[CredentialType, InFlightRefresh] = {}

    def get(self, credential_type: CredentialType) -> InFlightRefresh | None:
        return self._in_flight.get(credential_type)

    def is_held(self, credential_type: CredentialType) -> bool:
        return credential_type in self._in_flight

    def __len__(self) -> int:
        return len(self._in_flight)

    def start(
        self,
        credential_type: CredentialType,
        generation: int,
        operation: Callable[[], Awaitable[Credential]],
    ) -> InFlightRefresh:
        """Run ``operation`` as the single in-flight refresh for a type.

        The lock is released when the operation settles, whatever the outcome.

        Raises:
            RuntimeError: If a refresh for this type is already in flight
        """
        if credential_type in self._in_flight:
            raise RuntimeError(f"Refresh for {credential_type.value} already in flight")

        loop = asyncio.get_running_loop()
        entry = InFlightRefresh(
            credential_type=credential_type,
            generation=generation,
            future=loop.create_future(),
        )
        self._in_flight[credential_type] = entry
        entry.task = asyncio.create_task(self._run(entry, operation))
        return entry

    async def _run(
        self, entry: InFlightRefresh, operation: Callable[[], Awaitable[Credential]]
    ) -> None:
        try:
            credential = await operation()
        except asyncio.CancelledError:
            if not entry.future.done():
                entry.future.cancel()
            raise
        except Exception as e:
            if not entry.future.done():
                entry.future.set_exception(e)
        else:
            if not entry.future.done():
                entry.future.set_result(credential)
        finally:
            self._release(entry)
            # Mark the outcome retrieved when nobody was left waiting on it
            if entry.future.done() and not entry.future.cancelled():
                entry.future.exception()

    def _release(self, entry: InFlightRefresh) -> None:
        if self._in_flight.get(entry.credential_type) is entry:
            del self._in_flight[entry.credential_type]

    def release_all(self) -> None:
        """Forget every in-flight refresh without waiting for it.

        The operations keep running; they are expected to notice the session
        generation changed and discard their result.
        """
        if self._in_flight:
            logger.debug(f"Releasing {len(self._in_flight)} in-flight refresh lock(s)")
        self._in_flight.clear()
