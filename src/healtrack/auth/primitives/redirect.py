"""Single-shot channel for redirect-based authorization callbacks.

The host application intercepts its custom URL scheme and hands the URL to
``deliver``. The flow that opened the browser awaits ``wait``. Each channel
resolves exactly once: later deliveries and cancellations are ignored.
"""

from __future__ import annotations

import asyncio
import logging

from healtrack.auth.models.errors import UserCancelledError

logger = logging.getLogger(__name__)


class RedirectChannel:
    """Resolves once with a callback URL, a cancellation, or a timeout."""

    def __init__(self, callback_prefix: str):
        self.callback_prefix = callback_prefix
        self._future: asyncio.Future[str] = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    def matches(self, url: str) -> bool:
        return url.startswith(self.callback_prefix)

    def deliver(self, url: str) -> bool:
        """Resolve the channel with an intercepted callback URL.

        Returns:
            True if this delivery resolved the channel
        """
        if self._future.done():
            logger.debug("Ignoring redirect delivered to a settled channel")
            return False
        if not self.matches(url):
            logger.debug("Ignoring redirect for a different callback prefix")
            return False
        self._future.set_result(url)
        return True

    def cancel(self, reason: str = "Authorization was cancelled") -> bool:
        """Resolve the channel as abandoned by the user."""
        if self._future.done():
            return False
        self._future.set_exception(UserCancelledError(reason))
        return True

    async def wait(self, timeout: float | None = None) -> str:
        """Wait for the callback URL.

        Raises:
            UserCancelledError: If the flow was cancelled or the window elapsed
        """
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout)
        except asyncio.TimeoutError as e:
            self.cancel("Authorization window elapsed")
            raise UserCancelledError("Authorization window elapsed") from e


class RedirectRouter:
    """Routes intercepted deep links to the channel that is waiting for them.

    At most one channel per callback prefix is open. Opening a new one
    cancels the previous so a stale browser tab cannot complete a newer flow.
    """

    def __init__(self) -> None:
        self._channels: dict[str, RedirectChannel] = {}

    def open(self, callback_prefix: str) -> RedirectChannel:
        previous = self._channels.pop(callback_prefix, None)
        if previous is not None:
            previous.cancel("Superseded by a newer authorization flow")
        channel = RedirectChannel(callback_prefix)
        self._channels[callback_prefix] = channel
        return channel

    def close(self, channel: RedirectChannel) -> None:
        if self._channels.get(channel.callback_prefix) is channel:
            del self._channels[channel.callback_prefix]

    def handle_url(self, url: str) -> bool:
        """Deliver an intercepted URL. Returns False if nothing was waiting."""
        for prefix, channel in list(self._channels.items()):
            if channel.matches(url):
                delivered = channel.deliver(url)
                del self._channels[prefix]
                return delivered
        logger.debug("No authorization flow waiting for intercepted URL")
        return False

    def cancel_all(self) -> None:
        for channel in self._channels.values():
            channel.cancel()
        self._channels.clear()
