"""Streaming feed adapter and cancellable subscriptions.

A StreamFeed (external collaborator, e.g. a WebSocket or message-bus client)
exposes subscribe(channel, params) as an async iterator of event dicts.

StreamSubscription wraps one channel subscription as a handle:
    - events() returns a lazy sequence; every call starts a fresh iteration,
      so the sequence can be restarted after it ends
    - cancel() stops delivery: once it returns, no further event is yielded
      from any sequence of this handle
    - using the handle as an async context manager cancels it on exit

StreamSourceAdapter turns a subscription into a bounded snapshot: events are
collected until max_events arrive or the window elapses.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncGenerator, AsyncIterator, Mapping

from keystone.adapters.base import SourceAdapter
from keystone.engine.payloads import StreamPayload
from keystone.errors import SourceError, SourceUnavailable, TransientNetworkError
from keystone.models import SourceKind

logger = logging.getLogger(__name__)


class StreamFeed(ABC):
    """Streaming backend contract."""

    @abstractmethod
    def subscribe(self, channel: str, params: Mapping[str, Any]) -> AsyncIterator[dict[str, Any]]:
        """Open a subscription and iterate its update events."""


class StreamSubscription:
    """Cancellable handle over one feed subscription.

    Args:
        feed: Feed to subscribe to
        channel: Channel name
        params: Subscription parameters (pushed-down filters)
    """

    def __init__(self, feed: StreamFeed, channel: str, params: Mapping[str, Any] | None = None) -> None:
        self.feed = feed
        self.channel = channel
        self.params = dict(params or {})
        self._cancelled = False
        self._sequences: set[AsyncGenerator[dict[str, Any], None]] = set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def __aenter__(self) -> "StreamSubscription":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.cancel()

    def events(self) -> AsyncIterator[dict[str, Any]]:
        """Start a new lazy sequence of update events.

        Raises:
            RuntimeError: If the handle was cancelled
        """
        if self._cancelled:
            raise RuntimeError(f"Subscription to {self.channel!r} was cancelled")
        sequence = self._iterate()
        self._sequences.add(sequence)
        return sequence

    async def _iterate(self) -> AsyncGenerator[dict[str, Any], None]:
        source = self.feed.subscribe(self.channel, self.params)
        try:
            async for event in source:
                if self._cancelled:
                    break
                yield event
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                await aclose()

    async def cancel(self) -> None:
        """Stop delivery and release idle sequences."""
        self._cancelled = True
        sequences, self._sequences = self._sequences, set()
        for sequence in sequences:
            # A sequence suspended inside its consumer's await is closed by that
            # consumer; the flag above keeps it from yielding again.
            if not sequence.ag_running:
                await sequence.aclose()
        logger.debug("Cancelled subscription to %s", self.channel)


class StreamSourceAdapter(SourceAdapter):
    """Collects a bounded snapshot of a streaming channel.

    Args:
        feed: Streaming backend
    """

    kind = SourceKind.STREAM

    def __init__(self, feed: StreamFeed) -> None:
        self.feed = feed

    async def execute(self, payload: StreamPayload, timeout: float) -> list[dict[str, Any]]:
        """Collect events until max_events or the window (capped by timeout).

        Raises:
            TransientNetworkError: Feed connection dropped
            SourceUnavailable: Feed rejected the subscription
        """
        window = min(payload.window_ms / 1000.0, timeout)
        rows: list[dict[str, Any]] = []

        async with StreamSubscription(self.feed, payload.channel, payload.params) as subscription:
            try:
                async with asyncio.timeout(window):
                    async for event in subscription.events():
                        rows.append(dict(event))
                        if payload.max_events is not None and len(rows) >= payload.max_events:
                            break
            except TimeoutError:
                logger.debug(
                    "Snapshot window of %.3fs closed on %s with %d events",
                    window, payload.channel, len(rows),
                )
            except SourceError:
                raise
            except (ConnectionError, OSError) as e:
                raise TransientNetworkError(f"Stream {payload.channel} dropped: {e}") from e
            except Exception as e:
                raise SourceUnavailable(f"Stream {payload.channel} failed: {e}") from e

        return rows
