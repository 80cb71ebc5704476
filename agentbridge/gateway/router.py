"""Sender registry — maps platform tags to the sender that delivers replies."""

from __future__ import annotations

import threading

from agentbridge.gateway.channels.base import PlatformSender


class SenderRegistry:
    """Read-mostly registry of platform senders.

    Every dispatch reads it while registration is rare, so writers copy the
    mapping under a lock and swap it in. Readers see a consistent snapshot
    without locking.
    """

    def __init__(self) -> None:
        self._senders: dict[str, PlatformSender] = {}
        self._write_lock = threading.Lock()

    def register(self, platform: str, sender: PlatformSender) -> None:
        """Register (or replace) the sender for a platform."""
        with self._write_lock:
            senders = dict(self._senders)
            senders[platform] = sender
            self._senders = senders

    def unregister(self, platform: str) -> None:
        """Remove the sender for a platform, if any."""
        with self._write_lock:
            senders = dict(self._senders)
            senders.pop(platform, None)
            self._senders = senders

    def get(self, platform: str) -> PlatformSender | None:
        """Get the sender for a platform."""
        return self._senders.get(platform)

    def platforms(self) -> list[str]:
        """List all platforms with a registered sender."""
        return list(self._senders)

    def __contains__(self, platform: str) -> bool:
        return platform in self._senders
