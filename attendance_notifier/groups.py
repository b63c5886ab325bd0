"""In-memory directory of WhatsApp groups keyed by display name."""

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Dict, Optional

from .addressing import normalize_subject
from .logger import get_logger

DEFAULT_MISS_REFRESH_INTERVAL = 300.0


class GroupDirectoryCache:
    """Resolve a group subject to its group id.

    The map is filled from the network when empty and on explicit
    :meth:`refresh`.  A lookup miss refreshes at most once every
    ``miss_refresh_interval`` seconds, so a group created after the last
    refresh stays invisible for up to that long.  Duplicate subjects resolve
    to the last group returned by the network.
    """

    def __init__(
        self,
        fetch_groups: Callable[[], Awaitable[Dict[str, Dict[str, Any]]]],
        *,
        miss_refresh_interval: float = DEFAULT_MISS_REFRESH_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        logger=None,
    ):
        self._fetch_groups = fetch_groups
        self.miss_refresh_interval = float(miss_refresh_interval)
        self._clock = clock
        self.logger = logger or get_logger("GroupDirectory")
        self._groups: Dict[str, str] = {}
        self._last_refresh: Optional[float] = None

    def __len__(self) -> int:
        return len(self._groups)

    @property
    def is_empty(self) -> bool:
        return not self._groups

    def invalidate(self) -> None:
        """Drop every entry; the next lookup refetches from the network."""
        self._groups.clear()
        self._last_refresh = None

    async def refresh(self) -> int:
        """Rebuild the map from the network and return the number of groups."""
        groups = await self._fetch_groups()
        directory: Dict[str, str] = {}
        for group_id, info in (groups or {}).items():
            subject = normalize_subject((info or {}).get("subject", ""))
            if not subject:
                continue
            resolved_id = (info or {}).get("id") or group_id
            previous = directory.get(subject)
            if previous and previous != resolved_id:
                self.logger.warning(
                    "Duplicate WhatsApp group subject '%s' (%s, %s); using %s",
                    subject,
                    previous,
                    resolved_id,
                    resolved_id,
                )
            directory[subject] = resolved_id
        self._groups = directory
        self._last_refresh = self._clock()
        self.logger.info("Group directory refreshed with %d groups", len(directory))
        return len(directory)

    def _refresh_allowed(self) -> bool:
        if self._last_refresh is None:
            return True
        return (self._clock() - self._last_refresh) >= self.miss_refresh_interval

    async def resolve(self, name: str) -> Optional[str]:
        """Return the group id for ``name`` or ``None`` when unknown."""
        key = normalize_subject(name)
        if not key:
            return None
        if self.is_empty:
            await self.refresh()
            return self._groups.get(key)
        group_id = self._groups.get(key)
        if group_id is None and self._refresh_allowed():
            await self.refresh()
            group_id = self._groups.get(key)
        return group_id
