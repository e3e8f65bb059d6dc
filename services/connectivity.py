"""Connectivity probes used to gate saves and trigger sync."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], None]


class ConnectivityProbe(ABC):
    """Answers "are we online?" and announces changes to listeners."""

    def __init__(self) -> None:
        self._listeners: List[ConnectivityListener] = []
        self._last_state: Optional[bool] = None

    @abstractmethod
    async def is_online(self) -> bool:
        ...

    def add_listener(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _record(self, online: bool) -> bool:
        changed = self._last_state is not None and self._last_state != online
        self._last_state = online
        if changed:
            logger.info("Connectivity changed: %s", "online" if online else "offline")
            for listener in list(self._listeners):
                listener(online)
        return online


class HttpConnectivityProbe(ConnectivityProbe):
    """Considers the app online when the backend health endpoint answers."""

    def __init__(self, url: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__()
        self.url = url or settings.connectivity_check_url
        self.timeout = timeout or settings.connectivity_timeout_seconds

    async def is_online(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(self.url)
            online = response.status_code < 500
        except httpx.HTTPError as exc:
            logger.debug("Connectivity check failed: %s", exc)
            online = False
        return self._record(online)


class StaticConnectivityProbe(ConnectivityProbe):
    """Fixed answer, flipped manually (server-side saves, tests, CLI)."""

    def __init__(self, online: bool = True):
        super().__init__()
        self._online = online
        self._last_state = online

    async def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        self._online = online
        self._record(online)
