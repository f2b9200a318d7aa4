"""Connectivity tracking with an event channel for online/offline transitions."""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Set

logger = logging.getLogger("grow_sdk.connectivity")


class ConnectivityState(str, enum.Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class InterfaceKind(str, enum.Enum):
    WIFI = "wifi"
    CELLULAR = "cellular"
    ETHERNET = "ethernet"
    BLUETOOTH = "bluetooth"
    VPN = "vpn"
    OTHER = "other"
    NONE = "none"


ONLINE_INTERFACES = frozenset({InterfaceKind.WIFI, InterfaceKind.CELLULAR, InterfaceKind.ETHERNET})

Classifier = Callable[[InterfaceKind], ConnectivityState]
Probe = Callable[[], Awaitable[InterfaceKind]]
ReconnectHandler = Callable[[], Awaitable[object]]


def default_classifier(kind: InterfaceKind) -> ConnectivityState:
    return ConnectivityState.ONLINE if kind in ONLINE_INTERFACES else ConnectivityState.OFFLINE


def socket_probe(host: str = "1.1.1.1", port: int = 53, timeout: float = 3.0) -> Probe:
    """Build a probe that reports ethernet when a TCP connection to ``host`` succeeds."""

    async def probe() -> InterfaceKind:
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
        except (OSError, asyncio.TimeoutError):
            return InterfaceKind.NONE
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return InterfaceKind.ETHERNET

    return probe


@dataclass(frozen=True)
class ConnectivityEvent:
    previous: ConnectivityState
    current: ConnectivityState
    interface: InterfaceKind
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def reconnected(self) -> bool:
        return self.previous is ConnectivityState.OFFLINE and self.current is ConnectivityState.ONLINE


class ConnectivityMonitor:
    """Tracks the online/offline state reported by the platform network stack.

    Platform callbacks call :meth:`update` with the active interface kind;
    :meth:`check` asks the probe instead. Transitions are broadcast to every
    queue returned by :meth:`subscribe`, and the single reconnect handler runs
    once per offline to online transition regardless of listener count.
    """

    def __init__(
        self,
        probe: Optional[Probe] = None,
        *,
        classifier: Classifier = default_classifier,
        initial: ConnectivityState = ConnectivityState.OFFLINE,
    ) -> None:
        self._probe = probe or socket_probe()
        self._classifier = classifier
        self._state = initial
        self._interface = InterfaceKind.NONE
        self._subscribers: List[asyncio.Queue[ConnectivityEvent]] = []
        self._reconnect_handler: Optional[ReconnectHandler] = None
        self._handler_tasks: Set[asyncio.Task] = set()
        self._poll_task: Optional[asyncio.Task] = None

    def current_state(self) -> ConnectivityState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state is ConnectivityState.ONLINE

    @property
    def interface(self) -> InterfaceKind:
        return self._interface

    def subscribe(self) -> asyncio.Queue[ConnectivityEvent]:
        queue: asyncio.Queue[ConnectivityEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ConnectivityEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def on_reconnect(self, handler: Optional[ReconnectHandler]) -> None:
        self._reconnect_handler = handler

    async def check(self) -> ConnectivityState:
        try:
            kind = await self._probe()
        except Exception as exc:
            logger.warning("Connectivity check failed, assuming offline: %s", exc)
            kind = InterfaceKind.NONE
        await self.update(kind)
        return self._state

    async def update(self, kind: InterfaceKind) -> Optional[ConnectivityEvent]:
        """Apply an interface change. Returns the transition event, if any."""
        self._interface = kind
        previous = self._state
        current = self._classifier(kind)
        if current is previous:
            return None

        self._state = current
        event = ConnectivityEvent(previous=previous, current=current, interface=kind)
        if event.reconnected:
            logger.info("Network connection restored via %s", kind.value)
        else:
            logger.warning("Network connection lost (%s); switching to offline mode", kind.value)

        for queue in list(self._subscribers):
            queue.put_nowait(event)

        if event.reconnected and self._reconnect_handler is not None:
            task = asyncio.get_running_loop().create_task(self._run_reconnect_handler(self._reconnect_handler))
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)
        return event

    async def _run_reconnect_handler(self, handler: ReconnectHandler) -> None:
        try:
            await handler()
        except Exception:
            logger.exception("Reconnect handler failed")

    async def join(self) -> None:
        """Wait for reconnect handlers that are still running."""
        while True:
            pending = [task for task in self._handler_tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def start(self, interval: float = 10.0) -> None:
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_task = asyncio.get_running_loop().create_task(self._poll(interval))

    async def _poll(self, interval: float) -> None:
        while True:
            await self.check()
            await asyncio.sleep(interval)

    async def stop(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for pending in list(self._handler_tasks):
            pending.cancel()
        await asyncio.gather(*list(self._handler_tasks), return_exceptions=True)


__all__ = [
    "ConnectivityEvent",
    "ConnectivityMonitor",
    "ConnectivityState",
    "InterfaceKind",
    "default_classifier",
    "socket_probe",
]
