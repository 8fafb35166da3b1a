"""
Sanskriti Setu API — Dependency Health Tracker
================================================

What:  Tracks whether the backing document store is reachable.
Why:   The health endpoint reports dependency liveness separately from
       process liveness, and must answer instantly even when the store hangs.
How:   One background asyncio task tries to connect (bounded by explicit
       server-selection and socket timeouts) and publishes the outcome into a
       lock-guarded ConnectionStateCell. Requests only ever read the cell.
Who:   Started and stopped by the application lifespan (pipeline.py);
       read by routes/health.py.

State machine:
    connecting ──ping ok──────────► connected
        │                               │
        └──driver error──► disconnected ◄┘  (topology lost writable server)
                               │
                               └──► connected  (driver monitor recovers)

    The tracker itself never retries. Recovery is only observed when the
    driver's own topology monitor reports a writable server again.
"""

import asyncio
import contextlib
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Optional

from pymongo import AsyncMongoClient, monitoring
from pymongo.errors import PyMongoError

from sanskriti_api.config import PipelineConfig
from sanskriti_api.exceptions import InvalidTransitionError

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


_ALLOWED_TRANSITIONS: Dict[ConnectionState, FrozenSet[ConnectionState]] = {
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.CONNECTED: frozenset({ConnectionState.DISCONNECTED}),
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTED}),
}


class ConnectionStateCell:
    """
    The single owned copy of the dependency's connection state.

    Written from the connection task and from PyMongo's monitor callbacks,
    read from any request, so every access goes through one lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = ConnectionState.CONNECTING
        self._changed_at = datetime.now(timezone.utc)

    def observe(self) -> ConnectionState:
        with self._lock:
            return self._state

    def record_transition(self, state: ConnectionState) -> bool:
        """
        Move to `state`. Returns False when already there (no-op).

        Raises:
            InvalidTransitionError: the state machine forbids the move.
        """
        with self._lock:
            if state is self._state:
                return False
            if state not in _ALLOWED_TRANSITIONS[self._state]:
                raise InvalidTransitionError(self._state, state)
            previous, self._state = self._state, state
            self._changed_at = datetime.now(timezone.utc)
        logger.info("Dependency state: %s -> %s", previous.value, state.value)
        return True

    @property
    def changed_at(self) -> datetime:
        with self._lock:
            return self._changed_at


@dataclass(frozen=True)
class DependencyStatus:
    """Snapshot handed to the health endpoint."""

    connected: bool
    status: str


class TopologyStateListener(monitoring.TopologyListener):
    """
    Publishes drops and recoveries seen by the driver's topology monitor.

    Ignored while still connecting: the initial attempt owns the first
    transition out of CONNECTING.
    """

    def __init__(self, cell: ConnectionStateCell) -> None:
        self._cell = cell

    def opened(self, event) -> None:
        pass

    def description_changed(self, event) -> None:
        writable = event.new_description.has_writable_server()
        current = self._cell.observe()
        if current is ConnectionState.CONNECTED and not writable:
            self._cell.record_transition(ConnectionState.DISCONNECTED)
        elif current is ConnectionState.DISCONNECTED and writable:
            self._cell.record_transition(ConnectionState.CONNECTED)

    def closed(self, event) -> None:
        pass


class DependencyHealthTracker:
    """
    Owns the background connection attempt to the document store.

    Args:
        uri: connection string (MONGODB_URI)
        server_selection_timeout_ms: upper bound for finding a usable server
        socket_timeout_ms: upper bound for an idle socket read
        cell: state cell to publish into (a fresh one by default)
        client_factory: AsyncMongoClient-compatible constructor, swappable in tests
    """

    def __init__(
        self,
        uri: str,
        *,
        server_selection_timeout_ms: int = 5000,
        socket_timeout_ms: int = 45_000,
        cell: Optional[ConnectionStateCell] = None,
        client_factory: Callable[..., Any] = AsyncMongoClient,
    ) -> None:
        self.uri = uri
        self.server_selection_timeout_ms = server_selection_timeout_ms
        self.socket_timeout_ms = socket_timeout_ms
        self.cell = cell or ConnectionStateCell()
        self._client_factory = client_factory
        self._client: Optional[Any] = None
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls, config: PipelineConfig, **kwargs) -> "DependencyHealthTracker":
        return cls(
            config.mongodb_uri,
            server_selection_timeout_ms=config.mongodb_server_selection_timeout_ms,
            socket_timeout_ms=config.mongodb_socket_timeout_ms,
            **kwargs,
        )

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def start(self) -> asyncio.Task:
        """
        Schedule the connection attempt and return immediately.

        Must be called from a running event loop (the app lifespan).
        Calling it twice returns the existing task.
        """
        if self._task is None:
            self._task = asyncio.create_task(self._connect(), name="dependency-connect")
            self._task.add_done_callback(self._report_crash)
        return self._task

    @property
    def connection_task(self) -> Optional[asyncio.Task]:
        return self._task

    async def stop(self) -> None:
        """Cancel a pending attempt and close the client."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        if self._client is not None:
            await self._client.close()
            self._client = None

    # ── Read side ─────────────────────────────────────────────────────────

    def current_state(self) -> DependencyStatus:
        """Last recorded state. Never performs I/O, never blocks on the task."""
        state = self.cell.observe()
        return DependencyStatus(
            connected=state is ConnectionState.CONNECTED,
            status=state.value,
        )

    # ── Connection attempt ────────────────────────────────────────────────

    async def _connect(self) -> None:
        logger.info(
            "Connecting to dependency (serverSelectionTimeoutMS=%d, socketTimeoutMS=%d)",
            self.server_selection_timeout_ms,
            self.socket_timeout_ms,
        )
        try:
            self._client = self._client_factory(
                self.uri,
                serverSelectionTimeoutMS=self.server_selection_timeout_ms,
                socketTimeoutMS=self.socket_timeout_ms,
                event_listeners=[TopologyStateListener(self.cell)],
            )
            await self._client.admin.command("ping")
        except PyMongoError as e:
            logger.warning("Dependency unreachable: %s", str(e))
            self.cell.record_transition(ConnectionState.DISCONNECTED)
            return

        self.cell.record_transition(ConnectionState.CONNECTED)
        # The listener ignores changes while connecting, so a drop between the
        # ping and the line above has to be picked up here.
        if not self._client.topology_description.has_writable_server():
            logger.warning("Dependency lost its writable server right after connecting")
            self.cell.record_transition(ConnectionState.DISCONNECTED)

    @staticmethod
    def _report_crash(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Dependency connection task crashed: %s", exc, exc_info=exc)
