"""Connection lifecycle manager for MCP tool servers.

Holds one managed connection per ``user_id:server_id`` key and drives each
through ``disconnected -> connecting -> connected`` (or ``error``). At most
one connect and one disconnect can be in flight per key; structural changes
to the connection map are serialized by a single lock.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set

from toolhub.core.log_sanitizer import sanitize_for_logging
from toolhub.core.metrics_logger import log_metric
from toolhub.domain.errors import (
    AlreadyConnectedError,
    AlreadyManagedError,
    ConfigurationError,
    ConnectionInProgressError,
    ConnectionTimeoutError,
    MCPConnectionError,
    ServerNotManagedError,
    ToolListingError,
)
from toolhub.domain.servers.models import (
    ConnectionPolicy,
    ConnectionSnapshot,
    ConnectionStatus,
    ConnectionTestResult,
    ServerDefinition,
    StatusCorrection,
    ToolDefinition,
    TransportDescriptor,
)
from toolhub.interfaces.transport import TransportClientFactory, TransportClientProtocol
from toolhub.modules.config import config_manager
from toolhub.modules.mcp_tools.transport import (
    classify_connection_error,
    create_transport_client,
    suggestion_for,
)

logger = logging.getLogger(__name__)

StatusListener = Callable[[ConnectionSnapshot], Awaitable[None]]

# Number of recent connect latencies kept for averages
_LATENCY_WINDOW = 200


def make_key(user_id: str, server_id: str) -> str:
    return f"{user_id}:{server_id}"


@dataclass
class ManagedConnection:
    """In-memory record for one user's link to one server."""
    user_id: str
    server_id: str
    transport: TransportDescriptor
    policy: ConnectionPolicy
    credentials: Optional[Dict] = None
    client: Optional[TransportClientProtocol] = None
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    retry_count: int = 0
    last_error: Optional[str] = None
    last_connected: Optional[datetime] = None
    tools: List[ToolDefinition] = field(default_factory=list)
    tools_listed: bool = False
    latency_ms: Optional[float] = None
    idle_handle: Optional[asyncio.TimerHandle] = None
    connect_task: Optional[asyncio.Task] = None
    disconnect_task: Optional[asyncio.Task] = None
    stop_retrying: bool = False
    removed: bool = False

    @property
    def key(self) -> str:
        return make_key(self.user_id, self.server_id)

    def connect_in_flight(self) -> bool:
        return self.connect_task is not None and not self.connect_task.done()

    def disconnect_in_flight(self) -> bool:
        return self.disconnect_task is not None and not self.disconnect_task.done()

    def client_alive(self) -> bool:
        return self.client is not None and self.client.is_connected()

    def snapshot(self) -> ConnectionSnapshot:
        return ConnectionSnapshot(
            user_id=self.user_id,
            server_id=self.server_id,
            status=self.status,
            retry_count=self.retry_count,
            last_error=self.last_error,
            last_connected=self.last_connected,
            tools=list(self.tools),
            latency_ms=self.latency_ms,
            tools_listed=self.tools_listed,
        )


class MCPConnectionManager:
    """Manager for live MCP server connections.

    Supports:
    - Per-key connect/disconnect serialization (concurrent connects are rejected)
    - Bounded connect attempts with exponential backoff between retries
    - Idle cleanup of untouched connections
    - Reconciliation of persisted status against live connectivity
    - Status listeners notified on every transition
    """

    def __init__(
        self,
        client_factory: Optional[TransportClientFactory] = None,
        idle_timeout: Optional[float] = None,
        discovery_timeout: Optional[float] = None,
        close_timeout: Optional[float] = None,
        test_timeout: Optional[float] = None,
        backoff_multiplier: Optional[float] = None,
        max_retry_delay: Optional[float] = None,
    ):
        app_settings = config_manager.app_settings
        self._client_factory: TransportClientFactory = client_factory or create_transport_client
        self._idle_timeout = app_settings.mcp_idle_timeout if idle_timeout is None else idle_timeout
        self._discovery_timeout = (
            app_settings.mcp_discovery_timeout if discovery_timeout is None else discovery_timeout
        )
        self._close_timeout = app_settings.mcp_close_timeout if close_timeout is None else close_timeout
        self._test_timeout = app_settings.mcp_test_timeout if test_timeout is None else test_timeout
        self._backoff_multiplier = (
            app_settings.mcp_retry_backoff_multiplier if backoff_multiplier is None else backoff_multiplier
        )
        self._max_retry_delay = app_settings.mcp_retry_max_delay if max_retry_delay is None else max_retry_delay

        self._connections: Dict[str, ManagedConnection] = {}
        self._map_lock = asyncio.Lock()
        self._listeners: List[StatusListener] = []
        self._background_tasks: Set[asyncio.Task] = set()
        self._latencies: Deque[float] = deque(maxlen=_LATENCY_WINDOW)

    # ------------------------------------------------------------------
    # Listeners and bookkeeping
    # ------------------------------------------------------------------

    def add_status_listener(self, listener: StatusListener) -> None:
        """Register an async callback invoked with a snapshot on every status transition."""
        self._listeners.append(listener)

    def remove_status_listener(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _set_status(self, entry: ManagedConnection, status: ConnectionStatus) -> None:
        entry.status = status
        await self._notify(entry.snapshot())

    async def _notify(self, snapshot: ConnectionSnapshot) -> None:
        for listener in list(self._listeners):
            try:
                await listener(snapshot)
            except Exception as e:
                logger.error(
                    "Status listener failed for %s: %s",
                    sanitize_for_logging(snapshot.key),
                    e,
                    exc_info=True,
                )

    def _spawn(self, coro) -> asyncio.Task:
        """Run a coroutine as a tracked background task whose failure is logged."""
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background connection task failed: %s", exc, exc_info=exc)

    def _touch(self, entry: ManagedConnection) -> None:
        """Restart the idle clock of an entry."""
        if entry.idle_handle is not None:
            entry.idle_handle.cancel()
            entry.idle_handle = None
        if entry.removed or not self._idle_timeout or self._idle_timeout <= 0:
            return
        loop = asyncio.get_running_loop()
        entry.idle_handle = loop.call_later(self._idle_timeout, self._on_idle_timeout, entry)

    def _on_idle_timeout(self, entry: ManagedConnection) -> None:
        entry.idle_handle = None
        # The key may have been removed or re-registered since the timer was armed
        if entry.removed or self._connections.get(entry.key) is not entry:
            return
        logger.info("Idle timeout reached for %s, removing connection", sanitize_for_logging(entry.key))
        self._spawn(self._expire(entry))

    async def _expire(self, entry: ManagedConnection) -> None:
        async with self._map_lock:
            if self._connections.get(entry.key) is not entry:
                return
            self._detach(entry)
        await self._disconnect_entry(entry)

    def _detach(self, entry: ManagedConnection) -> None:
        """Drop an entry from the map and cancel its idle timer. Caller holds the map lock."""
        self._connections.pop(entry.key, None)
        entry.removed = True
        if entry.idle_handle is not None:
            entry.idle_handle.cancel()
            entry.idle_handle = None

    def _retry_delay(self, policy: ConnectionPolicy, retry_number: int) -> float:
        """Seconds to wait before the given retry (1-based)."""
        base = policy.retry_delay_ms / 1000.0
        delay = base * (self._backoff_multiplier ** (retry_number - 1))
        return min(delay, max(self._max_retry_delay, base))

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(
        self,
        user_id: str,
        server_id: str,
        transport: TransportDescriptor,
        policy: Optional[ConnectionPolicy] = None,
        credentials: Optional[Dict] = None,
        replace: bool = False,
    ) -> ConnectionSnapshot:
        """Create a managed entry without connecting.

        Raises:
            ConfigurationError: malformed transport descriptor
            AlreadyManagedError: an entry exists and replace is False
        """
        transport.validate()
        policy = policy or ConnectionPolicy()
        key = make_key(user_id, server_id)

        while True:
            async with self._map_lock:
                existing = self._connections.get(key)
                if existing is None:
                    entry = ManagedConnection(
                        user_id=user_id,
                        server_id=server_id,
                        transport=transport,
                        policy=policy,
                        credentials=credentials,
                    )
                    self._connections[key] = entry
                    self._touch(entry)
                    logger.info("Registered MCP server %s", sanitize_for_logging(key))
                    return entry.snapshot()
                if not replace:
                    raise AlreadyManagedError(
                        f"Server {server_id} is already managed for this user",
                        code="ALREADY_MANAGED",
                    )
                self._detach(existing)
            # Old entry is fully torn down before the replacement is installed
            logger.info("Replacing managed MCP server %s", sanitize_for_logging(key))
            await self._disconnect_entry(existing)

    def is_managed(self, user_id: str, server_id: str) -> bool:
        return make_key(user_id, server_id) in self._connections

    def users_for_server(self, server_id: str) -> List[str]:
        """User ids holding an entry for server_id."""
        return [entry.user_id for entry in self._connections.values() if entry.server_id == server_id]

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    async def connect(
        self,
        user_id: str,
        server_id: str,
        transport: Optional[TransportDescriptor] = None,
        policy: Optional[ConnectionPolicy] = None,
        credentials: Optional[Dict] = None,
    ) -> ConnectionSnapshot:
        """Connect a managed server, registering it first when a transport is supplied.

        Connect failures are not raised: the returned snapshot carries the
        final ``error`` status and message.

        Raises:
            ServerNotManagedError: unknown key and no transport supplied
            ConnectionInProgressError: a connect or disconnect is already running for this key
            AlreadyConnectedError: the entry is already connected
        """
        key = make_key(user_id, server_id)
        entry = self._connections.get(key)
        if entry is None:
            if transport is None:
                raise ServerNotManagedError(f"Server {server_id} is not managed", code="NOT_MANAGED")
            try:
                await self.register(user_id, server_id, transport, policy, credentials)
            except AlreadyManagedError:
                pass
            entry = self._connections.get(key)
            if entry is None:
                raise ServerNotManagedError(f"Server {server_id} was removed during connect", code="NOT_MANAGED")
        elif credentials is not None:
            entry.credentials = credentials

        self._touch(entry)
        if entry.connect_in_flight() or entry.disconnect_in_flight():
            raise ConnectionInProgressError(
                f"A connection operation is already in progress for server {server_id}",
                code="CONNECTION_IN_PROGRESS",
            )
        if entry.status == ConnectionStatus.CONNECTED:
            raise AlreadyConnectedError(f"Server {server_id} is already connected", code="ALREADY_CONNECTED")

        entry.status = ConnectionStatus.CONNECTING
        entry.stop_retrying = False
        entry.connect_task = asyncio.create_task(self._run_connect(entry))
        return await asyncio.shield(entry.connect_task)

    async def _run_connect(self, entry: ManagedConnection) -> ConnectionSnapshot:
        policy = entry.policy
        safe_key = sanitize_for_logging(entry.key)
        attempts = 0
        entry.retry_count = 0

        for attempt in range(policy.max_retries + 1):
            if attempt > 0:
                if entry.stop_retrying:
                    logger.info("Stopping connect retries for %s", safe_key)
                    break
                entry.retry_count = attempt
                delay = self._retry_delay(policy, attempt)
                logger.info(
                    "Retrying connection to %s in %.2fs (retry %d/%d)",
                    safe_key, delay, attempt, policy.max_retries,
                )
                await asyncio.sleep(delay)
                if entry.stop_retrying:
                    break

            await self._set_status(entry, ConnectionStatus.CONNECTING)
            attempts += 1
            try:
                client = self._client_factory(entry.transport, entry.credentials)
            except ConfigurationError as e:
                entry.last_error = e.message
                logger.error("Invalid transport for %s: %s", safe_key, e.message)
                await self._set_status(entry, ConnectionStatus.ERROR)
                break

            started = time.monotonic()
            error: Optional[MCPConnectionError] = None
            try:
                await asyncio.wait_for(client.connect(), timeout=policy.timeout_ms / 1000.0)
            except asyncio.TimeoutError:
                error = ConnectionTimeoutError(
                    f"Connection timed out after {policy.timeout_ms}ms",
                    code="CONNECTION_TIMEOUT",
                )
            except Exception as e:
                error = classify_connection_error(e)

            if error is None:
                latency_ms = (time.monotonic() - started) * 1000.0
                entry.client = client
                entry.latency_ms = latency_ms
                self._latencies.append(latency_ms)
                entry.last_error = None
                entry.tools, entry.tools_listed = await self._discover_tools(entry)
                entry.retry_count = 0
                entry.last_connected = datetime.now(timezone.utc)
                await self._set_status(entry, ConnectionStatus.CONNECTED)
                logger.info(
                    "Connected to %s in %.0fms with %d tools",
                    safe_key, latency_ms, len(entry.tools),
                )
                log_metric(
                    "mcp_connect", entry.user_id,
                    server_id=entry.server_id, status="connected",
                    attempts=attempts, latency_ms=round(latency_ms), tool_count=len(entry.tools),
                )
                return entry.snapshot()

            await self._close_client(client, entry.key)
            entry.last_error = error.message
            logger.warning(
                "Connect attempt %d for %s failed (%s): %s",
                attempts, safe_key, error.code, sanitize_for_logging(error.message),
            )
            await self._set_status(entry, ConnectionStatus.ERROR)

        logger.error(
            "Giving up on %s after %d attempts: %s",
            safe_key, attempts, sanitize_for_logging(entry.last_error),
        )
        log_metric("mcp_connect", entry.user_id, server_id=entry.server_id, status="error", attempts=attempts)
        return entry.snapshot()

    async def _discover_tools(self, entry: ManagedConnection):
        """List tools on a freshly connected client. Failure yields no tools, not an error state."""
        try:
            tools = await asyncio.wait_for(entry.client.list_tools(), timeout=self._discovery_timeout)
            return list(tools), True
        except asyncio.TimeoutError:
            entry.last_error = f"Tool listing timed out after {self._discovery_timeout}s"
        except Exception as e:
            entry.last_error = f"Tool listing failed: {e}"
        logger.warning(
            "Connected to %s but tool discovery failed: %s",
            sanitize_for_logging(entry.key),
            sanitize_for_logging(entry.last_error),
        )
        return [], False

    async def ensure_connected(
        self,
        user_id: str,
        server_id: str,
        transport: TransportDescriptor,
        policy: Optional[ConnectionPolicy] = None,
        credentials: Optional[Dict] = None,
    ) -> ConnectionSnapshot:
        """Return a connected snapshot when possible, connecting on demand.

        Unlike connect(), an in-flight connect is awaited and its outcome shared.
        Never raises for connection failures.
        """
        key = make_key(user_id, server_id)
        entry = self._connections.get(key)
        if entry is not None:
            self._touch(entry)
            if entry.status == ConnectionStatus.CONNECTED:
                if entry.client_alive():
                    return entry.snapshot()
                await self._mark_lost(entry)
            if entry.connect_in_flight():
                return await asyncio.shield(entry.connect_task)
            if entry.disconnect_in_flight():
                await asyncio.wait({entry.disconnect_task})

        try:
            return await self.connect(user_id, server_id, transport, policy, credentials)
        except ConnectionInProgressError:
            entry = self._connections.get(key)
            if entry is not None and entry.connect_in_flight():
                return await asyncio.shield(entry.connect_task)
            return self.get_status(user_id, server_id)
        except AlreadyConnectedError:
            return self.get_status(user_id, server_id)

    async def list_tools(self, user_id: str, server_id: str) -> List[ToolDefinition]:
        """List tools from a connected server's live client.

        Raises:
            ToolListingError: not connected, listing failed, or listing timed out
        """
        entry = self._connections.get(make_key(user_id, server_id))
        if entry is None or entry.status != ConnectionStatus.CONNECTED or entry.client is None:
            raise ToolListingError(f"Server {server_id} is not connected", code="NOT_CONNECTED")
        self._touch(entry)
        try:
            tools = await asyncio.wait_for(entry.client.list_tools(), timeout=self._discovery_timeout)
        except asyncio.TimeoutError as e:
            raise ToolListingError(
                f"Tool listing for server {server_id} timed out after {self._discovery_timeout}s",
                code="TOOL_LISTING_TIMEOUT",
            ) from e
        except ToolListingError:
            raise
        except Exception as e:
            raise ToolListingError(f"Tool listing for server {server_id} failed: {e}") from e
        entry.tools = list(tools)
        entry.tools_listed = True
        return list(tools)

    # ------------------------------------------------------------------
    # Disconnect / reconnect / remove
    # ------------------------------------------------------------------

    async def disconnect(self, user_id: str, server_id: str) -> ConnectionSnapshot:
        """Close a connection. Always ends ``disconnected``; no-op for unknown keys."""
        entry = self._connections.get(make_key(user_id, server_id))
        if entry is None:
            return ConnectionSnapshot(user_id=user_id, server_id=server_id)
        self._touch(entry)
        return await self._disconnect_entry(entry)

    async def _disconnect_entry(self, entry: ManagedConnection) -> ConnectionSnapshot:
        if not entry.disconnect_in_flight():
            entry.disconnect_task = asyncio.create_task(self._run_disconnect(entry))
        return await asyncio.shield(entry.disconnect_task)

    async def _run_disconnect(self, entry: ManagedConnection) -> ConnectionSnapshot:
        if entry.connect_in_flight():
            # Let the running attempt finish, then close whatever it produced
            entry.stop_retrying = True
            await asyncio.wait({entry.connect_task})

        client = entry.client
        entry.client = None
        if client is not None:
            await self._close_client(client, entry.key)

        entry.tools = []
        entry.tools_listed = False
        entry.retry_count = 0
        entry.last_error = None
        if entry.status != ConnectionStatus.DISCONNECTED:
            await self._set_status(entry, ConnectionStatus.DISCONNECTED)
            logger.info("Disconnected %s", sanitize_for_logging(entry.key))
            log_metric("mcp_disconnect", entry.user_id, server_id=entry.server_id)
        return entry.snapshot()

    async def _close_client(self, client: TransportClientProtocol, key: str) -> None:
        """Close a client; failures are logged, never raised."""
        try:
            await asyncio.wait_for(client.disconnect(), timeout=self._close_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Timed out closing MCP client for %s after %ss",
                sanitize_for_logging(key), self._close_timeout,
            )
        except Exception as e:
            logger.warning("Error closing MCP client for %s: %s", sanitize_for_logging(key), e)

    def _demote_lost(self, entry: ManagedConnection) -> None:
        """Move a connected entry whose client no longer reports a live session to ``error``."""
        logger.warning("Connection to %s was lost", sanitize_for_logging(entry.key))
        client = entry.client
        entry.client = None
        entry.tools = []
        entry.tools_listed = False
        entry.last_error = "Connection lost"
        entry.status = ConnectionStatus.ERROR
        if client is not None:
            self._spawn(self._close_client(client, entry.key))

    async def _mark_lost(self, entry: ManagedConnection) -> None:
        self._demote_lost(entry)
        await self._notify(entry.snapshot())

    def _observe(self, entry: ManagedConnection) -> None:
        """Synchronous liveness check for status reads; listeners are notified in the background."""
        if entry.status == ConnectionStatus.CONNECTED and not entry.client_alive():
            self._demote_lost(entry)
            self._spawn(self._notify(entry.snapshot()))

    async def reconnect(
        self,
        user_id: str,
        server_id: str,
        transport: Optional[TransportDescriptor] = None,
        policy: Optional[ConnectionPolicy] = None,
        credentials: Optional[Dict] = None,
    ) -> ConnectionSnapshot:
        """Disconnect, then connect with a freshly built client.

        A supplied transport, policy or credentials replace the stored ones.
        """
        key = make_key(user_id, server_id)
        entry = self._connections.get(key)
        if entry is None:
            if transport is None:
                raise ServerNotManagedError(f"Server {server_id} is not managed", code="NOT_MANAGED")
            return await self.connect(user_id, server_id, transport, policy, credentials)
        if entry.connect_in_flight():
            raise ConnectionInProgressError(
                f"A connection operation is already in progress for server {server_id}",
                code="CONNECTION_IN_PROGRESS",
            )

        if transport is not None:
            transport.validate()

        await self._disconnect_entry(entry)
        if transport is not None:
            entry.transport = transport
        if policy is not None:
            entry.policy = policy
        if credentials is not None:
            entry.credentials = credentials
        return await self.connect(user_id, server_id, entry.transport, entry.policy, entry.credentials)

    async def remove(self, user_id: str, server_id: str) -> None:
        """Disconnect, cancel the idle timer and forget the entry. Idempotent."""
        async with self._map_lock:
            entry = self._connections.get(make_key(user_id, server_id))
            if entry is None:
                return
            self._detach(entry)
        await self._disconnect_entry(entry)
        logger.info("Removed MCP server %s", sanitize_for_logging(entry.key))

    async def remove_server(self, server_id: str) -> None:
        """Remove every user's connection to server_id."""
        for user_id in self.users_for_server(server_id):
            await self.remove(user_id, server_id)

    async def remove_user(self, user_id: str) -> None:
        """Remove every connection held for user_id."""
        server_ids = [entry.server_id for entry in self._connections.values() if entry.user_id == user_id]
        await asyncio.gather(*(self.remove(user_id, server_id) for server_id in server_ids))

    async def record_failure(self, user_id: str, server_id: str, message: str) -> ConnectionSnapshot:
        """Put an idle entry into ``error`` with message.

        Entries with a connect or disconnect running are left to that operation.
        Unknown keys only get an error snapshot back.
        """
        entry = self._connections.get(make_key(user_id, server_id))
        if entry is None:
            return ConnectionSnapshot(
                user_id=user_id,
                server_id=server_id,
                status=ConnectionStatus.ERROR,
                last_error=message,
            )
        if entry.connect_in_flight() or entry.disconnect_in_flight():
            return entry.snapshot()
        entry.last_error = message
        await self._set_status(entry, ConnectionStatus.ERROR)
        return entry.snapshot()

    async def shutdown(self) -> None:
        """Close every connection and wait for background work to finish."""
        async with self._map_lock:
            entries = list(self._connections.values())
            for entry in entries:
                self._detach(entry)
        if entries:
            logger.info("Closing %d MCP connections", len(entries))
        await asyncio.gather(*(self._disconnect_entry(entry) for entry in entries))
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self, user_id: str, server_id: str) -> ConnectionSnapshot:
        """Current snapshot, or a default disconnected one for unknown keys."""
        entry = self._connections.get(make_key(user_id, server_id))
        if entry is None:
            return ConnectionSnapshot(user_id=user_id, server_id=server_id)
        self._touch(entry)
        self._observe(entry)
        return entry.snapshot()

    def get_all_statuses(self) -> Dict[str, ConnectionSnapshot]:
        entries = list(self._connections.values())
        for entry in entries:
            self._touch(entry)
            self._observe(entry)
        return {entry.key: entry.snapshot() for entry in entries}

    def observed_latencies(self) -> List[float]:
        """Recent successful connect latencies in milliseconds."""
        return list(self._latencies)

    async def reconcile(self, server: ServerDefinition, user_id: Optional[str] = None) -> StatusCorrection:
        """Compute the persisted status a server definition should carry.

        The live connection wins over the persisted value. Without a managed
        entry nothing can be connected or connecting, so those persisted values
        fall back to ``disconnected``; a persisted ``error`` stays as is.
        """
        user_id = user_id or server.owner_id
        entry = self._connections.get(make_key(user_id, server.id))

        if entry is None:
            if server.connection_status in (ConnectionStatus.CONNECTED, ConnectionStatus.CONNECTING):
                status = ConnectionStatus.DISCONNECTED
                last_error = None
            else:
                status = server.connection_status
                last_error = server.last_error if status == ConnectionStatus.ERROR else None
            last_connected = server.last_connected
        else:
            self._touch(entry)
            if entry.status == ConnectionStatus.CONNECTED and not entry.client_alive():
                await self._mark_lost(entry)
            status = entry.status
            last_error = entry.last_error
            last_connected = entry.last_connected or server.last_connected

        changed = (
            status != server.connection_status
            or last_error != server.last_error
            or last_connected != server.last_connected
        )
        if changed:
            logger.info(
                "Status drift for %s: persisted=%s live=%s",
                sanitize_for_logging(make_key(user_id, server.id)),
                server.connection_status.value,
                status.value,
            )
        return StatusCorrection(
            status=status,
            last_error=last_error,
            last_connected=last_connected,
            changed=changed,
        )

    # ------------------------------------------------------------------
    # Connection test
    # ------------------------------------------------------------------

    async def test_connection(
        self,
        transport: TransportDescriptor,
        credentials: Optional[Dict] = None,
        timeout_ms: Optional[int] = None,
    ) -> ConnectionTestResult:
        """Connect a temporary, unmanaged client, list its tools and close it.

        Raises:
            ConfigurationError: malformed transport descriptor
        """
        transport.validate()
        timeout = self._test_timeout
        if timeout_ms is not None:
            timeout = min(timeout_ms / 1000.0, self._test_timeout)

        client = self._client_factory(transport, credentials)
        started = time.monotonic()
        try:
            try:
                await asyncio.wait_for(client.connect(), timeout=timeout)
            except asyncio.TimeoutError:
                error: MCPConnectionError = ConnectionTimeoutError(
                    f"Connection timed out after {int(timeout * 1000)}ms",
                    code="CONNECTION_TIMEOUT",
                )
            except Exception as e:
                error = classify_connection_error(e)
            else:
                latency_ms = (time.monotonic() - started) * 1000.0
                tools: List[ToolDefinition] = []
                try:
                    tools = list(await asyncio.wait_for(client.list_tools(), timeout=self._discovery_timeout))
                except asyncio.TimeoutError:
                    logger.warning("Connection test: tool listing timed out")
                except Exception as e:
                    logger.warning("Connection test: tool listing failed: %s", e)
                return ConnectionTestResult(success=True, tools=tools, latency_ms=latency_ms)
        finally:
            await self._close_client(client, "connection-test")

        return ConnectionTestResult(
            success=False,
            error=error.message,
            error_code=error.code,
            suggestion=suggestion_for(error),
        )
