"""Shared fixtures: scripted in-process transport clients and wired services."""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet

from toolhub.application.mcp import MCPServerService
from toolhub.domain.servers.models import (
    ConnectionPolicy,
    StreamTransport,
    SubprocessTransport,
    ToolDefinition,
)
from toolhub.modules.mcp_tools.aggregator import ToolAggregator
from toolhub.modules.mcp_tools.connection_manager import MCPConnectionManager
from toolhub.modules.mcp_tools.credentials import FernetCredentialResolver
from toolhub.modules.mcp_tools.status_sync import StatusSynchronizer
from toolhub.modules.registry import InMemoryServerRegistry


def stream(url: str) -> StreamTransport:
    return StreamTransport(url=url)


def fast_policy(max_retries: int = 0, retry_delay_ms: int = 100, timeout_ms: int = 1000) -> ConnectionPolicy:
    """Policy with test-sized values; the manager does not enforce API bounds."""
    return ConnectionPolicy(max_retries=max_retries, retry_delay_ms=retry_delay_ms, timeout_ms=timeout_ms)


def tools(*names: str) -> List[ToolDefinition]:
    return [
        ToolDefinition(name=name, description=f"{name} tool", input_schema={"type": "object", "properties": {}})
        for name in names
    ]


@dataclass
class FakeServer:
    """Scripted behavior of one endpoint."""
    tools: List[ToolDefinition] = field(default_factory=list)
    connect_error: Optional[BaseException] = None
    connect_delay: float = 0.0
    list_error: Optional[BaseException] = None
    close_error: Optional[BaseException] = None
    connect_attempts: int = 0


class FakeTransportClient:
    """In-process stand-in for a transport client."""

    def __init__(self, server: FakeServer, descriptor, credentials: Optional[Dict]):
        self.server = server
        self.descriptor = descriptor
        self.credentials = credentials
        self.connected = False
        self.disconnect_calls = 0

    async def connect(self) -> None:
        self.server.connect_attempts += 1
        if self.server.connect_delay:
            await asyncio.sleep(self.server.connect_delay)
        if self.server.connect_error is not None:
            raise self.server.connect_error
        self.connected = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False
        if self.server.close_error is not None:
            raise self.server.close_error

    def is_connected(self) -> bool:
        return self.connected

    def drop(self) -> None:
        """Simulate the remote side going away."""
        self.connected = False

    async def list_tools(self) -> List[ToolDefinition]:
        if self.server.list_error is not None:
            raise self.server.list_error
        return list(self.server.tools)


class FakeClientFactory:
    """Client factory keyed by endpoint address (URL or command)."""

    def __init__(self):
        self.servers: Dict[str, FakeServer] = {}
        self.clients: List[FakeTransportClient] = []

    def add(self, address: str, **behavior) -> FakeServer:
        server = FakeServer(**behavior)
        self.servers[address] = server
        return server

    def __call__(self, descriptor, credentials=None) -> FakeTransportClient:
        if isinstance(descriptor, StreamTransport):
            address = descriptor.url
        elif isinstance(descriptor, SubprocessTransport):
            address = descriptor.command
        else:
            raise TypeError(f"unexpected descriptor {descriptor!r}")
        server = self.servers.setdefault(address, FakeServer())
        client = FakeTransportClient(server, descriptor, credentials)
        self.clients.append(client)
        return client

    def clients_for(self, address: str) -> List[FakeTransportClient]:
        return [
            c for c in self.clients
            if getattr(c.descriptor, "url", None) == address or getattr(c.descriptor, "command", None) == address
        ]


@pytest.fixture
def client_factory():
    return FakeClientFactory()


def build_manager(client_factory, **overrides) -> MCPConnectionManager:
    options = dict(
        idle_timeout=0,
        discovery_timeout=1.0,
        close_timeout=1.0,
        test_timeout=2.0,
        backoff_multiplier=1.0,
        max_retry_delay=1.0,
    )
    options.update(overrides)
    return MCPConnectionManager(client_factory=client_factory, **options)


@pytest_asyncio.fixture
async def manager(client_factory):
    mgr = build_manager(client_factory)
    yield mgr
    await mgr.shutdown()


@pytest.fixture
def registry():
    return InMemoryServerRegistry()


@pytest.fixture
def resolver():
    return FernetCredentialResolver(Fernet.generate_key().decode())


@pytest_asyncio.fixture
async def synchronizer(manager, registry):
    sync = StatusSynchronizer(manager, registry, store_timeout=2.0)
    sync.attach()
    yield sync
    await sync.drain()
    sync.detach()


@pytest.fixture
def aggregator(manager, registry, resolver):
    return ToolAggregator(manager, registry, resolver, store_timeout=2.0)


@pytest_asyncio.fixture
async def service(manager, registry, synchronizer, resolver):
    svc = MCPServerService(manager, registry, synchronizer, resolver, store_timeout=2.0)
    yield svc
    await svc.drain()
