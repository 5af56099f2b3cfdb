# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the piflow test suite.

This module provides foundational fixtures used across all test modules:
- Temporary databases with a registered device
- An in-memory fake of the SSH session layer (FakeSessionFactory)
- A FlowOrchestrator wired to both

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
    Script remote command results on the fake before running a flow:

        def test_something(fake_sessions, orchestrator):
            fake_sessions.script("uname", CommandResult(exit_code=0, stdout="Linux pi"))
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from flow_helpers import OWNER

from piflow.core.config import EngineConfig
from piflow.core.engine import FlowOrchestrator
from piflow.core.state import Database, DeviceRecord
from piflow.remote.session import (
    CommandResult,
    ConnectionDescriptor,
    RemoteConnectionError,
    RemoteExecutionError,
    SessionConfig,
)


# =============================================================================
# Fake remote sessions
# =============================================================================


class FakeSession:
    """In-memory stand-in for RemoteSession.

    Commands are answered from the factory's script: the first scripted
    substring found in the command decides the result. A scripted list is
    consumed one entry per call (the last entry repeats). Scripted
    exceptions are raised instead of returned; a scripted asyncio.Event
    blocks the command until it is set.
    """

    def __init__(self, factory: FakeSessionFactory, descriptor: ConnectionDescriptor):
        self.factory = factory
        self.descriptor = descriptor
        self.opened = False
        self.closed = False

    @property
    def host(self) -> str:
        return self.descriptor.host

    @property
    def is_open(self) -> bool:
        return self.opened and not self.closed

    async def open(self) -> None:
        if self.host in self.factory.unreachable:
            raise RemoteConnectionError(f"Could not reach {self.host}")
        self.opened = True
        self.factory.opened += 1

    async def run(self, command: str) -> CommandResult:
        if not self.is_open:
            raise RemoteExecutionError("Session is not open")
        self.factory.commands.append((self.host, command))
        for needle, results in self.factory.responses.items():
            if needle in command:
                result = results.pop(0) if len(results) > 1 else results[0]
                if isinstance(result, Exception):
                    raise result
                if isinstance(result, asyncio.Event):
                    await result.wait()
                    return CommandResult(exit_code=0)
                return result
        return CommandResult(exit_code=0, stdout="")

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.opened:
            self.factory.closed += 1

    async def __aenter__(self) -> FakeSession:
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class FakeSessionFactory:
    """Session factory recording every session and command."""

    def __init__(self):
        self.responses: dict[str, list[CommandResult | Exception | asyncio.Event]] = {}
        self.unreachable: set[str] = set()
        self.sessions: list[FakeSession] = []
        self.commands: list[tuple[str, str]] = []
        self.configs: list[SessionConfig] = []
        self.opened = 0
        self.closed = 0

    def script(self, needle: str, *results: CommandResult | Exception | asyncio.Event) -> None:
        self.responses[needle] = list(results)

    def __call__(self, descriptor: ConnectionDescriptor, config: SessionConfig) -> FakeSession:
        session = FakeSession(self, descriptor)
        self.sessions.append(session)
        self.configs.append(config)
        return session

    @property
    def command_strings(self) -> list[str]:
        return [command for _, command in self.commands]


# =============================================================================
# Database and orchestrator fixtures
# =============================================================================


@pytest.fixture
def test_db(tmp_path: Path) -> Database:
    """Create a temporary test database.

    Creates a fresh SQLite database in a temporary directory.
    Database is automatically cleaned up after the test.
    """
    return Database(tmp_path / "test.db")


@pytest.fixture
def password_descriptor() -> ConnectionDescriptor:
    return ConnectionDescriptor(
        host="pi.local", port=22, username="pi", auth_type="password", password="raspberry"
    )


@pytest.fixture
def device(test_db: Database, password_descriptor: ConnectionDescriptor) -> DeviceRecord:
    """A password-authenticated device owned by OWNER."""
    return test_db.add_device(OWNER, "Kitchen Pi", password_descriptor, device_id="pi-1")


@pytest.fixture
def fake_sessions() -> FakeSessionFactory:
    return FakeSessionFactory()


@pytest.fixture
def engine_config(tmp_path: Path) -> EngineConfig:
    return EngineConfig(db_path=tmp_path / "test.db", command_timeout=5.0, max_walk_depth=64)


@pytest.fixture
def orchestrator(
    test_db: Database, fake_sessions: FakeSessionFactory, engine_config: EngineConfig
) -> FlowOrchestrator:
    """Orchestrator backed by the temporary database and fake sessions."""
    return FlowOrchestrator(test_db, test_db, engine_config, session_factory=fake_sessions)
