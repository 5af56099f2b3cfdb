"""SQLite state: flow storage and device registry.

The flow engine depends only on the FlowRepository and DeviceRegistry
protocols; Database implements both on top of SQLite. Ownership is checked
on every lookup: a record that exists but belongs to another owner raises
AuthorizationError, a missing record raises the matching not-found error.
"""

import json
import logging
import sqlite3
import uuid
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field

from piflow.core.errors import (
    AuthorizationError,
    DeviceNotFoundError,
    FlowNotFoundError,
    RunConflictError,
)
from piflow.core.graph_schema import FlowGraph, FlowStatus, parse_graph
from piflow.core.results import RunStatus
from piflow.remote.session import ConnectionDescriptor

logger = logging.getLogger(__name__)

DeviceStatus = Literal["online", "offline", "unknown"]


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


def _parse_timestamp(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class _SafeJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles datetime and Pydantic models."""

    def default(self, obj: Any) -> Any:
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, BaseModel):
            return obj.model_dump(mode="json", by_alias=True)
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def _safe_json_dumps(obj: Any) -> str:
    """Serialize object to JSON string, handling datetime and Pydantic models."""
    return json.dumps(obj, cls=_SafeJSONEncoder)


# --- Collaborator interfaces consumed by the engine ---


class FlowRepository(Protocol):
    def claim_run(self, flow_id: str, owner_id: str) -> None: ...

    def load_graph(self, flow_id: str, owner_id: str) -> FlowGraph: ...

    def persist_results(self, flow_id: str, run: RunStatus) -> None: ...

    def get_run_status(self, flow_id: str, owner_id: str) -> RunStatus: ...


class DeviceRegistry(Protocol):
    def resolve_device(self, device_id: str, owner_id: str) -> ConnectionDescriptor: ...

    def mark_device_status(
        self, device_id: str, status: DeviceStatus, timestamp: datetime
    ) -> None: ...


# --- Records ---


class FlowRecord(BaseModel):
    """Stored flow definition (without its run results)."""

    id: str
    owner_id: str
    name: str
    description: str | None = None
    device_id: str | None = None
    graph: FlowGraph
    execution_status: FlowStatus = FlowStatus.IDLE
    last_executed: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DeviceRecord(BaseModel):
    """Stored device as exposed to callers (credentials are never included)."""

    id: str
    owner_id: str
    name: str
    host: str
    port: int = 22
    username: str
    auth_type: str
    status: DeviceStatus = "unknown"
    last_connection: datetime | None = None
    created_at: datetime | None = None


class Database:
    """SQLite database holding flows, their last run results, and devices."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS flows (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        device_id TEXT,
        nodes JSON NOT NULL,
        edges JSON NOT NULL,
        execution_status TEXT NOT NULL DEFAULT 'idle'
            CHECK(execution_status IN ('idle', 'running', 'success', 'error')),
        last_executed TIMESTAMP,
        execution_results JSON,
        execution_error TEXT,
        created_at TIMESTAMP,
        updated_at TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS devices (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        name TEXT NOT NULL,
        host TEXT NOT NULL,
        port INTEGER NOT NULL DEFAULT 22,
        username TEXT NOT NULL,
        auth_type TEXT NOT NULL CHECK(auth_type IN ('password', 'privateKey')),
        password TEXT,
        private_key TEXT,
        passphrase TEXT,
        status TEXT NOT NULL DEFAULT 'unknown' CHECK(status IN ('online', 'offline', 'unknown')),
        last_connection TIMESTAMP,
        created_at TIMESTAMP
    );

    CREATE INDEX IF NOT EXISTS idx_flows_owner ON flows(owner_id);
    CREATE INDEX IF NOT EXISTS idx_flows_status ON flows(execution_status);
    CREATE INDEX IF NOT EXISTS idx_devices_owner ON devices(owner_id);
    """

    def __init__(self, db_path: str | Path = ".piflow/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema and enable WAL mode for better concurrency."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections.

        Uses a 30-second busy timeout to handle concurrent access gracefully
        instead of immediately failing with "database is locked".
        """
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 30000")
        try:
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "database is locked" in str(e):
                raise sqlite3.OperationalError(
                    f"Database locked after 30s timeout. Check for long-running transactions: {e}"
                ) from e
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _check_owner(
        self,
        conn: sqlite3.Connection,
        table: str,
        record_id: str,
        owner_id: str,
    ) -> sqlite3.Row:
        """Fetch a row and verify it belongs to owner_id."""
        row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,)).fetchone()
        kind = "Flow" if table == "flows" else "Device"
        if row is None:
            if table == "flows":
                raise FlowNotFoundError(f"Flow '{record_id}' not found")
            raise DeviceNotFoundError(f"Device '{record_id}' not found")
        if row["owner_id"] != owner_id:
            raise AuthorizationError(f"{kind} '{record_id}' does not belong to owner '{owner_id}'")
        return row

    # --- Flows ---

    def _row_to_flow(self, row: sqlite3.Row) -> FlowRecord:
        return FlowRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            description=row["description"],
            device_id=row["device_id"],
            graph=parse_graph(
                {"nodes": json.loads(row["nodes"]), "edges": json.loads(row["edges"])}
            ),
            execution_status=FlowStatus(row["execution_status"]),
            last_executed=_parse_timestamp(row["last_executed"]),
            created_at=_parse_timestamp(row["created_at"]),
            updated_at=_parse_timestamp(row["updated_at"]),
        )

    def create_flow(
        self,
        owner_id: str,
        name: str,
        graph: FlowGraph,
        description: str | None = None,
        device_id: str | None = None,
        flow_id: str | None = None,
    ) -> FlowRecord:
        """Store a new flow definition."""
        flow_id = flow_id or str(uuid.uuid4())
        now = _utc_now().isoformat()
        wire = graph.to_wire()
        with self._connect() as conn:
            if device_id:
                self._check_owner(conn, "devices", device_id, owner_id)
            conn.execute(
                """
                INSERT INTO flows (id, owner_id, name, description, device_id, nodes, edges,
                                   execution_status, execution_results, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'idle', '{}', ?, ?)
            """,
                (
                    flow_id,
                    owner_id,
                    name,
                    description,
                    device_id,
                    _safe_json_dumps(wire["nodes"]),
                    _safe_json_dumps(wire["edges"]),
                    now,
                    now,
                ),
            )
        logger.info(f"New flow created: {name} ({flow_id}) by owner {owner_id}")
        return self.get_flow(flow_id, owner_id)

    def get_flow(self, flow_id: str, owner_id: str) -> FlowRecord:
        with self._connect() as conn:
            return self._row_to_flow(self._check_owner(conn, "flows", flow_id, owner_id))

    def list_flows(self, owner_id: str) -> list[FlowRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM flows WHERE owner_id = ? ORDER BY created_at", (owner_id,)
            ).fetchall()
        return [self._row_to_flow(row) for row in rows]

    def update_flow_graph(self, flow_id: str, owner_id: str, graph: FlowGraph) -> FlowRecord:
        """Replace a flow's nodes and edges."""
        wire = graph.to_wire()
        with self._connect() as conn:
            self._check_owner(conn, "flows", flow_id, owner_id)
            conn.execute(
                "UPDATE flows SET nodes = ?, edges = ?, updated_at = ? WHERE id = ?",
                (
                    _safe_json_dumps(wire["nodes"]),
                    _safe_json_dumps(wire["edges"]),
                    _utc_now().isoformat(),
                    flow_id,
                ),
            )
        return self.get_flow(flow_id, owner_id)

    def delete_flow(self, flow_id: str, owner_id: str) -> None:
        """Delete a flow; a running flow cannot be deleted."""
        with self._connect() as conn:
            row = self._check_owner(conn, "flows", flow_id, owner_id)
            if row["execution_status"] == FlowStatus.RUNNING.value:
                raise RunConflictError(f"Flow '{flow_id}' is running and cannot be deleted")
            conn.execute("DELETE FROM flows WHERE id = ?", (flow_id,))
        logger.info(f"Flow deleted: {flow_id} by owner {owner_id}")

    # --- Flow runs (FlowRepository) ---

    def claim_run(self, flow_id: str, owner_id: str) -> None:
        """Atomically move a flow to 'running' and clear its previous results.

        Raises:
            FlowNotFoundError / AuthorizationError: Lookup failures.
            RunConflictError: The flow is already running.
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            self._check_owner(conn, "flows", flow_id, owner_id)
            result = conn.execute(
                """
                UPDATE flows
                SET execution_status = 'running', execution_results = '{}',
                    execution_error = NULL, last_executed = ?
                WHERE id = ? AND execution_status != 'running'
            """,
                (_utc_now().isoformat(), flow_id),
            )
            if result.rowcount == 0:
                raise RunConflictError(f"Flow '{flow_id}' is already running")

    def load_graph(self, flow_id: str, owner_id: str) -> FlowGraph:
        return self.get_flow(flow_id, owner_id).graph

    def persist_results(self, flow_id: str, run: RunStatus) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE flows
                SET execution_status = ?, execution_results = ?, execution_error = ?,
                    last_executed = ?
                WHERE id = ?
            """,
                (
                    run.status.value,
                    _safe_json_dumps(run.results),
                    run.error,
                    run.last_run_at.isoformat() if run.last_run_at else None,
                    flow_id,
                ),
            )

    def get_run_status(self, flow_id: str, owner_id: str) -> RunStatus:
        with self._connect() as conn:
            row = self._check_owner(conn, "flows", flow_id, owner_id)
        return RunStatus(
            flow_id=flow_id,
            status=FlowStatus(row["execution_status"]),
            last_run_at=_parse_timestamp(row["last_executed"]),
            results=json.loads(row["execution_results"]) if row["execution_results"] else {},
            error=row["execution_error"],
        )

    def reset_stale_runs(self) -> int:
        """Mark flows left 'running' by a previous process as failed.

        Returns:
            Number of flows reset.
        """
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE flows SET execution_status = 'error',
                    execution_error = 'Run interrupted (process restarted)'
                WHERE execution_status = 'running'
            """
            )
            count = result.rowcount
        if count:
            logger.warning(f"Reset {count} flow(s) left running by a previous process")
        return count

    # --- Devices (DeviceRegistry) ---

    def _row_to_device(self, row: sqlite3.Row) -> DeviceRecord:
        return DeviceRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            host=row["host"],
            port=row["port"],
            username=row["username"],
            auth_type=row["auth_type"],
            status=row["status"],
            last_connection=_parse_timestamp(row["last_connection"]),
            created_at=_parse_timestamp(row["created_at"]),
        )

    def add_device(
        self,
        owner_id: str,
        name: str,
        descriptor: ConnectionDescriptor,
        device_id: str | None = None,
    ) -> DeviceRecord:
        """Register a device with its connection credentials."""
        device_id = device_id or str(uuid.uuid4())
        is_password = descriptor.auth_type == "password"
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO devices (id, owner_id, name, host, port, username, auth_type,
                                     password, private_key, passphrase, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'unknown', ?)
            """,
                (
                    device_id,
                    owner_id,
                    name,
                    descriptor.host,
                    descriptor.port,
                    descriptor.username,
                    descriptor.auth_type,
                    descriptor.password if is_password else None,
                    None if is_password else descriptor.private_key,
                    None if is_password else descriptor.passphrase,
                    _utc_now().isoformat(),
                ),
            )
        logger.info(f"New device added: {name} ({device_id}) by owner {owner_id}")
        return self.get_device(device_id, owner_id)

    def get_device(self, device_id: str, owner_id: str) -> DeviceRecord:
        with self._connect() as conn:
            return self._row_to_device(self._check_owner(conn, "devices", device_id, owner_id))

    def list_devices(self, owner_id: str) -> list[DeviceRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM devices WHERE owner_id = ? ORDER BY created_at", (owner_id,)
            ).fetchall()
        return [self._row_to_device(row) for row in rows]

    def delete_device(self, device_id: str, owner_id: str) -> None:
        with self._connect() as conn:
            self._check_owner(conn, "devices", device_id, owner_id)
            conn.execute("UPDATE flows SET device_id = NULL WHERE device_id = ?", (device_id,))
            conn.execute("DELETE FROM devices WHERE id = ?", (device_id,))
        logger.info(f"Device deleted: {device_id} by owner {owner_id}")

    def resolve_device(self, device_id: str, owner_id: str) -> ConnectionDescriptor:
        """Connection descriptor (with credentials) for an owned device."""
        with self._connect() as conn:
            row = self._check_owner(conn, "devices", device_id, owner_id)
        return ConnectionDescriptor(
            host=row["host"],
            port=row["port"],
            username=row["username"],
            auth_type=row["auth_type"],
            password=row["password"],
            private_key=row["private_key"],
            passphrase=row["passphrase"],
        )

    def mark_device_status(self, device_id: str, status: DeviceStatus, timestamp: datetime) -> None:
        """Record a connection attempt; last_connection only moves on success."""
        with self._connect() as conn:
            if status == "online":
                conn.execute(
                    "UPDATE devices SET status = ?, last_connection = ? WHERE id = ?",
                    (status, timestamp.isoformat(), device_id),
                )
            else:
                conn.execute("UPDATE devices SET status = ? WHERE id = ?", (status, device_id))
