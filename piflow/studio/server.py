"""FastAPI backend for piflow.

This module provides:
- REST API for flow CRUD operations
- Flow execution (background runs, status polling, direct runs)
- Device registration, connectivity checks and one-off commands

Architecture Notes:
- The caller's identity comes from the X-Owner-Id header; authentication is
  done upstream. Every flow and device lookup is scoped to that owner.
- Background runs live in this process only. Flows left "running" by a
  previous server process are marked as failed at startup.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Literal

from fastapi import Depends, FastAPI, Header, HTTPException
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from starlette.concurrency import run_in_threadpool

from piflow import __version__
from piflow.core.config import EngineConfig, load_config
from piflow.core.engine import DeviceTestResult, FlowOrchestrator
from piflow.core.errors import (
    AuthorizationError,
    DeviceNotFoundError,
    FlowError,
    FlowNotFoundError,
    GraphError,
    RunConflictError,
)
from piflow.core.graph_schema import FlowGraph, parse_graph
from piflow.core.results import ExecutionSummary, RunStatus, RunTicket
from piflow.core.state import Database, DeviceRecord, FlowRecord
from piflow.remote.session import ConnectionDescriptor, RemoteSession, SessionError

logger = logging.getLogger(__name__)

# Global instances - initialized lazily
_config: EngineConfig | None = None
_db: Database | None = None
_orchestrator: FlowOrchestrator | None = None


def get_config() -> EngineConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def get_db() -> Database:
    """Get or create database instance."""
    global _db
    if _db is None:
        _db = Database(get_config().db_path)
    return _db


def get_orchestrator() -> FlowOrchestrator:
    """Get or create orchestrator instance."""
    global _orchestrator
    if _orchestrator is None:
        db = get_db()
        _orchestrator = FlowOrchestrator(db, db, get_config(), session_factory=RemoteSession)
    return _orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    reset = await run_in_threadpool(get_db().reset_stale_runs)
    if reset:
        logger.warning(f"Marked {reset} interrupted flow run(s) as failed")
    yield
    if _orchestrator is not None:
        await _orchestrator.shutdown()


app = FastAPI(
    title="piflow API",
    description="API for running automation flows on remote devices",
    version=__version__,
    lifespan=lifespan,
)


def get_owner(x_owner_id: str | None = Header(default=None)) -> str:
    """Owner ID from the X-Owner-Id header."""
    if not x_owner_id or not x_owner_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-Owner-Id header")
    return x_owner_id.strip()


_STATUS_CODES: dict[type[FlowError], int] = {
    FlowNotFoundError: 404,
    DeviceNotFoundError: 404,
    AuthorizationError: 403,
    GraphError: 400,
    RunConflictError: 409,
}


def _http_error(e: FlowError) -> HTTPException:
    """Translate an engine/storage error into an HTTP error."""
    for error_type, status_code in _STATUS_CODES.items():
        if isinstance(e, error_type):
            return HTTPException(status_code=status_code, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


# ========== API Models ==========


class FlowCreateRequest(BaseModel):
    """Request to create a new flow"""

    name: str = Field(min_length=1)
    description: str | None = None
    device_id: str | None = Field(
        default=None, validation_alias=AliasChoices("deviceId", "piId", "device_id")
    )
    nodes: list[dict[str, Any]] = Field(default_factory=list)
    edges: list[dict[str, Any]] = Field(default_factory=list)


class FlowUpdateRequest(BaseModel):
    """Request to replace a flow's graph"""

    nodes: list[dict[str, Any]] = Field(default_factory=list)
    edges: list[dict[str, Any]] = Field(default_factory=list)


class DirectRunRequest(BaseModel):
    """Request to run an unsaved graph"""

    nodes: list[dict[str, Any]] = Field(default_factory=list)
    edges: list[dict[str, Any]] = Field(default_factory=list)


class DeviceCreateRequest(BaseModel):
    """Request to register a device"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str = Field(min_length=1)
    host: str
    port: int = 22
    username: str
    auth_type: Literal["password", "privateKey"] = "password"
    password: str | None = None
    private_key: str | None = None
    passphrase: str | None = None


class CommandRequest(BaseModel):
    """Request to run one command on a device"""

    command: str


class CommandResponse(BaseModel):
    """Result of a one-off device command"""

    success: bool
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False


def _flow_to_dict(record: FlowRecord) -> dict[str, Any]:
    return {**record.model_dump(mode="json", exclude={"graph"}), **record.graph.to_wire()}


def _parse_or_400(nodes: list[dict[str, Any]], edges: list[dict[str, Any]]) -> FlowGraph:
    try:
        graph = parse_graph({"nodes": nodes, "edges": edges})
    except GraphError as e:
        raise HTTPException(status_code=400, detail=str(e))
    errors = graph.validate_graph()
    if errors:
        raise HTTPException(status_code=400, detail={"validation_errors": errors})
    return graph


# ========== Flow CRUD Endpoints ==========


@app.post("/api/flows", status_code=201)
def create_flow(request: FlowCreateRequest, owner: str = Depends(get_owner)) -> dict[str, Any]:
    """Create a new flow."""
    graph = _parse_or_400(request.nodes, request.edges)
    try:
        record = get_db().create_flow(
            owner,
            request.name,
            graph,
            description=request.description,
            device_id=request.device_id,
        )
    except FlowError as e:
        raise _http_error(e)
    return _flow_to_dict(record)


@app.get("/api/flows")
def list_flows(owner: str = Depends(get_owner)) -> list[dict[str, Any]]:
    """List the owner's flows."""
    return [_flow_to_dict(record) for record in get_db().list_flows(owner)]


@app.get("/api/flows/{flow_id}")
def get_flow(flow_id: str, owner: str = Depends(get_owner)) -> dict[str, Any]:
    try:
        return _flow_to_dict(get_db().get_flow(flow_id, owner))
    except FlowError as e:
        raise _http_error(e)


@app.put("/api/flows/{flow_id}")
def update_flow(
    flow_id: str, request: FlowUpdateRequest, owner: str = Depends(get_owner)
) -> dict[str, Any]:
    """Replace a flow's nodes and edges."""
    graph = _parse_or_400(request.nodes, request.edges)
    try:
        return _flow_to_dict(get_db().update_flow_graph(flow_id, owner, graph))
    except FlowError as e:
        raise _http_error(e)


@app.delete("/api/flows/{flow_id}")
def delete_flow(flow_id: str, owner: str = Depends(get_owner)) -> dict[str, str]:
    """Delete a flow (running flows cannot be deleted)."""
    try:
        get_db().delete_flow(flow_id, owner)
    except FlowError as e:
        raise _http_error(e)
    return {"status": "deleted", "id": flow_id}


# ========== Execution Endpoints ==========


@app.post("/api/flows/execute-direct")
async def execute_direct(
    request: DirectRunRequest, owner: str = Depends(get_owner)
) -> ExecutionSummary:
    """Run an unsaved graph and return its full results."""
    orchestrator = get_orchestrator()
    return await orchestrator.run_direct({"nodes": request.nodes, "edges": request.edges}, owner)


@app.post("/api/flows/{flow_id}/execute", status_code=202)
async def execute_flow(flow_id: str, owner: str = Depends(get_owner)) -> RunTicket:
    """Start a flow run in the background.

    Poll GET /api/flows/{flow_id}/status for progress.
    """
    orchestrator = get_orchestrator()
    try:
        ticket = await orchestrator.start_run(flow_id, owner)
    except FlowError as e:
        raise _http_error(e)
    if not ticket.accepted:
        raise HTTPException(status_code=409, detail=ticket.message)
    return ticket


@app.get("/api/flows/{flow_id}/status")
async def get_flow_status(flow_id: str, owner: str = Depends(get_owner)) -> RunStatus:
    try:
        return await get_orchestrator().get_run_status(flow_id, owner)
    except FlowError as e:
        raise _http_error(e)


# ========== Device Endpoints ==========


@app.post("/api/devices", status_code=201)
def create_device(request: DeviceCreateRequest, owner: str = Depends(get_owner)) -> DeviceRecord:
    """Register a device (credentials are stored, never returned)."""
    try:
        descriptor = ConnectionDescriptor(
            host=request.host,
            port=request.port,
            username=request.username,
            auth_type=request.auth_type,
            password=request.password,
            private_key=request.private_key,
            passphrase=request.passphrase,
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=400,
            detail={"validation_errors": [err["msg"] for err in e.errors()]},
        )
    return get_db().add_device(owner, request.name, descriptor)


@app.get("/api/devices")
def list_devices(owner: str = Depends(get_owner)) -> list[DeviceRecord]:
    return get_db().list_devices(owner)


@app.get("/api/devices/{device_id}")
def get_device(device_id: str, owner: str = Depends(get_owner)) -> DeviceRecord:
    try:
        return get_db().get_device(device_id, owner)
    except FlowError as e:
        raise _http_error(e)


@app.delete("/api/devices/{device_id}")
def delete_device(device_id: str, owner: str = Depends(get_owner)) -> dict[str, str]:
    try:
        get_db().delete_device(device_id, owner)
    except FlowError as e:
        raise _http_error(e)
    return {"status": "deleted", "id": device_id}


@app.post("/api/devices/{device_id}/test")
async def test_device(device_id: str, owner: str = Depends(get_owner)) -> DeviceTestResult:
    """Connect to a device, run `uname -a` and update its online status."""
    try:
        return await get_orchestrator().test_device(device_id, owner)
    except FlowError as e:
        raise _http_error(e)


@app.post("/api/devices/{device_id}/command")
async def run_device_command(
    device_id: str, request: CommandRequest, owner: str = Depends(get_owner)
) -> CommandResponse:
    """Run one command on a device in a short-lived session."""
    try:
        result = await get_orchestrator().run_device_command(device_id, owner, request.command)
    except FlowError as e:
        raise _http_error(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SessionError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return CommandResponse(
        success=result.exit_code == 0,
        stdout=result.stdout,
        stderr=result.stderr,
        exit_code=result.exit_code,
        timed_out=result.timed_out,
    )
