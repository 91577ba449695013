"""
API routes for plugmesh.

Peer endpoints (/updatePlugPower, /vote, /metering, /relay/0) sit at the
root so plugs can reach each other with plain GET requests; status
endpoints are mounted under /api.
"""

import logging
from typing import Any, Dict, Literal

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request
from pydantic import BaseModel, Field, ValidationError

from .server import PlugMeshServer, get_server
from ..balancer.updates import PeerReport
from ..errors import ReportValidationError
from ..mesh.coordination import VoteMessage

logger = logging.getLogger(__name__)

peer_router = APIRouter()
router = APIRouter()


# ============ Request Models ============

class MeteringQuery(BaseModel):
    """A self reading pushed by the host integration."""
    closed: bool
    watts: float = Field(..., ge=0, allow_inf_nan=False)


class RelayQuery(BaseModel):
    """A switch request from the leader."""
    turn: Literal["on", "off"]


def _require_server() -> PlugMeshServer:
    server = get_server()
    if not server:
        raise HTTPException(status_code=503, detail="Server not ready")
    return server


def _bad_request(request: Request, error: ReportValidationError) -> HTTPException:
    client = request.client.host if request.client else "unknown"
    logger.warning(f"Rejected {request.url.path} from {client}: {error}")
    return HTTPException(status_code=400, detail=str(error))


def _query_error(e: ValidationError) -> ReportValidationError:
    error = e.errors()[0]
    field = ".".join(str(part) for part in error["loc"]) or None
    return ReportValidationError(f"{field}: {error['msg']}", field=field)


# ============ Peer Endpoints ============

@peer_router.get("/updatePlugPower")
async def update_plug_power(request: Request, background_tasks: BackgroundTasks) -> Dict[str, Any]:
    """Power report from a peer (or from this plug's own script)."""
    server = _require_server()

    try:
        report = PeerReport.from_query(request.query_params, server.config.balancer.max_priority)
    except ReportValidationError as e:
        raise _bad_request(request, e)

    outcome = await server.handle_report(report)
    background_tasks.add_task(server.rebalance_if_leader)
    return {"status": "ok", "outcome": outcome.value}


@peer_router.get("/vote")
async def vote(request: Request) -> Dict[str, Any]:
    """One stage message of a coordination vote."""
    server = _require_server()

    try:
        message = VoteMessage.from_query(request.query_params)
    except ReportValidationError as e:
        raise _bad_request(request, e)

    await server.handle_vote(message)
    return {"status": "ok"}


@peer_router.get("/metering")
async def metering(request: Request) -> Dict[str, Any]:
    """Self reading pushed by the host device."""
    server = _require_server()

    try:
        query = MeteringQuery.model_validate(dict(request.query_params))
    except ValidationError as e:
        raise _bad_request(request, _query_error(e))

    await server.handle_metering(query.closed, query.watts)
    return {"status": "ok", "pending": server.reporter.is_pending}


@peer_router.get("/relay/0")
async def relay(request: Request) -> Dict[str, Any]:
    """Switch this plug's relay on or off (sent by the leader)."""
    server = _require_server()

    try:
        query = RelayQuery.model_validate(dict(request.query_params))
    except ValidationError as e:
        raise _bad_request(request, _query_error(e))

    if server.metering is None:
        raise HTTPException(status_code=503, detail="No switchable relay on this plug")

    state = await server.handle_relay(query.turn == "on")
    if state is None:
        raise HTTPException(status_code=502, detail="Relay did not respond")
    return {"ison": state}


# ============ Status Endpoints ============

@router.get("/status")
async def status() -> Dict[str, Any]:
    server = _require_server()
    return server.status()


@router.get("/nodes")
async def nodes() -> Dict[str, Any]:
    """Registry snapshot: every known plug in priority order."""
    server = _require_server()
    return server.registry.snapshot()


@router.post("/rebalance")
async def rebalance() -> Dict[str, Any]:
    """Run a budget check now (leader only)."""
    server = _require_server()
    result = await server.rebalance_if_leader()
    if result is None:
        raise HTTPException(status_code=409, detail=f"Not the leader; leader is {server.coordination.leader_id}")
    return result.to_dict()
