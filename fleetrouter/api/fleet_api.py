############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# fleet_api.py: Fleet snapshot, routing and node management endpoints
#
############################################################

"""Fleet query and reporting endpoints."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import Field

from fleetrouter.api.health import ROUTE_DECISIONS
from fleetrouter.core.query import get_query_service
from fleetrouter.core.reporting import decision_to_dict, node_to_dict, snapshot_to_dict
from fleetrouter.core.schemas import CamelModel, CapabilityDocument
from fleetrouter.errors import UnknownNode
from fleetrouter.logging_config import get_logger

logger = get_logger(__name__)
router = APIRouter()


class RouteRequest(CamelModel):
    """Body of POST /api/fleet/route."""

    requesting_node_id: str = Field(..., alias="requestingNodeID", min_length=1)
    workload_hint: Optional[str] = ""


def _route(node: str, hint: Optional[str]) -> Dict[str, Any]:
    service = get_query_service()
    try:
        decision = service.route(node, hint)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    ROUTE_DECISIONS.labels(reason=decision.reason).inc()
    return decision_to_dict(decision)


@router.get("/snapshot")
async def get_snapshot() -> Dict[str, Any]:
    """Latest published fleet snapshot with its age."""
    view = get_query_service().current()
    return snapshot_to_dict(view.snapshot, view.age_seconds)


@router.post("/route")
async def post_route(body: RouteRequest) -> Dict[str, Any]:
    """Ordered backend list for a requesting node."""
    return _route(body.requesting_node_id, body.workload_hint)


@router.get("/route/{node}")
async def get_route(node: str, hint: Optional[str] = Query(default="")) -> Dict[str, Any]:
    """Ordered backend list for a requesting node (query string form)."""
    return _route(node, hint)


@router.delete("/nodes/{name}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_node(name: str) -> None:
    """Manually deregister a node."""
    try:
        await get_query_service().deregister(name)
    except UnknownNode as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.put("/nodes/{name}/capability")
async def put_capability(name: str, document: CapabilityDocument) -> Dict[str, Any]:
    """Accept a capability document pushed by the node itself."""
    try:
        node = await get_query_service().report_capability(name, document.to_report())
        logger.info("capability_pushed", node=name, vram_gb=document.vram_gb)
    except UnknownNode as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return node_to_dict(node)
