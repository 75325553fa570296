"""
Graph endpoints for the force-directed view and link analytics.
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from realm_pkm.api.dependencies import (
    get_current_user,
    get_graph_service,
    get_relationship_service,
)
from realm_pkm.api.schemas import notes_payload
from realm_pkm.models.schema import User
from realm_pkm.services.graph_service import GraphService
from realm_pkm.services.relationship_service import RelationshipService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/graph", tags=["graph"])


@router.get("/data")
def graph_data(
    max_nodes: Optional[int] = Query(default=None),
    user: User = Depends(get_current_user),
    graph: GraphService = Depends(get_graph_service),
) -> Dict[str, Any]:
    return graph.get_graph_data(user.id, max_nodes=max_nodes).model_dump(mode="json")


@router.get("/subgraph/{note_id}")
def subgraph(
    note_id: str,
    depth: int = Query(default=2),
    user: User = Depends(get_current_user),
    graph: GraphService = Depends(get_graph_service),
) -> Dict[str, Any]:
    return graph.get_subgraph(user.id, note_id, depth=depth).model_dump(mode="json")


@router.get("/search")
def search_nodes(
    q: str = Query(default=""),
    user: User = Depends(get_current_user),
    graph: GraphService = Depends(get_graph_service),
) -> List[Dict[str, Any]]:
    return [node.model_dump(mode="json") for node in graph.search_nodes(user.id, q)]


@router.get("/stats")
def graph_stats(
    user: User = Depends(get_current_user),
    graph: GraphService = Depends(get_graph_service),
) -> Dict[str, Any]:
    return graph.get_graph_stats(user.id).model_dump(mode="json")


@router.get("/clusters")
def clusters(
    min_size: int = Query(default=2, ge=1),
    user: User = Depends(get_current_user),
    relationships: RelationshipService = Depends(get_relationship_service),
) -> List[Dict[str, Any]]:
    return [
        c.model_dump(mode="json")
        for c in relationships.find_note_clusters(user.id, min_cluster_size=min_size)
    ]


@router.get("/path")
def shortest_path(
    source: str = Query(..., alias="from"),
    target: str = Query(..., alias="to"),
    max_depth: int = Query(default=6, ge=1, le=10),
    user: User = Depends(get_current_user),
    relationships: RelationshipService = Depends(get_relationship_service),
) -> Dict[str, Any]:
    path = relationships.find_shortest_path(source, target, user.id, max_depth=max_depth)
    return {"path": path, "length": max(0, len(path) - 1), "found": bool(path)}


@router.get("/analytics")
def analytics(
    user: User = Depends(get_current_user),
    relationships: RelationshipService = Depends(get_relationship_service),
) -> Dict[str, Any]:
    return relationships.get_relationship_analytics(user.id).model_dump(mode="json")


@router.get("/orphans")
def orphans(
    user: User = Depends(get_current_user),
    relationships: RelationshipService = Depends(get_relationship_service),
) -> List[Dict[str, Any]]:
    return notes_payload(relationships.find_orphaned_notes(user.id))


@router.get("/hubs")
def hubs(
    min_connections: int = Query(default=5, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    user: User = Depends(get_current_user),
    relationships: RelationshipService = Depends(get_relationship_service),
) -> List[Dict[str, Any]]:
    return [
        hub.model_dump(mode="json")
        for hub in relationships.find_hub_notes(user.id, min_connections, limit)
    ]
