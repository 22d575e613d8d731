"""Health check endpoint handler."""

import logging

from fastapi import APIRouter, Request

from evidentia.api.models.health import ComponentStatus, HealthStatus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def check_health(state) -> HealthStatus:
    """Check the pipeline's collaborators.

    Args:
        state: Application state holding pipeline, knowledge_store and audit_storage

    Returns:
        HealthStatus with per-component statuses
    """
    components = {}
    pipeline = getattr(state, "pipeline", None)
    knowledge_store = getattr(state, "knowledge_store", None)
    audit_storage = getattr(state, "audit_storage", None)

    if pipeline is None:
        components["pipeline"] = ComponentStatus(
            name="pipeline", status="unhealthy", message="Pipeline not initialized"
        )
        components["model"] = ComponentStatus(
            name="model_gateway", status="unknown", message="No gateway configured"
        )
    else:
        components["pipeline"] = ComponentStatus(name="pipeline", status="healthy")
        try:
            reachable = await pipeline.gateway.check_health()
            components["model"] = ComponentStatus(
                name="model_gateway",
                status="healthy" if reachable else "unhealthy",
                message=pipeline.gateway.model_name,
            )
        except Exception as e:
            components["model"] = ComponentStatus(
                name="model_gateway", status="unhealthy", message=f"Health check error: {e}"
            )

    if knowledge_store is not None and len(knowledge_store):
        components["knowledge"] = ComponentStatus(
            name="knowledge_store",
            status="healthy",
            message=f"{len(knowledge_store)} entries loaded",
        )
    else:
        components["knowledge"] = ComponentStatus(
            name="knowledge_store", status="unknown", message="No knowledge entries loaded"
        )

    statuses = [c.status for c in components.values()]
    if all(s == "healthy" for s in statuses):
        overall = "healthy"
    elif components["pipeline"].status == "unhealthy":
        overall = "unhealthy"
    else:
        overall = "degraded"

    logger.info(f"Health check: {overall}")

    return HealthStatus(
        status=overall,
        components=components,
        model=pipeline.gateway.model_name if pipeline is not None else None,
        knowledge_entries=len(knowledge_store) if knowledge_store is not None else 0,
        audit_entries=len(audit_storage) if audit_storage is not None else 0,
    )


@router.get("/health", response_model=HealthStatus)
async def health(request: Request) -> HealthStatus:
    return await check_health(request.app.state)
