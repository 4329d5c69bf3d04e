from typing import Any

from fastapi import APIRouter, Depends, Request

from sagaflow.config import settings
from sagaflow.services.runtime import Runtime, get_runtime

router = APIRouter()


@router.get("/v1/info")
async def platform_info(request: Request, runtime: Runtime = Depends(get_runtime)) -> dict[str, Any]:
    """Machine-readable descriptor of the registered pipelines and their control surface."""
    base = str(request.base_url).rstrip("/")
    pipelines = []
    for name in runtime.manager.pipelines:
        definition = runtime.manager.definition(name)
        registry = definition.registry
        stages = [
            {
                "name": s.name,
                "order": s.order,
                "step": s.step,
                "compensation": s.compensate_action if s.compensate else None,
                "best_effort": s.best_effort,
                "max_attempts": s.retry.max_attempts,
            }
            for s in registry
        ]
        if registry.gate is not None:
            stages.append(
                {
                    "name": registry.gate.name,
                    "order": registry.gate.order,
                    "gate": True,
                    "timeout_seconds": registry.gate.timeout_seconds,
                }
            )
        pipelines.append(
            {
                "name": name,
                "stages": sorted(stages, key=lambda s: s["order"]),
                "request_schema": definition.request_schema,
            }
        )

    return {
        "name": "Sagaflow",
        "version": "0.1.0",
        "description": (
            "Saga-style pipeline orchestrator. Each instance runs its stages in order; "
            "a failure or cancellation triggers compensation of every completed step "
            "in reverse order, followed by a failure notice."
        ),
        "fault_injection_enabled": settings.enable_fault_injection,
        "pipelines": pipelines,
        "endpoints": [
            {"method": "GET", "url": f"{base}/health", "description": "Health check"},
            {"method": "POST", "url": f"{base}/v1/orders", "description": "Start an order"},
            {
                "method": "POST",
                "url": f"{base}/v1/orders/sample",
                "description": "Start an order with a built-in sample payload",
            },
            {
                "method": "POST",
                "url": f"{base}/v1/documents",
                "description": "Upload a document (base64 content) and start processing",
            },
            {
                "method": "GET",
                "url": f"{base}/v1/documents/reviews/pending",
                "description": "Documents waiting on a review decision",
            },
            {
                "method": "GET",
                "url": f"{base}/v1/{{orders|documents}}/{{instance_id}}/status",
                "description": "Status query",
            },
            {
                "method": "GET",
                "url": f"{base}/v1/{{orders|documents}}/{{instance_id}}/result?wait=<seconds>",
                "description": "Final result; 409 while the instance is still running",
            },
            {
                "method": "GET",
                "url": f"{base}/v1/{{orders|documents}}/{{instance_id}}/compensations",
                "description": "Planned and executed compensations",
            },
            {
                "method": "POST",
                "url": f"{base}/v1/{{orders|documents}}/{{instance_id}}/cancel",
                "description": "Cancel signal; observed at the next stage boundary",
            },
            {
                "method": "PUT",
                "url": f"{base}/v1/{{orders|documents}}/{{instance_id}}/priority",
                "body": {"priority": "HIGH | MEDIUM | LOW"},
                "description": "Validated priority update",
            },
            {
                "method": "POST",
                "url": f"{base}/v1/documents/{{instance_id}}/decision",
                "body": {
                    "approved": "bool",
                    "comments": "string (required)",
                    "correlation_token": "string (optional, must match the gate token)",
                },
                "description": "Validated review decision update",
            },
            {
                "method": "GET",
                "url": f"{base}/v1/documents/{{instance_id}}/metrics",
                "description": "Stage durations and progress",
            },
        ],
    }
