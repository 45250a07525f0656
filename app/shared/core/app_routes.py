from typing import Any

from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Gauge, generate_latest

SYSTEM_HEALTH = Gauge(
    "parley_system_health",
    "System health status (1=healthy, 0=unhealthy)",
)

_ROUTER_PREFIXES = {"/api/v1/billing"}


def _validate_router_registry(routes: list[tuple[Any, str]]) -> None:
    seen_prefixes: set[str] = set()
    for router, prefix in routes:
        if not getattr(router, "routes", None):
            raise RuntimeError("Router registry includes an empty router definition")
        if prefix in seen_prefixes:
            raise RuntimeError(f"Duplicate router prefix registered: {prefix}")
        seen_prefixes.add(prefix)

    if seen_prefixes != _ROUTER_PREFIXES:
        raise RuntimeError(
            "Router registry mismatch: "
            + ", ".join(sorted(seen_prefixes ^ _ROUTER_PREFIXES))
        )


def register_lifecycle_routes(app: FastAPI, *, app_name: str, version: str) -> None:
    """Register reachability, health and metrics endpoints."""

    @app.get("/", tags=["Lifecycle"])
    async def root() -> dict[str, str]:
        return {"status": "ok", "app": app_name, "version": version}

    @app.get("/health/live", tags=["Lifecycle"])
    async def liveness_check() -> dict[str, str]:
        """Fast liveness check without dependencies."""
        return {"status": "healthy"}

    @app.get("/health", tags=["Lifecycle"])
    async def health() -> Any:
        """Readiness: database reachability plus in-process lock usage."""
        from app.modules.billing.domain.billing.lifecycle import active_tenant_locks
        from app.shared.db.session import health_check

        database = await health_check()
        healthy = database["status"] == "up"
        SYSTEM_HEALTH.set(1.0 if healthy else 0.0)
        payload = {
            "status": "healthy" if healthy else "unhealthy",
            "database": database,
            "tenant_locks": active_tenant_locks(),
        }
        if not healthy:
            return JSONResponse(status_code=503, content=payload)
        return payload

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def register_api_routers(app: FastAPI) -> None:
    """Register API route modules in one place to keep app entrypoint focused."""
    from app.modules.billing.api.v1.billing import router as billing_router

    routes: list[tuple[Any, str]] = [(billing_router, "/api/v1/billing")]
    _validate_router_registry(routes)
    for router, prefix in routes:
        app.include_router(router, prefix=prefix)
