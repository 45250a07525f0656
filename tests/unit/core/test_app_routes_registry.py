from __future__ import annotations

from types import SimpleNamespace

import pytest
from fastapi import FastAPI

from app.shared.core.app_routes import (
    _ROUTER_PREFIXES,
    _validate_router_registry,
    register_api_routers,
    register_lifecycle_routes,
)


def _fake_router() -> SimpleNamespace:
    return SimpleNamespace(routes=[object()])


def test_validate_router_registry_accepts_complete_registry() -> None:
    _validate_router_registry([(_fake_router(), prefix) for prefix in sorted(_ROUTER_PREFIXES)])


def test_validate_router_registry_rejects_duplicate_prefix() -> None:
    routes = [
        (_fake_router(), "/api/v1/billing"),
        (_fake_router(), "/api/v1/billing"),
    ]
    with pytest.raises(RuntimeError, match="Duplicate router prefix"):
        _validate_router_registry(routes)


def test_validate_router_registry_rejects_unexpected_prefix() -> None:
    routes = [(_fake_router(), prefix) for prefix in sorted(_ROUTER_PREFIXES)]
    routes.append((_fake_router(), "/api/v1/unexpected"))
    with pytest.raises(RuntimeError, match="Router registry mismatch"):
        _validate_router_registry(routes)


def test_validate_router_registry_rejects_empty_router_definition() -> None:
    routes = [(SimpleNamespace(routes=[]), "/api/v1/billing")]
    with pytest.raises(RuntimeError, match="empty router definition"):
        _validate_router_registry(routes)


def test_register_api_routers_exposes_billing_routes() -> None:
    app = FastAPI()
    register_api_routers(app)

    paths = {route.path for route in app.routes}
    assert "/api/v1/billing/webhook" in paths
    assert "/api/v1/billing/admin/refunds" in paths
    assert "/api/v1/billing/admin/webhooks/{event_id}/retry" in paths


def test_register_lifecycle_routes() -> None:
    app = FastAPI()
    register_lifecycle_routes(app, app_name="Parley Billing", version="0.1.0")

    paths = {route.path for route in app.routes}
    assert {"/", "/health", "/health/live", "/metrics"} <= paths
