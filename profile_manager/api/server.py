"""
Access management API server.

Routes live under `<base_url>/v1` (default `/kfam/v1`). The caller identity comes from
the configured header (default `kubeflow-userid`) with the configured prefix stripped.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse

from profile_manager.access.manager import AccessManager, parse_binding
from profile_manager.config import ManagerConfig, load_config
from profile_manager.errors import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    ProfileManagerError,
    UnauthorizedError,
    ValidationError,
)
from profile_manager.providers.k8s_store import DefaultK8sStore, K8sStore

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (ValidationError, 400),
    (UnauthorizedError, 403),
    (NotFoundError, 404),
    (AlreadyExistsError, 409),
    (ConflictError, 409),
)


def status_for_error(e: ProfileManagerError) -> int:
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(e, cls):
            return code
    return 500


def create_app(store: Optional[K8sStore] = None, config: Optional[ManagerConfig] = None) -> FastAPI:
    cfg = config or load_config()
    access = AccessManager(store or DefaultK8sStore(request_timeout=cfg.request_timeout_seconds), cfg)

    app = FastAPI(title="Profile access management")
    app.state.access = access

    if not cfg.require_auth_for_add_contributor:
        logger.warning("POST /bindings does not authorize the caller (REQUIRE_AUTH_FOR_ADD_CONTRIBUTOR=0)")

    @app.exception_handler(ProfileManagerError)
    async def _profile_manager_error(request: Request, e: ProfileManagerError) -> JSONResponse:
        code = status_for_error(e)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, str(e))
        return JSONResponse(status_code=code, content={"detail": str(e)})

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(_request: Request, e: RequestValidationError) -> JSONResponse:
        # Malformed bodies are a plain 400 for this API, not FastAPI's 422.
        return JSONResponse(status_code=400, content={"detail": str(e)})

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all incoming HTTP requests."""
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.exception("%s %s - ERROR after %.3fs: %s", request.method, request.url.path, process_time, str(e))
            raise
        process_time = time.time() - start_time
        logger.debug("%s %s - %d (%.3fs)", request.method, request.url.path, response.status_code, process_time)
        return response

    @app.get("/healthz")
    def healthz() -> Dict[str, Any]:
        return {"ok": True}

    router = APIRouter(prefix=f"{cfg.base_url}/v1")

    def _caller(request: Request) -> str:
        return access.caller_identity(request.headers.get(cfg.userid_header))

    @router.get("/role/clusteradmin", response_class=PlainTextResponse)
    def cluster_admin(user: Optional[str] = Query(None)) -> str:
        if not user:
            raise HTTPException(status_code=400, detail="missing required param 'user'")
        return "true" if access.is_cluster_admin(user) else "false"

    @router.get("/bindings")
    def read_bindings(
        namespace: Optional[str] = Query(None),
        user: Optional[str] = Query(None),
        role: Optional[str] = Query(None),
    ) -> Dict[str, Any]:
        bindings = access.read_bindings(namespace=namespace, user=user, role=role)
        return {"bindings": [b.dump() for b in bindings]}

    @router.post("/bindings")
    def add_contributor(request: Request, body: Any = Body(None)) -> Dict[str, Any]:
        access.add_contributor(parse_binding(body), _caller(request))
        return {"message": "Added Contributor"}

    @router.delete("/bindings")
    def remove_contributor(request: Request, body: Any = Body(None)) -> Dict[str, Any]:
        access.remove_contributor(parse_binding(body), _caller(request))
        return {"message": "Removed Contributor"}

    @router.post("/profiles")
    def create_profile(body: Any = Body(None)) -> Dict[str, Any]:
        profile = access.create_profile(body)
        return {"message": "Created Profile", "name": profile.name}

    @router.delete("/profiles/{name}")
    def remove_profile(name: str, request: Request) -> Dict[str, Any]:
        access.remove_profile(name, _caller(request))
        return {"message": "Removed Profile", "name": name}

    app.include_router(router)
    return app


def run(host: str = "0.0.0.0", port: int = 8081, config: Optional[ManagerConfig] = None) -> None:
    import uvicorn

    log_level = os.getenv("LOG_LEVEL", "info").upper()
    uvicorn_log_level = (
        log_level.lower() if log_level.lower() in ["critical", "error", "warning", "info", "debug", "trace"] else "info"
    )

    cfg = config or load_config()
    logger.info("cluster admins: %s", sorted(cfg.cluster_admins))
    logger.info("user id header=%r prefix=%r", cfg.userid_header, cfg.userid_prefix)
    logger.info("Starting access management API on %s:%d (base_url=%s)", host, port, cfg.base_url)
    uvicorn.run(create_app(config=cfg), host=host, port=port, log_level=uvicorn_log_level)
