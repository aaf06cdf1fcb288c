"""FastAPI application factory and HTTP schemas for the async push service.

This module exposes the host surface of the dispatcher registry over HTTP:

- Starting and stopping credential-bound dispatchers by name
- Asynchronous and synchronous multicast pushes
- Asynchronous and synchronous web pushes for a single subscription
- Health check and Prometheus metrics

Every endpoint except ``/health`` requires the ``X-API-Token`` header when a
token is configured.

Example:
    Creating and running the API application::

        from async_push_service.api import create_app
        from async_push_service.registry import DispatcherRegistry

        registry = DispatcherRegistry()
        app = create_app(registry, api_token="secret-token")

        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from typing import Any, AsyncContextManager, Callable, Dict, List, Optional
import logging

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .dispatcher import DispatcherStopped, PushDispatcher
from .models import DispatchFailure, WebPushSubscription
from .registry import DispatcherRegistry

logger = logging.getLogger(__name__)

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token has been configured through :func:`create_app` the
    dependency is bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    name: Optional[str] = None
    queued: Optional[int] = None


class DispatcherPayload(BaseModel):
    name: str = Field(min_length=1)
    credential: str = Field(min_length=1)


class DispatchersResponse(CommandStatus):
    dispatchers: List[str]


class PushPayload(BaseModel):
    recipients: List[str] = Field(min_length=1)
    message: Dict[str, Any] = Field(default_factory=dict)
    attempt_budget: Optional[int] = Field(default=None, ge=0)


class SubscriptionPayload(BaseModel):
    token: str = Field(min_length=1)
    p256dh: str
    auth: str


class WebPushPayload(BaseModel):
    subscription: SubscriptionPayload
    message: Dict[str, Any] = Field(default_factory=dict)
    attempt_budget: Optional[int] = Field(default=None, ge=0)


class RecipientResultInfo(BaseModel):
    recipient: str
    status: str
    message_id: Optional[str] = None
    new_id: Optional[str] = None
    error: Optional[str] = None


class PushResponse(CommandStatus):
    results: Optional[List[RecipientResultInfo]] = None
    detail: Optional[str] = None


def create_app(
    registry: DispatcherRegistry,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    registry:
        The :class:`DispatcherRegistry` serving every request.
    api_token:
        Optional secret used to protect every endpoint but ``/health``.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn.
    """
    api = FastAPI(title="Async Push Service", lifespan=lifespan)
    api.state.api_token = api_token
    api.state.registry = registry
    router = APIRouter(prefix="/dispatchers", tags=["dispatchers"], dependencies=[auth_dependency])

    def _dispatcher(name: str) -> PushDispatcher:
        try:
            return registry.get(name)
        except KeyError:
            raise HTTPException(status.HTTP_404_NOT_FOUND, f"Dispatcher {name} not found")

    def _push_response(outcome) -> PushResponse:
        if isinstance(outcome, DispatchFailure):
            return PushResponse(ok=False, error=outcome.kind.value, detail=outcome.detail)
        return PushResponse(
            ok=True,
            results=[RecipientResultInfo.model_validate(result.as_dict()) for result in outcome],
        )

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log validation errors with full details."""
        logger.error(f"Validation error on {request.method} {request.url.path}: {exc.errors()}")
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @api.exception_handler(DispatcherStopped)
    async def stopped_exception_handler(request: Request, exc: DispatcherStopped):
        return JSONResponse(status_code=409, content={"ok": False, "error": exc.code, "detail": str(exc)})

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics of every dispatcher."""
        return Response(content=registry.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    @router.get("", response_model=DispatchersResponse, response_model_exclude_none=True)
    async def list_dispatchers():
        return DispatchersResponse(ok=True, dispatchers=registry.names())

    @router.post("", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def start_dispatcher(payload: DispatcherPayload):
        """Start a dispatcher bound to a gateway credential."""
        try:
            await registry.start(payload.name, payload.credential)
        except ValueError as exc:
            raise HTTPException(status.HTTP_409_CONFLICT, str(exc))
        return BasicOkResponse(ok=True, name=payload.name)

    @router.delete("/{name}", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def stop_dispatcher(name: str):
        if not await registry.stop(name):
            raise HTTPException(status.HTTP_404_NOT_FOUND, f"Dispatcher {name} not found")
        return BasicOkResponse(ok=True)

    @router.post("/{name}/push", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def push(name: str, payload: PushPayload):
        """Enqueue a multicast push; outcomes are reported asynchronously."""
        _dispatcher(name).submit(payload.recipients, payload.message, payload.attempt_budget)
        return BasicOkResponse(ok=True, queued=len(payload.recipients))

    @router.post("/{name}/push-sync", response_model=PushResponse, response_model_exclude_none=True)
    async def push_sync(name: str, payload: PushPayload):
        """Run one multicast attempt and return per-recipient results."""
        outcome = await _dispatcher(name).submit_sync(payload.recipients, payload.message, payload.attempt_budget)
        return _push_response(outcome)

    @router.post("/{name}/web-push", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def web_push(name: str, payload: WebPushPayload):
        subscription = WebPushSubscription(**payload.subscription.model_dump())
        _dispatcher(name).web_push_submit(subscription, payload.message, payload.attempt_budget)
        return BasicOkResponse(ok=True, queued=1)

    @router.post("/{name}/web-push-sync", response_model=PushResponse, response_model_exclude_none=True)
    async def web_push_sync(name: str, payload: WebPushPayload):
        subscription = WebPushSubscription(**payload.subscription.model_dump())
        outcome = await _dispatcher(name).web_push_submit_sync(subscription, payload.message, payload.attempt_budget)
        return _push_response(outcome)

    api.include_router(router)
    return api
