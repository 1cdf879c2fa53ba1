"""
FastAPI application for the request catcher.

This application provides:
1. Ingestion: any method on /{endpoint_id} is captured
2. Live viewing: a websocket at /ws with join/leave events
3. Endpoint management: create, list, inspect, delete
4. Notification preferences for the signed-in user

Run with:
    uv run uvicorn api.main:app --reload

Then visit http://localhost:3000/docs for interactive API documentation.
"""

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse, Response
from pydantic import BaseModel

from capture.auth import StaticTokenVerifier, TokenVerifier, bearer_token
from capture.channels import EmailChannel, Transport
from capture.config import Settings, load_settings
from capture.data_store import DataStore
from capture.errors import (
    AuthenticationFailed,
    EndpointNotFound,
    InvalidRequest,
    PermissionDenied,
    StorageFailure,
)
from capture.models import Endpoint, NotificationSetting, Principal
from fanout.event_bus import EVENT_ERROR, LiveFanoutBus, Subscriber
from fanout.ingestion import IngestionPipeline
from fanout.notification_router import NotificationPreferences, NotificationRouter
from fanout.registry import EndpointRegistry

logger = logging.getLogger("api")


# =============================================================================
# Wiring
# =============================================================================

@dataclass
class Services:
    """Everything the routes need, built once per app."""
    settings: Settings
    data_store: DataStore
    registry: EndpointRegistry
    bus: LiveFanoutBus
    router: NotificationRouter
    preferences: NotificationPreferences
    pipeline: IngestionPipeline
    verifier: TokenVerifier


def build_services(
    settings: Optional[Settings] = None,
    data_store: Optional[DataStore] = None,
    transport: Optional[Transport] = None,
    verifier: Optional[TokenVerifier] = None,
) -> Services:
    settings = settings or load_settings()
    data_store = data_store or DataStore(data_dir=settings.data_dir)
    transport = transport or EmailChannel(
        fail_rate=settings.email_fail_rate,
        from_addr=settings.notify_from,
    )
    registry = EndpointRegistry(data_store)
    bus = LiveFanoutBus(registry, data_store, snapshot_limit=settings.snapshot_limit)
    router = NotificationRouter(data_store, transport, public_base_url=settings.public_base_url)
    return Services(
        settings=settings,
        data_store=data_store,
        registry=registry,
        bus=bus,
        router=router,
        preferences=NotificationPreferences(data_store),
        pipeline=IngestionPipeline(registry, data_store, bus, router),
        verifier=verifier or StaticTokenVerifier(settings.auth_tokens),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


async def optional_principal(
    request: Request,
    services: Services = Depends(get_services),
) -> Optional[Principal]:
    token = bearer_token(request.headers.get("authorization"))
    if token is None:
        return None
    try:
        return await services.verifier.verify(token)
    except AuthenticationFailed as e:
        raise HTTPException(status_code=401, detail=str(e))


async def require_principal(principal: Optional[Principal] = Depends(optional_principal)) -> Principal:
    if principal is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return principal


# =============================================================================
# Response Models
# =============================================================================

class CreateEndpointRequest(BaseModel):
    name: Optional[str] = None


class NewEndpointResponse(BaseModel):
    url: str
    id: str


class EndpointResponse(BaseModel):
    id: str
    name: Optional[str]
    url: str
    owner_key: Optional[str]
    created_at: datetime
    request_count: int


class NotificationSettingResponse(BaseModel):
    enabled: bool
    notification_email: Optional[str]


class SetEmailRequest(BaseModel):
    email: str


async def _endpoint_response(
    services: Services,
    endpoint: Endpoint,
    viewer: Optional[Principal] = None,
) -> EndpointResponse:
    """`owner_key` is only shown to the owner; to everyone else it is None."""
    is_owner = viewer is not None and endpoint.owner_key in viewer.identity_keys
    return EndpointResponse(
        id=endpoint.id,
        name=endpoint.name,
        url=services.router.endpoint_url(endpoint.id),
        owner_key=endpoint.owner_key if is_owner else None,
        created_at=endpoint.created_at,
        request_count=await services.data_store.count_requests(endpoint.id),
    )


def _setting_response(setting: Optional[NotificationSetting]) -> NotificationSettingResponse:
    if setting is None:
        return NotificationSettingResponse(enabled=False, notification_email=None)
    return NotificationSettingResponse(
        enabled=setting.enabled,
        notification_email=setting.notification_email,
    )


router = APIRouter()


# =============================================================================
# Health Check
# =============================================================================

@router.get("/health", tags=["Health"])
def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "request-catcher"}


# =============================================================================
# Endpoint Management
# =============================================================================

@router.get("/new", response_model=NewEndpointResponse, tags=["Endpoints"])
async def new_endpoint(
    services: Services = Depends(get_services),
    principal: Optional[Principal] = Depends(optional_principal),
):
    """
    Create a new capture endpoint.

    Anonymous callers get an endpoint nobody owns (and so nobody is ever
    notified about). With a bearer token the caller becomes the owner.
    """
    owner_key = principal.owner_key if principal else None
    endpoint = await services.registry.create(owner_key=owner_key)
    return NewEndpointResponse(url=services.router.endpoint_url(endpoint.id), id=endpoint.id)


@router.post("/endpoints", response_model=EndpointResponse, status_code=201, tags=["Endpoints"])
async def create_endpoint(
    body: CreateEndpointRequest,
    services: Services = Depends(get_services),
    principal: Principal = Depends(require_principal),
):
    endpoint = await services.registry.create(name=body.name, owner_key=principal.owner_key)
    return await _endpoint_response(services, endpoint, viewer=principal)


@router.get("/endpoints", response_model=list[EndpointResponse], tags=["Endpoints"])
async def list_endpoints(
    services: Services = Depends(get_services),
    principal: Principal = Depends(require_principal),
):
    """List the caller's endpoints, under any key the caller is known by."""
    endpoints: list[Endpoint] = []
    for key in principal.identity_keys:
        endpoints.extend(await services.registry.list_for_owner(key))
    return [await _endpoint_response(services, e, viewer=principal) for e in endpoints]


@router.get("/endpoints/{endpoint_id}", response_model=EndpointResponse, tags=["Endpoints"])
async def get_endpoint(
    endpoint_id: str,
    services: Services = Depends(get_services),
    principal: Optional[Principal] = Depends(optional_principal),
):
    try:
        endpoint = await services.registry.get(endpoint_id)
    except EndpointNotFound:
        raise HTTPException(status_code=404, detail="Endpoint not found")
    return await _endpoint_response(services, endpoint, viewer=principal)


@router.delete("/endpoints/{endpoint_id}", status_code=204, tags=["Endpoints"])
async def delete_endpoint(
    endpoint_id: str,
    services: Services = Depends(get_services),
    principal: Principal = Depends(require_principal),
):
    """Delete an endpoint and everything captured on it."""
    try:
        await services.registry.delete(endpoint_id, owner_keys=principal.identity_keys)
    except EndpointNotFound:
        raise HTTPException(status_code=404, detail="Endpoint not found")
    except PermissionDenied as e:
        raise HTTPException(status_code=403, detail=str(e))
    services.bus.close_room(endpoint_id)
    services.pipeline.forget(endpoint_id)
    return Response(status_code=204)


@router.get("/endpoints/{endpoint_id}/requests", tags=["Endpoints"])
async def list_requests(
    endpoint_id: str,
    limit: int = Query(default=100, ge=1, le=100),
    services: Services = Depends(get_services),
) -> list[dict[str, Any]]:
    """The most recent captured requests, oldest first."""
    if not await services.registry.exists(endpoint_id):
        raise HTTPException(status_code=404, detail="Endpoint not found")
    try:
        newest_first = await services.data_store.recent_requests(endpoint_id, limit)
    except StorageFailure as e:
        logger.error(f"Reading requests for {endpoint_id} failed: {e}")
        raise HTTPException(status_code=500, detail="Internal Server Error")
    return [r.to_event() for r in reversed(newest_first)]


# =============================================================================
# Notification Preferences
# =============================================================================

@router.get("/settings/notifications", response_model=NotificationSettingResponse, tags=["Notifications"])
async def get_notification_settings(
    services: Services = Depends(get_services),
    principal: Principal = Depends(require_principal),
):
    return _setting_response(await services.preferences.get(principal))


@router.post("/settings/notifications/enable", response_model=NotificationSettingResponse, tags=["Notifications"])
async def enable_notifications(
    services: Services = Depends(get_services),
    principal: Principal = Depends(require_principal),
):
    return _setting_response(await services.preferences.enable(principal))


@router.post("/settings/notifications/disable", response_model=NotificationSettingResponse, tags=["Notifications"])
async def disable_notifications(
    services: Services = Depends(get_services),
    principal: Principal = Depends(require_principal),
):
    return _setting_response(await services.preferences.disable(principal))


@router.put("/settings/notifications/email", response_model=NotificationSettingResponse, tags=["Notifications"])
async def set_notification_email(
    body: SetEmailRequest,
    services: Services = Depends(get_services),
    principal: Principal = Depends(require_principal),
):
    try:
        setting = await services.preferences.set_email(principal, body.email)
    except InvalidRequest as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _setting_response(setting)


# =============================================================================
# Live Viewing
# =============================================================================

@router.websocket("/ws")
async def live_requests(websocket: WebSocket):
    """
    Event stream for viewers.

    Client sends {"event": "join" | "leave", "data": endpoint_id}.
    Server sends {"event": "error" | "init_requests" | "new_request" |
    "endpoint_deleted", "data": ...}.
    """
    services: Services = websocket.app.state.services
    await websocket.accept()
    subscriber = Subscriber(websocket.send_json)
    logger.info(f"{subscriber} connected")
    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(frame.get("code", 1000))
            # Binary frames carry no "text" and count as malformed
            try:
                message = json.loads(frame.get("text") or "")
            except ValueError:
                subscriber.emit(EVENT_ERROR, "Malformed message")
                continue

            event = message.get("event") if isinstance(message, dict) else None
            endpoint_id = str(message.get("data") or "") if isinstance(message, dict) else ""

            if event == "join":
                try:
                    await services.bus.join(subscriber, endpoint_id)
                except EndpointNotFound:
                    pass  # the bus already sent the error event
                except StorageFailure as e:
                    logger.error(f"Snapshot for {endpoint_id} failed: {e}")
                    subscriber.emit(EVENT_ERROR, "Internal Server Error")
            elif event == "leave":
                services.bus.leave(subscriber, endpoint_id)
            else:
                subscriber.emit(EVENT_ERROR, f"Unknown event: {event}")
    except WebSocketDisconnect:
        pass
    finally:
        services.bus.disconnect(subscriber)
        await subscriber.close()
        logger.info(f"{subscriber} disconnected")


# =============================================================================
# Ingestion (registered last: it matches any single path segment)
# =============================================================================

async def capture_request(request: Request) -> PlainTextResponse:
    """
    Capture any request sent to an endpoint.

    Mounted as a plain route with no method list, so every method token
    (TRACE, PROPFIND, custom ones) reaches the pipeline.
    """
    services: Services = request.app.state.services
    endpoint_id = request.path_params["endpoint_id"]
    body = await request.body()
    try:
        await services.pipeline.ingest(
            endpoint_id,
            method=request.method,
            headers=request.headers.items(),
            query=request.query_params.multi_items(),
            body=body,
        )
    except EndpointNotFound:
        return PlainTextResponse("Endpoint not found", status_code=404)
    except InvalidRequest as e:
        return PlainTextResponse(str(e), status_code=400)
    except StorageFailure as e:
        logger.error(f"Capture on {endpoint_id} failed: {e}")
        return PlainTextResponse("Internal Server Error", status_code=500)
    return PlainTextResponse("Received")


# =============================================================================
# Application
# =============================================================================

def create_app(services: Optional[Services] = None) -> FastAPI:
    services = services or build_services()

    logging.basicConfig(
        level=services.settings.log_level,
        format="%(asctime)s | %(name)-20s | %(levelname)-5s | %(message)s",
        datefmt="%H:%M:%S",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application startup and shutdown."""
        logging.info("Starting request catcher")
        yield
        await services.pipeline.drain()
        logging.info("Shutting down")

    app = FastAPI(
        title="Request Catcher",
        description="""
    Capture requests sent to throwaway endpoints and watch them arrive live.

    ## Endpoints

    - `ANY /{endpoint_id}` - capture a request
    - `GET /new` - create an endpoint
    - `WS /ws` - join an endpoint's live stream
    - `/settings/notifications/*` - email notifications for your endpoints
    """,
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services
    app.include_router(router)
    app.add_route("/{endpoint_id}", capture_request, include_in_schema=False)
    return app


app = create_app()
