"""App HTTP del gateway: salud, operación del broker, requests y eventos.

Ejecutar:
    uvicorn device_gateway.main:app --port 8001
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Header, HTTPException, Request, WebSocket, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field
from starlette.responses import Response

from common.config import get_settings

from .core.errors import (
    ConfigurationError,
    DeviceNotFoundError,
    DomainRejection,
    PayloadValidationError,
    PersistenceError,
    TransportError,
)
from .gateway import DeviceGateway
from .transports.websocket.handler import websocket_events

logger = logging.getLogger(__name__)


class IssueRequestIn(BaseModel):
    kind: str
    params: Dict[str, Any] = Field(default_factory=dict)


class IssueRequestOut(BaseModel):
    request_id: str = Field(..., serialization_alias="requestId")
    device_id: Optional[str] = Field(default=None, serialization_alias="deviceId")
    kind: str


def _gateway(request: Request) -> DeviceGateway:
    return request.app.state.gateway


def _issue(gateway: DeviceGateway, device_id: Optional[str], kind: str,
           params: Dict[str, Any], user_id: str) -> JSONResponse:
    try:
        request_id = gateway.issue(device_id, kind, params, user_id)
    except PayloadValidationError as e:
        raise HTTPException(422, detail=e.errors)
    except DeviceNotFoundError as e:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=e.reason)
    except DomainRejection as e:
        raise HTTPException(status.HTTP_409_CONFLICT, detail=e.reason)
    except (TransportError, PersistenceError) as e:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    body = IssueRequestOut(request_id=request_id, device_id=device_id, kind=kind)
    return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=body.model_dump(by_alias=True))


def create_app(gateway: Optional[DeviceGateway] = None, start_gateway: bool = True) -> FastAPI:
    """Crea la app. Sin gateway explícito se construye desde el entorno."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        gw = gateway
        if gw is None:
            settings = get_settings()
            logging.basicConfig(
                level=settings.log_level,
                format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                handlers=[logging.StreamHandler()],
            )
            gw = DeviceGateway.from_settings(settings)
        app.state.gateway = gw
        if start_gateway and not gw.start():
            # La app arranca igual: /mqtt/reconnect permite reintentar
            logger.error("[APP] Gateway started without broker connection")
        try:
            yield
        finally:
            if start_gateway:
                gw.stop()

    app = FastAPI(title="IoT Device Gateway", version="0.1.0", lifespan=lifespan)

    @app.get("/health")
    def health(request: Request):
        result = _gateway(request).health_check()
        code = status.HTTP_200_OK if result.healthy else status.HTTP_503_SERVICE_UNAVAILABLE
        return JSONResponse(status_code=code, content=result.to_dict())

    @app.get("/stats")
    def stats(request: Request):
        return _gateway(request).stats

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/mqtt/status")
    def mqtt_status(request: Request):
        return _gateway(request).connection.status()

    @app.post("/mqtt/reconnect")
    def mqtt_reconnect(request: Request):
        try:
            return _gateway(request).reconnect()
        except ConfigurationError as e:
            raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, detail=e.problems)
        except TransportError as e:
            raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    @app.post("/devices/broadcast/discovery", status_code=status.HTTP_202_ACCEPTED)
    def broadcast_discovery(request: Request, x_user_id: str = Header(...)):
        return _issue(_gateway(request), None, "discovery", {}, x_user_id)

    @app.post("/devices/{device_id}/requests", status_code=status.HTTP_202_ACCEPTED)
    def issue_request(device_id: str, body: IssueRequestIn, request: Request,
                      x_user_id: str = Header(...)):
        return _issue(_gateway(request), device_id, body.kind, body.params, x_user_id)

    @app.websocket("/ws/events")
    async def ws_events(websocket: WebSocket):
        await websocket_events(websocket, websocket.app.state.gateway.events)

    return app


app = create_app()
