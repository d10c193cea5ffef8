"""
HTTP and WebSocket API for the webhook relay.

Every path belongs to the relay:
- Paths ending in the reserved suffix open a subscriber channel (WebSocket)
- Any other path is a webhook callback, broadcast to all subscribers
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse, Response
from starlette.requests import HTTPConnection

from src.relay.broadcaster import RelayBroadcaster
from src.relay.config import RelayConfig
from src.relay.models import SubscriberConnection
from src.relay.registry import SubscriberRegistry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Webhook Relay"])


def get_broadcaster(connection: HTTPConnection) -> RelayBroadcaster:
    """Get the broadcaster attached to the application serving this request."""
    broadcaster = getattr(connection.app.state, "broadcaster", None)
    if broadcaster is None:
        raise HTTPException(status_code=503, detail="Webhook relay not initialized")
    return broadcaster


@router.websocket("/{path:path}")
async def subscriber_stream(websocket: WebSocket, path: str):
    """
    WebSocket endpoint for subscribers.

    The subscriber authenticates with the shared token in the query string:
    wss://relay.example.com/_websocket?token={token}

    Message Protocol:
    - Server sends: {"url": "...", "method": "...", "headers": {...}, "body": "<base64>" | null}
    - Client messages are ignored
    """
    broadcaster = getattr(websocket.app.state, "broadcaster", None)
    if broadcaster is None:
        await websocket.close(code=1011, reason="Webhook relay not initialized")
        return

    if not broadcaster.is_channel_path(websocket.url.path):
        await _reject(websocket, 404, "Not Found")
        return

    token = websocket.query_params.get("token")
    if not broadcaster.validate_token(token):
        logger.warning(
            f"WebSocket connection rejected: invalid token from "
            f"{websocket.client.host if websocket.client else 'unknown'}"
        )
        await _reject(websocket, 401, "Unauthorized")
        return

    await websocket.accept()

    async def _ws_close(code: int, reason: str) -> None:
        await websocket.close(code=code, reason=reason)

    connection = SubscriberConnection(
        connection_id=f"wsc_{uuid.uuid4().hex[:16]}",
        send_fn=websocket.send_text,
        close_fn=_ws_close,
        remote_ip=websocket.client.host if websocket.client else None,
        user_agent=websocket.headers.get("user-agent"),
    )
    await broadcaster.registry.register(connection)

    try:
        await _handle_client_messages_ws(websocket, connection)
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: {connection.connection_id}")
    except Exception as e:
        logger.error(f"WebSocket error on {connection.connection_id}: {e}")
    finally:
        await broadcaster.registry.unregister(connection)
        logger.info(f"WebSocket connection cleaned up: {connection.connection_id}")


async def _handle_client_messages_ws(
    websocket: WebSocket, connection: SubscriberConnection
) -> None:
    """Read until the subscriber goes away; inbound data has no meaning."""
    while True:
        message = await websocket.receive()

        if message["type"] == "websocket.disconnect":
            logger.info(
                f"WebSocket closed by subscriber: {connection.connection_id} "
                f"(code={message.get('code')})"
            )
            return

        data = message.get("text")
        if data is None:
            data = message.get("bytes")
        logger.debug(f"Ignoring message from {connection.connection_id}: {data!r}")


async def _reject(websocket: WebSocket, status_code: int, detail: str) -> None:
    """Refuse a channel-open handshake with an HTTP status."""
    if "websocket.http.response" in websocket.scope.get("extensions", {}):
        await websocket.send_denial_response(
            PlainTextResponse(detail, status_code=status_code)
        )
    else:
        # 401 -> 4001, 404 -> 4004
        await websocket.close(code=4000 + status_code - 400, reason=detail)


async def receive_webhook(request: Request) -> Response:
    """
    Webhook callback endpoint, mounted for every HTTP method.

    Always answers 202 with an empty text/plain body; zero subscribers is a
    valid outcome.
    """
    broadcaster = get_broadcaster(request)

    if broadcaster.is_channel_path(request.url.path):
        logger.warning(
            f"Channel-open request without upgrade: {request.method} {request.url.path}"
        )
        return PlainTextResponse("Expected Upgrade: websocket", status_code=426)

    logger.info(f"Webhook received: {request.method} {request.url}")
    envelope = await broadcaster.build_envelope(request)
    await broadcaster.broadcast(envelope)

    return Response(status_code=202, media_type="text/plain")


def create_app(
    config: RelayConfig, registry: Optional[SubscriberRegistry] = None
) -> FastAPI:
    """
    Build the relay application.

    Args:
        config: Relay configuration
        registry: Subscriber registry (a new one is created if omitted)

    Returns:
        FastAPI app with the broadcaster attached to app.state
    """
    broadcaster = RelayBroadcaster(config, registry)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            f"Webhook relay ready (channel suffix: {config.websocket_suffix})"
        )
        yield
        closed = await broadcaster.registry.close_all(
            config.shutdown_close_code, config.shutdown_close_reason
        )
        logger.info(f"Webhook relay stopped ({closed} subscriber(s) disconnected)")

    # The webhook surface owns every path, so docs and schema routes are disabled.
    app = FastAPI(
        title="Webhook Relay",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.broadcaster = broadcaster
    app.state.config = config
    app.include_router(router)
    # Plain Starlette route with no method list: every verb reaches the handler
    app.add_route("/{path:path}", receive_webhook, include_in_schema=False)
    return app
