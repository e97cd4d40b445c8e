"""
Routes for session management.

Provides:
- REST endpoints to create, list and destroy sessions (/sessions)
- an out-of-band endpoint to stop a group's recurring job
- the WebSocket endpoint web clients use for requests and notifications (/ws)
"""

from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.websockets import WebSocket, WebSocketDisconnect

from chatwarden.errors import ChatwardenError, SessionNotFoundError
from chatwarden.logger import get_logger
from chatwarden.models import (
    ClientMessage,
    CreateSessionRequest,
    ErrorResponse,
    SessionCreatedResponse,
    SessionListItem,
    SessionListResponse,
)

logger = get_logger(__name__)


def _get_controller(request_or_ws):
    """Get SessionController from app state."""
    app = getattr(request_or_ws, "app", None)
    if app is None:
        return None
    return getattr(app.state, "controller", None)


def _get_hub(request_or_ws):
    app = getattr(request_or_ws, "app", None)
    if app is None:
        return None
    return getattr(app.state, "hub", None)


def _not_ready() -> JSONResponse:
    return JSONResponse(
        ErrorResponse(error="Session system not initialized").model_dump(), status_code=503
    )


async def health(request: Request) -> PlainTextResponse:
    """GET /health"""
    return PlainTextResponse("ok")


async def create_session(request: Request) -> JSONResponse:
    """
    POST /sessions: Start pairing a new account.

    Body: {"profile": "...", "name": "...", "phone": "..."}
    The pairing QR code is pushed to web clients over /ws.
    """
    controller = _get_controller(request)
    if not controller:
        return _not_ready()

    try:
        body = await request.json()
    except Exception:
        body = {}
    try:
        req = CreateSessionRequest(**(body or {}))
    except ValidationError as e:
        return JSONResponse(ErrorResponse(error=str(e)).model_dump(), status_code=400)

    try:
        record = await controller.start_new_session(req.profile, req.name, req.phone)
    except ChatwardenError as e:
        return JSONResponse(ErrorResponse(error=str(e)).model_dump(), status_code=500)
    except Exception as e:
        logger.error(f"Error creating session: {e}")
        return JSONResponse(
            ErrorResponse(error=f"Internal error: {e}").model_dump(), status_code=500
        )

    resp = SessionCreatedResponse(
        session_id=record.session_id, storage_key=record.storage_key
    )
    return JSONResponse(resp.model_dump(), status_code=201)


async def list_sessions(request: Request) -> JSONResponse:
    """GET /sessions: List every stored session and whether it is live."""
    controller = _get_controller(request)
    if not controller:
        return _not_ready()

    sessions = await controller.list_sessions()
    resp = SessionListResponse(
        sessions=[SessionListItem(**s) for s in sessions], count=len(sessions)
    )
    return JSONResponse(resp.model_dump())


async def destroy_session(request: Request) -> JSONResponse:
    """DELETE /sessions/{storage_key}: Tear down a session and delete its credentials."""
    controller = _get_controller(request)
    if not controller:
        return _not_ready()

    storage_key = request.path_params.get("storage_key", "")
    try:
        was_live = await controller.destroy_session(storage_key)
    except ValueError as e:
        return JSONResponse(ErrorResponse(error=str(e)).model_dump(), status_code=400)
    return JSONResponse({"storage_key": storage_key, "destroyed": True, "was_live": was_live})


async def cancel_group_job(request: Request) -> JSONResponse:
    """DELETE /sessions/{storage_key}/jobs/{group_id}: Stop a group's recurring job."""
    controller = _get_controller(request)
    if not controller:
        return _not_ready()

    storage_key = request.path_params.get("storage_key", "")
    group_id = request.path_params.get("group_id", "")
    try:
        cancelled = controller.cancel_group_job(storage_key, group_id)
    except SessionNotFoundError as e:
        return JSONResponse(ErrorResponse(error=str(e)).model_dump(), status_code=404)
    return JSONResponse({"group_id": group_id, "cancelled": cancelled})


async def session_websocket_endpoint(websocket: WebSocket):
    """
    WebSocket endpoint for web clients.

    Clients receive every notification (``qr``, ``connected``, ``disconnected``,
    ``restarted``, ``reconnected``, ``error``) and may send:
        {"type": "create_session", "profile": "...", "name": "...", "phone": "..."}
        {"type": "list_sessions"}
        {"type": "destroy_session", "storage_key": "auth_info1"}
    """
    controller = _get_controller(websocket)
    hub = _get_hub(websocket)
    if not controller or not hub:
        await websocket.close(code=1011, reason="Session system not initialized")
        return

    await websocket.accept()
    hub.connect(websocket)

    try:
        while True:
            data = await websocket.receive_json()
            try:
                message = ClientMessage(**data)
            except (ValidationError, TypeError) as e:
                await hub.send_to(websocket, "error", {"message": f"Invalid message: {e}"})
                continue
            await _handle_client_message(websocket, hub, controller, message)

    except WebSocketDisconnect:
        logger.info("Web client WebSocket disconnected")
    except Exception as e:
        logger.error(f"Web client WebSocket error: {e}")
    finally:
        hub.disconnect(websocket)


async def _handle_client_message(websocket, hub, controller, message: ClientMessage) -> None:
    if message.type == "create_session":
        try:
            record = await controller.start_new_session(
                message.profile, message.name, message.phone
            )
        except Exception as e:
            # The controller has already broadcast an "error" notification.
            logger.warning(f"create_session over WebSocket failed: {e}")
            return
        await hub.send_to(
            websocket,
            "session_created",
            {"session_id": record.session_id, "storage_key": record.storage_key},
        )

    elif message.type == "list_sessions":
        await hub.send_to(websocket, "sessions_list", await controller.list_sessions())

    elif message.type == "destroy_session":
        if not message.storage_key:
            await hub.send_to(websocket, "error", {"message": "storage_key is required"})
            return
        try:
            await controller.destroy_session(message.storage_key)
        except Exception as e:
            logger.error(f"destroy_session failed for {message.storage_key}: {e}")
            await hub.send_to(
                websocket, "error", {"message": "Failed to destroy session", "detail": str(e)}
            )
            return
        await hub.send_to(websocket, "session_destroyed", {"storage_key": message.storage_key})
