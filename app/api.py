"""FastAPI surface for the station board.

REST endpoints for intake and operator actions, plus one WebSocket channel
that pushes board events to every viewer and accepts the same operator
actions with an ack reply.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

# Ensure flat absolute imports (e.g., "import database") resolve.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from assignment import api as assignment  # noqa: E402
from broadcast import BroadcastHub  # noqa: E402
from context import BoardContext  # noqa: E402
from countdown import resync_payload, station_snapshot  # noqa: E402
from database import SessionLocal, board_engine, init_database  # noqa: E402
from errors import BoardError, MutationResult, http_status_for  # noqa: E402
from events import BoardEvent, EventType, occupant_payload  # noqa: E402
from modalities import provision_board  # noqa: E402
import plans  # noqa: E402

logger = logging.getLogger(__name__)


def build_context(session_factory=SessionLocal, hub: Optional[BroadcastHub] = None) -> BoardContext:
    return BoardContext(session_factory=session_factory, publisher=hub or BroadcastHub())


def create_app(context: Optional[BoardContext] = None) -> FastAPI:
    """Build the application around an explicit board context."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if context is None:
            init_database(board_engine)
            board = build_context()
            with board.session_factory() as session:
                created = provision_board(session)
            logger.info("Board provisioned: %s", created)
        else:
            board = context
        app.state.board = board
        yield

    app = FastAPI(title="Station Board API", version="0.1", lifespan=lifespan)
    _register_routes(app)
    return app


def _board(request: Request) -> BoardContext:
    return request.app.state.board


async def _flush(board: BoardContext) -> None:
    publisher = board.publisher
    if isinstance(publisher, BroadcastHub):
        await publisher.flush()


def _result_response(result: MutationResult) -> JSONResponse:
    return JSONResponse(status_code=http_status_for(result), content=result.to_dict())


def _require(payload: Dict[str, Any], key: str) -> Any:
    value = payload.get(key)
    if value is None or value == "":
        raise HTTPException(status_code=400, detail=f"{key} is required")
    return value


def _as_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"{name} must be an integer")


def _optional_int(value: Any, name: str) -> Optional[int]:
    if value is None or value == "":
        return None
    return _as_int(value, name)


def _serialize_grid(grid) -> Dict[str, Dict[str, Any]]:
    return {
        category: {str(index): occupant_payload(cell) for index, cell in cells.items()}
        for category, cells in grid.items()
    }


def _register_routes(app: FastAPI) -> None:
    @app.post("/client")
    async def create_client(payload: Dict[str, Any], request: Request) -> JSONResponse:
        board = _board(request)
        try:
            client = await run_in_threadpool(
                plans.create_client,
                board,
                payload.get("firstName"),
                payload.get("lastInitial"),
            )
        except BoardError as exc:
            raise HTTPException(status_code=400, detail=exc.message) from exc
        return JSONResponse(content=jsonable_encoder(client))

    @app.post("/plan")
    async def create_plan(payload: Dict[str, Any], request: Request) -> JSONResponse:
        board = _board(request)
        client_id = _as_int(_require(payload, "clientId"), "clientId")
        result = await run_in_threadpool(
            plans.create_or_update_plan,
            board,
            client_id,
            payload.get("optimizations") or payload.get("modalities") or [],
            payload.get("mode"),
            payload.get("note") or "",
        )
        await _flush(board)
        return _result_response(result)

    @app.patch("/plan")
    async def patch_plan(payload: Dict[str, Any], request: Request) -> JSONResponse:
        board = _board(request)
        client_id = _as_int(_require(payload, "clientId"), "clientId")
        note = payload.get("note")
        result = await run_in_threadpool(
            plans.patch_plan,
            board,
            client_id,
            payload.get("add") or [],
            payload.get("remove") or [],
            note if isinstance(note, str) else None,
        )
        await _flush(board)
        return _result_response(result)

    @app.delete("/plan/{client_id}")
    async def terminate_plan(client_id: int, request: Request) -> JSONResponse:
        board = _board(request)
        result = await run_in_threadpool(assignment.terminate_plan, board, client_id)
        await _flush(board)
        return _result_response(result)

    @app.get("/plans")
    async def list_plans(request: Request) -> JSONResponse:
        board = _board(request)
        payload = await run_in_threadpool(plans.today_plans, board)
        return JSONResponse(content=jsonable_encoder(payload))

    @app.get("/stations")
    async def list_stations(request: Request) -> JSONResponse:
        board = _board(request)

        def _snapshot():
            with board.session_factory() as session:
                return _serialize_grid(station_snapshot(session, board.now()))

        grid = await run_in_threadpool(_snapshot)
        return JSONResponse(content=jsonable_encoder(grid))

    @app.post("/stations/{category}/{index}/assign")
    async def assign_station(category: str, index: int, request: Request, payload: Optional[Dict[str, Any]] = None) -> JSONResponse:
        board = _board(request)
        payload = payload or {}
        result = await run_in_threadpool(
            assignment.assign,
            board,
            category,
            index,
            payload.get("type") or "",
            _optional_int(payload.get("clientId"), "clientId"),
            _optional_int(payload.get("durationSec"), "durationSec"),
            actor=payload.get("actor") or "operator",
        )
        await _flush(board)
        return _result_response(result)

    @app.post("/stations/{category}/{index}/release")
    async def release_station(category: str, index: int, request: Request, payload: Optional[Dict[str, Any]] = None) -> JSONResponse:
        board = _board(request)
        actor = (payload or {}).get("actor") or "operator"
        result = await run_in_threadpool(assignment.release, board, category, index, actor=actor)
        await _flush(board)
        return _result_response(result)

    @app.websocket("/ws")
    async def board_socket(websocket: WebSocket) -> None:
        """
        Message format (incoming):
        - {"type": "init"}
        - {"type": "station:assign", "ref": ..., "category", "index", "sessionType", "clientId"?, "durationSec"?}
        - {"type": "station:release", "ref": ..., "category", "index"}
        - {"type": "plan:terminate", "ref": ..., "clientId"}

        Every mutation gets an {"type": "ack", "data": {"ref", "ok", "reason"?}} reply;
        board changes arrive as pushed events.
        """
        board: BoardContext = websocket.app.state.board
        hub = board.publisher
        if not isinstance(hub, BroadcastHub):
            await websocket.close(code=1011)
            return
        connection = await hub.connect(websocket)
        try:
            while True:
                message = await websocket.receive_json()
                await _handle_message(board, hub, connection, message)
        except WebSocketDisconnect:
            pass
        finally:
            await hub.disconnect(connection.viewer_id)


async def _handle_message(board: BoardContext, hub: BroadcastHub, connection, message: Any) -> None:
    if not isinstance(message, dict):
        await hub.send(connection, BoardEvent(EventType.ERROR, {"message": "Messages must be JSON objects"}))
        return
    msg_type = message.get("type", "")
    ref = message.get("ref")

    if msg_type == "init":
        def _resync():
            with board.session_factory() as session:
                payload = resync_payload(session, board.today(), board.now())
                # Still inside the read transaction: everything drained here is older.
                return payload, hub.drain()

        await hub.resync(connection, _resync)
        return

    try:
        if msg_type == "station:assign":
            result = await run_in_threadpool(
                assignment.assign,
                board,
                str(message.get("category") or ""),
                int(message.get("index")),
                message.get("sessionType") or "",
                _ws_optional_int(message.get("clientId")),
                _ws_optional_int(message.get("durationSec")),
            )
        elif msg_type == "station:release":
            result = await run_in_threadpool(
                assignment.release,
                board,
                str(message.get("category") or ""),
                int(message.get("index")),
            )
        elif msg_type == "plan:terminate":
            result = await run_in_threadpool(assignment.terminate_plan, board, int(message.get("clientId")))
        else:
            await hub.send(connection, BoardEvent(EventType.ERROR, {"ref": ref, "message": f"Unknown message type {msg_type!r}"}))
            return
    except (TypeError, ValueError):
        result = MutationResult(ok=False, reason="InvalidRequest", message="Malformed message")

    await hub.flush()
    await hub.send(connection, BoardEvent(EventType.ACK, {"ref": ref, **result.to_dict()}))


def _ws_optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


app = create_app()
