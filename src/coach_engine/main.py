import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from coach_engine.coaching import coach_move
from coach_engine.config import Settings
from coach_engine.engine import Backend, EngineCallbacks, Purpose
from coach_engine.errors import (
    AnalysisCancelled,
    EngineError,
    EngineErrorEvent,
    EngineTimeoutError,
    ProtocolError,
    StateError,
)
from coach_engine.manager import EngineManager
from coach_engine.match_analysis import AnalysisUpdate, MatchAnalysisOrchestrator
from coach_engine.serialize import (
    accuracy_to_dict,
    analyzed_move_to_dict,
    assessment_to_dict,
    best_move_to_dict,
    evaluation_to_dict,
    line_to_dict,
    state_to_dict,
)

logger = logging.getLogger(__name__)

settings = Settings()

# --- Initialization status tracking ---

_init_status: dict[str, dict] = {
    "engine": {"state": "pending", "detail": ""},
}


def _set_status(task: str, state: str, detail: str = "") -> None:
    _init_status[task] = {"state": state, "detail": detail}


def _all_done() -> bool:
    return all(t["state"] in ("done", "failed") for t in _init_status.values())


# --- Event fan-out to presentation clients ---

_subscribers: set[asyncio.Queue] = set()


def _broadcast(event: dict) -> None:
    for queue in list(_subscribers):
        if queue.full():
            # Slow client: drop its oldest event.
            queue.get_nowait()
        queue.put_nowait(event)


def _on_error(event: EngineErrorEvent) -> None:
    logger.warning("Engine error: %s", event.message)
    _broadcast({
        "type": "error",
        "message": event.message,
        "fallback": event.fallback,
        "terminal": event.terminal,
    })


callbacks = EngineCallbacks(
    on_ready=lambda: _broadcast({"type": "ready", "backend": manager.engine_type.value}),
    on_evaluation=lambda ev: _broadcast({"type": "evaluation", **evaluation_to_dict(ev)}),
    on_multi_pv=lambda lines: _broadcast({
        "type": "multipv", "lines": [line_to_dict(l) for l in lines],
    }),
    on_best_move=lambda best: _broadcast({"type": "bestmove", **best_move_to_dict(best)}),
    on_streaming_update=lambda ev: _broadcast({"type": "streaming", **evaluation_to_dict(ev)}),
    on_cloud_multi_pv=lambda lines: _broadcast({
        "type": "cloud_multipv", "lines": [line_to_dict(l) for l in lines],
    }),
    on_error=_on_error,
)


def _on_match_update(update: AnalysisUpdate) -> None:
    _broadcast({
        "type": f"match_{update.type}",
        "progress": update.progress.percentage,
        "analyzed": update.progress.analyzed,
        "total": update.progress.total,
        "accuracy": accuracy_to_dict(update.accuracy),
    })


# --- Service instances ---

manager = EngineManager(settings)
_match_analyzer: MatchAnalysisOrchestrator | None = None


async def _init_engine() -> None:
    _set_status("engine", "running", f"Starting {settings.preferred_engine} engine...")
    try:
        await manager.initialize(settings.preferred_engine, callbacks)
        _set_status("engine", "done", f"{manager.engine_type.value} engine ready")
    except EngineError as e:
        logger.error("Engine init failed: %s", e)
        _set_status("engine", "failed", str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = asyncio.create_task(_init_engine())
    yield
    task.cancel()
    await manager.cleanup()


app = FastAPI(title="Chess Coach Engine", lifespan=lifespan)


# --- Request/Response models ---

class EvalRequest(BaseModel):
    fen: str
    depth: int | None = None
    purpose: Purpose = Purpose.CURRENT


class BestMoveRequest(BaseModel):
    fen: str
    depth: int | None = None


class MultiPvRequest(BaseModel):
    fen: str
    depth: int | None = None
    lines: int = 3


class SwitchRequest(BaseModel):
    backend: Backend


class EngineSettingsRequest(BaseModel):
    depth: int | None = None
    variants: int | None = None


class CoachMoveRequest(BaseModel):
    fen: str
    move: str
    eval_before: float = 0.0
    depth: int | None = None


class MatchRequest(BaseModel):
    moves: list[str]
    color: str = "white"
    depth: int | None = None
    start_fen: str | None = None


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, EngineTimeoutError):
        return HTTPException(status_code=504, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, (StateError, AnalysisCancelled)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ProtocolError):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=503, detail=str(e))


async def _bounded(coro):
    try:
        return await asyncio.wait_for(coro, timeout=settings.request_timeout)
    except asyncio.TimeoutError as e:
        timeout = EngineTimeoutError(f"Engine did not respond within {settings.request_timeout}s")
        raise _http_error(timeout) from e
    except (ValueError, EngineError) as e:
        raise _http_error(e) from e


# --- Endpoints ---

@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.get("/api/status")
async def status():
    return {
        "ready": _all_done(),
        "tasks": _init_status,
    }


@app.get("/api/engine/state")
async def engine_state():
    return state_to_dict(manager.get_engine_state())


@app.post("/api/engine/evaluate")
async def evaluate(req: EvalRequest):
    result = await _bounded(manager.evaluate_position(req.fen, req.depth, req.purpose))
    return best_move_to_dict(result)


@app.post("/api/engine/best-move")
async def best_move(req: BestMoveRequest):
    result = await _bounded(manager.find_best_move(req.fen, req.depth))
    return best_move_to_dict(result)


@app.post("/api/engine/multipv")
async def multipv(req: MultiPvRequest):
    result = await _bounded(manager.analyze_with_multi_pv(req.fen, req.depth, req.lines))
    return best_move_to_dict(result)


@app.post("/api/engine/switch")
async def switch_engine(req: SwitchRequest):
    try:
        await manager.switch_engine(req.backend)
    except EngineError as e:
        raise _http_error(e) from e
    return state_to_dict(manager.get_engine_state())


@app.post("/api/engine/stop")
async def stop_analysis():
    manager.stop_analysis()
    return state_to_dict(manager.get_engine_state())


@app.post("/api/engine/settings")
async def engine_settings(req: EngineSettingsRequest):
    if req.depth is not None:
        manager.set_depth(req.depth)
    if req.variants is not None:
        manager.set_variants(req.variants)
    return state_to_dict(manager.get_engine_state())


@app.post("/api/coach/move")
async def coach(req: CoachMoveRequest):
    assessment = await _bounded(coach_move(manager, req.fen, req.move, req.eval_before, req.depth))
    return assessment_to_dict(assessment)


@app.post("/api/match/analyze")
async def analyze_match(req: MatchRequest):
    global _match_analyzer
    if _match_analyzer is not None and _match_analyzer.is_analyzing:
        raise HTTPException(status_code=409, detail="Match analysis already in progress")
    analyzer = MatchAnalysisOrchestrator.for_manager(
        manager,
        depth=req.depth,
        position_timeout=settings.position_timeout,
        progress_interval=settings.progress_interval,
        on_update=_on_match_update,
    )
    _match_analyzer = analyzer
    kwargs = {"start_fen": req.start_fen} if req.start_fen else {}
    try:
        moves = await analyzer.analyze_match(req.moves, req.color, **kwargs)
    except (ValueError, EngineError) as e:
        raise _http_error(e) from e
    return {
        "moves": [analyzed_move_to_dict(m) for m in moves],
        "accuracy": accuracy_to_dict(analyzer.accuracy()),
    }


@app.websocket("/ws/engine")
async def engine_events(ws: WebSocket):
    """Push engine and match events to a presentation client."""
    queue: asyncio.Queue = asyncio.Queue(maxsize=settings.event_queue_size)
    _subscribers.add(queue)
    await ws.accept()

    async def forward():
        while True:
            await ws.send_json(await queue.get())

    sender = asyncio.create_task(forward())
    try:
        # Inbound frames are ignored; reading only detects the disconnect.
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        _subscribers.discard(queue)
