"""Cloud Stockfish backend over a persistent WebSocket (chess-api.com).

Requests are JSON objects tagged with a random ``taskId``. The service
streams ``move`` messages while it searches and finishes each task with a
``bestmove``. Scores are already White-perspective pawns.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from coach_engine.correlator import PendingTask, RequestCorrelator
from coach_engine.engine import (
    STATUS_FOR_PURPOSE,
    Backend,
    BestMove,
    EngineAdapter,
    EngineCallbacks,
    EngineStatus,
    Evaluation,
    LineInfo,
    Perspective,
    Purpose,
    line_rank,
)
from coach_engine.errors import (
    AnalysisCancelled,
    EngineConnectionError,
    EngineErrorEvent,
    ProtocolError,
)
from coach_engine.reconnect import ReconnectionController
from coach_engine.rules import validate_fen

logger = logging.getLogger(__name__)

DEFAULT_CLOUD_URL = "wss://chess-api.com/v1"
MAX_CLOUD_DEPTH = 18

_PIECE_PREFIX = re.compile(r"^[KQRBNP](?=[a-h])")


def lan_to_uci(lan: str | None) -> str | None:
    """``Nb1-c3`` -> ``b1c3``: drop a leading piece letter and any dashes."""
    if not lan:
        return lan
    return _PIECE_PREFIX.sub("", lan).replace("-", "")


async def _open_websocket(url: str):
    return await connect(url, open_timeout=10)


class CloudEngineAdapter(EngineAdapter):
    backend = Backend.CLOUD
    max_depth = MAX_CLOUD_DEPTH

    def __init__(
        self,
        url: str = DEFAULT_CLOUD_URL,
        max_thinking_time: int = 50,
        depth: int = 12,
        variants: int = 3,
        max_reconnect_attempts: int = 3,
        reconnect_base_delay: float = 2.0,
        connect: Callable[[str], Awaitable[Any]] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(depth=depth, variants=variants)
        self._url = url
        self._max_thinking_time = max_thinking_time
        self._connect = connect or _open_websocket
        self._ws = None
        self._reader_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._tasks = RequestCorrelator()
        self._reconnector = ReconnectionController(
            self._open,
            max_attempts=max_reconnect_attempts,
            base_delay=reconnect_base_delay,
            sleep=sleep,
        )
        self._closing = False

    @property
    def pending_tasks(self) -> RequestCorrelator:
        return self._tasks

    @property
    def reconnector(self) -> ReconnectionController:
        return self._reconnector

    # --- lifecycle ---

    async def initialize(self, callbacks: EngineCallbacks) -> None:
        self._callbacks = callbacks
        self._closing = False
        try:
            await self._open()
        except EngineConnectionError:
            self._status = EngineStatus.ERROR
            raise

    async def _open(self) -> None:
        try:
            ws = await self._connect(self._url)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            raise EngineConnectionError(f"Cloud engine connection failed: {e}") from e
        self._ws = ws
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        self._status = EngineStatus.IDLE
        logger.info("Cloud engine connected (%s)", self._url)
        self._emit("on_ready")

    async def cleanup(self) -> None:
        logger.info("Cleaning up cloud engine")
        self._closing = True
        self.stop_analysis()
        for task in (self._reconnect_task, self._reader_task):
            if task is not None and not task.done():
                task.cancel()
        self._reconnect_task = None
        self._reader_task = None
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (ConnectionClosed, OSError) as e:
                logger.debug("Error closing cloud socket: %s", e)
        self._status = EngineStatus.DISCONNECTED
        self._lines = []
        self._pv = []

    # --- requests ---

    async def evaluate_position(
        self, fen: str, depth: int | None = None, purpose: Purpose = Purpose.CURRENT,
    ) -> BestMove:
        validate_fen(fen)
        self._begin(purpose)
        depth = self._clamp_depth(depth)

        future = asyncio.get_running_loop().create_future()
        task = self._tasks.register(purpose, future)
        self._lines = []
        self._pv = []
        request = {
            "fen": fen,
            "depth": depth,
            "variants": self._variants,
            "maxThinkingTime": self._max_thinking_time,
            "taskId": task.task_id,
        }
        try:
            await self._send(request)
        except EngineConnectionError:
            self._tasks.resolve(task.task_id)
            self._finish()
            raise

        try:
            return await future
        except asyncio.CancelledError:
            if task.task_id in self._tasks:
                self.stop_analysis()
            raise

    async def analyze_multi_pv(
        self, fen: str, depth: int | None = None, lines: int | None = None,
    ) -> BestMove:
        if lines is not None:
            self.set_variants(lines)
        return await self.evaluate_position(fen, depth, Purpose.ANALYSIS)

    def stop_analysis(self) -> None:
        # The service has no stop command; forget the tasks so late
        # responses are dropped as stale.
        for task in self._tasks.clear():
            if task.future is not None and not task.future.done():
                task.future.set_exception(AnalysisCancelled("Analysis stopped"))
        self._finish()

    async def _send(self, payload: dict) -> None:
        ws = self._ws
        if ws is None:
            raise EngineConnectionError("Cloud engine not connected")
        raw = json.dumps(payload)
        logger.debug(">> %s", raw)
        try:
            await ws.send(raw)
        except (ConnectionClosed, OSError) as e:
            raise EngineConnectionError(f"Cloud engine send failed: {e}") from e

    # --- inbound ---

    async def _read_loop(self, ws) -> None:
        try:
            while True:
                raw = await ws.recv()
                self._handle_raw(raw)
        except ConnectionClosed as e:
            logger.info("Cloud engine connection closed: %s", e)
        except OSError as e:
            logger.warning("Cloud engine connection error: %s", e)
        if self._closing or ws is not self._ws:
            return
        self._on_connection_lost()

    def _handle_raw(self, raw: str | bytes) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode(errors="replace")
        logger.debug("<< %s", raw)
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ProtocolError(f"Expected a JSON object, got {type(data).__name__}")
            self._handle_message(data)
        except json.JSONDecodeError as e:
            self._report_protocol_error(ProtocolError(f"Invalid JSON from cloud engine: {e}"))
        except ProtocolError as e:
            self._report_protocol_error(e)
        except (TypeError, ValueError, KeyError, AttributeError) as e:
            # One bad message must not end the read loop.
            logger.exception("Unhandled cloud message: %s", raw)
            self._report_protocol_error(ProtocolError(f"Unexpected cloud message: {e}"))

    def _report_protocol_error(self, error: ProtocolError) -> None:
        logger.warning("%s", error)
        self._emit("on_error", EngineErrorEvent(message=str(error), error=error))

    def _handle_message(self, data: dict) -> None:
        kind = data.get("type")
        if kind == "move":
            self._handle_move_update(data)
        elif kind == "bestmove":
            self._handle_best_move(data)
        elif kind == "info":
            self._handle_info(data)
        else:
            logger.debug("Ignoring cloud message type %r", kind)

    def _task_for(self, data: dict) -> PendingTask | None:
        """The pending task a message belongs to, or None if it is stale."""
        task_id = data.get("taskId")
        task = self._tasks.get(task_id) if task_id is not None else self._tasks.latest()
        if task is None:
            return None
        if STATUS_FOR_PURPOSE[task.purpose] is not self._status:
            return None
        return task

    def _handle_move_update(self, data: dict) -> None:
        task = self._task_for(data)
        if task is None:
            logger.debug("Dropping stale move update")
            return
        line = _line_from(data)
        lines = [l for l in self._lines if l.move != line.move]
        lines.append(line)
        lines.sort(key=line_rank)
        self._lines = lines[:self._variants]

        top = self._lines[0].evaluation
        self._last_evaluation = top
        if top.pv:
            self._pv = list(top.pv)
        self._emit("on_evaluation", top)
        self._emit("on_multi_pv", list(self._lines))

    def _handle_best_move(self, data: dict) -> None:
        task = self._task_for(data)
        if task is None:
            logger.debug("Dropping stale bestmove")
            return
        self._tasks.resolve(task.task_id)
        self._finish()
        try:
            move = _move_from(data)
            evaluation = _evaluation_from(data)
        except ProtocolError as e:
            if task.future is not None and not task.future.done():
                task.future.set_exception(e)
            raise

        result = BestMove(
            move=move,
            purpose=task.purpose,
            evaluation=evaluation,
            pv=list(evaluation.pv),
            lines=list(self._lines),
            san=data.get("san"),
            task_id=task.task_id,
        )
        self._last_evaluation = evaluation
        if task.future is not None and not task.future.done():
            task.future.set_result(result)
        self._emit("on_best_move", result)

    def _handle_info(self, data: dict) -> None:
        logger.info("Cloud engine info: %s", data.get("text") or data)
        error = data.get("error")
        if not error:
            return
        exc = ProtocolError(str(error))
        task = self._task_for(data)
        if task is not None:
            self._tasks.resolve(task.task_id)
            self._finish()
            if task.future is not None and not task.future.done():
                task.future.set_exception(exc)
        self._emit("on_error", EngineErrorEvent(message=str(error), error=exc, data=data))

    # --- connection loss ---

    def _on_connection_lost(self) -> None:
        self._ws = None
        self._status = EngineStatus.DISCONNECTED
        error = EngineConnectionError("Cloud engine connection lost")
        for task in self._tasks.clear():
            if task.future is not None and not task.future.done():
                task.future.set_exception(error)
        self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        if await self._reconnector.run():
            return
        self._status = EngineStatus.ERROR
        self._emit("on_error", EngineErrorEvent(
            message=(
                "Failed to reconnect to cloud engine. "
                "Please switch to local engine or refresh the page."
            ),
            terminal=True,
            error=EngineConnectionError("Reconnection attempts exhausted"),
        ))


def _move_from(data: dict) -> str | None:
    lan, move = data.get("lan"), data.get("move")
    for field_name, value in (("lan", lan), ("move", move)):
        if value is not None and not isinstance(value, str):
            raise ProtocolError(f"Cloud {field_name} is not a string: {value!r}")
    return lan_to_uci(lan) or move


def _evaluation_from(data: dict) -> Evaluation:
    try:
        score = float(data.get("eval") or 0.0)
        depth = int(data.get("depth") or 0)
        mate = data.get("mate")
        mate = int(mate) if mate is not None else None
        win_chance = data.get("winChance")
        win_chance = float(win_chance) if win_chance is not None else None
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Malformed cloud evaluation: {data!r}") from e
    continuation = data.get("continuationArr") or []
    if not isinstance(continuation, list) or not all(isinstance(m, str) for m in continuation):
        raise ProtocolError(f"Malformed continuationArr: {continuation!r}")
    return Evaluation(
        score_pawns=score,
        depth=depth,
        pv=[lan_to_uci(m) for m in continuation],
        mate=mate,
        win_chance=win_chance,
        perspective=Perspective.WHITE,
    )


def _line_from(data: dict) -> LineInfo:
    move = _move_from(data)
    if not move:
        raise ProtocolError(f"Move update without a move: {data!r}")
    return LineInfo(
        move=move,
        evaluation=_evaluation_from(data),
        san=data.get("san"),
        text=data.get("text"),
    )
