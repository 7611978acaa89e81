"""Local Stockfish backend driven through python-chess's UCI protocol.

Searches run as ``chess.engine`` analyses so every ``info`` update is seen
as it arrives. Scores are read relative to the side to move and tagged as
such; EngineManager normalizes them.

Only one search is ever outstanding. Stopping a search fails its caller
at once; python-chess swallows the ``bestmove`` that follows, so it is
never applied to the next request.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

import chess
import chess.engine

from coach_engine.engine import (
    Backend,
    BestMove,
    EngineAdapter,
    EngineCallbacks,
    EngineStatus,
    Evaluation,
    LineInfo,
    Perspective,
    Purpose,
    mate_to_pawns,
)
from coach_engine.errors import (
    AnalysisCancelled,
    EngineConnectionError,
    EngineErrorEvent,
    ProtocolError,
)
from coach_engine.rules import validate_fen

logger = logging.getLogger(__name__)

MAX_SKILL_LEVEL = 20

EngineFactory = Callable[[], Awaitable[tuple[object, chess.engine.UciProtocol]]]


def skill_level_for_depth(depth: int) -> int:
    """Weaker play at shallow depths when the engine picks its own move."""
    if depth <= 1:
        return 0
    if depth <= 3:
        return 5
    if depth <= 5:
        return 10
    if depth <= 8:
        return 15
    return MAX_SKILL_LEVEL


@dataclass
class _Search:
    purpose: Purpose
    turn: chess.Color
    future: asyncio.Future
    line_count: int = 1
    analysis: chess.engine.AnalysisResult | None = None
    task: asyncio.Task | None = None
    evaluation: Evaluation | None = None
    slots: dict[int, LineInfo] = field(default_factory=dict)


class LocalEngineAdapter(EngineAdapter):
    backend = Backend.LOCAL

    def __init__(
        self,
        stockfish_path: str = "stockfish",
        handshake_timeout: float = 5.0,
        depth: int = 12,
        variants: int = 3,
        engine_factory: EngineFactory | None = None,
    ):
        super().__init__(depth=depth, variants=variants)
        self._path = stockfish_path
        self._handshake_timeout = handshake_timeout
        self._engine_factory = engine_factory or (lambda: chess.engine.popen_uci(stockfish_path))
        self._engine: chess.engine.UciProtocol | None = None
        self._watcher: asyncio.Task | None = None
        self._search: _Search | None = None
        self._refutation: list[str] = []
        self._closed = False

    # --- lifecycle ---

    async def initialize(self, callbacks: EngineCallbacks) -> None:
        self._callbacks = callbacks
        self._closed = False
        try:
            _, engine = await asyncio.wait_for(
                self._engine_factory(), timeout=self._handshake_timeout,
            )
        except asyncio.TimeoutError as e:
            self._status = EngineStatus.ERROR
            raise EngineConnectionError("Engine initialization timeout") from e
        except (OSError, chess.engine.EngineError) as e:
            self._status = EngineStatus.ERROR
            raise EngineConnectionError(f"Could not start engine at {self._path}: {e}") from e

        self._engine = engine
        self._watcher = asyncio.create_task(self._watch(engine))
        self._status = EngineStatus.IDLE
        logger.info("Local engine ready (%s)", self._path)
        self._emit("on_ready")

    async def cleanup(self) -> None:
        self._closed = True
        search, self._search = self._search, None
        if search is not None:
            self._abandon(search, AnalysisCancelled("Local engine shut down"))
        if self._watcher is not None and not self._watcher.done():
            self._watcher.cancel()
        self._watcher = None

        engine, self._engine = self._engine, None
        if engine is not None:
            try:
                await engine.quit()
            except (chess.engine.EngineError, OSError) as e:
                logger.warning("Error shutting down local engine: %s", e)
        self._status = EngineStatus.DISCONNECTED
        self._lines = []
        self._pv = []

    async def _watch(self, engine: chess.engine.UciProtocol) -> None:
        code = await asyncio.shield(engine.returncode)
        if not self._closed and engine is self._engine:
            logger.error("Local engine process exited with code %s", code)
            self._on_process_exit()

    # --- requests ---

    async def evaluate_position(
        self, fen: str, depth: int | None = None, purpose: Purpose = Purpose.CURRENT,
    ) -> BestMove:
        return await self._start(fen, depth, purpose, line_count=1)

    async def analyze_multi_pv(
        self, fen: str, depth: int | None = None, lines: int | None = None,
    ) -> BestMove:
        line_count = self._clamp_variants(lines) if lines is not None else self._variants
        return await self._start(fen, depth, Purpose.ANALYSIS, line_count=line_count)

    def stop_analysis(self) -> None:
        search, self._search = self._search, None
        if search is None:
            return
        self._abandon(search, AnalysisCancelled("Analysis stopped"))
        self._finish()

    async def _start(self, fen: str, depth: int | None, purpose: Purpose, line_count: int) -> BestMove:
        board = validate_fen(fen)
        self._begin(purpose)
        depth = self._clamp_depth(depth)

        search = _Search(
            purpose=purpose,
            turn=board.turn,
            future=asyncio.get_running_loop().create_future(),
            line_count=line_count,
        )
        self._search = search
        self._pv = []
        self._lines = []
        if purpose is Purpose.CURRENT:
            self._refutation = []

        skill = skill_level_for_depth(depth) if purpose is Purpose.PLAY else MAX_SKILL_LEVEL
        try:
            if "Skill Level" in self._engine.options:
                await self._engine.configure({"Skill Level": skill})
            search.analysis = await self._engine.analysis(
                board, chess.engine.Limit(depth=depth), multipv=line_count,
            )
        except chess.engine.EngineTerminatedError:
            # Fails the pending future with EngineConnectionError.
            self._on_process_exit()
        except chess.engine.EngineError as e:
            self._release(search)
            raise ProtocolError(f"Local engine rejected the search: {e}") from e
        except asyncio.CancelledError:
            self._release(search)
            raise

        if not search.future.done():
            search.task = asyncio.create_task(self._pump(search))
        elif search.analysis is not None:
            # Stopped while the search was being set up.
            search.analysis.stop()

        try:
            return await search.future
        except asyncio.CancelledError:
            if self._search is search:
                self.stop_analysis()
            raise

    def _release(self, search: _Search) -> None:
        if self._search is search:
            self._search = None
            self._finish()

    def _abandon(self, search: _Search, error: Exception) -> None:
        if search.analysis is not None:
            search.analysis.stop()
        if search.task is not None and self._closed:
            search.task.cancel()
        if not search.future.done():
            search.future.set_exception(error)

    # --- inbound ---

    async def _pump(self, search: _Search) -> None:
        try:
            async for info in search.analysis:
                if search.future.done():
                    return
                self._handle_info(search, info)
            best = await search.analysis.wait()
        except chess.engine.EngineTerminatedError:
            self._on_process_exit()
            return
        except chess.engine.EngineError as e:
            if search.future.done():
                return
            logger.warning("Local engine search failed: %s", e)
            self._release(search)
            error = ProtocolError(str(e))
            search.future.set_exception(error)
            self._emit("on_error", EngineErrorEvent(message=str(e), error=error))
            return

        if not search.future.done():
            self._handle_best_move(search, best)

    def _handle_info(self, search: _Search, info: chess.engine.InfoDict) -> None:
        pv = [move.uci() for move in info.get("pv", [])]
        if pv:
            self._pv = pv
            # The reply line that punishes the move just played.
            if search.purpose is Purpose.CURRENT:
                self._refutation = list(pv)

        score = info.get("score")
        if score is None:
            return
        relative = score.relative
        mate = relative.mate()
        evaluation = Evaluation(
            score_pawns=mate_to_pawns(mate) if mate is not None else relative.score() / 100,
            depth=info.get("depth", 0),
            pv=pv or list(self._pv),
            mate=mate,
            perspective=Perspective.SIDE_TO_MOVE,
            turn=search.turn,
        )

        slot = info.get("multipv", 1)
        if slot == 1:
            search.evaluation = evaluation
            self._last_evaluation = evaluation
            self._emit("on_evaluation", evaluation)

        if pv:
            search.slots[slot] = LineInfo(move=pv[0], evaluation=evaluation)
            self._lines = [search.slots[k] for k in sorted(search.slots)][:search.line_count]
            if search.line_count > 1 and slot == search.line_count:
                self._emit("on_multi_pv", list(self._lines))

    def _handle_best_move(self, search: _Search, best: chess.engine.BestMove) -> None:
        result = BestMove(
            move=best.move.uci() if best.move else None,
            purpose=search.purpose,
            evaluation=search.evaluation,
            pv=list(self._pv),
            refutation=list(self._refutation),
            lines=list(self._lines),
            ponder=best.ponder.uci() if best.ponder else None,
        )
        self._release(search)
        search.future.set_result(result)
        self._emit("on_best_move", result)

    def _on_process_exit(self) -> None:
        if self._closed or self._status is EngineStatus.ERROR:
            return
        self._status = EngineStatus.ERROR
        error = EngineConnectionError("Local engine process exited")
        search, self._search = self._search, None
        if search is not None and not search.future.done():
            search.future.set_exception(error)
        self._emit("on_error", EngineErrorEvent(
            message="Local engine stopped. Reload or switch to the cloud engine.",
            terminal=True,
            error=error,
        ))
