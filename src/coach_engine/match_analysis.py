"""Move-by-move analysis of a played game.

Each pre-move position gets one evaluation request, bounded by a
per-position timeout. A position that times out reuses the previous
evaluation so one unresponsive position never stalls the whole game.
Only one request is outstanding at a time, and stopping takes effect
between positions.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Sequence

import chess

from coach_engine.engine import BestMove, Purpose
from coach_engine.errors import EngineError, StateError
from coach_engine.quality import (
    MoveQuality,
    annotation_for_loss,
    calculate_eval_loss,
    classify_move_quality,
)
from coach_engine.rules import apply_move, uci_to_san, validate_fen

if TYPE_CHECKING:
    from coach_engine.manager import EngineManager

logger = logging.getLogger(__name__)

Evaluator = Callable[[str], Awaitable[BestMove | None]]

DEFAULT_POSITION_TIMEOUT = 2.0
DEFAULT_PROGRESS_INTERVAL = 5


@dataclass(frozen=True)
class AnalyzedMove:
    move_number: int
    color: str                      # "white" | "black"
    san: str
    fen_before: str
    fen_after: str
    evaluation_before: float        # White-perspective pawns
    evaluation_after: float
    best_move: str | None           # SAN
    best_move_uci: str | None
    evaluation_loss: float          # absolute swing, pawns
    quality: MoveQuality
    annotation: str
    timed_out: bool = False


@dataclass
class AccuracySummary:
    total_moves: int = 0
    good_moves: int = 0
    inaccuracies: int = 0
    mistakes: int = 0
    blunders: int = 0
    accuracy_percent: int = 0


@dataclass
class AnalysisProgress:
    total: int
    analyzed: int
    percentage: int


@dataclass
class AnalysisUpdate:
    type: str
    current_move: AnalyzedMove | None
    current_index: int
    total_moves: int
    accuracy: AccuracySummary
    progress: AnalysisProgress
    is_analyzing: bool


def color_name(color: chess.Color) -> str:
    return "white" if color == chess.WHITE else "black"


def parse_color(color: chess.Color | str) -> chess.Color:
    if isinstance(color, bool):
        return color
    value = color.lower()
    if value in ("white", "w"):
        return chess.WHITE
    if value in ("black", "b"):
        return chess.BLACK
    raise ValueError(f"Unknown color: {color!r}")


def calculate_accuracy(moves: Sequence[AnalyzedMove], color: chess.Color | str) -> AccuracySummary:
    """Tally quality tiers for one side's moves."""
    name = color_name(parse_color(color))
    own = [m for m in moves if m.color == name]
    summary = AccuracySummary(total_moves=len(own))
    for m in own:
        if m.quality is MoveQuality.GOOD:
            summary.good_moves += 1
        elif m.quality is MoveQuality.INACCURACY:
            summary.inaccuracies += 1
        elif m.quality is MoveQuality.MISTAKE:
            summary.mistakes += 1
        else:
            summary.blunders += 1
    if own:
        summary.accuracy_percent = round(summary.good_moves / len(own) * 100)
    return summary


class MatchAnalysisOrchestrator:
    def __init__(
        self,
        evaluate: Evaluator,
        position_timeout: float = DEFAULT_POSITION_TIMEOUT,
        progress_interval: int = DEFAULT_PROGRESS_INTERVAL,
        on_update: Callable[[AnalysisUpdate], Any] | None = None,
    ):
        self._evaluate = evaluate
        self._timeout = position_timeout
        self._interval = max(1, progress_interval)
        self._on_update = on_update
        self._moves: list[AnalyzedMove] = []
        self._color: chess.Color = chess.WHITE
        self._current_index = 0
        self._total = 0
        self._analyzed = 0
        self._is_analyzing = False
        self._stop_requested = False

    @classmethod
    def for_manager(
        cls, manager: EngineManager, depth: int | None = None, **kwargs,
    ) -> MatchAnalysisOrchestrator:
        async def evaluate(fen: str) -> BestMove:
            return await manager.evaluate_position(fen, depth, Purpose.ANALYSIS)
        return cls(evaluate, **kwargs)

    # --- state ---

    @property
    def is_analyzing(self) -> bool:
        return self._is_analyzing

    @property
    def moves(self) -> list[AnalyzedMove]:
        return list(self._moves)

    @property
    def current_index(self) -> int:
        return self._current_index

    def current_move(self) -> AnalyzedMove | None:
        if 0 <= self._current_index < len(self._moves):
            return self._moves[self._current_index]
        return None

    def accuracy(self) -> AccuracySummary:
        return calculate_accuracy(self._moves, self._color)

    def progress(self) -> AnalysisProgress:
        pct = round(self._analyzed / self._total * 100) if self._total else 0
        return AnalysisProgress(total=self._total, analyzed=self._analyzed, percentage=pct)

    # --- analysis ---

    async def analyze_match(
        self,
        moves: Sequence[str],
        color: chess.Color | str = chess.WHITE,
        start_fen: str = chess.STARTING_FEN,
    ) -> list[AnalyzedMove]:
        """Analyze ``moves`` (SAN, game order) and return one record per move."""
        if self._is_analyzing:
            raise StateError("Match analysis already in progress")

        self._color = parse_color(color)
        fen = validate_fen(start_fen).fen()
        self._is_analyzing = True
        self._stop_requested = False
        self._moves = []
        self._current_index = 0
        self._total = len(moves)
        self._analyzed = 0
        self._notify("analyzing")

        previous_eval = 0.0
        stopped = False
        try:
            for i, san in enumerate(moves):
                if self._stop_requested:
                    logger.info("Match analysis stopped after %d of %d moves", i, len(moves))
                    stopped = True
                    break

                board = chess.Board(fen)
                mover = board.turn
                try:
                    fen_after = apply_move(fen, san)
                except ValueError as e:
                    logger.warning("Skipping move %d: %s", i + 1, e)
                    self._advance(i, len(moves))
                    continue
                result, timed_out = await self._evaluate_bounded(fen)

                if result is not None and result.evaluation is not None:
                    current_eval = result.evaluation.score_pawns
                else:
                    current_eval = previous_eval
                best_uci = result.move if result is not None else None

                swing = calculate_eval_loss(previous_eval, current_eval, mover)
                loss = round(abs(swing), 2)
                self._moves.append(AnalyzedMove(
                    move_number=board.fullmove_number,
                    color=color_name(mover),
                    san=san,
                    fen_before=fen,
                    fen_after=fen_after,
                    evaluation_before=previous_eval,
                    evaluation_after=current_eval,
                    best_move=uci_to_san(fen, best_uci) if best_uci else None,
                    best_move_uci=best_uci,
                    evaluation_loss=loss,
                    quality=classify_move_quality(loss),
                    annotation=annotation_for_loss(swing),
                    timed_out=timed_out,
                ))

                previous_eval = current_eval
                fen = fen_after
                self._advance(i, len(moves))
        except asyncio.CancelledError:
            logger.info("Match analysis cancelled after %d of %d moves", self._analyzed, len(moves))
            self._is_analyzing = False
            self._notify("stopped")
            raise
        except EngineError as e:
            logger.error("Match analysis failed: %s", e)
            self._is_analyzing = False
            self._notify("error")
            raise
        finally:
            self._is_analyzing = False

        self._current_index = 0
        self._notify("stopped" if stopped else "complete")
        return list(self._moves)

    def _advance(self, index: int, total: int) -> None:
        self._analyzed = index + 1
        if self._analyzed % self._interval == 0 or self._analyzed == total:
            self._notify("progress")

    async def _evaluate_bounded(self, fen: str) -> tuple[BestMove | None, bool]:
        try:
            result = await asyncio.wait_for(self._evaluate(fen), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("No evaluation within %.1fs, using fallback: %s", self._timeout, fen)
            return None, True
        return result, False

    def request_stop(self) -> None:
        """Stop before the next position; a running request is left to finish."""
        if self._is_analyzing:
            self._stop_requested = True

    # --- review navigation ---

    def go_to_move(self, index: int) -> None:
        if 0 <= index < len(self._moves):
            self._current_index = index
            self._notify("navigate")

    def next_move(self) -> None:
        if self._current_index < len(self._moves) - 1:
            self._current_index += 1
            self._notify("navigate")

    def previous_move(self) -> None:
        if self._current_index > 0:
            self._current_index -= 1
            self._notify("navigate")

    def first_move(self) -> None:
        if self._moves:
            self._current_index = 0
            self._notify("navigate")

    def last_move(self) -> None:
        if self._moves:
            self._current_index = len(self._moves) - 1
            self._notify("navigate")

    def reset(self) -> None:
        if self._is_analyzing:
            raise StateError("Cannot reset while analysis is running")
        self._moves = []
        self._current_index = 0
        self._total = 0
        self._analyzed = 0
        self._notify("reset")

    def _notify(self, kind: str) -> None:
        if self._on_update is None:
            return
        update = AnalysisUpdate(
            type=kind,
            current_move=self.current_move(),
            current_index=self._current_index,
            total_moves=len(self._moves),
            accuracy=self.accuracy(),
            progress=self.progress(),
            is_analyzing=self._is_analyzing,
        )
        try:
            self._on_update(update)
        except Exception:
            logger.exception("Match analysis update callback raised")
