"""Engine data model and the adapter contract shared by both backends.

Adapters report scores in whatever perspective their backend uses and tag
each Evaluation accordingly. ``normalize_evaluation`` is the single step
that turns those into White-perspective numbers before they leave the layer.
"""

from __future__ import annotations

import enum
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Callable

import chess

from coach_engine.errors import EngineConnectionError, EngineErrorEvent, StateError

logger = logging.getLogger(__name__)


class Backend(enum.Enum):
    LOCAL = "local"
    CLOUD = "cloud"


class Purpose(enum.Enum):
    CURRENT = "current"
    HINT = "hint"
    ANALYSIS = "analysis"
    PLAY = "play"


class EngineStatus(enum.Enum):
    IDLE = "idle"
    EVALUATING_CURRENT = "evaluating_current"
    FINDING_HINT = "finding_hint"
    ANALYZING = "analyzing"
    PLAYING = "playing"
    ERROR = "error"
    DISCONNECTED = "disconnected"


STATUS_FOR_PURPOSE = {
    Purpose.CURRENT: EngineStatus.EVALUATING_CURRENT,
    Purpose.HINT: EngineStatus.FINDING_HINT,
    Purpose.ANALYSIS: EngineStatus.ANALYZING,
    Purpose.PLAY: EngineStatus.PLAYING,
}


class Perspective(enum.Enum):
    WHITE = "white"
    SIDE_TO_MOVE = "side_to_move"


# Synthetic magnitude for mate lines, used only for arithmetic and ordering.
# Mate itself is always carried in Evaluation.mate.
MATE_PAWNS = 100.0

MIN_LINES = 1
MAX_LINES = 5


@dataclass(frozen=True)
class Evaluation:
    score_pawns: float
    depth: int
    pv: list[str] = field(default_factory=list)
    mate: int | None = None
    win_chance: float | None = None
    perspective: Perspective = Perspective.WHITE
    turn: chess.Color = chess.WHITE


@dataclass(frozen=True)
class LineInfo:
    """One candidate line in a multi-PV result."""
    move: str                   # UCI
    evaluation: Evaluation
    san: str | None = None
    text: str | None = None


@dataclass
class BestMove:
    """Terminal result of a request."""
    move: str | None            # UCI, None when the position has no legal move
    purpose: Purpose
    evaluation: Evaluation | None = None
    pv: list[str] = field(default_factory=list)
    refutation: list[str] = field(default_factory=list)
    lines: list[LineInfo] = field(default_factory=list)
    san: str | None = None
    ponder: str | None = None
    task_id: str | None = None


@dataclass
class EngineState:
    status: EngineStatus
    backend: Backend
    connected: bool = False
    last_evaluation: Evaluation | None = None
    best_lines: list[LineInfo] = field(default_factory=list)
    current_pv: list[str] = field(default_factory=list)
    depth: int = 12
    variants: int = 3


@dataclass
class EngineCallbacks:
    on_ready: Callable[[], Any] | None = None
    on_best_move: Callable[[BestMove], Any] | None = None
    on_evaluation: Callable[[Evaluation], Any] | None = None
    on_multi_pv: Callable[[list[LineInfo]], Any] | None = None
    on_streaming_update: Callable[[Evaluation], Any] | None = None
    on_cloud_multi_pv: Callable[[list[LineInfo]], Any] | None = None
    on_error: Callable[[EngineErrorEvent], Any] | None = None


# ---------------------------------------------------------------------------
# Score helpers
# ---------------------------------------------------------------------------


def mate_to_pawns(mate: int) -> float:
    """Synthetic pawn score for a mate distance; shorter mates score higher."""
    if mate > 0:
        return MATE_PAWNS - mate
    return -MATE_PAWNS - mate


def win_chance_from_score(score_pawns: float, mate: int | None = None) -> float:
    """White's winning chance in percent (logistic over centipawns)."""
    if mate is not None:
        return 100.0 if mate > 0 else 0.0
    return 100.0 / (1.0 + math.exp(-score_pawns * 100 / 400.0))


def normalize_evaluation(ev: Evaluation) -> Evaluation:
    """Return ``ev`` from White's perspective with win chance filled in."""
    score = ev.score_pawns
    mate = ev.mate
    if ev.perspective is Perspective.SIDE_TO_MOVE and ev.turn == chess.BLACK:
        score = -score
        mate = -mate if mate is not None else None
    win_chance = ev.win_chance
    if win_chance is None:
        win_chance = round(win_chance_from_score(score, mate), 1)
    return replace(
        ev, score_pawns=score, mate=mate, win_chance=win_chance,
        perspective=Perspective.WHITE,
    )


def normalize_line(line: LineInfo) -> LineInfo:
    return replace(line, evaluation=normalize_evaluation(line.evaluation))


def normalize_best_move(best: BestMove) -> BestMove:
    return replace(
        best,
        evaluation=normalize_evaluation(best.evaluation) if best.evaluation else None,
        lines=[normalize_line(l) for l in best.lines],
    )


def normalize_state(state: EngineState) -> EngineState:
    return replace(
        state,
        last_evaluation=(
            normalize_evaluation(state.last_evaluation) if state.last_evaluation else None
        ),
        best_lines=[normalize_line(l) for l in state.best_lines],
    )


def line_rank(line: LineInfo) -> tuple[int, float]:
    """Sort key: mate lines first, then highest White-perspective score."""
    ev = line.evaluation
    if ev.mate is not None:
        return (0, -mate_to_pawns(ev.mate))
    return (1, -ev.score_pawns)


# ---------------------------------------------------------------------------
# Adapter contract
# ---------------------------------------------------------------------------


class EngineAdapter(ABC):
    """One backend's wire protocol behind a uniform capability set.

    ``status`` is a single-slot gate: a request may only start from IDLE.
    """

    backend: Backend
    max_depth: int | None = None

    def __init__(self, depth: int = 12, variants: int = 3):
        self._callbacks = EngineCallbacks()
        self._status = EngineStatus.DISCONNECTED
        self._depth = self._clamp_depth(depth)
        self._variants = self._clamp_variants(variants)
        self._last_evaluation: Evaluation | None = None
        self._lines: list[LineInfo] = []
        self._pv: list[str] = []

    @property
    def status(self) -> EngineStatus:
        return self._status

    @property
    def connected(self) -> bool:
        return self._status not in (EngineStatus.ERROR, EngineStatus.DISCONNECTED)

    @abstractmethod
    async def initialize(self, callbacks: EngineCallbacks) -> None:
        """Connect to the backend; raises EngineConnectionError on failure."""

    @abstractmethod
    async def evaluate_position(
        self, fen: str, depth: int | None = None, purpose: Purpose = Purpose.CURRENT,
    ) -> BestMove:
        ...

    async def find_best_move(self, fen: str, depth: int | None = None) -> BestMove:
        return await self.evaluate_position(fen, depth, Purpose.PLAY)

    @abstractmethod
    async def analyze_multi_pv(
        self, fen: str, depth: int | None = None, lines: int | None = None,
    ) -> BestMove:
        ...

    @abstractmethod
    def stop_analysis(self) -> None:
        ...

    @abstractmethod
    async def cleanup(self) -> None:
        ...

    def get_state(self) -> EngineState:
        return EngineState(
            status=self._status,
            backend=self.backend,
            connected=self.connected,
            last_evaluation=self._last_evaluation,
            best_lines=list(self._lines),
            current_pv=list(self._pv),
            depth=self._depth,
            variants=self._variants,
        )

    def set_depth(self, depth: int) -> None:
        self._depth = self._clamp_depth(depth)

    def set_variants(self, variants: int) -> None:
        self._variants = self._clamp_variants(variants)

    # --- shared helpers ---

    def _clamp_depth(self, depth: int | None) -> int:
        if depth is None:
            return self._depth
        depth = max(1, depth)
        if self.max_depth is not None:
            depth = min(depth, self.max_depth)
        return depth

    @staticmethod
    def _clamp_variants(variants: int) -> int:
        return min(max(variants, MIN_LINES), MAX_LINES)

    def _begin(self, purpose: Purpose) -> None:
        if not self.connected:
            raise EngineConnectionError(
                f"{self.backend.value} engine not available ({self._status.value})"
            )
        if self._status is not EngineStatus.IDLE:
            raise StateError(
                f"Engine busy ({self._status.value}); cannot start {purpose.value} request"
            )
        self._status = STATUS_FOR_PURPOSE[purpose]

    def _finish(self) -> None:
        if self.connected:
            self._status = EngineStatus.IDLE

    def _emit(self, name: str, *args) -> None:
        fn = getattr(self._callbacks, name)
        if fn is None:
            return
        try:
            fn(*args)
        except Exception:
            logger.exception("%s callback raised", name)
