"""Move quality classification.

Shared by live coaching and batch match analysis so both paths agree on
the same input. Thresholds are in pawns of evaluation loss.
"""

from __future__ import annotations

import enum

import chess


class MoveQuality(enum.Enum):
    GOOD = "good"
    INACCURACY = "inaccuracy"
    MISTAKE = "mistake"
    BLUNDER = "blunder"

    @property
    def title(self) -> str:
        return _TITLES[self]

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]


_TITLES = {
    MoveQuality.GOOD: "Good Move",
    MoveQuality.INACCURACY: "Inaccuracy",
    MoveQuality.MISTAKE: "Mistake",
    MoveQuality.BLUNDER: "Blunder",
}

_DESCRIPTIONS = {
    MoveQuality.GOOD: "Solid play.",
    MoveQuality.INACCURACY: "Passive.",
    MoveQuality.MISTAKE: "Tactical error.",
    MoveQuality.BLUNDER: "Major error.",
}

# Exclusive upper bounds.
GOOD_THRESHOLD = 0.3
INACCURACY_THRESHOLD = 1.0
MISTAKE_THRESHOLD = 2.5

_EXCELLENT_THRESHOLD = 0.1


def classify_move_quality(eval_loss: float) -> MoveQuality:
    """Map a non-negative evaluation loss to a quality tier."""
    if eval_loss < GOOD_THRESHOLD:
        return MoveQuality.GOOD
    if eval_loss < INACCURACY_THRESHOLD:
        return MoveQuality.INACCURACY
    if eval_loss < MISTAKE_THRESHOLD:
        return MoveQuality.MISTAKE
    return MoveQuality.BLUNDER


def calculate_eval_loss(previous_eval: float, current_eval: float, color: chess.Color) -> float:
    """Drop in the mover's favour between two White-perspective evaluations.

    Negative when the move improved the mover's position.
    """
    if color == chess.WHITE:
        return previous_eval - current_eval
    return current_eval - previous_eval


def annotation_for_loss(eval_loss: float) -> str:
    if eval_loss < _EXCELLENT_THRESHOLD:
        return "!!"
    if eval_loss < GOOD_THRESHOLD:
        return "!"
    if eval_loss < INACCURACY_THRESHOLD:
        return "!?"
    if eval_loss < MISTAKE_THRESHOLD:
        return "?"
    return "??"


def is_mistake(eval_loss: float) -> bool:
    """Whether a live move is bad enough to look up a better one."""
    return eval_loss >= GOOD_THRESHOLD
