"""Live feedback on a single move the player just made.

The player's move is graded by how far the evaluation swung against
them. Moves that count as mistakes also get the engine's preferred move
in the position before, and the opponent reply that punishes the move.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

import chess

from coach_engine.engine import Purpose
from coach_engine.quality import (
    MoveQuality,
    calculate_eval_loss,
    classify_move_quality,
    is_mistake,
)
from coach_engine.rules import apply_move, uci_to_san, validate_fen

if TYPE_CHECKING:
    from coach_engine.manager import EngineManager

logger = logging.getLogger(__name__)


@dataclass
class MoveAssessment:
    quality: MoveQuality
    evaluation_loss: float          # pawns; negative when the move gained
    is_mistake: bool
    message: str
    evaluation_after: float         # White-perspective pawns
    best_move: str | None = None    # SAN in the position before the move
    best_move_uci: str | None = None
    refutation: str | None = None   # SAN of the reply in the position after


def assess_move(
    *,
    fen_before: str,
    fen_after: str,
    eval_before: float,
    eval_after: float,
    best_move_uci: str | None = None,
    refutation: Sequence[str] | None = None,
) -> MoveAssessment:
    """Grade a move and build the coaching message.

    Both evaluations are White-perspective pawns, which is what
    EngineManager returns. The loss is measured for the side that moved
    in *fen_before*.
    """
    mover = validate_fen(fen_before).turn
    loss = round(calculate_eval_loss(eval_before, eval_after, mover), 2)
    quality = classify_move_quality(loss)
    mistake = is_mistake(loss)

    parts = [f"{quality.title} (Loss: {loss:.2f}). {quality.description}"]
    best_san = reply_san = None
    if mistake and best_move_uci:
        best_san = uci_to_san(fen_before, best_move_uci)
        parts.append(f"Better was: {best_san}.")
        if refutation:
            reply_san = uci_to_san(fen_after, refutation[0])
            parts.append(f"Why? This allows {reply_san}...")

    return MoveAssessment(
        quality=quality,
        evaluation_loss=loss,
        is_mistake=mistake,
        message=" ".join(parts),
        evaluation_after=eval_after,
        best_move=best_san,
        best_move_uci=best_move_uci if mistake else None,
        refutation=reply_san,
    )


async def coach_move(
    manager: EngineManager,
    fen_before: str,
    san: str,
    eval_before: float,
    depth: int | None = None,
) -> MoveAssessment:
    """Play ``san`` on ``fen_before``, evaluate it and assess the result.

    The position after the move is searched as the current position so
    the engine reports the refutation line. A hint search of the position
    before only runs when the move is a mistake.
    """
    fen_after = apply_move(fen_before, san)
    current = await manager.evaluate_position(fen_after, depth, Purpose.CURRENT)
    eval_after = current.evaluation.score_pawns if current.evaluation else eval_before

    mover = chess.Board(fen_before).turn
    best_move_uci = None
    if is_mistake(round(calculate_eval_loss(eval_before, eval_after, mover), 2)):
        logger.info("Mistake detected (%s), looking up a better move", san)
        hint = await manager.evaluate_position(fen_before, depth, Purpose.HINT)
        best_move_uci = hint.move

    return assess_move(
        fen_before=fen_before,
        fen_after=fen_after,
        eval_before=eval_before,
        eval_after=eval_after,
        best_move_uci=best_move_uci,
        refutation=current.refutation,
    )
