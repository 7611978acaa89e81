"""JSON-ready dict conversion for engine and match-analysis results."""

from __future__ import annotations

from dataclasses import asdict

from coach_engine.coaching import MoveAssessment
from coach_engine.engine import BestMove, EngineState, Evaluation, LineInfo
from coach_engine.match_analysis import AccuracySummary, AnalyzedMove


def evaluation_to_dict(ev: Evaluation | None) -> dict | None:
    if ev is None:
        return None
    return {
        "score": ev.score_pawns,
        "depth": ev.depth,
        "pv": list(ev.pv),
        "mate": ev.mate,
        "win_chance": ev.win_chance,
    }


def line_to_dict(line: LineInfo) -> dict:
    return {
        "move": line.move,
        "san": line.san,
        "text": line.text,
        "evaluation": evaluation_to_dict(line.evaluation),
    }


def best_move_to_dict(best: BestMove) -> dict:
    return {
        "move": best.move,
        "san": best.san,
        "ponder": best.ponder,
        "purpose": best.purpose.value,
        "evaluation": evaluation_to_dict(best.evaluation),
        "pv": list(best.pv),
        "refutation": list(best.refutation),
        "lines": [line_to_dict(l) for l in best.lines],
        "task_id": best.task_id,
    }


def state_to_dict(state: EngineState) -> dict:
    return {
        "status": state.status.value,
        "backend": state.backend.value,
        "connected": state.connected,
        "last_evaluation": evaluation_to_dict(state.last_evaluation),
        "best_lines": [line_to_dict(l) for l in state.best_lines],
        "current_pv": list(state.current_pv),
        "depth": state.depth,
        "variants": state.variants,
    }


def analyzed_move_to_dict(move: AnalyzedMove) -> dict:
    data = asdict(move)
    data["quality"] = move.quality.value
    return data


def accuracy_to_dict(summary: AccuracySummary) -> dict:
    return asdict(summary)


def assessment_to_dict(assessment: MoveAssessment) -> dict:
    data = asdict(assessment)
    data["quality"] = assessment.quality.value
    data["title"] = assessment.quality.title
    return data
