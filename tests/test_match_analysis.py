"""Tests for whole-game analysis: timeouts, loss accounting, progress and review."""

import asyncio
import logging
import time

import chess
import pytest

from conftest import FakeAdapter, side_to_move_result
from coach_engine.config import Settings
from coach_engine.engine import Backend, BestMove, Evaluation, Purpose
from coach_engine.errors import StateError
from coach_engine.manager import EngineManager
from coach_engine.match_analysis import (
    MatchAnalysisOrchestrator,
    calculate_accuracy,
    parse_color,
)
from coach_engine.quality import MoveQuality

SCHOLARS_MATE = ["e4", "e5", "Qh5", "Nc6", "Bc4", "Nf6", "Qxf7#"]


def scripted(scores, moves=None):
    """Evaluator answering the n-th request with ``scores[n]`` (White pawns)."""
    calls = []

    async def evaluate(fen):
        n = len(calls)
        calls.append(fen)
        return BestMove(
            move=moves[n] if moves else None,
            purpose=Purpose.ANALYSIS,
            evaluation=Evaluation(score_pawns=scores[n], depth=12),
        )

    evaluate.calls = calls
    return evaluate


async def never_responds(fen):
    await asyncio.Event().wait()


def collect():
    updates = []
    return updates, updates.append


class TestTimeouts:
    async def test_non_responding_engine_yields_fallback_for_every_move(self):
        moves = ["Nf3", "Nf6", "Ng1", "Ng8"] * 10
        timeout = 0.02
        analyzer = MatchAnalysisOrchestrator(never_responds, position_timeout=timeout)

        start = time.monotonic()
        result = await analyzer.analyze_match(moves, "white")
        elapsed = time.monotonic() - start

        assert len(result) == 40
        assert elapsed < 40 * timeout + 1.0
        assert all(m.timed_out for m in result)
        assert all(m.evaluation_after == 0.0 for m in result)
        assert all(m.quality is MoveQuality.GOOD for m in result)

    async def test_timeout_reuses_previous_evaluation(self):
        answers = iter([0.4, None, -0.2])

        async def evaluate(fen):
            score = next(answers)
            if score is None:
                await asyncio.Event().wait()
            return BestMove(move=None, purpose=Purpose.ANALYSIS,
                            evaluation=Evaluation(score_pawns=score, depth=10))

        analyzer = MatchAnalysisOrchestrator(evaluate, position_timeout=0.05)
        result = await analyzer.analyze_match(["e4", "e5", "Nf3"])
        assert [m.evaluation_after for m in result] == [0.4, 0.4, -0.2]
        assert [m.timed_out for m in result] == [False, True, False]


class TestLossAccounting:
    async def test_scholars_mate_is_graded_by_the_swing(self):
        evaluate = scripted([0.3, 0.3, 0.1, 0.4, 0.3, -3.0, 99.0])
        analyzer = MatchAnalysisOrchestrator(evaluate)
        result = await analyzer.analyze_match(SCHOLARS_MATE, chess.WHITE)

        mate = result[-1]
        assert mate.san == "Qxf7#"
        assert chess.Board(mate.fen_after).is_checkmate()
        assert mate.color == "white"
        assert mate.move_number == 4
        assert mate.evaluation_loss == 102.0
        assert mate.quality is MoveQuality.BLUNDER
        # The glyph follows the signed swing, which favours White here.
        assert mate.annotation == "!!"

    async def test_loss_is_measured_for_the_mover(self):
        evaluate = scripted([0.3, 0.3, -1.0, 2.0])
        analyzer = MatchAnalysisOrchestrator(evaluate)
        result = await analyzer.analyze_match(["e4", "e5", "Nf3", "Nc6"], "white")

        assert [m.color for m in result] == ["white", "black", "white", "black"]
        assert [m.evaluation_loss for m in result] == [0.3, 0.0, 1.3, 3.0]
        assert [m.quality for m in result] == [
            MoveQuality.INACCURACY, MoveQuality.GOOD, MoveQuality.MISTAKE, MoveQuality.BLUNDER,
        ]
        assert [m.annotation for m in result] == ["!!", "!!", "?", "??"]
        assert result[2].evaluation_before == 0.3

    async def test_best_move_reported_in_san(self):
        evaluate = scripted([0.3, 0.2], moves=["e2e4", "c7c5"])
        analyzer = MatchAnalysisOrchestrator(evaluate)
        result = await analyzer.analyze_match(["d4", "d5"])
        assert result[0].best_move == "e4"
        assert result[0].best_move_uci == "e2e4"
        assert result[1].best_move == "c5"

    async def test_custom_start_position(self):
        fen = "4k3/8/8/8/8/8/4P3/4K3 b - - 0 1"
        analyzer = MatchAnalysisOrchestrator(scripted([0.0, 0.0]))
        result = await analyzer.analyze_match(["Kd7", "e4"], "black", start_fen=fen)
        assert result[0].color == "black"
        assert result[0].fen_before == fen


class TestAccuracy:
    async def test_accuracy_for_each_side(self):
        evaluate = scripted([0.1, 0.1, -1.0, 2.0])
        analyzer = MatchAnalysisOrchestrator(evaluate)
        result = await analyzer.analyze_match(["e4", "e5", "Nf3", "Nc6"], "white")

        white = analyzer.accuracy()
        assert (white.total_moves, white.good_moves, white.mistakes) == (2, 1, 1)
        assert white.accuracy_percent == 50

        black = calculate_accuracy(result, "black")
        assert (black.total_moves, black.good_moves, black.blunders) == (2, 1, 1)

    def test_accuracy_of_nothing(self):
        summary = calculate_accuracy([], chess.WHITE)
        assert summary.total_moves == 0
        assert summary.accuracy_percent == 0

    def test_parse_color(self):
        assert parse_color("White") is chess.WHITE
        assert parse_color("b") is chess.BLACK
        assert parse_color(chess.BLACK) is chess.BLACK
        with pytest.raises(ValueError):
            parse_color("green")


class TestProgress:
    async def test_progress_every_five_moves_and_at_the_end(self):
        updates, on_update = collect()
        moves = ["Nf3", "Nf6", "Ng1", "Ng8"] * 3
        analyzer = MatchAnalysisOrchestrator(scripted([0.0] * 12), on_update=on_update)
        await analyzer.analyze_match(moves)

        progress = [u.progress.analyzed for u in updates if u.type == "progress"]
        assert progress == [5, 10, 12]
        assert updates[0].type == "analyzing"
        assert updates[0].is_analyzing
        assert updates[-1].type == "complete"
        assert not updates[-1].is_analyzing
        assert updates[-1].progress.percentage == 100

    async def test_stop_between_positions(self):
        updates = []
        moves = ["Nf3", "Nf6", "Ng1", "Ng8"] * 3

        def on_update(update):
            updates.append(update)
            if update.type == "progress":
                analyzer.request_stop()

        analyzer = MatchAnalysisOrchestrator(scripted([0.0] * 12), on_update=on_update)
        result = await analyzer.analyze_match(moves)
        assert len(result) == 5
        assert updates[-1].type == "stopped"
        assert not analyzer.is_analyzing


class TestGuards:
    async def test_second_run_rejected_while_analyzing(self):
        release = asyncio.Event()

        async def evaluate(fen):
            await release.wait()
            return None

        analyzer = MatchAnalysisOrchestrator(evaluate, position_timeout=5.0)
        task = asyncio.create_task(analyzer.analyze_match(["e4"]))
        await asyncio.sleep(0)
        assert analyzer.is_analyzing

        with pytest.raises(StateError):
            await analyzer.analyze_match(["d4"])
        with pytest.raises(StateError):
            analyzer.reset()

        release.set()
        result = await task
        assert result[0].evaluation_after == 0.0

    async def test_illegal_move_is_skipped(self, caplog):
        updates, on_update = collect()
        evaluate = scripted([0.1, 0.1, 0.2])
        analyzer = MatchAnalysisOrchestrator(evaluate, on_update=on_update)
        with caplog.at_level(logging.WARNING, logger="coach_engine.match_analysis"):
            result = await analyzer.analyze_match(["e4", "Ke3", "e5", "Nf3"])

        assert [m.san for m in result] == ["e4", "e5", "Nf3"]
        assert len(evaluate.calls) == 3
        assert "Ke3" in caplog.text
        assert updates[-1].type == "complete"
        assert updates[-1].progress.analyzed == 4
        assert not analyzer.is_analyzing

    async def test_cancelled_run_releases_the_analyzer(self):
        updates, on_update = collect()
        analyzer = MatchAnalysisOrchestrator(never_responds, position_timeout=5.0,
                                             on_update=on_update)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(analyzer.analyze_match(["e4"]), 0.05)
        assert not analyzer.is_analyzing
        assert updates[-1].type == "stopped"

        analyzer._evaluate = scripted([0.2])
        result = await analyzer.analyze_match(["e4"])
        assert result[0].evaluation_after == 0.2

    async def test_invalid_start_fen(self):
        analyzer = MatchAnalysisOrchestrator(scripted([0.0]))
        with pytest.raises(ValueError):
            await analyzer.analyze_match(["e4"], start_fen="garbage")
        assert not analyzer.is_analyzing


class TestNavigation:
    async def test_review_cursor(self):
        updates, on_update = collect()
        analyzer = MatchAnalysisOrchestrator(scripted([0.0] * 4), on_update=on_update)
        result = await analyzer.analyze_match(["e4", "e5", "Nf3", "Nc6"])
        assert analyzer.current_move() == result[0]

        analyzer.previous_move()
        assert analyzer.current_index == 0
        analyzer.next_move()
        analyzer.next_move()
        assert analyzer.current_move().san == "Nf3"
        analyzer.last_move()
        assert analyzer.current_index == 3
        analyzer.next_move()
        assert analyzer.current_index == 3
        analyzer.go_to_move(10)
        assert analyzer.current_index == 3
        analyzer.first_move()
        assert analyzer.current_index == 0
        assert updates[-1].type == "navigate"

        analyzer.reset()
        assert analyzer.moves == []
        assert analyzer.current_move() is None


async def test_for_manager_requests_analysis_purpose():
    local = FakeAdapter(Backend.LOCAL)
    local.auto_result = side_to_move_result(0.5, chess.BLACK)
    manager = EngineManager(Settings(_env_file=None), factories={Backend.LOCAL: lambda: local})
    await manager.initialize("local")

    analyzer = MatchAnalysisOrchestrator.for_manager(manager, depth=8)
    result = await analyzer.analyze_match(["e4"])

    assert local.requests[0][1:] == (8, Purpose.ANALYSIS)
    assert result[0].evaluation_after == -0.5
