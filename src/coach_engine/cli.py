"""CLI utility for whole-game match analysis.

Usage:
    python -m coach_engine.cli [SAN ...] [--pgn FILE] [--color white|black]
        [--engine local|cloud] [--depth N] [--timeout S] [--stockfish PATH]

Prints JSON with every analyzed move and the accuracy summary.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

import chess
import chess.pgn

from coach_engine.config import Settings
from coach_engine.engine import EngineCallbacks
from coach_engine.errors import EngineError
from coach_engine.manager import EngineManager
from coach_engine.match_analysis import AnalysisUpdate, MatchAnalysisOrchestrator
from coach_engine.serialize import accuracy_to_dict, analyzed_move_to_dict

logger = logging.getLogger(__name__)


def read_pgn_moves(path: str) -> tuple[str, list[str]]:
    """Return (starting FEN, SAN mainline) of the first game in ``path``."""
    with open(path) as f:
        game = chess.pgn.read_game(f)
    if game is None:
        raise ValueError(f"No game found in {path}")
    board = game.board()
    start_fen = board.fen()
    sans = []
    for move in game.mainline_moves():
        sans.append(board.san(move))
        board.push(move)
    return start_fen, sans


def _log_progress(update: AnalysisUpdate) -> None:
    if update.type == "progress":
        logger.info(
            "Analyzed %d/%d moves (%d%%)",
            update.progress.analyzed, update.progress.total, update.progress.percentage,
        )


async def _run(args: argparse.Namespace, sans: list[str], start_fen: str) -> dict:
    overrides = {}
    if args.stockfish:
        overrides["stockfish_path"] = args.stockfish
    settings = Settings().model_copy(update=overrides)

    manager = EngineManager(settings)
    await manager.initialize(
        args.engine,
        EngineCallbacks(on_error=lambda e: logger.warning("%s", e.message)),
    )
    try:
        analyzer = MatchAnalysisOrchestrator.for_manager(
            manager,
            depth=args.depth,
            position_timeout=args.timeout or settings.position_timeout,
            progress_interval=settings.progress_interval,
            on_update=_log_progress,
        )
        moves = await analyzer.analyze_match(sans, args.color, start_fen=start_fen)
    finally:
        await manager.cleanup()

    return {
        "engine": manager.engine_type.value,
        "moves": [analyzed_move_to_dict(m) for m in moves],
        "accuracy": accuracy_to_dict(analyzer.accuracy()),
    }


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Move-by-move game analysis",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("moves", nargs="*", help="Game moves in SAN, in order")
    parser.add_argument("--pgn", metavar="FILE", help="Read the game from a PGN file")
    parser.add_argument(
        "--color", default="white", choices=["white", "black"],
        help="Side whose accuracy is reported (default: white)",
    )
    parser.add_argument(
        "--engine", default=None, choices=["local", "cloud"],
        help="Engine backend (default: PREFERRED_ENGINE setting)",
    )
    parser.add_argument("--depth", type=int, default=None, help="Search depth per position")
    parser.add_argument(
        "--timeout", type=float, default=None,
        help="Seconds to wait per position before using the fallback evaluation",
    )
    parser.add_argument("--stockfish", default=None, help="Path to Stockfish binary")
    args = parser.parse_args()

    logging.basicConfig(
        level=Settings().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    start_fen = chess.STARTING_FEN
    sans = list(args.moves)
    if args.pgn:
        start_fen, sans = read_pgn_moves(args.pgn)
    if not sans:
        parser.error("no moves given (pass SAN moves or --pgn FILE)")

    try:
        result = asyncio.run(_run(args, sans, start_fen))
    except (ValueError, EngineError) as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)
    json.dump(result, sys.stdout, indent=2)
    print()


if __name__ == "__main__":
    main()
