"""Chess rules collaborator backed by python-chess.

Only MatchAnalysisOrchestrator applies moves; adapters use this module
solely to validate FENs.
"""

from __future__ import annotations

import chess


def validate_fen(fen: str) -> chess.Board:
    try:
        board = chess.Board(fen)
    except ValueError as e:
        raise ValueError(f"Invalid FEN: {fen}") from e
    if not board.is_valid():
        raise ValueError(f"Illegal position: {fen}")
    return board


def apply_move(fen: str, san: str) -> str:
    """Play ``san`` on ``fen`` and return the resulting FEN."""
    board = validate_fen(fen)
    try:
        move = board.parse_san(san)
    except (chess.InvalidMoveError, chess.IllegalMoveError, chess.AmbiguousMoveError) as e:
        raise ValueError(f"Illegal move {san!r} in {fen}") from e
    board.push(move)
    return board.fen()


def uci_to_san(fen: str, uci: str) -> str:
    """Convert a UCI string to SAN notation, returning UCI on failure."""
    try:
        board = chess.Board(fen)
        move = chess.Move.from_uci(uci)
        if move not in board.legal_moves:
            return uci
        return board.san(move)
    except ValueError:
        return uci
