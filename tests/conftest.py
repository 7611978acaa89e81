"""Shared fakes for the UCI engine, the cloud socket and adapters."""

import asyncio
import json

import chess
import chess.engine
import pytest
from websockets.exceptions import ConnectionClosedError

from coach_engine.engine import (
    Backend,
    BestMove,
    EngineAdapter,
    EngineCallbacks,
    EngineStatus,
    Evaluation,
    Perspective,
    Purpose,
)
from coach_engine.errors import AnalysisCancelled, EngineConnectionError
from coach_engine.local_engine import LocalEngineAdapter
from coach_engine.rules import validate_fen

START_FEN = "rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1"
AFTER_E4_FEN = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1"

_EOF = object()
_DROP = object()


class FakeAnalysis:
    """Stands in for chess.engine.AnalysisResult; the test posts info dicts."""

    def __init__(self, board, limit, multipv):
        self.board = board
        self.limit = limit
        self.multipv = multipv
        self.stopped = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self._finished = asyncio.get_running_loop().create_future()

    def post(self, info: dict) -> None:
        self._queue.put_nowait(info)

    def finish(self, move: str | None = None, ponder: str | None = None) -> None:
        if self._finished.done():
            return
        self._finished.set_result(chess.engine.BestMove(
            chess.Move.from_uci(move) if move else None,
            chess.Move.from_uci(ponder) if ponder else None,
        ))
        self._queue.put_nowait(_EOF)

    def terminate(self) -> None:
        if self._finished.done():
            return
        self._finished.set_exception(chess.engine.EngineTerminatedError("engine process died"))
        self._queue.put_nowait(_EOF)

    def stop(self) -> None:
        self.stopped = True
        self.finish()

    def __aiter__(self):
        return self

    async def __anext__(self) -> dict:
        item = await self._queue.get()
        if item is _EOF:
            await self._finished
            raise StopAsyncIteration
        return item

    async def wait(self):
        return await self._finished


class FakeUciEngine:
    """Simulates the python-chess UCI protocol object returned by popen_uci."""

    def __init__(self):
        self.options = {"Hash": 16, "Skill Level": 20, "MultiPV": 1}
        self.configured: list[dict] = []
        self.searches: list[FakeAnalysis] = []
        self.quit_called = False
        self.returncode = asyncio.get_running_loop().create_future()

    async def configure(self, options: dict) -> None:
        self.configured.append(dict(options))

    async def analysis(self, board, limit=None, *, multipv=None):
        if self.returncode.done():
            raise chess.engine.EngineTerminatedError("engine process dead")
        search = FakeAnalysis(board.copy(), limit, multipv)
        self.searches.append(search)
        return search

    async def quit(self) -> None:
        self.quit_called = True
        if not self.returncode.done():
            self.returncode.set_result(0)

    def crash(self) -> None:
        for search in self.searches:
            search.terminate()
        if not self.returncode.done():
            self.returncode.set_result(1)


def uci_info(turn: chess.Color, depth: int, cp: int | None = None, mate: int | None = None,
             pv: str = "", multipv: int | None = None) -> dict:
    """An InfoDict as python-chess builds it from an engine ``info`` line."""
    score = chess.engine.Mate(mate) if mate is not None else chess.engine.Cp(cp)
    info = {
        "depth": depth,
        "score": chess.engine.PovScore(score, turn),
        "pv": [chess.Move.from_uci(m) for m in pv.split()],
    }
    if multipv is not None:
        info["multipv"] = multipv
    return info


class FakeWebSocket:
    """Simulates a websockets client connection."""

    def __init__(self):
        self._sent: list[str] = []
        self._receive_queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send(self, data: str) -> None:
        self._sent.append(data)

    async def recv(self) -> str:
        item = await self._receive_queue.get()
        if item is _DROP:
            raise ConnectionClosedError(None, None)
        return item

    async def close(self) -> None:
        self.closed = True

    def enqueue(self, data: dict) -> None:
        """Queue a JSON message for the engine to receive."""
        self._receive_queue.put_nowait(json.dumps(data))

    def enqueue_raw(self, raw: str) -> None:
        self._receive_queue.put_nowait(raw)

    def drop(self) -> None:
        self._receive_queue.put_nowait(_DROP)

    @property
    def sent_messages(self) -> list[dict]:
        return [json.loads(s) for s in self._sent]


class FakeAdapter(EngineAdapter):
    """In-memory adapter whose results are released by the test."""

    def __init__(self, backend: Backend = Backend.LOCAL, fail_init: bool = False):
        super().__init__()
        self.backend = backend
        self.fail_init = fail_init
        self.cleaned_up = False
        self.requests: list[tuple[str, int | None, Purpose]] = []
        self.auto_result: BestMove | None = None
        self._future: asyncio.Future | None = None

    @property
    def callbacks(self) -> EngineCallbacks:
        return self._callbacks

    async def initialize(self, callbacks: EngineCallbacks) -> None:
        self._callbacks = callbacks
        if self.fail_init:
            self._status = EngineStatus.ERROR
            raise EngineConnectionError("fake backend unreachable")
        self._status = EngineStatus.IDLE
        self._emit("on_ready")

    async def evaluate_position(self, fen, depth=None, purpose=Purpose.CURRENT):
        validate_fen(fen)
        self._begin(purpose)
        self.requests.append((fen, depth, purpose))
        if self.auto_result is not None:
            self._finish()
            return self.auto_result
        self._future = asyncio.get_running_loop().create_future()
        try:
            return await self._future
        finally:
            self._future = None
            self._finish()

    async def analyze_multi_pv(self, fen, depth=None, lines=None):
        return await self.evaluate_position(fen, depth, Purpose.ANALYSIS)

    def release(self, result: BestMove) -> None:
        self._future.set_result(result)

    def stop_analysis(self) -> None:
        if self._future is not None and not self._future.done():
            self._future.set_exception(AnalysisCancelled("stopped"))
        self._finish()

    async def cleanup(self) -> None:
        self.cleaned_up = True
        self.stop_analysis()
        self._status = EngineStatus.DISCONNECTED


def side_to_move_result(score: float, turn: bool, move: str = "e2e4") -> BestMove:
    return BestMove(
        move=move,
        purpose=Purpose.CURRENT,
        evaluation=Evaluation(
            score_pawns=score, depth=10, pv=[move],
            perspective=Perspective.SIDE_TO_MOVE, turn=turn,
        ),
    )


async def wait_until(predicate, timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
async def fake_engine():
    return FakeUciEngine()


@pytest.fixture
async def local_engine(fake_engine):
    async def factory():
        return None, fake_engine

    adapter = LocalEngineAdapter(engine_factory=factory, handshake_timeout=0.5)
    await adapter.initialize(EngineCallbacks())
    yield adapter
    await adapter.cleanup()


@pytest.fixture
def fake_ws():
    return FakeWebSocket()
