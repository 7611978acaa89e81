"""Backend-agnostic façade over exactly one active engine adapter.

The manager hands each adapter a callback set bound to that adapter. Once
the manager stops pointing at it (switch or cleanup), those callbacks go
inert, so a late response from a torn-down backend never reaches callers.
Every evaluation leaving the manager passes through ``normalize_*``.
"""

from __future__ import annotations

import logging
from typing import Callable

from coach_engine.cloud_engine import CloudEngineAdapter
from coach_engine.config import Settings
from coach_engine.engine import (
    Backend,
    BestMove,
    EngineAdapter,
    EngineCallbacks,
    EngineState,
    EngineStatus,
    Purpose,
    normalize_best_move,
    normalize_evaluation,
    normalize_line,
    normalize_state,
)
from coach_engine.errors import (
    AnalysisCancelled,
    EngineConnectionError,
    EngineErrorEvent,
    StateError,
)
from coach_engine.local_engine import LocalEngineAdapter

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[], EngineAdapter]


class EngineManager:
    def __init__(
        self,
        settings: Settings | None = None,
        factories: dict[Backend, AdapterFactory] | None = None,
    ):
        self._settings = settings or Settings()
        self._factories = factories or {
            Backend.LOCAL: self._make_local,
            Backend.CLOUD: self._make_cloud,
        }
        self._active: EngineAdapter | None = None
        self._backend = Backend(self._settings.preferred_engine)
        self._callbacks = EngineCallbacks()
        self._fallback_to_local = self._settings.fallback_to_local

    def _make_local(self) -> EngineAdapter:
        s = self._settings
        return LocalEngineAdapter(
            stockfish_path=s.stockfish_path,
            handshake_timeout=s.stockfish_handshake_timeout,
            depth=s.default_depth,
            variants=s.default_variants,
        )

    def _make_cloud(self) -> EngineAdapter:
        s = self._settings
        return CloudEngineAdapter(
            url=s.cloud_engine_url,
            max_thinking_time=s.cloud_max_thinking_time,
            depth=s.default_depth,
            variants=s.default_variants,
            max_reconnect_attempts=s.reconnect_max_attempts,
            reconnect_base_delay=s.reconnect_base_delay,
        )

    # --- properties ---

    @property
    def engine_type(self) -> Backend:
        return self._backend

    @property
    def is_cloud(self) -> bool:
        return self._backend is Backend.CLOUD

    @property
    def is_local(self) -> bool:
        return self._backend is Backend.LOCAL

    @property
    def active_adapter(self) -> EngineAdapter | None:
        return self._active

    # --- lifecycle ---

    async def initialize(
        self,
        preferred: Backend | str | None = None,
        callbacks: EngineCallbacks | None = None,
        fallback_to_local: bool | None = None,
    ) -> EngineAdapter:
        """Start the preferred backend, falling back to local if cloud fails."""
        backend = Backend(preferred) if preferred is not None else self._backend
        if callbacks is not None:
            self._callbacks = callbacks
        if fallback_to_local is not None:
            self._fallback_to_local = fallback_to_local
        await self._teardown()
        return await self._start(backend, self._fallback_to_local)

    async def _start(self, backend: Backend, allow_fallback: bool) -> EngineAdapter:
        self._backend = backend
        logger.info("Initializing %s engine...", backend.value)
        adapter = self._factories[backend]()
        self._active = adapter
        try:
            await adapter.initialize(self._bind(adapter, backend))
        except EngineConnectionError as e:
            logger.error("Failed to initialize %s engine: %s", backend.value, e)
            if self._active is adapter:
                self._active = None
            await adapter.cleanup()
            if backend is Backend.CLOUD and allow_fallback:
                logger.warning("Falling back to local engine")
                if self._callbacks.on_error is not None:
                    self._callbacks.on_error(EngineErrorEvent(
                        message="Cloud engine unavailable. Switched to local Stockfish.",
                        fallback=True,
                        error=e,
                    ))
                return await self._start(Backend.LOCAL, allow_fallback=False)
            raise
        logger.info("%s engine initialized", backend.value.capitalize())
        return adapter

    async def switch_engine(self, backend: Backend | str) -> None:
        backend = Backend(backend)
        if backend is self._backend and self._active is not None:
            logger.info("Already using %s engine", backend.value)
            return
        logger.info("Switching from %s to %s engine", self._backend.value, backend.value)
        await self._teardown()
        await self._start(backend, self._fallback_to_local)

    async def cleanup(self) -> None:
        await self._teardown()

    async def _teardown(self) -> None:
        # Sever first so anything the old adapter emits while closing is dropped.
        old, self._active = self._active, None
        if old is not None:
            await old.cleanup()

    # --- requests ---

    async def evaluate_position(
        self, fen: str, depth: int | None = None, purpose: Purpose | str = Purpose.CURRENT,
    ) -> BestMove:
        adapter = self._require_active()
        result = await adapter.evaluate_position(fen, depth, Purpose(purpose))
        return self._deliver(adapter, result)

    async def find_best_move(self, fen: str, depth: int | None = None) -> BestMove:
        adapter = self._require_active()
        result = await adapter.find_best_move(fen, depth)
        return self._deliver(adapter, result)

    async def analyze_with_multi_pv(
        self, fen: str, depth: int | None = None, lines: int | None = None,
    ) -> BestMove:
        adapter = self._require_active()
        result = await adapter.analyze_multi_pv(fen, depth, lines)
        return self._deliver(adapter, result)

    def stop_analysis(self) -> None:
        if self._active is not None:
            self._active.stop_analysis()

    def get_engine_state(self) -> EngineState:
        if self._active is None:
            return EngineState(
                status=EngineStatus.DISCONNECTED,
                backend=self._backend,
                depth=self._settings.default_depth,
                variants=self._settings.default_variants,
            )
        return normalize_state(self._active.get_state())

    def set_depth(self, depth: int) -> None:
        if self._active is not None:
            self._active.set_depth(depth)

    def set_variants(self, variants: int) -> None:
        if self._active is not None:
            self._active.set_variants(variants)

    # --- internals ---

    def _require_active(self) -> EngineAdapter:
        if self._active is None:
            raise StateError("No active engine; call initialize() first")
        return self._active

    def _deliver(self, adapter: EngineAdapter, result: BestMove) -> BestMove:
        if adapter is not self._active:
            raise AnalysisCancelled("Engine was switched while the request was running")
        return normalize_best_move(result)

    def _bind(self, adapter: EngineAdapter, backend: Backend) -> EngineCallbacks:
        """Callbacks for ``adapter`` that normalize and drop stale deliveries."""
        user = self._callbacks

        def live() -> bool:
            if adapter is self._active:
                return True
            logger.debug("Dropping message from inactive %s adapter", backend.value)
            return False

        def on_ready():
            if live() and user.on_ready:
                user.on_ready()

        def on_best_move(best):
            if live() and user.on_best_move:
                user.on_best_move(normalize_best_move(best))

        def on_evaluation(ev):
            if not live():
                return
            ev = normalize_evaluation(ev)
            if user.on_evaluation:
                user.on_evaluation(ev)
            if backend is Backend.CLOUD and user.on_streaming_update:
                user.on_streaming_update(ev)

        def on_multi_pv(lines):
            if not live():
                return
            lines = [normalize_line(l) for l in lines]
            if user.on_multi_pv:
                user.on_multi_pv(lines)
            if backend is Backend.CLOUD and user.on_cloud_multi_pv:
                user.on_cloud_multi_pv(lines)

        def on_error(event):
            if live() and user.on_error:
                user.on_error(event)

        return EngineCallbacks(
            on_ready=on_ready,
            on_best_move=on_best_move,
            on_evaluation=on_evaluation,
            on_multi_pv=on_multi_pv,
            on_error=on_error,
        )
