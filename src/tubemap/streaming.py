"""Debounced classification and extraction over a growing caller transcript.

Chunks arrive far faster than it is worth re-running analysis, so each
stream keeps a single pending debounce task: every new chunk cancels and
reschedules it, and only when the caller pauses does the analysis run over
the whole accumulated text. reset() and close() cancel the pending task
and bump a generation counter so nothing computed for the old transcript
is ever delivered.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Generic, Optional, TypeVar

from tubemap.classification import ClassificationResult, SegmentClassifier, classify_sync
from tubemap.extraction import extract_info
from tubemap.session import CapturedInfo, merge_captured_info

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_MS = 500

T = TypeVar("T")


class _DebouncedStream(Generic[T]):
    label = "stream"

    def __init__(
        self,
        on_update: Optional[Callable[[T], Any]] = None,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
    ):
        self.on_update = on_update
        self.debounce_s = debounce_ms / 1000
        self._chunks: list[str] = []
        self._timer: Optional[asyncio.Task] = None
        self._generation = 0
        self._closed = False

    @property
    def accumulated_text(self) -> str:
        return " ".join(self._chunks)

    @property
    def pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def closed(self) -> bool:
        return self._closed

    def add_chunk(self, text: str) -> None:
        """Append caller text and (re)arm the debounce timer. Needs a running event loop."""
        if self._closed:
            logger.debug("%s closed, dropping chunk", self.label)
            return
        if not text or not text.strip():
            return
        self._chunks.append(text.strip())
        self._reset_timer()

    def _reset_timer(self) -> None:
        self._cancel_timer()
        self._timer = asyncio.create_task(self._debounce_wait(self._generation))

    def _cancel_timer(self) -> None:
        if self._timer and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _debounce_wait(self, generation: int) -> None:
        await asyncio.sleep(self.debounce_s)
        try:
            await self._run(generation)
        except Exception as e:
            logger.error(f"{self.label} debounce pass failed: {e}")

    async def flush(self) -> Optional[T]:
        """Run one pass now over everything accumulated, cancelling the pending timer."""
        self._cancel_timer()
        if self._closed:
            return None
        return await self._run(self._generation)

    def reset(self) -> None:
        """Forget accumulated text and drop any pending or in-flight pass."""
        self._cancel_timer()
        self._generation += 1
        self._chunks = []
        self._clear_result()

    def close(self) -> None:
        self.reset()
        self._closed = True

    def _is_stale(self, generation: int) -> bool:
        return self._closed or generation != self._generation

    async def _emit(self, value: T) -> None:
        if self.on_update is None:
            return
        try:
            result = self.on_update(value)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"{self.label} update callback failed: {e}")

    async def _run(self, generation: int) -> Optional[T]:
        raise NotImplementedError

    def _clear_result(self) -> None:
        raise NotImplementedError


class StreamingClassifier(_DebouncedStream[ClassificationResult]):
    """Reclassifies the accumulated caller text once per debounce window."""

    label = "streaming classifier"

    def __init__(
        self,
        classifier: Optional[SegmentClassifier] = None,
        on_update: Optional[Callable[[ClassificationResult], Any]] = None,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        use_tier2: bool = True,
    ):
        super().__init__(on_update=on_update, debounce_ms=debounce_ms)
        self.classifier = classifier or SegmentClassifier()
        self.use_tier2 = use_tier2
        self._current: Optional[ClassificationResult] = None

    def get_current_classification(self) -> Optional[ClassificationResult]:
        return self._current

    def classify_now(self) -> ClassificationResult:
        """Tier-1 over the accumulated text without touching the timer or emitting."""
        return classify_sync(self.accumulated_text)

    def _clear_result(self) -> None:
        self._current = None

    async def _run(self, generation: int) -> Optional[ClassificationResult]:
        text = self.accumulated_text
        if not text:
            return self._current
        result = await self.classifier.classify(text, use_tier2=self.use_tier2)
        if self._is_stale(generation):
            logger.debug("Discarding stale classification")
            return None
        changed = self._current is None or self._current.primary != result.primary
        self._current = result
        if changed and result.segment is not None:
            await self._emit(result)
        return result


class StreamingInfoExtractor(_DebouncedStream[CapturedInfo]):
    """Re-extracts from the accumulated caller text and folds it into the running info."""

    label = "streaming extractor"

    def __init__(
        self,
        on_update: Optional[Callable[[CapturedInfo], Any]] = None,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
    ):
        super().__init__(on_update=on_update, debounce_ms=debounce_ms)
        self._info = CapturedInfo()

    def get_current_info(self) -> CapturedInfo:
        return self._info

    def _clear_result(self) -> None:
        self._info = CapturedInfo()

    async def _run(self, generation: int) -> Optional[CapturedInfo]:
        text = self.accumulated_text
        if not text:
            return self._info
        merged = merge_captured_info(self._info, extract_info(text))
        if self._is_stale(generation):
            return None
        if merged != self._info:
            self._info = merged
            await self._emit(merged)
        return merged
