"""
Background scheduling of stencil pipeline runs.

Interactive edits ask for quick low fidelity previews, debounced and
coalesced into a single pending request; committed edits get exactly one
high fidelity run. Runs never block each other and results are published
in submission order only: a stale run finishing late is discarded.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from curve_editor import CurveEditor
from stencil_lib import (
    Artifacts,
    FidelityTier,
    ProcessingSettings,
    StencilPipeline,
)

__all__ = [
    'PipelineScheduler',
    'StencilSession',
    'DEFAULT_DEBOUNCE_DELAY',
]

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_DELAY = 0.04  # seconds


class PipelineScheduler:
    """
    Runs a StencilPipeline on a small thread pool with the two-speed
    recompute policy.
    """

    def __init__(self,
                 pipeline: StencilPipeline,
                 on_result: Optional[Callable[[Artifacts], None]] = None,
                 on_error: Optional[Callable[[Exception], None]] = None,
                 debounce_delay: float = DEFAULT_DEBOUNCE_DELAY,
                 num_workers: Optional[int] = None):
        """
        Initialize scheduler.

        Args:
            pipeline: Pipeline holding the source image
            on_result: Called with every published Artifacts (worker thread)
            on_error: Called with the exception of a failed run (worker thread)
            debounce_delay: Quiet time in seconds before a preview run starts
            num_workers: Pool size. Defaults to 2 so a fresh request never
                waits behind a single stale run.
        """
        if num_workers is None:
            num_workers = 2
        self.pipeline = pipeline
        self.on_result = on_result
        self.on_error = on_error
        self.debounce_delay = debounce_delay
        self._executor = ThreadPoolExecutor(max_workers=num_workers,
                                            thread_name_prefix="stencil-run")
        self._lock = threading.Lock()
        self._publish_lock = threading.Lock()
        self._count_lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._pending: Optional[ProcessingSettings] = None
        self._high_outstanding = 0
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.shutdown()

    @property
    def artifacts(self) -> Optional[Artifacts]:
        return self.pipeline.artifacts

    @property
    def is_processing(self) -> bool:
        """True while a high fidelity run is outstanding."""
        with self._count_lock:
            return self._high_outstanding > 0

    @property
    def has_pending_preview(self) -> bool:
        with self._lock:
            return self._pending is not None

    # ------------------------------------------------------------------ runs

    def submit(self, settings: ProcessingSettings,
               tier: FidelityTier = FidelityTier.HIGH) -> Future:
        """
        Queue one run right away.

        Returns:
            Future resolving to the run's Artifacts (also when they turn out
            to be stale and are not published)
        """
        with self._lock:
            return self._submit_locked(settings, tier)

    def _submit_locked(self, settings: ProcessingSettings, tier: FidelityTier) -> Future:
        # Caller holds self._lock, so sequence numbers follow request order
        if self._closed:
            raise RuntimeError("Scheduler has been shut down")
        sequence = self.pipeline.next_sequence()
        if tier is FidelityTier.HIGH:
            with self._count_lock:
                self._high_outstanding += 1
        logger.debug("Queued run #%d (%s tier)", sequence, tier.value)
        future = self._executor.submit(self._run, settings, tier, sequence)
        if tier is FidelityTier.HIGH:
            future.add_done_callback(self._release_cancelled)
        return future

    def _release_cancelled(self, future: Future):
        # A cancelled run never reaches _run, which does the bookkeeping otherwise
        if future.cancelled():
            with self._count_lock:
                self._high_outstanding -= 1

    def _run(self, settings: ProcessingSettings, tier: FidelityTier, sequence: int) -> Artifacts:
        try:
            try:
                artifacts = self.pipeline.render(settings, tier, sequence)
            except Exception as e:
                logger.error("Run #%d (%s tier) failed: %s", sequence, tier.value, e)
                if self.on_error:
                    self.on_error(e)
                raise

            with self._publish_lock:
                if self.pipeline.publish(artifacts):
                    if self.on_result:
                        self.on_result(artifacts)
                else:
                    logger.debug("Discarded stale run #%d (newer output already published)", sequence)
            return artifacts
        finally:
            if tier is FidelityTier.HIGH:
                with self._count_lock:
                    self._high_outstanding -= 1

    # ------------------------------------------------------ two-speed policy

    def request_preview(self, settings: ProcessingSettings):
        """
        Ask for a low fidelity run of 'settings'. The request replaces any
        pending one and is started once no new request came in for
        debounce_delay seconds.
        """
        with self._lock:
            if self._closed:
                return
            self._pending = settings
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_delay, self._fire_preview)
            self._timer.daemon = True
            self._timer.start()

    def _fire_preview(self) -> Optional[Future]:
        with self._lock:
            settings = self._pending
            self._pending = None
            self._timer = None
            if settings is None or self._closed:
                return None
            return self._submit_locked(settings, FidelityTier.LOW)

    def flush_preview(self) -> Optional[Future]:
        """Start the pending preview now instead of waiting for the delay."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
        return self._fire_preview()

    def _cancel_preview_locked(self):
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._pending = None

    def cancel_preview(self):
        with self._lock:
            self._cancel_preview_locked()

    def commit(self, settings: ProcessingSettings) -> Future:
        """Drop any pending preview and start one high fidelity run."""
        with self._lock:
            self._cancel_preview_locked()
            return self._submit_locked(settings, FidelityTier.HIGH)

    def shutdown(self, wait: bool = True):
        with self._lock:
            self._closed = True
            self._cancel_preview_locked()
        self._executor.shutdown(wait=wait, cancel_futures=True)


class StencilSession:
    """
    Ties curve editing and settings changes to the scheduler, the way an
    interactive front end drives the pipeline: dragging a curve point asks
    for previews of the draft curves, releasing it commits them.
    """

    def __init__(self,
                 scheduler: PipelineScheduler,
                 settings: Optional[ProcessingSettings] = None,
                 editor: Optional[CurveEditor] = None):
        self.scheduler = scheduler
        self._settings = settings or ProcessingSettings()
        self.editor = editor or CurveEditor(self._settings.curves)
        if dict(self.editor.committed) != dict(self._settings.curves):
            self._settings = self._settings.with_curves(self.editor.committed)

    @property
    def settings(self) -> ProcessingSettings:
        """Committed settings snapshot."""
        return self._settings

    def refresh(self) -> Future:
        return self.scheduler.commit(self._settings)

    def update_settings(self, **changes) -> Future:
        """Apply levels / opacity / is_black_and_white changes and commit."""
        self._settings = self._settings.with_changes(**changes)
        return self.scheduler.commit(self._settings)

    def select_channel(self, channel: str):
        self.editor.select_channel(channel)

    def press(self, x: float, y: float) -> int:
        index = self.editor.press(x, y)
        self.scheduler.request_preview(self._settings.with_curves(self.editor.draft))
        return index

    def drag(self, x: float, y: float):
        if not self.editor.is_interacting:
            return
        self.editor.drag(x, y)
        self.scheduler.request_preview(self._settings.with_curves(self.editor.draft))

    def release(self) -> Optional[Future]:
        if not self.editor.is_interacting:
            return None
        self._settings = self._settings.with_curves(self.editor.release())
        return self.scheduler.commit(self._settings)

    def reset_channel(self, channel: Optional[str] = None) -> Future:
        self._settings = self._settings.with_curves(self.editor.reset_channel(channel))
        return self.scheduler.commit(self._settings)
