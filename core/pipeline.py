"""
Cancellable per-frame prediction loop.

Each iteration awaits the next frame from the source, hands it to the
frame handler (extract -> classify -> decide -> send), then checks the
continuation flag before scheduling the next pass. Stopping clears the
flag; the loop notices at the next iteration boundary, never mid-frame.

A failing frame is logged and skipped. It never ends the loop.
"""

import asyncio
import logging

from core.errors import ExtractionError, NoLabelsError

logger = logging.getLogger(__name__)


class PredictionLoop:
    """Runs ``handler(frame)`` for every frame the source produces.

    Args:
        frame_source: object with ``async next_frame()``; returning None
                      means the source is exhausted and ends the loop
        handler: coroutine function taking one frame
        on_exit: optional callable, invoked with this loop once it has ended
                 (exhausted source, failed source, stop or cancellation)
    """

    def __init__(self, frame_source, handler, stop_timeout_s: float = 2.0, on_exit=None):
        self._source = frame_source
        self._handler = handler
        self._on_exit = on_exit
        self._stop_timeout_s = stop_timeout_s
        self._running = False
        self._task = None

        self._frame_count = 0
        self._error_count = 0

    def start(self):
        """Schedule the loop on the running event loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.ensure_future(self._run())
        logger.debug("Prediction loop scheduled")

    async def stop(self):
        """Clear the continuation flag and wait for the current pass to finish."""
        self._running = False
        task, self._task = self._task, None
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self._stop_timeout_s)
        except asyncio.TimeoutError:
            # Stuck waiting on a frame that will not come
            logger.warning("Prediction loop did not stop within %.1fs, cancelling",
                           self._stop_timeout_s)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def wait(self):
        """Block until the loop ends on its own (source exhausted)."""
        if self._task is not None:
            await asyncio.shield(self._task)

    async def _run(self):
        logger.info("Prediction loop started")
        try:
            while self._running:
                try:
                    frame = await self._source.next_frame()
                except Exception as e:
                    logger.error("Frame source failed, ending loop: %s", e)
                    break
                if frame is None:
                    logger.info("Frame source exhausted")
                    break
                if not self._running:
                    break

                self._frame_count += 1
                try:
                    await self._handler(frame)
                except NoLabelsError:
                    logger.debug("Frame %d skipped: classifier is empty", self._frame_count)
                except ExtractionError as e:
                    self._error_count += 1
                    logger.warning("Frame %d skipped: %s", self._frame_count, e)
                except Exception as e:
                    self._error_count += 1
                    logger.error("Frame %d failed: %s", self._frame_count, e)

                # Let sends and other tasks run between frames
                await asyncio.sleep(0)
        finally:
            self._running = False
            logger.info("Prediction loop ended (%d frames, %d errors)",
                        self._frame_count, self._error_count)
            if self._on_exit is not None:
                self._on_exit(self)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def frame_count(self) -> int:
        return self._frame_count

    @property
    def error_count(self) -> int:
        return self._error_count
