"""
Threaded camera capture that only ever holds the latest frame.

The prediction loop awaits ``next_frame()``; if it falls behind, older
frames are simply overwritten, never queued. Frames are delivered as
captured (no mirroring), so training and prediction see the same view.
"""

import time
import asyncio
import threading
import logging

import cv2

logger = logging.getLogger(__name__)

_BACKENDS = {
    "v4l2": cv2.CAP_V4L2,
    "gstreamer": cv2.CAP_GSTREAMER,
    "auto": cv2.CAP_ANY,
}


class CameraManager:
    """OpenCV capture with a background grab thread.

    Acts as the frame source of the prediction loop and of collect mode.
    """

    def __init__(self, config: dict):
        self._device_id = config.get("device_id", 0)
        self._backend = config.get("backend", "auto")
        self._warmup_frames = config.get("warmup_frames", 5)
        self._poll_interval_s = config.get("poll_interval_ms", 5) / 1000.0
        self._requested = {
            cv2.CAP_PROP_FRAME_WIDTH: config.get("width", 640),
            cv2.CAP_PROP_FRAME_HEIGHT: config.get("height", 480),
            cv2.CAP_PROP_FPS: config.get("fps", 30),
            cv2.CAP_PROP_BUFFERSIZE: config.get("buffer_size", 1),
        }

        self._cap = None
        self._latest = None
        self._seq = 0            # bumped by the grab thread per frame
        self._delivered_seq = 0  # last seq handed out by next_frame()
        self._lock = threading.Lock()
        self._grabbing = False
        self._thread = None

    def open(self) -> bool:
        """Open the camera device and discard warmup frames."""
        cap = cv2.VideoCapture(self._device_id, _BACKENDS.get(self._backend, cv2.CAP_ANY))
        if not cap.isOpened():
            logger.error("Failed to open camera %d with backend %s", self._device_id, self._backend)
            return False

        for prop, value in self._requested.items():
            cap.set(prop, value)
        logger.info(
            "Camera %d opened: %dx%d @ %.0f FPS",
            self._device_id,
            int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
            cap.get(cv2.CAP_PROP_FPS),
        )

        # Auto-exposure settles during warmup
        for _ in range(self._warmup_frames):
            cap.read()
        self._cap = cap
        return True

    def start(self):
        """Start the background grab thread."""
        if self._grabbing or self._cap is None:
            return
        self._grabbing = True
        self._thread = threading.Thread(target=self._grab_loop, name="camera-grab", daemon=True)
        self._thread.start()
        logger.debug("Camera grab thread started")

    def _grab_loop(self):
        while self._grabbing:
            ok, frame = self._cap.read()
            if not ok or frame is None:
                time.sleep(0.001)
                continue
            with self._lock:
                self._latest = frame
                self._seq += 1

    def read(self):
        """Latest frame (non-blocking).

        Returns:
            tuple: (sequence number, BGR numpy array) or (None, None) before the first frame
        """
        with self._lock:
            if self._latest is None:
                return None, None
            return self._seq, self._latest.copy()

    async def next_frame(self):
        """Wait for a frame newer than the last one returned here.

        Raises:
            RuntimeError: if capture is not running
        """
        while True:
            seq, frame = self.read()
            if frame is not None and seq != self._delivered_seq:
                self._delivered_seq = seq
                return frame
            if not self._grabbing:
                raise RuntimeError("Camera is not running")
            await asyncio.sleep(self._poll_interval_s)

    @property
    def is_open(self) -> bool:
        return self._cap is not None and self._cap.isOpened()

    @property
    def frames_captured(self) -> int:
        return self._seq

    def stop(self):
        """Stop capture and release the device."""
        self._grabbing = False
        if self._thread is not None:
            self._thread.join(timeout=2.0)
            self._thread = None
        if self._cap is not None:
            self._cap.release()
            self._cap = None
        logger.info("Camera stopped after %d frames", self._seq)

    def __enter__(self):
        if self.open():
            self.start()
        return self

    def __exit__(self, *args):
        self.stop()
