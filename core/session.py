"""
Session: the single owner of classifier, label, transmission and transport
state for one running demo.

Exposes two surfaces to whatever drives it (CLI, GUI, tests):

    control  allocate_label / train / delete_label / reset_all,
             start_predicting / stop_predicting, connect / disconnect,
             set_confidence_threshold / set_send_interval / set_protocol,
             save_model / load_model
    status   status() snapshot plus EventBus notifications

All mutation happens on the asyncio event loop that runs the session; only
the extractor work is pushed to executor threads, and it never touches
session state.
"""

import os
import json
import time
import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor

from core.errors import DeviceConnectionError, ExtractionError, NoLabelsError
from core.events import EventBus, Events
from core.pipeline import PredictionLoop
from core.types import (
    InputMode, LabelId, LoopState, Protocol, StatusSnapshot, STOP_PAYLOAD,
)
from modules.control.transmission_policy import TransmissionPolicy, format_label_payload
from modules.recognition.finger_geometry import encode, finger_bends
from modules.recognition.knn_classifier import ClassifierStore
from modules.recognition.label_registry import LabelRegistry
from modules.transport.channel import SimulatedChannel
from modules.utils.logger import TransmissionLogger

logger = logging.getLogger(__name__)

MODEL_FORMAT_VERSION = 1


class Session:
    """Training, prediction and transmission for one camera + one device.

    Args:
        config: full config dict (sections ``classifier``, ``transmission``,
                ``session``); missing keys fall back to defaults
        channel: TransportChannel (defaults to a SimulatedChannel)
        embedder: frame -> feature vector, required for image/landmarks mode
        detector: frame -> (21, 3) landmarks, required for fingers mode
        frame_source: default source for start_predicting()
        bus: EventBus to publish on (a private one is created otherwise)
        clock: monotonic clock in seconds, injectable for tests
    """

    def __init__(self, config: dict = None, channel=None, embedder=None, detector=None,
                 frame_source=None, bus=None, clock=time.monotonic):
        config = config or {}
        classifier_cfg = config.get("classifier", {})
        transmission_cfg = config.get("transmission", {})
        session_cfg = config.get("session", {})

        self._mode = InputMode(session_cfg.get("mode", InputMode.IMAGE.value))
        self._protocol = Protocol.from_string(transmission_cfg.get("protocol", "analog"))

        self._registry = LabelRegistry()
        self._store = ClassifierStore(
            k=classifier_cfg.get("k", 3),
            metric=classifier_cfg.get("metric", "euclidean"),
        )
        self._policy = TransmissionPolicy(
            threshold=transmission_cfg.get("confidence_threshold", 0.5),
            send_interval_ms=transmission_cfg.get("send_interval_ms", 500),
            comparison=transmission_cfg.get("comparison", ">"),
            clock=clock,
        )
        self._channel = channel or SimulatedChannel()
        self._embedder = embedder
        self._detector = detector
        self._frame_source = frame_source
        self._bus = bus or EventBus()
        self._tx_logger = TransmissionLogger()
        # One worker: MediaPipe graphs and cv2.dnn nets are not thread-safe
        self._extract_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="extract")

        self._state = LoopState.IDLE
        self._loop = None
        self._pending_sends = set()

        # Latest observation, for status()
        self._current_label = None
        self._current_confidence = 0.0
        self._current_bends = {}

        logger.info("Session created (mode=%s, protocol=%s, transport=%s)",
                    self._mode.value, self._protocol.value, self._channel.name)

    # =========================================================================
    # Label management / training
    # =========================================================================

    def allocate_label(self, name: str) -> LabelId:
        """Create a new class named ``name`` and return its id."""
        label = self._registry.allocate(name)
        self._bus.emit(Events.LABEL_ADDED, label=label, name=self._registry.lookup(label))
        return label

    def add_example(self, label: LabelId, features) -> int:
        """Store one precomputed feature vector under ``label``."""
        if label not in self._registry:
            raise ValueError(f"Unknown label id: {label!r}")
        self._store.insert(features, label)
        count = self._store.count_by_label().get(label, 0)
        self._bus.emit(Events.EXAMPLE_ADDED, label=label, count=count)
        return count

    async def train(self, label: LabelId, frame) -> int:
        """Embed ``frame`` and store it as an example of ``label``.

        Returns:
            the number of examples now held for ``label``
        """
        if label not in self._registry:
            raise ValueError(f"Unknown label id: {label!r}")
        features = await self._embed(frame)
        if features is None:
            raise ExtractionError("Nothing to learn from this frame")
        return self.add_example(label, features)

    def delete_label(self, label: LabelId):
        """Drop every example of ``label`` and free its id."""
        removed = self._store.clear_label(label)
        name = self._registry.lookup(label)
        self._registry.release(label)
        if self._current_label == label:
            self._current_label = None
            self._current_confidence = 0.0
        self._bus.emit(Events.LABEL_REMOVED, label=label, name=name, removed=removed)

    async def reset_all(self):
        """Forget all labels and examples, stop predicting and send ``stop``."""
        self._store.clear_all()
        self._registry.reset()
        self._policy.reset()
        self._current_label = None
        self._current_confidence = 0.0
        self._bus.emit(Events.MODEL_RESET)
        await self.stop_predicting()

    # =========================================================================
    # Prediction control
    # =========================================================================

    async def start_predicting(self, frame_source=None):
        """Idle -> Predicting.

        Raises:
            NoLabelsError: classifier modes with no trained labels (no state change)
        """
        if self._mode.uses_classifier and self._store.num_labels <= 0:
            raise NoLabelsError()
        if self._state is LoopState.PREDICTING:
            return

        source = frame_source or self._frame_source
        if source is None:
            raise ValueError("No frame source to predict from")

        self._policy.reset()
        self._state = LoopState.PREDICTING
        self._loop = PredictionLoop(source, self._process_frame, on_exit=self._on_loop_exit)
        self._loop.start()
        self._bus.emit(Events.PREDICTION_STARTED, mode=self._mode.value)
        logger.info("Prediction started (mode=%s)", self._mode.value)

    async def stop_predicting(self) -> bool:
        """Predicting -> Idle, then send ``stop`` exactly once.

        Returns:
            whether the stop line reached the transport
        """
        self._state = LoopState.IDLE
        loop, self._loop = self._loop, None
        if loop is not None:
            await loop.stop()

        # Let the loop's last send finish so the stop line is not dropped
        if self._pending_sends:
            await asyncio.gather(*list(self._pending_sends), return_exceptions=True)

        self._policy.force(STOP_PAYLOAD)
        delivered = await self._channel.send(STOP_PAYLOAD)
        self._tx_logger.log_payload(STOP_PAYLOAD, delivered)
        self._current_label = None
        self._current_confidence = 0.0
        self._current_bends = {}
        self._bus.emit(Events.PAYLOAD_SENT, payload=STOP_PAYLOAD, delivered=delivered)
        self._bus.emit(Events.PREDICTION_STOPPED)
        logger.info("Prediction stopped")
        return delivered

    async def wait_until_stopped(self):
        """Block until the running loop ends (e.g. the frame source runs dry)."""
        if self._loop is not None:
            await self._loop.wait()

    def _on_loop_exit(self, loop):
        # Only a loop that ended on its own is still current; stop_predicting() detaches first
        if loop is not self._loop:
            return
        self._loop = None
        self._state = LoopState.IDLE
        self._bus.emit(Events.PREDICTION_STOPPED, reason="source ended")
        logger.info("Prediction ended: frame source stopped delivering")

    # =========================================================================
    # Per-frame processing
    # =========================================================================

    async def _process_frame(self, frame):
        if self._mode is InputMode.FINGERS:
            await self._process_fingers(frame)
        else:
            await self._process_classification(frame)

    async def _process_classification(self, frame):
        features = await self._embed(frame)
        if features is None:
            self._bus.emit(Events.FRAME_SKIPPED, reason="nothing to embed")
            return

        result = self._store.predict(features)
        confidence = result.confidence
        name = self._registry.lookup(result.label)
        self._current_label = result.label
        self._current_confidence = confidence
        self._bus.emit(Events.PREDICTION, label=result.label, name=name,
                       confidence=confidence, confidences=result.confidences)

        if self._state is not LoopState.PREDICTING:
            return
        payload = format_label_payload(result.label)
        if self._policy.offer(payload, confidence):
            self._dispatch(payload, label_name=name, confidence=confidence)

    async def _process_fingers(self, frame):
        if self._detector is None:
            raise ExtractionError("No hand detector configured")
        landmarks = await self._run_blocking(self._detector.detect, frame)
        if landmarks is None:
            self._bus.emit(Events.FRAME_SKIPPED, reason="no hand")
            return

        bends = finger_bends(landmarks)
        self._current_bends = bends
        self._bus.emit(Events.FINGERS_MEASURED, bends=bends)

        if self._state is not LoopState.PREDICTING:
            return
        payload = encode(bends, self._protocol)
        if self._policy.offer(payload):
            self._dispatch(payload)

    async def _embed(self, frame):
        if self._embedder is None:
            raise ExtractionError("No feature extractor configured")
        return await self._run_blocking(self._embedder.embed, frame)

    async def _run_blocking(self, func, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._extract_pool, func, *args)
        except ExtractionError:
            raise
        except Exception as e:
            raise ExtractionError(f"{getattr(func, '__name__', 'extractor')} failed: {e}") from e

    def _dispatch(self, payload, label_name=None, confidence=None):
        """Hand ``payload`` to the transport without waiting for the write."""
        task = asyncio.ensure_future(self._send(payload, label_name, confidence))
        self._pending_sends.add(task)
        task.add_done_callback(self._pending_sends.discard)

    async def _send(self, payload, label_name, confidence):
        delivered = await self._channel.send(payload)
        self._tx_logger.log_payload(payload, delivered, label_name, confidence)
        self._bus.emit(Events.PAYLOAD_SENT, payload=payload, delivered=delivered)
        return delivered

    # =========================================================================
    # Transport
    # =========================================================================

    async def connect(self):
        """Open the transport. Raises DeviceConnectionError on failure."""
        try:
            await self._channel.connect()
        except DeviceConnectionError as e:
            logger.error("Connection failed: %s", e)
            self._bus.emit(Events.TRANSPORT_ERROR, error=str(e))
            raise
        self._bus.emit(Events.TRANSPORT_CONNECTED, name=self._channel.name)

    async def disconnect(self):
        await self._channel.disconnect()
        self._bus.emit(Events.TRANSPORT_DISCONNECTED, name=self._channel.name)

    async def close(self):
        """Stop predicting, disconnect and release the extraction worker."""
        if self._state is LoopState.PREDICTING:
            await self.stop_predicting()
        await self.disconnect()
        self._extract_pool.shutdown(wait=False)
        logger.info("Session closed")

    # =========================================================================
    # Settings
    # =========================================================================

    def set_confidence_threshold(self, threshold: float):
        """Fraction (0-1) or percentage (1-100]."""
        self._policy.set_threshold(threshold)

    def set_send_interval(self, interval_ms: float):
        self._policy.set_send_interval(interval_ms)

    def set_comparison(self, comparison: str):
        self._policy.set_comparison(comparison)

    def set_protocol(self, protocol):
        if not isinstance(protocol, Protocol):
            protocol = Protocol.from_string(protocol)
        self._protocol = protocol
        logger.info("Protocol set to %s", protocol.value)

    # =========================================================================
    # Persistence
    # =========================================================================

    def save_model(self, path: str):
        """Write labels and examples to a JSON file."""
        data = self._store.to_dict()
        data["version"] = MODEL_FORMAT_VERSION
        data["embedding"] = getattr(self._embedder, "name", None)
        data["labels"] = {str(label): name for label, name in self._registry.items()}

        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w") as f:
            json.dump(data, f)
        logger.info("Saved %d examples across %d labels to %s",
                    self._store.num_examples, len(self._registry), path)

    def load_model(self, path: str):
        """Replace labels and examples with those stored in ``path``.

        The file is fully parsed before anything is replaced, so a corrupt
        model raises ValueError and leaves the current labels and examples
        untouched.
        """
        with open(path, "r") as f:
            data = json.load(f)
        if not isinstance(data, dict) or data.get("version") != MODEL_FORMAT_VERSION:
            version = data.get("version") if isinstance(data, dict) else None
            raise ValueError(f"Unsupported model file version: {version!r}")

        embedding = getattr(self._embedder, "name", None)
        if embedding and data.get("embedding") and data["embedding"] != embedding:
            logger.warning("Model was trained with '%s' embeddings, session uses '%s'",
                           data["embedding"], embedding)

        registry = LabelRegistry()
        store = ClassifierStore(k=self._store.k, metric=self._store.metric)
        try:
            for label, name in sorted(data.get("labels", {}).items(), key=lambda kv: int(kv[0])):
                registry.restore(int(label), name)
            store.load_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Corrupt model file {path}: {e}") from e

        orphans = [label for label in store.labels if label not in registry]
        if orphans:
            raise ValueError(f"Corrupt model file {path}: examples for unnamed labels {orphans}")

        self._registry = registry
        self._store = store
        self._bus.emit(Events.MODEL_LOADED, labels=len(registry), examples=store.num_examples)

    # =========================================================================
    # Status
    # =========================================================================

    def status(self) -> StatusSnapshot:
        label = self._current_label
        return StatusSnapshot(
            connected=self._channel.is_connected,
            transport_name=self._channel.name,
            predicting=self._state is LoopState.PREDICTING,
            mode=self._mode.value,
            label=label,
            label_name=self._registry.lookup(label) if label is not None else None,
            confidence=self._current_confidence,
            finger_bends=dict(self._current_bends),
            last_payload=self._policy.last_payload,
            example_counts=self._store.count_by_label(),
        )

    @property
    def registry(self) -> LabelRegistry:
        return self._registry

    @property
    def store(self) -> ClassifierStore:
        return self._store

    @property
    def policy(self) -> TransmissionPolicy:
        return self._policy

    @property
    def channel(self):
        return self._channel

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def transmissions(self) -> TransmissionLogger:
        return self._tx_logger

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def mode(self) -> InputMode:
        return self._mode

    @property
    def protocol(self) -> Protocol:
        return self._protocol
