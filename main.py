#!/usr/bin/env python3
"""
KNN Gesture Link - teachable camera classifier that drives a microcontroller.

Usage:
    python main.py --mode ports                                   # list serial ports
    python main.py --mode collect --label fist --samples 40      # record examples
    python main.py --mode collect --label palm --samples 40
    python main.py --mode predict --transport serial             # stream ID<n> lines
    python main.py --mode predict --input fingers --protocol digital
"""

import sys
import os
import signal
import asyncio
import argparse
import logging

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, PROJECT_ROOT)

from core.errors import DeviceConnectionError, ExtractionError, LinkError
from core.events import Events
from core.session import Session
from core.types import InputMode
from modules.capture.camera_manager import CameraManager
from modules.detection.embedders import create_embedder
from modules.detection.hand_detector import HandDetector
from modules.transport.channel import create_channel, list_serial_ports
from modules.utils.config import Config
from modules.utils.logger import setup_logging

logger = logging.getLogger(__name__)


class LinkApp:
    """Wires camera, extractors, transport and the session together."""

    def __init__(self, config: Config):
        self._config = config
        self._mode = InputMode(config.get("session.mode", "image"))

        self._camera = CameraManager(config.camera)
        self._detector = None
        if self._mode is not InputMode.IMAGE:
            self._detector = HandDetector(config.mediapipe)

        embedder = None
        if self._mode.uses_classifier:
            embedding_cfg = dict(config.embedding)
            if self._mode is InputMode.LANDMARKS:
                embedding_cfg["backend"] = "landmarks"
            embedder = create_embedder(embedding_cfg, detector=self._detector)

        self._session = Session(
            config=config.as_dict(),
            channel=create_channel(config.transport),
            embedder=embedder,
            detector=self._detector,
            frame_source=self._camera,
        )
        self._session.bus.subscribe(Events.PREDICTION, self._on_prediction)
        self._stop_event = None

    def _on_prediction(self, **kwargs):
        logger.debug("Prediction: ID %s (%s) %.0f%%",
                     kwargs.get("label"), kwargs.get("name"),
                     kwargs.get("confidence", 0.0) * 100)

    def _open_camera(self) -> bool:
        if not self._camera.open():
            logger.error("Failed to open camera. Check connection and permissions.")
            return False
        self._camera.start()
        return True

    def _model_path(self) -> str:
        return self._config.get("session.model_path")

    async def collect(self, label_name: str, samples: int, interval_s: float):
        """Record ``samples`` examples of ``label_name`` and save the model."""
        if not self._mode.uses_classifier:
            logger.error("Finger input needs no training; use --input image or landmarks")
            return False
        path = self._model_path()
        if os.path.isfile(path):
            self._session.load_model(path)

        existing = {name: label for label, name in self._session.registry.items()}
        label = existing.get(label_name.strip()) or self._session.allocate_label(label_name)

        if not self._open_camera():
            return False
        try:
            collected = 0
            while collected < samples:
                frame = await self._camera.next_frame()
                try:
                    count = await self._session.train(label, frame)
                except ExtractionError as e:
                    logger.warning("Sample skipped: %s", e)
                    continue
                collected += 1
                logger.info("ID %d (%s): %d examples", label, label_name, count)
                await asyncio.sleep(interval_s)
        finally:
            self._camera.stop()
            if self._detector is not None:
                self._detector.close()
            await self._session.close()

        self._session.save_model(path)
        return True

    async def predict(self):
        """Run the prediction loop until interrupted."""
        if self._mode.uses_classifier:
            path = self._model_path()
            if not os.path.isfile(path):
                logger.error("No trained model at %s. Run --mode collect first.", path)
                return False
            self._session.load_model(path)

        try:
            await self._session.connect()
        except DeviceConnectionError:
            return False

        if not self._open_camera():
            await self._session.disconnect()
            return False

        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._stop_event.set)
            except NotImplementedError:
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(self._stop_event.set))

        # A camera that stops delivering ends the loop on its own
        self._session.bus.subscribe(Events.PREDICTION_STOPPED, lambda **_: self._stop_event.set())

        try:
            await self._session.start_predicting()
            await self._stop_event.wait()
        except LinkError as e:
            logger.error("%s", e)
            return False
        finally:
            await self._session.stop_predicting()
            await self._session.close()
            self._camera.stop()
            if self._detector is not None:
                self._detector.close()
            logger.info("Sent %d payloads (%d dropped)",
                        self._session.transmissions.total_sent,
                        self._session.transmissions.total_dropped)
        return True


def parse_args():
    parser = argparse.ArgumentParser(
        description="KNN Gesture Link - camera classifier to microcontroller bridge"
    )
    parser.add_argument("--mode", choices=["predict", "collect", "ports"], default="predict",
                        help="Operating mode")
    parser.add_argument("--input", choices=[m.value for m in InputMode], default=None,
                        help="Feature source: image embedding, hand landmarks, or finger bends")
    parser.add_argument("--config", type=str, default=None, help="Path to config.yaml")
    parser.add_argument("--model", type=str, default=None, help="Path to the saved KNN model (JSON)")
    parser.add_argument("--label", type=str, default=None, help="Class name to collect")
    parser.add_argument("--samples", type=int, default=30, help="Examples to collect")
    parser.add_argument("--sample-interval", type=float, default=0.1,
                        help="Seconds between collected examples")
    parser.add_argument("--camera", type=int, default=None, help="Camera device ID")
    parser.add_argument("--transport", choices=["serial", "simulated"], default=None,
                        help="Where payloads go")
    parser.add_argument("--port", type=str, default=None, help="Serial port (auto-detect if omitted)")
    parser.add_argument("--protocol", choices=["analog", "digital", "count"], default=None,
                        help="Finger payload encoding")
    parser.add_argument("--threshold", type=float, default=None,
                        help="Confidence threshold, fraction or percent")
    parser.add_argument("--interval", type=float, default=None, help="Keepalive interval (ms)")
    return parser.parse_args()


def apply_overrides(config: Config, args):
    overrides = {
        "session.mode": args.input,
        "session.model_path": args.model,
        "camera.device_id": args.camera,
        "transport.kind": args.transport,
        "transport.port": args.port,
        "transmission.protocol": args.protocol,
        "transmission.confidence_threshold": args.threshold,
        "transmission.send_interval_ms": args.interval,
    }
    for key, value in overrides.items():
        if value is not None:
            config.set(key, value)


def run_ports():
    ports = list_serial_ports()
    if not ports:
        logger.info("No serial ports found")
    for device, description, vid in ports:
        logger.info("%-20s %-40s vid=%s", device, description,
                    f"0x{vid:04X}" if vid is not None else "-")
    return True


def main():
    args = parse_args()

    config = Config()
    config.load(config_path=args.config)
    apply_overrides(config, args)

    log_cfg = config.get_section("logging")
    setup_logging(
        level=log_cfg.get("level", "INFO"),
        log_file=log_cfg.get("file"),
        max_size_mb=log_cfg.get("max_size_mb", 10),
        backup_count=log_cfg.get("backup_count", 3),
    )

    logger.info("=" * 60)
    logger.info("  KNN GESTURE LINK")
    logger.info("  Mode: %s | Input: %s", args.mode, config.get("session.mode"))
    logger.info("=" * 60)

    if args.mode == "ports":
        return 0 if run_ports() else 1

    app = LinkApp(config)
    if args.mode == "collect":
        if not args.label:
            logger.error("--label is required in collect mode")
            return 2
        ok = asyncio.run(app.collect(args.label, args.samples, args.sample_interval))
    else:
        ok = asyncio.run(app.predict())
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
