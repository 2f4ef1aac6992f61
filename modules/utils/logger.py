"""
Logging setup plus a bounded history of predictions and sent payloads.
"""

import os
import time
import logging
import logging.handlers
from collections import deque


def setup_logging(level="INFO", log_file=None, max_size_mb=10, backup_count=3):
    """Configure console (and optional rotating file) logging."""
    console_format = "%(asctime)s  %(levelname)-5s  %(message)s"
    file_format = "%(asctime)s [%(levelname)-7s] %(name)-25s | %(message)s"
    date_format = "%H:%M:%S"

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    root_logger.handlers.clear()

    console = logging.StreamHandler()
    console.setLevel(root_logger.level)
    console.setFormatter(logging.Formatter(console_format, datefmt=date_format))
    root_logger.addHandler(console)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count,
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(file_format, datefmt=date_format))
        root_logger.addHandler(file_handler)

    return root_logger


class TransmissionLogger:
    """Records what went out on the link, and why."""

    def __init__(self, history_size=500):
        self.logger = logging.getLogger("transmission")
        self._history = deque(maxlen=history_size)

    def log_payload(self, payload, delivered, label_name=None, confidence=None):
        entry = {
            "timestamp": time.time(),
            "payload": payload,
            "delivered": delivered,
            "label_name": label_name,
            "confidence": confidence,
        }
        self._history.append(entry)
        self.logger.info(
            "Sent: %-16s | Delivered: %-5s | Label: %-12s | Confidence: %s",
            payload,
            delivered,
            label_name or "-",
            f"{confidence * 100:.0f}%" if confidence is not None else "N/A",
        )

    def get_history(self, last_n=None):
        if last_n:
            return list(self._history)[-last_n:]
        return list(self._history)

    @property
    def total_sent(self):
        return sum(1 for e in self._history if e["delivered"])

    @property
    def total_dropped(self):
        return sum(1 for e in self._history if not e["delivered"])
