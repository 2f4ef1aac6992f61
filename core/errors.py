"""
Exception taxonomy for the classification-and-transmission core.

None of these are fatal to the prediction loop: per-frame failures are
logged and skipped, transport unavailability degrades to a dropped send.
"""


class LinkError(Exception):
    """Base class for all errors raised by this package."""


class NoLabelsError(LinkError):
    """Prediction requested while the classifier holds no examples."""

    def __init__(self, message="Add training data before starting prediction"):
        super().__init__(message)


class ExtractionError(LinkError):
    """Feature or landmark extraction failed for a single frame."""


class TransportUnavailableError(LinkError):
    """A send was attempted while disconnected or while another send is in flight."""


class DeviceConnectionError(LinkError, ConnectionError):
    """Device discovery or handshake failed; the channel stays disconnected."""
