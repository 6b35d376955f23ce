# batchbot/errors.py


class BatchBotError(Exception):
    """Base class for every error raised by the bot."""


class ConfigError(BatchBotError):
    """Invalid or incomplete session configuration. Raised before any subscription."""


class VenueError(BatchBotError):
    """
    The execution venue refused an order or a balance query failed for good
    (insufficient funds, below minimum, unknown market, exhausted retries).
    """
    def __init__(self, message: str, instrument=None, side=None):
        super().__init__(message)
        self.instrument = instrument
        self.side = side


class TransportNotOpenError(BatchBotError):
    """A frame was sent while the websocket handle is not (yet) open."""


class StreamFatalError(BatchBotError):
    """Reconnection attempts are exhausted. Trading halts until restarted."""
