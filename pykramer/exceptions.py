class KramerError(Exception):
    """Base class for errors raised by pykramer."""


class ConfigurationError(KramerError):
    """An instruction or setting cannot be expressed under the active configuration.

    This is the only error surfaced synchronously to a caller issuing a
    command; the command is never queued.
    """
