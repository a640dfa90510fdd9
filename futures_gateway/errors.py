class FrameRejectedError(ValueError):
    """Raised when a parsed frame cannot be mapped onto an InstrumentQuote."""


class SpotPriceUnavailableError(RuntimeError):
    pass


class StreamNotConfiguredError(RuntimeError):
    pass
