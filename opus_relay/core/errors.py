class RelayError(Exception):
    """Base class for every terminal relay failure"""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class ResolutionError(RelayError):
    """Metadata or format list unavailable"""

    status_code = 400


class SelectionError(RelayError):
    """No suitable format found"""

    status_code = 422


class TransportError(RelayError):
    """Byte source or process I/O failure"""

    status_code = 502


class DemuxError(RelayError):
    """Malformed or unexpected container data"""

    status_code = 502


class EncodeError(RelayError):
    """Audio encoder failure"""

    status_code = 500


class StreamClosedError(RelayError):
    """Stream was destroyed"""

    status_code = 499
