from .errors import RelayError
from .lifecycle import LifecycleSupervisor, RequestState
from .stream import AudioStream

__all__ = ["AudioStream", "LifecycleSupervisor", "RelayError", "RequestState"]
