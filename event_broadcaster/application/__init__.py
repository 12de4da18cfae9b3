from .broadcaster import Broadcaster, BroadcastState, ReconfigureRequest
from .control_executor import ControlExecutor

__all__ = ["BroadcastState", "Broadcaster", "ControlExecutor", "ReconfigureRequest"]
