from .context import TransportContext
from .message_framer import MessageFramer
from .port_manager import PortManager
from .socket import PublisherSocket

__all__ = ["MessageFramer", "PortManager", "PublisherSocket", "TransportContext"]
