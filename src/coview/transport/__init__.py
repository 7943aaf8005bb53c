"""Phoenix channel transport: socket, channels and pushes."""

from .channel import Channel, ChannelError, ChannelState
from .push import Push, Reply
from .rejoin import Rejoiner
from .serializer import Message
from .socket import Socket, SocketState, default_reconnect_after

__all__ = [
    "Channel",
    "ChannelError",
    "ChannelState",
    "Message",
    "Push",
    "Rejoiner",
    "Reply",
    "Socket",
    "SocketState",
    "default_reconnect_after",
]
