"""Customer live-chat session client and in-memory support desk."""

from .api import ChatApi, ChatApiError, StartResult
from .channel import ChannelClosed, ChatChannel
from .client import LiveChatClient
from .config import ChatConfig, DeskConfig
from .identity import CustomerIdentity, IdentityNotReady, load_identity
from .models import Message, Sender
from .session import ChatState, ConnectionState, Notice, Phase, transition

__all__ = [
    "ChatApi",
    "ChatApiError",
    "StartResult",
    "ChannelClosed",
    "ChatChannel",
    "LiveChatClient",
    "ChatConfig",
    "DeskConfig",
    "CustomerIdentity",
    "IdentityNotReady",
    "load_identity",
    "Message",
    "Sender",
    "ChatState",
    "ConnectionState",
    "Notice",
    "Phase",
    "transition",
]
