from .api import ChatClient
from .session import ConversationSession, SessionMessage

__all__ = ["ChatClient", "ConversationSession", "SessionMessage"]
