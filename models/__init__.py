from .threads import Thread, Base
from .messages import Message
from .users import User

__all__ = ["Thread", "Message", "User", "Base"]
