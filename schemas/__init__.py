from .threads import (
    ThreadCreate, ThreadUpdate, ThreadResponse, ThreadSummary, ThreadDetailResponse,
    ChildThreadResponse, Breadcrumb, BranchCreate, BranchResponse,
)
from .messages import MessageCreate, MessageResponse
from .auth import UserCreate, UserResponse, Token
from .chat import ModelInfo

__all__ = ["ThreadCreate", "ThreadUpdate", "ThreadResponse", "ThreadSummary", "ThreadDetailResponse",
           "ChildThreadResponse", "Breadcrumb", "BranchCreate", "BranchResponse",
           "MessageCreate", "MessageResponse",
           "UserCreate", "UserResponse", "Token",
           "ModelInfo"]
