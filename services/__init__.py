from .threads import ThreadService, ThreadDetail
from .messages import MessageService
from .branching import BranchService, BranchResult, branch_title
from .auth import AuthService
from .relay import StreamRelay, StreamHandle, RelayState
from .upstream import AnthropicUpstream, LangChainUpstream, get_upstream

__all__ = ["ThreadService", "ThreadDetail", "MessageService", "BranchService", "BranchResult",
           "branch_title", "AuthService", "StreamRelay", "StreamHandle", "RelayState",
           "AnthropicUpstream", "LangChainUpstream", "get_upstream"]
