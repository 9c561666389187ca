"""Domain errors shared by the services, the REST layer and the client."""


class BranchChatError(Exception):
    """Base class for all application errors."""


class UnauthorizedError(BranchChatError):
    """Missing or invalid identity."""


class NotFoundError(BranchChatError):
    """A resource is missing or belongs to another owner."""


class ThreadNotFoundError(NotFoundError):
    def __init__(self, thread_id=None):
        self.thread_id = thread_id
        super().__init__("Thread not found")


class MessageNotFoundError(NotFoundError):
    def __init__(self, message_id=None):
        self.message_id = message_id
        super().__init__("Message not found")


class UpstreamUnavailableError(BranchChatError):
    """The model backend is unreachable or answered with a failure."""


class MalformedUpstreamFrame(BranchChatError):
    """A single stream frame could not be decoded. Skipped, never surfaced."""


class PersistenceFailure(BranchChatError):
    """A fire-and-forget write failed. Logged, never retried."""
