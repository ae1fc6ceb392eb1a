"""Exception taxonomy shared by the queue, the transports and the stores."""


class RerideError(Exception):
    pass


class TransientError(RerideError):
    """A failure worth retrying: network drop, timeout, generic 5xx."""

    def __init__(self, message: str = "transient failure", status: int | None = None):
        super().__init__(message)
        self.status = status


class RequestTimeoutError(TransientError):
    def __init__(self, timeout_s: float):
        super().__init__(f"request timed out after {timeout_s:.2f}s")
        self.timeout_s = timeout_s


class QueueClosedError(RerideError):
    pass


class QueueClearedError(RerideError):
    pass


class TransportError(RerideError):
    pass


class StoreError(RerideError):
    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class ConversationNotFoundError(StoreError):
    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}", status=404)
        self.conversation_id = conversation_id


class ActionCancelledError(RerideError):
    """The queued action was cancelled from inside (for example an inner task it awaited)."""

    def __init__(self, task_id: str):
        super().__init__(f"request {task_id} was cancelled inside its action")
        self.task_id = task_id
