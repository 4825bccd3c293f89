"""Exceptions raised by the summarization package."""


class SummarizationError(RuntimeError):
    """Base class for summarization failures. None of them are fatal to the host."""


class BackendFailure(SummarizationError):
    """The generation backend failed, timed out or returned nothing usable."""


class NoActiveConversation(SummarizationError):
    """An operation needed a conversation but none is loaded."""


class PersistenceFailure(SummarizationError):
    """The store could not load or save state."""

    def __init__(self, conversation_id: str | None, message: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(message)
