"""Progressive summarization of conversation history."""

from .controller import ConversationSession, SummarizationController
from .errors import BackendFailure, NoActiveConversation, PersistenceFailure, SummarizationError
from .models import (
    Configuration,
    Decision,
    Message,
    SummarizationState,
    SummaryRecord,
    message_key,
)
from .projection import project, summary_message
from .store import InMemoryStateStore, SqliteStateStore, StateStore
from .summarizer import LLMProtocol, Summarizer, build_summary_prompt
from .tokens import estimate_tokens
from .watcher import ConversationWatcher

__all__ = [
    "BackendFailure",
    "Configuration",
    "ConversationSession",
    "ConversationWatcher",
    "Decision",
    "InMemoryStateStore",
    "LLMProtocol",
    "Message",
    "NoActiveConversation",
    "PersistenceFailure",
    "SqliteStateStore",
    "StateStore",
    "SummarizationController",
    "SummarizationError",
    "SummarizationState",
    "Summarizer",
    "SummaryRecord",
    "build_summary_prompt",
    "estimate_tokens",
    "message_key",
    "project",
    "summary_message",
]
