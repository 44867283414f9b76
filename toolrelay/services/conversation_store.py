"""In-memory conversation storage safe for concurrent use."""

import threading
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any, TypeVar

from cuid2 import cuid_wrapper

from toolrelay.config import get_config
from toolrelay.models.conversation import Conversation, ConversationMetadata, GenerationOptions, Message
from toolrelay.models.llm import AggregatedResponse, ToolResult
from toolrelay.tools.base import ToolDescriptor
from toolrelay.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

cuid = cuid_wrapper()


class ConversationStore:
    """Registry of conversations keyed by id.

    Unknown or ended ids give ``None``/``False`` rather than raising. A short
    registry lock guards the id map and each conversation carries its own
    lock, so operations on different ids never wait on each other while
    operations on the same id are applied one at a time. Values handed back
    are copies; the store is the only owner of conversation state.
    """

    def __init__(self, conversation_ttl_s: float | None = None):
        """Initialize the store.

        Args:
            conversation_ttl_s: Seconds of inactivity before a conversation expires
                (defaults to ``ToolRelayConfig.conversation_ttl_s``)
        """
        if conversation_ttl_s is None:
            conversation_ttl_s = get_config().conversation_ttl_s
        self.conversation_ttl = timedelta(seconds=conversation_ttl_s)
        self._conversations: dict[str, Conversation] = {}
        self._lock = threading.Lock()

    def create(self, options: GenerationOptions | None = None) -> str:
        """Start a new conversation and return its id."""
        conversation_id = self._generate_id()
        conversation = Conversation(id=conversation_id, options=options or GenerationOptions())
        with self._lock:
            self._conversations[conversation_id] = conversation
        logger.info(f"Created conversation {conversation_id}")
        return conversation_id

    def end(self, conversation_id: str) -> bool:
        """Remove a conversation.

        Returns:
            True if it was removed, False if not found
        """
        with self._lock:
            conversation = self._conversations.pop(conversation_id, None)
        if conversation is None:
            return False

        with conversation.lock:
            conversation.ended = True
        logger.info(f"Ended conversation {conversation_id} after {conversation.message_count} messages")
        return True

    def exists(self, conversation_id: str) -> bool:
        return self._get(conversation_id) is not None

    def count(self) -> int:
        """Get current number of live conversations."""
        return len(self.list())

    def append_message(self, conversation_id: str, message: Message) -> bool:
        """Append a message to the history.

        A message stamped earlier than the last one in the history is
        restamped with the last timestamp, so history order and time order agree.
        """
        return self._mutate(conversation_id, lambda conversation: self._append(conversation, message))

    def add_user_message(self, conversation_id: str, content: str, **metadata: Any) -> bool:
        return self.append_message(conversation_id, Message.user(content, **metadata))

    def add_assistant_response(
        self, conversation_id: str, response: AggregatedResponse | str, model: str | None = None
    ) -> bool:
        """Record the model's reply, including its tool calls and token usage."""
        if isinstance(response, str):
            message = Message.assistant(response, model=model)
            tokens = 0
        else:
            message = Message.assistant(
                response.content,
                tool_calls=[call.model_dump() for call in response.tool_calls],
                usage=response.usage.model_dump(),
                model=model,
            )
            tokens = response.usage.total_tokens

        def record(conversation: Conversation) -> None:
            self._append(conversation, message)
            conversation.total_tokens += tokens

        return self._mutate(conversation_id, record)

    def add_tool_results(self, conversation_id: str, results: Iterable[ToolResult]) -> bool:
        """Append one tool message per result, all under a single lock acquisition."""
        messages = [Message.from_tool_result(result) for result in results]

        def record(conversation: Conversation) -> None:
            for message in messages:
                self._append(conversation, message)

        return self._mutate(conversation_id, record)

    def set_tools(self, conversation_id: str, descriptors: Iterable[ToolDescriptor]) -> bool:
        """Replace the conversation's tool set.

        Raises:
            ValueError: If two descriptors share a name
        """
        if not self.exists(conversation_id):
            return False

        tools = list(descriptors)
        names = [tool.name for tool in tools]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate tool names: {', '.join(duplicates)}")

        def replace(conversation: Conversation) -> None:
            conversation.tools = tools

        return self._mutate(conversation_id, replace)

    def get_tools(self, conversation_id: str) -> list[ToolDescriptor] | None:
        return self._read(conversation_id, lambda conversation: list(conversation.tools))

    def find_tool(self, conversation_id: str, name: str) -> ToolDescriptor | None:
        """Look up a conversation's tool by name."""

        def find(conversation: Conversation) -> ToolDescriptor | None:
            return next((tool for tool in conversation.tools if tool.name == name), None)

        return self._read(conversation_id, find)

    def set_options(self, conversation_id: str, options: GenerationOptions) -> bool:
        def replace(conversation: Conversation) -> None:
            conversation.options = options.model_copy(deep=True)

        return self._mutate(conversation_id, replace)

    def get_options(self, conversation_id: str) -> GenerationOptions | None:
        return self._read(conversation_id, lambda conversation: conversation.options.model_copy(deep=True))

    def get_history(self, conversation_id: str) -> list[Message] | None:
        return self._read(
            conversation_id, lambda conversation: [message.model_copy(deep=True) for message in conversation.history]
        )

    def get_metadata(self, conversation_id: str) -> ConversationMetadata | None:
        return self._read(conversation_id, lambda conversation: conversation.metadata())

    def cleanup_expired(self) -> int:
        """Remove conversations idle for longer than the TTL.

        Returns:
            Number of conversations removed
        """
        current_time = datetime.now(UTC)
        with self._lock:
            expired = [
                conversation_id
                for conversation_id, conversation in self._conversations.items()
                if current_time - conversation.last_activity > self.conversation_ttl
            ]
            for conversation_id in expired:
                del self._conversations[conversation_id]

        if expired:
            logger.info(f"Expired {len(expired)} idle conversations")
        return len(expired)

    def _generate_id(self) -> str:
        """Generate a new CUID-based conversation ID."""
        return cuid()

    def _get(self, conversation_id: str) -> Conversation | None:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                return None
            if datetime.now(UTC) - conversation.last_activity > self.conversation_ttl:
                del self._conversations[conversation_id]
                logger.info(f"Conversation {conversation_id} expired")
                return None
            return conversation

    def _mutate(self, conversation_id: str, apply: Callable[[Conversation], None]) -> bool:
        conversation = self._get(conversation_id)
        if conversation is None:
            return False

        with conversation.lock:
            if conversation.ended:
                return False
            apply(conversation)
            conversation.update_activity()
        return True

    def _read(self, conversation_id: str, read: Callable[[Conversation], T]) -> T | None:
        conversation = self._get(conversation_id)
        if conversation is None:
            return None

        with conversation.lock:
            if conversation.ended:
                return None
            return read(conversation)

    @staticmethod
    def _append(conversation: Conversation, message: Message) -> None:
        if conversation.history and message.timestamp < conversation.history[-1].timestamp:
            message = message.model_copy(update={"timestamp": conversation.history[-1].timestamp})
        conversation.history.append(message)
        conversation.message_count += 1

    # Keep last: shadows the builtin for annotations in the class body
    def list(self) -> list[str]:
        """Ids of all live conversations."""
        self.cleanup_expired()
        with self._lock:
            return list(self._conversations)


_conversation_store: ConversationStore | None = None


def get_conversation_store() -> ConversationStore:
    """Get or create the process-wide conversation store."""
    global _conversation_store
    if _conversation_store is None:
        _conversation_store = ConversationStore()
    return _conversation_store
