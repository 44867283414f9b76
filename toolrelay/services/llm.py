"""Turn runner: drives a model through tool-call round trips within a conversation."""

from collections.abc import AsyncIterator
from typing import Any, Protocol

from toolrelay.config import ToolRelayConfig, get_config
from toolrelay.errors import ConversationNotFoundError
from toolrelay.models.conversation import GenerationOptions, Message
from toolrelay.models.llm import AggregatedResponse, ResponseMetadata, ToolDefinition, Usage
from toolrelay.services.aggregator import extract_content
from toolrelay.services.conversation_store import ConversationStore, get_conversation_store
from toolrelay.services.streaming import adapt_stream, chunk_field
from toolrelay.services.tool_calls import ToolCallHandler
from toolrelay.utils.logging import get_logger

logger = get_logger(__name__)

MAX_TURNS_CONTENT = (
    "I apologize, but our conversation has reached the maximum number of turns. Please start a new conversation."
)


class ModelProvider(Protocol):
    """A model backend that can answer a conversation."""

    async def send(
        self, options: GenerationOptions, messages: list[Message], tools: list[ToolDefinition]
    ) -> dict[str, Any]: ...

    def stream(
        self, options: GenerationOptions, messages: list[Message], tools: list[ToolDefinition]
    ) -> AsyncIterator[dict[str, Any]]: ...

    def validate_message_tokens(self, message: str) -> None: ...


class LLMService:
    """High-level service running conversation turns with tool calling."""

    def __init__(
        self,
        store: ConversationStore | None = None,
        tool_calls: ToolCallHandler | None = None,
        provider: ModelProvider | None = None,
        config: ToolRelayConfig | None = None,
    ):
        """Initialize LLM service.

        Args:
            store: Conversation store (defaults to global instance)
            tool_calls: Tool-call handler (built over ``store`` by default)
            provider: Default model provider, used when ``run_turn`` gets none
            config: Runtime configuration (defaults to global instance)
        """
        self.config = config or get_config()
        self.store = store or get_conversation_store()
        self.tool_calls = tool_calls or ToolCallHandler(self.store, config=self.config)
        self.provider = provider

    async def run_turn(
        self,
        conversation_id: str,
        user_message: str,
        provider: ModelProvider | None = None,
        max_turns: int | None = None,
        stream: bool = False,
    ) -> AggregatedResponse:
        """Run one user turn until the model stops requesting tools.

        Args:
            conversation_id: Conversation to extend
            user_message: The user's message
            provider: Model provider (defaults to the service's provider)
            max_turns: Maximum model round trips
            stream: Consume the provider's stream instead of a single response

        Returns:
            The final aggregated response, with usage summed across round trips

        Raises:
            ConversationNotFoundError: If the conversation does not exist
            ValueError: If the message exceeds the provider's token limit, or no provider is set
        """
        provider = provider or self.provider
        if provider is None:
            raise ValueError("No model provider configured")
        max_turns = max_turns or self.config.max_turns

        provider.validate_message_tokens(user_message)
        if not self.store.add_user_message(conversation_id, user_message):
            raise ConversationNotFoundError(conversation_id)

        logger.info(f"Starting turn for conversation {conversation_id}, max_turns: {max_turns}")
        usage = Usage()
        turns = 0

        while turns < max_turns:
            turns += 1
            logger.debug(f"Turn {conversation_id} round trip {turns}/{max_turns}")

            options, history, tools = self._snapshot(conversation_id)
            definitions = [tool.definition() for tool in tools]

            raw: Any = None
            if stream:
                response = await self.tool_calls.process_stream(
                    adapt_stream(provider.stream(options, history, definitions), self.config.chunk_timeout_s),
                    conversation_id,
                )
                model_text = ""
                if response.metadata.response_type in ("content_only", "content_with_tools"):
                    model_text = response.content
            else:
                raw = await provider.send(options, history, definitions)
                response = await self.tool_calls.process_response(raw, conversation_id)
                model_text = extract_content(chunk_field(raw, "content")).strip()

            usage = usage + response.usage
            model = chunk_field(raw, "model") if raw is not None else None
            self.store.add_assistant_response(
                conversation_id, response.model_copy(update={"content": model_text}), model=model or options.model
            )

            if not response.tool_calls:
                logger.info(f"Turn for conversation {conversation_id} completed in {turns} round trips")
                return response.model_copy(update={"usage": usage})

            logger.info(f"Model used {len(response.tool_calls)} tools")
            self.store.add_tool_results(conversation_id, response.tool_results)

        logger.warning(f"Turn for conversation {conversation_id} reached max turns ({max_turns})")
        return AggregatedResponse(
            content=MAX_TURNS_CONTENT,
            usage=usage,
            finished=True,
            conversation_id=conversation_id,
            metadata=ResponseMetadata(response_type="content_only"),
        )

    def _snapshot(self, conversation_id: str) -> tuple[GenerationOptions, list[Message], list[Any]]:
        options = self.store.get_options(conversation_id)
        history = self.store.get_history(conversation_id)
        tools = self.store.get_tools(conversation_id)
        if options is None or history is None or tools is None:
            raise ConversationNotFoundError(conversation_id)
        return options, history, tools


_llm_service: LLMService | None = None


def get_llm_service() -> LLMService:
    """Get or create LLM service instance."""
    global _llm_service
    if _llm_service is None:
        _llm_service = LLMService()
    return _llm_service
