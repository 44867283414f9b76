"""Anthropic model provider client with rate limiting and error handling."""

import asyncio
import json
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal, TypeVar

import tiktoken
from anthropic import APIConnectionError, APIStatusError, AsyncAnthropic
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter
from pydantic import BaseModel

from toolrelay.clients.credentials import CredentialResolver
from toolrelay.models.conversation import GenerationOptions, Message, Role
from toolrelay.models.llm import ToolDefinition
from toolrelay.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CacheControl(BaseModel):
    """Cache control configuration for prompt caching."""

    type: Literal["ephemeral"] = "ephemeral"
    ttl: Literal["5m", "1h"] = "5m"


class AnthropicMessage(BaseModel):
    """Message format for Anthropic API."""

    role: Literal["user", "assistant"]
    content: list[dict[str, Any]]


class AnthropicTool(BaseModel):
    """Tool definition for Anthropic API."""

    name: str
    description: str
    input_schema: dict[str, Any]
    cache_control: CacheControl | None = None


@dataclass
class AnthropicConfig:
    """Configuration for Anthropic API client."""

    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 1000
    temperature: float = 0.1
    max_retries: int = 3
    retry_delay: float = 1.0
    system_prompt: str = ""

    # Token limits for validation and truncation
    max_message_tokens: int = 2000  # Maximum tokens per individual message
    max_conversation_tokens: int = 200000
    token_headroom: int = 2000  # Reserve tokens for response

    requests_per_minute: int = 50
    tokens_per_minute: int = 40_000


class AnthropicRateLimiter:
    """Moving-window rate limiter for requests and tokens."""

    def __init__(self, requests_per_minute: int = 50, tokens_per_minute: int = 40_000):
        """Initialize rate limiter.

        Args:
            requests_per_minute: Maximum requests per minute
            tokens_per_minute: Maximum tokens per minute
        """
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)

        self.request_limit = parse(f"{requests_per_minute}/minute")
        self.token_limit = parse(f"{tokens_per_minute}/minute")

    async def check_rate_limit(self, estimated_tokens: int, identifier: str = "anthropic") -> None:
        """Wait until the request fits within the request and token limits."""
        logger.debug(f"Checking rate limit for {estimated_tokens} tokens, identifier: {identifier}")

        if not self.limiter.hit(self.request_limit, identifier):
            await self._wait_for_window(self.request_limit, identifier, "Request")

        token_identifier = f"{identifier}_tokens"
        if not self.limiter.hit(self.token_limit, token_identifier, cost=max(1, estimated_tokens)):
            await self._wait_for_window(self.token_limit, token_identifier, "Token")

    async def _wait_for_window(self, limit: Any, identifier: str, label: str) -> None:
        window_stats = self.limiter.get_window_stats(limit, identifier)
        if window_stats:
            wait_time = max(0.0, window_stats.reset_time - time.time())
            if wait_time > 0:
                logger.warning(f"{label} rate limit exceeded, waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)


class AnthropicClient:
    """Model provider backed by the Anthropic Messages API.

    ``send`` returns a raw response dict and ``stream`` yields raw chunk dicts,
    both in the shape the response aggregator reads: ``content``,
    ``tool_calls``, ``usage`` and ``finish_reason``/``stop_reason``.
    """

    provider_id = "anthropic"

    def __init__(
        self,
        api_key: str | None = None,
        config: AnthropicConfig | None = None,
        resolver: CredentialResolver | None = None,
        caller: str | None = None,
    ):
        """Initialize Anthropic client.

        Args:
            api_key: Explicit API key, takes precedence over resolved credentials
            config: Client configuration
            resolver: Credential resolver (defaults to one reading the environment)
            caller: Caller identity for per-caller key overrides

        Raises:
            CredentialError: If no API key can be resolved
        """
        self.config = config or AnthropicConfig()

        overrides = {"api_key": api_key} if api_key else None
        credentials = (resolver or CredentialResolver()).resolve(self.provider_id, overrides, caller)
        self.api_key = credentials.api_key

        # Retries are handled by _request_with_retries
        self.client = AsyncAnthropic(api_key=self.api_key, max_retries=0)
        self.rate_limiter = AnthropicRateLimiter(self.config.requests_per_minute, self.config.tokens_per_minute)

        self.tokenizer: tiktoken.Encoding | None
        try:
            # Close approximation for Claude
            self.tokenizer = tiktoken.encoding_for_model("gpt-4")
        except Exception as e:
            logger.warning(f"Tokenizer unavailable, estimating tokens from length: {e}")
            self.tokenizer = None

    async def send(
        self, options: GenerationOptions, messages: list[Message], tools: list[ToolDefinition]
    ) -> dict[str, Any]:
        """Request a complete response."""
        params = await self._prepare_request(options, messages, tools)

        logger.debug(f"Making Anthropic API call with model: {params['model']}")
        response = await self._request_with_retries(lambda: self.client.messages.create(**params))

        logger.debug(
            f"Response received - Stop reason: {response.stop_reason}, Content blocks: {len(response.content)}"
        )
        return self._convert_response(response)

    async def stream(
        self, options: GenerationOptions, messages: list[Message], tools: list[ToolDefinition]
    ) -> AsyncIterator[dict[str, Any]]:
        """Request a streamed response, yielding chunk dicts."""
        params = await self._prepare_request(options, messages, tools)

        logger.debug(f"Opening Anthropic stream with model: {params['model']}")
        events = await self._request_with_retries(lambda: self.client.messages.create(**params, stream=True))

        pending_tools: dict[int, dict[str, Any]] = {}
        async with events:
            async for event in events:
                chunk = self._convert_event(event, pending_tools)
                if chunk is not None:
                    yield chunk

    def convert_history(self, messages: list[Message]) -> list[AnthropicMessage]:
        """Convert conversation messages to Anthropic's alternating user/assistant format.

        Tool messages become ``tool_result`` blocks in a user turn; consecutive
        messages with the same role are merged into one turn.
        """
        converted: list[AnthropicMessage] = []
        for message in messages:
            role, blocks = self._message_blocks(message)
            if not blocks:
                continue
            if converted and converted[-1].role == role:
                converted[-1] = AnthropicMessage(role=role, content=[*converted[-1].content, *blocks])
            else:
                converted.append(AnthropicMessage(role=role, content=blocks))
        return converted

    async def _prepare_request(
        self, options: GenerationOptions, messages: list[Message], tools: list[ToolDefinition]
    ) -> dict[str, Any]:
        system_prompt = options.system_prompt or self.config.system_prompt
        anthropic_tools = self._convert_tools(tools)
        truncated_messages = self.truncate_conversation(self.convert_history(messages), system_prompt, anthropic_tools)

        # Estimate tokens for rate limiting
        estimated_tokens = self._estimate_tokens(truncated_messages, system_prompt)
        logger.debug(f"Estimated tokens: {estimated_tokens}")
        await self.rate_limiter.check_rate_limit(estimated_tokens)

        params: dict[str, Any] = {
            "model": options.model or self.config.model,
            "max_tokens": options.max_tokens or self.config.max_tokens,
            "temperature": options.temperature if options.temperature is not None else self.config.temperature,
            "messages": [msg.model_dump() for msg in truncated_messages],
        }
        if system_prompt:
            params["system"] = system_prompt
        if options.top_p is not None:
            params["top_p"] = options.top_p
        if options.stop:
            params["stop_sequences"] = options.stop
        if anthropic_tools:
            params["tools"] = [tool.model_dump(exclude_none=True) for tool in anthropic_tools]
        params.update(options.extra)

        logger.debug(f"Creating message with {len(truncated_messages)} messages, {len(anthropic_tools)} tools")
        return params

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[AnthropicTool]:
        anthropic_tools = []
        for i, tool in enumerate(tools):
            # Cache control on the last tool caches all tool definitions
            cache_control = CacheControl(type="ephemeral", ttl="5m") if i == len(tools) - 1 else None
            anthropic_tools.append(
                AnthropicTool(
                    name=tool.name,
                    description=tool.description,
                    input_schema=tool.input_schema,
                    cache_control=cache_control,
                )
            )
        return anthropic_tools

    async def _request_with_retries(self, call: Callable[[], Awaitable[T]]) -> T:
        """Execute Anthropic API request with retry logic."""
        for attempt in range(self.config.max_retries):
            last_attempt = attempt >= self.config.max_retries - 1
            try:
                return await call()

            except APIStatusError as e:
                if e.status_code == 429:  # Rate limit exceeded
                    retry_after = int(e.response.headers.get("retry-after", 60))
                    if retry_after < 120 and not last_attempt:
                        logger.warning(f"Anthropic rate limited, retrying in {retry_after}s")
                        await asyncio.sleep(retry_after)
                        continue

                elif e.status_code >= 500 and not last_attempt:
                    # Server error, retry with exponential backoff
                    await asyncio.sleep(self.config.retry_delay * (2**attempt))
                    continue

                # Re-raise if not retryable or max retries reached
                raise

            except APIConnectionError:
                if not last_attempt:
                    await asyncio.sleep(self.config.retry_delay * (2**attempt))
                    continue
                raise

        raise RuntimeError(f"Failed to complete request after {self.config.max_retries} attempts")

    def _convert_response(self, response: Any) -> dict[str, Any]:
        content: list[dict[str, Any]] = []
        tool_calls: list[dict[str, Any]] = []
        for block in response.content:
            block_dict = block.model_dump() if hasattr(block, "model_dump") else dict(block)
            match block_dict.get("type"):
                case "text":
                    content.append({"type": "text", "text": block_dict.get("text", "")})
                case "tool_use":
                    tool_calls.append(
                        {"id": block_dict["id"], "name": block_dict["name"], "arguments": block_dict.get("input") or {}}
                    )
                case other:
                    logger.warning(f"Unknown content block type: {other}")

        usage = {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
        if response.usage:
            usage = {
                "prompt_tokens": response.usage.input_tokens,
                "completion_tokens": response.usage.output_tokens,
                "total_tokens": response.usage.input_tokens + response.usage.output_tokens,
            }

        return {
            "content": content,
            "tool_calls": tool_calls,
            "usage": usage,
            "stop_reason": response.stop_reason,
            "model": response.model,
        }

    def _convert_event(self, event: Any, pending_tools: dict[int, dict[str, Any]]) -> dict[str, Any] | None:
        """Map one streaming event to a chunk; partial tool input is buffered until its block ends."""
        match event.type:
            case "message_start":
                input_tokens = event.message.usage.input_tokens if event.message.usage else 0
                return {
                    "model": event.message.model,
                    "usage": {"prompt_tokens": input_tokens, "completion_tokens": 0, "total_tokens": input_tokens},
                }
            case "content_block_start":
                block = event.content_block
                if block.type == "tool_use":
                    pending_tools[event.index] = {"id": block.id, "name": block.name, "input_json": []}
            case "content_block_delta":
                delta = event.delta
                if delta.type == "text_delta":
                    return {"content": delta.text}
                if delta.type == "input_json_delta" and event.index in pending_tools:
                    pending_tools[event.index]["input_json"].append(delta.partial_json)
            case "content_block_stop":
                tool = pending_tools.pop(event.index, None)
                if tool is not None:
                    arguments = "".join(tool["input_json"]) or "{}"
                    return {"tool_calls": [{"id": tool["id"], "name": tool["name"], "arguments": arguments}]}
            case "message_delta":
                output_tokens = event.usage.output_tokens if event.usage else 0
                return {
                    "finish_reason": event.delta.stop_reason,
                    "usage": {"prompt_tokens": 0, "completion_tokens": output_tokens, "total_tokens": output_tokens},
                }
        return None

    @staticmethod
    def _message_blocks(message: Message) -> tuple[Literal["user", "assistant"], list[dict[str, Any]]]:
        match message.role:
            case Role.TOOL:
                return "user", [
                    {
                        "type": "tool_result",
                        "tool_use_id": message.metadata["tool_call_id"],
                        "content": message.content,
                        "is_error": bool(message.metadata.get("error", False)),
                    }
                ]
            case Role.ASSISTANT:
                blocks: list[dict[str, Any]] = []
                if message.content:
                    blocks.append({"type": "text", "text": message.content})
                for call in message.metadata.get("tool_calls") or []:
                    blocks.append(
                        {"type": "tool_use", "id": call["id"], "name": call["name"], "input": call.get("arguments", {})}
                    )
                return "assistant", blocks
        return "user", [{"type": "text", "text": message.content}] if message.content else []

    def _estimate_tokens(self, messages: list[AnthropicMessage], system_prompt: str) -> int:
        """Estimate token count for rate limiting.

        Args:
            messages: Conversation messages
            system_prompt: System prompt

        Returns:
            Estimated token count
        """
        text_content = system_prompt + "".join(_message_text(message) for message in messages)
        return self.estimate_message_tokens(text_content)

    def estimate_message_tokens(self, message: str) -> int:
        """Estimate token count for a single message.

        Args:
            message: Message content

        Returns:
            Estimated token count
        """
        if self.tokenizer is None:
            # Roughly 4 characters per token
            return len(message) // 4
        return len(self.tokenizer.encode(message))

    def validate_message_tokens(self, message: str) -> None:
        """Validate that a message doesn't exceed token limits.

        Args:
            message: Message content

        Raises:
            ValueError: If message exceeds token limit
        """
        token_count = self.estimate_message_tokens(message)
        if token_count > self.config.max_message_tokens:
            raise ValueError(
                f"Message exceeds token limit: {token_count} tokens > {self.config.max_message_tokens} limit"
            )

    def truncate_conversation(
        self, messages: list[AnthropicMessage], system_prompt: str, tools: list[AnthropicTool] | None = None
    ) -> list[AnthropicMessage]:
        """Truncate conversation from the beginning to fit within token limits.

        The kept history always opens with a plain user turn.

        Args:
            messages: Conversation messages
            system_prompt: System prompt
            tools: Available tools

        Returns:
            Truncated message list that fits within limits
        """
        if not messages:
            return messages

        available_tokens = self.config.max_conversation_tokens - self.config.token_headroom

        system_tokens = self.estimate_message_tokens(system_prompt)

        tool_tokens = 0
        if tools:
            tool_content = "".join(tool.name + tool.description + str(tool.input_schema) for tool in tools)
            tool_tokens = self.estimate_message_tokens(tool_content)

        available_tokens -= system_tokens + tool_tokens

        truncated_messages: list[AnthropicMessage] = []
        current_tokens = 0

        for message in reversed(messages):
            message_tokens = self.estimate_message_tokens(_message_text(message))
            if current_tokens + message_tokens > available_tokens:
                break
            truncated_messages.insert(0, message)
            current_tokens += message_tokens

        while truncated_messages and not _can_open_history(truncated_messages[0]):
            truncated_messages.pop(0)

        if len(truncated_messages) < len(messages):
            logger.warning(
                f"Truncated conversation from {len(messages)} to {len(truncated_messages)} messages "
                f"to fit within {available_tokens} token limit"
            )

        return truncated_messages


def _message_text(message: AnthropicMessage) -> str:
    parts = []
    for block in message.content:
        match block.get("type"):
            case "text":
                parts.append(block.get("text", ""))
            case "tool_result":
                parts.append(str(block.get("content", "")))
            case "tool_use":
                parts.append(json.dumps(block.get("input", {})))
    return "".join(parts)


def _can_open_history(message: AnthropicMessage) -> bool:
    return message.role == "user" and not any(block.get("type") == "tool_result" for block in message.content)


_anthropic_client: AnthropicClient | None = None


def get_anthropic_client() -> AnthropicClient:
    """Get or create Anthropic client instance."""
    global _anthropic_client
    if _anthropic_client is None:
        _anthropic_client = AnthropicClient()
    return _anthropic_client
