"""Tests for the turn runner."""

from unittest.mock import Mock, patch

import pytest

from toolrelay.errors import ConversationNotFoundError
from toolrelay.models.conversation import GenerationOptions, Role
from toolrelay.services.conversation_store import ConversationStore
from toolrelay.services.llm import MAX_TURNS_CONTENT, LLMService, get_llm_service
from toolrelay.services.tool_calls import ToolCallHandler
from toolrelay.tools.executor import ToolExecutor


class ScriptedProvider:
    """Model provider that replays canned responses and records what it was sent."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.validate_message_tokens = Mock()

    async def send(self, options, messages, tools):
        self.calls.append({"options": options, "messages": messages, "tools": tools})
        return self.responses.pop(0)

    async def stream(self, options, messages, tools):
        self.calls.append({"options": options, "messages": messages, "tools": tools})
        for chunk in self.responses.pop(0):
            yield chunk


def tool_request(call_id, a=2, b=3):
    return {
        "content": "Let me add those.",
        "tool_calls": [{"id": call_id, "name": "add", "arguments": {"a": a, "b": b}}],
        "usage": {"input_tokens": 10, "output_tokens": 5},
        "model": "test-model",
    }


@pytest.fixture
def store():
    return ConversationStore(conversation_ttl_s=3600)


@pytest.fixture
def conversation_id(store, add_tool):
    conversation_id = store.create(GenerationOptions(model="test-model"))
    store.set_tools(conversation_id, [add_tool])
    return conversation_id


@pytest.fixture
def service(store, config):
    return LLMService(store, ToolCallHandler(store, ToolExecutor(config), config), config=config)


class TestRunTurn:
    """Tests for LLMService.run_turn."""

    @pytest.mark.asyncio
    async def test_tool_round_trip(self, service, store, conversation_id):
        """Test a turn where the model calls a tool and then answers."""
        provider = ScriptedProvider(
            [tool_request("c1"), {"content": "The sum is 5.", "usage": {"input_tokens": 20, "output_tokens": 4}}]
        )

        response = await service.run_turn(conversation_id, "What is 2 + 3?", provider=provider)

        assert response.content == "The sum is 5."
        assert response.finished is True
        assert response.usage.total_tokens == 39
        provider.validate_message_tokens.assert_called_once_with("What is 2 + 3?")

        history = store.get_history(conversation_id)
        assert [message.role for message in history] == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]
        assert history[1].content == "Let me add those."
        assert history[1].metadata["tool_calls"][0]["id"] == "c1"
        assert history[2].content == '{"result": 5}'
        assert history[2].metadata["tool_call_id"] == "c1"
        assert store.get_metadata(conversation_id).total_tokens == 39

    @pytest.mark.asyncio
    async def test_provider_sees_tool_results(self, service, conversation_id):
        """Test that the second round trip is sent the tool result."""
        provider = ScriptedProvider([tool_request("c1"), {"content": "Done."}])

        await service.run_turn(conversation_id, "Add please", provider=provider)

        assert len(provider.calls) == 2
        first, second = provider.calls
        assert [tool.name for tool in first["tools"]] == ["add"]
        assert first["options"].model == "test-model"
        assert [message.role for message in second["messages"]] == [Role.USER, Role.ASSISTANT, Role.TOOL]

    @pytest.mark.asyncio
    async def test_plain_answer(self, service, store, conversation_id):
        """Test a turn without tool calls."""
        provider = ScriptedProvider([{"content": "Hello!"}])

        response = await service.run_turn(conversation_id, "Hi", provider=provider)

        assert response.content == "Hello!"
        assert len(store.get_history(conversation_id)) == 2

    @pytest.mark.asyncio
    async def test_max_turns(self, service, store, conversation_id):
        """Test that a model that keeps calling tools is stopped."""
        provider = ScriptedProvider([tool_request("c1"), tool_request("c2")])

        response = await service.run_turn(conversation_id, "Loop", provider=provider, max_turns=2)

        assert response.content == MAX_TURNS_CONTENT
        assert response.finished is True
        assert response.usage.total_tokens == 30
        assert len(provider.calls) == 2
        assert [message.role for message in store.get_history(conversation_id)].count(Role.TOOL) == 2

    @pytest.mark.asyncio
    async def test_streaming(self, service, store, conversation_id):
        """Test a turn consumed from the provider's stream."""
        provider = ScriptedProvider(
            [
                [
                    {"content": "Adding."},
                    {"tool_calls": [{"id": "c1", "name": "add", "arguments": '{"a": 1, "b": 1}'}]},
                    {"finish_reason": "tool_use", "usage": {"output_tokens": 5}},
                ],
                [{"content": "It is 2."}, {"finish_reason": "end_turn", "usage": {"output_tokens": 3}}],
            ]
        )

        response = await service.run_turn(conversation_id, "1 + 1?", provider=provider, stream=True)

        assert response.content == "It is 2."
        assert response.usage.completion_tokens == 8
        history = store.get_history(conversation_id)
        assert history[1].content == "Adding."
        assert history[2].content == '{"result": 2}'

    @pytest.mark.asyncio
    async def test_message_too_long(self, service, store, conversation_id):
        """Test that token validation failures propagate before anything is recorded."""
        provider = ScriptedProvider([])
        provider.validate_message_tokens.side_effect = ValueError("Message exceeds token limit")

        with pytest.raises(ValueError, match="Message exceeds token limit"):
            await service.run_turn(conversation_id, "x" * 10_000, provider=provider)

        assert store.get_history(conversation_id) == []
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, service):
        """Test that an unknown conversation raises."""
        with pytest.raises(ConversationNotFoundError):
            await service.run_turn("unknown-id", "Hi", provider=ScriptedProvider([]))

    @pytest.mark.asyncio
    async def test_default_provider(self, store, config, conversation_id):
        """Test that the service's own provider is used when none is given."""
        provider = ScriptedProvider([{"content": "Hi!"}])
        service = LLMService(store, provider=provider, config=config)

        response = await service.run_turn(conversation_id, "Hello")

        assert response.content == "Hi!"

    @pytest.mark.asyncio
    async def test_no_provider(self, service, conversation_id):
        """Test that a turn without any provider is rejected."""
        with pytest.raises(ValueError, match="No model provider configured"):
            await service.run_turn(conversation_id, "Hello")


def test_get_llm_service_singleton():
    """Test that the global service is created once."""
    with patch("toolrelay.services.llm._llm_service", None):
        assert get_llm_service() is get_llm_service()
