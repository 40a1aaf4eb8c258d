"""
Unit tests for the counter-offer agent.

WHAT: Test signal construction from LLM output and provider failures
WHY: The manager trusts the signal; bad LLM output must degrade safely
HOW: LLMCounterOfferAgent over the scripted MockLLMProvider
"""

import pytest

from haggle.agents.counter_offer_agent import (
    FALLBACK_REPLY,
    AgentRequest,
    LLMCounterOfferAgent,
    NegotiationContext,
)
from haggle.agents.prompts import PROMPT_ID
from haggle.core.config import settings
from haggle.utils.exceptions import AgentTimeoutError
from tests.fixtures.mock_llm import MockLLMProvider
from tests.fixtures.negotiations import make_listing


@pytest.fixture
def request_context():
    return AgentRequest(
        listing_context=make_listing(),
        negotiation_context=NegotiationContext(
            negotiation_id="n-1",
            currency="USD",
            initial_offer=100.0,
            current_offer=100.0,
            rounds=0,
            max_rounds=10,
        ),
        last_user_message="Would you take 100?",
    )


@pytest.mark.unit
@pytest.mark.agent
class TestLLMCounterOfferAgent:
    """Test the LLM-backed agent."""

    @pytest.mark.asyncio
    async def test_counter_signal(self, request_context):
        provider = MockLLMProvider(responses=[
            '```json\n{"action": "counter", "message": "I can do 130.", "amount": 130, "confidence": 0.8}\n```'
        ])
        agent = LLMCounterOfferAgent(provider, temperature=0.1, max_tokens=256, model="test-model")

        signal = await agent.propose(request_context)

        assert signal.action == "counter"
        assert signal.amount == 130.0
        assert signal.message == "I can do 130."
        assert signal.confidence == 0.8
        assert signal.metadata.model == "mock-model"
        assert signal.metadata.prompt_id == PROMPT_ID
        assert signal.metadata.tokens_used == 15
        assert signal.metadata.confidence == 0.8
        assert signal.metadata.processing_time_ms >= 0

        call = provider.calls[0]
        assert call["temperature"] == 0.1
        assert call["max_tokens"] == 256
        assert call["model"] == "test-model"
        assert call["messages"][0]["role"] == "system"

    @pytest.mark.asyncio
    async def test_unparseable_output_becomes_reply(self, request_context):
        provider = MockLLMProvider(responses=["<think>hmm</think>Happy to talk, what's your best price?"])
        signal = await LLMCounterOfferAgent(provider).propose(request_context)

        assert signal.action == "reply"
        assert signal.amount is None
        assert signal.confidence == 0.3
        assert signal.message == "Happy to talk, what's your best price?"

    @pytest.mark.asyncio
    async def test_empty_output_uses_fallback_reply(self, request_context):
        provider = MockLLMProvider(responses=["<think>only thoughts</think>"])
        signal = await LLMCounterOfferAgent(provider).propose(request_context)

        assert signal.action == "reply"
        assert signal.message == FALLBACK_REPLY

    @pytest.mark.asyncio
    async def test_accept_without_message_uses_cleaned_text(self, request_context):
        provider = MockLLMProvider(responses=['Deal {"action": "accept"}'])
        signal = await LLMCounterOfferAgent(provider).propose(request_context)

        assert signal.action == "accept"
        assert signal.message == 'Deal {"action": "accept"}'

    @pytest.mark.asyncio
    async def test_provider_error_becomes_agent_timeout(self, request_context):
        provider = MockLLMProvider(should_fail=True)

        with pytest.raises(AgentTimeoutError, match="Mock provider error"):
            await LLMCounterOfferAgent(provider).propose(request_context)

    @pytest.mark.asyncio
    async def test_long_message_truncated_to_ledger_limit(self, request_context):
        provider = MockLLMProvider(responses=['{"action": "reply", "message": "' + "x" * 1500 + '"}'])
        signal = await LLMCounterOfferAgent(provider).propose(request_context)

        assert signal.action == "reply"
        assert len(signal.message) == settings.MESSAGE_MAX_LENGTH
        assert signal.message.endswith("...")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["NaN", "Infinity", "-Infinity"])
    async def test_non_finite_counter_is_not_a_counter(self, request_context, amount):
        provider = MockLLMProvider(responses=[
            '{"action": "counter", "message": "deal", "amount": ' + amount + '}'
        ])
        signal = await LLMCounterOfferAgent(provider).propose(request_context)

        assert signal.action == "reply"
        assert signal.amount is None

    @pytest.mark.asyncio
    async def test_invalid_decision_becomes_agent_timeout(self, request_context, monkeypatch):
        monkeypatch.setattr(
            "haggle.agents.counter_offer_agent.parse_agent_reply",
            lambda text: {"action": "counter", "message": "deal", "amount": -5.0, "confidence": 0.5},
        )
        provider = MockLLMProvider(responses=["anything"])

        with pytest.raises(AgentTimeoutError, match="invalid decision"):
            await LLMCounterOfferAgent(provider).propose(request_context)
