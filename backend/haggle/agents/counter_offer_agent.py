"""
Counter-offer agent adapter.

WHAT: Transport negotiation context to an LLM and interpret its decision
WHY: Responders can delegate replies; the engine only needs a typed signal
HOW: Render prompt, call provider, parse JSON decision; provider failures
     surface as AgentTimeoutError so the caller can record one system event
"""

import time
from typing import Literal, Optional, Protocol

from pydantic import BaseModel, Field, ValidationError

from ..core.config import settings
from ..llm.provider import LLMProvider
from ..llm.types import ProviderError
from ..models.negotiation import AgentMetadata, Event
from ..services.listing_lookup import ListingTerms
from ..utils.exceptions import AgentTimeoutError
from ..utils.logger import get_logger
from ..utils.offers import clean_agent_text, parse_agent_reply
from .prompts import PROMPT_ID, render_counter_offer_prompt

logger = get_logger(__name__)

FALLBACK_REPLY = "Thanks for your message. Let me review it and get back to you."


class NegotiationContext(BaseModel):
    """Read-only snapshot of the negotiation handed to the agent."""
    negotiation_id: str
    currency: str
    initial_offer: float
    current_offer: Optional[float] = None
    rounds: int
    max_rounds: int
    events: list[Event] = Field(default_factory=list)


class AgentRequest(BaseModel):
    listing_context: ListingTerms
    negotiation_context: NegotiationContext
    last_user_message: str


class AgentSignal(BaseModel):
    """The agent's decision for one turn."""
    action: Literal["reply", "counter", "accept", "reject"]
    message: str
    amount: Optional[float] = Field(default=None, gt=0, allow_inf_nan=False)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    metadata: AgentMetadata


class CounterOfferAgent(Protocol):
    async def propose(self, request: AgentRequest) -> AgentSignal:
        """Raises AgentTimeoutError when no decision could be obtained."""
        ...


class LLMCounterOfferAgent:
    """Counter-offer agent backed by an LLM provider."""

    def __init__(
        self,
        provider: LLMProvider,
        *,
        temperature: float = 0.2,
        max_tokens: int = 512,
        model: str | None = None
    ):
        self.provider = provider
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.model = model

    async def propose(self, request: AgentRequest) -> AgentSignal:
        """
        Ask the LLM for the responder's next move.

        Unparseable output degrades to a plain reply carrying the cleaned text.

        Raises:
            AgentTimeoutError: provider failed, timed out, is disabled, or
                returned a decision that does not validate
        """
        messages = render_counter_offer_prompt(request)
        started = time.perf_counter()

        try:
            result = await self.provider.generate(
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                stop=None,
                model=self.model
            )
        except ProviderError as e:
            logger.warning(
                f"Agent provider failed for negotiation "
                f"{request.negotiation_context.negotiation_id}: {e}"
            )
            raise AgentTimeoutError(str(e)) from e

        elapsed_ms = (time.perf_counter() - started) * 1000
        max_length = settings.MESSAGE_MAX_LENGTH
        decision = parse_agent_reply(result.text)
        if decision is None:
            decision = {
                "action": "reply",
                "message": clean_agent_text(result.text, max_length),
                "amount": None,
                "confidence": 0.3,
            }

        message = (
            clean_agent_text(decision["message"], max_length)
            or clean_agent_text(result.text, max_length)
            or FALLBACK_REPLY
        )
        tokens = (result.usage or {}).get("total_tokens")

        try:
            signal = AgentSignal(
                action=decision["action"],
                message=message,
                amount=decision["amount"],
                confidence=decision["confidence"],
                metadata=AgentMetadata(
                    model=result.model,
                    prompt_id=PROMPT_ID,
                    processing_time_ms=elapsed_ms,
                    tokens_used=tokens if isinstance(tokens, int) else None,
                    confidence=decision["confidence"],
                ),
            )
        except ValidationError as e:
            logger.warning(
                f"Agent produced an invalid decision for negotiation "
                f"{request.negotiation_context.negotiation_id}: {e.error_count()} errors"
            )
            raise AgentTimeoutError("invalid decision from provider") from e
        logger.info(
            f"Agent proposed {signal.action} for negotiation "
            f"{request.negotiation_context.negotiation_id} (confidence: {signal.confidence:.2f})"
        )
        return signal
