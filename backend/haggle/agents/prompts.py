"""
Prompt templates for the counter-offer agent.

WHAT: System prompt and rendering helper for the responder's agent
WHY: Consistent tone, price bounds and output format across negotiations
HOW: Template strings with context injection, return ChatMessage lists
"""

from typing import List, TYPE_CHECKING

from ..core.config import settings
from ..llm.types import ChatMessage
from ..utils.history_truncation import truncate_event_history
from ..utils.offers import format_price

if TYPE_CHECKING:
    from .counter_offer_agent import AgentRequest

PROMPT_ID = "counter-offer-v1"


def render_counter_offer_prompt(request: "AgentRequest") -> List[ChatMessage]:
    """
    Render the agent prompt for one turn.

    WHAT: Seller-side persona with listing terms and negotiation state
    WHY: The agent needs price bounds, round budget and recent history
    HOW: System message with rules and JSON format, user message with context
    """
    listing = request.listing_context
    negotiation = request.negotiation_context
    currency = listing.currency

    floor_line = ""
    if listing.min_price is not None:
        floor_line = f"\n- Lowest price you may agree to: {format_price(listing.min_price, currency)}"

    system_prompt = f"""You are negotiating on behalf of the seller of "{listing.title or listing.listing_id}".

Listing Terms:
- Asking price: {format_price(listing.base_price, currency)}{floor_line}

Negotiation State:
- Buyer's initial offer: {format_price(negotiation.initial_offer, currency)}
- Current offer on the table: {format_price(negotiation.current_offer, currency)}
- Rounds used: {negotiation.rounds} of {negotiation.max_rounds}

Rules:
- Never counter above the asking price or below the lowest price
- Accept only when the current offer is acceptable to the seller
- Be polite and concise (under 80 words)
- Do NOT reveal your chain-of-thought or internal reasoning

Output Format:
Respond ONLY with a JSON block:
```json
{{"action": "reply" | "counter" | "accept" | "reject", "message": "<your message to the buyer>", "amount": <counter price, only for counter>, "confidence": <0.0-1.0>}}
```"""

    history_text = ""
    history = truncate_event_history(
        negotiation.events,
        max_messages=settings.AGENT_HISTORY_MESSAGES,
        max_chars=4000,
    )
    if history:
        history_text = "\n\nRecent conversation:\n"
        for event in history:
            offer_note = ""
            if event.offer is not None:
                offer_note = f" [offer: {format_price(event.offer.amount, event.offer.currency)}]"
            history_text += f"{event.sender.value}: {event.content}{offer_note}\n"

    user_prompt = f"""The buyer wrote: {request.last_user_message}{history_text}

Decide your next step and respond with the JSON block shown above."""

    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_prompt}
    ]
