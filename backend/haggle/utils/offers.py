"""
Agent reply parsing and price formatting utilities.

WHAT: Parse a structured decision out of LLM text output
WHY: The agent must turn free text into reply/counter/accept/reject
HOW: Strip reasoning tags, then fenced JSON, then any inline JSON with an
     "action" key; anything else is not a decision
"""

import json
import math
import re
from typing import Any, Dict

from ..utils.logger import get_logger

logger = get_logger(__name__)

AGENT_ACTIONS = ("reply", "counter", "accept", "reject")

# Synonyms LLMs tend to produce for the closed action set
ACTION_ALIASES = {
    "continue": "reply",
    "message": "reply",
    "counter_offer": "counter",
    "counteroffer": "counter",
    "accepted": "accept",
    "rejected": "reject",
    "decline": "reject",
}


def strip_reasoning(text: str) -> str:
    """Remove <think>/<reasoning> blocks and keep what follows them."""
    if not text:
        return ""
    if "</think>" in text.lower():
        text = re.split(r"</think>", text, flags=re.IGNORECASE)[-1]
    text = re.sub(r"<think>.*?</think>", "", text, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r"<reasoning>.*?</reasoning>", "", text, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r"</?(think|reasoning)>", "", text, flags=re.IGNORECASE)
    return text.strip()


def clean_agent_text(text: str, max_length: int = 1000) -> str:
    """Plain conversational text: no reasoning, no code fences, bounded length."""
    text = strip_reasoning(text)
    text = re.sub(r"```(?:json)?", "", text, flags=re.IGNORECASE)
    text = re.sub(r"\s+", " ", text).strip()
    if len(text) > max_length:
        text = text[:max_length - 3] + "..."
    return text


def parse_agent_reply(text: str) -> Dict[str, Any] | None:
    """
    Parse an agent decision from LLM-generated text.

    Expected formats:
    - ```json {"action": "counter", "message": "...", "amount": 115, "confidence": 0.8}```
    - JSON anywhere in text with an "action" key

    Args:
        text: LLM response text

    Returns:
        Dict with action, message, amount (None unless counter) and confidence,
        or None if no valid decision is found
    """
    text = strip_reasoning(text)
    if not text:
        return None

    fence_match = re.search(r"```(?:json)?\s*(\{.*?\})\s*```", text, re.IGNORECASE | re.DOTALL)
    if fence_match:
        try:
            decision = _normalize(json.loads(fence_match.group(1)))
            if decision is not None:
                logger.debug("Parsed agent decision from fenced block")
                return decision
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON in fenced agent block: {e}")

    for match in re.finditer(r'\{[^{}]*"action"[^{}]*\}', text, re.IGNORECASE | re.DOTALL):
        try:
            decision = _normalize(json.loads(match.group(0)))
        except json.JSONDecodeError:
            continue
        if decision is not None:
            logger.debug("Parsed agent decision from inline JSON")
            return decision

    logger.debug("No valid agent decision found in text")
    return None


def _normalize(data: Any) -> Dict[str, Any] | None:
    """Validate a parsed object and coerce it into the decision shape."""
    if not isinstance(data, dict):
        return None

    action = str(data.get("action", "")).strip().lower()
    action = ACTION_ALIASES.get(action, action)
    if action not in AGENT_ACTIONS:
        return None

    message = data.get("message") or data.get("content") or ""
    if not isinstance(message, str):
        return None

    amount = data.get("amount", data.get("price"))
    if action == "counter":
        try:
            amount = float(amount)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(amount) or amount <= 0:
            return None
    else:
        amount = None

    try:
        confidence = float(data.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5
    if not math.isfinite(confidence):
        confidence = 0.5
    confidence = min(max(confidence, 0.0), 1.0)

    return {
        "action": action,
        "message": message.strip(),
        "amount": amount,
        "confidence": confidence,
    }


def format_price(amount: float | None, currency: str = "USD") -> str:
    """Human-readable price for prompts and messages."""
    if amount is None:
        return "none"
    return f"{amount:.2f} {currency}"
