"""
AI usage records.

Every paid provider call logs one structured record through loguru. The
record is bound under ``extra["usage"]`` so a sink can route it separately:

    logger.add("usage.jsonl", serialize=True, filter=lambda r: "usage" in r["extra"])

Costs are estimates in USD from the price table below; unknown models are
logged with a zero cost and a warning.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass

from loguru import logger

# USD per 1M tokens
TOKEN_PRICES: dict[str, tuple[float, float]] = {
    "gemini-2.0-flash": (0.10, 0.40),
    "gemini-1.5-flash": (0.075, 0.30),
    "models/text-embedding-004": (0.0, 0.0),
    "gpt-4o-mini": (0.15, 0.60),
}
# USD per 1K characters
CHARACTER_PRICES: dict[str, float] = {
    "tts-1": 0.015,
    "tts-1-hd": 0.03,
}
# USD per image
IMAGE_PRICES: dict[str, float] = {
    "dall-e-3": 0.04,
    "dall-e-2": 0.02,
}


@dataclass
class UsageRecord:
    """One provider call."""

    operation: str
    model: str
    organization_id: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    characters: int = 0
    images: int = 0
    cost: float = 0.0


def estimate_tokens(text: str) -> int:
    """Rough token count (four characters per token) when the provider reports none."""
    return (len(text) + 3) // 4


def estimate_cost(record: UsageRecord) -> float:
    if record.model in TOKEN_PRICES:
        input_price, output_price = TOKEN_PRICES[record.model]
        return (record.input_tokens * input_price + record.output_tokens * output_price) / 1_000_000
    if record.model in CHARACTER_PRICES:
        return record.characters / 1_000 * CHARACTER_PRICES[record.model]
    if record.model in IMAGE_PRICES:
        return record.images * IMAGE_PRICES[record.model]
    logger.warning("No price known for model {}", record.model)
    return 0.0


def log_usage(operation: str, model: str, organization_id: str | None = None, **counts: int) -> UsageRecord:
    """
    Log a usage record for one provider call.

    Args:
        operation: what the call did (``slide-generation``, ``embedding`` ...)
        model: provider model name, used for pricing
        organization_id: tenant the call was made for, when known
        **counts: ``input_tokens``, ``output_tokens``, ``characters`` or ``images``

    Returns:
        The record, with its estimated cost filled in.
    """
    record = UsageRecord(operation=operation, model=model, organization_id=organization_id, **counts)
    record.cost = round(estimate_cost(record), 6)
    logger.bind(usage=asdict(record)).info(
        "AI usage: {} via {} for org {} (${:.6f})",
        operation,
        model,
        organization_id or "-",
        record.cost,
    )
    return record
