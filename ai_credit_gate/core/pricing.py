"""
Credit pricing and display formatting.

Selects generation and chat tiers and renders balances for display.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Mapping, Optional, Sequence, Union

from ai_credit_gate.config.loader import ChatPricing, GenerationPricing

CENT = Decimal("0.01")

UNLIMITED_DISPLAY = "∞"


class GenerationTier(Enum):
    """Generation pricing tiers, cheapest first."""
    BASIC = "basic"
    STANDARD = "standard"
    ADVANCED = "advanced"


class ChatTier(Enum):
    """Chat pricing tiers."""
    SIMPLE = "simple"
    WITH_ATTACHMENTS = "with_attachments"


def to_credits(value: Union[Decimal, int, float, str]) -> Decimal:
    """Normalize an amount to two-decimal credits.

    Floats go through ``str`` so that 0.3 becomes Decimal("0.30") rather
    than its binary expansion.

    Raises:
        ValueError: If the value is not a finite number
    """
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid credit amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Credit amount must be finite: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def select_generation_tier(
    prompt_length: int,
    output_size: int,
    file_count: int,
    pricing: GenerationPricing,
) -> GenerationTier:
    """Pick the generation tier.

    The checks run from the highest tier down, so any condition met for a
    higher tier wins over a lower one.
    """
    if (prompt_length > pricing.advanced_prompt_length
            or output_size > pricing.advanced_output_size
            or file_count > pricing.advanced_file_count):
        return GenerationTier.ADVANCED
    if (prompt_length > pricing.standard_prompt_length
            or output_size > pricing.standard_output_size):
        return GenerationTier.STANDARD
    return GenerationTier.BASIC


def generation_tier_price(tier: GenerationTier, pricing: GenerationPricing) -> Decimal:
    return {
        GenerationTier.BASIC: pricing.basic,
        GenerationTier.STANDARD: pricing.standard,
        GenerationTier.ADVANCED: pricing.advanced,
    }[tier]


def calculate_generation_cost(
    prompt: str,
    files: Mapping[str, str],
    pricing: GenerationPricing,
) -> Decimal:
    """Calculate the credit cost of a completed generation.

    Args:
        prompt: Prompt sent to the provider
        files: Generated files, path to content
        pricing: Tier prices and thresholds

    Returns:
        Tier price in credits
    """
    output_size = sum(len(content) for content in files.values())
    tier = select_generation_tier(len(prompt), output_size, len(files), pricing)
    return to_credits(generation_tier_price(tier, pricing))


def select_chat_tier(attachments: Optional[Sequence[object]]) -> ChatTier:
    """Chat tier depends only on whether the request carries attachments."""
    return ChatTier.WITH_ATTACHMENTS if attachments else ChatTier.SIMPLE


def calculate_chat_cost(
    attachments: Optional[Sequence[object]],
    pricing: ChatPricing,
) -> Decimal:
    """Calculate the fixed credit cost of one chat message."""
    tier = select_chat_tier(attachments)
    price = {
        ChatTier.SIMPLE: pricing.simple,
        ChatTier.WITH_ATTACHMENTS: pricing.with_attachments,
    }[tier]
    return to_credits(price)


def format_credits(amount: Optional[Decimal], unlimited: bool = False) -> str:
    """Format a balance for display.

    Returns the unlimited marker for admin balances, otherwise a fixed
    two-decimal string (12.5 -> "12.50").
    """
    if unlimited or amount is None:
        return UNLIMITED_DISPLAY
    return f"{to_credits(amount):.2f}"
