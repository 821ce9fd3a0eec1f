"""Model price table and cost helpers. Prices are in yuan per 1K tokens."""

from dataclasses import dataclass


@dataclass(frozen=True)
class ModelPricing:
    """Per-1K-token prices for one model."""

    input_price: float
    output_price: float


MODEL_PRICING: dict[str, ModelPricing] = {
    "qwen-max": ModelPricing(0.02, 0.06),
    "qwen-max-latest": ModelPricing(0.02, 0.06),
    "qwen-plus": ModelPricing(0.004, 0.012),
    "qwen-plus-latest": ModelPricing(0.004, 0.012),
    "qwen-turbo": ModelPricing(0.001, 0.002),
    "qwen-turbo-latest": ModelPricing(0.001, 0.002),
    "qwen-long": ModelPricing(0.0005, 0.002),
    "qwen-coder-turbo": ModelPricing(0.001, 0.002),
    "qwen-coder-turbo-latest": ModelPricing(0.001, 0.002),
    "qwen-coder-plus": ModelPricing(0.004, 0.012),
    "qwen-coder-plus-latest": ModelPricing(0.004, 0.012),
    "gpt-4": ModelPricing(0.21, 0.42),
    "gpt-4-turbo": ModelPricing(0.07, 0.21),
    "gpt-4-turbo-preview": ModelPricing(0.07, 0.21),
    "gpt-3.5-turbo": ModelPricing(0.0035, 0.014),
    "gpt-3.5-turbo-16k": ModelPricing(0.021, 0.028),
    "claude-3-opus": ModelPricing(0.105, 0.525),
    "claude-3-sonnet": ModelPricing(0.021, 0.105),
    "claude-3-haiku": ModelPricing(0.0017, 0.0087),
    "default": ModelPricing(0.004, 0.012),
}


def get_model_pricing(model: str) -> ModelPricing:
    """Return pricing for a model, falling back to the default entry."""
    return MODEL_PRICING.get(model, MODEL_PRICING["default"])


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Cost of one request, rounded to 6 decimal places."""
    pricing = get_model_pricing(model)
    input_cost = (input_tokens / 1000) * pricing.input_price
    output_cost = (output_tokens / 1000) * pricing.output_price
    return round(input_cost + output_cost, 6)


def format_cost(cost: float) -> str:
    """Format a cost for display with precision scaled to its magnitude."""
    if cost < 0.000001:
        return "¥0.000000"
    if cost < 0.01:
        return f"¥{cost:.6f}"
    if cost < 1:
        return f"¥{cost:.4f}"
    return f"¥{cost:.2f}"
