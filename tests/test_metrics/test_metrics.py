import json

import pytest

from maxian.combine import combine_api_requests
from maxian.messages import ContextCondense, Message
from maxian.metrics import TokenUsage, get_api_metrics, has_token_usage_changed
from maxian.pricing import MODEL_PRICING, calculate_cost, format_cost, get_model_pricing


def request(ts: int, **payload) -> Message:
    return Message(ts=ts, type="say", say="api_req_started", text=json.dumps(payload))


def test_usage_is_summed_across_requests():
    messages = [
        request(1, tokensIn=10, tokensOut=5, cost=0.5),
        request(2, tokensIn=10, tokensOut=5, cost=0.25),
    ]

    usage = get_api_metrics(messages)

    assert usage.total_tokens_in == 20
    assert usage.total_tokens_out == 10
    assert usage.total_cost == pytest.approx(0.75)
    assert usage.context_tokens == 15
    assert usage.total_cache_writes is None
    assert usage.total_cache_reads is None


def test_context_tokens_come_from_latest_record_only():
    messages = [
        request(1, tokensIn=1000, tokensOut=100),
        Message(
            ts=2,
            type="say",
            say="condense_context",
            context_condense=ContextCondense(cost=0.1, prev_context_tokens=1100, new_context_tokens=300),
        ),
    ]

    usage = get_api_metrics(messages)

    assert usage.total_tokens_in == 1000
    assert usage.context_tokens == 300
    assert usage.total_cost == pytest.approx(0.1)


def test_malformed_entries_are_skipped():
    messages = [
        request(1, tokensIn=10, tokensOut=5),
        Message(ts=2, type="say", say="api_req_started", text="{not json"),
        request(3, tokensIn="many", tokensOut=7, cacheReads=4),
    ]

    usage = get_api_metrics(messages)

    assert usage.total_tokens_in == 10
    assert usage.total_tokens_out == 12
    assert usage.total_cache_reads == 4
    assert usage.context_tokens == 7


def test_fast_apply_usage_on_tool_asks_is_counted():
    tool_ask = Message(
        ts=1,
        type="ask",
        ask="tool",
        text=json.dumps({"tool": "apply_diff", "fastApplyResult": {"tokensIn": 3, "tokensOut": 2, "cost": 0.02}}),
    )

    usage = get_api_metrics([tool_ask])

    assert usage.total_tokens_in == 3
    assert usage.total_tokens_out == 2
    assert usage.total_cost == pytest.approx(0.02)


def test_uncombined_log_would_miss_usage():
    started = request(1, request="hi")
    finished = Message(ts=2, type="say", say="api_req_finished", text=json.dumps({"tokensIn": 8, "tokensOut": 2}))

    assert get_api_metrics([started, finished]).total_tokens_in == 0
    assert get_api_metrics(combine_api_requests([started, finished])).total_tokens_in == 8


def test_has_token_usage_changed():
    snapshot = TokenUsage(total_tokens_in=5)

    assert has_token_usage_changed(TokenUsage(total_tokens_in=5), None)
    assert not has_token_usage_changed(TokenUsage(total_tokens_in=5), snapshot)
    assert has_token_usage_changed(TokenUsage(total_tokens_in=6), snapshot)


def test_cost_uses_model_table_and_default():
    assert get_model_pricing("qwen-max") == MODEL_PRICING["qwen-max"]
    assert get_model_pricing("unknown-model") == MODEL_PRICING["default"]
    assert calculate_cost("qwen-max", 1000, 1000) == pytest.approx(0.08)
    assert calculate_cost("qwen-max", 0, 0) == 0


def test_cost_grows_with_tokens_and_is_rounded():
    small = calculate_cost("qwen-plus", 100, 100)
    large = calculate_cost("qwen-plus", 1000, 100)

    assert large > small
    assert calculate_cost("qwen-plus", 1, 1) == round(calculate_cost("qwen-plus", 1, 1), 6)


def test_format_cost_precision():
    assert format_cost(0) == "¥0.000000"
    assert format_cost(0.001234) == "¥0.001234"
    assert format_cost(0.5) == "¥0.5000"
    assert format_cost(12.5) == "¥12.50"
