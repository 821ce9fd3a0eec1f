import json

from maxian.combine import combine_api_requests, combine_command_sequences, safe_json_parse
from maxian.messages import Message


def say(ts: int, subtype: str, text: str | None = None) -> Message:
    return Message(ts=ts, type="say", say=subtype, text=text)


def ask(ts: int, subtype: str, text: str | None = None) -> Message:
    return Message(ts=ts, type="ask", ask=subtype, text=text)


def test_finished_request_is_merged_into_its_start():
    messages = [
        say(1, "text", "task"),
        say(2, "api_req_started", json.dumps({"request": "hello"})),
        say(3, "text", "answer"),
        say(4, "api_req_finished", json.dumps({"tokensIn": 10, "tokensOut": 5, "cost": 0.01})),
    ]

    combined = combine_api_requests(messages)

    assert [m.ts for m in combined] == [1, 2, 3]
    assert json.loads(combined[1].text) == {"request": "hello", "tokensIn": 10, "tokensOut": 5, "cost": 0.01}
    # Input is left untouched.
    assert json.loads(messages[1].text) == {"request": "hello"}


def test_nested_requests_close_most_recent_start_first():
    messages = [
        say(1, "api_req_started", json.dumps({"request": "outer"})),
        say(2, "api_req_started", json.dumps({"request": "inner"})),
        say(3, "api_req_finished", json.dumps({"tokensIn": 1})),
        say(4, "api_req_finished", json.dumps({"tokensIn": 2})),
    ]

    combined = combine_api_requests(messages)

    assert [json.loads(m.text) for m in combined] == [
        {"request": "outer", "tokensIn": 2},
        {"request": "inner", "tokensIn": 1},
    ]


def test_unmatched_finish_is_dropped_and_malformed_start_recovers():
    messages = [
        say(1, "api_req_finished", json.dumps({"tokensIn": 99})),
        say(2, "api_req_started", "not json"),
        say(3, "api_req_finished", json.dumps({"tokensIn": 7})),
    ]

    combined = combine_api_requests(messages)

    assert len(combined) == 1
    assert json.loads(combined[0].text) == {"tokensIn": 7}


def test_combining_api_requests_twice_is_a_no_op():
    messages = [
        say(1, "api_req_started", json.dumps({"request": "a"})),
        say(2, "api_req_finished", json.dumps({"tokensIn": 3, "tokensOut": 4})),
        say(3, "api_req_started", json.dumps({"request": "b"})),
    ]

    once = combine_api_requests(messages)
    twice = combine_api_requests(once)

    assert [m.to_dict() for m in twice] == [m.to_dict() for m in once]


def test_command_output_is_folded_into_command():
    messages = [
        ask(1, "command", "npm test"),
        say(2, "command_output", "line one"),
        ask(3, "command_output", "line two"),
        say(4, "text", "after"),
    ]

    combined = combine_command_sequences(messages)

    assert [m.ts for m in combined] == [1, 4]
    assert combined[0].text == "npm test\nOutput:line one\nline two"


def test_duplicate_output_across_channels_is_kept_once():
    messages = [
        ask(1, "command", "ls"),
        ask(2, "command_output", "a.ts"),
        say(3, "command_output", "a.ts"),
    ]

    combined = combine_command_sequences(messages)

    assert len(combined) == 1
    assert combined[0].text == "ls\nOutput:a.ts"


def test_output_stops_at_next_command():
    messages = [
        ask(1, "command", "first"),
        say(2, "command_output", "one"),
        ask(3, "command", "second"),
        say(4, "command_output", "two"),
    ]

    combined = combine_command_sequences(messages)

    assert [m.text for m in combined] == ["first\nOutput:one", "second\nOutput:two"]


def test_mcp_responses_are_attached_to_request():
    messages = [
        ask(1, "use_mcp_server", json.dumps({"serverName": "docs", "toolName": "search"})),
        say(2, "mcp_server_response", "result A"),
        say(3, "mcp_server_response", "result B"),
    ]

    combined = combine_command_sequences(messages)

    assert len(combined) == 1
    payload = json.loads(combined[0].text)
    assert payload["serverName"] == "docs"
    assert payload["response"] == "result A\nresult B"


def test_combining_commands_twice_is_a_no_op():
    messages = [
        say(1, "text", "task"),
        ask(2, "command", "make"),
        say(3, "command_output", "built"),
        ask(4, "use_mcp_server", "{}"),
        say(5, "mcp_server_response", "ok"),
    ]

    once = combine_command_sequences(messages)
    twice = combine_command_sequences(once)

    assert [m.to_dict() for m in twice] == [m.to_dict() for m in once]


def test_safe_json_parse_defaults():
    assert safe_json_parse('{"a": 1}') == {"a": 1}
    assert safe_json_parse("{broken", {}) == {}
    assert safe_json_parse(None, []) == []
