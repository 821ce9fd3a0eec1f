import asyncio
import json
import os
from pathlib import Path

import pytest

from maxian.config import Config
from maxian.exceptions import LLMError, PersistenceError, ProtocolError
from maxian.file_context import FileContextTracker
from maxian.llm import ApiHandler, LLMResponse, StreamChunk
from maxian.messages import ToolCall
from maxian.persistence import TaskStorage
from maxian.task import Task, TaskStatus
from maxian.tools import ToolExecutor, create_default_registry


def xml_call(name: str, **params: str) -> str:
    body = "".join(f"<{key}>{value}</{key}>" for key, value in params.items())
    return f"<TOOL_USE><tool_name>{name}</tool_name>{body}</TOOL_USE>"


def text_turn(text: str, tokens_in: int = 10, tokens_out: int = 5) -> list[StreamChunk]:
    return [
        StreamChunk(type="text", text=text),
        StreamChunk(type="usage", input_tokens=tokens_in, output_tokens=tokens_out),
    ]


class ScriptedHandler(ApiHandler):
    model = "qwen-plus"

    def __init__(self, turns, native: bool = False, summary: str = "Summary of earlier work."):
        self.turns = list(turns)
        self.supports_native_tools = native
        self.summary = summary
        self.requests = []
        self.mistakes_seen = []
        self.task: Task | None = None

    async def stream_completion(self, system_prompt, messages, tools=None, abort_event=None):
        self.requests.append(list(messages))
        if self.task is not None:
            self.mistakes_seen.append(self.task.consecutive_mistake_count)
        turn = self.turns.pop(0)
        if isinstance(turn, Exception):
            raise turn
        for chunk in turn:
            yield chunk

    async def complete(self, system_prompt, messages, abort_event=None):
        return LLMResponse(
            content=self.summary,
            model=self.model,
            usage={"prompt_tokens": 100, "completion_tokens": 20},
        )


class RecordingExecutor(ToolExecutor):
    def __init__(self, results: dict[str, str] | None = None):
        self.calls = []
        self.results = results or {}

    async def execute(self, name, params, abort_event=None):
        self.calls.append((name, dict(params)))
        return self.results.get(name, f"{name} ok")

    def get_definitions(self):
        return [
            {
                "name": "read_file",
                "description": "Read a file",
                "parameters": {
                    "type": "object",
                    "properties": {"path": {"type": "string"}},
                    "required": ["path"],
                },
            },
            {
                "name": "list_files",
                "description": "List files",
                "parameters": {
                    "type": "object",
                    "properties": {"path": {"type": "string"}},
                    "required": ["path"],
                },
            },
        ]


def make_config(**task_overrides) -> Config:
    config = Config()
    config.tools.auto_approve = True
    config.task.retry_base_delay = 0
    for key, value in task_overrides.items():
        setattr(config.task, key, value)
    return config


def make_task(tmp_path: Path, handler: ScriptedHandler, executor=None, config=None, answer=None) -> Task:
    task: Task | None = None

    def on_ask(message):
        response = answer(message) if answer else "yesButtonClicked"
        if response is not None:
            task.submit_response(message.ts, response)

    task = Task(
        api_handler=handler,
        tool_executor=executor or RecordingExecutor(),
        cwd=tmp_path,
        config=config or make_config(),
        on_user_input_required=on_ask,
    )
    handler.task = task
    return task


def say_types(task: Task) -> list[str]:
    return [m.say for m in task.messages if m.type == "say"]


@pytest.mark.asyncio
async def test_repeated_read_is_vetoed_and_loop_continues(tmp_path: Path):
    handler = ScriptedHandler([
        text_turn(xml_call("list_files", path=".")),
        text_turn(xml_call("read_file", path="a.ts")),
        text_turn(xml_call("read_file", path="a.ts")),
        text_turn(xml_call("read_file", path="a.ts")),
        text_turn(xml_call("attempt_completion", result="Done")),
    ])
    executor = RecordingExecutor()
    task = make_task(tmp_path, handler, executor)

    status = await task.start("Inspect a.ts")

    assert status == TaskStatus.COMPLETED
    assert executor.calls == [
        ("list_files", {"path": "."}),
        ("read_file", {"path": "a.ts"}),
        ("read_file", {"path": "a.ts"}),
    ]
    # The request after the veto sees one mistake and the veto as the tool result.
    assert handler.mistakes_seen[4] == 1
    veto_turn = handler.requests[4][-1].text_content()
    assert "[read_file] Result:" in veto_turn
    assert "stuck in a loop" in veto_turn
    errors = [m for m in task.messages if m.is_say("error")]
    assert len(errors) == 1
    assert "read_file" in errors[0].text


@pytest.mark.asyncio
async def test_usage_is_recorded_per_request(tmp_path: Path):
    handler = ScriptedHandler([
        text_turn(xml_call("read_file", path="a.ts"), tokens_in=100, tokens_out=10),
        text_turn(xml_call("attempt_completion", result="Done"), tokens_in=150, tokens_out=20),
    ])
    task = make_task(tmp_path, handler)

    await task.start("Read a.ts")

    types = say_types(task)
    assert types.count("api_req_started") == 2
    assert types.count("api_req_finished") == 2
    assert types.index("api_req_started") < types.index("api_req_finished")

    usage = task.get_token_usage()
    assert usage.total_tokens_in == 250
    assert usage.total_tokens_out == 30
    assert usage.context_tokens == 170
    assert usage.total_cost > 0


@pytest.mark.asyncio
async def test_streamed_prose_is_finalized_once(tmp_path: Path):
    handler = ScriptedHandler([
        [
            StreamChunk(type="text", text="Let me "),
            StreamChunk(type="text", text="finish. "),
            StreamChunk(type="text", text=xml_call("attempt_completion", result="Done")),
        ],
    ])
    task = make_task(tmp_path, handler)

    await task.start("Wrap up")

    prose = [m for m in task.messages if m.is_say("text")]
    assert [m.text for m in prose] == ["Wrap up", "Let me finish."]
    assert not any(m.partial for m in task.messages)


@pytest.mark.asyncio
async def test_native_tool_results_are_keyed_by_call_id(tmp_path: Path):
    handler = ScriptedHandler(
        [
            [
                StreamChunk(type="tool_call", tool_call=ToolCall(name="read_file", params={"path": "a.ts"}, id="call_1")),
                StreamChunk(type="usage", input_tokens=10, output_tokens=5),
            ],
            [
                StreamChunk(
                    type="tool_call",
                    tool_call=ToolCall(name="attempt_completion", params={"result": "Done"}, id="call_2"),
                ),
            ],
        ],
        native=True,
    )
    task = make_task(tmp_path, handler)

    status = await task.start("Read a.ts")

    assert status == TaskStatus.COMPLETED
    assistant_turn = handler.requests[1][-2]
    assert assistant_turn.role == "assistant"
    assert assistant_turn.content == [
        {"type": "tool_use", "id": "call_1", "name": "read_file", "input": {"path": "a.ts"}},
    ]
    assert handler.requests[1][-1].content == [
        {"type": "tool_result", "tool_use_id": "call_1", "content": "read_file ok"},
    ]


@pytest.mark.asyncio
async def test_text_only_responses_hit_mistake_limit(tmp_path: Path):
    handler = ScriptedHandler([
        text_turn("I think it is fine."),
        text_turn("Still fine."),
        text_turn("Nothing to do."),
    ])
    task = make_task(tmp_path, handler, config=make_config(consecutive_mistake_limit=3))

    status = await task.start("Check things")

    assert status == TaskStatus.ERROR
    assert task.is_finished
    assert len(handler.requests) == 3
    assert "[ERROR] You did not use a tool" in handler.requests[1][-1].text_content()
    assert task.messages[-1].is_say("error")
    assert "consecutive mistakes" in task.messages[-1].text


@pytest.mark.asyncio
async def test_malformed_tool_use_is_reported_back(tmp_path: Path):
    handler = ScriptedHandler([
        text_turn("<TOOL_USE><path>a.ts</path></TOOL_USE>"),
        text_turn(xml_call("attempt_completion", result="Done")),
    ])
    task = make_task(tmp_path, handler)

    status = await task.start("Read a.ts")

    assert status == TaskStatus.COMPLETED
    assert "could not be parsed" in handler.requests[1][-1].text_content()
    assert handler.mistakes_seen[1] == 1


@pytest.mark.asyncio
async def test_failed_tool_counts_as_mistake(tmp_path: Path):
    handler = ScriptedHandler([
        text_turn(xml_call("read_file", path="missing.ts")),
        text_turn(xml_call("read_file", path="a.ts")),
        text_turn(xml_call("attempt_completion", result="Done")),
    ])
    executor = RecordingExecutor()

    async def execute(name, params, abort_event=None):
        executor.calls.append((name, dict(params)))
        if params.get("path") == "missing.ts":
            return "Error: File not found: missing.ts"
        return "content"

    executor.execute = execute
    task = make_task(tmp_path, handler, executor)

    await task.start("Read files")

    assert handler.mistakes_seen == [0, 1, 0]


@pytest.mark.asyncio
async def test_denied_tool_is_not_executed(tmp_path: Path):
    handler = ScriptedHandler([
        text_turn(xml_call("write_to_file", path="a.ts", content="x")),
        text_turn(xml_call("attempt_completion", result="Done")),
    ])
    executor = RecordingExecutor()
    config = make_config()
    config.tools.auto_approve = False

    def answer(message):
        if message.ask == "tool":
            return "noButtonClicked"
        return "yesButtonClicked"

    task = make_task(tmp_path, handler, executor, config=config, answer=answer)

    status = await task.start("Write a.ts")

    assert status == TaskStatus.COMPLETED
    assert executor.calls == []
    assert "The user denied this operation." in handler.requests[1][-1].text_content()
    assert handler.mistakes_seen[1] == 0
    approval = next(m for m in task.messages if m.is_ask("tool"))
    assert json.loads(approval.text) == {"tool": "write_to_file", "path": "a.ts", "content": "x"}


@pytest.mark.asyncio
async def test_completion_feedback_continues_the_task(tmp_path: Path):
    handler = ScriptedHandler([
        text_turn(xml_call("attempt_completion", result="First try")),
        text_turn(xml_call("attempt_completion", result="Second try")),
    ])
    answers = iter(["messageResponse", "yesButtonClicked"])
    task: Task | None = None

    def on_ask(message):
        response = next(answers)
        text = "Add tests too" if response == "messageResponse" else None
        task.submit_response(message.ts, response, text)

    task = Task(
        api_handler=handler,
        tool_executor=RecordingExecutor(),
        cwd=tmp_path,
        config=make_config(),
        on_user_input_required=on_ask,
    )

    status = await task.start("Implement feature")

    assert status == TaskStatus.COMPLETED
    assert "<feedback>\nAdd tests too\n</feedback>" in handler.requests[1][-1].text_content()
    assert [m.text for m in task.messages if m.is_say("user_feedback")] == ["Add tests too"]


@pytest.mark.asyncio
async def test_api_failure_is_retried(tmp_path: Path):
    handler = ScriptedHandler([
        LLMError("connection reset"),
        text_turn(xml_call("attempt_completion", result="Done")),
    ])
    task = make_task(tmp_path, handler)

    status = await task.start("Do it")

    assert status == TaskStatus.COMPLETED
    assert "api_req_retried" in say_types(task)
    assert len(handler.requests) == 2


@pytest.mark.asyncio
async def test_declined_api_failure_ends_in_error(tmp_path: Path):
    handler = ScriptedHandler([LLMError("down"), LLMError("still down")])
    config = make_config(api_max_retries=1)

    def answer(message):
        return "noButtonClicked" if message.ask == "api_req_failed" else "yesButtonClicked"

    task = make_task(tmp_path, handler, config=config, answer=answer)

    status = await task.start("Do it")

    assert status == TaskStatus.ERROR
    assert any(m.is_ask("api_req_failed") for m in task.messages)


@pytest.mark.asyncio
async def test_abort_while_waiting_for_operator(tmp_path: Path):
    handler = ScriptedHandler([text_turn(xml_call("attempt_completion", result="Done"))])
    task: Task | None = None
    seen_status = []

    def on_ask(message):
        seen_status.append(task.status)
        seen_status.append(task.abort_task())

    task = Task(
        api_handler=handler,
        tool_executor=RecordingExecutor(),
        cwd=tmp_path,
        config=make_config(),
        on_user_input_required=on_ask,
    )

    status = await task.start("Do it")

    assert status == TaskStatus.ABORTED
    assert seen_status == [TaskStatus.WAITING_FOR_USER, True]
    assert task.pending_ask_ts is None
    assert not task.abort_task()


@pytest.mark.asyncio
async def test_abort_during_stream_stops_the_request(tmp_path: Path):
    started = asyncio.Event()

    class HangingHandler(ScriptedHandler):
        async def stream_completion(self, system_prompt, messages, tools=None, abort_event=None):
            yield StreamChunk(type="text", text="Working on it")
            started.set()
            await asyncio.sleep(30)
            yield StreamChunk(type="text", text=xml_call("attempt_completion", result="late"))

    handler = HangingHandler([])
    task = make_task(tmp_path, handler)

    runner = asyncio.create_task(task.start("Do it"))
    await asyncio.wait_for(started.wait(), timeout=5)
    assert task.abort_task("user_cancelled")
    status = await asyncio.wait_for(runner, timeout=5)

    assert status == TaskStatus.ABORTED
    assert task.abort_reason == "user_cancelled"
    assert not any(m.is_say("completion_result") for m in task.messages)
    assert not any(m.partial for m in task.messages)


@pytest.mark.asyncio
async def test_response_to_unknown_ask_is_rejected(tmp_path: Path):
    handler = ScriptedHandler([text_turn(xml_call("attempt_completion", result="Done"))])
    task = Task(
        api_handler=handler,
        tool_executor=RecordingExecutor(),
        cwd=tmp_path,
        config=make_config(),
    )

    runner = asyncio.create_task(task.start("Do it"))
    for _ in range(500):
        if task.pending_ask_ts is not None:
            break
        await asyncio.sleep(0.01)
    ask_ts = task.pending_ask_ts
    assert ask_ts is not None

    with pytest.raises(ProtocolError):
        task.submit_response(ask_ts + 1, "yesButtonClicked")
    with pytest.raises(ProtocolError):
        task.submit_response(ask_ts, "maybeButtonClicked")

    task.submit_response(ask_ts, "yesButtonClicked")
    status = await asyncio.wait_for(runner, timeout=5)

    assert status == TaskStatus.COMPLETED
    with pytest.raises(ProtocolError):
        task.submit_response(ask_ts, "yesButtonClicked")


@pytest.mark.asyncio
async def test_condensation_precedes_the_request_it_shrinks(tmp_path: Path):
    handler = ScriptedHandler([
        text_turn(xml_call("list_files", path="."), tokens_in=5000, tokens_out=10),
        text_turn(xml_call("read_file", path="a.ts"), tokens_in=5000, tokens_out=10),
        text_turn(xml_call("attempt_completion", result="Done"), tokens_in=600, tokens_out=10),
    ])
    config = make_config()
    config.model.context_window = 8000
    config.model.max_tokens = 100
    config.context.auto_condense_percent = 50
    task = make_task(tmp_path, handler, config=config)

    status = await task.start("Explore")

    assert status == TaskStatus.COMPLETED
    types = say_types(task)
    condense_index = types.index("condense_context")
    assert types[condense_index + 1] == "api_req_started"

    condense = next(m for m in task.messages if m.is_say("condense_context")).context_condense
    assert condense.summary == "Summary of earlier work."
    assert condense.prev_context_tokens > condense.new_context_tokens

    # The condensed request starts at the summary; the full history is kept.
    condensed_request = handler.requests[2]
    assert condensed_request[0].is_summary
    assert condensed_request[0].role == "user"
    assert len(condensed_request) == 4
    assert any(m.is_summary for m in task.api_history)
    assert len(task.api_history) > len(condensed_request)


@pytest.mark.asyncio
async def test_unexpected_stream_error_ends_in_error(tmp_path: Path):
    handler = ScriptedHandler([RuntimeError("decoder blew up")])
    task = make_task(tmp_path, handler)

    status = await task.start("Do it")

    assert status == TaskStatus.ERROR
    assert task.is_finished
    assert task.messages[-1].is_say("error")
    assert task.messages[-1].text == "Unexpected error: decoder blew up"
    assert not any(m.partial for m in task.messages)


@pytest.mark.asyncio
async def test_unexpected_tool_error_ends_in_error(tmp_path: Path):
    class ExplodingExecutor(RecordingExecutor):
        async def execute(self, name, params, abort_event=None):
            raise ValueError("executor state is broken")

    handler = ScriptedHandler([text_turn(xml_call("list_files", path="."))])
    task = make_task(tmp_path, handler, ExplodingExecutor())

    status = await task.start("List files")

    assert status == TaskStatus.ERROR
    assert [m.text for m in task.messages if m.is_say("error")] == ["Unexpected error: executor state is broken"]


@pytest.mark.asyncio
async def test_outside_edit_is_reported_to_the_model(tmp_path: Path):
    target = tmp_path / "a.ts"
    target.write_text("const a = 1;\n", encoding="utf-8")
    tracker = FileContextTracker("task-1", None, tmp_path, poll_interval=60)
    registry = create_default_registry(tmp_path, file_context_tracker=tracker)

    class EditAfterReadExecutor(ToolExecutor):
        async def execute(self, name, params, abort_event=None):
            result = await registry.execute(name, params, abort_event=abort_event)
            # Someone edits the file while the model works on the result.
            stat = target.stat()
            target.write_text("const a = 2;\n", encoding="utf-8")
            os.utime(target, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))
            return result

    handler = ScriptedHandler([
        text_turn(xml_call("read_file", path="a.ts")),
        text_turn(xml_call("attempt_completion", result="Done")),
    ])
    task = Task(
        api_handler=handler,
        tool_executor=EditAfterReadExecutor(),
        cwd=tmp_path,
        config=make_config(),
        file_context_tracker=tracker,
        on_user_input_required=lambda message: task.submit_response(message.ts, "yesButtonClicked"),
    )

    status = await task.start("Read a.ts")

    assert status == TaskStatus.COMPLETED
    assert "# Recently Modified Files" not in handler.requests[0][-1].text_content()
    follow_up = handler.requests[1][-1].text_content()
    assert "1 | const a = 1;" in follow_up
    assert "# Recently Modified Files" in follow_up
    assert follow_up.endswith("\na.ts")
    assert tracker.recently_modified_files == set()


@pytest.mark.asyncio
async def test_unknown_message_subtypes_are_rejected(tmp_path: Path):
    task = make_task(tmp_path, ScriptedHandler([]))

    with pytest.raises(ProtocolError):
        await task.say("shout", "hi")
    with pytest.raises(ProtocolError):
        await task.ask("guess")
    assert task.messages == []


@pytest.mark.asyncio
async def test_command_output_ask_does_not_wait(tmp_path: Path):
    asked = []
    task = make_task(tmp_path, ScriptedHandler([]), answer=lambda message: asked.append(message))

    result = await task.ask("command_output", "building...")

    assert result is None
    assert asked == []
    assert task.pending_ask_ts is None
    assert task.messages[-1].is_ask("command_output")


@pytest.mark.asyncio
async def test_storage_failure_is_reported_once(tmp_path: Path):
    class FailingStorage(TaskStorage):
        async def save_task_messages(self, task_id, messages):
            raise PersistenceError(str(self.root / task_id), "disk full")

    storage = FailingStorage(tmp_path / "tasks")
    handler = ScriptedHandler([text_turn(xml_call("attempt_completion", result="Done"))])
    task = Task(
        api_handler=handler,
        tool_executor=RecordingExecutor(),
        cwd=tmp_path,
        storage=storage,
        config=make_config(),
        on_user_input_required=lambda message: task.submit_response(message.ts, "yesButtonClicked"),
    )

    status = await task.start("Do it")

    assert status == TaskStatus.COMPLETED
    errors = [m.text for m in task.messages if m.is_say("error")]
    assert len(errors) == 1
    assert errors[0].startswith("Task progress could not be saved:")
    assert "disk full" in errors[0]


def native_call(name: str, call_id: str, tokens_in: int = 100, **params: str) -> list[StreamChunk]:
    return [
        StreamChunk(type="tool_call", tool_call=ToolCall(name=name, params=params, id=call_id)),
        StreamChunk(type="usage", input_tokens=tokens_in, output_tokens=10),
    ]


@pytest.mark.asyncio
async def test_native_condensation_keeps_tool_calls_with_their_results(tmp_path: Path):
    handler = ScriptedHandler(
        [
            native_call("read_file", "c1", path="a.ts"),
            native_call("list_files", "c2", path="."),
            native_call("read_file", "c3", tokens_in=5000, path="b.ts"),
            native_call("attempt_completion", "c4", result="Done"),
        ],
        native=True,
    )
    config = make_config()
    config.model.context_window = 8000
    config.model.max_tokens = 100
    config.context.auto_condense_percent = 50
    task = make_task(tmp_path, handler, config=config)

    status = await task.start("Explore")

    assert status == TaskStatus.COMPLETED
    assert "condense_context" in say_types(task)
    condensed_request = handler.requests[3]
    assert condensed_request[0].is_summary
    assert condensed_request[1].role == "assistant"
    seen: set[str] = set()
    for message in condensed_request:
        if isinstance(message.content, list):
            for block in message.content:
                if block.get("type") == "tool_result":
                    assert block["tool_use_id"] in seen
        seen |= message.tool_use_ids()
    assert seen == {"c2", "c3"}
