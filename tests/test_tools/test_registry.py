import asyncio

import pytest

from maxian.exceptions import ToolExecutionError, ToolNotFoundError
from maxian.tools import ERROR_PREFIXES, Tool, ToolRegistry, ToolResult, create_default_registry, is_error_result
from maxian.tools.registry import is_blocked_shell_command, split_shell_segments


class EchoTool(Tool):
    name = "echo"
    description = "Echo"
    parameters = {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    }

    def __init__(self):
        self.seen_kwargs = {}

    async def execute(self, **kwargs):
        self.seen_kwargs = kwargs
        return ToolResult(success=True, content=str(kwargs.get("text", "")))


class FailingTool(Tool):
    name = "failing"
    description = "Always fails"
    parameters = {"type": "object", "properties": {}, "required": []}

    async def execute(self, **kwargs):
        return ToolResult(success=False, content="disk full")


class NamelessTool(Tool):
    async def execute(self, **kwargs):
        return ToolResult()


class SlowTool(Tool):
    name = "slow"
    description = "Slow"
    parameters = {"type": "object", "properties": {}, "required": []}
    timeout_seconds = 1.0

    async def execute(self, **kwargs):
        await asyncio.sleep(2.0)
        return ToolResult(success=True, content="done")


class CancellableTool(Tool):
    name = "cancellable"
    description = "Cancellable"
    parameters = {"type": "object", "properties": {}, "required": []}
    timeout_seconds = 20.0

    def __init__(self):
        self.cancelled = False

    async def execute(self, **kwargs):
        try:
            await asyncio.sleep(10.0)
            return ToolResult(success=True, content="done")
        except asyncio.CancelledError:
            self.cancelled = True
            raise


def test_tool_result_populates_error_from_content_on_failure() -> None:
    result = ToolResult(success=False, content="command failed with exit code 1")

    assert result.error == "command failed with exit code 1"
    assert result.to_text() == "Error: command failed with exit code 1"


def test_tool_result_keeps_explicit_error_on_failure() -> None:
    result = ToolResult(success=False, content="stderr output", error="explicit error")

    assert result.error == "explicit error"


def test_tool_result_failure_without_details() -> None:
    assert ToolResult(success=False).error == "Tool execution failed"


def test_error_prefixes():
    assert ERROR_PREFIXES == ("❌", "⚠️", "Error:")
    assert is_error_result("Error: nope")
    assert is_error_result("  ❌ failed")
    assert is_error_result("⚠️ careful")
    assert not is_error_result("All good")
    assert not is_error_result(None)


@pytest.mark.asyncio
async def test_registry_passes_workspace_context(tmp_path):
    registry = ToolRegistry(cwd=tmp_path)
    tool = EchoTool()
    registry.register(tool)

    result = await registry.run("echo", {"text": "hi"})

    assert result.content == "hi"
    assert tool.seen_kwargs["_cwd"] == tmp_path.resolve()
    assert isinstance(tool.seen_kwargs["_abort_event"], asyncio.Event)


@pytest.mark.asyncio
async def test_execute_renders_results_as_text():
    registry = ToolRegistry()
    registry.register(EchoTool())
    registry.register(FailingTool())

    assert await registry.execute("echo", {"text": "ok"}) == "ok"
    assert await registry.execute("failing", {}) == "Error: disk full"
    assert await registry.execute("missing", {}) == "Error: Tool not found: missing"
    assert "Missing required argument: text" in await registry.execute("echo", {})


@pytest.mark.asyncio
async def test_run_raises_for_unknown_tool():
    registry = ToolRegistry()

    with pytest.raises(ToolNotFoundError):
        await registry.run("missing", {})


@pytest.mark.asyncio
async def test_registry_uses_tool_level_timeout_seconds():
    registry = ToolRegistry()
    registry.register(SlowTool())

    with pytest.raises(ToolExecutionError, match="timed out"):
        await registry.run("slow", {})
    assert "timed out after 1s" in await registry.execute("slow", {})


@pytest.mark.asyncio
async def test_registry_abort_event_cancels_running_tool_execution():
    registry = ToolRegistry()
    tool = CancellableTool()
    registry.register(tool)

    abort_event = asyncio.Event()
    execution = asyncio.create_task(registry.run("cancellable", {}, abort_event=abort_event))
    await asyncio.sleep(0.05)
    abort_event.set()

    with pytest.raises(ToolExecutionError, match="aborted"):
        await execution
    assert tool.cancelled is True


@pytest.mark.asyncio
async def test_preset_abort_event_skips_execution():
    registry = ToolRegistry()
    tool = EchoTool()
    registry.register(tool)
    abort_event = asyncio.Event()
    abort_event.set()

    result = await registry.execute("echo", {"text": "hi"}, abort_event=abort_event)

    assert result.startswith("Error:")
    assert tool.seen_kwargs == {}


def test_register_and_definitions(tmp_path):
    registry = create_default_registry(tmp_path)

    assert registry.list_tools() == ["read_file", "write_to_file", "list_files", "search_files", "execute_command"]
    definitions = registry.get_definitions()
    assert definitions[0]["name"] == "read_file"
    assert definitions[0]["parameters"]["required"] == ["path"]

    registry.unregister("execute_command")
    assert not registry.has_tool("execute_command")
    with pytest.raises(ValueError):
        registry.register(NamelessTool())


def test_shell_blocking_uses_parsed_base_command_not_substring_matches():
    assert is_blocked_shell_command("grep format README.md", ["rm"]) == (False, "")
    assert is_blocked_shell_command("echo ok && rm -rf /tmp/demo", ["rm"]) == (True, "rm")
    assert is_blocked_shell_command("", ["rm"]) == (True, "empty_command")


def test_split_shell_segments():
    assert split_shell_segments("ls -la | grep x; echo done") == [["ls", "-la"], ["grep", "x"], ["echo", "done"]]
