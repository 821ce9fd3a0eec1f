"""Shell tool for executing commands in the workspace."""

import asyncio
import os
from pathlib import Path
from typing import Any

from maxian.config import get_config
from maxian.logging import get_logger
from maxian.tools.registry import Tool, ToolResult, is_blocked_shell_command

log = get_logger(__name__)

MAX_OUTPUT_LENGTH = 10000


class ExecuteCommandTool(Tool):
    """Execute shell commands."""

    name = "execute_command"
    description = "Execute a shell command in the workspace and return its output."
    timeout_seconds = 60.0
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The shell command to execute",
            },
            "timeout": {
                "type": "number",
                "description": "Timeout in seconds (optional, default from config)",
            },
        },
        "required": ["command"],
    }

    def __init__(self):
        self.config = get_config()
        self.timeout_seconds = float(getattr(self.config.tools.shell, "timeout", 60) or 60)

    def _is_command_safe(self, command: str) -> tuple[bool, str]:
        """Check if command is safe to execute.

        Returns:
            Tuple of (is_safe, reason)
        """
        blocked, matched = is_blocked_shell_command(command, self.config.tools.shell.blocked)
        if blocked:
            if matched == "empty_command":
                return False, "Command is empty"
            if matched == "unparseable_command":
                return False, "Command is not parseable"
            return False, f"Command matches blocked pattern: {matched}"
        return True, ""

    async def execute(self, command: str, timeout: int | None = None, **kwargs: Any) -> ToolResult:
        """Execute a shell command.

        Args:
            command: Shell command to execute
            timeout: Optional timeout override

        Returns:
            ToolResult with command output
        """
        is_safe, reason = self._is_command_safe(command)
        if not is_safe:
            log.warning("Blocked unsafe command", command=command, reason=reason)
            return ToolResult(success=False, error=f"Command blocked: {reason}")

        ignore_controller = kwargs.get("_ignore_controller")
        if ignore_controller is not None:
            ignored = ignore_controller.validate_command(command)
            if ignored:
                return ToolResult(
                    success=False,
                    error=f"Command accesses {ignored}, which is blocked by the .maxianignore file settings.",
                )

        if timeout is None:
            timeout = self.config.tools.shell.timeout
        timeout = max(1, int(timeout))

        abort_event = kwargs.get("_abort_event")
        if isinstance(abort_event, asyncio.Event) and abort_event.is_set():
            return ToolResult(success=False, error="Command aborted")

        cwd = Path(kwargs.get("_cwd") or Path.cwd())
        env = os.environ.copy()
        env["PATH"] = os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin")

        try:
            log.info("Executing shell command", command=command, timeout=timeout, cwd=str(cwd))

            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env=env,
            )

            communicate_task = asyncio.create_task(process.communicate())
            abort_wait_task: asyncio.Task[bool] | None = None
            if isinstance(abort_event, asyncio.Event):
                abort_wait_task = asyncio.create_task(abort_event.wait())
            try:
                wait_tasks: set[asyncio.Task[Any]] = {communicate_task}
                if abort_wait_task is not None:
                    wait_tasks.add(abort_wait_task)
                done, _ = await asyncio.wait(
                    wait_tasks,
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if communicate_task in done:
                    stdout, stderr = await communicate_task
                else:
                    process.kill()
                    await process.wait()
                    communicate_task.cancel()
                    try:
                        await communicate_task
                    except asyncio.CancelledError:
                        pass
                    if abort_wait_task is not None and abort_wait_task in done:
                        return ToolResult(success=False, error="Command aborted")
                    return ToolResult(success=False, error=f"Command timed out after {timeout}s")
            except asyncio.CancelledError:
                process.kill()
                await process.wait()
                communicate_task.cancel()
                raise
            finally:
                if abort_wait_task is not None and not abort_wait_task.done():
                    abort_wait_task.cancel()
                    try:
                        await abort_wait_task
                    except asyncio.CancelledError:
                        pass

            stdout_text = stdout.decode("utf-8", errors="replace").strip()
            stderr_text = stderr.decode("utf-8", errors="replace").strip()

            output = stdout_text
            if stderr_text:
                output += f"\n[stderr] {stderr_text}"

            if len(output) > MAX_OUTPUT_LENGTH:
                output = output[:MAX_OUTPUT_LENGTH] + f"\n... [truncated, {len(output)} total chars]"

            if process.returncode != 0:
                return ToolResult(
                    success=False,
                    error=f"Command exited with code {process.returncode}\nOutput:\n{output or '[no output]'}",
                )
            return ToolResult(success=True, content=f"Output:\n{output or '[no output]'}")

        except OSError as e:
            log.error("Shell command failed", command=command, error=str(e))
            return ToolResult(success=False, error=str(e))
