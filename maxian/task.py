"""Task orchestration: the request / tool / approval loop for one coding task."""

import asyncio
import inspect
import json
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Callable

import aiosqlite

from maxian.assistant_message import ParsedAssistantMessage, parse_assistant_message, strip_tool_blocks
from maxian.combine import combine_api_requests, combine_command_sequences
from maxian.condense import get_messages_since_last_summary
from maxian.config import Config, get_config
from maxian.exceptions import (
    FatalTaskError,
    LLMError,
    PersistenceError,
    ProtocolError,
    RepetitionExhausted,
    TaskAbortedError,
    TaskError,
    TaskNotFoundError,
)
from maxian.file_context import FileContextTracker
from maxian.ignore import MaxianIgnoreController
from maxian.llm import ApiHandler, StreamChunk, ToolDefinition
from maxian.logging import get_logger
from maxian.messages import (
    ASK_RESPONSES,
    ASK_TYPES,
    BLOCKING_ASKS,
    SAY_TYPES,
    ApiMessage,
    ContextCondense,
    Message,
    ToolCall,
    now_ms,
)
from maxian.metrics import TokenUsage, get_api_metrics
from maxian.persistence import DirectorySizeCache, TaskHistoryStore, TaskStorage, task_metadata
from maxian.pricing import calculate_cost
from maxian.prompts import ASK_FOLLOWUP_QUESTION, ATTEMPT_COMPLETION, build_system_prompt, tool_definitions
from maxian.repetition import ToolRepetitionDetector
from maxian import responses
from maxian.sliding_window import truncate_conversation, truncate_conversation_if_needed
from maxian.tools import ToolExecutor, create_default_registry, is_error_result

log = get_logger(__name__)

EXECUTE_COMMAND = "execute_command"
MAX_TOOL_SAY_CHARS = 2000


class TaskStatus(str, Enum):
    """Lifecycle states of a task."""

    IDLE = "idle"
    PROCESSING = "processing"
    WAITING_FOR_USER = "waiting_for_user"
    COMPLETED = "completed"
    ERROR = "error"
    ABORTED = "aborted"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.ERROR, TaskStatus.ABORTED})


@dataclass
class AskResponse:
    """Operator answer to an ask."""

    response: str  # yesButtonClicked | noButtonClicked | messageResponse
    text: str | None = None
    images: list[str] | None = None


@dataclass
class ToolOutcome:
    """Executor result as seen by the loop."""

    ok: bool
    content: str
    denied: bool = False


def image_blocks(images: list[str] | None) -> list[dict[str, Any]]:
    """Convert data URLs (or bare base64 PNG data) to image content blocks."""
    blocks: list[dict[str, Any]] = []
    for image in images or []:
        media_type, data = "image/png", image
        if image.startswith("data:") and "," in image:
            header, data = image.split(",", 1)
            media_type = header[len("data:"):].split(";")[0] or "image/png"
        blocks.append({
            "type": "image",
            "source": {"type": "base64", "media_type": media_type, "data": data},
        })
    return blocks


def _format_ago(ms: int) -> str:
    minutes = max(0, ms) // 60000
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    days = hours // 24
    return f"{days} day{'s' if days != 1 else ''} ago"


def _request_preview(content: list[dict[str, Any]], limit: int = 500) -> str:
    text = "\n\n".join(
        str(block.get("text") or block.get("content") or "")
        for block in content
        if block.get("type") in ("text", "tool_result")
    )
    return text if len(text) <= limit else text[:limit] + "..."


class Task:
    """One agentic coding task.

    Owns the operator-facing message log and the model-facing history, runs
    the request/tool loop, and suspends on asks until ``submit_response``
    answers them. State: IDLE -> PROCESSING <-> WAITING_FOR_USER -> one of
    COMPLETED, ERROR or ABORTED.
    """

    def __init__(
        self,
        api_handler: ApiHandler,
        tool_executor: ToolExecutor,
        cwd: Path | str | None = None,
        storage: TaskStorage | None = None,
        history_store: TaskHistoryStore | None = None,
        task_id: str | None = None,
        task_number: int = 1,
        config: Config | None = None,
        file_context_tracker: FileContextTracker | None = None,
        ignore_controller: MaxianIgnoreController | None = None,
        on_message: Callable[[Message], Any] | None = None,
        on_user_input_required: Callable[[Message], Any] | None = None,
    ):
        """Initialize the task.

        Args:
            api_handler: Model API handler
            tool_executor: Executor for workspace tools
            cwd: Workspace root
            storage: Task storage; without it nothing is persisted
            history_store: Optional history index updated on every save
            task_id: Existing task ID (for resuming) or None for a new one
            task_number: Sequence number shown in history listings
            config: Configuration override
            file_context_tracker: Tracker shared with the tools
            ignore_controller: ``.maxianignore`` controller shared with the tools
            on_message: Called with every new or updated message
            on_user_input_required: Called with the ask the task is waiting on
        """
        self.config = config or get_config()
        self.task_id = task_id or str(uuid.uuid4())
        self.task_number = task_number
        self.cwd = Path(cwd or Path.cwd()).expanduser().resolve()
        self.api = api_handler
        self.tools = tool_executor
        self.storage = storage
        self.history_store = history_store
        self.ignore_controller = ignore_controller or MaxianIgnoreController(self.cwd)
        self.file_context_tracker = file_context_tracker or FileContextTracker(
            self.task_id,
            storage,
            self.cwd,
            poll_interval=self.config.watcher.poll_interval,
        )
        self.on_message = on_message
        self.on_user_input_required = on_user_input_required

        self.status = TaskStatus.IDLE
        self.abort_reason: str | None = None
        self.messages: list[Message] = []
        self.api_history: list[ApiMessage] = []
        self.consecutive_mistake_count = 0
        self.repetition_detector = ToolRepetitionDetector(self.config.task.repetition_limit)
        self.system_prompt = ""

        self._abort_event = asyncio.Event()
        self._generation = 0
        self._last_ts = 0
        self._pending_ask: tuple[int, asyncio.Future[AskResponse]] | None = None
        self._tool_definitions: list[ToolDefinition] = []
        self._persistence_error_reported = False

    # ------------------------------------------------------------------
    # Message log

    def _next_ts(self) -> int:
        """Millisecond timestamp, strictly increasing within the task."""
        ts = now_ms()
        if ts <= self._last_ts:
            ts = self._last_ts + 1
        self._last_ts = ts
        return ts

    def _check_abort(self) -> None:
        if self._abort_event.is_set():
            raise TaskAbortedError(self.task_id, self.abort_reason or "user_cancelled")

    async def _emit(self, message: Message) -> None:
        await self._invoke_callback(self.on_message, message)

    async def _invoke_callback(self, callback: Callable[[Message], Any] | None, message: Message) -> None:
        if callback is None:
            return
        try:
            result = callback(message)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log.warning("Task callback failed", task_id=self.task_id, ts=message.ts, error=str(e))

    async def _add_to_messages(self, message: Message) -> None:
        self.messages.append(message)
        await self._emit(message)
        await self._save_messages()

    async def _save_messages(self) -> None:
        if self.storage is None:
            return
        try:
            await self.storage.save_task_messages(self.task_id, self.messages)
        except PersistenceError as e:
            log.error("Failed to save messages", task_id=self.task_id, error=str(e))
            await self._report_persistence_error(e)
            return
        await self._update_history()

    async def _update_history(self) -> None:
        if self.storage is None or self.history_store is None:
            return
        item, _ = task_metadata(
            self.task_id,
            self.task_number,
            self.messages,
            self.storage.task_dir(self.task_id),
            str(self.cwd),
            self.storage.size_cache,
            mode=self.config.task.mode,
        )
        try:
            await self.history_store.upsert(item)
        except (aiosqlite.Error, OSError) as e:
            log.error("Failed to update task history", task_id=self.task_id, error=str(e))

    async def _add_to_api_history(self, message: ApiMessage) -> None:
        self.api_history.append(message)
        await self._save_api_history()

    async def _overwrite_api_history(self, messages: list[ApiMessage]) -> None:
        self.api_history = list(messages)
        await self._save_api_history()

    async def _save_api_history(self) -> None:
        if self.storage is None:
            return
        try:
            await self.storage.save_api_messages(self.task_id, self.api_history)
        except PersistenceError as e:
            log.error("Failed to save API history", task_id=self.task_id, error=str(e))
            await self._report_persistence_error(e)

    async def _report_persistence_error(self, error: PersistenceError) -> None:
        """Tell the operator once that the task is no longer being saved.

        The notice is only emitted here; it is persisted with the next
        successful save.
        """
        if self._persistence_error_reported:
            return
        self._persistence_error_reported = True
        await self._finalize_partial()
        message = Message(
            ts=self._next_ts(),
            type="say",
            say="error",
            text=f"Task progress could not be saved: {error}",
        )
        self.messages.append(message)
        await self._emit(message)

    async def say(
        self,
        say_type: str,
        text: str | None = None,
        images: list[str] | None = None,
        partial: bool | None = None,
        context_condense: ContextCondense | None = None,
    ) -> Message:
        """Append (or, while streaming, update) a say message.

        ``partial=True`` updates a trailing partial say of the same type in
        place; ``partial=False`` finalizes it. Partial updates are emitted but
        only finalized records are persisted.

        Raises:
            ProtocolError if ``say_type`` is not a known say subtype
        """
        if say_type not in SAY_TYPES:
            raise ProtocolError(f"Unknown say type: {say_type}")
        self._check_abort()
        last = self.messages[-1] if self.messages else None
        is_updating = last is not None and last.partial and last.is_say(say_type)

        if partial:
            if is_updating:
                last.text = text
                last.images = images
                await self._emit(last)
                return last
            message = Message(ts=self._next_ts(), type="say", say=say_type, text=text, images=images, partial=True)
            self.messages.append(message)
            await self._emit(message)
            return message

        if partial is False and is_updating:
            last.text = text
            last.images = images
            last.partial = False
            await self._emit(last)
            await self._save_messages()
            return last

        message = Message(
            ts=self._next_ts(),
            type="say",
            say=say_type,
            text=text,
            images=images,
            context_condense=context_condense,
        )
        await self._add_to_messages(message)
        return message

    async def ask(self, ask_type: str, text: str | None = None, partial: bool | None = None) -> AskResponse | None:
        """Append an ask and wait for the operator's response.

        Partial asks and asks the operator does not answer, such as
        ``command_output``, only update the log and return None.

        Raises:
            ProtocolError if ``ask_type`` is not a known ask subtype
            TaskAbortedError if the task is aborted while waiting
        """
        if ask_type not in ASK_TYPES:
            raise ProtocolError(f"Unknown ask type: {ask_type}")
        self._check_abort()
        last = self.messages[-1] if self.messages else None
        is_updating = last is not None and last.partial and last.is_ask(ask_type)

        if partial:
            if is_updating:
                last.text = text
                await self._emit(last)
            else:
                message = Message(ts=self._next_ts(), type="ask", ask=ask_type, text=text, partial=True)
                self.messages.append(message)
                await self._emit(message)
            return None

        if partial is False and is_updating:
            last.text = text
            last.partial = False
            message = last
            await self._emit(message)
            await self._save_messages()
        else:
            message = Message(ts=self._next_ts(), type="ask", ask=ask_type, text=text)
            await self._add_to_messages(message)

        if ask_type not in BLOCKING_ASKS:
            return None
        return await self._wait_for_response(message)

    async def _wait_for_response(self, message: Message) -> AskResponse:
        future: asyncio.Future[AskResponse] = asyncio.get_running_loop().create_future()
        self._pending_ask = (message.ts, future)
        self.status = TaskStatus.WAITING_FOR_USER
        log.debug("Waiting for operator", task_id=self.task_id, ask=message.ask, ts=message.ts)

        abort_wait = asyncio.create_task(self._abort_event.wait())
        try:
            await self._invoke_callback(self.on_user_input_required, message)
            done, _ = await asyncio.wait({future, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self._pending_ask = None
            await _cancel_quietly(abort_wait)

        if future not in done or self._abort_event.is_set():
            future.cancel()
            raise TaskAbortedError(self.task_id, self.abort_reason or "user_cancelled")

        self.status = TaskStatus.PROCESSING
        return future.result()

    def handle_ask_response(
        self,
        ask_ts: int,
        response: str,
        text: str | None = None,
        images: list[str] | None = None,
    ) -> None:
        """Answer the pending ask identified by ``ask_ts``.

        Raises:
            ProtocolError if the response is unknown or no such ask is pending
        """
        if response not in ASK_RESPONSES:
            raise ProtocolError(f"Unknown ask response: {response}")
        pending = self._pending_ask
        if pending is None or pending[0] != ask_ts or pending[1].done():
            raise ProtocolError(f"No pending ask with ts {ask_ts}")
        pending[1].set_result(AskResponse(response=response, text=text, images=images))

    submit_response = handle_ask_response

    @property
    def pending_ask_ts(self) -> int | None:
        return self._pending_ask[0] if self._pending_ask else None

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def abort_task(self, reason: str = "user_cancelled") -> bool:
        """Abort from PROCESSING or WAITING_FOR_USER.

        Cancels the model stream and any running tool. Returns False when the
        task is not running.
        """
        if self.status not in (TaskStatus.PROCESSING, TaskStatus.WAITING_FOR_USER):
            log.debug("Abort ignored", task_id=self.task_id, status=self.status.value)
            return False
        self.status = TaskStatus.ABORTED
        self.abort_reason = reason
        self._generation += 1
        self._abort_event.set()
        log.info("Task aborted", task_id=self.task_id, reason=reason)
        return True

    def get_token_usage(self) -> TokenUsage:
        """Usage over the log, excluding the initial task message."""
        return get_api_metrics(combine_api_requests(combine_command_sequences(self.messages[1:])))

    # ------------------------------------------------------------------
    # Lifecycle

    def _prepare(self) -> None:
        self._tool_definitions = tool_definitions(self.tools.get_definitions())
        self.system_prompt = build_system_prompt(
            self.cwd,
            self._tool_definitions,
            native_tools=self.api.supports_native_tools,
            ignore_instructions=self.ignore_controller.get_instructions(),
            mode=self.config.task.mode,
        )

    async def start(self, task: str, images: list[str] | None = None) -> TaskStatus:
        """Run a new task until it reaches a terminal state.

        Args:
            task: The operator's task description
            images: Optional data-URL images attached to the task

        Returns:
            The terminal status
        """
        if self.status != TaskStatus.IDLE:
            raise TaskError(f"Task {self.task_id} was already started")

        self.status = TaskStatus.PROCESSING
        self.messages = []
        self.api_history = []
        self._prepare()
        log.info("Starting task", task_id=self.task_id, model=self.api.model, cwd=str(self.cwd))

        await self.say("text", task, images)
        user_content = [
            {"type": "text", "text": f"<task>\n{task}\n</task>"},
            *image_blocks(images),
        ]
        return await self._run(user_content)

    async def resume_from_history(self) -> TaskStatus:
        """Reload a persisted task, ask to resume and continue the loop.

        Raises:
            TaskNotFoundError if the task has no saved messages
            PersistenceError if the saved task files cannot be read
        """
        if self.storage is None:
            raise TaskError("Resuming a task requires task storage")
        if self.status != TaskStatus.IDLE:
            raise TaskError(f"Task {self.task_id} was already started")
        if not self.storage.task_exists(self.task_id):
            raise TaskNotFoundError(self.task_id)

        messages = await self.storage.read_task_messages(self.task_id)
        if not messages:
            raise TaskNotFoundError(self.task_id)
        self.api_history = await self.storage.read_api_messages(self.task_id)

        messages = [m for m in messages if not m.partial]
        while messages and (messages[-1].is_ask("resume_task") or messages[-1].is_ask("resume_completed_task")):
            messages.pop()
        messages = _drop_unfinished_request(messages)

        self.messages = messages
        self._last_ts = max([m.ts for m in messages] + [m.ts or 0 for m in self.api_history], default=0)
        last_activity = messages[-1].ts if messages else now_ms()
        completed = bool(messages) and (
            messages[-1].is_say("completion_result") or messages[-1].is_ask("completion_result")
        )

        self.status = TaskStatus.PROCESSING
        self._prepare()
        log.info("Resuming task", task_id=self.task_id, completed=completed, messages=len(messages))
        await self._save_messages()

        try:
            response = await self.ask("resume_completed_task" if completed else "resume_task")
        except TaskAbortedError:
            self.status = TaskStatus.ABORTED
            await self.file_context_tracker.dispose()
            return self.status

        if completed and response.response != "messageResponse":
            self.status = TaskStatus.COMPLETED
            await self.file_context_tracker.dispose()
            return self.status

        user_content = await self._resume_user_content(last_activity, completed)
        if response.response == "messageResponse" and response.text:
            await self.say("user_feedback", response.text, response.images)
            user_content.append({"type": "text", "text": responses.task_resumption_instructions(response.text)})
            user_content.extend(image_blocks(response.images))
        return await self._run(user_content)

    async def _resume_user_content(self, last_activity: int, completed: bool) -> list[dict[str, Any]]:
        content: list[dict[str, Any]] = []
        if self.api_history:
            last = self.api_history[-1]
            if last.role == "assistant":
                if isinstance(last.content, list):
                    content.extend(
                        {
                            "type": "tool_result",
                            "tool_use_id": block.get("id", ""),
                            "content": responses.tool_interrupted(),
                        }
                        for block in last.content
                        if block.get("type") == "tool_use"
                    )
            else:
                # The unanswered user turn is re-sent with the resumption notice.
                popped = self.api_history.pop()
                await self._save_api_history()
                if isinstance(popped.content, list):
                    content.extend(popped.content)
                elif popped.content:
                    content.append({"type": "text", "text": popped.content})

        content.append({
            "type": "text",
            "text": responses.task_resumption(
                _format_ago(now_ms() - last_activity), self.cwd.as_posix(), completed
            ),
        })
        return content

    async def _run(self, user_content: list[dict[str, Any]]) -> TaskStatus:
        next_content: list[dict[str, Any]] | None = user_content
        try:
            while next_content is not None:
                next_content = await self._make_request(next_content)
        except TaskAbortedError as e:
            self.status = TaskStatus.ABORTED
            log.info("Task loop stopped", task_id=self.task_id, reason=e.reason)
        except FatalTaskError as e:
            log.error("Task failed", task_id=self.task_id, error=str(e))
            try:
                await self.say("error", str(e))
            except TaskAbortedError:
                pass
            if self.status != TaskStatus.ABORTED:
                self.status = TaskStatus.ERROR
        except Exception as e:
            log.error("Task loop crashed", task_id=self.task_id, error=str(e), exc_info=True)
            await self._finalize_partial()
            try:
                await self.say("error", f"Unexpected error: {e}")
            except TaskAbortedError:
                pass
            if self.status != TaskStatus.ABORTED:
                self.status = TaskStatus.ERROR
        finally:
            await self._finalize_partial()
            await self._save_messages()
            await self.file_context_tracker.dispose()

        log.info("Task finished", task_id=self.task_id, status=self.status.value)
        return self.status

    async def _finalize_partial(self) -> None:
        if self.messages and self.messages[-1].partial:
            self.messages[-1].partial = False
            await self._emit(self.messages[-1])

    # ------------------------------------------------------------------
    # Request loop

    async def _make_request(self, user_content: list[dict[str, Any]]) -> list[dict[str, Any]] | None:
        """One model round trip plus its tool calls.

        Returns:
            The next user turn, or None once the task completed
        """
        self._check_abort()
        user_content = await self._check_mistake_limit(user_content)

        await self.file_context_tracker.watcher.poll_once()
        modified = self.file_context_tracker.get_and_clear_recently_modified_files()
        if modified:
            user_content = [*user_content, {"type": "text", "text": responses.files_changed_notice(modified)}]

        await self._add_to_api_history(ApiMessage(role="user", content=user_content, ts=self._next_ts()))
        await self._manage_context()
        await self.say("api_req_started", json.dumps({"request": _request_preview(user_content)}))

        text, native_calls, usage = await self._attempt_api_request()
        await self._record_usage(usage)

        parsed = parse_assistant_message(text, native_calls)
        await self._add_assistant_turn(text, parsed)

        if not parsed.tool_calls:
            self.consecutive_mistake_count += 1
            if parsed.errors:
                await self.say("error", "Malformed tool use: " + "; ".join(parsed.errors))
                return [{"type": "text", "text": responses.malformed_tool_use(parsed.errors)}]
            if parsed.is_empty:
                await self.say("error", "The model returned an empty response.")
            return [{"type": "text", "text": responses.no_tools_used()}]

        return await self._process_tool_calls(parsed.tool_calls)

    async def _check_mistake_limit(self, user_content: list[dict[str, Any]]) -> list[dict[str, Any]]:
        limit = self.config.task.consecutive_mistake_limit
        if limit <= 0 or self.consecutive_mistake_count < limit:
            return user_content

        if not self.config.task.ask_on_mistake_limit:
            raise FatalTaskError(f"Reached the limit of {limit} consecutive mistakes")

        response = await self.ask(
            "mistake_limit_reached",
            "The model keeps failing. Provide guidance to continue, or stop the task.",
        )
        if response.response == "noButtonClicked":
            raise FatalTaskError(f"Reached the limit of {limit} consecutive mistakes")

        self.consecutive_mistake_count = 0
        if response.response == "messageResponse":
            await self.say("user_feedback", response.text, response.images)
            return [
                *user_content,
                {"type": "text", "text": responses.too_many_mistakes(response.text)},
                *image_blocks(response.images),
            ]
        return user_content

    async def _manage_context(self) -> None:
        """Truncate or condense the history before the next request."""
        context = self.config.context
        if len(self.api_history) > context.max_messages:
            await self._overwrite_api_history(
                truncate_conversation(self.api_history, context.truncation_fraction, self.task_id)
            )

        previous_tokens = self.get_token_usage().context_tokens
        if previous_tokens <= 0:
            return

        result = await truncate_conversation_if_needed(
            messages=self.api_history,
            total_tokens=previous_tokens,
            context_window=self.config.model.context_window,
            api_handler=self.api,
            system_prompt=self.system_prompt,
            task_id=self.task_id,
            max_tokens=self.config.model.max_tokens,
            auto_condense_context=context.auto_condense,
            auto_condense_context_percent=context.auto_condense_percent,
            custom_condensing_prompt=context.custom_condensing_prompt,
            profile_thresholds=context.profile_thresholds,
            current_profile_id=context.current_profile,
        )
        if result.messages is not self.api_history:
            await self._overwrite_api_history(result.messages)
        if result.summary:
            await self.say(
                "condense_context",
                context_condense=ContextCondense(
                    cost=result.cost,
                    prev_context_tokens=result.prev_context_tokens,
                    new_context_tokens=result.new_context_tokens or 0,
                    summary=result.summary,
                ),
            )
        elif result.error:
            log.warning("Context condensing skipped", task_id=self.task_id, error=result.error)

    async def _attempt_api_request(self) -> tuple[str, list[ToolCall], dict[str, Any]]:
        """Stream a response, retrying with exponential backoff.

        Raises:
            FatalTaskError when retries are exhausted and the operator declines
        """
        messages = get_messages_since_last_summary(self.api_history)
        tools = self._tool_definitions if self.api.supports_native_tools else None
        attempt = 0

        while True:
            self._check_abort()
            try:
                return await self._stream_response(messages, tools)
            except LLMError as e:
                await self._finalize_partial()
                log.warning("API request failed", task_id=self.task_id, attempt=attempt, error=str(e))
                if attempt < self.config.task.api_max_retries:
                    delay = self.config.task.retry_base_delay * (2 ** attempt)
                    attempt += 1
                    await self.say(
                        "api_req_retried",
                        json.dumps({"attempt": attempt, "delay": delay, "error": str(e)}),
                    )
                    await self._sleep_or_abort(delay)
                    continue

                response = await self.ask("api_req_failed", responses.api_request_failed(str(e)))
                if response.response != "yesButtonClicked":
                    raise FatalTaskError(f"API request failed: {e}") from e
                attempt = 0
                await self.say("api_req_retried", json.dumps({"attempt": 0, "error": str(e)}))

    async def _sleep_or_abort(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._abort_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        self._check_abort()

    async def _stream_response(
        self,
        messages: list[ApiMessage],
        tools: list[ToolDefinition] | None,
    ) -> tuple[str, list[ToolCall], dict[str, Any]]:
        generation = self._generation
        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        usage: dict[str, Any] = {"tokensIn": 0, "tokensOut": 0, "cacheWrites": None, "cacheReads": None}

        stream = self.api.stream_completion(
            self.system_prompt,
            messages,
            tools=tools,
            abort_event=self._abort_event,
        )
        try:
            while True:
                chunk = await self._next_chunk(stream)
                if chunk is None:
                    break
                # Chunks arriving after an abort belong to a dead request.
                if generation != self._generation:
                    raise TaskAbortedError(self.task_id, self.abort_reason or "user_cancelled")

                if chunk.type == "text":
                    text_parts.append(chunk.text)
                    prose = strip_tool_blocks("".join(text_parts))
                    if prose:
                        await self.say("text", prose, partial=True)
                elif chunk.type == "tool_call" and chunk.tool_call is not None:
                    tool_calls.append(chunk.tool_call)
                elif chunk.type == "usage":
                    usage["tokensIn"] += chunk.input_tokens
                    usage["tokensOut"] += chunk.output_tokens
                    if chunk.cache_write_tokens is not None:
                        usage["cacheWrites"] = (usage["cacheWrites"] or 0) + chunk.cache_write_tokens
                    if chunk.cache_read_tokens is not None:
                        usage["cacheReads"] = (usage["cacheReads"] or 0) + chunk.cache_read_tokens
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        self._check_abort()
        text = "".join(text_parts)
        prose = strip_tool_blocks(text)
        if prose:
            await self.say("text", prose, partial=False)
        else:
            await self._finalize_partial()
        return text, tool_calls, usage

    async def _next_chunk(self, stream: AsyncIterator[StreamChunk]) -> StreamChunk | None:
        """Next stream chunk, or None at the end; an abort cancels the wait."""
        next_item = asyncio.ensure_future(stream.__anext__())
        abort_wait = asyncio.ensure_future(self._abort_event.wait())
        try:
            done, _ = await asyncio.wait({next_item, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await _cancel_quietly(abort_wait)

        if next_item not in done:
            await _cancel_quietly(next_item)
            raise TaskAbortedError(self.task_id, self.abort_reason or "user_cancelled")
        try:
            return next_item.result()
        except StopAsyncIteration:
            return None

    async def _record_usage(self, usage: dict[str, Any]) -> None:
        """Close the pending ``api_req_started`` with tokens and cost."""
        cost = calculate_cost(self.api.model, usage["tokensIn"], usage["tokensOut"])
        await self.say("api_req_finished", json.dumps({**usage, "cost": cost}))

    async def _add_assistant_turn(self, text: str, parsed: ParsedAssistantMessage) -> None:
        native = any(call.id for call in parsed.tool_calls)
        if native:
            content: str | list[dict[str, Any]] = [
                *([{"type": "text", "text": text}] if text else []),
                *(
                    {"type": "tool_use", "id": call.id, "name": call.name, "input": call.params}
                    for call in parsed.tool_calls
                ),
            ]
        else:
            content = text or "Failure: I did not provide a response."
        await self._add_to_api_history(ApiMessage(role="assistant", content=content, ts=self._next_ts()))

    # ------------------------------------------------------------------
    # Tool calls

    async def _process_tool_calls(self, calls: list[ToolCall]) -> list[dict[str, Any]] | None:
        results: list[dict[str, Any]] = []
        did_reject = False
        for call in calls:
            if did_reject:
                outcome = ToolOutcome(ok=False, content=responses.tool_skipped_after_rejection(call.name), denied=True)
            else:
                outcome = await self._execute_tool_call(call)
                if outcome is None:
                    return None
                did_reject = outcome.denied
            results.append(self._format_tool_result(call, outcome))
        return results

    @staticmethod
    def _format_tool_result(call: ToolCall, outcome: ToolOutcome) -> dict[str, Any]:
        if call.id:
            return {"type": "tool_result", "tool_use_id": call.id, "content": outcome.content}
        return {"type": "text", "text": f"[{call.name}] Result:\n{outcome.content}"}

    def _check_repetition(self, call: ToolCall) -> None:
        """Raises RepetitionExhausted when the guard vetoes the call."""
        verdict = self.repetition_detector.check(call)
        if not verdict.allow_execution:
            detail = (verdict.ask_user or {}).get("message_detail")
            raise RepetitionExhausted(call.name, self.repetition_detector.limit, detail)

    async def _execute_tool_call(self, call: ToolCall) -> ToolOutcome | None:
        """Run one tool call; None means the task just completed."""
        self._check_abort()
        try:
            self._check_repetition(call)
        except RepetitionExhausted as e:
            self.consecutive_mistake_count += 1
            log.warning("Tool call vetoed", task_id=self.task_id, tool=call.name, count=e.count)
            await self.say("error", e.detail)
            return ToolOutcome(ok=False, content=responses.tool_error(e.detail))

        if call.name == ATTEMPT_COMPLETION:
            return await self._attempt_completion(call)
        if call.name == ASK_FOLLOWUP_QUESTION:
            return await self._ask_followup_question(call)

        feedback: str | None = None
        if self._requires_approval(call.name):
            approved, feedback = await self._ask_approval(call)
            if not approved:
                return ToolOutcome(
                    ok=False,
                    content=responses.tool_denied_with_feedback(feedback) if feedback else responses.tool_denied(),
                    denied=True,
                )

        result = await self.tools.execute(call.name, call.params, abort_event=self._abort_event)
        self._check_abort()

        ok = not is_error_result(result)
        if ok:
            self.consecutive_mistake_count = 0
        else:
            self.consecutive_mistake_count += 1
            log.info("Tool failed", task_id=self.task_id, tool=call.name, mistakes=self.consecutive_mistake_count)

        if call.name == EXECUTE_COMMAND:
            await self.say("command_output", result)
        else:
            await self.say(
                "tool",
                json.dumps({
                    "tool": call.name,
                    "path": call.params.get("path"),
                    "content": result[:MAX_TOOL_SAY_CHARS],
                }, ensure_ascii=False),
            )

        content = result
        if feedback:
            content = f"{result}\n\n{responses.tool_approved_with_feedback(feedback)}"
        return ToolOutcome(ok=ok, content=content)

    def _requires_approval(self, tool_name: str) -> bool:
        tools_config = self.config.tools
        return not tools_config.auto_approve and tool_name in tools_config.require_approval

    async def _ask_approval(self, call: ToolCall) -> tuple[bool, str | None]:
        """Ask the operator; returns (approved, feedback)."""
        if call.name == EXECUTE_COMMAND:
            response = await self.ask("command", str(call.params.get("command", "")))
        else:
            response = await self.ask("tool", json.dumps({"tool": call.name, **call.params}, ensure_ascii=False))

        if response.text:
            await self.say("user_feedback", response.text, response.images)
        if response.response == "yesButtonClicked":
            return True, response.text
        return False, response.text

    async def _attempt_completion(self, call: ToolCall) -> ToolOutcome | None:
        result = str(call.params.get("result") or "").strip()
        if not result:
            self.consecutive_mistake_count += 1
            return ToolOutcome(ok=False, content=f"Error: {responses.missing_tool_parameter_error('result')}")

        self.consecutive_mistake_count = 0
        await self.say("completion_result", result)
        response = await self.ask("completion_result", "")
        if response.response == "yesButtonClicked":
            self.status = TaskStatus.COMPLETED
            log.info("Task completed", task_id=self.task_id)
            return None

        feedback = response.text or ""
        await self.say("user_feedback", feedback, response.images)
        return ToolOutcome(ok=True, content=responses.attempt_completion_feedback(feedback))

    async def _ask_followup_question(self, call: ToolCall) -> ToolOutcome:
        question = str(call.params.get("question") or "").strip()
        if not question:
            self.consecutive_mistake_count += 1
            return ToolOutcome(ok=False, content=f"Error: {responses.missing_tool_parameter_error('question')}")

        self.consecutive_mistake_count = 0
        response = await self.ask("followup", question)
        await self.say("user_feedback", response.text or "", response.images)
        return ToolOutcome(ok=True, content=f"<answer>\n{response.text or ''}\n</answer>")


def _drop_unfinished_request(messages: list[Message]) -> list[Message]:
    """Remove a trailing ``api_req_started`` that never got its usage."""
    for index in range(len(messages) - 1, -1, -1):
        message = messages[index]
        if message.is_say("api_req_finished"):
            return messages
        if message.is_say("api_req_started"):
            return messages[:index] + messages[index + 1:]
    return messages


async def _cancel_quietly(task: asyncio.Future[Any]) -> None:
    """Cancel and await a helper future."""
    if task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        log.debug("Cancelled helper raised", error=str(e))


def create_task(
    api_handler: ApiHandler,
    cwd: Path | str | None = None,
    config: Config | None = None,
    task_id: str | None = None,
    task_number: int = 1,
    storage: TaskStorage | None = None,
    history_store: TaskHistoryStore | None = None,
    on_message: Callable[[Message], Any] | None = None,
    on_user_input_required: Callable[[Message], Any] | None = None,
) -> Task:
    """Wire a task with storage, file tracking, ignore rules and the built-in tools."""
    config = config or get_config()
    task_id = task_id or str(uuid.uuid4())
    workspace = Path(cwd or Path.cwd()).expanduser().resolve()
    if storage is None:
        storage = TaskStorage(
            config.resolved_tasks_path(),
            DirectorySizeCache(ttl=config.storage.size_cache_ttl),
        )

    tracker = FileContextTracker(task_id, storage, workspace, poll_interval=config.watcher.poll_interval)
    ignore_controller = MaxianIgnoreController(workspace)
    registry = create_default_registry(workspace, tracker, ignore_controller)

    return Task(
        api_handler=api_handler,
        tool_executor=registry,
        cwd=workspace,
        storage=storage,
        history_store=history_store,
        task_id=task_id,
        task_number=task_number,
        config=config,
        file_context_tracker=tracker,
        ignore_controller=ignore_controller,
        on_message=on_message,
        on_user_input_required=on_user_input_required,
    )
