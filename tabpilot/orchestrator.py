import asyncio
import itertools
import logging
import re
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple

from .cancellation import CancelSignal, CommandCancelled, OperationTimeout, run_with_timeout
from .db import Database
from .executor import ToolExecutor
from .schemas import (
    CANCELLED_MESSAGE,
    Command,
    CommandResult,
    CommandSource,
    ExecutionResult,
    HistoryEntry,
    ToolCallRecord,
)


logger = logging.getLogger("uvicorn.error")

SUMMARY_MAX_CHARS = 180
NotifyFn = Callable[[str, str], Awaitable[None]]

_command_counter = itertools.count()
_confirm_counter = itertools.count()


def new_command_id() -> str:
    return f"cmd_{int(time.time() * 1000)}_{next(_command_counter)}"


def new_confirm_id() -> str:
    return f"confirm_{int(time.time() * 1000)}_{next(_confirm_counter)}"


# Completion summaries


def truncate_text(text: Any, max_length: int) -> str:
    value = str(text or "").strip()
    if len(value) <= max_length:
        return value
    return value[: max(0, max_length - 3)].rstrip() + "..."


def first_sentence(text: str) -> str:
    value = str(text or "").strip()
    match = re.match(r".+?[.!?](?:\s|$)", value, re.DOTALL)
    return match.group(0).strip() if match else value


def summarize_tool_for_notification(record: ToolCallRecord) -> Optional[str]:
    result = record.result
    if not result or result.get("error"):
        return None
    name = record.name
    if name == "list_tabs":
        if isinstance(result.get("count"), int):
            return f"{result['count']} tabs found"
        if isinstance(result.get("tabs"), list):
            return f"{len(result['tabs'])} tabs found"
        return None
    if name == "close_tabs":
        if isinstance(result.get("closedCount"), int):
            return f"Closed {result['closedCount']} tabs"
        return None
    if name == "close_duplicate_tabs":
        if isinstance(result.get("closedCount"), int):
            if result["closedCount"] > 0:
                return f"Removed {result['closedCount']} duplicates"
            return "No duplicates found"
        return None
    if name == "group_tabs":
        group = result.get("group") or {}
        if group.get("title"):
            return f"Group \"{group['title']}\" ready"
        return None
    if name == "create_tab":
        if result.get("deduped"):
            return "Focused existing tab"
        tab = result.get("tab") or {}
        if tab.get("title"):
            return f"Opened \"{str(tab['title'])[:40]}\""
        return "Opened new tab"
    if name in ("search_bookmarks", "search_history"):
        if isinstance(result.get("count"), int):
            return f"{result['count']} results"
        return None
    if result.get("success"):
        return f"{name.replace('_', ' ')} done"
    return None


def build_completion_summary(
    response: Optional[str],
    error: Optional[str],
    tool_calls: List[ToolCallRecord],
    cancelled: bool = False,
) -> str:
    if cancelled:
        return CANCELLED_MESSAGE
    if error:
        return truncate_text(re.sub(r"^Error:\s*", "", str(error), flags=re.IGNORECASE), SUMMARY_MAX_CHARS)
    if isinstance(response, str) and response.strip():
        return truncate_text(first_sentence(response), SUMMARY_MAX_CHARS)
    if tool_calls:
        highlights: List[str] = []
        for record in reversed(tool_calls):
            line = summarize_tool_for_notification(record)
            if not line:
                continue
            highlights.insert(0, line)
            if len(highlights) >= 2:
                break
        if highlights:
            return truncate_text(" | ".join(highlights), SUMMARY_MAX_CHARS)
        failed = sum(1 for record in tool_calls if record.failed)
        if failed:
            return f"{max(len(tool_calls) - failed, 0)} steps done, {failed} failed."
        return f"{len(tool_calls)} step{'' if len(tool_calls) == 1 else 's'} completed."
    return "Command completed."


class EventBus:
    """In-memory fan-out for SSE plus persisted events."""

    def __init__(self, db: Database):
        self.db = db
        self.subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.global_subscribers: List[asyncio.Queue] = []
        self.lock = asyncio.Lock()
        self.emit_lock = asyncio.Lock()
        self.seqs: Dict[str, int] = {}

    @property
    def observer_count(self) -> int:
        return len(self.global_subscribers)

    async def emit(self, command_id: str, event_type: str, payload: dict) -> dict:
        safe_payload = dict(payload or {})
        safe_payload.setdefault("command_id", command_id)
        # Sequence numbers and delivery share one lock so subscribers see events in seq order.
        async with self.emit_lock:
            seq = self.seqs.get(command_id, 0) + 1
            self.seqs[command_id] = seq
            stored = await self.db.add_event(command_id, seq, event_type, safe_payload)
            async with self.lock:
                queues = list(self.subscribers.get(command_id, []))
                global_queues = list(self.global_subscribers)
            for q in queues:
                await q.put(stored)
            for q in global_queues:
                await q.put(stored)
        return stored

    def forget(self, command_id: str) -> None:
        self.seqs.pop(command_id, None)

    async def subscribe(self, command_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.subscribers.setdefault(command_id, []).append(queue)
        return queue

    async def subscribe_global(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.global_subscribers.append(queue)
        return queue

    async def unsubscribe(self, command_id: str, queue: asyncio.Queue) -> None:
        async with self.lock:
            queues = self.subscribers.get(command_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self.subscribers.pop(command_id, None)

    async def unsubscribe_global(self, queue: asyncio.Queue) -> None:
        async with self.lock:
            if queue in self.global_subscribers:
                self.global_subscribers.remove(queue)


class PendingConfirmation:
    def __init__(self, confirm_id: str, command_id: str, tool_name: str, args: Dict[str, Any], timeout_s: float):
        self.confirm_id = confirm_id
        self.command_id = command_id
        self.tool_name = tool_name
        self.args = args
        self.expires_at = time.time() + timeout_s
        self.future: "asyncio.Future[bool]" = asyncio.get_running_loop().create_future()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "confirm_id": self.confirm_id,
            "command_id": self.command_id,
            "tool_name": self.tool_name,
            "args": self.args,
            "expires_at": self.expires_at,
        }


class ConfirmationBroker:
    """Approval prompts for destructive calls; every prompt resolves exactly once, default deny."""

    def __init__(self, timeout_s: float = 30.0):
        self.timeout_s = timeout_s
        self.pending: Dict[str, PendingConfirmation] = {}

    async def request(
        self,
        command_id: str,
        tool_name: str,
        args: Dict[str, Any],
        announce: Optional[Callable[[PendingConfirmation], Awaitable[Any]]] = None,
    ) -> bool:
        pending = PendingConfirmation(new_confirm_id(), command_id, tool_name, dict(args or {}), self.timeout_s)
        self.pending[pending.confirm_id] = pending
        try:
            if announce is not None:
                await announce(pending)
            return bool(await run_with_timeout(pending.future, self.timeout_s))
        except OperationTimeout:
            logger.warning("Confirmation %s for %s timed out; denying", pending.confirm_id, tool_name)
            return False
        finally:
            self.pending.pop(pending.confirm_id, None)

    def resolve(self, confirm_id: str, approved: bool) -> bool:
        pending = self.pending.pop(confirm_id, None)
        if pending is None or pending.future.done():
            return False
        pending.future.set_result(bool(approved))
        return True

    def resolve_for_command(self, command_id: str, approved: bool = False) -> int:
        matched = [cid for cid, p in self.pending.items() if p.command_id == command_id]
        return sum(1 for cid in matched if self.resolve(cid, approved))

    def resolve_all(self, approved: bool = False) -> int:
        return sum(1 for cid in list(self.pending.keys()) if self.resolve(cid, approved))

    def list_pending(self) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self.pending.values()]


class QueuedCommand:
    def __init__(self, command: Command):
        self.command = command
        self.signal = CancelSignal()
        self.future: "asyncio.Future[CommandResult]" = asyncio.get_running_loop().create_future()


class OrchestratorState:
    """Running slot plus FIFO queue. Mutated only through admit/cancel_current/complete_current."""

    def __init__(self) -> None:
        self.current: Optional[QueuedCommand] = None
        self.queue: Deque[QueuedCommand] = deque()

    @property
    def processing(self) -> bool:
        return self.current is not None

    def admit(self, item: QueuedCommand) -> bool:
        """True when ``item`` takes the running slot, False when it was queued."""
        if self.current is None:
            self.current = item
            item.command.state = "running"
            return True
        self.queue.append(item)
        return False

    def cancel_current(self, reason: str = "cancelled") -> Optional[Command]:
        if self.current is None:
            return None
        self.current.signal.cancel(reason)
        return self.current.command

    def complete_current(self) -> Optional[QueuedCommand]:
        """Clear the running slot and promote the next queued command, if any."""
        self.current = None
        if not self.queue:
            return None
        nxt = self.queue.popleft()
        self.current = nxt
        nxt.command.state = "running"
        return nxt


class CommandOrchestrator:
    def __init__(
        self,
        executor: ToolExecutor,
        db: Database,
        bus: EventBus,
        broker: Optional[ConfirmationBroker] = None,
        *,
        recent_history_count: int = 5,
        history_max_entries: int = 500,
        history_max_age_days: float = 30,
        unattended_policy: str = "non-interactive",
        notifier: Optional[NotifyFn] = None,
    ):
        self.executor = executor
        self.db = db
        self.bus = bus
        self.broker = broker or ConfirmationBroker()
        self.recent_history_count = recent_history_count
        self.history_max_entries = history_max_entries
        self.history_max_age_days = history_max_age_days
        self.unattended_policy = unattended_policy
        self.notifier = notifier
        self.state = OrchestratorState()
        self.tasks: Set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def processing(self) -> bool:
        return self.state.processing

    @property
    def queue_length(self) -> int:
        return len(self.state.queue)

    @property
    def current_command(self) -> Optional[Command]:
        return self.state.current.command if self.state.current else None

    async def enqueue(self, text: str, source: CommandSource = "interactive") -> Tuple[Command, "asyncio.Future[CommandResult]", int]:
        """Admit or queue a command. Returns the command, its completion future, and queue position (0 = running)."""
        item = QueuedCommand(Command(id=new_command_id(), text=text, source=source))
        if self.state.admit(item):
            self._start(item)
            return item.command, item.future, 0
        position = len(self.state.queue)
        logger.info("Queued command %s: %r (queue size: %s)", item.command.id, text, position)
        await self.bus.emit(item.command.id, "queued", {"command": text, "source": source, "queuePosition": position})
        return item.command, item.future, position

    async def submit(self, text: str, source: CommandSource = "interactive") -> CommandResult:
        _, future, _ = await self.enqueue(text, source)
        return await future

    def cancel(self) -> bool:
        """Cancel the running command only; queued commands are untouched."""
        command = self.state.cancel_current()
        if command is None:
            return False
        denied = self.broker.resolve_for_command(command.id, False)
        logger.info("Cancel requested for %s (%s confirmations denied)", command.id, denied)
        return True

    def resolve_confirmation(self, confirm_id: str, approved: bool) -> bool:
        return self.broker.resolve(confirm_id, approved)

    async def attach_observer(self) -> asyncio.Queue:
        return await self.bus.subscribe_global()

    async def detach_observer(self, queue: asyncio.Queue) -> None:
        await self.bus.unsubscribe_global(queue)
        if self.bus.observer_count == 0:
            denied = self.broker.resolve_all(False)
            if denied:
                logger.info("Observer channel lost; denied %s pending confirmations", denied)

    async def wait_idle(self) -> None:
        await self._idle.wait()

    async def shutdown(self) -> None:
        while self.state.queue:
            item = self.state.queue.popleft()
            item.command.state = "cancelled"
            if not item.future.done():
                item.future.set_result(
                    CommandResult(command_id=item.command.id, error=CANCELLED_MESSAGE, cancelled=True, summary=CANCELLED_MESSAGE)
                )
        self.cancel()
        if self.tasks:
            await asyncio.gather(*list(self.tasks), return_exceptions=True)

    def _start(self, item: QueuedCommand) -> None:
        self._idle.clear()
        task = asyncio.create_task(self._run(item))
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    def _make_confirm(self, command: Command) -> Callable[[str, Dict[str, Any]], Awaitable[bool]]:
        async def announce(pending: PendingConfirmation) -> None:
            await self.bus.emit(command.id, "confirm-needed", pending.to_dict())

        async def confirm(tool_name: str, args: Dict[str, Any]) -> bool:
            if self.bus.observer_count == 0:
                decision = self._unattended_decision(command)
                logger.info("No observer for %s confirmation (%s); policy %s -> %s", tool_name, command.source, self.unattended_policy, decision)
                return decision
            return await self.broker.request(command.id, tool_name, args, announce)

        return confirm

    def _unattended_decision(self, command: Command) -> bool:
        if self.unattended_policy == "allow":
            return True
        if self.unattended_policy == "deny":
            return False
        return command.source != "interactive"

    async def _execute(self, item: QueuedCommand) -> CommandResult:
        command = item.command

        async def emit(kind: str, payload: Dict[str, Any]) -> None:
            await self.bus.emit(command.id, kind, payload)

        await emit("start", {"command": command.text, "source": command.source})
        try:
            recent: List[HistoryEntry] = await self.db.list_history(self.recent_history_count)
            outcome = await self.executor.execute(
                command.text,
                emit,
                recent,
                signal=item.signal,
                confirm=self._make_confirm(command),
                command=command,
            )
        except CommandCancelled:
            outcome = ExecutionResult(tool_calls=list(command.tool_calls), error=CANCELLED_MESSAGE, cancelled=True)
        except Exception as exc:
            logger.exception("Command %s failed", command.id)
            message = f"Error: {exc}"
            await emit("error", {"message": message, "kind": getattr(exc, "kind", None)})
            outcome = ExecutionResult(tool_calls=list(command.tool_calls), error=message)

        if item.signal.cancelled and not outcome.cancelled:
            outcome = ExecutionResult(tool_calls=list(command.tool_calls), error=CANCELLED_MESSAGE, cancelled=True)
        command.state = "cancelled" if outcome.cancelled else "done"
        summary = build_completion_summary(outcome.response, outcome.error, command.tool_calls, outcome.cancelled)
        return CommandResult(
            command_id=command.id,
            response=None if outcome.cancelled else outcome.response,
            tool_calls=list(command.tool_calls),
            error=outcome.error,
            cancelled=outcome.cancelled,
            summary=summary,
        )

    async def _finalize(self, item: QueuedCommand, result: CommandResult) -> None:
        command = item.command
        await self.bus.emit(
            command.id,
            "complete",
            {
                "response": result.response,
                "error": result.error,
                "cancelled": result.cancelled,
                "summary": result.summary,
                "toolCalls": [record.model_dump() for record in result.tool_calls],
            },
        )
        await self.db.append_history(
            HistoryEntry(
                id=command.id,
                timestamp=command.submitted_at,
                command=command.text,
                source=command.source,
                tool_calls=result.tool_calls,
                response=result.response,
                error=result.error,
                cancelled=result.cancelled,
                summary=result.summary,
            )
        )
        await self.db.prune_history(self.history_max_entries, self.history_max_age_days)
        if self.bus.observer_count == 0:
            await self._notify(command, result)

    async def _notify(self, command: Command, result: CommandResult) -> None:
        if result.cancelled:
            title = "TabPilot: cancelled"
        elif result.error:
            title = "TabPilot: issue"
        else:
            title = "TabPilot: done"
        logger.info("%s - %s", title, result.summary)
        await self.bus.emit(command.id, "notification", {"title": title, "message": result.summary})
        if self.notifier is not None:
            try:
                await self.notifier(title, result.summary)
            except Exception:
                logger.exception("Notifier failed for %s", command.id)

    async def _run(self, item: QueuedCommand) -> None:
        result: Optional[CommandResult] = None
        try:
            result = await self._execute(item)
            await self._finalize(item, result)
        except Exception as exc:
            logger.exception("Command %s could not be finalized", item.command.id)
            if result is None:
                message = f"Error: {exc}"
                result = CommandResult(
                    command_id=item.command.id,
                    tool_calls=list(item.command.tool_calls),
                    error=message,
                    summary=build_completion_summary(None, message, item.command.tool_calls),
                )
        finally:
            self.broker.resolve_for_command(item.command.id, False)
            self.bus.forget(item.command.id)
            nxt = self.state.complete_current()
            if nxt is not None:
                logger.info("Dequeuing command %s: %r (remaining: %s)", nxt.command.id, nxt.command.text, len(self.state.queue))
                self._start(nxt)
            else:
                self._idle.set()
            if not item.future.done():
                item.future.set_result(
                    result
                    or CommandResult(
                        command_id=item.command.id,
                        tool_calls=list(item.command.tool_calls),
                        error=CANCELLED_MESSAGE,
                        cancelled=True,
                        summary=CANCELLED_MESSAGE,
                    )
                )
