import asyncio
import itertools
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from . import agents
from .cancellation import CancelSignal, CommandCancelled, OperationTimeout, await_with_signal, run_with_timeout
from .config import AppSettings
from .context import CONTEXT_PLACEHOLDER, build_context
from .guardrails import DedupIndex, Guardrails, denied_result, is_destructive, permission_tiers
from .llm import ChatClient
from .schemas import (
    CANCELLED_MESSAGE,
    MAX_ITERATIONS_ERROR,
    Command,
    ExecutionResult,
    HistoryEntry,
)
from .tools import ToolRegistry
from .url_policy import normalize_pattern_list


logger = logging.getLogger("uvicorn.error")

EmitFn = Callable[[str, Dict[str, Any]], Awaitable[None]]
ConfirmFn = Callable[[str, Dict[str, Any]], Awaitable[bool]]

MAX_ITERATIONS_MESSAGE = "Reached maximum tool call iterations. Here's what was done so far."
NO_RESPONSE = "(no response)"
PRERUN_CALL_ID = "prerun_list_tabs"
HISTORY_RESULT_CHARS = 500

_call_counter = itertools.count()


def next_call_id() -> str:
    return f"tc_{int(time.time() * 1000)}_{next(_call_counter)}"


async def _no_emit(kind: str, payload: Dict[str, Any]) -> None:
    return None


def parse_tool_arguments(raw: Any) -> Dict[str, Any]:
    """Decode a model's JSON-string arguments; anything malformed becomes ``{}``."""
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.warning("Malformed tool arguments from model: %.200s", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def history_messages(entries: Sequence[HistoryEntry], result_chars: int = HISTORY_RESULT_CHARS) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = []
    for entry in entries:
        messages.append({"role": "user", "content": f"User command: {entry.command}"})
        if entry.tool_calls:
            ids = [f"hist_{entry.id}_{i}" for i in range(len(entry.tool_calls))]
            messages.append(
                {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {
                            "id": call_id,
                            "type": "function",
                            "function": {"name": record.name, "arguments": json.dumps(record.args or {})},
                        }
                        for call_id, record in zip(ids, entry.tool_calls)
                    ],
                }
            )
            for call_id, record in zip(ids, entry.tool_calls):
                content = json.dumps(record.result or {})
                if len(content) > result_chars:
                    content = content[: result_chars - 3] + "..."
                messages.append({"role": "tool", "tool_call_id": call_id, "content": content})
        if entry.response:
            messages.append({"role": "assistant", "content": entry.response})
    return messages


class _PendingCall:
    __slots__ = ("tool_call_id", "call_id", "name", "args", "result")

    def __init__(self, tool_call_id: str, call_id: str, name: str, args: Dict[str, Any]):
        self.tool_call_id = tool_call_id
        self.call_id = call_id
        self.name = name
        self.args = args
        self.result: Optional[Dict[str, Any]] = None


class ToolExecutor:
    """Bounded model/tool-call loop for exactly one command."""

    def __init__(
        self,
        llm: ChatClient,
        registry: ToolRegistry,
        *,
        blocked_patterns: Sequence[str] = (),
        max_iterations: int = 10,
        global_context_budget: int = 10000,
        max_chars_per_item: int = 800,
        content_extraction_timeout_s: float = 1.5,
        context_build_timeout_s: float = 5.0,
        auto_wait_timeout_ms: int = 7000,
    ):
        self.llm = llm
        self.registry = registry
        self.blocked_patterns = list(blocked_patterns)
        self.max_iterations = max_iterations
        self.global_context_budget = global_context_budget
        self.max_chars_per_item = max_chars_per_item
        self.content_extraction_timeout_s = content_extraction_timeout_s
        self.context_build_timeout_s = context_build_timeout_s
        self.auto_wait_timeout_ms = auto_wait_timeout_ms

    @classmethod
    def from_settings(cls, settings: AppSettings, llm: ChatClient, registry: ToolRegistry) -> "ToolExecutor":
        return cls(
            llm,
            registry,
            blocked_patterns=normalize_pattern_list(settings.blocked_sites),
            max_iterations=settings.max_iterations,
            global_context_budget=settings.global_context_budget,
            max_chars_per_item=settings.max_chars_per_item,
            content_extraction_timeout_s=settings.content_extraction_timeout_s,
            context_build_timeout_s=settings.context_build_timeout_s,
            auto_wait_timeout_ms=settings.auto_wait_timeout_ms,
        )

    async def execute(
        self,
        text: str,
        emit: Optional[EmitFn] = None,
        recent_history: Optional[Sequence[HistoryEntry]] = None,
        *,
        signal: Optional[CancelSignal] = None,
        confirm: Optional[ConfirmFn] = None,
        command: Optional[Command] = None,
    ) -> ExecutionResult:
        """Run ``text`` to a final answer. Model errors (LLMError) propagate; everything else is folded in."""
        emit = emit or _no_emit
        command = command or Command(id=next_call_id(), text=text)
        try:
            return await self._run(text, emit, recent_history or [], signal, confirm, command)
        except CommandCancelled:
            logger.info("Command %s cancelled", command.id)
            await emit("error", {"message": CANCELLED_MESSAGE})
            return ExecutionResult(
                response=None,
                tool_calls=list(command.tool_calls),
                error=CANCELLED_MESSAGE,
                cancelled=True,
            )

    async def _run(
        self,
        text: str,
        emit: EmitFn,
        recent_history: Sequence[HistoryEntry],
        signal: Optional[CancelSignal],
        confirm: Optional[ConfirmFn],
        command: Command,
    ) -> ExecutionResult:
        guardrails = Guardrails(self.registry, self.blocked_patterns, DedupIndex())
        tools = self.registry.definitions()

        listed = await self._prefetch_tabs(emit, signal, command)
        tabs: Optional[List[Dict[str, Any]]] = None
        if listed is not None and isinstance(listed.get("tabs"), list):
            tabs = listed["tabs"]
            guardrails.index.seed(tabs)

        context = await run_with_timeout(
            build_context(
                self.registry,
                self.blocked_patterns,
                tabs=tabs,
                global_budget=self.global_context_budget,
                max_chars_per_item=self.max_chars_per_item,
                extraction_timeout_s=self.content_extraction_timeout_s,
            ),
            self.context_build_timeout_s,
            signal=signal,
            fallback=CONTEXT_PLACEHOLDER,
        )

        messages: List[Dict[str, Any]] = [{"role": "system", "content": agents.SYSTEM_PROMPT}]
        messages.extend(history_messages(recent_history))
        messages.append({"role": "user", "content": f"{context}\n\nUser command: {text}"})
        if listed is not None:
            # Pretend the model already asked for the tab list so it does not ask again.
            messages.append(
                {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {"id": PRERUN_CALL_ID, "type": "function", "function": {"name": "list_tabs", "arguments": "{}"}}
                    ],
                }
            )
            messages.append({"role": "tool", "tool_call_id": PRERUN_CALL_ID, "content": json.dumps(listed)})

        for iteration in range(self.max_iterations):
            if signal is not None:
                signal.raise_if_cancelled()
            message = await await_with_signal(self.llm.complete(messages, tools, signal=signal), signal)
            if signal is not None:
                signal.raise_if_cancelled()

            tool_calls = message.get("tool_calls") or []
            if not tool_calls:
                response = message.get("content") or NO_RESPONSE
                messages.append(message)
                await emit("final-response", {"message": response})
                return ExecutionResult(response=response, tool_calls=list(command.tool_calls))

            pending = self._parse_calls(tool_calls)
            messages.append(message)

            plan = agents.build_plan_line([c.name for c in pending], message.get("content"))
            if plan:
                await emit("plan", {"message": plan})
            tiers = permission_tiers(c.name for c in pending)
            if tiers:
                await emit("permission-tiers", {"tiers": tiers})
            for call in pending:
                command.record_requested(call.call_id, call.name, call.args)
                logger.info("Tool requested %s(%s)", call.name, json.dumps(call.args)[:300])
                await emit("tool-requested", {"callId": call.call_id, "name": call.name, "args": call.args})

            approvals: Dict[str, bool] = {}
            for call in pending:
                if not is_destructive(call.name):
                    continue
                if signal is not None:
                    signal.raise_if_cancelled()
                if confirm is None:
                    approvals[call.call_id] = True
                    continue
                try:
                    approved = await await_with_signal(confirm(call.name, call.args), signal)
                except CommandCancelled:
                    raise
                except Exception as exc:
                    error = f"Confirmation error: {exc}"
                    logger.warning(error)
                    await emit("error", {"message": error})
                    return ExecutionResult(tool_calls=list(command.tool_calls), error=error)
                approvals[call.call_id] = bool(approved)

            outcomes = await asyncio.gather(
                *(self._run_call(call, approvals, guardrails, emit, signal, command) for call in pending),
                return_exceptions=True,
            )
            failure = self._first_failure(outcomes)
            if failure is not None:
                error = f"Tool execution error: {failure}"
                await emit("error", {"message": error})
                return ExecutionResult(tool_calls=list(command.tool_calls), error=error)

            for call in pending:
                messages.append(
                    {"role": "tool", "tool_call_id": call.tool_call_id, "content": json.dumps(call.result)}
                )

            created = [
                tab_id
                for tab_id in (self._created_tab_id(c.result) for c in pending if c.name == "create_tab")
                if tab_id is not None
            ]
            if created:
                follow_up = await self._auto_follow_up(created, iteration, guardrails, emit, signal, command)
                if isinstance(follow_up, str):
                    await emit("error", {"message": follow_up})
                    return ExecutionResult(tool_calls=list(command.tool_calls), error=follow_up)
                messages.extend(follow_up)

        await emit("error", {"message": MAX_ITERATIONS_MESSAGE})
        return ExecutionResult(
            response=MAX_ITERATIONS_MESSAGE,
            tool_calls=list(command.tool_calls),
            error=MAX_ITERATIONS_ERROR,
        )

    async def _prefetch_tabs(
        self, emit: EmitFn, signal: Optional[CancelSignal], command: Command
    ) -> Optional[Dict[str, Any]]:
        if signal is not None:
            signal.raise_if_cancelled()
        call_id = next_call_id()
        command.record_requested(call_id, "list_tabs", {})
        await emit("tool-requested", {"callId": call_id, "name": "list_tabs", "args": {}})
        listed: Optional[Dict[str, Any]]
        try:
            listed = await run_with_timeout(
                self.registry.execute("list_tabs", {}),
                self.context_build_timeout_s,
                signal=signal,
                interrupt=False,
            )
            result = listed
        except OperationTimeout:
            logger.warning("Pre-run list_tabs timed out after %ss", self.context_build_timeout_s)
            listed = None
            result = {"error": "Timed out listing tabs."}
        command.record_resolved(call_id, result)
        await emit("tool-resolved", {"callId": call_id, "name": "list_tabs", "result": result})
        return listed

    def _parse_calls(self, tool_calls: List[Dict[str, Any]]) -> List[_PendingCall]:
        pending: List[_PendingCall] = []
        for tool_call in tool_calls:
            function = tool_call.get("function") or {}
            call_id = next_call_id()
            if not tool_call.get("id"):
                # Tool messages must point at an id present on the assistant message.
                tool_call["id"] = call_id
            pending.append(
                _PendingCall(
                    tool_call_id=tool_call["id"],
                    call_id=call_id,
                    name=str(function.get("name") or ""),
                    args=parse_tool_arguments(function.get("arguments")),
                )
            )
        return pending

    async def _run_call(
        self,
        call: _PendingCall,
        approvals: Dict[str, bool],
        guardrails: Guardrails,
        emit: EmitFn,
        signal: Optional[CancelSignal],
        command: Command,
    ) -> None:
        if is_destructive(call.name) and approvals.get(call.call_id) is False:
            result = denied_result()
        else:
            if signal is not None:
                signal.raise_if_cancelled()
            result = await await_with_signal(guardrails.dispatch(call.name, call.args), signal)
            if signal is not None:
                signal.raise_if_cancelled()
        call.result = result
        command.record_resolved(call.call_id, result)
        logger.info("Tool resolved %s -> %s", call.name, json.dumps(result)[:300])
        await emit("tool-resolved", {"callId": call.call_id, "name": call.name, "result": result})

    def _first_failure(self, outcomes: List[Any]) -> Optional[BaseException]:
        failure: Optional[BaseException] = None
        for outcome in outcomes:
            if isinstance(outcome, CommandCancelled):
                raise outcome
            if isinstance(outcome, BaseException) and failure is None:
                failure = outcome
        if failure is not None and not isinstance(failure, Exception):
            raise failure
        return failure

    @staticmethod
    def _created_tab_id(result: Optional[Dict[str, Any]]) -> Optional[int]:
        if not isinstance(result, dict) or result.get("error") or result.get("deduped"):
            return None
        tab = result.get("tab")
        if not isinstance(tab, dict):
            return None
        tab_id = tab.get("id")
        if isinstance(tab_id, int) and not isinstance(tab_id, bool):
            return tab_id
        return None

    async def _follow_up_one(
        self,
        tab_id: int,
        guardrails: Guardrails,
        emit: EmitFn,
        signal: Optional[CancelSignal],
        command: Command,
    ) -> List[_PendingCall]:
        steps = [
            ("wait_for_page", {"tabId": tab_id, "timeout": self.auto_wait_timeout_ms}),
            ("inspect_page", {"tabId": tab_id}),
        ]
        done: List[_PendingCall] = []
        for name, args in steps:
            if signal is not None:
                signal.raise_if_cancelled()
            call = _PendingCall(tool_call_id="", call_id=next_call_id(), name=name, args=args)
            command.record_requested(call.call_id, name, args)
            await emit("tool-requested", {"callId": call.call_id, "name": name, "args": args})
            call.result = await await_with_signal(guardrails.dispatch(name, args), signal)
            command.record_resolved(call.call_id, call.result)
            await emit("tool-resolved", {"callId": call.call_id, "name": name, "result": call.result})
            done.append(call)
        return done

    async def _auto_follow_up(
        self,
        tab_ids: List[int],
        iteration: int,
        guardrails: Guardrails,
        emit: EmitFn,
        signal: Optional[CancelSignal],
        command: Command,
    ) -> Any:
        """Wait on and inspect each new tab; returns synthetic transcript messages or an error string."""
        if signal is not None:
            signal.raise_if_cancelled()
        await emit("plan", {"message": agents.follow_up_plan_line(len(tab_ids))})
        outcomes = await asyncio.gather(
            *(self._follow_up_one(tab_id, guardrails, emit, signal, command) for tab_id in tab_ids),
            return_exceptions=True,
        )
        failure = self._first_failure(outcomes)
        if failure is not None:
            return f"Auto-follow-up error: {failure}"

        synthetic_calls: List[Dict[str, Any]] = []
        tool_messages: List[Dict[str, Any]] = []
        for index, (tab_id, calls) in enumerate(zip(tab_ids, outcomes)):
            for prefix, call in zip(("auto_wait", "auto_inspect"), calls):
                call.tool_call_id = f"{prefix}_{iteration}_{tab_id}_{index}"
                synthetic_calls.append(
                    {
                        "id": call.tool_call_id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.args)},
                    }
                )
                tool_messages.append(
                    {"role": "tool", "tool_call_id": call.tool_call_id, "content": json.dumps(call.result)}
                )
        return [{"role": "assistant", "content": None, "tool_calls": synthetic_calls}, *tool_messages]
