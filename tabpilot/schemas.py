import time
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


CommandSource = Literal["interactive", "voice", "external"]
CommandState = Literal["queued", "running", "done", "cancelled"]

CANCELLED_MESSAGE = "Command cancelled."
MAX_ITERATIONS_ERROR = "Max iterations reached"


class ToolCallRecord(BaseModel):
    call_id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    timestamp: float = Field(default_factory=time.time)

    @property
    def failed(self) -> bool:
        return bool(self.result and self.result.get("error"))


class Command(BaseModel):
    id: str
    text: str
    source: CommandSource = "interactive"
    submitted_at: float = Field(default_factory=time.time)
    state: CommandState = "queued"
    tool_calls: List[ToolCallRecord] = Field(default_factory=list)

    def record_requested(self, call_id: str, name: str, args: Dict[str, Any]) -> None:
        self.tool_calls.append(ToolCallRecord(call_id=call_id, name=name, args=dict(args or {})))

    def record_resolved(self, call_id: str, result: Dict[str, Any]) -> None:
        # Matched by id: concurrent calls finish out of order.
        for record in reversed(self.tool_calls):
            if record.call_id == call_id:
                if record.result is None:
                    record.result = result
                return


class ExecutionResult(BaseModel):
    response: Optional[str] = None
    tool_calls: List[ToolCallRecord] = Field(default_factory=list)
    error: Optional[str] = None
    cancelled: bool = False


class CommandResult(ExecutionResult):
    command_id: str
    summary: str = ""


class HistoryEntry(BaseModel):
    id: str
    timestamp: float
    command: str
    source: CommandSource = "interactive"
    tool_calls: List[ToolCallRecord] = Field(default_factory=list)
    response: Optional[str] = None
    error: Optional[str] = None
    cancelled: bool = False
    summary: str = ""


class SubmitCommandRequest(BaseModel):
    text: str
    source: CommandSource = "interactive"
    wait: bool = True


class ConfirmResponseRequest(BaseModel):
    confirm_id: str
    approved: bool = False
