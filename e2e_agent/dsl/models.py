"""Pydantic models for the test command DSL.

This module defines the value types the agent passes around: selectors,
commands, execution results, and the subtask lifecycle state machine.
"""

import re
import time
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, model_validator

from e2e_agent.core.exceptions import InvalidTransition, MalformedCommand


# =============================================================================
# ENUMS
# =============================================================================


class SelectorStrategy(str, Enum):
    """How a selector value identifies an element."""

    CSS = "css"
    XPATH = "xpath"
    TEXT = "text"
    ROLE = "role"
    TESTID = "testid"
    PLACEHOLDER = "placeholder"
    LABEL = "label"

    @classmethod
    def is_valid(cls, value: Any) -> bool:
        """Check whether a raw string names a recognized strategy."""
        return isinstance(value, str) and value in _STRATEGY_VALUES


_STRATEGY_VALUES = {s.value for s in SelectorStrategy}


class CommandType(str, Enum):
    """Kind of browser action a command performs."""

    # Navigation
    NAVIGATE = "navigate"
    GO_BACK = "goBack"
    GO_FORWARD = "goForward"
    RELOAD = "reload"
    # Interaction
    CLICK = "click"
    FILL = "fill"
    TYPE = "type"
    PRESS = "press"
    CHECK = "check"
    UNCHECK = "uncheck"
    SELECT_OPTION = "selectOption"
    HOVER = "hover"
    FOCUS = "focus"
    BLUR = "blur"
    CLEAR = "clear"
    # Assertions
    ASSERT_VISIBLE = "assertVisible"
    ASSERT_HIDDEN = "assertHidden"
    ASSERT_TEXT = "assertText"
    ASSERT_VALUE = "assertValue"
    ASSERT_ENABLED = "assertEnabled"
    ASSERT_DISABLED = "assertDisabled"
    ASSERT_CHECKED = "assertChecked"
    ASSERT_UNCHECKED = "assertUnchecked"
    ASSERT_URL = "assertUrl"
    ASSERT_TITLE = "assertTitle"
    # Utility
    WAIT = "wait"
    WAIT_FOR_SELECTOR = "waitForSelector"
    SCREENSHOT = "screenshot"
    SET_VIEWPORT = "setViewport"

    @classmethod
    def is_valid(cls, value: Any) -> bool:
        """Check whether a raw string names a recognized command type."""
        return isinstance(value, str) and value in _COMMAND_VALUES

    @property
    def dsl_name(self) -> str:
        """snake_case spelling used by the text form."""
        return re.sub(r"(?<!^)(?=[A-Z])", "_", self.value).lower()


_COMMAND_VALUES = {c.value for c in CommandType}


class TaskStatus(str, Enum):
    """Lifecycle state of a subtask."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


VALID_TRANSITIONS: dict[TaskStatus, tuple[TaskStatus, ...]] = {
    TaskStatus.PENDING: (TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED),
    TaskStatus.IN_PROGRESS: (TaskStatus.COMPLETED, TaskStatus.FAILED),
    TaskStatus.BLOCKED: (TaskStatus.IN_PROGRESS,),
    TaskStatus.COMPLETED: (),
    TaskStatus.FAILED: (),
}


def can_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    """Check the legal transition table."""
    return to_status in VALID_TRANSITIONS[from_status]


INTERACTION_COMMANDS: frozenset[CommandType] = frozenset(
    {
        CommandType.CLICK,
        CommandType.FILL,
        CommandType.TYPE,
        CommandType.PRESS,
        CommandType.CHECK,
        CommandType.UNCHECK,
        CommandType.SELECT_OPTION,
        CommandType.HOVER,
        CommandType.FOCUS,
        CommandType.BLUR,
        CommandType.CLEAR,
    }
)

ASSERTION_COMMANDS: frozenset[CommandType] = frozenset(
    {
        CommandType.ASSERT_VISIBLE,
        CommandType.ASSERT_HIDDEN,
        CommandType.ASSERT_TEXT,
        CommandType.ASSERT_VALUE,
        CommandType.ASSERT_ENABLED,
        CommandType.ASSERT_DISABLED,
        CommandType.ASSERT_CHECKED,
        CommandType.ASSERT_UNCHECKED,
        CommandType.ASSERT_URL,
        CommandType.ASSERT_TITLE,
    }
)

# Page-level commands that act without a target element.
SELECTORLESS_COMMANDS: frozenset[CommandType] = frozenset(
    {CommandType.PRESS, CommandType.ASSERT_URL, CommandType.ASSERT_TITLE}
)

SELECTOR_REQUIRED: frozenset[CommandType] = (
    INTERACTION_COMMANDS | ASSERTION_COMMANDS | {CommandType.WAIT_FOR_SELECTOR}
) - SELECTORLESS_COMMANDS

VALUE_REQUIRED: frozenset[CommandType] = frozenset({CommandType.FILL, CommandType.TYPE})


# =============================================================================
# SELECTORS
# =============================================================================


def _quote(value: str) -> str:
    """Quote a DSL value when it would not survive whitespace splitting."""
    if value and not re.search(r"[\s\"'\\]", value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _check_strategy(strategy: Any, value: Any) -> None:
    raw = getattr(strategy, "value", strategy)
    if not raw or not str(raw).strip():
        raise MalformedCommand("Strategy cannot be empty")
    if value is None or not str(value).strip():
        raise MalformedCommand("Value cannot be empty")
    if not SelectorStrategy.is_valid(raw):
        allowed = ", ".join(sorted(_STRATEGY_VALUES))
        raise MalformedCommand(
            f"Invalid selector strategy: {raw}. Must be one of: {allowed}"
        )


class FallbackSelector(BaseModel):
    """Alternative strategy/value pair tried after the primary selector."""

    model_config = ConfigDict(frozen=True)

    strategy: SelectorStrategy
    value: str

    @model_validator(mode="before")
    @classmethod
    def validate_parts(cls, data: Any) -> Any:
        if isinstance(data, dict):
            _check_strategy(data.get("strategy"), data.get("value"))
        return data


class Selector(BaseModel):
    """A strategy+value pair identifying a page element, with fallbacks.

    Example:
        >>> sel = Selector(strategy="text", value="Login")
        >>> sel.to_playwright()
        'text=Login'
    """

    model_config = ConfigDict(frozen=True)

    strategy: SelectorStrategy
    value: str
    fallbacks: tuple[FallbackSelector, ...] = Field(
        default_factory=tuple,
        description="Ordered alternatives",
    )
    metadata: dict[str, Any] | None = Field(
        default=None,
        description="Optional provenance such as confidence or source",
    )

    @model_validator(mode="before")
    @classmethod
    def validate_parts(cls, data: Any) -> Any:
        if isinstance(data, dict):
            _check_strategy(data.get("strategy"), data.get("value"))
        return data

    def to_playwright(self) -> str:
        """Render as a Playwright selector string."""
        if self.strategy == SelectorStrategy.CSS:
            return self.value
        if self.strategy == SelectorStrategy.TESTID:
            return f'[data-testid="{self.value}"]'
        if self.strategy == SelectorStrategy.PLACEHOLDER:
            return f'[placeholder="{self.value}"]'
        return f"{self.strategy.value}={self.value}"

    def to_dsl(self) -> str:
        """Render as a DSL selector token, fallbacks included."""
        parts = [f"{self.strategy.value}={_quote(self.value)}"]
        for fb in self.fallbacks:
            parts.append(f"fallback={fb.strategy.value}={_quote(fb.value)}")
        return " ".join(parts)

    def equals(self, other: "Selector") -> bool:
        """Compare strategy and value, ignoring fallbacks and metadata."""
        return self.strategy == other.strategy and self.value == other.value

    def all_candidates(self) -> list[tuple[SelectorStrategy, str]]:
        """Primary followed by fallbacks, in try order."""
        return [(self.strategy, self.value)] + [(f.strategy, f.value) for f in self.fallbacks]

    def clone(self, **overrides: Any) -> "Selector":
        data = self.model_dump()
        data.update(overrides)
        return Selector(**data)

    def __str__(self) -> str:
        return f"{self.strategy.value}:{self.value}"


# =============================================================================
# COMMANDS
# =============================================================================


class Command(BaseModel):
    """One typed browser action.

    Construction validates the required fields for the action kind and
    raises :class:`MalformedCommand` otherwise. Commands are immutable; use
    :meth:`clone` to derive a modified copy.

    Example:
        >>> cmd = Command(type="navigate", params={"url": "https://example.com"})
        >>> cmd.to_dsl()
        'navigate url=https://example.com'
    """

    model_config = ConfigDict(frozen=True)

    type: CommandType
    params: dict[str, Any] = Field(default_factory=dict)
    selector: Selector | None = None

    @model_validator(mode="before")
    @classmethod
    def validate_required(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data

        raw_type = getattr(data.get("type"), "value", data.get("type"))
        if not raw_type or not str(raw_type).strip():
            raise MalformedCommand("Command type cannot be empty")
        if not CommandType.is_valid(raw_type):
            raise MalformedCommand(
                f"Invalid command type: {raw_type}. Must be a valid CommandType."
            )

        command_type = CommandType(raw_type)
        params = data.get("params") or {}

        if command_type in SELECTOR_REQUIRED and data.get("selector") is None:
            raise MalformedCommand(f"Selector is required for {raw_type} commands")
        if command_type == CommandType.NAVIGATE and not params.get("url"):
            raise MalformedCommand("url parameter is required for navigate commands")
        if command_type in VALUE_REQUIRED and params.get("value") in (None, ""):
            raise MalformedCommand(f"value parameter is required for {raw_type} commands")
        return data

    def is_interaction(self) -> bool:
        return self.type in INTERACTION_COMMANDS

    def is_assertion(self) -> bool:
        return self.type in ASSERTION_COMMANDS

    def clone(self, **overrides: Any) -> "Command":
        """Return a validated copy with ``overrides`` applied."""
        data = self.model_dump()
        data.update(overrides)
        return Command(**data)

    def to_dsl(self) -> str:
        """Render as one line of the DSL text form."""
        parts = [self.type.dsl_name]
        if self.selector is not None:
            parts.append(self.selector.to_dsl())
        for key, value in self.params.items():
            if isinstance(value, bool):
                value = str(value).lower()
            parts.append(f"{key}={_quote(str(value))}")
        return " ".join(parts)

    def __str__(self) -> str:
        param_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        if self.selector is not None:
            inner = f"{self.selector}" + (f", {param_str}" if param_str else "")
            return f"{self.type.value}({inner})"
        if param_str:
            return f"{self.type.value}({param_str})"
        return self.type.value


def noop_command() -> Command:
    """Placeholder command that does nothing when executed."""
    return Command(type=CommandType.WAIT, params={"timeout": "0"})


# =============================================================================
# EXECUTION RESULTS
# =============================================================================


class ExecutionResult(BaseModel):
    """Outcome of executing a command or a subtask. Immutable."""

    model_config = ConfigDict(frozen=True)

    success: bool
    output: str | None = None
    error: str | None = None
    screenshots: list[str] = Field(default_factory=list)
    duration: float = Field(default=0.0, ge=0.0, description="Milliseconds")
    timestamp: datetime = Field(default_factory=datetime.now)
    failed_command_index: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# SUBTASKS
# =============================================================================


class Subtask(BaseModel):
    """Executable unit of commands with its own lifecycle state.

    Transitions follow :data:`VALID_TRANSITIONS`; any other transition raises
    :class:`InvalidTransition` and leaves the subtask unchanged.

    Example:
        >>> sub = Subtask(id="login", description="Log in", commands=[...])
        >>> sub.mark_in_progress()
        >>> sub.mark_completed()
        >>> sub.status
        <TaskStatus.COMPLETED: 'completed'>
    """

    model_config = ConfigDict(frozen=False, validate_assignment=False)

    id: str = Field(..., min_length=1, description="Unique subtask identifier")
    description: str = Field(..., min_length=1)
    commands: list[Command] = Field(..., min_length=1)
    dependencies: set[str] = Field(default_factory=set)
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    result: ExecutionResult | None = None

    _started_at: float | None = PrivateAttr(default=None)

    @model_validator(mode="after")
    def validate_identity(self) -> "Subtask":
        if not self.id.strip():
            raise ValueError("Subtask id cannot be empty")
        if not self.description.strip():
            raise ValueError("Subtask description cannot be empty")
        return self

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    def _transition(self, to_status: TaskStatus) -> None:
        if not can_transition(self.status, to_status):
            raise InvalidTransition(
                self.status, to_status, list(VALID_TRANSITIONS[self.status])
            )
        self.status = to_status

    def _elapsed_ms(self) -> float:
        if self._started_at is None:
            return 0.0
        return (time.monotonic() - self._started_at) * 1000

    def mark_in_progress(self) -> None:
        """Start execution and remember the start time."""
        self._transition(TaskStatus.IN_PROGRESS)
        self._started_at = time.monotonic()
        self.result = ExecutionResult(success=False)

    def mark_completed(
        self,
        output: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Finish successfully."""
        self._transition(TaskStatus.COMPLETED)
        self.result = ExecutionResult(
            success=True,
            output=output,
            duration=self._elapsed_ms(),
            metadata=metadata or {},
        )

    def mark_failed(
        self,
        error: str | BaseException,
        failed_command_index: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Finish unsuccessfully, recording the error text."""
        self._transition(TaskStatus.FAILED)
        self.result = ExecutionResult(
            success=False,
            error=str(error),
            duration=self._elapsed_ms(),
            failed_command_index=failed_command_index,
            metadata=metadata or {},
        )

    def mark_blocked(self, reason: str) -> None:
        """Block the subtask, keeping the reason in ``result.error``."""
        self._transition(TaskStatus.BLOCKED)
        self.result = ExecutionResult(success=False, error=f"Blocked: {reason}")

    def is_pending(self) -> bool:
        return self.status == TaskStatus.PENDING

    def is_in_progress(self) -> bool:
        return self.status == TaskStatus.IN_PROGRESS

    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    def is_failed(self) -> bool:
        return self.status == TaskStatus.FAILED

    def is_blocked(self) -> bool:
        return self.status == TaskStatus.BLOCKED

    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dsl(self) -> str:
        """Serialize the command list to DSL text."""
        return "\n".join(cmd.to_dsl() for cmd in self.commands)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "description": self.description,
            "commands": [cmd.to_dsl() for cmd in self.commands],
            "dependencies": sorted(self.dependencies),
            "status": self.status.value,
            "result": self.result.model_dump(mode="json") if self.result else None,
        }


# =============================================================================
# TASKS
# =============================================================================


class Task(BaseModel):
    """A named test made of ordered subtasks plus optional setup/teardown."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    subtask_ids: list[str] = Field(default_factory=list)
    setup: list[Command] = Field(default_factory=list)
    teardown: list[Command] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_subtasks(self) -> "Task":
        if len(set(self.subtask_ids)) != len(self.subtask_ids):
            raise ValueError("Duplicate subtask IDs are not allowed")
        return self

    def has_setup(self) -> bool:
        return bool(self.setup)

    def has_teardown(self) -> bool:
        return bool(self.teardown)
