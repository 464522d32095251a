"""Test command DSL - value types, tokenizer, and parser."""

from e2e_agent.dsl.models import (
    ASSERTION_COMMANDS,
    INTERACTION_COMMANDS,
    VALID_TRANSITIONS,
    Command,
    CommandType,
    ExecutionResult,
    FallbackSelector,
    Selector,
    SelectorStrategy,
    Subtask,
    Task,
    TaskStatus,
    can_transition,
    noop_command,
)
from e2e_agent.dsl.parser import (
    CommandParser,
    DSLParser,
    ParsedCommand,
    ParseFailure,
    ParseResult,
    serialize_commands,
)
from e2e_agent.dsl.tokenizer import Token, Tokenizer, TokenType, strip_code_fences

__all__ = [
    # Models
    "Command",
    "CommandType",
    "ExecutionResult",
    "FallbackSelector",
    "Selector",
    "SelectorStrategy",
    "Subtask",
    "Task",
    "TaskStatus",
    "VALID_TRANSITIONS",
    "INTERACTION_COMMANDS",
    "ASSERTION_COMMANDS",
    "can_transition",
    "noop_command",
    # Parsing
    "Token",
    "TokenType",
    "Tokenizer",
    "CommandParser",
    "DSLParser",
    "ParsedCommand",
    "ParseFailure",
    "ParseResult",
    "serialize_commands",
    "strip_code_fences",
]
