"""DSL parser - turns DSL text into typed commands.

Model output is untrusted input, so the line-level entry points return a
tagged result (:class:`ParsedCommand` or :class:`ParseFailure`) and let the
caller pick the fallback. Whole-file parsing raises :class:`MalformedCommand`
with the offending line number.
"""

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from e2e_agent.core.exceptions import MalformedCommand
from e2e_agent.dsl.models import (
    Command,
    CommandType,
    FallbackSelector,
    Selector,
    SELECTOR_REQUIRED,
    VALUE_REQUIRED,
)
from e2e_agent.dsl.tokenizer import Token, TokenType, Tokenizer, strip_code_fences


# =============================================================================
# PARSE RESULTS
# =============================================================================


@dataclass(frozen=True)
class ParsedCommand:
    """A line that parsed into a valid command."""

    command: Command
    line_number: int
    source: str

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class ParseFailure:
    """A line that could not be parsed, with the reason."""

    error: str
    line_number: int
    source: str

    @property
    def ok(self) -> bool:
        return False


ParseResult = ParsedCommand | ParseFailure


# =============================================================================
# COMMAND PARSER
# =============================================================================


class CommandParser:
    """Build a :class:`Command` from a token list."""

    def parse(self, tokens: list[Token], line_number: int) -> Command:
        """Parse tokens into a command.

        Raises:
            MalformedCommand: Unknown command, missing selector or params.
        """
        if not tokens:
            raise MalformedCommand(f"Line {line_number}: No tokens to parse")

        head = tokens[0]
        if head.type != TokenType.COMMAND:
            raise MalformedCommand(f"Line {line_number}: Expected command token")
        if not CommandType.is_valid(head.value):
            raise MalformedCommand(f"Line {line_number}: Unknown command: {head.value}")

        command_type = CommandType(head.value)
        selector_token = next((t for t in tokens if t.type == TokenType.SELECTOR), None)
        params = {t.key: t.value for t in tokens if t.type == TokenType.PARAM and t.key}

        if command_type in SELECTOR_REQUIRED and selector_token is None:
            raise MalformedCommand(
                f"Line {line_number}: {command_type.value} requires a selector"
            )
        if command_type == CommandType.NAVIGATE and not params.get("url"):
            raise MalformedCommand(f"Line {line_number}: Missing required parameter: url")
        if command_type in VALUE_REQUIRED and not params.get("value"):
            raise MalformedCommand(
                f"Line {line_number}: Missing required parameter: value "
                f"for {command_type.value} command"
            )

        try:
            selector = self._build_selector(selector_token) if selector_token else None
            return Command(type=command_type, params=params, selector=selector)
        except MalformedCommand as e:
            raise MalformedCommand(f"Line {line_number}: {e}") from e

    @staticmethod
    def _build_selector(token: Token) -> Selector:
        return Selector(
            strategy=token.strategy,
            value=token.value,
            fallbacks=tuple(
                FallbackSelector(strategy=fb.strategy, value=fb.value)
                for fb in token.fallbacks
            ),
        )


# =============================================================================
# DSL PARSER
# =============================================================================


class DSLParser:
    """
    Parse DSL content line by line.

    Example:
        >>> parser = DSLParser()
        >>> commands = parser.parse_content('navigate url=https://shop.test\\nclick text="Buy"')
        >>> [c.type.value for c in commands]
        ['navigate', 'click']
    """

    def __init__(self) -> None:
        self.tokenizer = Tokenizer()
        self.command_parser = CommandParser()

    def parse_line(self, line: str, line_number: int = 1) -> ParseResult | None:
        """Parse one line.

        Returns:
            ``None`` for blank/comment lines, otherwise a tagged result.
        """
        tokens = self.tokenizer.tokenize(line)
        if not tokens:
            return None
        try:
            command = self.command_parser.parse(tokens, line_number)
        except MalformedCommand as e:
            return ParseFailure(error=str(e), line_number=line_number, source=line.strip())
        return ParsedCommand(command=command, line_number=line_number, source=line.strip())

    def parse_lines(self, content: str) -> list[ParseResult]:
        """Parse every non-blank line, collecting failures instead of raising."""
        results: list[ParseResult] = []
        for number, line in enumerate(content.split("\n"), start=1):
            result = self.parse_line(line, number)
            if result is not None:
                results.append(result)
        return results

    def parse_content(self, content: str) -> list[Command]:
        """Parse DSL content strictly.

        Args:
            content: DSL text, one command per line.

        Returns:
            Parsed commands in order.

        Raises:
            MalformedCommand: On the first bad line, prefixed with ``Line N:``.
        """
        commands: list[Command] = []
        for result in self.parse_lines(content):
            if isinstance(result, ParseFailure):
                message = result.error
                prefix = f"Line {result.line_number}"
                if not message.startswith(prefix):
                    message = f"{prefix}: {message}"
                raise MalformedCommand(message)
            commands.append(result.command)
        return commands

    def parse_file(self, path: str | Path) -> list[Command]:
        """Read and parse a DSL file.

        Raises:
            FileNotFoundError: If the file does not exist.
            MalformedCommand: If a line is malformed.
        """
        file_path = Path(path)
        if not file_path.is_file():
            raise FileNotFoundError(f"File not found: {file_path}")
        logger.debug(f"Parsing DSL file {file_path}")
        return self.parse_content(file_path.read_text(encoding="utf-8"))

    def parse_response(self, response: str) -> ParseResult:
        """Parse a single command out of a model response.

        Code fences are stripped and the first parseable line wins; if no line
        parses, the first failure is returned.
        """
        cleaned = strip_code_fences(response)
        first_failure: ParseFailure | None = None
        for result in self.parse_lines(cleaned):
            if isinstance(result, ParsedCommand):
                return result
            if first_failure is None:
                first_failure = result
        if first_failure is not None:
            return first_failure
        return ParseFailure(error="Response contained no command", line_number=0, source=cleaned)


def serialize_commands(commands: list[Command]) -> str:
    """Render commands as DSL text, one per line."""
    return "\n".join(cmd.to_dsl() for cmd in commands)
