"""Line tokenizer for the DSL text form.

A line looks like::

    click text="Sign in" fallback=css=button[type=submit] timeout=5000

The first word is the command, ``<strategy>=<value>`` words are selectors
(optionally followed by fallbacks), other ``key=value`` words are params,
and anything else is ignored. ``#`` starts a comment line.
"""

import re
from dataclasses import dataclass, field
from enum import Enum

from e2e_agent.dsl.models import SelectorStrategy

# Spellings that do not follow the plain snake_case -> camelCase rule.
COMMAND_ALIASES: dict[str, str] = {
    "assert_exists": "assertVisible",
    "assert_not_exists": "assertHidden",
    "wait_for": "waitForSelector",
    "wait_navigation": "wait",
    "keypress": "press",
}

STRATEGY_NAMES: tuple[str, ...] = tuple(s.value for s in SelectorStrategy)


class TokenType(str, Enum):
    COMMAND = "command"
    SELECTOR = "selector"
    PARAM = "param"


@dataclass(frozen=True)
class Token:
    """One lexical unit of a DSL line."""

    type: TokenType
    value: str = ""
    key: str | None = None
    strategy: str | None = None
    fallbacks: tuple["Token", ...] = field(default_factory=tuple)


def normalize_command_name(name: str) -> str:
    """Map a DSL spelling to its CommandType value.

    Example:
        >>> normalize_command_name("assert_exists")
        'assertVisible'
        >>> normalize_command_name("go_back")
        'goBack'
    """
    if name in COMMAND_ALIASES:
        return COMMAND_ALIASES[name]
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def split_line(line: str) -> list[str]:
    """Split on spaces outside quotes, honouring backslash escapes."""
    parts: list[str] = []
    current: list[str] = []
    quote_char: str | None = None
    escaped = False

    for char in line:
        if escaped:
            current.append(char)
            escaped = False
            continue
        if char == "\\":
            escaped = True
            continue
        if char in ('"', "'"):
            if quote_char is None:
                quote_char = char
            elif char == quote_char:
                quote_char = None
            else:
                current.append(char)
            continue
        if char.isspace() and quote_char is None:
            if current:
                parts.append("".join(current))
                current = []
        else:
            current.append(char)

    if current:
        parts.append("".join(current))
    return parts


def is_selector_part(part: str) -> bool:
    return any(part.startswith(f"{name}=") for name in STRATEGY_NAMES)


def is_param_part(part: str) -> bool:
    return "=" in part and not is_selector_part(part) and not part.startswith("fallback=")


class Tokenizer:
    """Turns DSL lines into :class:`Token` lists."""

    def tokenize(self, line: str) -> list[Token]:
        """Tokenize one line.

        Returns:
            Tokens, or an empty list for blank and comment lines.
        """
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            return []

        parts = split_line(trimmed)
        if not parts:
            return []

        tokens = [Token(type=TokenType.COMMAND, value=normalize_command_name(parts[0]))]
        i = 1
        while i < len(parts):
            part = parts[i]
            if is_selector_part(part):
                token, consumed = self._parse_selector(parts, i)
                tokens.append(token)
                i += consumed
            elif is_param_part(part):
                key, _, value = part.partition("=")
                tokens.append(Token(type=TokenType.PARAM, key=key, value=value))
                i += 1
            else:
                i += 1
        return tokens

    def _parse_selector(self, parts: list[str], index: int) -> tuple[Token, int]:
        """Parse a selector and any fallbacks that follow it."""
        strategy, _, value = parts[index].partition("=")
        fallbacks: list[Token] = []
        i = index + 1

        while i < len(parts):
            part = parts[i]
            if part == "fallback" and i + 1 < len(parts) and is_selector_part(parts[i + 1]):
                fb_strategy, _, fb_value = parts[i + 1].partition("=")
                i += 2
            elif part.startswith("fallback=") and is_selector_part(part[len("fallback="):]):
                fb_strategy, _, fb_value = part[len("fallback="):].partition("=")
                i += 1
            else:
                break
            fallbacks.append(
                Token(type=TokenType.SELECTOR, strategy=fb_strategy, value=fb_value)
            )

        token = Token(
            type=TokenType.SELECTOR,
            strategy=strategy,
            value=value,
            fallbacks=tuple(fallbacks),
        )
        return token, i - index


_FENCE_RE = re.compile(r"^```[a-z]*\n?|\n?```$")


def strip_code_fences(content: str) -> str:
    """Remove a surrounding markdown code fence from model output."""
    return _FENCE_RE.sub("", content.strip()).strip()
