"""
Line-oriented quasi-interpreter for case/esac blocks.

A case block spans several lines (header, pattern labels, arm bodies, esac)
and cannot be instrumented by rewriting a single keyword. Instead every line
of the block is classified on its own and, where it looks like a command,
executed unconditionally. Patterns are never matched, so every arm runs.
Fragments that only make sense as part of a larger statement fail at
runtime with an error on stderr.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Sequence

# Longest first, so ";;&" is not mistaken for ";;".
ARM_TERMINATORS = (";;&", ";;", ";&")
PATTERN_TERMINATOR = ")"


class LineKind(Enum):
    COMBINED = "combined"  # pattern) command ;;
    LABEL = "label"  # pattern)
    TERMINATOR = "terminator"  # ;;
    BODY = "body"
    BLANK = "blank"


@dataclass(frozen=True)
class CaseLine:
    kind: LineKind
    text: str
    command: str | None = None


def _arm_terminator(text: str) -> str | None:
    for terminator in ARM_TERMINATORS:
        if text.endswith(terminator):
            return terminator
    return None


def strip_pattern(text: str) -> str:
    """Drop the leading pattern up to and including its closing parenthesis."""
    stripped = text.lstrip()
    position = 1 if stripped.startswith("(") else 0
    depth = 0
    while position < len(stripped):
        char = stripped[position]
        if char == "\\":
            position += 2
            continue
        if char == "(":
            depth += 1
        elif char == PATTERN_TERMINATOR:
            if depth == 0:
                return stripped[position + 1 :]
            depth -= 1
        position += 1
    return stripped


def trim_quotes(text: str) -> str:
    """Strip one pair of quotes when they wrap the whole text."""
    text = text.strip()
    if len(text) < 2 or text[0] not in "'\"" or text[-1] != text[0]:
        return text
    quote = text[0]
    position = 1
    while position < len(text):
        if quote == '"' and text[position] == "\\":
            position += 2
            continue
        if text[position] == quote:
            break
        position += 1
    if position == len(text) - 1:
        return text[1:-1]
    return text


def classify_line(line: str) -> CaseLine:
    """Classify one raw line of a case block and extract its command, if any."""
    text = line.strip()
    if not text or text.startswith("#"):
        return CaseLine(LineKind.BLANK, line)
    terminator = _arm_terminator(text)
    if terminator and PATTERN_TERMINATOR in text:
        command = strip_pattern(text)
        command = command.rstrip()[: -len(terminator)].strip()
        return CaseLine(LineKind.COMBINED, line, command or None)
    if text.endswith(PATTERN_TERMINATOR):
        return CaseLine(LineKind.LABEL, line)
    if text in ARM_TERMINATORS:
        return CaseLine(LineKind.TERMINATOR, line)
    return CaseLine(LineKind.BODY, line, trim_quotes(text) or None)


class CaseBlockInterpreter:
    """
    Turn the lines of a case block into shell statements.

    Each executable line becomes `__faff_eval PATH LINE FRAGMENT`, which runs
    the fragment with an explicit origin. Fragments are passed through
    `rewrite_fragment` first so that includes and loops inside an arm are
    still instrumented.
    """

    def __init__(self, script_path: str, rewrite_fragment: Callable[[str, int], str]) -> None:
        self.script_path = script_path
        self.rewrite_fragment = rewrite_fragment

    def statement_for(self, line: str, line_number: int) -> str | None:
        """Return the statement replacing one block line, or None to skip it."""
        entry = classify_line(line)
        if entry.command is None:
            return None
        fragment = self.rewrite_fragment(entry.command, line_number)
        return (
            f"__faff_eval {shlex.quote(self.script_path)} {line_number} {shlex.quote(fragment)}"
        )

    def closing_statement(self, lines: Sequence[str]) -> str:
        """Return the statement that re-emits the consumed lines verbatim on stdout."""
        quoted = " ".join(shlex.quote(line) for line in lines)
        return f"__faff_case_end {quoted}".rstrip()
