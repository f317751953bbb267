"""
The rewrite pass that installs depfuzz's instrumentation into a bash script.

The rewriter works on physical lines. Each line is masked (quoted text and
comments blanked out), tokenized, and scanned for reserved words in command
position. Depending on the active construct set it then:

- wraps `if`/`elif` conditions as `if { COND; } || __faff_coin; then`;
- bounds `while`/`until` loops with `__faff_guard`/`__faff_release`;
- turns `select` into `for`;
- routes `source`/`.` through `__faff_include`;
- hands multi-line `case ... esac` blocks to the quasi-interpreter.

Invariant: the output has exactly as many lines as the input and every
statement stays on its original line, so the shell's own line numbers are
the original ones. Here-document bodies are passed through untouched.

Run as `python -m depfuzz.rewrite` to rewrite a single file into a work
directory; the inclusion hook uses this to instrument sourced scripts.
"""

from __future__ import annotations

import argparse
import hashlib
import re
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from depfuzz.case_block import CaseBlockInterpreter
from depfuzz.modes import ConstructKind, parse_constructs

TOKEN_RE = re.compile(r";;&|;;|;&|&&|\|\||\|&|(?:[<>]&|&>>?|[^\s;&|()])+|[;&|()]")
OPERATORS = frozenset({";;&", ";;", ";&", "&&", "||", "|&", ";", "&", "|", "(", ")"})
# Words after which the next word is again in command position.
COMMAND_PREFIX_WORDS = frozenset({"!", "{", "then", "do", "else", "time"})
ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\[[^\]]*\])?\+?=")
HEREDOC_START_RE = re.compile(r"(?<!<)<<(?!<)")
HEREDOC_RE = re.compile(
    r"<<(-?)\s*(?:'([^']*)'|\"([^\"]*)\"|\\?([^\s;&|()<>'\"]+))"
)

CONDITION_CLOSE = "} || __faff_coin; "
LOOP_CLOSE = {
    "while": "}} && __faff_guard {site} || ! __faff_release {site}; ",
    "until": "}} || ! __faff_guard {site} && __faff_release {site}; ",
}
LOOP_KINDS = {"while": ConstructKind.LOOP_WHILE, "until": ConstructKind.LOOP_UNTIL}
# A guarded loop is wrapped in a group that resets its site on every entry,
# so leaving it through break, return or exit never leaks a stale bound.
LOOP_OPEN = "{{ __faff_release {site}; {word} {{"
LOOP_END = "; }"
INCLUDE_TAIL = ' && builtin source "${__faff_next[@]}"'


@dataclass(frozen=True)
class Token:
    text: str
    start: int
    end: int


@dataclass
class CaseBlock:
    depth: int = 1
    lines: list[str] = field(default_factory=list)


def site_digest(path: str) -> str:
    """Short stable digest used to tell loop sites of different files apart."""
    return hashlib.sha1(path.encode("utf-8", "surrogateescape")).hexdigest()[:8]


def mask_line(line: str, quote: str | None = None) -> tuple[str, str | None]:
    """
    Blank out quoted text and comments, keeping every column in place.

    Quoted characters (and the quotes themselves) become "_" so a quoted
    string still reads as one word; a comment becomes spaces.

    Args:
        line: One physical line.
        quote: The quote still open from the previous line, if any.

    Returns:
        The masked line and the quote left open at its end.
    """
    masked: list[str] = []
    position = 0
    while position < len(line):
        char = line[position]
        if quote is None:
            if char == "\\":
                masked.append("_" * len(line[position : position + 2]))
                position += 2
                continue
            if char == "#" and (position == 0 or line[position - 1] in " \t;&|()"):
                masked.append(" " * (len(line) - position))
                break
            if char in "'\"":
                ansi = char == "'" and position > 0 and line[position - 1] == "$"
                quote = "$'" if ansi else char
                masked.append("_")
            else:
                masked.append(char)
        else:
            if char == "\\" and quote != "'":
                masked.append("_" * len(line[position : position + 2]))
                position += 2
                continue
            if char == quote[-1]:
                quote = None
            masked.append("_")
        position += 1
    return "".join(masked), quote


def tokenize(masked: str) -> list[Token]:
    return [Token(m.group(), m.start(), m.end()) for m in TOKEN_RE.finditer(masked)]


def apply_edits(line: str, edits: Iterable[tuple[int, int, str]]) -> str:
    """Apply non-overlapping (start, end, replacement) edits to a line."""
    for start, end, replacement in sorted(edits, key=lambda edit: (edit[0], edit[1]), reverse=True):
        line = line[:start] + replacement + line[end:]
    return line


def join_statements(*statements: str | None) -> str:
    return "; ".join(s for s in statements if s and s.strip())


def _continues_command(token: Token) -> bool:
    return token.text in COMMAND_PREFIX_WORDS or ASSIGNMENT_RE.match(token.text) is not None


class ScriptRewriter:
    """
    Rewrite one script for a given construct set.

    Args:
        constructs: The construct kinds to instrument.
        script_path: Path reported as the origin of records from this script.
        site_prefix: Prefix for loop site ids; derived from the path by default.
    """

    def __init__(
        self,
        constructs: Iterable[ConstructKind],
        script_path: str,
        site_prefix: str | None = None,
    ) -> None:
        self.constructs = frozenset(constructs)
        self.script_path = str(script_path)
        self.site_prefix = site_prefix or site_digest(self.script_path)
        self.case_interpreter = CaseBlockInterpreter(self.script_path, self.rewrite_fragment)
        self._reset()

    def _reset(self) -> None:
        self._quote: str | None = None
        self._heredocs: list[tuple[str, bool]] = []
        self._open_conditions = 0
        self._open_loops: list[tuple[str, str] | None] = []
        self._loop_bodies: list[str | None] = []
        self._block: CaseBlock | None = None

    def rewrite(self, text: str, first_line: int = 1) -> str:
        """Rewrite a whole script (or fragment) whose first line is `first_line`."""
        self._reset()
        output = [
            self._rewrite_line(line, first_line + offset)
            for offset, line in enumerate(text.split("\n"))
        ]
        if self._block is not None:
            # The stream ended inside a case block: re-emit what was consumed.
            closing = self.case_interpreter.closing_statement(self._block.lines)
            output[-1] = join_statements(output[-1], closing)
            self._block = None
        return "\n".join(output)

    def rewrite_fragment(self, fragment: str, line_number: int) -> str:
        """Rewrite a single-line fragment with a fresh state, keeping its line number."""
        rewriter = ScriptRewriter(self.constructs, self.script_path, self.site_prefix)
        return rewriter.rewrite(fragment, first_line=line_number)

    def _rewrite_line(self, line: str, line_number: int) -> str:
        if self._heredocs:
            delimiter, strip_tabs = self._heredocs[0]
            if (line.lstrip("\t") if strip_tabs else line) == delimiter:
                self._heredocs.pop(0)
            if self._block is not None:
                self._block.lines.append(line)
                return ""
            return line

        started_in_quote = self._quote is not None
        masked, self._quote = mask_line(line, self._quote)
        tokens = tokenize(masked)
        self._queue_heredocs(line, masked)

        if self._block is not None:
            return self._continue_block(line, tokens, not started_in_quote, line_number)

        edits: list[tuple[int, int, str]] = []
        self._scan(line, tokens, 0, not started_in_quote, line_number, edits)
        return apply_edits(line, edits)

    def _queue_heredocs(self, line: str, masked: str) -> None:
        for match in HEREDOC_START_RE.finditer(masked):
            before = masked[: match.start()]
            if before.count("((") > before.count("))"):
                continue  # arithmetic shift, not a here-document
            found = HEREDOC_RE.match(line, match.start())
            if found:
                delimiter = next(g for g in found.group(2, 3, 4) if g is not None)
                self._heredocs.append((delimiter, found.group(1) == "-"))

    def _scan(
        self,
        line: str,
        tokens: list[Token],
        start: int,
        command_start: bool,
        line_number: int,
        edits: list[tuple[int, int, str]],
    ) -> None:
        for index in range(start, len(tokens)):
            token = tokens[index]
            if token.text in OPERATORS:
                command_start = True
                continue
            if not command_start:
                continue
            if token.text == "case" and ConstructKind.PATTERN_MATCH in self.constructs:
                if self._open_block(line, tokens, index, line_number, edits):
                    return
                command_start = False
                continue
            command_start = self._keyword(line, tokens, index, line_number, edits)

    def _keyword(
        self,
        line: str,
        tokens: list[Token],
        index: int,
        line_number: int,
        edits: list[tuple[int, int, str]],
    ) -> bool:
        """Rewrite a word in command position; return whether the next word is too."""
        token = tokens[index]
        word = token.text
        if word in ("if", "elif"):
            if ConstructKind.CONDITIONAL in self.constructs:
                edits.append((token.start, token.end, f"{word} {{"))
                self._open_conditions += 1
            return True
        if word == "then":
            if self._open_conditions:
                self._open_conditions -= 1
                edits.append((token.start, token.start, CONDITION_CLOSE))
            return True
        if word in LOOP_KINDS:
            if LOOP_KINDS[word] in self.constructs:
                site = f"{self.site_prefix}_{line_number}_{token.start}"
                edits.append((token.start, token.end, LOOP_OPEN.format(site=site, word=word)))
                self._open_loops.append((word, site))
            else:
                self._open_loops.append(None)
            return True
        if word in ("for", "select"):
            if word == "select" and ConstructKind.ITERATION in self.constructs:
                edits.append((token.start, token.end, "for"))
            self._open_loops.append(None)
            return False
        if word == "do":
            if self._open_loops:
                pending = self._open_loops.pop()
                if pending:
                    loop_word, site = pending
                    edits.append((token.start, token.start, LOOP_CLOSE[loop_word].format(site=site)))
                self._loop_bodies.append(pending[1] if pending else None)
            return True
        if word == "done":
            if self._loop_bodies and self._loop_bodies.pop():
                end = token.end
                depth = 0
                # Redirections after done belong to the loop, inside the group.
                for follower in tokens[index + 1 :]:
                    if follower.text == "(" and (depth or line[follower.start - 1] in "<>$"):
                        depth += 1  # process or command substitution
                    elif follower.text == ")" and depth:
                        depth -= 1
                    elif follower.text in OPERATORS:
                        break
                    end = follower.end
                edits.append((end, end, LOOP_END))
            return False
        if word in ("source", ".") and ConstructKind.INCLUSION in self.constructs:
            self._rewrite_inclusion(line, tokens, index, line_number, edits)
            return False
        return _continues_command(token)

    def _rewrite_inclusion(
        self,
        line: str,
        tokens: list[Token],
        index: int,
        line_number: int,
        edits: list[tuple[int, int, str]],
    ) -> None:
        arguments = tokens[index + 1 :]
        if arguments and arguments[0].text == "(":
            return  # a function named source
        last = None
        for token in arguments:
            if token.text in OPERATORS:
                break
            last = token
        if last is None:
            return
        if line[: last.end].endswith("\\") and not line[last.end :].strip():
            return  # continues on the next line; leave it alone
        keyword = tokens[index]
        hook = f"__faff_include {shlex.quote(self.script_path)} {line_number}"
        edits.append((keyword.start, keyword.end, hook))
        edits.append((last.end, last.end, INCLUDE_TAIL))

    def _open_block(
        self,
        line: str,
        tokens: list[Token],
        index: int,
        line_number: int,
        edits: list[tuple[int, int, str]],
    ) -> bool:
        """Start a case block at tokens[index]; False leaves the statement inert."""
        in_index = None
        for position in range(index + 1, len(tokens)):
            if tokens[position].text in OPERATORS:
                return False
            if tokens[position].text == "in":
                in_index = position
                break
        if in_index is None:
            return False
        if any(token.text == "esac" for token in tokens[in_index + 1 :]):
            return False  # single-line case statements stay inert

        case_token, in_token = tokens[index], tokens[in_index]
        subject = line[case_token.end : in_token.start].strip()
        self._block = CaseBlock()
        header = f": {subject}" if subject else ":"
        statement = self._block_statement(line[in_token.end :], line_number)
        edits.append((case_token.start, len(line), join_statements(header, statement)))
        return True

    def _block_statement(self, text: str, line_number: int) -> str | None:
        if not text.strip():
            return None
        self._block.lines.append(text)
        return self.case_interpreter.statement_for(text, line_number)

    def _continue_block(
        self, line: str, tokens: list[Token], command_start: bool, line_number: int
    ) -> str:
        for index, token in enumerate(tokens):
            if token.text in OPERATORS:
                command_start = True
                continue
            if command_start:
                if token.text == "case":
                    self._block.depth += 1
                elif token.text == "esac":
                    self._block.depth -= 1
                    if self._block.depth == 0:
                        return self._close_block(line, tokens, index, line_number)
            command_start = _continues_command(token)
        return self._block_statement(line, line_number) or ""

    def _close_block(
        self, line: str, tokens: list[Token], index: int, line_number: int
    ) -> str:
        esac = tokens[index]
        statement = self._block_statement(line[: esac.start], line_number)
        closing = self.case_interpreter.closing_statement(self._block.lines)
        self._block = None
        edits: list[tuple[int, int, str]] = []
        self._scan(line, tokens, index + 1, False, line_number, edits)
        rest = apply_edits(line, edits)[esac.end :]
        return join_statements(statement, closing) + rest


def rewrite_script(text: str, constructs: Iterable[ConstructKind], script_path: str) -> str:
    """Rewrite `text` (the contents of `script_path`) for `constructs`."""
    return ScriptRewriter(constructs, script_path).rewrite(text)


def write_rewritten(
    script_path: str, constructs: Iterable[ConstructKind], workdir: Path
) -> Path:
    """
    Rewrite a script file into `workdir` and return the path of the copy.

    The copy is named after a digest of the script's absolute path, so
    repeated inclusions of the same file reuse one copy.

    Raises:
        OSError: if the script cannot be read or the copy cannot be written.
    """
    source = Path(script_path)
    text = source.read_bytes().decode("utf-8", "surrogateescape")
    rewritten = rewrite_script(text, constructs, script_path)
    digest = site_digest(str(source.resolve()))
    destination = Path(workdir) / f"{digest}_{source.name}"
    destination.write_bytes(rewritten.encode("utf-8", "surrogateescape"))
    return destination


def main() -> None:
    """Rewrite one script into a work directory and print the copy's path."""
    parser = argparse.ArgumentParser(
        description="Rewrite a bash script with depfuzz instrumentation."
    )
    parser.add_argument(
        "--constructs",
        type=parse_constructs,
        default="",
        help="Comma-separated construct kinds to instrument.",
    )
    parser.add_argument(
        "--workdir",
        type=Path,
        required=True,
        help="Directory that receives the rewritten copy.",
    )
    parser.add_argument("script", help="Path of the script to rewrite.")
    args = parser.parse_args()

    try:
        destination = write_rewritten(args.script, args.constructs, args.workdir)
    except OSError as e:
        print(f"[!] depfuzz: could not rewrite {args.script}: {e}", file=sys.stderr)
        sys.exit(1)
    print(destination)


if __name__ == "__main__":
    main()
