"""
Dependency records and the wire format of the private report channel.

The writing side lives in the shell (`__faff_record` in depfuzz.hooks): one
line per record, fields separated by the ASCII unit separator:

    script_path US line_number US kind US target US arg1 US arg2 ...

`kind` is empty for unresolved commands and "sourcing" for unreadable
includes. Newlines inside tokens are flattened to spaces before writing.
"""

from __future__ import annotations

from dataclasses import dataclass

FIELD_SEPARATOR = "\x1f"
SOURCING_KIND = "sourcing"


@dataclass(frozen=True)
class Origin:
    """Where a dependency was reached, in terms of the unmodified script."""

    script_path: str
    line_number: int

    def __str__(self) -> str:
        return f"{self.script_path}:{self.line_number}"


@dataclass(frozen=True)
class DependencyRecord:
    """One detected external command or unreadable include."""

    kind: str | None
    target: str
    invocation: tuple[str, ...]
    origin: Origin

    def __post_init__(self) -> None:
        if not self.target:
            raise ValueError("A dependency record needs a non-empty target")
        if not self.invocation or self.invocation[0] != self.target:
            raise ValueError(
                f"Invocation {self.invocation!r} does not start with target {self.target!r}"
            )


def format_record(record: DependencyRecord) -> str:
    """Render a record the way the final report lists it."""
    kind = f"{record.kind} " if record.kind else ""
    command = " ".join(record.invocation)
    return (
        f"{record.origin} - runtime dependency on {kind}'{record.target}' "
        f"(full command: '{command}')"
    )


def encode_record(record: DependencyRecord) -> str:
    """Encode a record as one wire line, without the trailing newline."""
    tokens = [token.replace("\n", " ") for token in record.invocation]
    fields = [
        record.origin.script_path,
        str(record.origin.line_number),
        record.kind or "",
        *tokens,
    ]
    return FIELD_SEPARATOR.join(fields)


def decode_record(line: str) -> DependencyRecord:
    """
    Parse one wire line into a DependencyRecord.

    Raises:
        ValueError: if the line has too few fields, a non-numeric line
            number, or an empty target.
    """
    fields = line.rstrip("\n").split(FIELD_SEPARATOR)
    if len(fields) < 4:
        raise ValueError(f"Malformed report line: {line!r}")
    script_path, line_number, kind, *invocation = fields
    try:
        number = int(line_number)
    except ValueError:
        raise ValueError(f"Bad line number in report line: {line!r}") from None
    return DependencyRecord(
        kind=kind or None,
        target=invocation[0],
        invocation=tuple(invocation),
        origin=Origin(script_path, number),
    )
