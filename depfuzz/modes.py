"""
Execution modes and the construct kinds they instrument.

A run picks its construct set once, before the target is rewritten, and never
changes it afterwards. Command resolution and inclusion are always
instrumented; the remaining kinds depend on the mode.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Iterable

from depfuzz.errors import InvalidMode

if TYPE_CHECKING:
    from depfuzz.controller import DecisionController


class Mode(Enum):
    MINIMAL = "minimal"
    ALL = "all"
    RANDOM = "random"


class ConstructKind(Enum):
    CONDITIONAL = "conditional"
    LOOP_WHILE = "loop_while"
    LOOP_UNTIL = "loop_until"
    ITERATION = "iteration"
    PATTERN_MATCH = "pattern_match"
    INCLUSION = "inclusion"
    COMMAND_RESOLUTION = "command_resolution"


ALWAYS_ACTIVE = frozenset({ConstructKind.COMMAND_RESOLUTION, ConstructKind.INCLUSION})

# Kinds that random mode flips a coin for, in draw order.
OPTIONAL_KINDS = (
    ConstructKind.CONDITIONAL,
    ConstructKind.ITERATION,
    ConstructKind.LOOP_UNTIL,
    ConstructKind.LOOP_WHILE,
    ConstructKind.PATTERN_MATCH,
)


def parse_mode(mode: Mode | str) -> Mode:
    """Return the Mode named by `mode`, raising InvalidMode for anything else."""
    if isinstance(mode, Mode):
        return mode
    try:
        return Mode(str(mode))
    except ValueError:
        choices = ", ".join(m.value for m in Mode)
        raise InvalidMode(f"Unknown mode {mode!r} (expected one of: {choices})") from None


def select_constructs(
    mode: Mode | str, controller: "DecisionController"
) -> frozenset[ConstructKind]:
    """
    Compute the construct set for one run.

    Args:
        mode: A Mode or its name.
        controller: Source of the coin flips used by random mode. Minimal and
            all modes never draw from it.

    Returns:
        The frozen set of construct kinds to instrument.
    """
    mode = parse_mode(mode)
    if mode is Mode.MINIMAL:
        return ALWAYS_ACTIVE
    if mode is Mode.ALL:
        return frozenset(ConstructKind)
    chosen = set(ALWAYS_ACTIVE)
    for kind in OPTIONAL_KINDS:
        if controller.coin_flip():
            chosen.add(kind)
    return frozenset(chosen)


def format_constructs(kinds: Iterable[ConstructKind]) -> str:
    """Serialize a construct set as a sorted, comma-separated list of names."""
    return ",".join(sorted(kind.value for kind in kinds))


def parse_constructs(text: str) -> frozenset[ConstructKind]:
    """Inverse of format_constructs. Raises ValueError on unknown names."""
    names = [name.strip() for name in text.split(",") if name.strip()]
    return frozenset(ConstructKind(name) for name in names) | ALWAYS_ACTIVE
