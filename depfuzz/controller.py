"""
Randomized decision provider for depfuzz runs.

The instrumented script never draws its own randomness. Every coin flip and
loop bound it consumes comes from a controller on the Python side, streamed
into the shell over a pipe by a DecisionFeed thread. This keeps runs
reproducible with a seed and lets tests substitute fixed decision sequences.

Wire format of a feed: one decision per line, "<value> <noise>\\n", where
value is 1/0 for coin flips or the iteration bound for loops, and noise is a
bit mask asking the shell to print a diagnostic line (1 = stdout, 2 = stderr).
"""

from __future__ import annotations

import logging
import os
import random
import threading
from typing import Callable, Iterable

logger = logging.getLogger(__name__)

# The repeat bound mirrors arithmetic on bash's $RANDOM (0..32767):
# modulus = r1 / 2000 + 1, bound = r2 % modulus.
RANDOM_CEILING = 32768
REPEAT_SPREAD = 2000

NOISE_STDOUT = 1
NOISE_STDERR = 2
NOISE_STDOUT_ODDS = 3  # 1 in 3
NOISE_STDERR_ODDS = 12  # 1 in 12


class DecisionController:
    """
    Pseudo-random source for every decision a run makes.

    Mode selection draws from it directly; the instrumented shell receives
    draws through forked sub-controllers, one per feed, so that each stream
    is deterministic for a given seed regardless of thread scheduling.
    """

    def __init__(self, seed: int | None = None) -> None:
        self.seed = seed
        self.rng = random.Random(seed)

    def coin_flip(self) -> bool:
        """Return True or False with equal probability."""
        return self.rng.randrange(2) == 0

    def bounded_repeat_count(self) -> int:
        """Return a small non-negative loop bound (0..16)."""
        modulus = self.rng.randrange(RANDOM_CEILING) // REPEAT_SPREAD + 1
        return self.rng.randrange(RANDOM_CEILING) % modulus

    def noise(self) -> int:
        """Return the noise mask for one decision. Never affects the decision."""
        flags = 0
        if self.rng.randrange(NOISE_STDOUT_ODDS) == 0:
            flags |= NOISE_STDOUT
        if self.rng.randrange(NOISE_STDERR_ODDS) == 0:
            flags |= NOISE_STDERR
        return flags

    def fork(self) -> "DecisionController":
        """Return an independent controller seeded from this one."""
        return DecisionController(seed=self.rng.getrandbits(64))


class ReplayController(DecisionController):
    """
    Replay fixed decision sequences, then fall back to False / 0.

    Coin flips taken by random-mode selection come out of the same `coins`
    sequence before the shell sees any of them.
    """

    def __init__(
        self,
        coins: Iterable[bool] = (),
        repeats: Iterable[int] = (),
        noise: int = 0,
    ) -> None:
        super().__init__(seed=0)
        self._coins = iter(coins)
        self._repeats = iter(repeats)
        self._noise = noise

    def coin_flip(self) -> bool:
        return bool(next(self._coins, False))

    def bounded_repeat_count(self) -> int:
        return max(0, int(next(self._repeats, 0)))

    def noise(self) -> int:
        return self._noise

    def fork(self) -> "DecisionController":
        return self


class DecisionFeed(threading.Thread):
    """
    Stream decisions into the write end of a pipe until the reader goes away.

    Writes block once the pipe buffer is full, so the feed only ever runs a
    pipe's worth ahead of the shell. The thread owns `write_fd` and closes it
    when it stops.
    """

    BATCH_SIZE = 64

    def __init__(
        self,
        write_fd: int,
        draw: Callable[[], int],
        noise: Callable[[], int],
        name: str = "decision-feed",
    ) -> None:
        super().__init__(name=name, daemon=True)
        self.write_fd = write_fd
        self.draw = draw
        self.noise = noise

    def _batch(self) -> bytes:
        lines = [f"{int(self.draw())} {int(self.noise())}\n" for _ in range(self.BATCH_SIZE)]
        return "".join(lines).encode("ascii")

    def run(self) -> None:
        try:
            while True:
                os.write(self.write_fd, self._batch())
        except OSError as e:
            # BrokenPipeError once the shell and its children are gone.
            logger.debug("%s stopped: %s", self.name, e)
        finally:
            os.close(self.write_fd)
