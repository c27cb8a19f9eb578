"""Streaming completion driver with an abort deadline.

The deadline is an absolute ``loop.time()`` value set below the hosting
invocation's hard limit.  Reaching it is not an error: the fragments
received so far are returned with ``aborted=True`` and the parser salvages
whatever complete records they contain.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass

from qa_gen.llm.backend import LLMBackend

logger = logging.getLogger(__name__)

# (chars_so_far, elapsed_seconds)
ProgressCallback = Callable[[int, float], Awaitable[None]]


@dataclass
class StreamResult:
    content: str
    aborted: bool
    chars: int
    elapsed: float


class StreamingCompletionDriver:
    """Runs one streaming completion under a wall-clock budget."""

    def __init__(
        self,
        backend: LLMBackend,
        abort_after_seconds: float = 52.0,
        progress_every_chars: int = 2000,
        temperature: float = 0.4,
        max_tokens: int = 12000,
    ) -> None:
        if progress_every_chars <= 0:
            raise ValueError("progress_every_chars must be positive")
        self._backend = backend
        self._abort_after = abort_after_seconds
        self._every = progress_every_chars
        self._temperature = temperature
        self._max_tokens = max_tokens

    @property
    def model(self) -> str:
        return self._backend.model

    async def run(
        self,
        system_prompt: str,
        user_prompt: str,
        model: str | None = None,
        deadline: float | None = None,
        on_progress: ProgressCallback | None = None,
        log_prefix: str = "",
    ) -> StreamResult:
        """Stream a completion until it finishes or *deadline* passes.

        Args:
            deadline: Absolute event-loop time at which to abort.  Defaults
                to now + ``abort_after_seconds``.
            on_progress: Awaited each time at least ``progress_every_chars``
                new characters have arrived since the previous checkpoint.

        Raises:
            TransportError: The completion call failed for any reason other
                than the deadline.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        if deadline is None:
            deadline = started + self._abort_after

        parts: list[str] = []
        chars = 0
        last_checkpoint = 0
        aborted = False

        stream = self._backend.complete_stream(
            system_prompt,
            user_prompt,
            model=model,
            temperature=self._temperature,
            max_tokens=self._max_tokens,
        )
        try:
            async with asyncio.timeout_at(deadline):
                async with aclosing(stream):
                    async for fragment in stream:
                        parts.append(fragment)
                        chars += len(fragment)
                        if chars - last_checkpoint >= self._every:
                            last_checkpoint = chars
                            elapsed = loop.time() - started
                            logger.info("%sstreaming: %dc elapsed=%.0fs", log_prefix, chars, elapsed)
                            if on_progress is not None:
                                await on_progress(chars, elapsed)
        except TimeoutError:
            aborted = True
            logger.warning("%saborted at deadline after %d chars", log_prefix, chars)

        return StreamResult(
            content="".join(parts),
            aborted=aborted,
            chars=chars,
            elapsed=loop.time() - started,
        )
