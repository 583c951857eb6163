"""Fragment emission for answers that arrive from the provider in one piece."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator

from trace_copilot.analysis.cancellation import CancellationToken
from trace_copilot.config import StreamingConfig

FragmentSink = Callable[[str], None]


def split_fragments(text: str, words_per_fragment: int = 1) -> Iterator[str]:
    """Split on single spaces; every fragment after the first carries its leading space.

    Joining the fragments reproduces `text` exactly.
    """
    words = text.split(" ")
    for start in range(0, len(words), words_per_fragment):
        chunk = " ".join(words[start : start + words_per_fragment])
        yield chunk if start == 0 else " " + chunk


class FragmentEmitter:
    """Feeds a complete answer to a sink piece by piece with a small pause.

    The pause is an `asyncio.sleep`, so other requests keep running. Emission
    stops at the next fragment boundary once the token is cancelled; fragments
    already delivered stay delivered.
    """

    def __init__(self, config: StreamingConfig | None = None) -> None:
        self.config = config or StreamingConfig()

    async def emit(self, text: str, sink: FragmentSink, token: CancellationToken) -> int:
        emitted = 0
        if not text:
            return emitted
        for fragment in split_fragments(text, self.config.words_per_fragment):
            if token.cancelled:
                break
            sink(fragment)
            emitted += 1
            if self.config.fragment_delay_seconds > 0:
                await asyncio.sleep(self.config.fragment_delay_seconds)
        return emitted
