from __future__ import annotations

import logging
from typing import Optional

logger = logging.getLogger(__name__)


class ProgressVisitor:
    """
    Hierarchical progress counter.

    A visitor counts ``step_count`` steps; ``sub_process(n)`` returns a child
    whose ``n`` steps together advance the parent by exactly one step. The root
    logs every ``log_every`` fraction of completion.
    """

    def __init__(
        self,
        step_count: int = 1,
        *,
        name: str = "noisemap",
        parent: Optional[ProgressVisitor] = None,
        log_every: float = 0.1,
    ) -> None:
        self.step_count = step_count
        self.name = name
        self.parent = parent
        self.log_every = log_every
        self._done = 0.0
        self._last_logged = 0.0

    def sub_process(self, step_count: int) -> ProgressVisitor:
        return ProgressVisitor(step_count, name=self.name, parent=self, log_every=self.log_every)

    def reset(self, step_count: int) -> None:
        """Resize a visitor that has not advanced yet."""
        self.step_count = step_count

    @property
    def progression(self) -> float:
        if self.step_count <= 0:
            return 1.0
        return min(1.0, self._done / self.step_count)

    def end_step(self) -> None:
        self._advance(1.0)

    def _advance(self, steps: float) -> None:
        if self.step_count <= 0:
            return
        before = self._done
        self._done = min(float(self.step_count), self._done + steps)
        delta = self._done - before
        if self.parent is not None:
            self.parent._advance(delta / self.step_count)
            return
        progression = self.progression
        finished = progression >= 1.0 and self._last_logged < 1.0
        if finished or progression - self._last_logged >= self.log_every:
            self._last_logged = progression
            logger.info("%s: %.0f%% done", self.name, 100.0 * self.progression)


__all__ = ["ProgressVisitor"]
