from __future__ import annotations

import sys
from typing import Any

from tqdm import tqdm
from tqdm.std import tqdm as TqdmType

"""Progress display service with tqdm (TTY only).

The reconciler reports (processed, total) after every batch; ProgressTracker
turns that into a single tqdm bar over candidates. In non-TTY environments (CI,
redirected output) the bar is disabled to avoid ANSI control sequence spam.
"""

__all__ = [
    "ProgressTracker",
    "is_tty_enabled",
]


def is_tty_enabled() -> bool:
    """Return True if stdout is a TTY and progress should be displayed."""
    return sys.stdout.isatty()


class ProgressTracker:
    """Progress bar over reconcile candidates.

    Usable directly as the reconciler's progress_callback.
    """

    def __init__(self, total: int, *, description: str = "Reconciling employers") -> None:
        self.total = total
        self.description = description
        self.processed = 0

        self.enabled = is_tty_enabled()
        self.pbar: TqdmType[Any] | None
        if self.enabled:
            self.pbar = tqdm(
                total=total,
                desc=description,
                unit="row",
                disable=False,
                leave=True,
                position=0,
                ncols=80,
                ascii=True,
            )
        else:
            self.pbar = None

    def __call__(self, processed: int, total: int) -> None:
        self.update(processed, total)

    def update(self, processed: int, total: int) -> None:
        """Advance the bar to `processed` (values are cumulative)."""
        step = processed - self.processed
        self.processed = processed
        if self.enabled and self.pbar is not None:
            if total != self.pbar.total:
                self.pbar.total = total
            if step > 0:
                self.pbar.update(step)

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 100
        return round(self.processed / self.total * 100)

    def set_postfix(self, **kwargs: Any) -> None:
        if self.enabled and self.pbar is not None:
            self.pbar.set_postfix(**kwargs)

    def close(self) -> None:
        if self.enabled and self.pbar is not None:
            self.pbar.close()
            self.pbar = None

    def __enter__(self) -> ProgressTracker:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
