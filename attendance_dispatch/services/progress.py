from __future__ import annotations

import sys
from typing import Any

from tqdm import tqdm
from tqdm.std import tqdm as TqdmType

"""Progress display over dispatch conditions with tqdm (TTY only).

- single tqdm instance, disabled when stdout is not a TTY (CI, cron, pipes)
- the bar advances once per condition; the description shows the running one
- postfix carries the sent / skipped / failed counters
"""

__all__ = [
    "ConditionProgressTracker",
    "is_tty_enabled",
]


def is_tty_enabled() -> bool:
    """Check if TTY output is enabled.

    Returns:
        True if stdout is a TTY and progress should be displayed, False otherwise
    """
    return sys.stdout.isatty()


class ConditionProgressTracker:
    """Progress bar for the sequential condition workflow.

    In non-TTY environments the bar is never created and every method is a
    no-op, so log output stays free of ANSI control sequences.
    """

    def __init__(self, total_conditions: int, *, description: str = "Dispatching reports") -> None:
        self.total_conditions = total_conditions
        self.description = description
        self.current = 0

        self.enabled = is_tty_enabled()
        self.pbar: TqdmType[Any] | None
        if self.enabled:
            self.pbar = tqdm(
                total=total_conditions,
                desc=description,
                unit="cond",
                leave=True,
                position=0,
                ncols=80,
                ascii=True,
            )
        else:
            self.pbar = None

    def start_condition(self, condition: str, name: str) -> None:
        self.current += 1
        if self.enabled and self.pbar is not None:
            self.pbar.set_description(f"{self.description} ({condition}: {name})")

    def finish_condition(self) -> None:
        if self.enabled and self.pbar is not None:
            self.pbar.update(1)
            self.pbar.set_description(self.description)

    def set_postfix(self, **kwargs: Any) -> None:
        if self.enabled and self.pbar is not None:
            self.pbar.set_postfix(**kwargs)

    def close(self) -> None:
        if self.enabled and self.pbar is not None:
            self.pbar.close()
            self.pbar = None

    def __enter__(self) -> ConditionProgressTracker:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
