from __future__ import annotations

import sys
from typing import Any

from tqdm import tqdm
from tqdm.std import tqdm as TqdmType

"""Progress display with tqdm (TTY only).

One bar over the pipeline steps. In non-TTY environments (cron, CI) the bar
is disabled so the log file does not fill up with control sequences.
"""

__all__ = [
    "StepProgress",
    "is_tty_enabled",
]


def is_tty_enabled() -> bool:
    return sys.stdout.isatty()


class StepProgress:
    """Progress bar over the configured pipeline steps."""

    def __init__(self, total_steps: int, *, description: str = "Running steps") -> None:
        self.total_steps = total_steps
        self.description = description
        self.current_step = 0

        self.enabled = is_tty_enabled()
        self.pbar: TqdmType[Any] | None
        if self.enabled:
            self.pbar = tqdm(
                total=total_steps,
                desc=description,
                unit="step",
                leave=True,
                position=0,
                ncols=80,
                ascii=True,
            )
        else:
            self.pbar = None

    def start_step(self, name: str) -> None:
        self.current_step += 1
        if self.pbar is not None:
            self.pbar.set_description(f"{self.description} ({name})")

    def finish_step(self, ok: bool, failed_so_far: int) -> None:
        if self.pbar is not None:
            self.pbar.update(1)
            self.pbar.set_postfix(failed=failed_so_far)
            self.pbar.set_description(self.description)

    def close(self) -> None:
        if self.pbar is not None:
            self.pbar.close()
            self.pbar = None

    def __enter__(self) -> StepProgress:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
