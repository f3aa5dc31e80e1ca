"""
Terminal progress for long-running jobs.

Jobs report in chunks and may resume part-way through, so progress is fed
chunk deltas and measures rate only over the pages done in this session.
"""

import sys
import time
from dataclasses import dataclass, field


@dataclass
class ProgressStats:
    """Counters for one job's progress display."""

    total: int
    succeeded: int = 0
    failed: int = 0
    resumed_from: int = 0  # Pages already attempted before this session
    prior_failed: int = 0
    start_time: float = field(default_factory=time.time)

    @property
    def attempted(self) -> int:
        return self.resumed_from + self.succeeded + self.failed

    @property
    def total_failed(self) -> int:
        return self.prior_failed + self.failed

    @property
    def elapsed(self) -> float:
        """Elapsed time in seconds."""
        return time.time() - self.start_time

    @property
    def rate(self) -> float:
        """Pages per second in this session."""
        done_now = self.succeeded + self.failed
        if self.elapsed == 0 or done_now == 0:
            return 0
        return done_now / self.elapsed

    @property
    def eta(self) -> float | None:
        """Estimated time remaining in seconds."""
        if self.rate == 0:
            return None
        return max(self.total - self.attempted, 0) / self.rate

    @property
    def percent(self) -> float:
        if self.total == 0:
            return 100.0
        return min(self.attempted / self.total * 100, 100.0)


def format_time(seconds: float | None) -> str:
    """Format seconds as human-readable time."""
    if seconds is None:
        return "--:--"

    if seconds < 60:
        return f"{seconds:.0f}s"
    elif seconds < 3600:
        mins = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{mins}m {secs}s"
    else:
        hours = int(seconds // 3600)
        mins = int((seconds % 3600) // 60)
        return f"{hours}h {mins}m"


class ProgressReporter:
    """Single updating progress line for a job.

    Usage:
        with ProgressReporter(job.total, desc="ocr", initial=job.cursor) as progress:
            while not result.done:
                result = processor.process_chunk(job)
                progress.advance(result.processed_delta, result.failed_delta)
    """

    def __init__(
        self,
        total: int,
        desc: str = "Progress",
        unit: str = "pages",
        initial: int = 0,
        initial_failed: int = 0,
        stream=None,
    ):
        """Initialize progress reporter.

        Args:
            total: Total number of pages in the job
            desc: Description prefix for progress line
            unit: Unit name for items
            initial: Pages already attempted when this session starts
            initial_failed: How many of those failed
            stream: Output stream (stderr by default)
        """
        self.stats = ProgressStats(total=total, resumed_from=initial, prior_failed=initial_failed)
        self.desc = desc
        self.unit = unit
        self._output = stream or sys.stderr
        self._is_tty = self._output.isatty()
        self._last_line_len = 0
        self._last_decile = -1
        self._note: str | None = None

    def __enter__(self):
        self.stats.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.finish()

    def advance(self, succeeded: int = 0, failed: int = 0, note: str | None = None) -> None:
        """Add one chunk's results and redraw.

        Args:
            succeeded: Pages that succeeded in the chunk
            failed: Pages that failed in the chunk
            note: Short status shown after the counters (e.g. "paused")
        """
        self.stats.succeeded += succeeded
        self.stats.failed += failed
        self._note = note
        self._render()

    def _render(self) -> None:
        stats = self.stats

        bar_width = 20
        filled = int(bar_width * stats.percent / 100)
        bar = "█" * filled + "░" * (bar_width - filled)

        parts = [
            f"{self.desc}: [{bar}]",
            f"{stats.attempted}/{stats.total}",
            f"({stats.percent:.0f}%)",
            f"[{format_time(stats.elapsed)}<{format_time(stats.eta)}]",
        ]
        if stats.total_failed:
            parts.append(f"{stats.total_failed} failed")
        if stats.rate >= 1:
            parts.append(f"{stats.rate:.1f} {self.unit}/s")
        elif stats.rate > 0:
            parts.append(f"{1 / stats.rate:.1f}s/{self.unit.rstrip('s')}")
        if self._note:
            parts.append(f"| {self._note}")

        line = " ".join(parts)

        if self._is_tty:
            clear = " " * max(0, self._last_line_len - len(line))
            self._output.write(f"\r{line}{clear}")
            self._output.flush()
            self._last_line_len = len(line)
        else:
            # Non-TTY: one line per 10% step, plus notes
            decile = int(stats.percent // 10)
            if decile != self._last_decile or self._note:
                self._last_decile = decile
                self._output.write(line + "\n")
                self._output.flush()

    def finish(self) -> None:
        """Finish progress and print summary."""
        stats = self.stats

        if self._is_tty:
            self._output.write("\n")

        elapsed_str = format_time(stats.elapsed)
        if stats.attempted < stats.total:
            summary = (
                f"- {self.desc} stopped at {stats.attempted}/{stats.total} "
                f"({stats.total_failed} failed, {elapsed_str})"
            )
        elif stats.total_failed > 0:
            summary = (
                f"✓ {self.desc} complete: {stats.total - stats.total_failed}/{stats.total} "
                f"succeeded, {stats.total_failed} failed ({elapsed_str})"
            )
        else:
            summary = f"✓ {self.desc} complete: {stats.total} {self.unit} ({elapsed_str})"

        self._output.write(summary + "\n")
        self._output.flush()
