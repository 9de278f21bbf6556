import logging
import sys
from dataclasses import dataclass, replace

LOG = logging.getLogger("phymv.progress")


@dataclass(frozen=True)
class RunState:
    total_items: int
    completed_count: int = 0
    failed_count: int = 0


def format_progress(sub_cnt: int, sub_total: int, cnt: int, total: int) -> str:
    return (f"cohort: {sub_cnt:0{len(str(sub_total))}d}/{sub_total}, "
            f"all: {cnt:0{len(str(total))}d}/{total}")


class ProgressTracker:
    """Counts completion records for one cohort and keeps a status line.

    Only one thread may call :meth:`consume`; the counters are not locked.
    """

    def __init__(self, state: RunState, sub_total: int, stream=None):
        self.state = state
        self.sub_total = sub_total
        self.sub_cnt = 0
        self.failures = []
        self.stream = stream if stream is not None else sys.stderr
        self._is_tty = getattr(self.stream, "isatty", lambda: False)()
        self._last_len = 0

    def _render(self, line: str, final: bool = False):
        if self._is_tty:
            self.stream.write("\r" + " " * self._last_len + "\r")
        if final:
            self.stream.write(line + "\n")
            self._last_len = 0
        elif self._is_tty:
            self.stream.write(line)
            self._last_len = len(line)
        else:
            return
        self.stream.flush()

    def line(self) -> str:
        return format_progress(self.sub_cnt, self.sub_total, self.state.completed_count, self.state.total_items)

    def update(self, record):
        self.sub_cnt += 1
        failed = self.state.failed_count
        if not record.ok:
            failed += 1
            self.failures.append(record)
            LOG.warning("failed to move %s: %s", record.path, record.reason)
        self.state = replace(self.state, completed_count=self.state.completed_count + 1, failed_count=failed)
        self._render(self.line())

    def consume(self, records) -> RunState:
        for record in records:
            self.update(record)
        self._render(self.line(), final=True)
        return self.state
