from dataclasses import dataclass, field

from constants import *
from inventory import WorkItem


def adjust_bounds(min_bytes: int, max_bytes: int | None):
    """Keep a zero-sized bound from producing an empty range.

    Zero-byte files form their own cohort, so an upper bound of 0 becomes 1
    and the next cohort's lower bound of 0 becomes 1 as well.
    """
    if max_bytes is not None:
        if max_bytes == 0:
            max_bytes = 1
        elif min_bytes == 0:
            min_bytes = 1
    return min_bytes, max_bytes


def partition(items, min_bytes: int, max_bytes: int | None = None) -> list[WorkItem]:
    if max_bytes is None:
        return [item for item in items if item.size_bytes >= min_bytes]
    return [item for item in items if min_bytes <= item.size_bytes < max_bytes]


@dataclass(frozen=True)
class ConcurrencyBudget:
    max_procs: int
    min_threads: int
    max_threads: int | None = None

    def __post_init__(self):
        if self.max_procs < 1:
            raise ValueError("max_procs must be positive")
        if self.min_threads < 0:
            raise ValueError("min_threads must not be negative")
        if self.max_threads is not None and self.max_threads < self.min_threads:
            raise ValueError("max_threads must not be below min_threads")

    def bounds(self):
        max_bytes = None if self.max_threads is None else self.max_threads * THREAD_CHUNK_BYTES
        return adjust_bounds(self.min_threads * THREAD_CHUNK_BYTES, max_bytes)

    def effective_procs(self, multiplier: int = 1) -> int:
        return self.max_procs * multiplier

    def batch_size(self) -> int:
        # Fewer, thread-heavy processes still need enough paths each to stay busy.
        return 2 * self.max_procs ** 2


@dataclass
class Cohort:
    lower_bytes: int
    upper_bytes: int | None
    items: list = field(default_factory=list)

    def __len__(self):
        return len(self.items)

    @property
    def total_bytes(self):
        return sum(item.size_bytes for item in self.items)

    @property
    def paths(self):
        return [item.path for item in self.items]


def select_cohort(items, budget: ConcurrencyBudget) -> Cohort:
    lower, upper = budget.bounds()
    return Cohort(lower, upper, partition(items, lower, upper))


def default_budgets() -> list[ConcurrencyBudget]:
    return [ConcurrencyBudget(procs, lo, hi) for procs, lo, hi in COHORT_TIERS]


def describe(budget: ConcurrencyBudget) -> str:
    # thread counts map onto whole MiB, so report the un-adjusted bounds
    min_mib = budget.min_threads * THREAD_CHUNK_BYTES // MIB
    if budget.max_threads is None:
        return f"size >= {min_mib} MiB"
    max_mib = budget.max_threads * THREAD_CHUNK_BYTES // MIB
    return f"size in [{min_mib}, {max_mib}) MiB"
