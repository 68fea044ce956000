"""Backoff policies for automatic retries.

A policy maps the retry number (1 for the first retry) to a delay in
seconds. All policies are non-decreasing in the retry number and capped at
`max_delay_ms`.
"""
from dataclasses import dataclass, field

from taxqueue.config import settings

POLICY_KINDS = ("fixed", "linear", "exponential")


@dataclass(frozen=True)
class RetryPolicy:
    kind: str = "linear"
    base_delay_ms: int = 5000
    max_delay_ms: int = 300000

    def __post_init__(self) -> None:
        if self.kind not in POLICY_KINDS:
            raise ValueError(f"Unknown retry policy: {self.kind}")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("Retry delays must be non-negative")

    def delay_ms(self, retry_number: int, base_delay_ms: int | None = None) -> int:
        base = self.base_delay_ms if base_delay_ms is None else base_delay_ms
        n = max(1, retry_number)
        if self.kind == "fixed":
            delay = base
        elif self.kind == "linear":
            delay = base * n
        else:
            delay = base * (2 ** (n - 1))
        return min(delay, self.max_delay_ms)

    def delay_seconds(self, retry_number: int, base_delay_ms: int | None = None) -> float:
        return self.delay_ms(retry_number, base_delay_ms) / 1000


@dataclass
class RetryPolicies:
    """Per-job-type policies with a fallback default."""

    default: RetryPolicy = field(default_factory=RetryPolicy)
    by_type: dict[str, RetryPolicy] = field(default_factory=dict)

    def for_type(self, job_type: str) -> RetryPolicy:
        return self.by_type.get(job_type, self.default)


def policies_from_settings() -> RetryPolicies:
    return RetryPolicies(
        default=RetryPolicy(
            kind=settings.JOB_RETRY_POLICY,
            base_delay_ms=settings.JOB_RETRY_BASE_DELAY_MS,
            max_delay_ms=settings.JOB_RETRY_MAX_DELAY_MS,
        )
    )
