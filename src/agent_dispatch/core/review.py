"""Interface to the optional review service.

The dispatcher hands successful runs to a reviewer when one is configured and
later applies the reviewer's verdict. How a review is carried out is up to
the implementation.
"""

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class ReviewResult:
    passed: bool
    issues: list[str] = field(default_factory=list)
    follow_up_task_ids: list[str] = field(default_factory=list)


class ReviewService(Protocol):
    def trigger_review(self, task_id: str, agent_name: str) -> bool:
        """Start a review. Returns False if the review could not be started."""
        ...

    def get_pending_reviews(self) -> list[str]:
        ...

    def is_review_complete(self, task_id: str) -> bool:
        ...

    def get_review_result(self, task_id: str) -> ReviewResult | None:
        ...
