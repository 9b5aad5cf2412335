#!/usr/bin/env python3
"""
Batch Policy for Kritiq Reviewer

Decides what to do with a scan result before any file is sent to the
model. Two flavours share one code path and differ only in configuration:

- truncate (default): above the threshold, silently keep the first
  `limit` files in scan order.
- interactive: above the threshold, ask the user to review all, review
  the first `limit`, or cancel.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

POLICY_TRUNCATE = "truncate"
POLICY_INTERACTIVE = "interactive"

DEFAULT_THRESHOLDS = {
    POLICY_TRUNCATE: 15,
    POLICY_INTERACTIVE: 12,
}


class BatchChoice(str, Enum):
    REVIEW_ALL = "all"
    REVIEW_FIRST = "first"
    CANCEL = "cancel"


class DecisionKind(str, Enum):
    NO_FILES = "no_files"
    PROCEED = "proceed"
    CANCEL = "cancel"


@dataclass
class BatchDecision:
    kind: DecisionKind
    files: List[Any] = field(default_factory=list)
    truncated: bool = False

    @property
    def proceed(self) -> bool:
        return self.kind == DecisionKind.PROCEED


# (total, limit) -> choice; None means the prompt was dismissed
Chooser = Callable[[int, int], Optional[BatchChoice]]


class BatchPolicy:
    """Apply the batch size rules. Never reorders candidates."""

    def __init__(
        self,
        policy: str = POLICY_TRUNCATE,
        threshold: Optional[int] = None,
        limit: Optional[int] = None,
        chooser: Optional[Chooser] = None,
    ):
        if policy not in DEFAULT_THRESHOLDS:
            raise ValueError(f"Unknown batch policy: {policy!r}")
        self.policy = policy
        self.threshold = threshold if threshold is not None else DEFAULT_THRESHOLDS[policy]
        self.limit = limit if limit is not None else self.threshold
        if self.threshold < 1 or self.limit < 1:
            raise ValueError("batch threshold and limit must be positive")
        self.chooser = chooser

    def decide(self, candidates: Sequence[Any]) -> BatchDecision:
        """
        Decide how much of the scan result to review.

        Args:
            candidates: Files in scan order

        Returns:
            BatchDecision; its files are always a prefix of candidates
        """
        total = len(candidates)
        if total == 0:
            return BatchDecision(DecisionKind.NO_FILES)

        if total <= self.threshold:
            return BatchDecision(DecisionKind.PROCEED, list(candidates))

        if self.policy == POLICY_TRUNCATE or self.chooser is None:
            logger.warning(
                f"Large project detected ({total} files). "
                f"Limiting to the first {self.limit} files for safety."
            )
            return self._first(candidates)

        choice = self.chooser(total, self.limit)
        if choice == BatchChoice.REVIEW_ALL:
            return BatchDecision(DecisionKind.PROCEED, list(candidates))
        if choice == BatchChoice.REVIEW_FIRST:
            return self._first(candidates)
        return BatchDecision(DecisionKind.CANCEL)

    def _first(self, candidates: Sequence[Any]) -> BatchDecision:
        kept = list(candidates[:self.limit])
        return BatchDecision(
            DecisionKind.PROCEED, kept, truncated=len(kept) < len(candidates)
        )


def create_policy_from_config(
    config_dict: Dict[str, Any],
    chooser: Optional[Chooser] = None,
) -> BatchPolicy:
    """Create a BatchPolicy from the 'batch' section of the configuration."""
    batch_config = config_dict.get('batch') or {}
    return BatchPolicy(
        policy=batch_config.get('policy', POLICY_TRUNCATE),
        threshold=batch_config.get('threshold'),
        limit=batch_config.get('limit'),
        chooser=chooser,
    )
