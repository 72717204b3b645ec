"""Retry/escalation ladder for generation jobs."""

from __future__ import annotations

from enum import Enum
from typing import Any, Sequence

from pydantic import BaseModel, Field


class RetryDecision(str, Enum):
    RETRY = "retry"          # same tier, next attempt
    ESCALATE = "escalate"    # next attempt on the next tier


class LadderState(BaseModel):
    """Position on the ladder. Persisted in the generation job's metadata."""
    attempt_count: int = Field(default=0, ge=0)
    tier_index: int = Field(default=0, ge=0)
    tier_attempts: int = Field(default=0, ge=0)

    @classmethod
    def from_job(cls, attempt_count: int, metadata: dict[str, Any]) -> "LadderState":
        return cls(
            attempt_count=attempt_count,
            tier_index=int(metadata.get("tier_index", 0)),
            tier_attempts=int(metadata.get("tier_attempts", 0)),
        )

    def metadata(self) -> dict[str, int]:
        return {"tier_index": self.tier_index, "tier_attempts": self.tier_attempts}


class CycleFlags(BaseModel):
    is_escalation_check: bool
    is_absolute_final_attempt: bool


class RetryEscalationPolicy:
    """Monotonically increasing effort with a hard bound on attempts.

    ``tiers`` are ordered from cheapest to most capable. After
    ``escalation_threshold`` retries on one tier the ladder moves to the next
    tier (if any). The cycle with ``attempt_count == max_attempts - 1`` is the
    absolute final attempt, on which the gate must select.
    """

    def __init__(self, tiers: Sequence[str], escalation_threshold: int = 2, max_attempts: int = 4):
        if not tiers:
            raise ValueError("At least one engine tier is required")
        if escalation_threshold < 1:
            raise ValueError("escalation_threshold must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.tiers = list(tiers)
        self.escalation_threshold = escalation_threshold
        self.max_attempts = max_attempts

    def tier(self, state: LadderState) -> str:
        return self.tiers[min(state.tier_index, len(self.tiers) - 1)]

    def has_stronger_tier(self, state: LadderState) -> bool:
        return state.tier_index < len(self.tiers) - 1

    def is_final(self, state: LadderState) -> bool:
        return state.attempt_count >= self.max_attempts - 1

    def flags(self, state: LadderState) -> CycleFlags:
        return CycleFlags(
            is_escalation_check=(
                state.tier_attempts == self.escalation_threshold - 1
                and self.has_stronger_tier(state)
            ),
            is_absolute_final_attempt=self.is_final(state),
        )

    def after_retry(self, state: LadderState) -> tuple[LadderState, RetryDecision]:
        """Advance the ladder after a cycle that did not select a candidate."""
        if self.is_final(state):
            raise ValueError("No retry is possible after the final attempt")

        attempt_count = state.attempt_count + 1
        tier_attempts = state.tier_attempts + 1
        tier_index = state.tier_index
        decision = RetryDecision.RETRY

        if tier_attempts >= self.escalation_threshold and self.has_stronger_tier(state):
            tier_index += 1
            tier_attempts = 0
            decision = RetryDecision.ESCALATE

        return (
            LadderState(attempt_count=attempt_count, tier_index=tier_index, tier_attempts=tier_attempts),
            decision,
        )
