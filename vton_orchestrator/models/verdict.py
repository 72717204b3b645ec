"""Generation attempt and quality verdict models."""

from enum import Enum

from pydantic import BaseModel, Field


class VerdictAction(str, Enum):
    SELECT = "select"
    RETRY = "retry"


class CandidateAssessment(BaseModel):
    """Evaluator notes for a single candidate."""
    index: int = Field(ge=0)
    material_flaw: bool = False
    fundamentally_flawed: bool = False
    notes: str = ""


class QualityVerdict(BaseModel):
    """Outcome of one quality gate call. ``chosen_index`` is never null."""

    action: VerdictAction
    chosen_index: int = Field(ge=0)
    reasoning: str = ""
    is_final_attempt: bool = False
    evaluator_failed: bool = False

    @property
    def selected(self) -> bool:
        return self.action == VerdictAction.SELECT


class GenerationAttempt(BaseModel):
    """One produced image of one retry cycle."""
    index: int = Field(ge=0)
    tier: str
    image_ref: str
    attempt: int = 0
