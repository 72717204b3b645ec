"""Quality gate: turns an evaluator's opinion into a verdict the pipeline can act on."""

from __future__ import annotations

from typing import Any, Sequence

import structlog
from pydantic import ValidationError

from ..errors import EvaluatorFailure, InputError
from ..models.verdict import CandidateAssessment, QualityVerdict, VerdictAction
from ..services.contracts import QualityEvaluator

logger = structlog.get_logger(__name__)


def parse_assessments(raw: Any, candidate_count: int) -> list[CandidateAssessment]:
    """Parse per-candidate assessments, keyed by index. Missing entries are fine."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise EvaluatorFailure("assessments must be a list")
    assessments = []
    for entry in raw:
        try:
            assessment = CandidateAssessment.model_validate(entry)
        except ValidationError as e:
            raise EvaluatorFailure(f"invalid assessment: {e}") from e
        if assessment.index >= candidate_count:
            raise EvaluatorFailure(f"assessment index {assessment.index} out of range")
        assessments.append(assessment)
    return assessments


def parse_chosen_index(raw: dict[str, Any], candidate_count: int) -> int | None:
    value = raw.get("chosen_index", raw.get("chosenIndex"))
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) != value:
        raise EvaluatorFailure(f"chosen_index is not an integer: {value!r}")
    index = int(value)
    if not 0 <= index < candidate_count:
        raise EvaluatorFailure(f"chosen_index {index} out of range for {candidate_count} candidates")
    return index


class QualityGate:
    """Select-or-retry decision over K candidates.

    Three regimes, picked by the flags:

    * final attempt: always ``select``; some candidate is returned no matter what.
    * escalation check: lenient, ``retry`` only when every candidate is
      fundamentally flawed (wrong category, structural corruption, artifacts).
    * otherwise: strict, ``retry`` when every candidate has a material flaw.

    When the evaluator returns per-candidate ``assessments`` covering every
    candidate, the gate applies these rules itself. Otherwise it trusts the
    evaluator's ``action``. Evaluator errors never propagate; they degrade to a
    fallback verdict.
    """

    def __init__(self, evaluator: QualityEvaluator):
        self.evaluator = evaluator

    async def evaluate(
        self,
        reference: bytes,
        candidates: Sequence[bytes],
        is_escalation_check: bool = False,
        is_absolute_final_attempt: bool = False,
    ) -> QualityVerdict:
        if not candidates:
            raise InputError("Quality gate needs at least one candidate")

        flags = {
            "is_escalation_check": is_escalation_check,
            "is_absolute_final_attempt": is_absolute_final_attempt,
        }
        try:
            raw = await self.evaluator.evaluate(reference, candidates, flags)
            verdict = self.decide(raw, len(candidates), is_escalation_check, is_absolute_final_attempt)
        except Exception as e:  # any evaluator outage degrades to the fallback
            logger.warning("Quality evaluator failed", error=str(e), **flags)
            return self.fallback(str(e), is_absolute_final_attempt)

        logger.info(
            "Quality verdict",
            action=verdict.action.value,
            chosen_index=verdict.chosen_index,
            candidates=len(candidates),
            **flags,
        )
        return verdict

    def decide(
        self,
        raw: Any,
        candidate_count: int,
        is_escalation_check: bool,
        is_absolute_final_attempt: bool,
    ) -> QualityVerdict:
        if not isinstance(raw, dict):
            raise EvaluatorFailure(f"expected a JSON object, got {type(raw).__name__}")

        chosen = parse_chosen_index(raw, candidate_count)
        reasoning = str(raw.get("reasoning", ""))
        assessments = parse_assessments(raw.get("assessments"), candidate_count)
        covered = {a.index for a in assessments} >= set(range(candidate_count))

        if covered:
            action, chosen = self._apply_rules(assessments, chosen, is_escalation_check)
        else:
            try:
                action = VerdictAction(str(raw.get("action", "")).lower())
            except ValueError as e:
                raise EvaluatorFailure(f"unknown action: {raw.get('action')!r}") from e
            if action == VerdictAction.SELECT and chosen is None:
                raise EvaluatorFailure("select verdict without chosen_index")

        if is_absolute_final_attempt and action == VerdictAction.RETRY:
            reasoning = f"Final attempt, accepting best available candidate. {reasoning}".strip()
            action = VerdictAction.SELECT

        return QualityVerdict(
            action=action,
            chosen_index=chosen if chosen is not None else 0,
            reasoning=reasoning,
            is_final_attempt=is_absolute_final_attempt,
        )

    @staticmethod
    def _apply_rules(
        assessments: list[CandidateAssessment],
        chosen: int | None,
        is_escalation_check: bool,
    ) -> tuple[VerdictAction, int | None]:
        by_index = {a.index: a for a in assessments}
        if is_escalation_check:
            acceptable = [i for i, a in sorted(by_index.items()) if not a.fundamentally_flawed]
        else:
            acceptable = [
                i for i, a in sorted(by_index.items())
                if not a.material_flaw and not a.fundamentally_flawed
            ]

        if not acceptable:
            return VerdictAction.RETRY, chosen
        if chosen in acceptable:
            return VerdictAction.SELECT, chosen
        return VerdictAction.SELECT, acceptable[0]

    @staticmethod
    def fallback(message: str, is_absolute_final_attempt: bool = False) -> QualityVerdict:
        return QualityVerdict(
            action=VerdictAction.SELECT if is_absolute_final_attempt else VerdictAction.RETRY,
            chosen_index=0,
            reasoning=f"Evaluator failure: {message}",
            is_final_attempt=is_absolute_final_attempt,
            evaluator_failed=True,
        )
