"""
Pipeline controller: the stage chain 0 -> 1 -> ... -> 6 and its validation gate.

validate(owner, stage, period):
    1. upstream lineage (validated final of stage N-1, same period)
    2. draft resolution with recency fallback
    3. stage rules
    4. score + evaluation record
    5. one atomic commit of final, evaluation and draft status

User-actionable failures (lineage, thresholds, missing draft) come back as a
ValidationResult with valid=False; storage failures propagate.
"""
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from optia.artifact_store import StageArtifactStore, current_period_key, get_store
from optia.cause_tree import CauseTreeIndex
from optia.exceptions import LineageError, StageRuleError
from optia.logger import get_logger
from optia.models import (
    EvaluationRecord,
    STAGE_KINDS,
    Stage,
    StageArtifact,
    ValidationResult,
)
from optia.prioritization import PrioritizationLimits, validate_objectives, validate_prioritization
from optia.scoring import StageScore, score_gate_passed
from optia.stage_rules import STAGE_CHECKS

logger = get_logger("pipeline")

STAGE_TITLES = {
    Stage.CONTEXT: "Case context",
    Stage.PRODUCTIVITY: "Productivity baseline",
    Stage.FODA: "Quadrant analysis",
    Stage.BRAINSTORM: "Idea brainstorm",
    Stage.ISHIKAWA: "Cause tree",
    Stage.PARETO: "Pareto prioritization",
    Stage.OBJECTIVES: "Objectives",
}


class PipelineController:
    """Gatekeeper between stage drafts and validated finals."""

    def __init__(self, store: Optional[StageArtifactStore] = None):
        self.store = store or get_store()

    # --- lineage ---

    def upstream_final(self, owner: str, stage: Stage, period_key: str) -> Optional[StageArtifact]:
        """Validated final of the stage's upstream for the same period."""
        upstream = stage.upstream
        if upstream is None:
            return None
        final = self.store.get(owner, upstream, STAGE_KINDS[upstream].final, period_key)
        if final is None or not final.is_validated:
            raise LineageError(
                f"Stage {int(upstream)} ({STAGE_TITLES[upstream]}) is not finalized for period {period_key}; "
                f"validate it before stage {int(stage)}.",
                detail={"upstreamStage": int(upstream), "periodKey": period_key},
            )
        return final

    def is_unlocked(self, owner: str, stage: Stage, period_key: str) -> bool:
        try:
            self.upstream_final(owner, stage, period_key)
        except LineageError:
            return False
        return True

    # --- checks ---

    def _check(
        self, stage: Stage, payload: Dict[str, Any], upstream: Optional[StageArtifact]
    ) -> Tuple[Dict[str, Any], StageScore]:
        if stage in STAGE_CHECKS:
            return STAGE_CHECKS[stage](payload)

        if stage == Stage.PARETO:
            tree = upstream.payload
            roots = tree.get("roots") or CauseTreeIndex(tree).root_candidates()
            final = validate_prioritization(payload, roots, PrioritizationLimits.from_state(payload, tree))
            final["fromStage4"] = {"rootsCount": len(roots), "ishikawaUpdatedAt": upstream.updated_at}
            score = score_gate_passed(
                selectedCount=len(final["selectedRoots"]),
                criticalCount=len(final["criticalRoots"]),
            )
            return final, score

        # Stage.OBJECTIVES
        final = validate_objectives(payload, upstream.payload if upstream else None)
        final["fromPareto"] = {
            "criticalRootsCount": len(upstream.payload.get("criticalRoots") or []),
            "paretoUpdatedAt": upstream.updated_at,
        }
        score = score_gate_passed(
            specificCount=len(final["specificObjectives"]),
            linkedCount=len(final["linkedCriticalRoots"]),
        )
        return final, score

    # --- gate ---

    def validate(
        self,
        owner: str,
        stage: Any,
        period_key: Optional[str] = None,
        conversation_ref: Optional[str] = None,
    ) -> ValidationResult:
        stage = Stage.parse(stage)
        period_key = period_key or current_period_key()
        kinds = STAGE_KINDS[stage]

        if stage == Stage.CONTEXT:
            confirmed = self.store.get(owner, stage, kinds.final, period_key)
            if confirmed is not None and confirmed.is_validated:
                return ValidationResult(
                    valid=True,
                    message="The case context is already confirmed for this period.",
                    final=confirmed.payload,
                    score=confirmed.score,
                )

        try:
            upstream = self.upstream_final(owner, stage, period_key)
            draft = self.store.resolve(owner, stage, kinds.draft, period_key, conversation_ref)
            if draft is None:
                raise StageRuleError(
                    f"There is no saved work for stage {int(stage)} ({STAGE_TITLES[stage]}) yet.",
                    code="NO_DRAFT",
                )
            final_payload, score = self._check(stage, draft.payload, upstream)
        except StageRuleError as exc:
            logger.info("Stage %d validation failed for %s: %s (%s)", stage, owner, exc.code, exc.message)
            return ValidationResult(
                valid=False,
                message=exc.message,
                code=exc.code,
                current=exc.current,
                required=exc.required,
                detail=exc.detail,
            )

        final_payload["validatedAt"] = datetime.now().isoformat()
        evaluation = EvaluationRecord(
            owner=owner,
            stage=stage,
            artifact_kind=kinds.final,
            period_key=period_key,
            version=1,
            total_score=score.total,
            total_label=score.label,
            rubric=score.rubric,
            result=score.to_dict(),
            conversation_ref=conversation_ref,
        )
        # the cause-tree draft keeps accumulating; flat drafts close with their final
        draft_key = draft.key if stage != Stage.ISHIKAWA else None

        final = self.store.commit_final(
            owner,
            stage,
            period_key,
            final_payload,
            score.to_dict(),
            evaluation,
            conversation_ref=conversation_ref,
            draft_key=draft_key,
        )
        logger.info("Stage %d validated for %s (%s), score %s", stage, owner, period_key, score.total)

        return ValidationResult(
            valid=True,
            message=f"Stage {int(stage)} ({STAGE_TITLES[stage]}) validated.",
            final=final.payload,
            score=final.score,
        )

    # --- status ---

    def pipeline_status(self, owner: str, period_key: Optional[str] = None) -> Dict[str, Any]:
        """Per stage: draft and final presence, status and whether it is unlocked."""
        period_key = period_key or current_period_key()
        stages = []
        current = None

        for stage in Stage:
            kinds = STAGE_KINDS[stage]
            draft = self.store.resolve(owner, stage, kinds.draft, period_key)
            final = self.store.get(owner, stage, kinds.final, period_key)
            validated = final is not None and final.is_validated
            unlocked = self.is_unlocked(owner, stage, period_key)
            if current is None and unlocked and not validated:
                current = int(stage)

            stages.append({
                "stage": int(stage),
                "slug": stage.slug,
                "title": STAGE_TITLES[stage],
                "hasDraft": draft is not None,
                "draftStatus": draft.status.value if draft else None,
                "draftPeriodKey": draft.period_key if draft else None,
                "hasFinal": final is not None,
                "validated": validated,
                "unlocked": unlocked,
                "score": final.score if final else None,
                "updatedAt": (final or draft).updated_at if (final or draft) else None,
            })

        return {"owner": owner, "periodKey": period_key, "currentStage": current, "stages": stages}
