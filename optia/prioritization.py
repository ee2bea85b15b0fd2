"""
Validators for the 80/20 prioritization stage and the objective-linking stage.

Both raise a StageRuleError subclass on the first failed condition; the error
carries a code, a message naming the condition and current/required counts.
On success they return the normalized content for the final artifact.
"""
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from optia.cause_tree import TreeLimits
from optia.config_manager import config
from optia.exceptions import LineageError, ThresholdError
from optia.utils import clean_text


@dataclass(frozen=True)
class PrioritizationLimits:
    min_selected: int
    max_selected: int
    criteria_count: int
    min_weight: float
    max_weight: float
    critical_ratio: float
    min_root_candidates: int

    @classmethod
    def from_state(
        cls, state: Optional[Dict[str, Any]], tree: Optional[Dict[str, Any]] = None
    ) -> "PrioritizationLimits":
        """Thresholds for a draft; the candidate minimum follows the validated tree."""
        state = state or {}

        def pick(key: str, default: int) -> int:
            value = state.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return default
            return int(value)

        return cls(
            min_selected=pick("minSelected", config.PARETO_MIN_SELECTED),
            max_selected=pick("maxSelected", config.PARETO_MAX_SELECTED),
            criteria_count=config.PARETO_CRITERIA_COUNT,
            min_weight=config.CRITERION_MIN_WEIGHT,
            max_weight=config.CRITERION_MAX_WEIGHT,
            critical_ratio=config.CRITICAL_RATIO,
            min_root_candidates=TreeLimits.from_tree(tree).min_root_candidates,
        )


def critical_floor(selected_count: int, ratio: Optional[float] = None) -> int:
    """Minimum critical roots for a selection: max(1, ceil(ratio * n))."""
    ratio = config.CRITICAL_RATIO if ratio is None else ratio
    # round first: 0.2 * 15 is 3.0000000000000004 in binary floating point
    return max(1, math.ceil(round(ratio * selected_count, 9)))


def clean_list(values: Any) -> List[str]:
    """Stripped, non-empty, de-duplicated strings in first-seen order."""
    if not isinstance(values, list):
        return []
    seen = set()
    cleaned = []
    for value in values:
        if isinstance(value, dict):
            value = value.get("text") or value.get("name")
        text = clean_text(value)
        if text and text not in seen:
            seen.add(text)
            cleaned.append(text)
    return cleaned


def _weight(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        weight = float(value)
    except (TypeError, ValueError):
        return None
    return weight if math.isfinite(weight) else None


def normalize_criteria(criteria: Any) -> List[Dict[str, Any]]:
    if not isinstance(criteria, list):
        return []
    normalized = []
    for position, item in enumerate(criteria, start=1):
        item = item if isinstance(item, dict) else {"name": item}
        weight = _weight(item.get("weight"))
        normalized.append({
            "id": clean_text(item.get("id")) or f"crit_{position}",
            "name": clean_text(item.get("name")),
            "weight": int(weight) if weight is not None and weight.is_integer() else weight,
        })
    return normalized


def validate_prioritization(
    state: Dict[str, Any],
    root_candidates: Sequence[str],
    limits: Optional[PrioritizationLimits] = None,
) -> Dict[str, Any]:
    """
    Check a prioritization draft against the validated root-candidate set.

    Order: selection bounds, selection within candidates, criteria, critical
    floor, critical within selection.

    Returns:
        {"selectedRoots", "criteria", "criticalRoots"} normalized
    """
    limits = limits or PrioritizationLimits.from_state(state)
    candidates = clean_list(list(root_candidates))

    if len(candidates) < limits.min_root_candidates:
        raise ThresholdError(
            f"The cause tree has too few root candidates to prioritize "
            f"({len(candidates)}, minimum {limits.min_root_candidates}).",
            current=len(candidates),
            required=limits.min_root_candidates,
            code="ROOT_CANDIDATES_BELOW_MINIMUM",
        )

    selected = clean_list(state.get("selectedRoots"))
    if not limits.min_selected <= len(selected) <= limits.max_selected:
        raise ThresholdError(
            f"Select between {limits.min_selected} and {limits.max_selected} root causes. "
            f"Currently: {len(selected)}.",
            current=len(selected),
            required=limits.min_selected if len(selected) < limits.min_selected else limits.max_selected,
            code="SELECTED_OUT_OF_BOUNDS",
        )

    candidate_set = set(candidates)
    invalid_selected = [root for root in selected if root not in candidate_set]
    if invalid_selected:
        raise ThresholdError(
            f"{len(invalid_selected)} selected root causes are not root candidates of the validated cause tree.",
            detail={"invalidSelected": invalid_selected},
            code="SELECTED_NOT_IN_CANDIDATES",
        )

    criteria = normalize_criteria(state.get("criteria"))
    if len(criteria) != limits.criteria_count:
        raise ThresholdError(
            f"Define exactly {limits.criteria_count} weighted criteria "
            f"(weight {limits.min_weight:g} to {limits.max_weight:g}). Currently: {len(criteria)}.",
            current=len(criteria),
            required=limits.criteria_count,
            code="CRITERIA_COUNT",
        )
    for position, criterion in enumerate(criteria, start=1):
        if not criterion["name"]:
            raise ThresholdError(
                f"Criterion {position} has no name.",
                detail={"criterion": position},
                code="CRITERION_UNNAMED",
            )
        weight = criterion["weight"]
        if weight is None or not limits.min_weight <= weight <= limits.max_weight:
            raise ThresholdError(
                f"The weight of criterion \"{criterion['name']}\" must be between "
                f"{limits.min_weight:g} and {limits.max_weight:g}.",
                detail={"criterion": criterion["name"], "weight": weight},
                code="CRITERION_WEIGHT",
            )

    critical = clean_list(state.get("criticalRoots"))
    floor = critical_floor(len(selected), limits.critical_ratio)
    if len(critical) < floor:
        raise ThresholdError(
            f"For {len(selected)} selected causes, list at least {floor} critical causes "
            f"(top {limits.critical_ratio:.0%}). Currently: {len(critical)}.",
            current=len(critical),
            required=floor,
            code="CRITICAL_BELOW_FLOOR",
        )

    selected_set = set(selected)
    invalid_critical = [root for root in critical if root not in selected_set]
    if invalid_critical:
        raise ThresholdError(
            f"{len(invalid_critical)} critical causes are not in the selected root causes.",
            detail={"invalidCritical": invalid_critical},
            code="CRITICAL_NOT_IN_SELECTED",
        )

    return {"selectedRoots": selected, "criteria": criteria, "criticalRoots": critical}


def validate_objectives(
    state: Dict[str, Any],
    validated_prioritization: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    """
    Check an objectives draft against the validated prioritization payload.

    A missing validated prioritization is a lineage failure, whatever the
    draft holds.

    Returns:
        {"generalObjective", "specificObjectives", "linkedCriticalRoots"} normalized
    """
    official = clean_list((validated_prioritization or {}).get("criticalRoots"))
    if not official:
        raise LineageError(
            "Stage 5 (Pareto) must be validated with its critical causes before objectives can be validated.",
            detail={"upstreamStage": 5},
        )

    general = clean_text(state.get("generalObjective"))
    if len(general) < config.MIN_GENERAL_OBJECTIVE_CHARS:
        raise ThresholdError(
            f"The general objective is too short ({len(general)} characters, "
            f"minimum {config.MIN_GENERAL_OBJECTIVE_CHARS}).",
            current=len(general),
            required=config.MIN_GENERAL_OBJECTIVE_CHARS,
            code="GENERAL_OBJECTIVE_TOO_SHORT",
        )

    specifics = clean_list(state.get("specificObjectives"))
    if len(specifics) < config.MIN_SPECIFIC_OBJECTIVES:
        raise ThresholdError(
            f"Write at least {config.MIN_SPECIFIC_OBJECTIVES} specific objectives. Currently: {len(specifics)}.",
            current=len(specifics),
            required=config.MIN_SPECIFIC_OBJECTIVES,
            code="SPECIFIC_OBJECTIVES_BELOW_MINIMUM",
        )

    linked = clean_list(state.get("linkedCriticalRoots"))
    if not linked:
        raise ThresholdError(
            "Link at least 1 critical cause from the Pareto stage to your objectives.",
            current=0,
            required=1,
            code="LINKED_ROOTS_EMPTY",
        )

    official_set = set(official)
    invalid_linked = [root for root in linked if root not in official_set]
    if invalid_linked:
        raise ThresholdError(
            f"{len(invalid_linked)} linked causes are not critical causes of the validated Pareto stage.",
            detail={"invalidLinked": invalid_linked},
            code="LINKED_NOT_IN_CRITICAL",
        )

    return {"generalObjective": general, "specificObjectives": specifics, "linkedCriticalRoots": linked}
