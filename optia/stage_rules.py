"""
Minimum-content rules of stages 0-4.

Each `check_*` function takes a draft payload, raises ThresholdError naming
the first unmet condition (with current/required counts) and otherwise
returns (final_payload, score). Stages 5 and 6 live in prioritization.py
because they also need upstream artifacts.
"""
from typing import Any, Dict, List, Tuple

from optia.cause_tree import CauseTreeIndex, TreeLimits
from optia.config_manager import config
from optia.exceptions import ThresholdError
from optia.scoring import (
    StageScore,
    cost_total,
    productivity_ready,
    score_cause_tree,
    score_context,
    score_ideas,
    score_productivity,
    score_quadrants,
)
from optia.tree_merge import normalize_problem, problem_text
from optia.utils import clean_text

QUADRANTS = ("F", "D", "O", "A")
EXTERNAL_QUADRANTS = ("O", "A")
QUADRANT_NAMES = {
    "F": "Strengths",
    "D": "Weaknesses",
    "O": "Opportunities",
    "A": "Threats",
}

StageCheck = Tuple[Dict[str, Any], StageScore]


def _override(payload: Dict[str, Any], keys: Tuple[str, ...], default: int) -> int:
    """Per-draft threshold override, ignored unless it is an integer."""
    for key in keys:
        value = payload.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return default


def _value(raw: Any) -> Any:
    """Context fields may arrive wrapped as {"value": ...}."""
    if isinstance(raw, dict) and "value" in raw:
        return raw["value"]
    return raw


def context_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
    sector = clean_text(_value(payload.get("sector")))

    def as_list(raw: Any) -> List[str]:
        raw = _value(raw)
        if isinstance(raw, str):
            raw = [raw]
        if not isinstance(raw, list):
            return []
        return [clean_text(v) for v in raw if clean_text(v)]

    return {
        "sector": sector,
        "products": as_list(payload.get("products")),
        "process_focus": as_list(payload.get("process_focus")),
    }


def check_context(payload: Dict[str, Any]) -> StageCheck:
    fields = context_fields(payload)
    missing = [name for name in ("sector", "products", "process_focus") if not fields[name]]
    if missing:
        raise ThresholdError(
            "The case context is missing: " + ", ".join(missing) + ".",
            current=3 - len(missing),
            required=3,
            detail={"missing": missing},
            code="CONTEXT_INCOMPLETE",
        )

    for name in ("products", "process_focus"):
        if len(fields[name]) > config.MAX_CONTEXT_ITEMS:
            raise ThresholdError(
                f"List at most {config.MAX_CONTEXT_ITEMS} {name.replace('_', ' ')} "
                f"(currently {len(fields[name])}).",
                current=len(fields[name]),
                required=config.MAX_CONTEXT_ITEMS,
                code="CONTEXT_TOO_MANY_ITEMS",
            )

    final = dict(payload)
    final.update(fields)
    return final, score_context(final)


def check_productivity(payload: Dict[str, Any]) -> StageCheck:
    score = score_productivity(payload)
    if not productivity_ready(score):
        message = score.issues[0] if score.issues else (
            f"The productivity baseline scores {score.total}, below {config.PRODUCTIVITY_READY_SCORE}."
        )
        raise ThresholdError(
            message,
            current=score.total,
            required=config.PRODUCTIVITY_READY_SCORE,
            detail={"issues": score.issues, "score": score.to_dict()},
            code="NOT_READY",
        )

    final = dict(payload)
    if final.get("type") == "monetary":
        final["cost_total"] = cost_total(final.get("costs"))
    return final, score


def quadrant_items(payload: Dict[str, Any]) -> Dict[str, List[Dict[str, Any]]]:
    """Buckets as lists of {text, evidence?}; bare strings are normalized."""
    raw = payload.get("items") if isinstance(payload.get("items"), dict) else payload
    items: Dict[str, List[Dict[str, Any]]] = {}
    for quadrant in QUADRANTS:
        bucket = []
        for item in raw.get(quadrant) or []:
            if isinstance(item, str):
                item = {"text": item}
            if isinstance(item, dict) and clean_text(item.get("text")):
                bucket.append(item)
        items[quadrant] = bucket
    return items


def check_quadrants(payload: Dict[str, Any]) -> StageCheck:
    minimum = _override(payload, ("minItems",), config.QUADRANT_MIN_ITEMS)
    pending = payload.get("pending_evidence")
    if pending:
        raise ThresholdError(
            "Complete the pending evidence before validating.",
            detail={"pending_evidence": pending},
            code="PENDING_EVIDENCE",
        )

    items = quadrant_items(payload)
    counts = {q: len(items[q]) for q in QUADRANTS}
    short = [q for q in QUADRANTS if counts[q] < minimum]
    if short:
        names = ", ".join(f"{QUADRANT_NAMES[q]} ({counts[q]})" for q in short)
        raise ThresholdError(
            f"Quadrants below the minimum: {names}; minimum {minimum} per quadrant.",
            current=min(counts[q] for q in short),
            required=minimum,
            detail={"counts": counts, "below": short},
            code="BELOW_MINIMUM",
        )

    missing_evidence = [
        {"quadrant": q, "index": i}
        for q in EXTERNAL_QUADRANTS
        for i, item in enumerate(items[q])
        if not clean_text(item.get("evidence"))
    ]
    if missing_evidence:
        raise ThresholdError(
            f"{len(missing_evidence)} opportunities/threats have no evidence.",
            current=len(missing_evidence),
            required=0,
            detail={"missing": missing_evidence},
            code="MISSING_EVIDENCE",
        )

    final = {"items": items, "counts": counts}
    return final, score_quadrants(items, minimum)


def idea_texts(payload: Dict[str, Any]) -> List[str]:
    ideas = []
    for idea in payload.get("ideas") or []:
        text = clean_text(idea.get("text") if isinstance(idea, dict) else idea)
        if text:
            ideas.append(text)
    return ideas


def check_ideas(payload: Dict[str, Any]) -> StageCheck:
    problem = problem_text(payload.get("problem"))
    if not problem:
        raise ThresholdError("State the main problem first.", code="PROBLEM_MISSING")

    minimum = _override(payload, ("min_ideas", "minIdeas"), config.MIN_IDEAS)
    ideas = idea_texts(payload)
    if len(ideas) < minimum:
        raise ThresholdError(
            f"Not enough ideas: {len(ideas)}, minimum {minimum}.",
            current=len(ideas),
            required=minimum,
            code="BELOW_MINIMUM",
        )

    final = {"problem": {"text": problem}, "ideas": [{"text": text} for text in ideas]}
    return final, score_ideas(problem, ideas, minimum)


def check_cause_tree(tree: Dict[str, Any]) -> StageCheck:
    """Structure and root-candidate checks; every offending category or branch is named."""
    index = CauseTreeIndex(tree)
    limits = TreeLimits.from_tree(tree)

    if not index.problem:
        raise ThresholdError("The problem statement (head of the diagram) is missing.", code="PROBLEM_MISSING")

    if len(index.categories) < limits.min_categories:
        raise ThresholdError(
            f"Not enough categories: {len(index.categories)}, minimum {limits.min_categories}.",
            current=len(index.categories),
            required=limits.min_categories,
            code="CATEGORIES_BELOW_MINIMUM",
        )

    short_categories = index.category_shortfalls(limits.min_main_causes_per_category)
    if short_categories:
        names = ", ".join(f'"{c.name}" ({len(c.main_cause_ids)})' for c in short_categories)
        raise ThresholdError(
            f"Categories without enough main causes: {names}; "
            f"minimum {limits.min_main_causes_per_category}.",
            current=min(len(c.main_cause_ids) for c in short_categories),
            required=limits.min_main_causes_per_category,
            detail={"categories": [{"id": c.id, "name": c.name, "mainCauses": len(c.main_cause_ids)}
                                   for c in short_categories]},
            code="MAIN_CAUSES_BELOW_MINIMUM",
        )

    short_branches = index.branch_shortfalls(limits.min_sub_causes_per_main)
    if short_branches:
        names = ", ".join(
            f'"{index.categories[m.category_id].name} > {m.label or m.id}" ({len(m.sub_cause_ids)})'
            for m in short_branches
        )
        raise ThresholdError(
            f"Main causes without enough sub-causes: {names}; minimum {limits.min_sub_causes_per_main}.",
            current=min(len(m.sub_cause_ids) for m in short_branches),
            required=limits.min_sub_causes_per_main,
            detail={"mainCauses": [{"categoryId": m.category_id, "id": m.id, "subCauses": len(m.sub_cause_ids)}
                                   for m in short_branches]},
            code="SUB_CAUSES_BELOW_MINIMUM",
        )

    roots = index.root_candidates()
    if len(roots) < limits.min_root_candidates:
        raise ThresholdError(
            f"Too few root candidates: {len(roots)}, minimum {limits.min_root_candidates}. "
            f"Aim for 10-15 before moving to Pareto.",
            current=len(roots),
            required=limits.min_root_candidates,
            code="ROOT_CANDIDATES_BELOW_MINIMUM",
        )

    final = dict(tree)
    final["problem"] = normalize_problem(tree.get("problem"))
    final["roots"] = roots
    final.pop("pendingSwitch", None)
    score = score_cause_tree(True, len(index.categories), limits.min_categories, len(roots))
    return final, score


STAGE_CHECKS = {
    0: check_context,
    1: check_productivity,
    2: check_quadrants,
    3: check_ideas,
    4: check_cause_tree,
}
