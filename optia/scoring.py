"""
Deterministic scoring rubrics per stage.

Each rubric returns a StageScore: a 0-100 total, a label on the fixed
Deficient / Fair / Adequate / Good scale, the rubric weights and the
per-criterion result. The score is stored on the final artifact and in the
evaluation record written with it.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from optia.config_manager import config

# Label thresholds on the 0-100 scale: below 50, below 70, below 85, rest.
LABELS = (
    (50, "Deficient"),
    (70, "Fair"),
    (85, "Adequate"),
)
TOP_LABEL = "Good"


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def label_for(total: float) -> str:
    pct = _clamp(total, 0, 100)
    for threshold, label in LABELS:
        if pct < threshold:
            return label
    return TOP_LABEL


def _is_amount(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0


@dataclass
class StageScore:
    total: float
    rubric: Dict[str, int]
    result: Dict[str, Any] = field(default_factory=dict)
    issues: List[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        return label_for(self.total)

    def to_dict(self) -> Dict[str, Any]:
        data = {"total": self.total, "label": self.label, **self.result}
        if self.issues:
            data["issues"] = list(self.issues)
        return data


PRODUCTIVITY_RUBRIC = {"coherence": 40, "type_choice": 30, "clarity": 30}


def cost_total(costs: Any) -> Optional[float]:
    """Sum of the cost amounts that are valid; None when there are none."""
    if not isinstance(costs, list):
        return None
    amounts = [c.get("amount") for c in costs if isinstance(c, dict) and _is_amount(c.get("amount"))]
    if not amounts:
        return None
    return float(sum(amounts))


def score_productivity(payload: Dict[str, Any]) -> StageScore:
    """
    Productivity baseline rubric.

    coherence (40): period, unit type, production line
    type_choice (30): data required by the chosen unit type
    clarity (30): non-negative amounts, named and valued cost items
    Ready when there are no issues and the total reaches PRODUCTIVITY_READY_SCORE.
    """
    issues: List[str] = []
    unit_type = payload.get("type")
    period_key = payload.get("period_key")

    if not period_key:
        issues.append("The period (YYYY-MM) is missing.")
    if unit_type not in ("monetary", "physical"):
        issues.append("Choose the productivity type: monetary or physical.")
    if not str(payload.get("unit_reason") or "").strip():
        issues.append("Explain why this productivity type fits the case.")

    coherence = 0
    if period_key:
        coherence += 15
    if unit_type:
        coherence += 15
    if isinstance(payload.get("line"), str) and payload["line"].strip():
        coherence += 10

    type_choice = 0
    costs = payload.get("costs")
    total_costs = payload.get("cost_total")
    if not _is_amount(total_costs):
        total_costs = cost_total(costs)

    if unit_type == "monetary":
        has_income = _is_amount(payload.get("income"))
        named_costs = [
            c for c in costs or []
            if isinstance(c, dict) and str(c.get("name") or "").strip() and _is_amount(c.get("amount"))
        ]
        if not has_income:
            issues.append("Monetary productivity needs the income for the period.")
        if not named_costs:
            issues.append("Monetary productivity needs at least one cost item with an amount.")
        if total_costs is None:
            issues.append("The cost total could not be computed.")
        type_choice += 15 if has_income else 0
        type_choice += 10 if named_costs else 0
        type_choice += 5 if total_costs is not None else 0
    elif unit_type == "physical":
        has_description = any(
            isinstance(payload.get(key), str) and payload[key].strip() for key in ("notes", "line")
        )
        if not has_description:
            issues.append("Physical productivity needs a description of the output unit (notes or line).")
        type_choice += 30 if has_description else 0

    clarity = 0
    income = payload.get("income")
    numeric_ok = (income is None or _is_amount(income)) and (
        payload.get("cost_total") is None or _is_amount(payload.get("cost_total"))
    )
    if not numeric_ok:
        issues.append("Some amounts are negative or not numeric.")
    clarity += 15 if numeric_ok else 0

    if isinstance(costs, list):
        filled = [c for c in costs if isinstance(c, dict) and (c.get("name") or c.get("amount") is not None)]
        all_valid = bool(filled) and all(
            str(c.get("name") or "").strip() and _is_amount(c.get("amount")) for c in filled
        )
        if filled and not all_valid:
            issues.append("Some cost items have no name or an invalid amount.")
        clarity += 15 if all_valid else 0

    coherence = int(_clamp(coherence, 0, 40))
    type_choice = int(_clamp(type_choice, 0, 30))
    clarity = int(_clamp(clarity, 0, 30))
    total = coherence + type_choice + clarity

    return StageScore(
        total=total,
        rubric=dict(PRODUCTIVITY_RUBRIC),
        result={"coherence": coherence, "type_choice": type_choice, "clarity": clarity},
        issues=issues,
    )


def productivity_ready(score: StageScore) -> bool:
    return not score.issues and score.total >= config.PRODUCTIVITY_READY_SCORE


def score_context(payload: Dict[str, Any]) -> StageScore:
    return StageScore(total=100, rubric={"completeness": 100}, result={"completeness": 100})


def score_quadrants(items: Dict[str, List[Dict[str, Any]]], minimum: int) -> StageScore:
    """
    completeness (30): every bucket at its minimum
    evidence (40): share of items carrying evidence
    depth (30): items per bucket relative to minimum + 2
    """
    counts = {q: len(items.get(q) or []) for q in ("F", "D", "O", "A")}
    total_items = sum(counts.values())
    evidenced = sum(
        1 for q in ("F", "D", "O", "A") for item in items.get(q) or []
        if isinstance(item, dict) and str(item.get("evidence") or "").strip()
    )

    completeness = 30 if all(count >= minimum for count in counts.values()) else 0
    evidence = round(40 * evidenced / total_items) if total_items else 0
    average = total_items / 4
    depth = round(30 * min(1.0, average / (minimum + 2))) if minimum >= 0 else 0

    return StageScore(
        total=completeness + evidence + depth,
        rubric={"completeness": 30, "evidence": 40, "depth": 30},
        result={"completeness": completeness, "evidence": evidence, "depth": depth, "counts": counts},
    )


def score_ideas(problem: str, ideas: List[str], minimum: int) -> StageScore:
    """
    alignment (40): a stated problem
    clarity (30): share of ideas with at least three words
    variety (30): idea count relative to minimum + 5
    """
    alignment = 40 if problem else 0
    clear = sum(1 for idea in ideas if len(idea.split()) >= 3)
    clarity = round(30 * clear / len(ideas)) if ideas else 0
    variety = round(30 * min(1.0, len(ideas) / (minimum + 5))) if ideas else 0

    return StageScore(
        total=alignment + clarity + variety,
        rubric={"alignment": 40, "clarity": 30, "variety": 30},
        result={"alignment": alignment, "clarity": clarity, "variety": variety, "ideasCount": len(ideas)},
    )


def score_cause_tree(has_problem: bool, categories_count: int, min_categories: int, roots_count: int) -> StageScore:
    """
    problem (40) + categories (15) + structure (15) + roots (30, 10 roots -> full marks).
    Structure always scores when the tree passed its structural checks.
    """
    problem = 40 if has_problem else 0
    categories = 15 if categories_count >= min_categories else 0
    structure = 15
    roots = min(30, round(min(roots_count, 15) / 10 * 30))
    total = int(_clamp(problem + categories + structure + roots, 0, 100))

    return StageScore(
        total=total,
        rubric={"problem": 40, "categories": 15, "structure": 15, "roots": 30},
        result={"rootsCount": roots_count, "categoriesCount": categories_count},
    )


def score_gate_passed(**result: Any) -> StageScore:
    """Stages whose rubric is fully met once every gate condition holds."""
    return StageScore(total=100, rubric={"gate": 100}, result=dict(result))
