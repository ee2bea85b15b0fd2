"""
Draft reducers of the flat stages (everything except the cause tree).

A reducer folds a validated oracle patch into the current draft and returns
a new payload; inputs are not mutated. Scalars in the patch replace the
draft's value (explicit null clears), list-valued content is unioned by text
so a patch may carry either the full list or only the new entries.
"""
import copy
from typing import Any, Callable, Dict, List, Optional

from optia.config_manager import config
from optia.models import Stage
from optia.scoring import cost_total
from optia.stage_rules import QUADRANTS, quadrant_items
from optia.tree_merge import normalize_problem, problem_text
from optia.utils import clean_text

Reducer = Callable[[Dict[str, Any], Dict[str, Any]], Dict[str, Any]]


def _text_of(entry: Any) -> str:
    if isinstance(entry, dict):
        return clean_text(entry.get("text"))
    return clean_text(entry)


def union_by_text(base: List[Any], incoming: List[Any], as_objects: bool = True) -> List[Any]:
    """
    Ordered union keyed by case-insensitive text.

    With as_objects, entries become dicts and an incoming entry's non-null
    fields update the matching base entry.
    """
    merged: List[Any] = []
    positions: Dict[str, int] = {}

    for entry in list(base or []) + list(incoming or []):
        text = _text_of(entry)
        if not text:
            continue
        key = text.lower()
        if as_objects:
            entry = dict(entry) if isinstance(entry, dict) else {"text": text}
            entry["text"] = text
        else:
            entry = text

        if key not in positions:
            positions[key] = len(merged)
            merged.append(entry)
        elif as_objects:
            target = merged[positions[key]]
            target.update({k: v for k, v in entry.items() if v is not None})
    return merged


def _apply_scalars(draft: Dict[str, Any], patch: Dict[str, Any], skip: tuple) -> Dict[str, Any]:
    state = copy.deepcopy(draft or {})
    for key, value in patch.items():
        if key not in skip:
            state[key] = copy.deepcopy(value)
    return state


def reduce_context(draft: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    return _apply_scalars(draft, patch, skip=())


def _required_costs(state: Dict[str, Any]) -> int:
    value = state.get("required_costs")
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return config.REQUIRED_COSTS


def _empty_cost() -> Dict[str, Any]:
    return {"name": "", "amount": None}


def merge_costs(base: List[Dict[str, Any]], incoming: List[Dict[str, Any]], size: int) -> List[Dict[str, Any]]:
    """
    Cost items matched by name; unnamed incoming values fill the first free slot.

    The list is padded to `size` slots and never truncated.
    """
    costs = [dict(c) for c in base or [] if isinstance(c, dict)]

    for item in incoming or []:
        if not isinstance(item, dict):
            continue
        name = clean_text(item.get("name"))
        values = {k: v for k, v in item.items() if v is not None}
        match = None
        if name:
            match = next(
                (c for c in costs if clean_text(c.get("name")).lower() == name.lower()), None
            )
        if match is None:
            match = next(
                (c for c in costs if not clean_text(c.get("name")) and c.get("amount") is None), None
            )
        if match is None:
            costs.append(values)
        else:
            match.update(values)

    while len(costs) < size:
        costs.append(_empty_cost())
    return costs


def reduce_productivity(draft: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    state = _apply_scalars(draft, patch, skip=("costs", "cost_total"))
    if state.get("type") == "monetary" or "costs" in patch or state.get("costs"):
        state["costs"] = merge_costs(state.get("costs"), patch.get("costs"), _required_costs(state))
        state["cost_total"] = cost_total(state["costs"])
    return state


def reduce_quadrants(draft: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    state = _apply_scalars(draft, patch, skip=("items",))
    base_items = quadrant_items(draft or {})
    incoming = patch.get("items") or {}
    state["items"] = {
        q: union_by_text(base_items[q], incoming.get(q) or []) for q in QUADRANTS
    }
    for q in QUADRANTS:
        state.pop(q, None)

    # evidence arrived for the item that was waiting for it
    pending = state.get("pending_evidence")
    if isinstance(pending, dict):
        bucket = state["items"].get(pending.get("quadrant")) or []
        index = pending.get("index")
        if isinstance(index, int) and 0 <= index < len(bucket) and clean_text(bucket[index].get("evidence")):
            state["pending_evidence"] = None
    state.setdefault("current_quadrant", "F")
    return state


def reduce_ideas(draft: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    state = _apply_scalars(draft, patch, skip=("problem", "ideas"))
    if problem_text(patch.get("problem")):
        state["problem"] = normalize_problem(patch["problem"])
    elif (draft or {}).get("problem") is not None:
        state["problem"] = normalize_problem(draft["problem"])
    state["ideas"] = union_by_text((draft or {}).get("ideas"), patch.get("ideas"))
    return state


def reduce_prioritization(draft: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    state = _apply_scalars(draft, patch, skip=("selectedRoots", "criticalRoots"))
    for key in ("selectedRoots", "criticalRoots"):
        if key in patch and patch[key] is not None:
            state[key] = union_by_text(patch[key], [], as_objects=False)
    return state


def reduce_objectives(draft: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    state = _apply_scalars(draft, patch, skip=("specificObjectives", "linkedCriticalRoots"))
    for key in ("specificObjectives", "linkedCriticalRoots"):
        state[key] = union_by_text((draft or {}).get(key), patch.get(key), as_objects=False)
    return state


REDUCERS: Dict[Stage, Reducer] = {
    Stage.CONTEXT: reduce_context,
    Stage.PRODUCTIVITY: reduce_productivity,
    Stage.FODA: reduce_quadrants,
    Stage.BRAINSTORM: reduce_ideas,
    Stage.PARETO: reduce_prioritization,
    Stage.OBJECTIVES: reduce_objectives,
}


def reduce_draft(stage: Stage, draft: Optional[Dict[str, Any]], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Fold a patch into a flat-stage draft."""
    return REDUCERS[stage](draft or {}, patch or {})
