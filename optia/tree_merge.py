"""
Cause-tree merge engine.

Combines a stored cause tree with an incoming partial tree without ever losing
previously captured branches:

- categories -> main causes -> sub-causes are upserted by id
- incoming non-null fields win over base fields (shallow, per entry)
- entries only in base are kept, entries only in incoming are appended
- `whys` behave as an append-only ordered set

All functions are pure: inputs are never mutated.
"""
import copy
import hashlib
import json
from typing import Any, Callable, Dict, List, Optional

from optia.logger import get_logger

logger = get_logger("tree_merge")

# Top-level keys that follow "present in incoming wins", including an explicit null.
CONTROL_KEYS = ("cursor", "pendingSwitch")


def entry_label(entry: Dict[str, Any]) -> str:
    """Display text of a tree entry: `text` first, then `name`."""
    for key in ("text", "name"):
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def derive_id(prefix: str, entry: Dict[str, Any]) -> Optional[str]:
    """Deterministic id for an entry that arrived without one."""
    label = entry_label(entry)
    if not label:
        return None
    digest = hashlib.sha1(label.lower().encode("utf-8")).hexdigest()[:10]
    return f"{prefix}_{digest}"


def problem_text(problem: Any) -> str:
    if isinstance(problem, str):
        return problem.strip()
    if isinstance(problem, dict):
        text = problem.get("text")
        return text.strip() if isinstance(text, str) else ""
    return ""


def normalize_problem(problem: Any) -> Optional[Dict[str, Any]]:
    """Canonical `{text}` shape; extra keys of a dict problem are preserved."""
    if problem is None:
        return None
    if isinstance(problem, dict):
        normalized = dict(problem)
        normalized["text"] = problem_text(problem)
        return normalized
    return {"text": problem_text(problem)}


def _why_key(why: Any) -> Optional[str]:
    if isinstance(why, str):
        text = why.strip()
        return text or None
    if isinstance(why, dict):
        text = why.get("text")
        if isinstance(text, str) and text.strip():
            return text.strip()
        return json.dumps(why, sort_keys=True, ensure_ascii=False)
    if why is None:
        return None
    return json.dumps(why, sort_keys=True, ensure_ascii=False, default=str)


def why_text(why: Any) -> str:
    if isinstance(why, dict):
        text = why.get("text")
        return text.strip() if isinstance(text, str) else ""
    return str(why).strip() if why is not None else ""


def merge_whys(base: Optional[List[Any]], incoming: Optional[List[Any]]) -> List[Any]:
    """
    Append-only ordered set.

    Base whys are kept verbatim and in order; incoming whys that are not already
    present (by value) are appended in their incoming order. Never truncates.
    """
    merged = list(base or [])
    seen = {_why_key(w) for w in merged}
    for why in incoming or []:
        key = _why_key(why)
        if key is None or key in seen:
            continue
        merged.append(copy.deepcopy(why))
        seen.add(key)
    return merged


def merge_by_id(
    base: Optional[List[Dict[str, Any]]],
    incoming: Optional[List[Dict[str, Any]]],
    prefix: str,
    merge_entry: Callable[[Dict[str, Any], Dict[str, Any]], Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """
    Id-keyed upsert of one tree level.

    Order: base order first, then incoming-only entries in incoming order.
    `merge_entry(base_entry, incoming_entry)` combines two entries sharing an id.
    """
    order: List[str] = []
    merged: Dict[str, Dict[str, Any]] = {}
    by_label: Dict[str, str] = {}

    for source in (base or [], incoming or []):
        for raw in source:
            if not isinstance(raw, dict):
                logger.debug("Skipping non-object %s entry: %r", prefix, raw)
                continue
            entry_id = resolve_entry_id(prefix, raw, by_label)
            if not entry_id:
                logger.debug("Dropping %s entry without id or text", prefix)
                continue
            if entry_id in merged:
                merged[entry_id] = merge_entry(merged[entry_id], raw)
            else:
                order.append(entry_id)
                merged[entry_id] = merge_entry({}, raw)
            merged[entry_id]["id"] = entry_id
            label = entry_label(merged[entry_id]).lower()
            if label:
                by_label.setdefault(label, entry_id)

    return [merged[entry_id] for entry_id in order]


def resolve_entry_id(prefix: str, raw: Dict[str, Any], by_label: Dict[str, str]) -> Optional[str]:
    """
    Id of an incoming entry.

    An explicit id wins. Without one, the entry attaches to a sibling with the
    same label, or gets a deterministic id derived from its label.
    """
    if raw.get("id"):
        return str(raw["id"])
    label = entry_label(raw).lower()
    if label and label in by_label:
        return by_label[label]
    return derive_id(prefix, raw)


def sibling_labels(entries: Optional[List[Dict[str, Any]]]) -> Dict[str, str]:
    """`{lowercase label -> id}` for entries that already carry an id."""
    labels: Dict[str, str] = {}
    for entry in entries or []:
        if isinstance(entry, dict) and entry.get("id"):
            label = entry_label(entry).lower()
            if label:
                labels.setdefault(label, str(entry["id"]))
    return labels


def _shallow_merge(base: Dict[str, Any], incoming: Dict[str, Any], child_key: str) -> Dict[str, Any]:
    out = copy.deepcopy({k: v for k, v in base.items() if k != child_key})
    for key, value in incoming.items():
        if key == child_key or value is None:
            continue
        out[key] = copy.deepcopy(value)
    return out


def _merge_sub_cause(base: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    out = _shallow_merge(base, incoming, "whys")
    out["whys"] = merge_whys(base.get("whys"), incoming.get("whys"))
    return out


def _merge_main_cause(base: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    out = _shallow_merge(base, incoming, "subCauses")
    out["subCauses"] = merge_by_id(base.get("subCauses"), incoming.get("subCauses"), "sc", _merge_sub_cause)
    return out


def _merge_category(base: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    out = _shallow_merge(base, incoming, "mainCauses")
    out["mainCauses"] = merge_by_id(base.get("mainCauses"), incoming.get("mainCauses"), "mc", _merge_main_cause)
    return out


def merge_categories(
    base: Optional[List[Dict[str, Any]]],
    incoming: Optional[List[Dict[str, Any]]],
) -> List[Dict[str, Any]]:
    return merge_by_id(base, incoming, "cat", _merge_category)


def merge_cause_tree(base: Optional[Dict[str, Any]], incoming: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Merge an incoming (partial) cause tree into a base tree.

    Idempotent, associative for successive merges, and never drops a branch,
    a sub-cause or a why that the base already holds.
    """
    base = base or {}
    incoming = incoming or {}

    out: Dict[str, Any] = copy.deepcopy({k: v for k, v in base.items() if k not in ("problem", "categories")})

    for key, value in incoming.items():
        if key in ("problem", "categories"):
            continue
        if key in CONTROL_KEYS:
            out[key] = copy.deepcopy(value)
        elif value is not None:
            out[key] = copy.deepcopy(value)

    if problem_text(incoming.get("problem")):
        base_problem = base.get("problem") if isinstance(base.get("problem"), dict) else {}
        incoming_problem = normalize_problem(incoming["problem"])
        out["problem"] = normalize_problem({**base_problem, **incoming_problem})
    elif "problem" in base:
        out["problem"] = normalize_problem(base["problem"])

    out["categories"] = merge_categories(base.get("categories"), incoming.get("categories"))
    return out

