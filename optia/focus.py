"""
Cursor / focus state machine of the cause tree.

States:
    UNFOCUSED                                  no cursor
    FOCUSED_CATEGORY(categoryId)               cursor = {categoryId}
    FOCUSED_BRANCH(categoryId, mainCauseId)    cursor = {categoryId, mainCauseId[, subCauseId]}

Transitions:
    select / create a main cause        -> FOCUSED_BRANCH
    a branch sub-cause reaches maxWhyDepth,
    or an explicit close                -> FOCUSED_CATEGORY while the category is
                                           below its main-cause minimum, else UNFOCUSED
    cursor ids that no longer resolve   -> deepest still-valid level

While a branch is focused, content for any other category is withheld in
`pendingSwitch` until the student confirms (merged, focus moves there) or
rejects (discarded) the switch.
"""
import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from optia.cause_tree import CauseTreeIndex, TreeLimits
from optia.exceptions import InputShapeError
from optia.logger import get_logger
from optia.tree_merge import merge_categories, merge_cause_tree, resolve_entry_id, sibling_labels

logger = get_logger("focus")

ACTION_CLOSE_BRANCH = "close_branch"


class FocusState(str, Enum):
    UNFOCUSED = "unfocused"
    FOCUSED_CATEGORY = "focused_category"
    FOCUSED_BRANCH = "focused_branch"


@dataclass(frozen=True)
class Focus:
    state: FocusState = FocusState.UNFOCUSED
    category_id: Optional[str] = None
    main_cause_id: Optional[str] = None
    sub_cause_id: Optional[str] = None

    def to_cursor(self) -> Optional[Dict[str, str]]:
        if self.state == FocusState.UNFOCUSED:
            return None
        cursor = {"categoryId": self.category_id}
        if self.main_cause_id:
            cursor["mainCauseId"] = self.main_cause_id
            if self.sub_cause_id:
                cursor["subCauseId"] = self.sub_cause_id
        return cursor


@dataclass
class TreePatchResult:
    """Outcome of applying one oracle patch to a stored tree."""
    tree: Dict[str, Any]
    focus: Focus
    held_back: List[Dict[str, Any]] = field(default_factory=list)
    switched: bool = False
    closed: bool = False


def resolve_cursor(tree: Optional[Dict[str, Any]], index: Optional[CauseTreeIndex] = None) -> Focus:
    """Focus named by the tree's cursor, degraded to the deepest level whose ids still resolve."""
    cursor = (tree or {}).get("cursor")
    if not isinstance(cursor, dict):
        return Focus()

    index = index or CauseTreeIndex(tree)
    cat_id = cursor.get("categoryId")
    if not index.category(cat_id):
        return Focus()

    mc_id = cursor.get("mainCauseId")
    if not index.main_cause(cat_id, mc_id):
        return Focus(FocusState.FOCUSED_CATEGORY, cat_id)

    sc_id = cursor.get("subCauseId")
    if not index.sub_cause(cat_id, mc_id, sc_id):
        sc_id = None
    return Focus(FocusState.FOCUSED_BRANCH, cat_id, mc_id, sc_id)


def focus_of(tree: Optional[Dict[str, Any]]) -> Focus:
    return resolve_cursor(tree)


def with_focus(tree: Optional[Dict[str, Any]], focus: Focus) -> Dict[str, Any]:
    out = copy.deepcopy(tree or {})
    out["cursor"] = focus.to_cursor()
    return out


def _focus_after_close(index: CauseTreeIndex, limits: TreeLimits, cat_id: Optional[str]) -> Focus:
    if cat_id and index.category(cat_id) and index.main_cause_count(cat_id) < limits.min_main_causes_per_category:
        return Focus(FocusState.FOCUSED_CATEGORY, cat_id)
    return Focus()


def select_main_cause(tree: Dict[str, Any], category_id: str, main_cause_id: str) -> Dict[str, Any]:
    """Focus an existing branch."""
    index = CauseTreeIndex(tree)
    if not index.main_cause(category_id, main_cause_id):
        raise InputShapeError(
            f"Unknown main cause '{main_cause_id}' in category '{category_id}'",
            field="cursor",
        )
    return with_focus(tree, Focus(FocusState.FOCUSED_BRANCH, category_id, main_cause_id))


def close_branch(tree: Dict[str, Any]) -> Dict[str, Any]:
    """Explicitly close the focused branch."""
    index = CauseTreeIndex(tree)
    current = resolve_cursor(tree, index)
    if current.state == FocusState.UNFOCUSED:
        return copy.deepcopy(tree)
    return with_focus(tree, _focus_after_close(index, TreeLimits.from_tree(tree), current.category_id))


def _category_adds_content(base_categories: List[Dict[str, Any]], category: Dict[str, Any]) -> bool:
    before = merge_categories(base_categories, [])
    after = merge_categories(base_categories, [category])
    return before != after


def _withhold_foreign(
    base: Dict[str, Any], patch: Dict[str, Any], focus: Focus
) -> Tuple[Dict[str, Any], List[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """Split a patch into what may merge now and what belongs to another category."""
    base_categories = base.get("categories") or []
    labels = sibling_labels(base_categories)
    kept: List[Dict[str, Any]] = []
    foreign: List[Dict[str, Any]] = []

    for category in patch.get("categories") or []:
        if not isinstance(category, dict):
            continue
        cat_id = resolve_entry_id("cat", category, labels)
        if cat_id == focus.category_id or not _category_adds_content(base_categories, category):
            kept.append(category)
        else:
            foreign.append(dict(category, id=cat_id))

    filtered = dict(patch)
    if "categories" in patch:
        filtered["categories"] = kept

    pending_cursor = None
    cursor = patch.get("cursor")
    if isinstance(cursor, dict) and cursor.get("categoryId") and cursor["categoryId"] != focus.category_id:
        pending_cursor = cursor
        filtered.pop("cursor")

    return filtered, foreign, pending_cursor


def _accept_switch(base: Dict[str, Any], pending: Dict[str, Any]) -> Dict[str, Any]:
    """Merge withheld content and focus its first main cause."""
    pending_categories = [c for c in pending.get("categories") or [] if isinstance(c, dict)]
    merged = merge_cause_tree(base, {"categories": pending_categories})
    merged["pendingSwitch"] = None

    target = pending.get("cursor")
    if not target:
        by_id = {c["id"]: c for c in merged.get("categories") or []}
        for category in pending_categories:
            merged_category = by_id.get(category.get("id"))
            mains = [m for m in category.get("mainCauses") or [] if isinstance(m, dict)]
            if not merged_category or not mains:
                continue
            mc_id = resolve_entry_id("mc", mains[0], sibling_labels(merged_category.get("mainCauses")))
            target = {"categoryId": merged_category["id"], "mainCauseId": mc_id}
            break
        else:
            if pending_categories and pending_categories[0].get("id"):
                target = {"categoryId": pending_categories[0]["id"]}

    if target:
        merged["cursor"] = target
    return merged


def apply_tree_patch(
    base: Optional[Dict[str, Any]],
    patch: Optional[Dict[str, Any]],
    action: Optional[str] = None,
    confirm_switch: Optional[bool] = None,
) -> TreePatchResult:
    """
    Gate, merge and re-focus one incoming patch.

    Args:
        base: stored tree
        patch: validated oracle patch (partial tree)
        action: oracle action; "close_branch" closes the focused branch
        confirm_switch: True merges withheld content, False discards it

    Returns:
        TreePatchResult with the merged tree, its focus and anything withheld
    """
    base = copy.deepcopy(base or {})
    patch = copy.deepcopy(patch or {})
    patch.pop("pendingSwitch", None)

    switched = False
    pending = base.get("pendingSwitch")
    if pending and confirm_switch is True:
        base = _accept_switch(base, pending)
        switched = True
        logger.info("Branch switch confirmed")
    elif pending and confirm_switch is False:
        base["pendingSwitch"] = None
        logger.info("Branch switch rejected, withheld content discarded")

    before = resolve_cursor(base)
    held_back: List[Dict[str, Any]] = []
    pending_cursor = None
    if before.state == FocusState.FOCUSED_BRANCH:
        patch, held_back, pending_cursor = _withhold_foreign(base, patch, before)

    merged = merge_cause_tree(base, patch)

    if held_back or pending_cursor:
        previous = base.get("pendingSwitch") or {}
        new_pending: Dict[str, Any] = {
            "categories": merge_categories(previous.get("categories"), held_back),
        }
        if pending_cursor or previous.get("cursor"):
            new_pending["cursor"] = pending_cursor or previous.get("cursor")
        merged["pendingSwitch"] = new_pending
        logger.info("Withheld %d foreign categories while branch %s is focused", len(held_back), before.main_cause_id)

    return _advance(base, merged, before, patch, action, switched, held_back)


def _advance(
    base: Dict[str, Any],
    merged: Dict[str, Any],
    before: Focus,
    patch: Dict[str, Any],
    action: Optional[str],
    switched: bool,
    held_back: List[Dict[str, Any]],
) -> TreePatchResult:
    base_index = CauseTreeIndex(base)
    index = CauseTreeIndex(merged)
    limits = TreeLimits.from_tree(merged)
    focus = resolve_cursor(merged, index)
    closed = False

    if before.state == FocusState.FOCUSED_BRANCH and "cursor" in patch and focus.state != FocusState.FOCUSED_BRANCH:
        # cursor cleared by the patch
        focus = _focus_after_close(index, limits, before.category_id)
        closed = True

    if not closed and not switched:
        created = [key for key in index.main_causes if key not in base_index.main_causes]
        if focus.state == FocusState.FOCUSED_BRANCH:
            # foreign categories were withheld, so only the focused one can gain a main cause
            created = [key for key in created if key[0] == focus.category_id]
        if created:
            cat_id, mc_id = created[0]
            focus = Focus(FocusState.FOCUSED_BRANCH, cat_id, mc_id)

    if focus.state == FocusState.FOCUSED_BRANCH:
        if action == ACTION_CLOSE_BRANCH:
            closed = True
        else:
            for sub in index.sub_causes_of(focus.category_id, focus.main_cause_id):
                previous = base_index.sub_cause(sub.category_id, sub.main_cause_id, sub.id)
                previous_depth = previous.depth if previous else 0
                if sub.depth >= limits.max_why_depth > previous_depth:
                    closed = True
                    break
        if closed:
            focus = _focus_after_close(index, limits, focus.category_id)
            logger.info("Branch closed, focus now %s", focus.state.value)

    merged["cursor"] = focus.to_cursor()
    return TreePatchResult(tree=merged, focus=focus, held_back=held_back, switched=switched, closed=closed)
