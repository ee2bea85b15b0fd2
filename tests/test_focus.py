import pytest

from optia.cause_tree import ensure_default_categories
from optia.exceptions import InputShapeError
from optia.focus import (
    ACTION_CLOSE_BRANCH,
    FocusState,
    apply_tree_patch,
    close_branch,
    resolve_cursor,
    select_main_cause,
)
from optia.tree_merge import merge_cause_tree


def _focused_tree(main_causes=1, whys=2):
    mains = [
        {
            "id": "mc_1",
            "name": "Labeller jams",
            "subCauses": [{"id": "sc_1", "name": "Worn rollers", "whys": [f"why {i}" for i in range(whys)]}],
        }
    ]
    if main_causes > 1:
        mains.append({"id": "mc_2", "name": "Sensor drift", "subCauses": []})
    return merge_cause_tree({}, {
        "problem": "Line 2 is slow",
        "maxWhyDepth": 3,
        "categories": [
            {"id": "cat_machine", "name": "Machine", "mainCauses": mains},
            {"id": "cat_method", "name": "Method", "mainCauses": []},
        ],
        "cursor": {"categoryId": "cat_machine", "mainCauseId": "mc_1"},
    })


def _category(tree, cat_id):
    return next(c for c in tree["categories"] if c["id"] == cat_id)


def test_creating_main_cause_focuses_its_branch():
    tree = ensure_default_categories({"problem": "Line 2 is slow"})
    patch = {"categories": [{"id": "cat_machine", "mainCauses": [{"id": "mc_1", "name": "Labeller jams"}]}]}

    result = apply_tree_patch(tree, patch)

    assert result.focus.state == FocusState.FOCUSED_BRANCH
    assert result.tree["cursor"] == {"categoryId": "cat_machine", "mainCauseId": "mc_1"}


def test_new_main_cause_in_focused_category_takes_the_focus():
    patch = {"categories": [{"id": "cat_machine", "mainCauses": [{"id": "mc_3", "name": "Conveyor stops"}]}]}

    result = apply_tree_patch(_focused_tree(), patch)

    assert result.focus.state == FocusState.FOCUSED_BRANCH
    assert result.tree["cursor"] == {"categoryId": "cat_machine", "mainCauseId": "mc_3"}
    assert result.held_back == []


def test_content_for_focused_category_merges():
    patch = {"categories": [{"id": "cat_machine", "mainCauses": [
        {"id": "mc_1", "subCauses": [{"id": "sc_2", "name": "Glue too thick"}]},
    ]}]}

    result = apply_tree_patch(_focused_tree(), patch)

    subs = _category(result.tree, "cat_machine")["mainCauses"][0]["subCauses"]
    assert [s["id"] for s in subs] == ["sc_1", "sc_2"]
    assert result.held_back == []


def test_foreign_category_content_is_withheld_while_branch_focused():
    patch = {"categories": [{"id": "cat_method", "mainCauses": [{"id": "mc_9", "name": "No standard setup"}]}]}

    result = apply_tree_patch(_focused_tree(), patch)

    assert _category(result.tree, "cat_method")["mainCauses"] == []
    assert [c["id"] for c in result.held_back] == ["cat_method"]
    assert result.tree["pendingSwitch"]["categories"][0]["id"] == "cat_method"
    assert result.tree["cursor"] == {"categoryId": "cat_machine", "mainCauseId": "mc_1"}


def test_confirmed_switch_merges_pending_and_focuses_it():
    patch = {"categories": [{"id": "cat_method", "mainCauses": [{"id": "mc_9", "name": "No standard setup"}]}]}
    withheld = apply_tree_patch(_focused_tree(), patch).tree

    result = apply_tree_patch(withheld, {}, confirm_switch=True)

    assert result.switched
    assert [m["id"] for m in _category(result.tree, "cat_method")["mainCauses"]] == ["mc_9"]
    assert result.tree["cursor"] == {"categoryId": "cat_method", "mainCauseId": "mc_9"}
    assert result.tree["pendingSwitch"] is None


def test_rejected_switch_discards_pending():
    patch = {"categories": [{"id": "cat_method", "mainCauses": [{"id": "mc_9", "name": "No standard setup"}]}]}
    withheld = apply_tree_patch(_focused_tree(), patch).tree

    result = apply_tree_patch(withheld, {}, confirm_switch=False)

    assert _category(result.tree, "cat_method")["mainCauses"] == []
    assert result.tree["pendingSwitch"] is None
    assert result.tree["cursor"] == {"categoryId": "cat_machine", "mainCauseId": "mc_1"}


def test_reaching_max_why_depth_closes_branch_to_category():
    patch = {"categories": [{"id": "cat_machine", "mainCauses": [
        {"id": "mc_1", "subCauses": [{"id": "sc_1", "whys": ["why 2"]}]},
    ]}]}

    result = apply_tree_patch(_focused_tree(main_causes=1, whys=2), patch)

    assert result.closed
    # Machine holds one main cause, below the minimum of two
    assert result.focus.state == FocusState.FOCUSED_CATEGORY
    assert result.tree["cursor"] == {"categoryId": "cat_machine"}


def test_closing_branch_in_complete_category_unfocuses():
    result = apply_tree_patch(_focused_tree(main_causes=2), {}, action=ACTION_CLOSE_BRANCH)

    assert result.closed
    assert result.focus.state == FocusState.UNFOCUSED
    assert result.tree["cursor"] is None


def test_patch_clearing_cursor_closes_branch():
    result = apply_tree_patch(_focused_tree(), {"cursor": None})

    assert result.closed
    assert result.tree["cursor"] == {"categoryId": "cat_machine"}


def test_dangling_cursor_degrades_to_deepest_valid_level():
    tree = _focused_tree()
    tree["cursor"] = {"categoryId": "cat_machine", "mainCauseId": "mc_gone", "subCauseId": "sc_1"}
    assert resolve_cursor(tree).state == FocusState.FOCUSED_CATEGORY

    tree["cursor"] = {"categoryId": "cat_gone", "mainCauseId": "mc_1"}
    assert resolve_cursor(tree).state == FocusState.UNFOCUSED

    tree["cursor"] = {"categoryId": "cat_machine", "mainCauseId": "mc_1", "subCauseId": "sc_gone"}
    focus = resolve_cursor(tree)
    assert focus.state == FocusState.FOCUSED_BRANCH
    assert focus.sub_cause_id is None


def test_select_and_close_branch_helpers():
    tree = _focused_tree(main_causes=2)
    selected = select_main_cause(tree, "cat_machine", "mc_2")
    assert selected["cursor"] == {"categoryId": "cat_machine", "mainCauseId": "mc_2"}

    assert close_branch(selected)["cursor"] is None

    with pytest.raises(InputShapeError):
        select_main_cause(tree, "cat_machine", "mc_unknown")
