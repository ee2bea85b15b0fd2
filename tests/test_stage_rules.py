import pytest

from optia.exceptions import ThresholdError
from optia.stage_rules import (
    check_cause_tree,
    check_context,
    check_ideas,
    check_productivity,
    check_quadrants,
    quadrant_items,
)


def _tree(categories=4, mains=2, subs=2, **extra):
    tree = {
        "problem": "Line 2 is slow",
        "categories": [
            {
                "id": f"cat_{c}",
                "name": f"Category {c}",
                "mainCauses": [
                    {
                        "id": f"mc_{m}",
                        "name": f"Main {c}.{m}",
                        "subCauses": [{"id": f"sc_{s}", "name": f"Sub {c}.{m}.{s}"} for s in range(subs)],
                    }
                    for m in range(mains)
                ],
            }
            for c in range(categories)
        ],
    }
    tree.update(extra)
    return tree


def _quadrants(per_quadrant=3, evidence=True):
    items = {}
    for q in ("F", "D", "O", "A"):
        items[q] = [
            {"text": f"{q} item {i}", "evidence": "Industry report" if evidence and q in "OA" else None}
            for i in range(per_quadrant)
        ]
    return {"items": items}


def test_context_requires_all_fields():
    with pytest.raises(ThresholdError) as exc:
        check_context({"sector": {"value": "Food"}, "products": []})
    assert exc.value.code == "CONTEXT_INCOMPLETE"
    assert exc.value.detail["missing"] == ["products", "process_focus"]


def test_context_caps_list_sizes():
    with pytest.raises(ThresholdError) as exc:
        check_context({"sector": "Food", "products": ["a", "b", "c", "d"], "process_focus": "Bottling"})
    assert exc.value.code == "CONTEXT_TOO_MANY_ITEMS"


def test_context_final_normalizes_wrapped_values():
    final, score = check_context({"sector": {"value": " Food "}, "products": "Juice", "process_focus": ["Bottling"]})
    assert final["sector"] == "Food"
    assert final["products"] == ["Juice"]
    assert score.total == 100


def test_productivity_not_ready_reports_first_issue():
    with pytest.raises(ThresholdError) as exc:
        check_productivity({"type": "monetary", "period_key": "2026-03"})
    assert exc.value.code == "NOT_READY"
    assert exc.value.detail["issues"]


def test_productivity_final_carries_cost_total():
    final, _ = check_productivity({
        "type": "monetary",
        "unit_reason": "Monthly money flows",
        "period_key": "2026-03",
        "line": "Line 2",
        "income": 5000,
        "costs": [{"name": "Labor", "amount": 1200}, {"name": "Energy", "amount": 300.5}],
    })
    assert final["cost_total"] == 1500.5


def test_quadrants_pending_evidence_blocks_validation():
    payload = _quadrants()
    payload["pending_evidence"] = {"quadrant": "O", "index": 0}
    with pytest.raises(ThresholdError) as exc:
        check_quadrants(payload)
    assert exc.value.code == "PENDING_EVIDENCE"


def test_quadrants_below_minimum_lists_every_short_quadrant():
    payload = _quadrants()
    payload["items"]["D"] = payload["items"]["D"][:1]
    payload["items"]["A"] = []
    with pytest.raises(ThresholdError) as exc:
        check_quadrants(payload)
    assert "Weaknesses (1)" in exc.value.message
    assert "Threats (0)" in exc.value.message
    assert exc.value.required == 3


def test_external_quadrants_need_evidence():
    with pytest.raises(ThresholdError) as exc:
        check_quadrants(_quadrants(evidence=False))
    assert exc.value.code == "MISSING_EVIDENCE"
    assert exc.value.current == 6


def test_quadrant_items_accepts_flat_layout_and_strings():
    items = quadrant_items({"F": ["Skilled staff", ""], "D": [{"text": "Old filler"}]})
    assert items["F"] == [{"text": "Skilled staff"}]
    assert items["O"] == []


def test_ideas_need_problem_and_minimum():
    with pytest.raises(ThresholdError) as exc:
        check_ideas({"ideas": ["a"]})
    assert exc.value.code == "PROBLEM_MISSING"

    with pytest.raises(ThresholdError) as exc:
        check_ideas({"problem": "Slow line", "ideas": ["one idea", {"text": "two"}]})
    assert (exc.value.current, exc.value.required) == (2, 10)

    final, _ = check_ideas({"problem": {"text": "Slow line"}, "ideas": ["one idea", "two"], "min_ideas": 2})
    assert final["ideas"] == [{"text": "one idea"}, {"text": "two"}]


def test_cause_tree_rules_in_order():
    with pytest.raises(ThresholdError) as exc:
        check_cause_tree(_tree(problem=""))
    assert exc.value.code == "PROBLEM_MISSING"

    with pytest.raises(ThresholdError) as exc:
        check_cause_tree(_tree(categories=3))
    assert exc.value.code == "CATEGORIES_BELOW_MINIMUM"

    with pytest.raises(ThresholdError) as exc:
        check_cause_tree(_tree(subs=1))
    assert exc.value.code == "SUB_CAUSES_BELOW_MINIMUM"
    assert '"Category 0 > Main 0.0" (1)' in exc.value.message

    with pytest.raises(ThresholdError) as exc:
        check_cause_tree(_tree(minRootCandidates=20))
    assert exc.value.code == "ROOT_CANDIDATES_BELOW_MINIMUM"
    assert (exc.value.current, exc.value.required) == (16, 20)


def test_cause_tree_final_lists_roots():
    final, score = check_cause_tree(_tree(pendingSwitch={"categories": []}))
    assert len(final["roots"]) == 16
    assert final["problem"] == {"text": "Line 2 is slow"}
    assert "pendingSwitch" not in final
    assert score.total == 100
