import pytest

from optia.artifact_store import StageArtifactStore
from optia.models import ArtifactStatus, STAGE_KINDS, Stage
from optia.pipeline import PipelineController

OWNER = "student-1"
PERIOD = "2026-03"

CATEGORY_NAMES = ["Man", "Machine", "Method", "Material", "Measurement", "Environment"]


def _cause_tree(categories=4, short=()):
    """Complete tree over the first `categories` 6M names; names in `short` get one main cause."""
    tree_categories = []
    for c, name in enumerate(CATEGORY_NAMES[:categories]):
        mains = []
        for m in range(1 if name in short else 2):
            subs = [
                {"id": f"sc_{c}_{m}_{s}", "name": f"{name} cause {m}.{s}", "whys": [f"why {s}"]}
                for s in range(2)
            ]
            mains.append({"id": f"mc_{c}_{m}", "name": f"{name} main {m}", "subCauses": subs})
        tree_categories.append({"id": f"cat_{c}", "name": name, "mainCauses": mains})
    return {"problem": {"text": "Line 2 runs 12% below nominal speed"}, "categories": tree_categories}


DRAFTS = {
    Stage.CONTEXT: {"sector": "Food and beverage", "products": ["Juice"], "process_focus": ["Bottling"]},
    Stage.PRODUCTIVITY: {
        "type": "monetary",
        "unit_reason": "Sales and costs are tracked monthly in money",
        "period_key": PERIOD,
        "line": "Line 2",
        "income": 10000,
        "costs": [{"name": "Labor", "amount": 3000}, {"name": "Energy", "amount": 800}],
    },
    Stage.FODA: {
        "items": {
            "F": [{"text": f"Strength {i}"} for i in range(3)],
            "D": [{"text": f"Weakness {i}"} for i in range(3)],
            "O": [{"text": f"Opportunity {i}", "evidence": "Market report 2025"} for i in range(3)],
            "A": [{"text": f"Threat {i}", "evidence": "Supplier notice"} for i in range(3)],
        }
    },
    Stage.BRAINSTORM: {
        "problem": "Line 2 runs 12% below nominal speed",
        "ideas": [f"Idea number {i} about the line" for i in range(10)],
    },
    Stage.ISHIKAWA: _cause_tree(),
}


@pytest.fixture
def store(tmp_path):
    return StageArtifactStore(tmp_path / "artifacts.json")


@pytest.fixture
def controller(store):
    return PipelineController(store)


def _save(store, stage, payload):
    store.put(OWNER, stage, STAGE_KINDS[stage].draft, PERIOD, payload)


def _validate_through(controller, store, last_stage):
    for stage in Stage:
        if stage > last_stage:
            break
        if stage in DRAFTS:
            _save(store, stage, DRAFTS[stage])
        result = controller.validate(OWNER, stage, PERIOD)
        assert result.valid, result.message


def _roots(store):
    final = store.get(OWNER, Stage.ISHIKAWA, STAGE_KINDS[Stage.ISHIKAWA].final, PERIOD)
    return final.payload["roots"]


def test_full_chain_validates(controller, store):
    _validate_through(controller, store, Stage.ISHIKAWA)
    roots = _roots(store)
    assert len(roots) == 16

    _save(store, Stage.PARETO, {
        "selectedRoots": roots[:12],
        "criteria": [{"name": "Impact", "weight": 9}, {"name": "Cost", "weight": 5}, {"name": "Ease", "weight": 6}],
        "criticalRoots": roots[:3],
    })
    pareto = controller.validate(OWNER, Stage.PARETO, PERIOD)
    assert pareto.valid
    assert pareto.final["fromStage4"]["rootsCount"] == 16

    _save(store, Stage.OBJECTIVES, {
        "generalObjective": "Bring line 2 back to nominal speed",
        "specificObjectives": ["Plan maintenance", "Standardize setup", "Train operators"],
        "linkedCriticalRoots": roots[:2],
    })
    objectives = controller.validate(OWNER, Stage.OBJECTIVES, PERIOD)
    assert objectives.valid
    assert objectives.score["label"] == "Good"

    status = controller.pipeline_status(OWNER, PERIOD)
    assert status["currentStage"] is None
    assert all(row["validated"] for row in status["stages"])


def test_objectives_without_validated_pareto_fail_upstream(controller, store):
    _save(store, Stage.OBJECTIVES, {"generalObjective": "Anything long enough to pass"})

    result = controller.validate(OWNER, Stage.OBJECTIVES, PERIOD)

    assert not result.valid
    assert result.code == "UPSTREAM_NOT_FINALIZED"
    assert "Stage 5" in result.message


def test_cause_tree_message_names_every_short_category(controller, store):
    _validate_through(controller, store, Stage.BRAINSTORM)
    _save(store, Stage.ISHIKAWA, _cause_tree(categories=6, short=("Measurement", "Environment")))

    result = controller.validate(OWNER, Stage.ISHIKAWA, PERIOD)

    assert not result.valid
    assert result.code == "MAIN_CAUSES_BELOW_MINIMUM"
    assert '"Measurement" (1)' in result.message
    assert '"Environment" (1)' in result.message
    assert "minimum 2" in result.message
    assert (result.current, result.required) == (1, 2)


def test_revalidation_overwrites_final(controller, store):
    _validate_through(controller, store, Stage.BRAINSTORM)
    kind = STAGE_KINDS[Stage.BRAINSTORM].final
    first = store.get(OWNER, Stage.BRAINSTORM, kind, PERIOD)

    again = controller.validate(OWNER, Stage.BRAINSTORM, PERIOD)
    second = store.get(OWNER, Stage.BRAINSTORM, kind, PERIOD)

    assert again.valid
    assert second.version == first.version + 1
    assert {k: v for k, v in second.payload.items() if k != "validatedAt"} == \
        {k: v for k, v in first.payload.items() if k != "validatedAt"}
    assert len([a for a in store.list_artifacts(OWNER, PERIOD) if a.kind == kind]) == 1


def test_context_confirmation_is_terminal(controller, store):
    _validate_through(controller, store, Stage.CONTEXT)
    _save(store, Stage.CONTEXT, {"sector": ""})

    result = controller.validate(OWNER, Stage.CONTEXT, PERIOD)

    assert result.valid
    assert result.final["sector"] == "Food and beverage"
    assert len(store.evaluations(OWNER, Stage.CONTEXT)) == 1


def test_missing_draft_is_reported(controller, store):
    _validate_through(controller, store, Stage.CONTEXT)

    result = controller.validate(OWNER, Stage.PRODUCTIVITY, PERIOD)

    assert not result.valid
    assert result.code == "NO_DRAFT"


def test_threshold_failure_leaves_store_unchanged(controller, store):
    _validate_through(controller, store, Stage.PRODUCTIVITY)
    _save(store, Stage.FODA, {"items": {"F": [{"text": "Only one"}]}})

    result = controller.validate(OWNER, Stage.FODA, PERIOD)

    assert not result.valid
    assert result.code == "BELOW_MINIMUM"
    assert store.get(OWNER, Stage.FODA, STAGE_KINDS[Stage.FODA].final, PERIOD) is None
    draft = store.get(OWNER, Stage.FODA, STAGE_KINDS[Stage.FODA].draft, PERIOD)
    assert draft.status == ArtifactStatus.DRAFT


def test_cause_tree_draft_stays_open_after_validation(controller, store):
    _validate_through(controller, store, Stage.ISHIKAWA)

    draft = store.get(OWNER, Stage.ISHIKAWA, STAGE_KINDS[Stage.ISHIKAWA].draft, PERIOD)
    final = store.get(OWNER, Stage.ISHIKAWA, STAGE_KINDS[Stage.ISHIKAWA].final, PERIOD)

    assert draft.status == ArtifactStatus.DRAFT
    assert final.is_validated
    assert "pendingSwitch" not in final.payload


def test_pipeline_status_reports_progress(controller, store):
    _validate_through(controller, store, Stage.PRODUCTIVITY)
    _save(store, Stage.FODA, {"items": {}})

    status = controller.pipeline_status(OWNER, PERIOD)
    rows = {row["stage"]: row for row in status["stages"]}

    assert status["currentStage"] == 2
    assert rows[1]["validated"] and rows[1]["score"]["total"] == 100
    assert rows[2]["unlocked"] and rows[2]["hasDraft"] and not rows[2]["validated"]
    assert not rows[3]["unlocked"]


def _tree_with_repeated_roots(**overrides):
    """Every category repeats the same four sub-cause texts."""
    tree = _cause_tree()
    for category in tree["categories"]:
        for m, main in enumerate(category["mainCauses"]):
            for s, sub in enumerate(main["subCauses"]):
                sub["name"] = f"Shared cause {m}.{s}"
    tree.update(overrides)
    return tree


def test_repeated_root_texts_count_once_at_the_cause_tree_gate(controller, store):
    _validate_through(controller, store, Stage.BRAINSTORM)
    _save(store, Stage.ISHIKAWA, _tree_with_repeated_roots())

    result = controller.validate(OWNER, Stage.ISHIKAWA, PERIOD)

    assert not result.valid
    assert result.code == "ROOT_CANDIDATES_BELOW_MINIMUM"
    assert (result.current, result.required) == (4, 10)


def test_pareto_uses_the_candidate_set_and_minimum_of_the_validated_tree(controller, store):
    _validate_through(controller, store, Stage.BRAINSTORM)
    _save(store, Stage.ISHIKAWA, _tree_with_repeated_roots(minRootCandidates=4))
    tree = controller.validate(OWNER, Stage.ISHIKAWA, PERIOD)
    assert tree.valid
    roots = _roots(store)
    assert roots == ["Shared cause 0.0", "Shared cause 0.1", "Shared cause 1.0", "Shared cause 1.1"]

    _save(store, Stage.PARETO, {
        "minSelected": 2,
        "maxSelected": 4,
        "selectedRoots": roots,
        "criteria": [{"name": "Impact", "weight": 9}, {"name": "Cost", "weight": 5}, {"name": "Ease", "weight": 6}],
        "criticalRoots": roots[:1],
    })
    pareto = controller.validate(OWNER, Stage.PARETO, PERIOD)

    assert pareto.valid, pareto.message
    assert pareto.final["fromStage4"]["rootsCount"] == 4


def test_pareto_candidate_shortfall_is_not_reported_as_missing_upstream(controller, store):
    _validate_through(controller, store, Stage.ISHIKAWA)
    final_kind = STAGE_KINDS[Stage.ISHIKAWA].final
    final = store.get(OWNER, Stage.ISHIKAWA, final_kind, PERIOD)
    payload = dict(final.payload, roots=_roots(store)[:3])
    store.put(OWNER, Stage.ISHIKAWA, final_kind, PERIOD, payload, status=ArtifactStatus.VALIDATED)
    _save(store, Stage.PARETO, {"selectedRoots": payload["roots"]})

    result = controller.validate(OWNER, Stage.PARETO, PERIOD)

    assert not result.valid
    assert result.code == "ROOT_CANDIDATES_BELOW_MINIMUM"
    assert (result.current, result.required) == (3, 10)
