import copy

from optia.tree_merge import derive_id, merge_cause_tree, merge_whys, normalize_problem


def _tree():
    return merge_cause_tree({}, {
        "problem": "Line 2 loses 12% of its speed",
        "categories": [
            {
                "id": "cat_machine",
                "name": "Machine",
                "mainCauses": [
                    {
                        "id": "mc_1",
                        "name": "Labeller jams",
                        "subCauses": [
                            {"id": "sc_1", "name": "Worn rollers", "whys": ["No preventive plan"]},
                        ],
                    }
                ],
            },
            {"id": "cat_method", "name": "Method", "mainCauses": []},
        ],
        "cursor": {"categoryId": "cat_machine", "mainCauseId": "mc_1"},
    })


def _whys(tree, cat_id, mc_id, sc_id):
    category = next(c for c in tree["categories"] if c["id"] == cat_id)
    main = next(m for m in category["mainCauses"] if m["id"] == mc_id)
    sub = next(s for s in main["subCauses"] if s["id"] == sc_id)
    return sub["whys"]


def test_merge_with_itself_is_identity():
    tree = _tree()
    assert merge_cause_tree(tree, tree) == tree


def test_merge_is_idempotent_on_repeated_incoming():
    base = _tree()
    incoming = {"categories": [{"id": "cat_method", "mainCauses": [{"id": "mc_2", "name": "No standard setup"}]}]}

    once = merge_cause_tree(base, incoming)
    twice = merge_cause_tree(once, incoming)

    assert once == twice


def test_merge_is_associative_for_sequential_patches():
    base = _tree()
    a = {
        "categories": [
            {"id": "cat_machine", "mainCauses": [
                {"id": "mc_1", "subCauses": [{"id": "sc_1", "whys": ["Budget cut"]}]},
            ]},
            {"id": "cat_man", "name": "Man", "mainCauses": [{"id": "mc_3", "name": "Untrained operators"}]},
        ]
    }
    b = {
        "categories": [
            {"id": "cat_machine", "mainCauses": [
                {"id": "mc_1", "subCauses": [
                    {"id": "sc_1", "whys": ["Budget cut", "Maintenance not prioritized"]},
                    {"id": "sc_2", "name": "Sensor misaligned"},
                ]},
            ]},
        ],
        "cursor": None,
    }

    left = merge_cause_tree(merge_cause_tree(base, a), b)
    right = merge_cause_tree(base, merge_cause_tree(a, b))

    assert left == right


def _entries_by_path(tree):
    """Every category, main cause and sub-cause keyed by its id path, without child lists."""
    entries = {}
    for category in tree["categories"]:
        entries[(category["id"],)] = {k: v for k, v in category.items() if k != "mainCauses"}
        for main in category.get("mainCauses") or []:
            entries[(category["id"], main["id"])] = {k: v for k, v in main.items() if k != "subCauses"}
            for sub in main.get("subCauses") or []:
                entries[(category["id"], main["id"], sub["id"])] = sub
    return entries


def test_patches_on_distinct_ids_commute():
    base = _tree()
    a = {
        "categories": [
            {"id": "cat_machine", "mainCauses": [
                {"id": "mc_1", "subCauses": [{"id": "sc_1", "whys": ["Budget cut"]}]},
            ]},
            {"id": "cat_method", "mainCauses": [{"id": "mc_2", "name": "No standard setup"}]},
        ]
    }
    b = {
        "categories": [
            {"id": "cat_machine", "mainCauses": [
                {"id": "mc_1", "subCauses": [{"id": "sc_2", "name": "Sensor misaligned", "whys": ["Loose bracket"]}]},
            ]},
            {"id": "cat_material", "name": "Material", "mainCauses": [{"id": "mc_4", "name": "Thin label stock"}]},
        ]
    }

    ab = merge_cause_tree(merge_cause_tree(base, a), b)
    ba = merge_cause_tree(merge_cause_tree(base, b), a)

    assert _entries_by_path(ab) == _entries_by_path(ba)
    assert _whys(ab, "cat_machine", "mc_1", "sc_1") == ["No preventive plan", "Budget cut"]
    assert _whys(ba, "cat_machine", "mc_1", "sc_2") == ["Loose bracket"]
    assert ab["problem"] == ba["problem"]
    assert ab["cursor"] == ba["cursor"]
    assert [c["id"] for c in ab["categories"]] == ["cat_machine", "cat_method", "cat_material"]
    assert [c["id"] for c in ba["categories"]] == ["cat_machine", "cat_method", "cat_material"]


def test_whys_never_shrink():
    tree = _tree()
    sizes = [len(_whys(tree, "cat_machine", "mc_1", "sc_1"))]
    patches = [
        {"categories": [{"id": "cat_machine", "mainCauses": [{"id": "mc_1", "subCauses": [{"id": "sc_1", "whys": []}]}]}]},
        {"categories": [{"id": "cat_machine", "mainCauses": [{"id": "mc_1", "subCauses": [{"id": "sc_1", "whys": ["Budget cut"]}]}]}]},
        {"categories": [{"id": "cat_machine", "mainCauses": [{"id": "mc_1", "subCauses": [{"id": "sc_1"}]}]}]},
        {"categories": []},
    ]
    for patch in patches:
        tree = merge_cause_tree(tree, patch)
        sizes.append(len(_whys(tree, "cat_machine", "mc_1", "sc_1")))

    assert sizes == sorted(sizes)
    assert _whys(tree, "cat_machine", "mc_1", "sc_1") == ["No preventive plan", "Budget cut"]


def test_merge_whys_keeps_base_order_and_skips_duplicates():
    merged = merge_whys(["a", "b"], ["b", " a ", "c", {"text": "d"}, {"text": "d"}])
    assert merged == ["a", "b", "c", {"text": "d"}]


def test_blank_incoming_problem_keeps_base():
    base = _tree()
    merged = merge_cause_tree(base, {"problem": "   "})
    assert merged["problem"] == {"text": "Line 2 loses 12% of its speed"}

    merged = merge_cause_tree(base, {"problem": {"text": ""}})
    assert merged["problem"] == {"text": "Line 2 loses 12% of its speed"}


def test_problem_is_normalized_to_text_object():
    merged = merge_cause_tree({"problem": "Old"}, {"problem": "  New problem  "})
    assert merged["problem"] == {"text": "New problem"}
    assert normalize_problem("x") == {"text": "x"}
    assert normalize_problem(None) is None


def test_entries_only_in_base_are_kept_and_new_ones_appended_in_order():
    base = _tree()
    incoming = {"categories": [
        {"id": "cat_env", "name": "Environment"},
        {"id": "cat_man", "name": "Man"},
    ]}

    merged = merge_cause_tree(base, incoming)

    assert [c["id"] for c in merged["categories"]] == ["cat_machine", "cat_method", "cat_env", "cat_man"]


def test_incoming_non_null_fields_override_base_fields():
    base = _tree()
    incoming = {"categories": [{"id": "cat_machine", "name": "Machinery", "note": None}]}

    merged = merge_cause_tree(base, incoming)
    machine = merged["categories"][0]

    assert machine["name"] == "Machinery"
    assert "note" not in machine
    assert machine["mainCauses"][0]["name"] == "Labeller jams"


def test_entry_without_id_gets_deterministic_id():
    incoming = {"categories": [{"name": "Material"}]}

    first = merge_cause_tree({}, incoming)
    second = merge_cause_tree(first, incoming)

    assert first["categories"][0]["id"] == derive_id("cat", {"name": "Material"})
    assert len(second["categories"]) == 1


def test_entry_without_id_attaches_to_sibling_with_same_label():
    base = _tree()
    incoming = {"categories": [{"name": "machine", "mainCauses": [{"name": "Conveyor stops"}]}]}

    merged = merge_cause_tree(base, incoming)

    assert [c["id"] for c in merged["categories"]] == ["cat_machine", "cat_method"]
    mains = merged["categories"][0]["mainCauses"]
    assert [m["name"] for m in mains] == ["Labeller jams", "Conveyor stops"]


def test_entry_without_id_or_text_is_dropped():
    merged = merge_cause_tree(_tree(), {"categories": [{"mainCauses": []}, "garbage"]})
    assert len(merged["categories"]) == 2


def test_cursor_in_incoming_wins_even_when_null():
    base = _tree()
    assert merge_cause_tree(base, {"cursor": None})["cursor"] is None
    assert merge_cause_tree(base, {})["cursor"] == {"categoryId": "cat_machine", "mainCauseId": "mc_1"}


def test_unknown_top_level_fields_are_preserved():
    base = dict(_tree(), minCategories=3)
    merged = merge_cause_tree(base, {"instructorNote": "check units", "minCategories": None})
    assert merged["minCategories"] == 3
    assert merged["instructorNote"] == "check units"


def test_inputs_are_not_mutated():
    base = _tree()
    incoming = {"categories": [{"id": "cat_machine", "mainCauses": [{"id": "mc_9", "name": "Pump"}]}]}
    base_copy = copy.deepcopy(base)
    incoming_copy = copy.deepcopy(incoming)

    merge_cause_tree(base, incoming)

    assert base == base_copy
    assert incoming == incoming_copy
