"""
Read-side view over a cause tree.

The stored tree is nested JSON; CauseTreeIndex flattens it into one
`{id path -> node}` map per level, each node carrying its parent ids, so
lookups, counts and cursor resolution never walk the nesting by hand.
"""
import copy
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from optia.config_manager import config
from optia.tree_merge import entry_label, problem_text, why_text


@dataclass(frozen=True)
class TreeLimits:
    """Effective thresholds of one tree: per-tree overrides over config defaults."""
    min_categories: int
    min_main_causes_per_category: int
    min_sub_causes_per_main: int
    max_why_depth: int
    min_root_candidates: int

    @classmethod
    def from_tree(cls, tree: Optional[Dict[str, Any]]) -> "TreeLimits":
        tree = tree or {}

        def pick(key: str, default: int) -> int:
            value = tree.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return default
            return int(value)

        return cls(
            min_categories=pick("minCategories", config.MIN_CATEGORIES),
            min_main_causes_per_category=pick("minMainCausesPerCategory", config.MIN_MAIN_CAUSES_PER_CATEGORY),
            min_sub_causes_per_main=pick("minSubCausesPerMain", config.MIN_SUB_CAUSES_PER_MAIN),
            max_why_depth=pick("maxWhyDepth", config.MAX_WHY_DEPTH),
            min_root_candidates=pick("minRootCandidates", config.MIN_ROOT_CANDIDATES),
        )


@dataclass
class CategoryNode:
    id: str
    name: str
    main_cause_ids: List[str] = field(default_factory=list)


@dataclass
class MainCauseNode:
    id: str
    category_id: str
    label: str
    sub_cause_ids: List[str] = field(default_factory=list)


@dataclass
class SubCauseNode:
    id: str
    category_id: str
    main_cause_id: str
    label: str
    whys: List[str] = field(default_factory=list)

    @property
    def depth(self) -> int:
        return len(self.whys)


class CauseTreeIndex:
    """
    Arena view of a cause tree.

    Keys: categories by `cat_id`, main causes by `(cat_id, mc_id)`,
    sub-causes by `(cat_id, mc_id, sc_id)`. Ids are only unique within their
    parent, hence the path keys.
    """

    def __init__(self, tree: Optional[Dict[str, Any]]):
        self.tree = tree or {}
        self.problem = problem_text(self.tree.get("problem"))
        self.categories: Dict[str, CategoryNode] = {}
        self.main_causes: Dict[Tuple[str, str], MainCauseNode] = {}
        self.sub_causes: Dict[Tuple[str, str, str], SubCauseNode] = {}
        self._build()

    def _build(self) -> None:
        for category in self.tree.get("categories") or []:
            if not isinstance(category, dict) or not category.get("id"):
                continue
            cat_id = str(category["id"])
            if cat_id in self.categories:
                continue
            cat_node = CategoryNode(id=cat_id, name=entry_label(category) or cat_id)
            self.categories[cat_id] = cat_node

            for main in category.get("mainCauses") or []:
                if not isinstance(main, dict) or not main.get("id"):
                    continue
                mc_id = str(main["id"])
                if (cat_id, mc_id) in self.main_causes:
                    continue
                cat_node.main_cause_ids.append(mc_id)
                mc_node = MainCauseNode(id=mc_id, category_id=cat_id, label=entry_label(main))
                self.main_causes[(cat_id, mc_id)] = mc_node

                for sub in main.get("subCauses") or []:
                    if not isinstance(sub, dict) or not sub.get("id"):
                        continue
                    sc_id = str(sub["id"])
                    if (cat_id, mc_id, sc_id) in self.sub_causes:
                        continue
                    mc_node.sub_cause_ids.append(sc_id)
                    whys = [why_text(w) for w in sub.get("whys") or []]
                    self.sub_causes[(cat_id, mc_id, sc_id)] = SubCauseNode(
                        id=sc_id,
                        category_id=cat_id,
                        main_cause_id=mc_id,
                        label=entry_label(sub),
                        whys=[w for w in whys if w],
                    )

    # --- lookups ---

    def category(self, cat_id: Optional[str]) -> Optional[CategoryNode]:
        if not cat_id:
            return None
        return self.categories.get(cat_id)

    def main_cause(self, cat_id: Optional[str], mc_id: Optional[str]) -> Optional[MainCauseNode]:
        if not cat_id or not mc_id:
            return None
        return self.main_causes.get((cat_id, mc_id))

    def sub_cause(self, cat_id: Optional[str], mc_id: Optional[str], sc_id: Optional[str]) -> Optional[SubCauseNode]:
        if not cat_id or not mc_id or not sc_id:
            return None
        return self.sub_causes.get((cat_id, mc_id, sc_id))

    def main_causes_of(self, cat_id: str) -> List[MainCauseNode]:
        node = self.categories.get(cat_id)
        if not node:
            return []
        return [self.main_causes[(cat_id, mc_id)] for mc_id in node.main_cause_ids]

    def sub_causes_of(self, cat_id: str, mc_id: str) -> List[SubCauseNode]:
        node = self.main_causes.get((cat_id, mc_id))
        if not node:
            return []
        return [self.sub_causes[(cat_id, mc_id, sc_id)] for sc_id in node.sub_cause_ids]

    def main_cause_count(self, cat_id: str) -> int:
        node = self.categories.get(cat_id)
        return len(node.main_cause_ids) if node else 0

    def has_any_main_cause(self) -> bool:
        return bool(self.main_causes)

    # --- derived sets ---

    def root_candidates(self) -> List[str]:
        """Distinct non-empty sub-cause texts, in first-seen tree order."""
        roots: List[str] = []
        for node in self.sub_causes.values():
            label = node.label.strip()
            if label and label not in roots:
                roots.append(label)
        return roots

    def category_shortfalls(self, minimum: int) -> List[CategoryNode]:
        """Categories holding fewer than `minimum` main causes, in tree order."""
        return [node for node in self.categories.values() if len(node.main_cause_ids) < minimum]

    def branch_shortfalls(self, minimum: int) -> List[MainCauseNode]:
        """Main causes holding fewer than `minimum` sub-causes, in tree order."""
        return [node for node in self.main_causes.values() if len(node.sub_cause_ids) < minimum]

    def deepest_why(self, cat_id: str, mc_id: str) -> int:
        return max((sub.depth for sub in self.sub_causes_of(cat_id, mc_id)), default=0)


def ensure_default_categories(tree: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Seed the default 6M categories when a tree has none yet."""
    seeded = copy.deepcopy(tree or {})
    if seeded.get("categories"):
        return seeded
    seeded["categories"] = [
        {"id": cat["id"], "name": cat["name"], "mainCauses": []}
        for cat in config.DEFAULT_CATEGORIES
    ]
    return seeded


# Keyword stems (English and Spanish) that hint at a 6M category.
CATEGORY_HINTS = (
    (r"(light|lighting|ilumin|noise|ruido|temper|heat|calor|cold|fr[ií]o|dust|polvo|humid|ventil|vibra)",
     ("environment", "entorno", "ambiente")),
    (r"(procedure|proced|standard|est[aá]ndar|sop|method|m[eé]todo|instruct|checklist|set.?up|changeover|smed)",
     ("method", "método", "metodo")),
    (r"(operator|operari|training|capacit|supervis|disciplin|shift|turno|fatigue|fatiga|motiv|human error|error humano)",
     ("man", "hombre", "mano de obra", "people")),
    (r"(machine|m[aá]quina|equipment|equipo|sensor|failure|falla|calibr|wear|desgaste|motor|roller|rodillo|nozzle|boquilla)",
     ("machine", "máquina", "maquina")),
    (r"(supply|supplies|insumo|packag|envase|bottle|botella|raw material|materia prima|label|etiqueta|\bcap\b|tapa)",
     ("material",)),
    (r"(measure|medici|indicator|indicador|oee|record|registro|inspect|inspecci|\bdata\b|\bdato|kpi)",
     ("measurement", "medici", "medida")),
)


def guess_category_id(tree: Optional[Dict[str, Any]], text: str) -> Optional[str]:
    """Best-effort category for a free-text cause, matched against category names."""
    lowered = (text or "").lower()
    categories = (tree or {}).get("categories") or []
    for pattern, names in CATEGORY_HINTS:
        if not re.search(pattern, lowered):
            continue
        for category in categories:
            label = entry_label(category).lower()
            if any(name == label or (len(name) > 3 and name in label) for name in names):
                return category.get("id")
        return None
    return None


def render_cause_map(tree: Optional[Dict[str, Any]]) -> str:
    """Plain-text map of the tree: per-category counts, the nested branches and the active branch."""
    index = CauseTreeIndex(tree)
    limits = TreeLimits.from_tree(tree)

    lines = [f"Problem: {index.problem or '(no problem yet)'}", ""]

    for cat in index.categories.values():
        lines.append(f"- {cat.name}: {len(cat.main_cause_ids)}/{limits.min_main_causes_per_category} main causes")

    lines.append("")
    lines.append("Map:")
    for cat in index.categories.values():
        lines.append(f"* {cat.name}")
        for main in index.main_causes_of(cat.id):
            lines.append(f"  |- {main.label or '(unnamed)'}")
            for sub in index.sub_causes_of(cat.id, main.id):
                lines.append(f"  |   |- {sub.label or '(unnamed)'}")
                for position, why in enumerate(sub.whys, start=1):
                    lines.append(f"  |   |   |- {position}) {why}")

    cursor = (tree or {}).get("cursor") or {}
    if isinstance(cursor, dict):
        cat = index.category(cursor.get("categoryId"))
        main = index.main_cause(cursor.get("categoryId"), cursor.get("mainCauseId"))
        if cat and main:
            lines.append("")
            lines.append(f"Active branch: {cat.name} -> {main.label or '(cause)'}")
        elif cat:
            lines.append("")
            lines.append(f"Active category: {cat.name}")

    roots = index.root_candidates()
    lines.append("")
    lines.append(f"Root candidates: {len(roots)}/{limits.min_root_candidates}")
    return "\n".join(lines)
