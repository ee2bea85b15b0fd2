"""
Conversational turn handling.

One turn = local intents (map request, stage start, switch confirmation)
or an oracle round, then the stage's merge policy, then persistence of the
merged draft. A fallback proposal never writes: the stored draft stays as it
was.
"""
import re
from typing import Any, Dict, List, Optional

from optia.artifact_store import StageArtifactStore, current_period_key, get_store
from optia.cause_tree import CauseTreeIndex, ensure_default_categories, render_cause_map
from optia.exceptions import InputShapeError
from optia.focus import apply_tree_patch
from optia.logger import get_logger
from optia.models import STAGE_KINDS, ControlSignal, Stage, TurnResult
from optia.nlu_oracle import NLUOracle, OracleProposal
from optia.stage_reducers import reduce_draft
from optia.tree_merge import problem_text

logger = get_logger("turn_service")

_MAP_RE = re.compile(
    r"\b(map|summary|where are we|current state|which branch|"
    r"mapa|resumen|estado actual|situaci[oó]n actual|qu[eé] tenemos|en qu[eé] rama)\b",
    re.IGNORECASE,
)
_START_RE = re.compile(
    r"^(ok|okay|yes|let'?s go|start|si|sí|dale|listo|vamos)\b|"
    r"\b(next stage|stage 4|cause tree|ishikawa|etapa 4|siguiente etapa|empecemos|arranquemos)\b",
    re.IGNORECASE,
)
_YES_RE = re.compile(r"^\s*(yes|yeah|sure|ok|okay|confirm|switch|si|sí|dale)\b", re.IGNORECASE)
_NO_RE = re.compile(r"^\s*(no|nope|stay|keep|cancel|not now)\b", re.IGNORECASE)


def wants_map(utterance: str) -> bool:
    return bool(_MAP_RE.search(utterance))


def wants_start(utterance: str) -> bool:
    return bool(_START_RE.search(utterance.strip()))


def switch_answer(utterance: str) -> Optional[bool]:
    """Yes / no reading of a reply to a branch-switch question."""
    if _NO_RE.search(utterance):
        return False
    if _YES_RE.search(utterance):
        return True
    return None


def cause_tree_intro(tree: Dict[str, Any]) -> str:
    problem = problem_text(tree.get("problem"))
    lines = [
        "**Stage 4: cause tree and 5 whys.**",
        "We will sort causes into categories (6M) and keep asking \"why?\" until we reach root causes.",
    ]
    if problem:
        lines.append(f"Problem (head of the diagram): {problem}")
    lines.append(
        "First step: why does this problem happen? Answer with one concrete cause: what happens, where and when."
    )
    return "\n\n".join(lines)


class TurnService:
    """Runs one conversational turn for a stage and persists the merged draft."""

    def __init__(self, store: Optional[StageArtifactStore] = None, oracle: Optional[NLUOracle] = None):
        self.store = store or get_store()
        self.oracle = oracle or NLUOracle()

    def _upstream_context(self, owner: str, stage: Stage, period_key: str) -> Dict[str, Any]:
        upstream = stage.upstream
        if upstream is None:
            return {}
        final = self.store.get(owner, upstream, STAGE_KINDS[upstream].final, period_key)
        return final.payload if final else {}

    def handle_turn(
        self,
        owner: str,
        stage: Any,
        utterance: str,
        current_draft: Optional[Dict[str, Any]] = None,
        upstream_context: Optional[Dict[str, Any]] = None,
        recent_history: Optional[List[Dict[str, Any]]] = None,
        period_key: Optional[str] = None,
        conversation_ref: Optional[str] = None,
        confirm_switch: Optional[bool] = None,
    ) -> TurnResult:
        """
        Args:
            owner: student id
            stage: stage number or slug
            utterance: the student's message
            current_draft: client copy of the draft, used when nothing is stored
            confirm_switch: answer to a pending branch switch (stage 4)

        Raises:
            InputShapeError: empty utterance or non-object draft
            StorageError: store failure
        """
        stage = Stage.parse(stage)
        if not isinstance(utterance, str) or not utterance.strip():
            raise InputShapeError("The student message is empty", field="studentMessage")
        if current_draft is not None and not isinstance(current_draft, dict):
            raise InputShapeError("currentDraft must be an object", field="currentDraft")

        period_key = period_key or current_period_key()
        kind = STAGE_KINDS[stage].draft
        stored = self.store.resolve(owner, stage, kind, period_key, conversation_ref)
        draft = stored.payload if stored else (current_draft or {})
        if upstream_context is None:
            upstream_context = self._upstream_context(owner, stage, period_key)

        if stage == Stage.ISHIKAWA:
            return self._cause_tree_turn(
                owner, draft, utterance, upstream_context, recent_history,
                period_key, conversation_ref, confirm_switch,
            )

        proposal = self.oracle.propose(stage, draft, utterance, recent_history, upstream_context)
        if proposal.fallback:
            return self._unchanged(proposal, draft)

        next_state = reduce_draft(stage, draft, proposal.patch)
        self.store.put(owner, stage, kind, period_key, next_state, conversation_ref=conversation_ref)
        return TurnResult(
            assistant_message=proposal.assistant_reply,
            next_state=next_state,
            action=proposal.action,
            control_signal=proposal.control_signal,
            persisted=True,
        )

    def _cause_tree_turn(
        self,
        owner: str,
        draft: Dict[str, Any],
        utterance: str,
        upstream_context: Dict[str, Any],
        recent_history: Optional[List[Dict[str, Any]]],
        period_key: str,
        conversation_ref: Optional[str],
        confirm_switch: Optional[bool],
    ) -> TurnResult:
        tree = ensure_default_categories(draft)
        if not problem_text(tree.get("problem")) and problem_text(upstream_context.get("problem")):
            tree["problem"] = {"text": problem_text(upstream_context["problem"])}

        if wants_map(utterance):
            return TurnResult(assistant_message=render_cause_map(tree), next_state=tree)

        if not CauseTreeIndex(tree).has_any_main_cause() and wants_start(utterance):
            return TurnResult(assistant_message=cause_tree_intro(tree), next_state=tree)

        if tree.get("pendingSwitch") and confirm_switch is None:
            confirm_switch = switch_answer(utterance)

        if tree.get("pendingSwitch") and confirm_switch is not None:
            result = apply_tree_patch(tree, {}, confirm_switch=confirm_switch)
            self._save_tree(owner, result.tree, period_key, conversation_ref)
            if confirm_switch:
                message = "Switched branch. " + render_cause_map(result.tree)
            else:
                message = "Staying on the current branch. Why does that cause happen?"
            return TurnResult(assistant_message=message, next_state=result.tree, persisted=True)

        proposal = self.oracle.propose(Stage.ISHIKAWA, tree, utterance, recent_history, upstream_context)
        if proposal.fallback:
            return self._unchanged(proposal, tree)

        result = apply_tree_patch(tree, proposal.patch, action=proposal.action)
        self._save_tree(owner, result.tree, period_key, conversation_ref)

        message = proposal.assistant_reply
        if result.held_back:
            names = ", ".join(c.get("name") or c.get("id") or "?" for c in result.held_back)
            message += (
                f"\n\nThat belongs to another category ({names}). "
                f"Do you want to switch to it, or first close the current branch?"
            )
        return TurnResult(
            assistant_message=message,
            next_state=result.tree,
            action=proposal.action,
            control_signal=proposal.control_signal,
            held_back=result.held_back,
            persisted=True,
        )

    def _save_tree(
        self, owner: str, tree: Dict[str, Any], period_key: str, conversation_ref: Optional[str]
    ) -> None:
        # the store merges on write; the tree here already contains the stored one
        self.store.put(
            owner, Stage.ISHIKAWA, STAGE_KINDS[Stage.ISHIKAWA].draft, period_key, tree,
            conversation_ref=conversation_ref,
        )

    @staticmethod
    def _unchanged(proposal: OracleProposal, draft: Dict[str, Any]) -> TurnResult:
        logger.info("Turn ended in clarification, draft left unchanged")
        return TurnResult(
            assistant_message=proposal.assistant_reply,
            next_state=draft,
            control_signal=ControlSignal.NEEDS_CLARIFICATION,
        )
