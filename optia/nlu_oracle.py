"""
NLU oracle adapter.

Turns a student utterance into a structured proposal by asking an LLM, and
treats the answer as untrusted input:

1. extract the JSON object (fences / surrounding prose tolerated)
2. validate the envelope {assistantMessage, updates: {nextState, action}, controlSignal}
3. validate nextState against the stage's patch schema (extra fields kept)

Malformed output is re-asked once; a second failure, or any LLMError, yields
the clarification fallback with an empty patch. Nothing here touches stored
state: the patch is merged downstream.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from optia.cause_tree import ensure_default_categories, guess_category_id
from optia.config_manager import config
from optia.exceptions import ConfigError, LLMError, OracleError
from optia.llm_adapter import BaseLLMAdapter, RuleBasedAdapter, get_llm
from optia.logger import get_logger, log_oracle_rejection
from optia.models import ControlSignal, Stage
from optia.tree_merge import entry_label
from optia.utils import load_prompt, parse_llm_json

logger = get_logger("nlu_oracle")


# === Patch schemas ===

class _Patch(BaseModel):
    model_config = ConfigDict(extra="allow")


TextOrObject = Union[str, Dict[str, Any]]


class ContextPatch(_Patch):
    sector: Optional[TextOrObject] = None
    products: Optional[Union[List[str], str, Dict[str, Any]]] = None
    process_focus: Optional[Union[List[str], str, Dict[str, Any]]] = None
    context_text: Optional[str] = None


class CostItemPatch(_Patch):
    name: Optional[str] = None
    amount: Optional[float] = Field(default=None, ge=0)
    note: Optional[str] = None


class ProductivityPatch(_Patch):
    type: Optional[Literal["monetary", "physical"]] = None
    unit_reason: Optional[str] = None
    period_key: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}$")
    line: Optional[str] = None
    income: Optional[float] = Field(default=None, ge=0)
    costs: Optional[List[CostItemPatch]] = None
    notes: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        aliases = {"monetaria": "monetary", "fisica": "physical", "física": "physical"}
        if isinstance(value, str):
            lowered = value.strip().lower()
            return aliases.get(lowered, lowered)
        return value


class QuadrantItemPatch(_Patch):
    text: str = Field(min_length=1)
    evidence: Optional[str] = None


Quadrant = Literal["F", "D", "O", "A"]


class PendingEvidencePatch(_Patch):
    quadrant: Quadrant
    index: int = Field(ge=0)


class QuadrantPatch(_Patch):
    items: Optional[Dict[Quadrant, List[Union[QuadrantItemPatch, str]]]] = None
    current_quadrant: Optional[Quadrant] = None
    pending_evidence: Optional[PendingEvidencePatch] = None


class ProblemPatch(_Patch):
    text: Optional[str] = None


class IdeaPatch(_Patch):
    text: str = Field(min_length=1)


class IdeasPatch(_Patch):
    problem: Optional[Union[ProblemPatch, str]] = None
    ideas: Optional[List[Union[IdeaPatch, str]]] = None


class WhyPatch(_Patch):
    id: Optional[str] = None
    text: str


class SubCausePatch(_Patch):
    id: Optional[str] = None
    name: Optional[str] = None
    text: Optional[str] = None
    whys: Optional[List[Union[str, WhyPatch]]] = None


class MainCausePatch(_Patch):
    id: Optional[str] = None
    name: Optional[str] = None
    text: Optional[str] = None
    subCauses: Optional[List[SubCausePatch]] = None


class CategoryPatch(_Patch):
    id: Optional[str] = None
    name: Optional[str] = None
    mainCauses: Optional[List[MainCausePatch]] = None


class CursorPatch(_Patch):
    categoryId: str
    mainCauseId: Optional[str] = None
    subCauseId: Optional[str] = None


class CauseTreePatch(_Patch):
    problem: Optional[Union[ProblemPatch, str]] = None
    categories: Optional[List[CategoryPatch]] = None
    cursor: Optional[CursorPatch] = None


class CriterionPatch(_Patch):
    id: Optional[str] = None
    name: Optional[str] = None
    weight: Optional[float] = None


class PrioritizationPatch(_Patch):
    selectedRoots: Optional[List[str]] = None
    criteria: Optional[List[CriterionPatch]] = None
    criticalRoots: Optional[List[str]] = None
    step: Optional[Union[str, int]] = None


class ObjectivesPatch(_Patch):
    generalObjective: Optional[str] = None
    specificObjectives: Optional[List[str]] = None
    linkedCriticalRoots: Optional[List[str]] = None


PATCH_SCHEMAS: Dict[Stage, Type[_Patch]] = {
    Stage.CONTEXT: ContextPatch,
    Stage.PRODUCTIVITY: ProductivityPatch,
    Stage.FODA: QuadrantPatch,
    Stage.BRAINSTORM: IdeasPatch,
    Stage.ISHIKAWA: CauseTreePatch,
    Stage.PARETO: PrioritizationPatch,
    Stage.OBJECTIVES: ObjectivesPatch,
}


# === Envelope ===

_SIGNAL_ALIASES = {
    "needsclarification": ControlSignal.NEEDS_CLARIFICATION,
    "needs_clarification": ControlSignal.NEEDS_CLARIFICATION,
    "readytoadvance": ControlSignal.READY_TO_ADVANCE,
    "ready_to_advance": ControlSignal.READY_TO_ADVANCE,
    "done": ControlSignal.DONE,
}

_ANALYSIS_KEYS = ("analysis", "Analysis", "Análisis", "Analisis")
_QUESTION_KEYS = ("nextQuestion", "next_question", "Next question", "Siguiente pregunta", "Siguiente Pregunta")


def normalize_assistant_message(value: Any) -> str:
    """Text of an assistantMessage that may arrive as an {analysis, next question} object."""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, dict):
        analysis = next((value[k] for k in _ANALYSIS_KEYS if isinstance(value.get(k), str)), "")
        question = next((value[k] for k in _QUESTION_KEYS if isinstance(value.get(k), str)), "")
        if analysis or question:
            return "\n".join(part.strip() for part in (analysis, question) if part.strip())
        return json.dumps(value, ensure_ascii=False)
    return ""


class OracleUpdates(BaseModel):
    model_config = ConfigDict(extra="allow")

    nextState: Dict[str, Any]
    action: Optional[str] = None


class OracleEnvelope(BaseModel):
    model_config = ConfigDict(extra="allow")

    assistantMessage: str = Field(min_length=1)
    updates: OracleUpdates
    controlSignal: ControlSignal = ControlSignal.NEEDS_CLARIFICATION

    @field_validator("assistantMessage", mode="before")
    @classmethod
    def _normalize_message(cls, value: Any) -> Any:
        if value is None:
            return value
        return normalize_assistant_message(value)

    @field_validator("controlSignal", mode="before")
    @classmethod
    def _normalize_signal(cls, value: Any) -> Any:
        if value is None:
            return ControlSignal.NEEDS_CLARIFICATION
        if isinstance(value, str):
            return _SIGNAL_ALIASES.get(value.strip().lower().replace("-", "_"), value)
        return value


@dataclass
class OracleProposal:
    """Validated oracle output, or the clarification fallback."""
    assistant_reply: str
    patch: Dict[str, Any] = field(default_factory=dict)
    action: Optional[str] = None
    control_signal: ControlSignal = ControlSignal.NEEDS_CLARIFICATION
    fallback: bool = False
    attempts: int = 0


def validate_oracle_output(stage: Stage, raw: str) -> OracleProposal:
    """
    Parse and validate one raw oracle answer.

    Raises:
        OracleError: no JSON object, envelope or patch schema violation
    """
    data = parse_llm_json(raw)
    if data is None:
        raise OracleError("Oracle output contains no JSON object", raw=raw)

    try:
        envelope = OracleEnvelope.model_validate(data)
    except ValidationError as exc:
        raise OracleError(f"Envelope rejected: {_first_error(exc)}", raw=raw)

    try:
        patch_model = PATCH_SCHEMAS[stage].model_validate(envelope.updates.nextState)
    except ValidationError as exc:
        raise OracleError(f"Stage {int(stage)} patch rejected: {_first_error(exc)}", raw=raw)

    return OracleProposal(
        assistant_reply=envelope.assistantMessage,
        patch=patch_model.model_dump(exclude_unset=True),
        action=envelope.updates.action,
        control_signal=envelope.controlSignal,
    )


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


# === Replies ===

FOLLOW_UP_QUESTIONS = (
    "What triggers that problem in practice?",
    "When is it most noticeable (start of shift, format changes, end of batch)?",
    "Which exact part of the machine or process goes out of adjustment first?",
    "Who does that task, and how often?",
    "What signal or symptom shows up right before it happens?",
)

STAGE_CLARIFICATIONS = {
    Stage.CONTEXT: "Could you tell me the sector, the main products or services, and the process you want to improve?",
    Stage.PRODUCTIVITY: "Could you restate that with the figures for the period (income, cost items, units)?",
    Stage.FODA: "Could you rephrase that as one strength, weakness, opportunity or threat, with its evidence?",
    Stage.BRAINSTORM: "Could you rephrase that as one concrete idea about the causes of the problem?",
    Stage.ISHIKAWA: "Could you rephrase that cause: what happens, where, and when?",
    Stage.PARETO: "Could you restate which root causes you selected, or the criteria and their weights (1-10)?",
    Stage.OBJECTIVES: "Could you restate the objective, and which critical cause it addresses?",
}


def ensure_follow_up(reply: str) -> str:
    """Cause-tree replies always end with a question that keeps the drill-down going."""
    reply = reply.strip()
    if reply.endswith("?"):
        return reply
    question = FOLLOW_UP_QUESTIONS[len(reply) % len(FOLLOW_UP_QUESTIONS)]
    return f"{reply}\n{question}" if reply else question


def clarification_fallback(stage: Stage, current_draft: Optional[Dict[str, Any]], utterance: str) -> OracleProposal:
    """Generic clarification request; for the cause tree it suggests a category."""
    if stage == Stage.ISHIKAWA:
        tree = ensure_default_categories(current_draft)
        category_id = guess_category_id(tree, utterance)
        if category_id:
            name = next(
                (entry_label(c) for c in tree["categories"] if c.get("id") == category_id),
                "that category",
            )
            reply = f"This sounds like **{name}**. Should we record it as a main cause in that category?"
        else:
            names = " / ".join(entry_label(c) for c in tree["categories"])
            reply = f"Got it. To place this cause, which category fits best: {names}?"
    else:
        reply = "I could not interpret that. " + STAGE_CLARIFICATIONS[stage]

    return OracleProposal(assistant_reply=reply, fallback=True)


# === Adapter ===

class NLUOracle:
    """Schema-checked boundary to the free-text interpretation model."""

    def __init__(self, llm: Optional[BaseLLMAdapter] = None, max_retries: Optional[int] = None):
        self._llm = llm
        self.max_retries = config.ORACLE_MAX_RETRIES if max_retries is None else max_retries

    @property
    def llm(self) -> BaseLLMAdapter:
        if self._llm is None:
            try:
                self._llm = get_llm()
            except ConfigError as exc:
                logger.error("Model configuration unusable, oracle runs in rule-based mode: %s", exc.message)
                self._llm = RuleBasedAdapter({})
        return self._llm

    def build_prompts(
        self,
        stage: Stage,
        current_draft: Dict[str, Any],
        utterance: str,
        recent_history: Optional[List[Dict[str, Any]]] = None,
        upstream_context: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, str]:
        history = (recent_history or [])[-config.HISTORY_WINDOW:]
        history_text = "\n".join(
            f"{m.get('role', 'user')}: {m.get('content', '')}" for m in history if isinstance(m, dict)
        )
        variables = {
            "state": json.dumps(current_draft or {}, ensure_ascii=False),
            "upstream": json.dumps(upstream_context or {}, ensure_ascii=False),
            "history": history_text or "(no previous messages)",
        }
        system = load_prompt(stage.slug, variables)
        contract = load_prompt("oracle_contract")
        prompt = f"Student message:\n{utterance}\n\nAnswer with JSON only."
        return {"system": f"{system}\n\n{contract}".strip(), "prompt": prompt}

    def propose(
        self,
        stage: Stage,
        current_draft: Optional[Dict[str, Any]],
        utterance: str,
        recent_history: Optional[List[Dict[str, Any]]] = None,
        upstream_context: Optional[Dict[str, Any]] = None,
    ) -> OracleProposal:
        """
        One oracle round: at most 1 + max_retries model calls.

        Never raises for model or schema problems; those end in the fallback.
        """
        current_draft = current_draft or {}
        llm = self.llm
        if llm.offline:
            return clarification_fallback(stage, current_draft, utterance)

        prompts = self.build_prompts(stage, current_draft, utterance, recent_history, upstream_context)
        prompt = prompts["prompt"]
        attempts = 1 + self.max_retries

        for attempt in range(1, attempts + 1):
            try:
                response = llm.generate(
                    prompt,
                    system_prompt=prompts["system"],
                    temperature=config.ORACLE_TEMPERATURE,
                    max_tokens=config.ORACLE_MAX_TOKENS,
                )
            except LLMError as exc:
                logger.warning("Oracle call failed (stage %d): %s", stage, exc.message)
                proposal = clarification_fallback(stage, current_draft, utterance)
                proposal.attempts = attempt
                return proposal

            try:
                if not response.success:
                    raise OracleError(response.error or "Empty model response", raw=response.content)
                proposal = validate_oracle_output(stage, response.content)
            except OracleError as exc:
                log_oracle_rejection(int(stage), attempt, exc.message, exc.raw or "")
                prompt = (
                    f"{prompts['prompt']}\n\nYour previous answer was rejected ({exc.message}). "
                    f"Answer again with a single JSON object that follows the required format."
                )
                continue

            proposal.attempts = attempt
            if stage == Stage.ISHIKAWA:
                proposal.assistant_reply = ensure_follow_up(proposal.assistant_reply)
            return proposal

        proposal = clarification_fallback(stage, current_draft, utterance)
        proposal.attempts = attempts
        return proposal
