"""
Core data models for OPT-IA.
Stages, artifact records and evaluation records shared by the store,
the validators and the HTTP layer.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Tuple


class Stage(IntEnum):
    CONTEXT = 0
    PRODUCTIVITY = 1
    FODA = 2
    BRAINSTORM = 3
    ISHIKAWA = 4
    PARETO = 5
    OBJECTIVES = 6

    @property
    def slug(self) -> str:
        return self.name.lower()

    @property
    def upstream(self) -> Optional["Stage"]:
        if self == Stage.CONTEXT:
            return None
        return Stage(self - 1)

    @classmethod
    def parse(cls, raw: Any) -> "Stage":
        """Accept a stage number, a numeric string or a slug."""
        if isinstance(raw, Stage):
            return raw
        text = str(raw).strip().lower()
        if text.isdigit():
            return cls(int(text))
        for stage in cls:
            if stage.slug == text:
                return stage
        raise ValueError(f"Unknown stage: {raw!r}")


class ArtifactStatus(str, Enum):
    DRAFT = "draft"
    VALIDATED = "validated"


class ControlSignal(str, Enum):
    NEEDS_CLARIFICATION = "needs_clarification"
    READY_TO_ADVANCE = "ready_to_advance"
    DONE = "done"


@dataclass(frozen=True)
class StageKinds:
    """Draft and final artifact kinds of a stage."""
    draft: str
    final: str


STAGE_KINDS: Dict[Stage, StageKinds] = {
    Stage.CONTEXT: StageKinds("context_draft", "context_confirmed"),
    Stage.PRODUCTIVITY: StageKinds("productivity_wizard_state", "productivity_report"),
    Stage.FODA: StageKinds("foda_wizard_state", "foda_analysis"),
    Stage.BRAINSTORM: StageKinds("brainstorm_wizard_state", "brainstorm_ideas"),
    Stage.ISHIKAWA: StageKinds("ishikawa_wizard_state", "ishikawa_final"),
    Stage.PARETO: StageKinds("pareto_wizard_state", "pareto_final"),
    Stage.OBJECTIVES: StageKinds("objectives_wizard_state", "objectives_final"),
}

ArtifactKey = Tuple[str, int, str, str]


@dataclass
class StageArtifact:
    """A persisted stage document, unique per (owner, stage, kind, period_key)."""
    owner: str
    stage: Stage
    kind: str
    period_key: str
    payload: Dict[str, Any] = field(default_factory=dict)
    status: ArtifactStatus = ArtifactStatus.DRAFT
    score: Optional[Dict[str, Any]] = None
    conversation_ref: Optional[str] = None
    version: int = 1
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def __post_init__(self):
        now = datetime.now().isoformat()
        if self.created_at is None:
            self.created_at = now
        if self.updated_at is None:
            self.updated_at = now

    @property
    def key(self) -> ArtifactKey:
        return (self.owner, int(self.stage), self.kind, self.period_key)

    @property
    def is_validated(self) -> bool:
        return self.status == ArtifactStatus.VALIDATED


@dataclass
class EvaluationRecord:
    """Rubric result stored next to a final artifact."""
    owner: str
    stage: Stage
    artifact_kind: str
    period_key: str
    version: int
    total_score: float
    total_label: str
    rubric: Dict[str, Any] = field(default_factory=dict)
    result: Dict[str, Any] = field(default_factory=dict)
    conversation_ref: Optional[str] = None
    created_at: Optional[str] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = datetime.now().isoformat()


@dataclass
class ValidationResult:
    """Outcome of a stage validation, shaped for the conversation layer."""
    valid: bool
    message: str
    code: Optional[str] = None
    current: Optional[int] = None
    required: Optional[int] = None
    detail: Dict[str, Any] = field(default_factory=dict)
    final: Optional[Dict[str, Any]] = None
    score: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"valid": self.valid, "message": self.message}
        if self.code:
            data["code"] = self.code
        if self.current is not None:
            data["current"] = self.current
        if self.required is not None:
            data["required"] = self.required
        if self.detail:
            data["detail"] = self.detail
        if self.final is not None:
            data["final"] = self.final
        if self.score is not None:
            data["score"] = self.score
        return data


@dataclass
class TurnResult:
    """What a conversational turn hands back to the caller."""
    assistant_message: str
    next_state: Dict[str, Any]
    action: Optional[str] = None
    control_signal: ControlSignal = ControlSignal.NEEDS_CLARIFICATION
    held_back: List[Dict[str, Any]] = field(default_factory=list)
    persisted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assistantMessage": self.assistant_message,
            "updates": {"nextState": self.next_state, "action": self.action},
            "controlSignal": self.control_signal.value,
            "heldBack": self.held_back,
            "persisted": self.persisted,
        }
