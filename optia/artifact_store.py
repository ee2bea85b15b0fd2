"""
StageArtifactStore: stage drafts, validated finals and evaluation records,
persisted as one JSON document.

Path: <data_dir>/stage_artifacts.json (OPTIA_DATA_DIR overrides the data dir).

Every public call re-reads the document and every mutation writes a complete
new document through a temp file + os.replace, so a failed write leaves both
the file and the caller's view untouched.
"""
import json
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from optia.exceptions import InputShapeError, StorageError
from optia.logger import get_logger
from optia.models import (
    ArtifactKey,
    ArtifactStatus,
    EvaluationRecord,
    STAGE_KINDS,
    Stage,
    StageArtifact,
)
from optia.paths import get_artifacts_path
from optia.tree_merge import merge_cause_tree

logger = get_logger("artifact_store")

# Process-local; keeps read-modify-write cycles on the document consistent.
_write_lock = threading.Lock()


def current_period_key(now: Optional[datetime] = None) -> str:
    """Period key of a timestamp: "YYYY-MM"."""
    return (now or datetime.now()).strftime("%Y-%m")


def _artifact_to_dict(a: StageArtifact) -> dict:
    return {
        "owner": a.owner,
        "stage": int(a.stage),
        "kind": a.kind,
        "period_key": a.period_key,
        "status": a.status.value,
        "payload": a.payload,
        "score": a.score,
        "conversation_ref": a.conversation_ref,
        "version": a.version,
        "created_at": a.created_at,
        "updated_at": a.updated_at,
    }


def _dict_to_artifact(d: dict) -> StageArtifact:
    return StageArtifact(
        owner=d["owner"],
        stage=Stage(d["stage"]),
        kind=d["kind"],
        period_key=d["period_key"],
        payload=d.get("payload") or {},
        status=ArtifactStatus(d.get("status", "draft")),
        score=d.get("score"),
        conversation_ref=d.get("conversation_ref"),
        version=d.get("version", 1),
        created_at=d.get("created_at"),
        updated_at=d.get("updated_at"),
    )


def _evaluation_to_dict(e: EvaluationRecord) -> dict:
    return {
        "owner": e.owner,
        "stage": int(e.stage),
        "artifact_kind": e.artifact_kind,
        "period_key": e.period_key,
        "version": e.version,
        "total_score": e.total_score,
        "total_label": e.total_label,
        "rubric": e.rubric,
        "result": e.result,
        "conversation_ref": e.conversation_ref,
        "created_at": e.created_at,
    }


def _dict_to_evaluation(d: dict) -> EvaluationRecord:
    return EvaluationRecord(
        owner=d["owner"],
        stage=Stage(d["stage"]),
        artifact_kind=d["artifact_kind"],
        period_key=d["period_key"],
        version=d.get("version", 1),
        total_score=d.get("total_score", 0),
        total_label=d.get("total_label", ""),
        rubric=d.get("rubric") or {},
        result=d.get("result") or {},
        conversation_ref=d.get("conversation_ref"),
        created_at=d.get("created_at"),
    )


def merges_on_write(stage: Stage, kind: str) -> bool:
    """Cause-tree drafts merge into the stored payload; everything else is replaced."""
    return stage == Stage.ISHIKAWA and kind == STAGE_KINDS[Stage.ISHIKAWA].draft


class _Document:
    """Parsed store document: artifacts by key plus the evaluation log."""

    def __init__(self, artifacts: Dict[ArtifactKey, StageArtifact], evaluations: List[EvaluationRecord]):
        self.artifacts = artifacts
        self.evaluations = evaluations


class StageArtifactStore:
    """Artifacts keyed by (owner, stage, kind, period_key), persisted at `path`."""

    def __init__(self, path: Optional[Path] = None):
        self.path = path if path is not None else get_artifacts_path()

    # --- persistence ---

    def _read(self) -> _Document:
        if not self.path.exists():
            return _Document({}, [])
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            artifacts = {}
            for raw in data.get("artifacts", []):
                artifact = _dict_to_artifact(raw)
                artifacts[artifact.key] = artifact
            evaluations = [_dict_to_evaluation(raw) for raw in data.get("evaluations", [])]
        except (json.JSONDecodeError, OSError, KeyError, ValueError, TypeError, AttributeError) as exc:
            raise StorageError(f"Cannot read artifact store: {exc}", str(self.path))
        return _Document(artifacts, evaluations)

    def _write(self, doc: _Document) -> None:
        payload = {
            "artifacts": [_artifact_to_dict(a) for a in doc.artifacts.values()],
            "evaluations": [_evaluation_to_dict(e) for e in doc.evaluations],
        }
        try:
            text = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Artifact payload is not serializable: {exc}", str(self.path))

        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=".stage_artifacts.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise StorageError(f"Cannot write artifact store: {exc}", str(self.path))

    # --- reads ---

    def get(self, owner: str, stage: Stage, kind: str, period_key: str) -> Optional[StageArtifact]:
        return self._read().artifacts.get((owner, int(stage), kind, period_key))

    def latest_across_periods(self, owner: str, stage: Stage, kind: str) -> Optional[StageArtifact]:
        """Most recently updated artifact for (owner, stage, kind), ignoring the period."""
        candidates = [
            a for a in self._read().artifacts.values()
            if a.owner == owner and a.stage == stage and a.kind == kind
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda a: (a.updated_at or "", a.version))

    def resolve(
        self,
        owner: str,
        stage: Stage,
        kind: str,
        period_key: Optional[str] = None,
        conversation_ref: Optional[str] = None,
    ) -> Optional[StageArtifact]:
        """
        Artifact for the current work: exact key first, then the most recent one
        of any period, so in-progress work survives a period or conversation change.
        """
        period_key = period_key or current_period_key()
        exact = self.get(owner, stage, kind, period_key)
        if exact is not None:
            return exact

        latest = self.latest_across_periods(owner, stage, kind)
        if latest is not None:
            logger.info(
                "Resolved %s for %s from period %s (requested %s, conversation %s)",
                kind, owner, latest.period_key, period_key, conversation_ref,
            )
        return latest

    def list_artifacts(self, owner: str, period_key: Optional[str] = None) -> List[StageArtifact]:
        artifacts = [
            a for a in self._read().artifacts.values()
            if a.owner == owner and (period_key is None or a.period_key == period_key)
        ]
        return sorted(artifacts, key=lambda a: (int(a.stage), a.kind, a.period_key))

    def evaluations(
        self, owner: str, stage: Optional[Stage] = None, period_key: Optional[str] = None
    ) -> List[EvaluationRecord]:
        return [
            e for e in self._read().evaluations
            if e.owner == owner
            and (stage is None or e.stage == stage)
            and (period_key is None or e.period_key == period_key)
        ]

    # --- writes ---

    @staticmethod
    def _upsert(
        doc: _Document,
        owner: str,
        stage: Stage,
        kind: str,
        period_key: str,
        payload: Dict[str, Any],
        status: ArtifactStatus,
        conversation_ref: Optional[str],
        score: Optional[Dict[str, Any]],
    ) -> StageArtifact:
        key = (owner, int(stage), kind, period_key)
        now = datetime.now().isoformat()
        existing = doc.artifacts.get(key)

        if existing is None:
            artifact = StageArtifact(
                owner=owner,
                stage=stage,
                kind=kind,
                period_key=period_key,
                payload=payload,
                status=status,
                score=score,
                conversation_ref=conversation_ref,
                created_at=now,
                updated_at=now,
            )
        else:
            if merges_on_write(stage, kind):
                payload = merge_cause_tree(existing.payload, payload)
            artifact = StageArtifact(
                owner=owner,
                stage=stage,
                kind=kind,
                period_key=period_key,
                payload=payload,
                status=status,
                score=score if score is not None else existing.score,
                conversation_ref=conversation_ref or existing.conversation_ref,
                version=existing.version + 1,
                created_at=existing.created_at,
                updated_at=now,
            )

        doc.artifacts[key] = artifact
        return artifact

    def put(
        self,
        owner: str,
        stage: Stage,
        kind: str,
        period_key: str,
        payload: Dict[str, Any],
        status: ArtifactStatus = ArtifactStatus.DRAFT,
        conversation_ref: Optional[str] = None,
        score: Optional[Dict[str, Any]] = None,
    ) -> StageArtifact:
        """Create or update the artifact at the composite key."""
        if not owner:
            raise InputShapeError("Owner is required", field="owner")
        if not isinstance(payload, dict):
            raise InputShapeError("Artifact payload must be an object", field="state")

        with _write_lock:
            doc = self._read()
            artifact = self._upsert(doc, owner, stage, kind, period_key, payload, status, conversation_ref, score)
            self._write(doc)

        logger.info("Saved %s v%d for %s (%s)", kind, artifact.version, owner, period_key)
        return artifact

    def commit_final(
        self,
        owner: str,
        stage: Stage,
        period_key: str,
        payload: Dict[str, Any],
        score: Dict[str, Any],
        evaluation: EvaluationRecord,
        conversation_ref: Optional[str] = None,
        draft_key: Optional[ArtifactKey] = None,
    ) -> StageArtifact:
        """
        Write a validated final, its evaluation record and the draft status change
        in a single document write. Nothing is written if any part fails.
        """
        kind = STAGE_KINDS[stage].final
        with _write_lock:
            doc = self._read()
            final = self._upsert(
                doc, owner, stage, kind, period_key, payload,
                ArtifactStatus.VALIDATED, conversation_ref, score,
            )
            evaluation.version = final.version
            doc.evaluations.append(evaluation)

            if draft_key is not None and draft_key in doc.artifacts:
                draft = doc.artifacts[draft_key]
                draft.status = ArtifactStatus.VALIDATED
                draft.updated_at = datetime.now().isoformat()

            self._write(doc)

        logger.info("Committed %s v%d for %s (%s)", kind, final.version, owner, period_key)
        return final

    def delete(self, owner: str, stage: Stage, kind: str, period_key: str) -> bool:
        key = (owner, int(stage), kind, period_key)
        with _write_lock:
            doc = self._read()
            if key not in doc.artifacts:
                return False
            del doc.artifacts[key]
            self._write(doc)
        logger.info("Deleted %s for %s (%s)", kind, owner, period_key)
        return True


_store: Optional[StageArtifactStore] = None


def get_store() -> StageArtifactStore:
    """Shared store bound to the current data directory."""
    global _store
    path = get_artifacts_path()
    if _store is None or _store.path != path:
        _store = StageArtifactStore(path)
    return _store

