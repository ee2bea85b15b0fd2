"""
Centralized filesystem paths for runtime data.
"""
import os
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent

def get_data_dir() -> Path:
    """
    Return runtime data directory.

    Priority:
    1. OPTIA_DATA_DIR env var
    2. <project_root>/data
    """
    raw = os.getenv("OPTIA_DATA_DIR", "").strip()
    if raw:
        return Path(raw).expanduser()
    return PROJECT_ROOT / "data"


def get_artifacts_path() -> Path:
    """Artifact store document, resolved at call time so OPTIA_DATA_DIR can change."""
    return get_data_dir() / "stage_artifacts.json"
