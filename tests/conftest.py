import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path, monkeypatch):
    """Every test gets its own artifact store and log directory."""
    import optia.logger as logger_module

    data_dir = tmp_path / "data"
    monkeypatch.setenv("OPTIA_DATA_DIR", str(data_dir))
    monkeypatch.setattr(logger_module, "LOGS_DIR", tmp_path / "logs")
    return data_dir


class ScriptedLLM:
    """LLM stand-in that returns queued replies; a queued exception is raised instead."""

    provider = "scripted"
    offline = False

    def __init__(self, replies):
        self.replies = list(replies)
        self.prompts = []

    def generate(self, prompt, system_prompt=None, temperature=0.7, max_tokens=1000):
        from optia.llm_adapter import LLMResponse

        self.prompts.append(prompt)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return LLMResponse(content=reply, model="scripted")

    def get_model_name(self):
        return "scripted"


@pytest.fixture
def scripted_llm():
    return ScriptedLLM
