import json
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

from optia.logger import get_logger

# Prompt template directory
PROMPTS_DIR = Path(__file__).parent.parent / "config" / "prompts"

logger = get_logger("utils")


def load_prompt(name: str, variables: Optional[Dict[str, Any]] = None) -> str:
    """
    Load a prompt template, with sub-directory support and variable injection.

    Args:
        name: prompt name, sub-directories allowed (e.g. "shared/contract")
        variables: values for the {var} placeholders

    Returns:
        The rendered prompt, or "" when the template does not exist.

    Example:
        load_prompt("foda", {"state": "...", "history": "..."})
    """
    prompt_path = PROMPTS_DIR / f"{name.replace('/', os.sep)}.md"

    if not prompt_path.exists():
        logger.warning("Prompt '%s' not found at %s", name, prompt_path)
        return ""

    template = prompt_path.read_text(encoding="utf-8")

    if variables:
        for key, value in variables.items():
            template = template.replace(f"{{{key}}}", str(value))

    return template


_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_llm_json(content: str) -> Optional[Dict[str, Any]]:
    """
    Parse JSON returned by an LLM.

    LLMs often wrap JSON in markdown fences or surround it with prose; this
    strips fences, tries a direct parse, then falls back to the outermost
    {...} block.

    Args:
        content: raw LLM output

    Returns:
        The parsed object, or None when nothing parses to a JSON object.

    Example:
        >>> parse_llm_json('```json\\n{"key": "value"}\\n```')
        {'key': 'value'}
    """
    if not content:
        return None

    cleaned = _FENCE_RE.sub("", content.strip()).strip()

    try:
        parsed = json.loads(cleaned)
        return parsed if isinstance(parsed, dict) else None
    except json.JSONDecodeError:
        pass

    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start >= 0 and end > start:
        try:
            parsed = json.loads(cleaned[start:end + 1])
            return parsed if isinstance(parsed, dict) else None
        except json.JSONDecodeError:
            return None

    return None


def clean_text(value: Any) -> str:
    """Coerce a loose value to a stripped string ("" for None)."""
    if value is None:
        return ""
    return str(value).strip()
