"""
OPT-IA exception hierarchy.

- OptiaError: base class for every known error
- InputShapeError: malformed request payload, rejected before touching state
- OracleError: oracle output failed schema validation
- LineageError: upstream stage has no validated artifact
- ThresholdError: stage content below required minimums
- StorageError: artifact store read/write failure
- ConfigError: configuration file errors
- LLMError: model call errors (connection, auth, timeout, rate limit)
"""
from typing import Any, Dict, Optional


class OptiaError(Exception):
    """Base class for all expected OPT-IA errors."""

    def __init__(self, message: str, hint: Optional[str] = None):
        """
        Args:
            message: error description
            hint: actionable suggestion for the user
        """
        super().__init__(message)
        self.message = message
        self.hint = hint

    def get_user_message(self) -> str:
        """Return a user-facing error message."""
        if self.hint:
            return f"{self.message}\nHint: {self.hint}"
        return self.message


class InputShapeError(OptiaError):
    """Malformed request payload."""

    def __init__(self, message: str, field: Optional[str] = None):
        hint = f"Check the '{field}' field of the request" if field else None
        super().__init__(message, hint)
        self.field = field


class OracleError(OptiaError):
    """The oracle produced output that failed schema validation.

    Recoverable: the conversation continues with a clarification request.
    """

    def __init__(self, message: str, raw: Optional[str] = None):
        super().__init__(message, hint=None)
        self.raw = raw


class StageRuleError(OptiaError):
    """Base for validation failures the student can act on."""

    code = "STAGE_RULE"

    def __init__(
        self,
        message: str,
        current: Optional[int] = None,
        required: Optional[int] = None,
        detail: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message, hint=None)
        if code:
            self.code = code
        self.current = current
        self.required = required
        self.detail = detail or {}


class LineageError(StageRuleError):
    """An operation on stage N needs a validated stage N-1 artifact."""

    code = "UPSTREAM_NOT_FINALIZED"


class ThresholdError(StageRuleError):
    """Stage content is below the configured minimums."""

    code = "BELOW_MINIMUM"


class StorageError(OptiaError):
    """Artifact store failure; fatal for the current request."""

    def __init__(self, message: str, path: Optional[str] = None):
        hint = f"Check the artifact store at {path}" if path else None
        super().__init__(message, hint)
        self.path = path


class ConfigError(OptiaError):
    """Configuration file is missing, malformed or invalid."""

    def __init__(self, message: str, config_path: Optional[str] = None):
        hint = f"Check the configuration file: {config_path}" if config_path else "Check the configuration format"
        super().__init__(message, hint)
        self.config_path = config_path


class LLMError(OptiaError):
    """Base class for model call failures, carrying the call context."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
        endpoint: Optional[str] = None
    ):
        self.provider = provider or "unknown"
        self.model_name = model_name or "unknown"
        self.endpoint = endpoint

        context = f"[{self.provider}/{self.model_name}]"
        full_message = f"{context} {message}"

        super().__init__(full_message)

    def get_user_message(self) -> str:
        base = f"Model call failed ({self.provider}/{self.model_name}): {self.message}"
        if self.hint:
            return f"{base}\nHint: {self.hint}"
        return base


class LLMConnectionError(LLMError):
    """Cannot reach the LLM service."""

    def __init__(
        self,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
        endpoint: Optional[str] = None
    ):
        super().__init__("Cannot connect to the model service", provider, model_name, endpoint)

        if provider == "ollama":
            self.hint = "Make sure Ollama is running (ollama serve)"
        elif provider in ("openai", "gemini"):
            self.hint = "Check the network connection or the API endpoint"
        else:
            self.hint = "Check that the model service is running"


class LLMAuthError(LLMError):
    """LLM authentication failed."""

    def __init__(
        self,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
        endpoint: Optional[str] = None
    ):
        super().__init__("Model authentication failed", provider, model_name, endpoint)
        self.hint = "Check that the API key is configured"


class LLMTimeoutError(LLMError):
    """LLM call timed out."""

    def __init__(
        self,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
        endpoint: Optional[str] = None,
        timeout_seconds: Optional[float] = None
    ):
        message = "Model call timed out"
        if timeout_seconds:
            message = f"Model call timed out ({timeout_seconds}s)"
        super().__init__(message, provider, model_name, endpoint)
        self.timeout_seconds = timeout_seconds
        self.hint = "The network or the model may be slow, try again later"


class LLMRateLimitError(LLMError):
    """LLM request rate limited."""

    def __init__(
        self,
        provider: Optional[str] = None,
        model_name: Optional[str] = None,
        endpoint: Optional[str] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__("Request rate limit exceeded", provider, model_name, endpoint)
        self.retry_after = retry_after
        if retry_after:
            self.hint = f"Retry in {retry_after} seconds"
        else:
            self.hint = "Try again later"
