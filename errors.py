# errors.py
from typing import Any, Dict, Optional


class ChatProxyError(Exception):
    """Base error carrying the HTTP status it should surface as."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message}


class MalformedRequest(ChatProxyError):
    status_code = 400


class MissingApiKey(ChatProxyError):
    status_code = 500

    def __init__(self, message: str = "Ollama API key not configured"):
        super().__init__(message)


_FRIENDLY = {
    401: "Invalid API key. Check OLLAMA_API_KEY.",
    403: "The API key is not entitled to use this model.",
    502: "Model is unavailable or failing upstream. Make sure the cloud model exists.",
}


class UpstreamError(ChatProxyError):
    """Non-success status from the model host. Never retried automatically."""

    def __init__(self, status_code: int, body: str = "", model: Optional[str] = None):
        self.body = body
        self.model = model
        if status_code == 404 and model:
            message = f'Model "{model}" not found. Use a valid cloud model.'
        else:
            message = _FRIENDLY.get(status_code) or f"Ollama API error: {status_code}"
        super().__init__(message, status_code=status_code)

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        if self.body:
            out["details"] = self.body
        return out


class UpstreamUnavailable(ChatProxyError):
    """Transport-level failure talking to the model host."""

    status_code = 502


class UpstreamStreamError(ChatProxyError):
    """The model host reported an error in the middle of a stream."""

    status_code = 502
