"""
Exception hierarchy shared by the tree engine, providers and video assembly.
"""
from typing import Any, Dict, Optional


class ShortsTreeError(Exception):
    """Base exception for all shorts-tree errors."""

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(ShortsTreeError):
    """Malformed tree template. Raised before any provider call."""

    def __init__(self, message: str, node_id: Optional[str] = None, field: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if node_id:
            details["node_id"] = node_id
        if field:
            details["field"] = field
        super().__init__(message, details=details, **kwargs)


class ProviderError(ShortsTreeError):
    """A generation call failed (transport error or non-success response)."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if provider:
            details["provider"] = provider
        if status_code:
            details["status_code"] = status_code
        if response_body:
            details["response_body"] = response_body[:500]
        super().__init__(message, details=details, **kwargs)
        self.provider = provider
        self.status_code = status_code


class CompositionError(ShortsTreeError):
    """Clip synthesis or concatenation failed; fatal to video assembly only."""

    def __init__(self, message: str, stage: Optional[str] = None, scene_index: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        if stage:
            details["stage"] = stage
        if scene_index is not None:
            details["scene_index"] = scene_index
        super().__init__(message, details=details, **kwargs)


class StateTransitionError(ShortsTreeError):
    """Illegal node status change, or an execution started twice."""


class ExpansionError(ShortsTreeError):
    """A root that was already expanded was asked to expand again."""


class ExecutionNotFoundError(ShortsTreeError):
    def __init__(self, execution_id: str):
        super().__init__(f"Execution {execution_id} not found", details={"execution_id": execution_id})
        self.execution_id = execution_id
