"""
AI request orchestration services package.

Turns a logical "suggest replies" or "analyze screenshot" request into a
reliable chat-completion call:

- Cache, queue, rate-limit, retry and cancel around every call
- Route through the first-party proxy or directly with the caller's key
- Repair model output into a normalized AnalysisResult

Entry point: RequestOrchestrator (see orchestration.py).
"""
from .orchestration import RequestOrchestrator, get_orchestrator
from .schema import AnalysisResult, AuthMode, RequestDescriptor, RequestType

__all__ = [
    "RequestOrchestrator",
    "get_orchestrator",
    "AnalysisResult",
    "AuthMode",
    "RequestDescriptor",
    "RequestType",
]
