"""
Pydantic models for the request orchestration core.

Wire-facing models (AnalysisResult, ProxySession, ProxyUsage, QuotaInfo)
accept and emit the camelCase field names used by the mobile client and
the proxy service; Python code uses snake_case attributes.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RequestType(str, Enum):
    FLIRT_RESPONSE = "flirt-response"
    SCREENSHOT_ANALYSIS = "screenshot-analysis"
    CONVERSATION_STARTER = "conversation-starter"
    DATE_IDEA = "date-idea"
    INTEREST_ANALYSIS = "interest-analysis"
    RED_FLAG_CHECK = "red-flag-check"
    RESPONSE_TIMING = "response-timing"


class AuthMode(str, Enum):
    PROXY = "proxy"
    DIRECT = "direct"


class SuggestionType(str, Enum):
    SAFE = "safe"
    BALANCED = "balanced"
    BOLD = "bold"


SUGGESTION_ORDER: Tuple[SuggestionType, ...] = (
    SuggestionType.SAFE,
    SuggestionType.BALANCED,
    SuggestionType.BOLD,
)


class ChatMessage(BaseModel):
    """A single chat message; content is text or a list of text/image parts."""

    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: Union[str, List[Dict[str, Any]]]

    def has_image(self) -> bool:
        if isinstance(self.content, str):
            return False
        return any(part.get("type") == "image_url" for part in self.content)


class RequestDescriptor(BaseModel):
    """
    Immutable description of one logical LLM request.

    cache_key_params holds the logical inputs (culture, message, context...)
    from which the cache and offline-queue identity is derived. api_key is
    only used in direct mode and is excluded from serialization so it never
    lands in the offline queue or logs.
    """

    model_config = ConfigDict(frozen=True)

    request_type: RequestType
    model_name: str
    messages: Tuple[ChatMessage, ...]
    temperature: float = Field(default=0.8, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1000, gt=0)
    cache_key_params: Dict[str, Any] = Field(default_factory=dict)
    auth_mode: AuthMode = AuthMode.PROXY
    api_key: Optional[str] = Field(default=None, exclude=True, repr=False)

    @field_validator("messages")
    @classmethod
    def validate_messages(cls, value: Tuple[ChatMessage, ...]) -> Tuple[ChatMessage, ...]:
        if not value:
            raise ValueError("messages must not be empty")
        return value

    @property
    def is_image_request(self) -> bool:
        return self.request_type == RequestType.SCREENSHOT_ANALYSIS or any(
            m.has_image() for m in self.messages
        )

    def to_wire(self) -> Dict[str, Any]:
        """Chat-completion request body shared by direct and proxy modes."""
        return {
            "model": self.model_name,
            "messages": [m.model_dump() for m in self.messages],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }


class Suggestion(BaseModel):
    type: SuggestionType
    text: str
    reason: str = ""


class AnalysisResult(BaseModel):
    """Normalized model output returned to callers."""

    model_config = ConfigDict(populate_by_name=True)

    suggestions: List[Suggestion]
    pro_tip: str = Field(default="", alias="proTip")
    interest_level: Optional[int] = Field(default=None, alias="interestLevel", ge=0, le=100)
    mood: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class QuotaInfo(BaseModel):
    """Quota metadata the proxy attaches to chat responses."""

    model_config = ConfigDict(populate_by_name=True)

    tier: str
    used_today: int = Field(default=0, alias="usedToday")
    daily_limit: Optional[int] = Field(default=None, alias="dailyLimit")
    remaining_today: Optional[int] = Field(default=None, alias="remainingToday")


class CompletionResult(BaseModel):
    """Provider-agnostic completion: the same shape whichever auth mode served it."""

    content: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: str
    auth_mode: AuthMode
    quota: Optional[QuotaInfo] = None


class ProxySession(BaseModel):
    """Long-lived proxy credential obtained from /auth/register."""

    model_config = ConfigDict(populate_by_name=True)

    token: str = Field(repr=False)
    user_id: str = Field(alias="userId")
    tier: str = "free"
    daily_limit: Optional[int] = Field(default=None, alias="dailyLimit")


class ProxyUsage(BaseModel):
    """Server-reported quota from GET /usage."""

    model_config = ConfigDict(populate_by_name=True)

    tier: str
    daily_limit: Optional[int] = Field(default=None, alias="dailyLimit")
    used_today: int = Field(default=0, alias="usedToday")
    remaining_today: Optional[int] = Field(default=None, alias="remainingToday")
    resets_at: Optional[str] = Field(default=None, alias="resetsAt")


class UsageRecord(BaseModel):
    """One accounting entry; never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    estimated_cost: float
    request_type: RequestType


class UsageSummary(BaseModel):
    tokens: int = 0
    cost: float = 0.0
    request_count: int = 0


class QueuedRequest(BaseModel):
    """A request parked while offline, replayed by the orchestrator."""

    id: str
    request_type: RequestType
    params: Dict[str, Any]
    enqueued_at: datetime
    retry_count: int = 0
    preview: str = ""


class QueueStats(BaseModel):
    pending: int
    oldest: Optional[datetime] = None
    types: Dict[str, int] = Field(default_factory=dict)


class ReplayReport(BaseModel):
    processed: int = 0
    failed: int = 0
    remaining: int = 0


@dataclass(frozen=True)
class ModelInfo:
    """Catalogue entry for a supported chat model."""
    name: str
    max_tokens: int
    cost_per_1k_tokens: float
    best_for: Tuple[str, ...]


MODELS: Dict[str, ModelInfo] = {
    "gpt-4o-mini": ModelInfo(
        name="gpt-4o-mini",
        max_tokens=16384,
        cost_per_1k_tokens=0.00015,
        best_for=("quick replies", "conversation starters", "text analysis"),
    ),
    "gpt-4o": ModelInfo(
        name="gpt-4o",
        max_tokens=4096,
        cost_per_1k_tokens=0.005,
        best_for=("image analysis", "nuanced replies"),
    ),
    "gpt-4-turbo": ModelInfo(
        name="gpt-4-turbo",
        max_tokens=4096,
        cost_per_1k_tokens=0.01,
        best_for=("complex reasoning", "long conversations"),
    ),
}
