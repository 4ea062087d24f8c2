"""
Parsing and repair of free-form model output.

parse_analysis() is total: any anomaly yields None, which callers answer
with fallback_result(). Repair rules:
- suggestion type coerced to safe/balanced/bold (default balanced)
- text, reason, proTip and mood: control characters stripped, trimmed,
  capped at 1000 characters
- at most one suggestion per type; missing types are synthesized from the
  first surviving suggestion (safe at the front, balanced/bold appended)
- interestLevel on a 1-10 scale is multiplied by 10, then clamped to 0-100
"""
import json
import math
import re
from typing import Any, Dict, List, Optional

from replyengine.services.ai.schema import (
    AnalysisResult,
    RequestType,
    Suggestion,
    SuggestionType,
)

MAX_TEXT_LENGTH = 1000
SUBSTANTIVE_TEXT_LENGTH = 15

# C0 controls except tab and newline, plus DEL and C1 controls.
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f-\x9f]")

_VALID_TYPES = {t.value: t for t in SuggestionType}


def extract_json_object(text: str) -> Optional[str]:
    """
    Return the first balanced {...} substring of text.

    Braces inside JSON string literals are ignored. Returns None when there is
    no opening brace or the first object never closes.
    """
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def sanitize_text(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    cleaned = _CONTROL_CHARS.sub("", value).strip()
    return cleaned[:MAX_TEXT_LENGTH].rstrip()


def coerce_type(value: Any) -> SuggestionType:
    if isinstance(value, str):
        return _VALID_TYPES.get(value.strip().lower(), SuggestionType.BALANCED)
    return SuggestionType.BALANCED


def normalize_interest_level(value: Any) -> Optional[int]:
    # bool is an int subclass but never a score
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if value <= 10:
        value = value * 10
    if value < 0:
        return 0
    if value > 100:
        return 100
    return int(round(value))


def repair_suggestions(suggestions: List[Suggestion]) -> List[Suggestion]:
    """Ensure exactly one suggestion of each type."""
    template = suggestions[0]
    seen = set()
    kept: List[Suggestion] = []
    for suggestion in suggestions:
        if suggestion.type in seen:
            continue
        seen.add(suggestion.type)
        kept.append(suggestion)

    if SuggestionType.SAFE not in seen:
        kept.insert(
            0,
            Suggestion(type=SuggestionType.SAFE, text=template.text, reason=template.reason),
        )
    for missing in (SuggestionType.BALANCED, SuggestionType.BOLD):
        if missing not in seen:
            kept.append(Suggestion(type=missing, text=template.text, reason=template.reason))
    return kept[:3]


def parse_analysis(text: Any) -> Optional[AnalysisResult]:
    """
    Extract a normalized AnalysisResult from raw model text.

    Returns:
        The repaired result, or None if the text holds no usable suggestions
    """
    if not isinstance(text, str):
        return None

    candidate = extract_json_object(text)
    if candidate is None:
        return None

    try:
        data = json.loads(candidate)
    except (ValueError, RecursionError):
        return None
    if not isinstance(data, dict):
        return None

    raw_suggestions = data.get("suggestions")
    if not isinstance(raw_suggestions, list):
        return None

    survivors: List[Suggestion] = []
    for raw in raw_suggestions:
        if not isinstance(raw, dict):
            continue
        suggestion_text = sanitize_text(raw.get("text"))
        if not suggestion_text:
            continue
        survivors.append(
            Suggestion(
                type=coerce_type(raw.get("type")),
                text=suggestion_text,
                reason=sanitize_text(raw.get("reason")),
            )
        )
    if not survivors:
        return None

    mood = sanitize_text(data.get("mood"))
    return AnalysisResult(
        suggestions=repair_suggestions(survivors),
        pro_tip=sanitize_text(data.get("proTip")),
        interest_level=normalize_interest_level(data.get("interestLevel")),
        mood=mood or None,
    )


_FALLBACK_TIPS: Dict[RequestType, str] = {
    RequestType.SCREENSHOT_ANALYSIS: "Try a clearer screenshot that shows the latest messages",
    RequestType.CONVERSATION_STARTER: "Open with something specific from their profile",
}
_DEFAULT_FALLBACK_TIP = "Try adding more context about the conversation"


def fallback_result(request_type: RequestType) -> AnalysisResult:
    """Canned result used when the model output cannot be parsed."""
    return AnalysisResult(
        suggestions=[
            Suggestion(
                type=SuggestionType.SAFE,
                text="Haha that's great, tell me more!",
                reason="Keeps the conversation going with low pressure",
            ),
            Suggestion(
                type=SuggestionType.BALANCED,
                text="Okay now I'm curious, what happened next?",
                reason="Shows interest and invites a longer reply",
            ),
            Suggestion(
                type=SuggestionType.BOLD,
                text="You're fun to talk to. We should continue this over coffee",
                reason="Moves things toward meeting in person",
            ),
        ],
        pro_tip=_FALLBACK_TIPS.get(RequestType(request_type), _DEFAULT_FALLBACK_TIP),
    )


def score_response_quality(result: AnalysisResult) -> int:
    """
    Heuristic 0-100 quality score for a parsed result.

    Weights: suggestion count 30, type coverage 15, reasons 15,
    substantive text 15, pro tip 10, interest level 8, mood 7.
    """
    suggestions = result.suggestions[:3]
    score = 10 * len(suggestions)
    score += 5 * len({s.type for s in suggestions})
    score += 5 * sum(1 for s in suggestions if s.reason.strip())
    score += 5 * sum(1 for s in suggestions if len(s.text.strip()) >= SUBSTANTIVE_TEXT_LENGTH)
    if result.pro_tip.strip():
        score += 10
    if result.interest_level is not None:
        score += 8
    if result.mood:
        score += 7
    return min(100, score)
