"""
Shape Claude's analysis must have before anything downstream (storage, API) sees it.
"""
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class _Loose(BaseModel):
    # Claude sometimes adds fields; keep them, validate the ones we rely on
    model_config = ConfigDict(extra="allow")


class AttributionDimensions(_Loose):
    locus: Optional[str] = None
    stability: Optional[str] = None
    controllability: Optional[str] = None


class AttributionDetail(_Loose):
    has_attribution: bool = False
    attribution_statement: Optional[str] = None
    dimensions: Optional[AttributionDimensions] = None
    attribution_quality_score: Optional[float] = Field(default=None, ge=1, le=10)
    attribution_explanation: Optional[str] = None


class PsychologicalPattern(_Loose):
    type: str
    helpfulness_score: Optional[float] = Field(default=None, ge=1, le=10)
    explanation: Optional[str] = None
    intensity: Optional[str] = None


class Segment(_Loose):
    segment_id: Optional[int] = None
    quote: str
    timestamp: Optional[Union[str, float]] = None
    situation: Optional[str] = None
    helpfulness_score: float = Field(ge=1, le=10)
    psychological_patterns: list[PsychologicalPattern] = []
    attribution_analysis: Optional[AttributionDetail] = None
    focus_direction: Optional[str] = None


class AnalysisSummary(_Loose):
    total_segments: int = 0
    helpful_thought_ratio: str = "0%"
    average_intensity: Optional[str] = None
    focus_direction_ratio: Optional[str] = None
    attribution_count: int = 0
    average_attribution_quality: Optional[float] = None
    pattern_distribution: dict[str, int] = {}
    key_insights: list[str] = []
    dominant_patterns: list[str] = []


class AttributionResult(_Loose):
    segments: list[Segment]
    analysis_summary: AnalysisSummary


class ReframeScore(_Loose):
    # Scores are clamped afterwards rather than rejected
    helpfulness_score: float
    attribution_analysis: Optional[dict] = None
    feedback: str = ""
    improvements: list[str] = []


def validation_message(error: ValidationError, limit: int = 3) -> str:
    """First few problems as 'segments.0.quote: Field required'."""
    parts = []
    for item in error.errors()[:limit]:
        loc = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{loc}: {item.get('msg')}")
    more = len(error.errors()) - limit
    if more > 0:
        parts.append(f"(+{more} more)")
    return "; ".join(parts)
