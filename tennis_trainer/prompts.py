"""
Claude prompts for segment-by-segment attribution analysis and reframe scoring.

The JSON skeletons here are the contract checked in schemas.py: change both together.
"""

PATTERN_TYPES = [
    "positive_reinforcement",
    "self_criticism",
    "tactical_focus",
    "emotional_regulation",
    "forward_focus",
    "backward_focus",
    "energy_management",
    "pattern_recognition",
]

SCORING_CRITERIA = """HELPFULNESS SCORE (1-10):
- 8-10: Builds confidence, motivates, solution-focused
- 5-7: Neutral impact, mixed elements
- 1-4: Undermines confidence, harsh self-criticism

ATTRIBUTION QUALITY SCORE (1-10, only when causal explanations present):
- 8-10: Internal-Controllable attributions that empower
- 5-7: Mixed or partially helpful attributions
- 1-4: External-Uncontrollable attributions that create helplessness"""

ANALYSIS_SCHEMA = """{
  "segments": [
    {
      "segment_id": number,
      "quote": "exact quote",
      "timestamp": "time if available",
      "situation": "brief context",
      "helpfulness_score": number (1-10),
      "psychological_patterns": [
        {
          "type": "pattern_type",
          "helpfulness_score": number (1-10),
          "explanation": "concise explanation (max 15 words)",
          "intensity": "low/medium/high"
        }
      ],
      "attribution_analysis": {
        "has_attribution": boolean,
        "attribution_statement": "causal explanation if present",
        "dimensions": {
          "locus": "internal/external/mixed",
          "stability": "stable/unstable/mixed",
          "controllability": "controllable/uncontrollable/mixed"
        },
        "attribution_quality_score": number (1-10, only if has_attribution is true),
        "attribution_explanation": "concise impact (max 15 words)"
      },
      "focus_direction": "forward/backward/present"
    }
  ],
  "analysis_summary": {
    "total_segments": number,
    "helpful_thought_ratio": "X%",
    "average_intensity": "low/medium/high",
    "focus_direction_ratio": "X% forward",
    "attribution_count": number,
    "average_attribution_quality": number,
    "pattern_distribution": {
""" + ",\n".join(f'      "{p}": number' for p in PATTERN_TYPES) + """
    },
    "key_insights": ["insight 1", "insight 2"],
    "dominant_patterns": ["pattern1", "pattern2"]
  }
}"""

PATTERN_GLOSSARY = """- positive_reinforcement: Self-praise
- self_criticism: Negative evaluation
- tactical_focus: Strategy
- emotional_regulation: Managing frustration
- forward_focus: Next point mentality
- backward_focus: Dwelling on past
- energy_management: Motivational
- pattern_recognition: Learning"""


def build_analysis_prompt(chunk: str, chunk_index: int = 0, total_chunks: int = 1) -> str:
    chunk_note = ""
    if total_chunks > 1:
        chunk_note = (
            f"\n\nNOTE: This is chunk {chunk_index + 1} of {total_chunks}. "
            "Analyze this segment independently."
        )

    return f"""Analyze this Spanish tennis player transcription for psychological patterns and attributions. Provide segment-by-segment analysis.{chunk_note}

TRANSCRIPTION: "{chunk}"

For each distinct quote/comment, provide a JSON response with this structure:

{ANALYSIS_SCHEMA}

SCORING CRITERIA:

{SCORING_CRITERIA}

PSYCHOLOGICAL PATTERN TYPES:
{PATTERN_GLOSSARY}

Focus on realistic, observable patterns. Keep explanations concise to save space.
Return valid JSON only. No markdown."""


def build_reframe_prompt(original_quote: str, player_reframe: str, context: str = "") -> str:
    return f"""Score this reframe for a Spanish tennis player. Analyze both general helpfulness and attribution quality.

Original: "{original_quote}"
Player's reframe: "{player_reframe}"
Context: "{context or 'not provided'}"

Provide a JSON response with dual scoring:

{{
  "helpfulness_score": number (1-10),
  "attribution_analysis": {{
    "has_attribution": boolean,
    "attribution_statement": "causal explanation if present",
    "attribution_quality_score": number (1-10, only if has_attribution is true),
    "dimensions": {{
      "locus": "internal/external/mixed",
      "stability": "stable/unstable/mixed",
      "controllability": "controllable/uncontrollable/mixed"
    }}
  }},
  "feedback": "comprehensive explanation covering both scores",
  "improvements": ["specific suggestion 1", "specific suggestion 2"]
}}

SCORING CRITERIA:

HELPFULNESS SCORE (1-10):
- 8-10: Builds confidence, solution-oriented, forward-focused, specific tactical advice
- 5-7: Neutral or mixed impact, somewhat helpful but could be better
- 1-4: Undermines confidence, dwelling on past, vague, unhelpful

ATTRIBUTION QUALITY SCORE (1-10, only when causal explanations present):
- 8-10: Internal-Controllable attributions that empower ("I need to adjust my grip/strategy")
- 5-7: Mixed attributions with some helpful elements
- 1-4: External-Uncontrollable attributions that create helplessness ("The conditions/opponent caused this")

Focus on practical tennis psychology - what will actually help performance on court.
Return JSON only."""
