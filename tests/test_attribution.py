"""
Claude attribution pipeline: chunking, JSON repair, validation, merging and reframe scoring.
No network: Claude is replaced by FakeClaude.
"""
import json

import pytest

from conftest import APITimeoutError, FakeAPIError, FakeClaude
from tennis_trainer import attribution
from tennis_trainer.attribution import (
    analyze_attributions, analyze_chunk, chunk_transcription, extract_json_object, load_sample_analysis,
    merge_chunk_results, process_transcription, repair_truncated_json, score_reframe, summarize_segments,
    validate_analysis,
)
from tennis_trainer.errors import AnalysisFormatError, AttributionError
from tennis_trainer.prompts import PATTERN_TYPES


def _segment(quote, score, pattern="tactical_focus", focus="forward", quality=None):
    return {
        "segment_id": 1,
        "quote": quote,
        "timestamp": None,
        "situation": "between points",
        "helpfulness_score": score,
        "psychological_patterns": [
            {"type": pattern, "helpfulness_score": score, "explanation": "x", "intensity": "medium"},
        ],
        "attribution_analysis": {
            "has_attribution": quality is not None,
            "attribution_statement": "because" if quality is not None else None,
            "dimensions": None,
            "attribution_quality_score": quality,
            "attribution_explanation": None,
        },
        "focus_direction": focus,
    }


def _analysis(*segments, insights=("Recovers after errors",), dominant=("tactical_focus",)):
    distribution = {key: 0 for key in PATTERN_TYPES}
    for s in segments:
        distribution[s["psychological_patterns"][0]["type"]] += 1
    return {
        "segments": list(segments),
        "analysis_summary": {
            "total_segments": len(segments),
            "helpful_thought_ratio": "50%",
            "pattern_distribution": distribution,
            "key_insights": list(insights),
            "dominant_patterns": list(dominant),
        },
    }


LONG_TRANSCRIPT = " ".join(["Vamos, otro punto más, piernas y paciencia."] * 200)


# ═══════════════════════════════════════════════
# 1. CHUNKING
# ═══════════════════════════════════════════════

class TestChunking:
    def test_short_text_is_one_chunk(self):
        assert chunk_transcription("Vamos. Eso es.") == ["Vamos. Eso es."]

    def test_long_text_respects_chunk_size(self):
        chunks = chunk_transcription(LONG_TRANSCRIPT, chunk_size=500)
        assert len(chunks) > 1
        assert all(len(c) <= 500 for c in chunks)

    def test_no_text_lost(self):
        chunks = chunk_transcription(LONG_TRANSCRIPT, chunk_size=500)
        assert " ".join(chunks) == LONG_TRANSCRIPT

    def test_sentences_keep_punctuation(self):
        text = "Otra vez a la red! Por qué? Tranquilo. " * 5
        chunks = chunk_transcription(text.strip(), chunk_size=40)
        assert all(c[-1] in ".!?" for c in chunks)

    def test_oversized_sentence_stays_whole(self):
        sentence = "a" * 120 + "."
        chunks = chunk_transcription(f"Hola. {sentence} Adiós.", chunk_size=50)
        assert sentence in chunks


# ═══════════════════════════════════════════════
# 2. JSON EXTRACTION + REPAIR
# ═══════════════════════════════════════════════

class TestRepairTruncatedJson:
    def test_valid_json_untouched(self):
        doc = _analysis(_segment("Vamos", 8))
        assert repair_truncated_json(json.dumps(doc)) == doc

    def test_drops_incomplete_trailing_segment(self):
        text = json.dumps(_analysis(_segment("Vamos", 8), _segment("Otra vez", 3)))
        truncated = text[:text.index('"Otra vez"') + 5]
        repaired = repair_truncated_json(truncated)
        assert [s["quote"] for s in repaired["segments"]] == ["Vamos"]

    def test_reraises_original_error(self):
        truncated = '{"segments": [{"quote": "Vamos", "helpfu'
        with pytest.raises(json.JSONDecodeError) as original:
            json.loads(truncated)
        with pytest.raises(json.JSONDecodeError) as exc:
            repair_truncated_json(truncated)
        assert str(exc.value) == str(original.value)

    def test_every_truncation_point(self):
        sample = load_sample_analysis()
        text = json.dumps(sample, indent=2, ensure_ascii=False)
        start = text.index('"segments"')
        for cut in range(start, len(text) + 1, 3):
            try:
                repaired = repair_truncated_json(text[:cut])
            except json.JSONDecodeError:
                continue
            kept = repaired["segments"]
            # Never invents content: always a prefix of the real segments
            assert kept == sample["segments"][:len(kept)]

    def test_braces_inside_strings_ignored(self):
        doc = _analysis(_segment("Dije {vamos} y [fallé]", 5), _segment("Bien", 8))
        text = json.dumps(doc, ensure_ascii=False)
        truncated = text[:text.index('"Bien"')]
        repaired = repair_truncated_json(truncated)
        assert repaired["segments"][0]["quote"] == "Dije {vamos} y [fallé]"


class TestExtractJsonObject:
    def test_strips_code_fence(self):
        doc = _analysis(_segment("Vamos", 8))
        assert extract_json_object(f"```json\n{json.dumps(doc)}\n```") == doc

    def test_ignores_surrounding_prose(self):
        doc = _analysis(_segment("Vamos", 8))
        assert extract_json_object(f"Here is the analysis:\n{json.dumps(doc)}\nHope it helps.") == doc

    def test_no_json(self):
        with pytest.raises(AnalysisFormatError) as exc:
            extract_json_object("I cannot analyze this.")
        assert exc.value.raw_response == "I cannot analyze this."

    def test_unrepairable(self):
        with pytest.raises(AnalysisFormatError):
            extract_json_object('{"segments": [{"quote": "Vam')


# ═══════════════════════════════════════════════
# 3. VALIDATION + SUMMARY
# ═══════════════════════════════════════════════

class TestValidateAnalysis:
    def test_accepts_well_formed(self):
        doc = _analysis(_segment("Vamos", 8))
        assert validate_analysis(doc) == doc

    def test_rebuilds_missing_summary(self):
        result = validate_analysis({"segments": [_segment("Vamos", 8), _segment("Otra vez", 3, focus="backward")]})
        summary = result["analysis_summary"]
        assert summary["total_segments"] == 2
        assert summary["helpful_thought_ratio"] == "50%"
        assert summary["focus_direction_ratio"] == "50% forward"

    def test_missing_quote(self):
        segment = _segment("Vamos", 8)
        del segment["quote"]
        with pytest.raises(AnalysisFormatError) as exc:
            validate_analysis({"segments": [segment], "analysis_summary": {}})
        assert "quote" in exc.value.message

    def test_score_out_of_range(self):
        with pytest.raises(AnalysisFormatError):
            validate_analysis(_analysis(_segment("Vamos", 14)))

    def test_segments_must_be_list(self):
        with pytest.raises(AnalysisFormatError):
            validate_analysis({"segments": "none", "analysis_summary": {}})

    def test_not_an_object(self):
        with pytest.raises(AnalysisFormatError):
            validate_analysis([_segment("Vamos", 8)])


class TestSummary:
    def test_sample_fixture_summary_matches_segments(self):
        sample = load_sample_analysis()
        summary = summarize_segments(sample["segments"])
        expected = sample["analysis_summary"]
        for key in ("total_segments", "helpful_thought_ratio", "focus_direction_ratio",
                    "attribution_count", "average_attribution_quality", "average_intensity",
                    "pattern_distribution"):
            assert summary[key] == expected[key], key

    def test_quality_rounds_half_up(self):
        segments = [_segment("a", 8, quality=6), _segment("b", 8, quality=7)]
        assert summarize_segments(segments)["average_attribution_quality"] == 7

    def test_empty(self):
        summary = summarize_segments([])
        assert summary["total_segments"] == 0
        assert summary["helpful_thought_ratio"] == "0%"
        assert summary["average_attribution_quality"] == 0


class TestMerge:
    def test_no_results(self):
        assert merge_chunk_results([])["segments"] == []

    def test_single_result_unchanged(self):
        doc = _analysis(_segment("Vamos", 8))
        assert merge_chunk_results([doc]) is doc

    def test_segments_renumbered(self):
        first = _analysis(_segment("a", 8), _segment("b", 3))
        second = _analysis(_segment("c", 9))
        merged = merge_chunk_results([first, second])
        assert [s["segment_id"] for s in merged["segments"]] == [1, 2, 3]
        assert [s["quote"] for s in merged["segments"]] == ["a", "b", "c"]
        assert merged["analysis_summary"]["total_segments"] == 3

    def test_distributions_summed(self):
        first = _analysis(_segment("a", 8, pattern="self_criticism"), _segment("b", 8))
        second = _analysis(_segment("c", 9, pattern="self_criticism"))
        distribution = merge_chunk_results([first, second])["analysis_summary"]["pattern_distribution"]
        assert distribution["self_criticism"] == 2
        assert distribution["tactical_focus"] == 1
        assert set(distribution) == set(PATTERN_TYPES)

    def test_insights_unique_and_capped(self):
        results = [
            _analysis(_segment(str(i), 8), insights=[f"insight {i}", "shared"], dominant=["a", "b"])
            for i in range(4)
        ]
        summary = merge_chunk_results(results)["analysis_summary"]
        assert summary["key_insights"] == ["insight 0", "shared", "insight 1", "insight 2", "insight 3"]
        assert summary["dominant_patterns"] == ["a", "b"]


# ═══════════════════════════════════════════════
# 4. CLAUDE CALLS
# ═══════════════════════════════════════════════

class TestAnalyzeChunk:
    def test_prompt_and_parameters(self):
        claude = FakeClaude(json.dumps(_analysis(_segment("Vamos", 8))))
        analyze_chunk("Vamos.", 1, 3, claude)
        call = claude.messages.calls[0]
        assert call["max_tokens"] == 8000
        assert call["temperature"] == 0.3
        assert "chunk 2 of 3" in call["messages"][0]["content"]

    def test_truncated_reply_is_repaired(self):
        text = json.dumps(_analysis(_segment("Vamos", 8), _segment("Otra vez", 3)))
        claude = FakeClaude(text[:text.index('"Otra vez"')])
        result = analyze_chunk("Vamos. Otra vez.", 0, 1, claude)
        assert [s["quote"] for s in result["segments"]] == ["Vamos"]
        assert result["analysis_summary"]["total_segments"] == 1


class TestAnalyzeAttributions:
    def test_blank_transcription(self):
        with pytest.raises(AttributionError) as exc:
            analyze_attributions("   ", client=FakeClaude("{}"))
        assert exc.value.status_code == 400

    def test_merges_chunks(self):
        count = len(chunk_transcription(LONG_TRANSCRIPT))
        assert count > 1
        replies = [json.dumps(_analysis(_segment(f"quote {i}", 8))) for i in range(count)]
        claude = FakeClaude(*replies)
        result = analyze_attributions(LONG_TRANSCRIPT, client=claude)
        assert len(claude.messages.calls) == count
        assert [s["segment_id"] for s in result["segments"]] == list(range(1, count + 1))

    def test_failed_chunk_is_skipped(self):
        claude = FakeClaude(json.dumps(_analysis(_segment("Vamos", 8))), FakeAPIError("overloaded", 529))
        result = process_transcription(LONG_TRANSCRIPT, client=claude)
        count = len(chunk_transcription(LONG_TRANSCRIPT))
        assert result["metadata"]["chunks_processed"] == count
        assert result["metadata"]["chunks_failed"] == count - 1
        assert [s["quote"] for s in result["data"]["segments"]] == ["Vamos"]

    def test_all_chunks_fail(self):
        claude = FakeClaude(FakeAPIError("invalid x-api-key", 401))
        with pytest.raises(AttributionError) as exc:
            analyze_attributions("Vamos. Eso es.", client=claude)
        assert exc.value.message == "Invalid Claude API key"
        assert len(claude.messages.calls) == 1

    def test_rate_limit_translated(self):
        claude = FakeClaude(FakeAPIError("rate limited", 429))
        with pytest.raises(AttributionError) as exc:
            analyze_attributions("Vamos.", client=claude)
        assert exc.value.status_code == 429

    def test_bad_format_surfaces(self):
        claude = FakeClaude("Lo siento, no puedo.")
        with pytest.raises(AnalysisFormatError):
            analyze_attributions("Vamos.", client=claude)

    def test_process_wraps_same_analysis(self):
        count = len(chunk_transcription(LONG_TRANSCRIPT))
        replies = [json.dumps(_analysis(_segment(f"quote {i}", 6))) for i in range(count)]
        analysis = analyze_attributions(LONG_TRANSCRIPT, client=FakeClaude(*replies))
        processed = process_transcription(LONG_TRANSCRIPT, client=FakeClaude(*replies))
        assert processed["data"] == analysis
        assert processed["metadata"]["chunks_processed"] == count

    def test_metadata(self):
        claude = FakeClaude(json.dumps(_analysis(_segment("Vamos", 8))))
        metadata = process_transcription("Vamos. Eso es.", client=claude)["metadata"]
        assert metadata["transcription_length"] == len("Vamos. Eso es.")
        assert metadata["segments_found"] == 1
        assert metadata["chunks_failed"] == 0


# ═══════════════════════════════════════════════
# 5. REFRAME SCORING
# ═══════════════════════════════════════════════

def _score_reply(helpfulness, quality=None, feedback="Good, forward-looking."):
    return json.dumps({
        "helpfulness_score": helpfulness,
        "attribution_analysis": {
            "has_attribution": quality is not None,
            "attribution_quality_score": quality,
        },
        "feedback": feedback,
        "improvements": ["Name the target"],
    })


class TestScoreReframe:
    def test_with_attribution(self):
        result = score_reframe("Soy un desastre", "Más altura sobre la red", client=FakeClaude(_score_reply(8, 7)))
        assert result["helpfulness_score"] == 8
        assert result["attribution_analysis"]["attribution_quality_score"] == 7
        assert result["overall_score"] == 8
        assert result["fallback"] is False

    def test_without_attribution(self):
        result = score_reframe("Soy un desastre", "Siguiente punto", client=FakeClaude(_score_reply(6)))
        assert result["overall_score"] == 6
        assert result["attribution_analysis"]["attribution_quality_score"] is None

    def test_scores_clamped(self):
        result = score_reframe("a", "b", client=FakeClaude(_score_reply(14, 0)))
        assert result["helpfulness_score"] == 10
        assert result["attribution_analysis"]["attribution_quality_score"] == 1

    def test_unparseable_reply_falls_back(self):
        result = score_reframe("a", "b", client=FakeClaude("great reframe!"))
        assert result["fallback"] is True
        assert result["helpfulness_score"] == 5
        assert result["overall_score"] == 5

    def test_timeout_falls_back(self):
        result = score_reframe("a", "b", client=FakeClaude(APITimeoutError("Request timed out.")))
        assert result["fallback"] is True
        assert "timeout" in result["feedback"].lower()

    def test_api_error_falls_back(self):
        result = score_reframe("a", "b", client=FakeClaude(FakeAPIError("bad request", 400)))
        assert result["fallback"] is True
        assert result["improvements"]

    def test_missing_key(self, monkeypatch):
        monkeypatch.setattr(attribution, "CLAUDE_KEY", "")
        with pytest.raises(AttributionError) as exc:
            score_reframe("a", "b")
        assert exc.value.status_code == 503


class TestSampleAnalysis:
    def test_fixture_is_valid(self):
        sample = load_sample_analysis()
        assert validate_analysis(sample) == sample
        assert sample["analysis_summary"]["total_segments"] == len(sample["segments"])
