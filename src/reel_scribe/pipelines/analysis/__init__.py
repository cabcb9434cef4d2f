"""AI analysis of session transcripts."""

from .parsing import CATEGORY_KEYS, AnalysisParseError, ParsedAnalysis, parse_analysis_response
from .prompt import MAX_TRANSCRIPT_CHARS, build_prompt, mapped_transcripts
from .stage import AnalysisStage, build_analysis_stage
from .stats import compute_transcript_stats, energy_level_for, merge_stats

__all__ = [
    "CATEGORY_KEYS",
    "MAX_TRANSCRIPT_CHARS",
    "AnalysisParseError",
    "AnalysisStage",
    "ParsedAnalysis",
    "build_analysis_stage",
    "build_prompt",
    "compute_transcript_stats",
    "energy_level_for",
    "mapped_transcripts",
    "merge_stats",
    "parse_analysis_response",
]
