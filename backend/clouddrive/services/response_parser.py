"""Parsing of model responses into summary/tags results."""
import json
import logging
import re

from clouddrive.schemas.analysis import AnalysisResult

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    """Remove markdown code-fence markers the model may wrap JSON in."""
    return _FENCE_RE.sub("", text or "").strip()


def _coerce_tags(value) -> list[str]:
    if isinstance(value, list):
        return [str(t).strip() for t in value if str(t).strip()]
    if isinstance(value, str) and value.strip():
        return [t.strip() for t in value.split(",") if t.strip()]
    return []


def result_from_data(data) -> AnalysisResult:
    """Build a result from an already-decoded JSON value."""
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    summary = data.get("summary")
    if not isinstance(summary, str):
        raise ValueError("Response has no string 'summary'")
    return AnalysisResult(summary=summary.strip(), tags=_coerce_tags(data.get("tags")))


def parse_analysis_text(text: str) -> AnalysisResult:
    """Parse free-form model text that should contain a summary JSON object.

    Falls back to the raw text as the summary with no tags when the text is
    not a usable JSON object.
    """
    cleaned = strip_code_fences(text)
    try:
        return result_from_data(json.loads(cleaned))
    except (json.JSONDecodeError, ValueError):
        logger.warning("Failed to parse JSON from model response: %.200s", cleaned)
        return AnalysisResult(summary=cleaned, tags=[])
