"""
Core orchestration.

Flow:
1. Pick the prompt: fixed timeframe, or "auto" (model detects timeframe and
   chart type as well)
2. Single vision LLM call with the chart image
3. Normalize whatever text comes back into an AnalysisResult
"""

import logging
import os

from .errors import UpstreamError
from .llm_client import VisionClient, describe_image_with_retries
from .normalizer import HeuristicResult, parse_model_response
from .schemas import AnalysisRequest, AnalysisResult

logger = logging.getLogger(__name__)

# Prompt file paths
PROMPTS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "prompts")
FIXED_TIMEFRAME_PROMPT_PATH = os.path.join(PROMPTS_DIR, "chart_analysis.txt")
AUTO_TIMEFRAME_PROMPT_PATH = os.path.join(PROMPTS_DIR, "chart_analysis_auto.txt")

_TIMEFRAME_PLACEHOLDER = "{{TIMEFRAME}}"


def _read_prompt(path: str) -> str:
    """Read a prompt text file."""
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def build_prompt(request: AnalysisRequest) -> str:
    if request.auto_timeframe:
        return _read_prompt(AUTO_TIMEFRAME_PROMPT_PATH).strip()
    template = _read_prompt(FIXED_TIMEFRAME_PROMPT_PATH).strip()
    return template.replace(_TIMEFRAME_PLACEHOLDER, request.timeframe.strip())


async def analyze_chart(
    request: AnalysisRequest,
    vision_client: VisionClient,
    *,
    max_retries: int = 0,
) -> AnalysisResult:
    prompt = build_prompt(request)
    logger.info(
        "analyze.llm_call timeframe=%s mime=%s bytes=%d",
        request.timeframe,
        request.mime_type,
        len(request.image),
    )

    content = await describe_image_with_retries(
        vision_client,
        request.image,
        request.mime_type,
        prompt,
        max_retries=max_retries,
    )
    if not content or not content.strip():
        raise UpstreamError("No response from AI")
    logger.debug("LLM raw response: %s", content[:1000])

    parsed = parse_model_response(content)
    result = parsed.to_result()
    logger.info(
        "analyze.normalized branch=%s recommendation=%s certainty=%d detected_timeframe=%s",
        "heuristic" if isinstance(parsed, HeuristicResult) else "structured",
        result.recommendation,
        result.certainty,
        result.detected_timeframe,
    )
    return result
