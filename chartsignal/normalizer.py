"""
Turn raw model text into an AnalysisResult.

Two outcomes, both first-class:
- StructuredResult: the model returned a JSON object (fenced or bare).
  Missing fields get documented defaults.
- HeuristicResult: nothing parsable. Direction is guessed from the text and
  the rest is filled with fixed placeholders; the raw text becomes the report.

Either way the caller receives a complete AnalysisResult.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from .schemas import AnalysisResult

logger = logging.getLogger(__name__)

_FENCED_JSON_RE = re.compile(r"```json\n?([\s\S]*?)\n?```")
_BARE_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

_CONFIDENCE_LEVELS = ("high", "medium", "low")
_CHART_TYPES = ("candlestick", "line", "area")

HEURISTIC_CERTAINTY = 75
HEURISTIC_RISK_REWARD = "2:1"
HEURISTIC_PRICE = "See report"


def _text_or(value: Any, default: str) -> str:
    if value is None:
        return default
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value
    return default


def _certainty(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        number = float(str(value).strip().rstrip("%"))
    except (TypeError, ValueError):
        return 0
    if number != number:  # NaN
        return 0
    return max(0, min(100, int(round(number))))


def _recommendation(value: Any) -> str:
    if isinstance(value, str):
        direction = value.strip().upper()
        if direction in ("LONG", "SHORT"):
            return direction
    return "N/A"


def _one_of(value: Any, allowed) -> Optional[str]:
    if isinstance(value, str) and value.strip().lower() in allowed:
        return value.strip().lower()
    return None


@dataclass(frozen=True)
class StructuredResult:
    fields: Dict[str, Any]
    raw_text: str

    def to_result(self) -> AnalysisResult:
        f = self.fields
        detected = f.get("detectedTimeframe")
        return AnalysisResult(
            recommendation=_recommendation(f.get("recommendation")),
            certainty=_certainty(f.get("certainty")),
            entry_price=_text_or(f.get("entryPrice"), "Not specified"),
            stop_loss=_text_or(f.get("stopLoss"), "Not specified"),
            take_profit=_text_or(f.get("takeProfit"), "Not specified"),
            risk_reward_ratio=_text_or(f.get("riskRewardRatio"), "N/A"),
            report=_text_or(f.get("report"), self.raw_text),
            detected_timeframe=detected.strip() if isinstance(detected, str) and detected.strip() else None,
            timeframe_confidence=_one_of(f.get("timeframeConfidence"), _CONFIDENCE_LEVELS),
            chart_type=_one_of(f.get("chartType"), _CHART_TYPES),
        )


@dataclass(frozen=True)
class HeuristicResult:
    raw_text: str

    @property
    def recommendation(self) -> str:
        return "LONG" if "LONG" in self.raw_text.upper() else "SHORT"

    def to_result(self) -> AnalysisResult:
        return AnalysisResult(
            recommendation=self.recommendation,
            certainty=HEURISTIC_CERTAINTY,
            entry_price=HEURISTIC_PRICE,
            stop_loss=HEURISTIC_PRICE,
            take_profit=HEURISTIC_PRICE,
            risk_reward_ratio=HEURISTIC_RISK_REWARD,
            report=self.raw_text,
        )


ParsedResponse = Union[StructuredResult, HeuristicResult]


def _try_parse_object(candidate: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_model_response(text: str) -> ParsedResponse:
    """Fenced ```json block first, then the widest {...} span; first object wins."""
    fenced = _FENCED_JSON_RE.search(text)
    if fenced:
        parsed = _try_parse_object(fenced.group(1))
        if parsed is not None:
            return StructuredResult(fields=parsed, raw_text=text)
        logger.warning("normalize.fenced_block_invalid chars=%d", len(fenced.group(1)))

    bare = _BARE_OBJECT_RE.search(text)
    if bare:
        parsed = _try_parse_object(bare.group(0))
        if parsed is not None:
            return StructuredResult(fields=parsed, raw_text=text)

    logger.info("normalize.heuristic_fallback chars=%d", len(text))
    return HeuristicResult(raw_text=text)


def normalize_model_response(text: str) -> AnalysisResult:
    return parse_model_response(text).to_result()
