"""
Detection vocabulary for dosegate.

Keyword lists, unit tables and label patterns used by the layout engine.
The vocabulary is an immutable value handed to the engine entry points, so a
caller can swap in an alternate vocabulary (e.g. non-English headers) without
touching module globals.
"""

from __future__ import annotations

import re
from typing import Dict, Pattern, Tuple

from pydantic import BaseModel, ConfigDict, Field


class DetectionVocabulary(BaseModel):
    """Immutable keyword/unit configuration for header and axis scoring."""

    concentration_keywords: Tuple[str, ...] = Field(
        default=(
            "concentration",
            "conc",
            "dose",
            "dilution",
            "molarity",
            "molar",
            "nm",
            "um",
            "mm",
            "μm",
            "µm",
            "μg/ml",
            "ng/ml",
            "mg/ml",
            "log",
            "log10",
        ),
        description="Header tokens that mark a concentration axis (matched case-insensitively)",
    )
    response_keywords: Tuple[str, ...] = Field(
        default=(
            "response",
            "activity",
            "inhibition",
            "activation",
            "viability",
            "signal",
            "fluorescence",
            "absorbance",
            "od",
            "rlu",
            "rfu",
            "percent",
            "%",
            "fold",
            "ratio",
        ),
        description="Header tokens that mark a response axis",
    )
    unit_factors: Dict[str, float] = Field(
        default_factory=lambda: {
            "M": 1e9,
            "mM": 1e6,
            "μM": 1e3,
            "µM": 1e3,
            "uM": 1e3,
            "nM": 1.0,
            "pM": 1e-3,
            "fM": 1e-6,
        },
        description="Multiplier that converts a unit to nanomolar",
    )
    default_unit: str = Field(default="nM")
    sample_name_patterns: Tuple[str, ...] = Field(
        default=(r"^(sample|samp|s)\s*\d+$", r"^[a-z]\d+$", r"^(well|w)\s*\d+$"),
        description="Regexes (case-insensitive) for well/sample style column labels",
    )
    replicate_suffix_patterns: Tuple[str, ...] = Field(
        default=(r"[_\-\s]*(rep|replicate|r)\d+$", r"[_\-\s]*\d+$", r"[_\-\s]*[abc]$"),
        description="Suffixes stripped (in order) to find the base name of a replicate label",
    )

    model_config = ConfigDict(frozen=True, extra="ignore")

    def has_concentration_keyword(self, label: str) -> bool:
        return _contains_any(label, self.concentration_keywords)

    def response_keyword_count(self, label: str) -> int:
        lowered = label.lower()
        return sum(1 for keyword in self.response_keywords if _keyword_in(keyword, lowered))

    def has_response_keyword(self, label: str) -> bool:
        return self.response_keyword_count(label) > 0

    def matches_sample_name(self, label: str) -> bool:
        text = label.strip()
        return any(re.match(pattern, text, re.IGNORECASE) for pattern in self.sample_name_patterns)

    def unit_factor(self, unit: str) -> float:
        """Nanomolar factor for ``unit``; unknown units fall back to 1."""
        if unit in self.unit_factors:
            return self.unit_factors[unit]
        folded = {key.lower(): value for key, value in self.unit_factors.items() if key != "M"}
        return folded.get(unit.lower(), 1.0)

    def unit_regex(self, *, ignore_case: bool = False) -> Pattern[str]:
        """Regex matching a known unit token, longest first.

        The case-insensitive variant skips single-letter units so a stray
        "m" is never read as molar.
        """
        units = sorted(self.unit_factors.keys(), key=len, reverse=True)
        if ignore_case:
            units = [unit for unit in units if len(unit) > 1]
        alternation = "|".join(re.escape(unit) for unit in units)
        flags = re.IGNORECASE if ignore_case else 0
        return re.compile(rf"(?<![A-Za-z])({alternation})(?![A-Za-z])", flags)

    def find_unit(self, label: str) -> str | None:
        """Return the explicit unit token written in a header label, if any."""
        match = self.unit_regex().search(label) or self.unit_regex(ignore_case=True).search(label)
        return match.group(1) if match else None


def _keyword_in(keyword: str, lowered: str) -> bool:
    # Short tokens ("od", "nm", "%") only count as whole words, otherwise
    # "Period" would read as optical density.
    if len(keyword) <= 3 and keyword.isalnum():
        return re.search(rf"(?<![a-z0-9]){re.escape(keyword)}(?![a-z])", lowered) is not None
    return keyword in lowered


def _contains_any(label: str, keywords: Tuple[str, ...]) -> bool:
    lowered = label.lower()
    return any(_keyword_in(keyword, lowered) for keyword in keywords)


DEFAULT_VOCABULARY = DetectionVocabulary()
