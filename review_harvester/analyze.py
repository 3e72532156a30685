from __future__ import annotations

from typing import List

from .models import HeuristicResult


def run_heuristics(text: str) -> List[HeuristicResult]:
    trimmed = text.strip()
    return [
        HeuristicResult(
            name="length_check",
            score=min(len(trimmed) / 200, 1.0),
            passed=len(trimmed) > 30,
            details="Basic length-based heuristic",
        )
    ]
