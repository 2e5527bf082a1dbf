"""Drop low-confidence raw detections before they become Detection rows."""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

DEFAULT_THRESHOLD = 0.5


def _confidence(raw: Dict[str, Any]) -> float:
    try:
        return float(raw.get("confidence") or 0.0)
    except (TypeError, ValueError):
        return 0.0


def filter_by_confidence(
    raw_detections: Sequence[Dict[str, Any]], threshold: float = DEFAULT_THRESHOLD
) -> List[Dict[str, Any]]:
    """Keep detections whose confidence is at or above ``threshold``.

    Order is preserved. A missing or unparsable confidence counts as 0.
    """
    return [raw for raw in raw_detections if _confidence(raw) >= threshold]
