"""Classification hints from the image classifier.

The classifier itself lives outside this package. Its result is folded into
the raw submission payload before normalization, so the catalog check and the
low-confidence policy apply to it like to any other submission.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

_CATEGORY_KEYS = ("category_name", "categoryName")
_CONFIDENCE_KEYS = ("classification_confidence", "classificationConfidence", "aiConfidence")


@dataclass(frozen=True)
class ClassificationResult:
    predicted_category: str
    confidence: float


class Classifier(Protocol):
    async def classify(self, image_ref: str) -> ClassificationResult:
        ...


def _first(raw: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def fold_classification(raw: Mapping[str, Any], hint: ClassificationResult | None) -> dict[str, Any]:
    """Merge a classifier hint into a raw waste submission payload.

    - no claimed category: the predicted category is used with its confidence
    - claimed category equals the prediction: the hint's confidence is used
    - claimed category contradicts the prediction: confidence 0.0
    """
    folded = dict(raw)
    if hint is None:
        return folded

    for key in _CONFIDENCE_KEYS[1:]:
        folded.pop(key, None)

    claimed = _first(raw, _CATEGORY_KEYS)
    if claimed is None:
        for key in _CATEGORY_KEYS[1:]:
            folded.pop(key, None)
        folded["category_name"] = hint.predicted_category
        folded["classification_confidence"] = hint.confidence
    elif str(claimed).strip().casefold() == hint.predicted_category.casefold():
        folded["classification_confidence"] = hint.confidence
    else:
        folded["classification_confidence"] = 0.0
    return folded
