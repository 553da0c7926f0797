"""Optional NER layer: Presidio for free-text identifiers.

Names, places and licence numbers don't have a fixed shape, so regex
misses them.  Everything this layer finds is reported as ``DataType.PII``
with the default mask.  spaCy is heavy; nothing is imported or loaded
until the first scan.
"""

from __future__ import annotations
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

from .patterns import mask_default
from .types import DataType, Detection

if TYPE_CHECKING:
    from presidio_analyzer import AnalyzerEngine

logger = logging.getLogger(__name__)

NER_ENTITIES = (
    "PERSON",
    "LOCATION",
    "NRP",           # nationality, religious, political group
    "MEDICAL_LICENSE",
    "US_DRIVER_LICENSE",
    "US_PASSPORT",
)


class PresidioScanner:
    """Wraps one AnalyzerEngine for one language, built on first use."""

    def __init__(
        self,
        language: str = "en",
        entities: Sequence[str] | None = None,
        score_threshold: float = 0.35,
    ) -> None:
        self.language = language
        self.entities = list(entities or NER_ENTITIES)
        self.score_threshold = score_threshold
        self._engine: AnalyzerEngine | None = None

    def _analyzer(self) -> AnalyzerEngine:
        if self._engine is None:
            from presidio_analyzer import AnalyzerEngine
            from presidio_analyzer.nlp_engine import NlpEngineProvider

            nlp = NlpEngineProvider(nlp_configuration={
                "nlp_engine_name": "spacy",
                "models": [{"lang_code": self.language, "model_name": f"{self.language}_core_web_sm"}],
            }).create_engine()
            self._engine = AnalyzerEngine(nlp_engine=nlp, supported_languages=[self.language])
            logger.info("presidio analyzer loaded language=%s", self.language)
        return self._engine

    def scan(self, text: str, claimed: Sequence[tuple[int, int]] = ()) -> list[Detection]:
        """PII detections in text, left to right, skipping claimed spans."""
        results = self._analyzer().analyze(
            text=text,
            language=self.language,
            entities=self.entities,
            score_threshold=self.score_threshold,
        )
        found: list[Detection] = []
        for r in sorted(results, key=lambda r: r.start):
            if any(r.start < end and r.end > start for start, end in claimed):
                continue
            value = text[r.start:r.end]
            found.append(Detection(
                data_type=DataType.PII,
                confidence=min(100, round(r.score * 100)),
                original_value=value,
                masked_value=mask_default(value),
                start=r.start,
                end=r.end,
            ))
        return found
