"""Priority classification for queue entries.

The dispatch order only ever sees the closed PriorityClass enum. How an
entry gets its class is pluggable: an explicit flag from the front desk
wins, otherwise a classifier decides. Classification happens once, when
the entry is created.
"""
from typing import Iterable, Optional

from clinic_dispatch import config
from clinic_dispatch.errors import ValidationError
from clinic_dispatch.models import PriorityClass


class PriorityClassifier:
    """Base class for triage heuristics."""

    def classify(self, symptoms: Optional[str], queue_number: int) -> PriorityClass:
        raise NotImplementedError


class KeywordPriorityClassifier(PriorityClassifier):
    """
    Keyword triage over free-text symptoms.

    - emergency: symptoms mention any emergency keyword
    - priority: one of the first ``priority_cutoff`` patients of the day
    - regular: everyone else
    """

    def __init__(
        self,
        keywords: Iterable[str] = config.EMERGENCY_KEYWORDS,
        priority_cutoff: int = config.PRIORITY_QUEUE_CUTOFF
    ):
        self.keywords = tuple(k.lower() for k in keywords)
        self.priority_cutoff = priority_cutoff

    def classify(self, symptoms: Optional[str], queue_number: int) -> PriorityClass:
        text = (symptoms or "").lower()
        if any(keyword in text for keyword in self.keywords):
            return PriorityClass.EMERGENCY
        if queue_number <= self.priority_cutoff:
            return PriorityClass.PRIORITY
        return PriorityClass.REGULAR


def parse_priority(value) -> Optional[PriorityClass]:
    """Parse an explicit priority flag (None means "let the classifier decide")."""
    if value is None or value == "":
        return None
    if isinstance(value, PriorityClass):
        return value
    try:
        return PriorityClass(str(value).lower())
    except ValueError:
        allowed = ", ".join(p.value for p in PriorityClass)
        raise ValidationError(f"Invalid priority '{value}', expected one of: {allowed}")


def resolve_priority(
    explicit: Optional[PriorityClass],
    symptoms: Optional[str],
    queue_number: int,
    classifier: PriorityClassifier
) -> PriorityClass:
    if explicit is not None:
        return explicit
    return classifier.classify(symptoms, queue_number)
