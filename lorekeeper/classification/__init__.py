"""Turn classification: prompt building and tolerant result parsing."""

from .parser import parse_classification_response
from .classifier import ClassifierService

__all__ = ["parse_classification_response", "ClassifierService"]
