"""Input validation and specialty-aware retrieval."""

from .hybrid import HybridRetriever
from .validation import InputValidator
