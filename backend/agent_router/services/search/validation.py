"""
Input validation for inbound queries.

Performs:
- Control character removal (Unicode category Cc, newline and tab kept)
- Whitespace trimming
- Length bounds check on the sanitized text
"""
import unicodedata

from agent_router.core.errors import ValidationError, ValidationErrorKind

_KEPT_CONTROLS = {"\n", "\t"}


def strip_control_characters(text: str) -> str:
    return "".join(
        c for c in text
        if c in _KEPT_CONTROLS or unicodedata.category(c) != "Cc"
    )


class InputValidator:
    """Pure length/character validator; no I/O."""

    def __init__(self, min_length: int = 5, max_length: int = 2000):
        if min_length > max_length:
            raise ValueError("min_length must not exceed max_length")
        self.min_length = min_length
        self.max_length = max_length

    def validate(self, text: str) -> str:
        """
        Sanitize and bound-check a query.

        Returns:
            Sanitized text

        Raises:
            ValidationError: TOO_SHORT or TOO_LONG, measured after sanitization
        """
        sanitized = strip_control_characters(text or "").strip()
        length = len(sanitized)

        if length < self.min_length:
            raise ValidationError(ValidationErrorKind.TOO_SHORT, length, self.min_length)
        if length > self.max_length:
            raise ValidationError(ValidationErrorKind.TOO_LONG, length, self.max_length)

        return sanitized
