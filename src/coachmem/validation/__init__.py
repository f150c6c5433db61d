"""Content validation for candidate memories."""

from .content import ValidationVerdict, check_content, validate_content

__all__ = ["ValidationVerdict", "check_content", "validate_content"]
