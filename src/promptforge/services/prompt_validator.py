"""Prompt validation for batch generation.

Validates text prompts before a job and its items are persisted.
"""

from promptforge.services.exceptions import ValidationError


def validate_prompt(prompt: object, max_length: int = 1000) -> str:
    """Validate prompt text for generation.

    Args:
        prompt: Text prompt submitted by the user
        max_length: Maximum number of characters after stripping

    Returns:
        Prompt with surrounding whitespace removed

    Raises:
        ValidationError: If prompt is not a string, empty, or exceeds max_length
    """
    if not isinstance(prompt, str):
        raise ValidationError(f"Prompt must be a string, got {type(prompt).__name__}")

    prompt = prompt.strip()
    if not prompt:
        raise ValidationError("Prompt cannot be empty")

    if len(prompt) > max_length:
        raise ValidationError(
            f"Prompt exceeds maximum length of {max_length} characters (got {len(prompt)})",
            details={"max_length": max_length, "length": len(prompt)},
        )

    return prompt
