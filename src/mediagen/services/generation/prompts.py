"""Prompt and parameter validation for media generation.

Also derives the prompts used by the regenerate and modify actions.
"""

from typing import Any, Optional

from mediagen.models.generation_job import JobKind

IMAGE_SIZES = ("1024x1024", "1024x1792", "1792x1024")
IMAGE_QUALITIES = ("standard", "hd")
DEFAULT_IMAGE_PARAMS = {"size": "1024x1024", "quality": "standard"}

QUICK_MODIFICATIONS = {
    JobKind.IMAGE: (
        "Make it brighter",
        "Change the background",
        "Add more detail",
        "Make it more colorful",
    ),
    JobKind.VIDEO: (
        "Make it longer",
        "Change the scene",
        "Add more action",
        "Change the style",
    ),
}


def validate_prompt(prompt: str, max_length: int = 4000) -> str:
    """Validate prompt text for generation.

    Args:
        prompt: Text prompt from the user
        max_length: Maximum allowed length after trimming

    Returns:
        Trimmed prompt

    Raises:
        ValueError: If prompt is empty, not a string, or too long
    """
    if not isinstance(prompt, str):
        raise ValueError(f"Prompt must be a string, got {type(prompt).__name__}")

    prompt = prompt.strip()
    if not prompt:
        raise ValueError("Prompt cannot be empty")

    if len(prompt) > max_length:
        raise ValueError(
            f"Prompt exceeds maximum length of {max_length} characters (got {len(prompt)})"
        )

    return prompt


def validate_params(kind: JobKind, params: Optional[dict[str, Any]]) -> dict[str, Any]:
    """Validate generation parameters and fill in defaults.

    Image requests accept ``size`` and ``quality``. Video requests accept any
    scalar parameters and pass them through unchanged.

    Raises:
        ValueError: On unknown image options or non-scalar values
    """
    params = dict(params or {})

    for key, value in params.items():
        if not isinstance(value, (str, int, float, bool)):
            raise ValueError(f"Parameter '{key}' must be a scalar value")

    if kind == JobKind.IMAGE:
        unknown = set(params) - set(DEFAULT_IMAGE_PARAMS)
        if unknown:
            raise ValueError(f"Unsupported image parameters: {', '.join(sorted(unknown))}")

        merged = {**DEFAULT_IMAGE_PARAMS, **params}
        if merged["size"] not in IMAGE_SIZES:
            raise ValueError(
                f"Unsupported image size {merged['size']!r}; expected one of {IMAGE_SIZES}"
            )
        if merged["quality"] not in IMAGE_QUALITIES:
            raise ValueError(
                f"Unsupported image quality {merged['quality']!r}; "
                f"expected one of {IMAGE_QUALITIES}"
            )
        return merged

    return params


def build_modify_prompt(kind: JobKind, prior_prompt: str, modification: str) -> str:
    """Derive a prompt that modifies a previous result.

    Example:
        >>> build_modify_prompt(JobKind.IMAGE, "a red balloon", "Make it brighter")
        'Based on this image: "a red balloon", make it brighter'
    """
    modification = (modification or "").strip()
    if not modification:
        raise ValueError("Modification cannot be empty")
    return f'Based on this {JobKind(kind).value}: "{prior_prompt}", {modification.lower()}'
