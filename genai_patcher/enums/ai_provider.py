"""AI provider enum."""

from enum import StrEnum


class AiProvider(StrEnum):
    """Generative edit service provider."""

    OPENAI = "openai"
    GEMINI = "gemini"
