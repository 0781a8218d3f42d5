"""Text generation provider used by chargeable routes."""

from fastapi import status
from openai import AsyncOpenAI, OpenAIError

from app.core.config import get_settings
from app.core.exceptions import AppError
from app.core.logging import get_logger
from app.services.pricing import Operation

log = get_logger(__name__)

FEATURE_INSTRUCTIONS = {
    Operation.CLONE_ME: "Rewrite the text in the author's own voice.",
    Operation.PLAGIARISM_CHECK: "Report passages that look copied from known sources.",
    Operation.EXPORT_PDF: "Format the text as a clean document for PDF export.",
    Operation.EXPORT_WORD: "Format the text as a clean document for Word export.",
}


class GenerationError(AppError):
    def __init__(self, message: str = "Content generation failed"):
        super().__init__(message, code="GENERATION_FAILED", status_code=status.HTTP_502_BAD_GATEWAY)


class ContentProvider:
    """Returns text for a prompt. Raises GenerationError on failure."""

    async def generate(self, prompt: str, tone: str | None = None, max_words: int | None = None) -> str:
        raise NotImplementedError

    async def run_feature(self, operation: Operation, text: str) -> str:
        return await self.generate(f"{FEATURE_INSTRUCTIONS[operation]}\n\n{text}")


class PlaceholderContentProvider(ContentProvider):
    """Used when no OpenAI key is configured (local dev)."""

    async def generate(self, prompt: str, tone: str | None = None, max_words: int | None = None) -> str:
        words = prompt.split()
        if max_words:
            words = words[:max_words]
        return " ".join(words)


class OpenAIContentProvider(ContentProvider):
    def __init__(self, api_key: str, model: str):
        self._client = AsyncOpenAI(api_key=api_key)
        self._model = model

    async def generate(self, prompt: str, tone: str | None = None, max_words: int | None = None) -> str:
        messages = []
        if tone or max_words:
            parts = []
            if tone:
                parts.append(f"Write in a {tone} tone.")
            if max_words:
                parts.append(f"Use at most {max_words} words.")
            messages.append({"role": "system", "content": " ".join(parts)})
        messages.append({"role": "user", "content": prompt})
        try:
            resp = await self._client.chat.completions.create(model=self._model, messages=messages)
        except OpenAIError as e:
            log.warning("generation_failed", model=self._model, error=str(e))
            raise GenerationError() from e
        content = resp.choices[0].message.content if resp.choices else None
        if not content:
            raise GenerationError("Empty response from content provider")
        return content


def get_content_provider() -> ContentProvider:
    """FastAPI dependency; overridden in tests."""
    s = get_settings()
    if s.openai_api_key:
        return OpenAIContentProvider(s.openai_api_key, s.openai_model)
    return PlaceholderContentProvider()
