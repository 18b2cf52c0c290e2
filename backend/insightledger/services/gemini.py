import logging

from google import genai
from google.genai import types

from ..config import settings
from .analytics import FALLBACK_SUGGESTIONS, parse_suggestions

logger = logging.getLogger(__name__)

FALLBACK_ANSWER = "I could not generate an insight right now. Please try again."

SAFETY_SETTINGS = [
    types.SafetySetting(category=category, threshold=types.HarmBlockThreshold.BLOCK_NONE)
    for category in (
        types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
        types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
        types.HarmCategory.HARM_CATEGORY_HARASSMENT,
        types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
    )
]


class GeminiError(RuntimeError):
    pass


class GeminiClient:
    def __init__(self, api_key: str | None, model_name: str) -> None:
        self.api_key = api_key
        self.model_name = model_name

    def _build_client(self) -> genai.Client:
        if not self.api_key:
            raise GeminiError("GEMINI_API_KEY is not set. Add it to your environment or .env file.")
        return genai.Client(api_key=self.api_key)

    async def generate_text(self, prompt: str) -> str:
        client = self._build_client()
        try:
            response = await client.aio.models.generate_content(
                model=self.model_name,
                contents=prompt,
                config=types.GenerateContentConfig(safety_settings=SAFETY_SETTINGS),
            )
        except Exception as exc:
            logger.error("Gemini generate error: %s", exc)
            raise GeminiError(str(exc) or "Gemini request failed") from exc
        return (response.text or "").strip()

    async def generate_financial_answer(self, prompt: str) -> str:
        text = await self.generate_text(prompt)
        return text or FALLBACK_ANSWER

    async def generate_suggestion_prompts(self, prompt: str) -> list[str]:
        try:
            return parse_suggestions(await self.generate_text(prompt))
        except (GeminiError, ValueError) as exc:
            logger.warning("Falling back to canned suggestions: %s", exc)
            return list(FALLBACK_SUGGESTIONS)


gemini = GeminiClient(settings.gemini_api_key, settings.gemini_model)
