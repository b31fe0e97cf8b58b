import logging
import time
from functools import lru_cache
from typing import Optional

import google.generativeai as genai

from chatbot.config import settings
from chatbot.metrics import record_ai_request

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "Sorry, I couldn't come up with a reply. Please try again."


class GeminiResponder:
    """
    Thin wrapper around a Gemini model: one prompt in, one text reply out.

    The model is configured on first use, so a missing API key surfaces as a
    failed reply rather than a failed startup.
    """

    def __init__(self, api_key: Optional[str] = None, model_name: Optional[str] = None):
        self.api_key = api_key if api_key is not None else settings.GEMINI_API_KEYS
        self.model_name = model_name or settings.GEMINI_MODEL
        self._model = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _get_model(self):
        if self._model is None:
            if not self.api_key:
                raise RuntimeError("GEMINI_API_KEYS is not set")
            genai.configure(api_key=self.api_key)
            self._model = genai.GenerativeModel(self.model_name)
        return self._model

    def generate(self, prompt: str) -> str:
        start_time = time.time()
        try:
            resp = self._get_model().generate_content(prompt)
        except Exception as e:
            record_ai_request("error")
            logger.error(f"Gemini request failed: {e}", extra={"model": self.model_name})
            raise

        try:
            text = resp.text or ""
        except ValueError:
            # .text raises when the candidate has no text parts (e.g. blocked)
            try:
                text = "".join(p.text for p in resp.candidates[0].content.parts)
            except (IndexError, AttributeError):
                text = ""

        latency_ms = round((time.time() - start_time) * 1000, 2)
        record_ai_request("ok")
        logger.info(
            "Gemini response received",
            extra={"model": self.model_name, "latency_ms": latency_ms, "chars": len(text)},
        )
        return text.strip() or FALLBACK_REPLY


@lru_cache()
def get_responder() -> GeminiResponder:
    """Dependency returning the shared responder configured from settings."""
    return GeminiResponder()
