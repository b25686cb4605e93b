from __future__ import annotations

import logging
from typing import Iterator, Optional

# pip install google-generativeai python-dotenv
import google.generativeai as genai

from .config import GeminiSettings

logger = logging.getLogger(__name__)


class NarrativeError(RuntimeError):
    """Raised when the Gemini call cannot be made or fails mid-stream."""


def _extract_text(resp) -> str:
    """
    Safely extract plain text from a Gemini response (or stream chunk), even if Parts are present.
    """
    # 1) Try the SDK's aggregated .text
    try:
        t = getattr(resp, "text", None)
        if t:
            return t
    except Exception:
        # .text raises ValueError when a chunk carries no text parts
        pass

    # 2) Fallback: manually join candidate parts' text
    texts = []
    for cand in getattr(resp, "candidates", []) or []:
        content = getattr(cand, "content", None)
        parts = getattr(content, "parts", None) if content else None
        if parts:
            for p in parts:
                pt = getattr(p, "text", None)
                if pt:
                    texts.append(pt)
    return "".join(texts)


def _model(settings: GeminiSettings, model: Optional[str], system_instruction: Optional[str]):
    if not settings.api_key:
        raise NarrativeError(
            "Missing GEMINI_TOKEN in environment. "
            "Create one in Google AI Studio and set it in your .env."
        )
    genai.configure(api_key=settings.api_key)
    model_name = model or settings.model
    if system_instruction:
        return genai.GenerativeModel(model_name=model_name, system_instruction=system_instruction)
    return genai.GenerativeModel(model_name=model_name)


def stream_chat(
    prompt: str,
    *,
    system_instruction: Optional[str] = None,
    model: Optional[str] = None,
    temperature: Optional[float] = None,
    settings: Optional[GeminiSettings] = None,
) -> Iterator[str]:
    """
    Stream a Gemini completion as text fragments, in order.
    Raises NarrativeError for a missing key or any API failure (before or mid-stream).
    """
    settings = settings or GeminiSettings.from_env()
    gmodel = _model(settings, model, system_instruction)
    temp = settings.temperature if temperature is None else temperature
    gen_cfg = {"temperature": float(temp)}

    logger.info("Streaming prompt to Gemini (model=%s, length=%d)", model or settings.model, len(prompt))
    emitted = 0
    try:
        response = gmodel.generate_content(prompt, generation_config=gen_cfg, stream=True)
        for chunk in response:
            text = _extract_text(chunk)
            if text:
                emitted += len(text)
                yield text
    except Exception as e:
        logger.warning("Gemini stream failed: %s", e)
        raise NarrativeError(f"{type(e).__name__}: {e}") from e
    logger.info("Gemini stream finished (length=%d)", emitted)
