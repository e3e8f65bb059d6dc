import logging
import re

import requests

from config import settings

logger = logging.getLogger(__name__)

_QUOTES = re.compile(r"^[\"']|[\"']$")


def truncate_title(title, max_length=None):
    """Cut a title to ``max_length`` on a word boundary, adding an ellipsis.

    The cut only backs up to the last space when that keeps more than half
    of the allowed length.
    """
    max_length = max_length or settings.max_title_length
    if len(title) <= max_length:
        return title

    truncated = title[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > max_length * 0.5:
        return truncated[:last_space] + "..."
    return truncated + "..."


def clean_title(raw):
    """Strip surrounding quotes and whitespace; None when nothing is left."""
    if not raw:
        return None
    cleaned = _QUOTES.sub("", raw.strip()).strip()
    if not cleaned:
        return None
    return truncate_title(cleaned)


def _ollama_generate(prompt, model=None):
    """Single non-streaming generate call. Returns the text or None."""
    data = {
        "model": model or settings.ollama_model,
        "prompt": prompt,
        "stream": False,
    }
    try:
        resp = requests.post(settings.ollama_api_url, json=data, timeout=settings.ollama_timeout_seconds)
    except requests.RequestException as e:
        logger.error(f"Ollama request failed: {e}")
        return None

    if resp.status_code != 200:
        logger.error(f"Ollama returned {resp.status_code}: {resp.text[:200]}")
        return None

    try:
        result = resp.json()
    except ValueError:
        logger.error("Ollama returned a non-JSON body")
        return None

    text = (result.get("response") or "").strip()
    if not text:
        logger.warning("Ollama returned an empty response")
        return None
    return text


def ollama_clean_text(text):
    """Turn a raw dictation transcript into readable text."""
    if not text or not text.strip():
        return None

    prompt = (
        "Clean up this dictated note so it reads well. Fix punctuation, "
        "capitalization and obvious transcription mistakes, remove filler words, "
        "and keep the original meaning and voice. Return only the cleaned text.\n\n"
        f"{text}\n\nCleaned text:"
    )
    return _ollama_generate(prompt)


def ollama_generate_narrative(text):
    """Rewrite a spoken story transcript as a first-person narrative."""
    if not text or not text.strip():
        return None

    prompt = (
        "Rewrite this spoken story as a well-structured first-person narrative. "
        "Keep every fact and the speaker's voice, organise it into paragraphs, "
        "and do not invent details. Return only the narrative.\n\n"
        f"{text}\n\nNarrative:"
    )
    return _ollama_generate(prompt)


def ollama_generate_title(text, kind="moment"):
    """Generate a title for a memory; None when the model gives nothing usable."""
    if not text or not text.strip():
        return None

    if kind == "story":
        guidance = "for this story narrative. The title should capture the essence and emotion of the story."
    else:
        guidance = (
            f"for a brief {kind} based on this text. The title should be descriptive "
            "but brief, capturing the essence of what happened."
        )
    prompt = (
        f"Generate a concise, engaging title (maximum {settings.max_title_length} characters) "
        f"{guidance} Return only the title text, nothing else.\n\n{text[:2000]}\n\nTitle:"
    )
    return clean_title(_ollama_generate(prompt, model=settings.title_generation_model))
