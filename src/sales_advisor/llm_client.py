"""Utilities for interacting with the Google Gemini API."""
from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Optional

import google.generativeai as genai

logger = logging.getLogger(__name__)

_MODEL_NAME = os.environ.get("GEMINI_MODEL", "models/gemini-2.5-flash")
_API_KEY: Optional[str] = os.environ.get("GEMINI_API_KEY")
_initialization_error: Optional[Exception] = None
_configured = False
_MAX_TRANSCRIPT_CHARS = 20_000
_TRANSCRIBE_INSTRUCTION = "请将这段语音精准转写为文字。忽略口语中的结巴和重复，直接输出整洁的文本。"

if _API_KEY:
    try:
        genai.configure(api_key=_API_KEY)
        _configured = True
    except Exception as exc:  # pragma: no cover - depends on the client library
        _initialization_error = exc


def is_configured() -> bool:
    """Return whether AI-assisted features can be used."""
    return _configured and _initialization_error is None


def _get_model(system_prompt: Optional[str] = None) -> genai.GenerativeModel:
    if _initialization_error is not None:
        raise RuntimeError("Failed to initialize Gemini client") from _initialization_error

    if not _configured:
        raise EnvironmentError(
            "GEMINI_API_KEY is not set. Please configure the environment variable before using the LLM."
        )

    return genai.GenerativeModel(model_name=_MODEL_NAME, system_instruction=system_prompt or None)


def _response_text(response: Any) -> str:
    text = getattr(response, "text", None)
    if not text:
        raise RuntimeError("Gemini API returned an empty response.")
    return text


def _sanitize(messages: Optional[List[dict]]) -> List[dict]:
    sanitized: List[dict] = []
    for message in messages or []:
        role = message.get("role")
        content = (message.get("content") or "").strip()
        if role not in {"user", "assistant"} or not content:
            logger.debug("Skipping malformed message entry: %s", message)
            continue
        sanitized.append({"role": role, "content": content})
    return sanitized


def chat_complete(system_prompt: str, messages: List[dict]) -> str:
    """Run a multi-turn chat completion with the Gemini model.

    Args:
        system_prompt: Persona and output grammar for the conversation.
        messages: The full transcript as ``{"role", "content"}`` dicts, oldest first.

    Returns:
        The model's raw reply text.

    Raises:
        ValueError: If the system prompt or transcript is empty.
        EnvironmentError: If the API key is missing.
        RuntimeError: If the Gemini client fails to initialize or the request fails.
    """

    if not system_prompt or not system_prompt.strip():
        raise ValueError("System prompt must be provided.")

    sanitized = _sanitize(messages)
    if not sanitized:
        raise ValueError("At least one chat message is required.")

    # Oldest turns are dropped first when the transcript is too long.
    total = sum(len(entry["content"]) for entry in sanitized)
    while total > _MAX_TRANSCRIPT_CHARS and len(sanitized) > 1:
        dropped = sanitized.pop(0)
        total -= len(dropped["content"])
        logger.debug("Chat transcript exceeds limit; dropped oldest %s message", dropped["role"])

    model = _get_model(system_prompt.strip())
    contents = [
        {"role": "user" if entry["role"] == "user" else "model", "parts": [entry["content"]]}
        for entry in sanitized
    ]

    try:
        response = model.generate_content(contents)
    except Exception as exc:  # pragma: no cover - actual API errors are external
        raise RuntimeError("Gemini API request failed") from exc

    return _response_text(response)


def generate_json(prompt: str, response_schema: Any, system_prompt: Optional[str] = None) -> Dict[str, Any]:
    """Request a schema-constrained JSON reply and return it decoded."""

    if not prompt or not prompt.strip():
        raise ValueError("Prompt must be a non-empty string.")

    model = _get_model(system_prompt)
    config = genai.GenerationConfig(response_mime_type="application/json", response_schema=response_schema)

    try:
        response = model.generate_content(prompt, generation_config=config)
    except Exception as exc:  # pragma: no cover - actual API errors are external
        raise RuntimeError("Gemini API request failed") from exc

    text = _response_text(response)
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise RuntimeError("Gemini API returned malformed JSON.") from exc


def transcribe_audio(data: bytes, mime_type: str = "audio/webm") -> str:
    """Transcribe a recorded audio clip to text."""

    if not data:
        raise ValueError("Audio clip must not be empty.")

    model = _get_model()
    # The client library base64-encodes inline blobs on the wire.
    contents = [{"mime_type": mime_type or "audio/webm", "data": data}, _TRANSCRIBE_INSTRUCTION]

    try:
        response = model.generate_content(contents)
    except Exception as exc:  # pragma: no cover - actual API errors are external
        raise RuntimeError("Gemini API request failed") from exc

    text = getattr(response, "text", None) or ""
    logger.info("Transcribed audio clip (%s bytes -> %s chars)", len(data), len(text))
    return text.strip()
