from __future__ import annotations

import asyncio
import base64
import logging
import os
import random
import re
from dataclasses import dataclass
from typing import Any

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI

from tamilsubs.core.errors import InvalidInput, UpstreamFailure
from tamilsubs.core.settings import settings

logger = logging.getLogger(__name__)


OUTPUT_LANGUAGES = ("Thanglish", "English")
LINE_OPTIONS = ("Single", "Double")
SINGLE_WORD_MAX_LENGTH = 10
MAX_BLOCK_SECONDS = 7
MAX_AUDIO_BYTES = 20 * 1024 * 1024

_AUDIO_FORMATS = {
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/wave": "wav",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/aac": "aac",
    "audio/ogg": "ogg",
    "audio/flac": "flac",
    "audio/x-flac": "flac",
    "audio/aiff": "aiff",
    "audio/x-aiff": "aiff",
}

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*\n?|\n?```\s*$")


@dataclass(frozen=True)
class SubtitlePreferences:
    max_length: int = 7
    min_duration: float = 0.1
    gap: int = 0
    lines: str = "Single"

    def validated(self) -> "SubtitlePreferences":
        if not 7 <= int(self.max_length) <= 80:
            raise InvalidInput("maxLength must be between 7 and 80")
        if not 0.1 <= float(self.min_duration) <= 10:
            raise InvalidInput("minDuration must be between 0.1 and 10")
        if not 0 <= int(self.gap) <= 10:
            raise InvalidInput("gap must be between 0 and 10")
        if self.lines not in LINE_OPTIONS:
            raise InvalidInput("lines must be Single or Double")
        return self

    @property
    def single_word_mode(self) -> bool:
        return int(self.max_length) <= SINGLE_WORD_MAX_LENGTH


def normalize_language(value: str | None) -> str:
    raw = (value or "").strip().lower()
    for lang in OUTPUT_LANGUAGES:
        if raw == lang.lower():
            return lang
    raise InvalidInput("language must be Thanglish or English")


def audio_format_for(mime_type: str | None) -> str:
    mt = (mime_type or "").split(";")[0].strip().lower()
    fmt = _AUDIO_FORMATS.get(mt)
    if fmt is None:
        raise InvalidInput(f"Unsupported audio type: {mt or 'unknown'}")
    return fmt


def language_instruction(language: str) -> str:
    if language == "Thanglish":
        return (
            "Convert the transcribed Tamil speech into Thanglish, i.e. Tamil written with the English alphabet. "
            "The output must be a pure Thanglish transliteration."
        )
    return "Translate the transcribed Tamil speech into standard, natural-sounding English."


def _output_rules() -> str:
    return (
        "## Output format\n"
        "Return ONLY the raw SRT file content. No explanations, no markdown fences. "
        "Start directly with sequence number 1.\n"
    )


def _timing_rules() -> str:
    return (
        "## Timing rules (strict)\n"
        "- The end timestamp of a block is the exact millisecond the last word in it stops sounding.\n"
        "- Never extend a block into the silence that follows it.\n"
        "- In continuous speech there is no gap: a block ends exactly where the next one starts.\n"
    )


def build_prompt(language: str, preferences: SubtitlePreferences) -> str:
    instruction = language_instruction(language)
    if preferences.single_word_mode:
        return (
            "You create SRT subtitle files from Tamil audio in word-by-word mode: every spoken word gets its "
            "own subtitle block with its own timestamp.\n\n"
            + _timing_rules()
            + "- Ignore the minimum duration, maximum length, line and gap preferences entirely. A word that is "
            "spoken for 200ms stays on screen for 200ms.\n"
            "- One word per block. Never group words.\n\n"
            "## Workflow\n"
            "1. Find the start and end time of every spoken word.\n"
            f"2. Transcribe each word and process it: {instruction}\n"
            "3. Build one SRT block per word from those timestamps.\n\n"
            + _output_rules()
        )
    line_label = "single" if preferences.lines == "Single" else "double"
    return (
        "You create accurately synchronized SRT subtitle files from Tamil audio. Timing accuracy always comes "
        "before formatting preferences.\n\n"
        + _timing_rules()
        + "- No hyphens anywhere in the subtitle text.\n\n"
        "## Formatting preferences (apply only when they do not compromise timing)\n"
        f"- Maximum characters per block: {int(preferences.max_length)}. A single longer word stands alone.\n"
        f"- Minimum duration: {float(preferences.min_duration):g} seconds. Use the real, shorter duration when "
        "speech is faster; never pad.\n"
        f"- Lines per block: {line_label}.\n"
        f"- Gap between captions: {int(preferences.gap)} frames, only during natural pauses.\n"
        f"- No block stays on screen longer than {MAX_BLOCK_SECONDS} seconds; split longer sentences.\n\n"
        "## Language\n"
        f"After transcribing each segment: {instruction}\n\n"
        + _output_rules()
    )


def clean_srt(text: str) -> str:
    raw = (text or "").strip()
    if raw.startswith("```"):
        raw = _FENCE_RE.sub("", raw).strip()
    return raw


class SubtitleGenerator:
    def __init__(
        self,
        *,
        api_key: str,
        base_url: str | None,
        model: str,
        temperature: float,
        client: Any | None = None,
    ) -> None:
        if client is None:
            kwargs: dict[str, Any] = {"api_key": api_key}
            if base_url:
                kwargs["base_url"] = base_url
            kwargs["http_client"] = httpx.AsyncClient(timeout=httpx.Timeout(180.0))
            client = AsyncOpenAI(**kwargs)
        self._client = client
        self._model = model
        self._temperature = temperature

    def build_messages(
        self,
        *,
        audio: bytes,
        mime_type: str | None,
        language: str,
        preferences: SubtitlePreferences,
    ) -> list[dict[str, Any]]:
        fmt = audio_format_for(mime_type)
        return [
            {
                "role": "user",
                "content": [
                    {
                        "type": "input_audio",
                        "input_audio": {"data": base64.b64encode(audio).decode("ascii"), "format": fmt},
                    },
                    {"type": "text", "text": build_prompt(language, preferences)},
                ],
            }
        ]

    async def generate(
        self,
        *,
        audio: bytes,
        mime_type: str | None,
        language: str,
        preferences: SubtitlePreferences,
    ) -> str:
        messages = self.build_messages(audio=audio, mime_type=mime_type, language=language, preferences=preferences)
        max_retries = max(1, int(os.getenv("LLM_MAX_RETRIES", "3") or "3"))
        base_sleep_s = float(os.getenv("LLM_RETRY_BASE_S", "0.7") or "0.7")

        for attempt in range(1, max_retries + 1):
            try:
                response = await self._client.chat.completions.create(
                    model=self._model,
                    messages=messages,
                    temperature=self._temperature,
                )
                break
            except APIStatusError as e:
                status = getattr(e, "status_code", None)
                if status in {408, 409, 425, 429, 500, 502, 503, 504} and attempt < max_retries:
                    await asyncio.sleep(min(15.0, base_sleep_s * (2 ** (attempt - 1)) + random.random() * 0.25))
                    continue
                logger.warning("transcription.upstream_error model=%s status=%s", self._model, status)
                raise UpstreamFailure("Subtitle generation failed", provider="llm", status_code=502) from e
            except (APIConnectionError, APITimeoutError) as e:
                if attempt < max_retries:
                    await asyncio.sleep(min(15.0, base_sleep_s * (2 ** (attempt - 1)) + random.random() * 0.25))
                    continue
                logger.warning("transcription.unreachable model=%s error=%s", self._model, type(e).__name__)
                raise UpstreamFailure("Subtitle generation failed", provider="llm", status_code=502) from e

        usage = getattr(response, "usage", None)
        logger.info(
            "transcription.done model=%s language=%s single_word=%s bytes=%s prompt_tokens=%s completion_tokens=%s",
            self._model,
            language,
            preferences.single_word_mode,
            len(audio),
            getattr(usage, "prompt_tokens", None),
            getattr(usage, "completion_tokens", None),
        )
        choices = getattr(response, "choices", None) or []
        content = choices[0].message.content if choices else None
        srt = clean_srt(content or "")
        if not srt:
            raise UpstreamFailure("Subtitle generation returned no content", provider="llm", status_code=502)
        return srt


def generator_from_settings() -> SubtitleGenerator:
    if not settings.llm_api_key:
        raise UpstreamFailure("Transcription is not configured", provider="llm", status_code=503)
    return SubtitleGenerator(
        api_key=settings.llm_api_key,
        base_url=settings.llm_base_url,
        model=settings.llm_model,
        temperature=settings.llm_temperature,
    )
