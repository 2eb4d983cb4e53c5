"""Speech-to-Text service with multiple provider support.

Supports:
- local : on-device faster-whisper (alias: web-speech), no network needed
- openai: OpenAI Whisper over HTTPS (alias: cloud)

"auto" tries local first and falls back to the cloud. Every attempt is
bounded by a timeout and each provider is tried at most once per call.
"""

import asyncio
import logging
import math
from typing import Optional, Protocol

import httpx

from app.core.config import settings
from app.core.exceptions import (
    NoTranscriptionProviderAvailable,
    TranscriptionError,
)
from app.schemas.communication import TranscriptionResult
from app.voice.audio import MAX_AUDIO_BYTES, SAMPLE_RATE, decode_to_waveform, filename_for, mime_type_for

try:
    from faster_whisper import WhisperModel
except ImportError:
    WhisperModel = None

logger = logging.getLogger(__name__)

PROVIDER_ALIASES = {
    "local": "local",
    "web-speech": "local",
    "openai": "openai",
    "cloud": "openai",
}
AUTO_ORDER = ("local", "openai")


class STTProvider(Protocol):
    name: str

    def is_available(self) -> bool: ...

    async def transcribe(self, audio_bytes: bytes, language: Optional[str]) -> TranscriptionResult: ...


class LocalWhisperProvider:
    """faster-whisper running on CPU with 8-bit weights."""

    name = "local"

    def __init__(self, model_id: str = None):
        self.model_id = model_id or settings.LOCAL_WHISPER_MODEL
        self._model = None

    def is_available(self) -> bool:
        return WhisperModel is not None

    def _get_model(self):
        if self._model is None:
            if WhisperModel is None:
                raise NoTranscriptionProviderAvailable("faster-whisper not installed")
            self._model = WhisperModel(self.model_id, device="cpu", compute_type="int8")
        return self._model

    def _run(self, audio_bytes: bytes, language: Optional[str]) -> TranscriptionResult:
        waveform = decode_to_waveform(audio_bytes)
        model = self._get_model()
        segments, info = model.transcribe(waveform, language=language or None, vad_filter=True)
        segments = list(segments)
        text = " ".join(s.text.strip() for s in segments).strip()
        if not text:
            raise TranscriptionError("no speech detected")

        # avg_logprob is a per-segment log probability; exp() maps it back to 0..1
        confidences = [math.exp(s.avg_logprob) for s in segments if s.avg_logprob is not None]
        confidence = sum(confidences) / len(confidences) if confidences else 0.0

        return TranscriptionResult(
            text=text,
            language=getattr(info, "language", None) or language,
            confidence=round(min(max(confidence, 0.0), 1.0), 3),
            duration_seconds=getattr(info, "duration", None) or len(waveform) / SAMPLE_RATE,
            provider=self.name,
        )

    async def transcribe(self, audio_bytes: bytes, language: Optional[str]) -> TranscriptionResult:
        # Model inference is CPU bound; keep the event loop free
        return await asyncio.to_thread(self._run, audio_bytes, language)


class OpenAIWhisperProvider:
    """OpenAI Whisper STT implementation (batch transcription)."""

    name = "openai"

    def __init__(self, api_key: str = None, base_url: str = None, model: str = None):
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.base_url = (base_url or settings.OPENAI_BASE_URL).rstrip("/")
        self.model = model or settings.OPENAI_TRANSCRIPTION_MODEL

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def transcribe(self, audio_bytes: bytes, language: Optional[str]) -> TranscriptionResult:
        if not self.api_key:
            raise NoTranscriptionProviderAvailable("OPENAI_API_KEY not set")

        headers = {"Authorization": f"Bearer {self.api_key}"}
        # Whisper requires multipart/form-data
        files = {"file": (filename_for(audio_bytes), audio_bytes, mime_type_for(audio_bytes))}
        data = {"model": self.model, "response_format": "verbose_json"}
        if language:
            data["language"] = language

        async with httpx.AsyncClient(timeout=60.0) as client:
            resp = await client.post(
                f"{self.base_url}/audio/transcriptions", files=files, data=data, headers=headers,
            )
            resp.raise_for_status()
            result = resp.json()

        text = (result.get("text") or "").strip()
        if not text:
            raise TranscriptionError("no speech detected")

        segments = result.get("segments") or []
        logprobs = [s["avg_logprob"] for s in segments if s.get("avg_logprob") is not None]
        confidence = sum(math.exp(lp) for lp in logprobs) / len(logprobs) if logprobs else 0.9

        return TranscriptionResult(
            text=text,
            language=result.get("language", language),
            confidence=round(min(max(confidence, 0.0), 1.0), 3),
            duration_seconds=result.get("duration"),
            provider=self.name,
        )


class Transcriber:
    """Provider fallback chain with a per-attempt timeout."""

    def __init__(self, providers: list = None, timeout: float = None, language: Optional[str] = None):
        if providers is None:
            providers = [LocalWhisperProvider(), OpenAIWhisperProvider()]
        self.providers = {p.name: p for p in providers}
        self.timeout = timeout if timeout is not None else settings.TRANSCRIPTION_TIMEOUT_SECONDS
        self.language = language if language is not None else (settings.TRANSCRIPTION_LANGUAGE or None)

    def _chain(self, provider: str) -> list:
        if provider == "auto":
            names = AUTO_ORDER
        elif provider in PROVIDER_ALIASES:
            names = (PROVIDER_ALIASES[provider],)
        else:
            raise ValueError(f"Unknown provider: {provider}")
        return [
            self.providers[n] for n in names
            if n in self.providers and self.providers[n].is_available()
        ]

    async def transcribe(
        self,
        audio_bytes: bytes,
        provider: str = "auto",
        language: Optional[str] = None,
    ) -> TranscriptionResult:
        """Transcribe audio to text.

        Raises:
            ValueError: empty or oversized audio, unknown provider name
            NoTranscriptionProviderAvailable: nothing configured for this mode
            TranscriptionError: every configured provider failed
        """
        if not audio_bytes:
            raise ValueError("Audio bytes cannot be empty")
        if len(audio_bytes) > MAX_AUDIO_BYTES:
            raise ValueError("Audio file too large (max 25MB)")

        chain = self._chain(provider)
        if not chain:
            raise NoTranscriptionProviderAvailable(
                f"No transcription provider available for mode '{provider}'"
            )

        language = language or self.language
        errors = []
        for p in chain:
            try:
                result = await asyncio.wait_for(p.transcribe(audio_bytes, language), timeout=self.timeout)
                logger.info("%s STT success: '%s...'", p.name, result.text[:50])
                return result
            except asyncio.TimeoutError:
                logger.warning("%s STT timed out after %.0fs", p.name, self.timeout)
                errors.append(f"{p.name}: timed out after {self.timeout:.0f}s")
            except Exception as e:
                logger.warning("%s STT failed: %s", p.name, e)
                errors.append(f"{p.name}: {e}")

        raise TranscriptionError(f"All STT providers failed. {'; '.join(errors)}")

