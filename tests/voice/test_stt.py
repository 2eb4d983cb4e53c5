"""Tests for the Speech-to-Text fallback chain."""

import asyncio

import pytest
from unittest.mock import patch

from app.core.exceptions import NoTranscriptionProviderAvailable, TranscriptionError
from app.voice.audio import filename_for, mime_type_for, sniff_format
from app.voice.stt import OpenAIWhisperProvider, Transcriber
from tests.conftest import FakeSTTProvider


@pytest.fixture
def fake_audio_bytes():
    """Fake OGG audio data for testing."""
    return b"OggS" + b"\x00" * 32


class SlowProvider(FakeSTTProvider):
    async def transcribe(self, audio_bytes, language):
        self.calls += 1
        await asyncio.sleep(5)


@pytest.mark.asyncio
async def test_transcribe_local_success(fake_audio_bytes):
    local = FakeSTTProvider("local", text="Call Priya about the villa")
    transcriber = Transcriber(providers=[local], timeout=1)

    result = await transcriber.transcribe(fake_audio_bytes, provider="local")

    assert result.text == "Call Priya about the villa"
    assert result.provider == "local"
    assert local.calls == 1


@pytest.mark.asyncio
async def test_transcribe_auto_fallback(fake_audio_bytes):
    """Local failure falls through to the cloud provider."""
    local = FakeSTTProvider("local", error=TranscriptionError("model crashed"))
    cloud = FakeSTTProvider("openai", text="Hello from the cloud")
    transcriber = Transcriber(providers=[local, cloud], timeout=1)

    result = await transcriber.transcribe(fake_audio_bytes, provider="auto")

    assert result.provider == "openai"
    assert local.calls == 1
    assert cloud.calls == 1


@pytest.mark.asyncio
async def test_transcribe_timeout_falls_back(fake_audio_bytes):
    slow = SlowProvider("local")
    cloud = FakeSTTProvider("openai", text="on time")
    transcriber = Transcriber(providers=[slow, cloud], timeout=0.05)

    result = await transcriber.transcribe(fake_audio_bytes)

    assert result.text == "on time"


@pytest.mark.asyncio
async def test_transcribe_all_providers_fail(fake_audio_bytes):
    local = FakeSTTProvider("local", error=RuntimeError("boom"))
    cloud = FakeSTTProvider("openai", error=RuntimeError("API failed"))
    transcriber = Transcriber(providers=[local, cloud], timeout=1)

    with pytest.raises(TranscriptionError, match="All STT providers failed"):
        await transcriber.transcribe(fake_audio_bytes, provider="auto")
    # each provider tried exactly once
    assert local.calls == 1
    assert cloud.calls == 1


@pytest.mark.asyncio
async def test_transcribe_alias_selects_single_provider(fake_audio_bytes):
    local = FakeSTTProvider("local", text="local text")
    cloud = FakeSTTProvider("openai", text="cloud text")
    transcriber = Transcriber(providers=[local, cloud], timeout=1)

    result = await transcriber.transcribe(fake_audio_bytes, provider="cloud")

    assert result.text == "cloud text"
    assert local.calls == 0


@pytest.mark.asyncio
async def test_transcribe_no_provider_available(fake_audio_bytes):
    transcriber = Transcriber(providers=[FakeSTTProvider("local")], timeout=1)

    with pytest.raises(NoTranscriptionProviderAvailable):
        await transcriber.transcribe(fake_audio_bytes, provider="openai")


@pytest.mark.asyncio
async def test_transcribe_unknown_provider(fake_audio_bytes):
    transcriber = Transcriber(providers=[FakeSTTProvider("local")], timeout=1)

    with pytest.raises(ValueError, match="Unknown provider"):
        await transcriber.transcribe(fake_audio_bytes, provider="deepgram")


@pytest.mark.asyncio
async def test_transcribe_empty_audio():
    """Test that empty audio raises ValueError."""
    transcriber = Transcriber(providers=[FakeSTTProvider("local")], timeout=1)
    with pytest.raises(ValueError, match="Audio bytes cannot be empty"):
        await transcriber.transcribe(b"")


@pytest.mark.asyncio
async def test_transcribe_audio_too_large():
    """Test that audio over 25MB raises ValueError."""
    large_audio = b"x" * (26 * 1024 * 1024)  # 26MB
    transcriber = Transcriber(providers=[FakeSTTProvider("local")], timeout=1)

    with pytest.raises(ValueError, match="Audio file too large"):
        await transcriber.transcribe(large_audio)


def test_openai_provider_unavailable_without_key():
    provider = OpenAIWhisperProvider(api_key="")
    assert provider.is_available() is False


@pytest.mark.asyncio
async def test_openai_provider_not_in_chain_without_key(fake_audio_bytes):
    local = FakeSTTProvider("local", error=RuntimeError("boom"))
    transcriber = Transcriber(providers=[local, OpenAIWhisperProvider(api_key="")], timeout=1)

    with patch("app.voice.stt.httpx.AsyncClient") as mock_client:
        with pytest.raises(TranscriptionError):
            await transcriber.transcribe(fake_audio_bytes)
        mock_client.assert_not_called()


def test_sniff_format():
    assert sniff_format(b"OggS\x00\x02") == "ogg"
    assert sniff_format(b"RIFF\x00\x00\x00\x00WAVEfmt ") == "wav"
    assert sniff_format(b"\x1a\x45\xdf\xa3rest") == "webm"
    assert sniff_format(b"nothing") == "unknown"
    assert mime_type_for(b"OggS") == "audio/ogg"
    assert filename_for(b"nothing") == "audio.bin"
