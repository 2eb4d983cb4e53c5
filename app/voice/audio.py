"""Audio helpers: container sniffing and waveform normalisation.

Voice notes arrive as OGG/Opus (bot), WebM (browser microphone) or whatever
the user uploaded. The local recogniser wants 16 kHz mono float samples, so
everything goes through decode_to_waveform first.
"""

import io
import logging

from app.core.exceptions import AudioDecodeError

try:
    from faster_whisper.audio import decode_audio
except ImportError:
    decode_audio = None

logger = logging.getLogger(__name__)

SAMPLE_RATE = 16000
MAX_AUDIO_BYTES = 25 * 1024 * 1024  # 25MB limit

_MIME_TYPES = {
    "ogg": "audio/ogg",
    "wav": "audio/wav",
    "mp3": "audio/mpeg",
    "webm": "audio/webm",
    "m4a": "audio/mp4",
    "flac": "audio/flac",
}


def sniff_format(data: bytes) -> str:
    """Guess the container from magic bytes. Returns 'unknown' when unsure."""
    if data.startswith(b"OggS"):
        return "ogg"
    if data[:4] == b"RIFF" and data[8:12] == b"WAVE":
        return "wav"
    if data.startswith(b"ID3") or (len(data) > 1 and data[0] == 0xFF and data[1] & 0xE0 == 0xE0):
        return "mp3"
    if data.startswith(b"\x1a\x45\xdf\xa3"):
        return "webm"
    if data[4:8] == b"ftyp":
        return "m4a"
    if data.startswith(b"fLaC"):
        return "flac"
    return "unknown"


def mime_type_for(data: bytes) -> str:
    return _MIME_TYPES.get(sniff_format(data), "application/octet-stream")


def filename_for(data: bytes) -> str:
    fmt = sniff_format(data)
    return f"audio.{fmt if fmt != 'unknown' else 'bin'}"


def decode_to_waveform(data: bytes):
    """Decode any supported container into a 16 kHz mono float32 array.

    Raises AudioDecodeError when the bytes cannot be decoded.
    """
    if decode_audio is None:
        raise AudioDecodeError("faster-whisper is not installed; cannot decode audio locally")
    try:
        waveform = decode_audio(io.BytesIO(data), sampling_rate=SAMPLE_RATE)
    except Exception as e:
        raise AudioDecodeError(f"could not decode {sniff_format(data)} audio: {e}") from e
    if waveform is None or len(waveform) == 0:
        raise AudioDecodeError("decoded audio is empty")
    logger.debug("Decoded %s audio: %.1fs", sniff_format(data), len(waveform) / SAMPLE_RATE)
    return waveform
