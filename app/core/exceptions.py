"""Exception types raised across the voice-to-CRM pipeline.

Services raise these; the HTTP layer maps them to status codes and the
worker loop catches them at the job boundary.
"""


class VoiceCRMError(Exception):
    """Base class for pipeline errors."""


# --- transcription ---------------------------------------------------------

class TranscriptionError(VoiceCRMError):
    """Every configured transcription provider failed."""


class NoTranscriptionProviderAvailable(TranscriptionError):
    """No provider is configured or installed for the requested mode."""


class AudioDecodeError(TranscriptionError):
    """Audio bytes could not be decoded into a waveform."""


# --- language model --------------------------------------------------------

class LLMError(VoiceCRMError):
    pass


class LLMUnavailableError(LLMError):
    """No LLM endpoint / key is configured."""


class LLMResponseError(LLMError):
    """The model answered, but not with what was asked for."""


class InsightParseError(LLMResponseError):
    pass


# --- approvals -------------------------------------------------------------

class ApprovalError(VoiceCRMError):
    pass


class ApprovalNotFound(ApprovalError):
    pass


class ApprovalAlreadyResolved(ApprovalError):
    pass


class ApprovalExpired(ApprovalError):
    pass


# --- execution -------------------------------------------------------------

class ExecutionError(VoiceCRMError):
    pass


class EntityNotFound(ExecutionError):
    pass


class UnsupportedAction(ExecutionError):
    pass


# --- chat channel ----------------------------------------------------------

class ChannelError(VoiceCRMError):
    pass


class TelegramAPIError(ChannelError):
    def __init__(self, description: str, error_code: int | None = None):
        super().__init__(f"Telegram API error {error_code}: {description}")
        self.description = description
        self.error_code = error_code


class TelegramConflictError(TelegramAPIError):
    """Another getUpdates consumer (or a webhook) holds the bot."""
