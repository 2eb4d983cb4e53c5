"""
Application configuration.
Secrets are loaded from Azure Key Vault via Managed Identity at startup when
KEY_VAULT_NAME is set, then fallen back to environment variables / .env file
so local development still works without Key Vault access.
"""
import os
import logging
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key Vault → environment variable mapping
# Secret names in Key Vault use lowercase-dashes; env vars use UPPER_SNAKE.
# ---------------------------------------------------------------------------
_KV_TO_ENV: dict[str, str] = {
    "database-url":              "DATABASE_URL",
    "openai-api-key":            "OPENAI_API_KEY",
    "azure-openai-api-key":      "AZURE_OPENAI_API_KEY",
    "azure-openai-endpoint":     "AZURE_OPENAI_ENDPOINT",
    "telegram-bot-token":        "TELEGRAM_BOT_TOKEN",
    "telegram-webhook-secret":   "TELEGRAM_WEBHOOK_SECRET",
    "storage-connection-string": "AZURE_BLOB_CONNECTION_STRING",
}


def _load_from_key_vault(vault_name: str) -> int:
    """
    Fetch secrets from Azure Key Vault and inject them into os.environ.
    Returns the number of secrets successfully loaded.
    """
    try:
        from azure.identity import ManagedIdentityCredential, DefaultAzureCredential
        from azure.keyvault.secrets import SecretClient
        from azure.core.exceptions import ResourceNotFoundError

        vault_url = f"https://{vault_name}.vault.azure.net/"

        # ManagedIdentityCredential works on the VM; DefaultAzureCredential
        # also covers local dev (az login, VS Code, etc.)
        try:
            credential = ManagedIdentityCredential()
            credential.get_token("https://vault.azure.net/.default")
        except Exception:
            credential = DefaultAzureCredential()

        client = SecretClient(vault_url=vault_url, credential=credential)
        loaded = 0

        for kv_name, env_name in _KV_TO_ENV.items():
            try:
                secret = client.get_secret(kv_name)
                if secret.value:
                    os.environ[env_name] = secret.value
                    loaded += 1
            except ResourceNotFoundError:
                pass
            except Exception as e:
                logger.warning("KV: could not load '%s': %s", kv_name, e)

        return loaded

    except ImportError:
        logger.warning("azure-keyvault-secrets / azure-identity not installed; skipping Key Vault load.")
        return 0
    except Exception as e:
        logger.warning("Key Vault load failed (%s); falling back to environment / .env file.", e)
        return 0


# ---------------------------------------------------------------------------
# Load from Key Vault before Pydantic reads env vars
# ---------------------------------------------------------------------------
_kv_name = os.environ.get("KEY_VAULT_NAME", "")
if _kv_name:
    _n = _load_from_key_vault(_kv_name)
    if _n:
        logger.info("Loaded %d secrets from Key Vault '%s'", _n, _kv_name)


# ---------------------------------------------------------------------------
# Pydantic Settings: reads from os.environ (now populated from KV above)
# ---------------------------------------------------------------------------
class Settings(BaseSettings):
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    DATABASE_URL: str
    KEY_VAULT_NAME: str = ""

    # Tenant used for records that arrive without one (bot messages)
    DEFAULT_ORGANIZATION_ID: str = "default"
    # Local clock for auto-approval time windows and daily caps
    BUSINESS_TIMEZONE: str = "Asia/Kolkata"

    # LLM (OpenAI-compatible chat completions, or Azure OpenAI when its endpoint is set)
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    LLM_MODEL: str = "gpt-4o-mini"
    LLM_TIMEOUT_SECONDS: float = 30.0
    AZURE_OPENAI_API_KEY: str = ""
    AZURE_OPENAI_ENDPOINT: str = ""
    AZURE_OPENAI_API_VERSION: str = "2024-02-01"
    AZURE_OPENAI_CHAT_DEPLOYMENT: str = "gpt-4o-mini"

    # Transcription: local | web-speech | openai | cloud | auto
    TRANSCRIPTION_PROVIDER: str = "auto"
    TRANSCRIPTION_TIMEOUT_SECONDS: float = 30.0
    TRANSCRIPTION_LANGUAGE: str = ""
    LOCAL_WHISPER_MODEL: str = "Systran/faster-whisper-base"
    OPENAI_TRANSCRIPTION_MODEL: str = "whisper-1"

    # Telegram bot
    TELEGRAM_BOT_TOKEN: str = ""
    TELEGRAM_API_BASE: str = "https://api.telegram.org"
    TELEGRAM_WEBHOOK_SECRET: str = ""
    TELEGRAM_POLLING_ENABLED: bool = False
    TELEGRAM_POLL_TIMEOUT: int = 25
    TELEGRAM_ALLOWED_CHAT_IDS: str = ""     # comma-separated, empty = everyone
    TELEGRAM_ALLOWED_USERNAMES: str = ""    # comma-separated, without '@'

    # Background loops
    PIPELINE_WORKERS_ENABLED: bool = True
    WORKER_POLL_INTERVAL_SECONDS: float = 5.0
    WORKER_BATCH_SIZE: int = 5
    JOB_MAX_RETRIES: int = 3
    ACTION_SWEEP_INTERVAL_SECONDS: float = 5.0
    ACTION_BATCH_SIZE: int = 5
    ACTION_MAX_RETRIES: int = 3

    # Lifetimes
    DECISION_TTL_HOURS: int = 24
    APPROVAL_TTL_HOURS: int = 24

    # Audio storage
    AZURE_BLOB_CONNECTION_STRING: str = ""
    AZURE_BLOB_CONTAINER: str = "voice-notes"
    MEDIA_DIR: str = "media"

    class Config:
        env_file = ".env"

    @property
    def telegram_allowed_chat_ids(self) -> set[str]:
        return {c.strip() for c in self.TELEGRAM_ALLOWED_CHAT_IDS.split(",") if c.strip()}

    @property
    def telegram_allowed_usernames(self) -> set[str]:
        return {
            u.strip().lstrip("@").lower()
            for u in self.TELEGRAM_ALLOWED_USERNAMES.split(",")
            if u.strip()
        }


settings = Settings()
