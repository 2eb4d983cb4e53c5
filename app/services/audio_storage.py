"""Storage for raw voice-note audio.

Azure Blob when a connection string is configured, otherwise a local media
directory. Workers re-read audio from here when resuming a job, so the
channel never has to be asked for the same file twice.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from azure.core.exceptions import ResourceNotFoundError
from azure.storage.blob.aio import BlobServiceClient

from app.core.config import settings

logger = logging.getLogger(__name__)


class AudioStorage:
    """Save/load audio bytes by key ("<communication_id>.ogg")."""

    def __init__(
        self,
        connection_string: Optional[str] = None,
        container: Optional[str] = None,
        media_dir: Optional[str] = None,
    ):
        self.connection_string = connection_string if connection_string is not None else settings.AZURE_BLOB_CONNECTION_STRING
        self.container = container or settings.AZURE_BLOB_CONTAINER
        self.media_dir = Path(media_dir or settings.MEDIA_DIR)

    @property
    def backend(self) -> str:
        return "azure" if self.connection_string else "local"

    async def save(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """Store audio and return a reference (blob URL or file path)."""
        if self.connection_string:
            async with BlobServiceClient.from_connection_string(self.connection_string) as blob_service:
                container = blob_service.get_container_client(self.container)
                if not await container.exists():
                    await container.create_container()
                blob_client = container.get_blob_client(key)
                await blob_client.upload_blob(data, overwrite=True)
                logger.info("Audio uploaded: %s/%s (%d bytes)", self.container, key, len(data))
                return blob_client.url

        path = self.media_dir / key
        await asyncio.to_thread(self._write_file, path, data)
        logger.info("Audio saved: %s (%d bytes)", path, len(data))
        return str(path)

    async def load(self, key: str) -> Optional[bytes]:
        """Audio bytes, or None when nothing was stored under the key."""
        if self.connection_string:
            async with BlobServiceClient.from_connection_string(self.connection_string) as blob_service:
                blob_client = blob_service.get_blob_client(container=self.container, blob=key)
                try:
                    stream = await blob_client.download_blob()
                except ResourceNotFoundError:
                    return None
                return await stream.readall()

        path = self.media_dir / key
        if not path.exists():
            return None
        return await asyncio.to_thread(path.read_bytes)

    @staticmethod
    def _write_file(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
