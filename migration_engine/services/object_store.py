"""Object-store client used to migrate document attachments."""

import logging
from typing import Optional

import requests

from ..errors import AttachmentMigrationError
from ..models.execution import ObjectStoreConfig

logger = logging.getLogger(__name__)


class ObjectStoreClient:
    """
    Uploads attachment payloads to an HTTP object store.

    The store accepts a multipart POST to ``/upload`` and answers with
    JSON containing ``url`` (or ``fileUrl``) for the stored object.
    """

    def __init__(self, config: ObjectStoreConfig, session: Optional[requests.Session] = None):
        """
        Initialize the client.

        Args:
            config: Object store location and credentials
            session: Pre-configured session (tests inject one)
        """
        self.config = config
        self.base_url = config.url.rstrip("/")
        self._session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        """Create a requests session with authentication."""
        session = requests.Session()
        if self.config.api_key:
            session.headers["Authorization"] = f"Bearer {self.config.api_key}"
        return session

    def upload(
        self,
        document_id: str,
        name: str,
        data: bytes,
        content_type: Optional[str] = None
    ) -> str:
        """
        Upload one attachment.

        Returns:
            URL of the stored object

        Raises:
            AttachmentMigrationError: if the store rejects the upload
        """
        content_type = content_type or "application/octet-stream"
        form = {
            "documentId": document_id,
            "contentType": content_type,
            "size": str(len(data)),
        }
        if self.config.container:
            form["container"] = self.config.container

        try:
            response = self._session.post(
                f"{self.base_url}/upload",
                files={"file": (name, data, content_type)},
                data=form,
                timeout=self.config.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except requests.exceptions.RequestException as e:
            raise AttachmentMigrationError(f"Upload of {document_id}/{name} failed: {e}") from e
        except ValueError as e:
            raise AttachmentMigrationError(f"Upload of {document_id}/{name} returned invalid JSON") from e

        url = payload.get("url") or payload.get("fileUrl")
        if not url:
            raise AttachmentMigrationError(f"Upload of {document_id}/{name} returned no URL")

        logger.debug(f"Uploaded attachment {document_id}/{name} to {url}")
        return url

    def close(self) -> None:
        self._session.close()
