"""Files attached to the next outgoing message."""

from __future__ import annotations

import base64
import mimetypes
import time
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any

from agent_session_store.config import AttachmentConfig
from agent_session_store.errors import AttachmentTooLargeError
from agent_session_store.events import STATE_CHANGED, EventBus, StateChangedEvent
from agent_session_store.logging import get_logger
from agent_session_store.models import AttachedFile

if TYPE_CHECKING:
    from agent_session_store.transport import BackendClient

logger = get_logger("attachments")

_PLAIN_NAMES = {"license", "readme", "changelog", "notice", "authors", "copying"}

_EXTENSION_TYPES = {
    "md": "text/markdown",
    "markdown": "text/markdown",
    "txt": "text/plain",
    "json": "application/json",
    "yaml": "application/x-yaml",
    "yml": "application/x-yaml",
}

# Source files are sent as plain text regardless of registered types.
_SOURCE_EXTENSIONS = {"ts", "tsx", "js", "jsx", "mjs", "cjs", "py", "rb", "sh", "bash", "zsh"}

_SUPPORTED_PREFIXES = (
    "text/",
    "image/",
    "video/",
    "audio/",
    "application/json",
    "application/xml",
    "application/pdf",
    "application/javascript",
    "application/typescript",
    "application/x-python",
    "application/x-ruby",
    "application/x-sh",
    "application/yaml",
    "application/x-yaml",
    "application/octet-stream",
)


def guess_mime_type(filename: str, declared: str | None = None) -> str:
    """Declared type if any, else a guess from the file name."""
    if declared and declared.strip():
        return declared
    name = Path(filename).name.lower()
    if name in _PLAIN_NAMES:
        return "text/plain"
    ext = name.rsplit(".", 1)[-1] if "." in name else ""
    if ext in _EXTENSION_TYPES:
        return _EXTENSION_TYPES[ext]
    if ext in _SOURCE_EXTENSIONS:
        return "text/plain"
    guessed, _ = mimetypes.guess_type(name)
    return guessed or "application/octet-stream"


def to_data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def _new_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}"


class AttachmentStore:
    """
    Attachments pending for the next message.

    Files larger than ``max_size_bytes`` raise
    :class:`AttachmentTooLargeError`; attaching the same file twice is a
    no-op.
    """

    def __init__(self, backend: BackendClient | None = None, config: AttachmentConfig | None = None) -> None:
        self.backend = backend
        self.config = config or AttachmentConfig()
        self.events = EventBus()
        self._files: list[AttachedFile] = []

    def _changed(self) -> None:
        self.events.emit_sync(STATE_CHANGED, StateChangedEvent(slice="attachments", fields=("files",)))

    @property
    def files(self) -> list[AttachedFile]:
        return list(self._files)

    def add_attached_file(
        self,
        path: str | Path,
        data: bytes | None = None,
        mime_type: str | None = None,
    ) -> AttachedFile | None:
        """
        Attach a local file. *data* defaults to the file's contents.

        Returns the attachment, or None if the same name and size is
        already attached.
        """
        filename = Path(str(path).replace("\\", "/")).name or str(path)
        if data is None:
            size = Path(path).stat().st_size
            if size > self.config.max_size_bytes:
                raise AttachmentTooLargeError(filename, size, self.config.max_size_bytes)
            data = Path(path).read_bytes()
        size = len(data)

        if any(f.filename == filename and f.size == size for f in self._files):
            logger.info('File "%s" is already attached', filename)
            return None
        if size > self.config.max_size_bytes:
            raise AttachmentTooLargeError(filename, size, self.config.max_size_bytes)

        mime = guess_mime_type(filename, mime_type)
        if not mime.startswith(_SUPPORTED_PREFIXES):
            logger.warning('File type "%s" might not be supported', mime)

        attached = AttachedFile(
            id=_new_id("file"),
            filename=filename,
            mime_type=mime,
            size=size,
            data_url=to_data_url(data, mime),
            source="local",
        )
        self._files.append(attached)
        self._changed()
        return attached

    async def add_server_file(
        self,
        path: str,
        name: str,
        content: str | None = None,
    ) -> AttachedFile | None:
        """
        Attach a file from the backend's workspace as plain text.

        Content that cannot be read is replaced by a ``[File: name]``
        placeholder.
        """
        if any(f.source == "server" and f.server_path == path for f in self._files):
            logger.info('Server file "%s" is already attached', name)
            return None

        if content is None:
            content = await self._read_server_file(path, name)

        data = content.encode("utf-8")
        if len(data) > self.config.max_size_bytes:
            raise AttachmentTooLargeError(name, len(data), self.config.max_size_bytes)

        attached = AttachedFile(
            id=_new_id("server-file"),
            filename=name,
            mime_type="text/plain",
            size=len(data),
            data_url=to_data_url(data, "text/plain"),
            source="server",
            server_path=path,
        )
        self._files.append(attached)
        self._changed()
        return attached

    async def _read_server_file(self, path: str, name: str) -> str:
        if self.backend is None:
            return f"[File: {name}]"
        slash = path.rfind("/")
        directory = path[:slash] if slash > 0 else "/"
        filename = path[slash + 1 :] if slash > 0 else path
        try:
            raw = await self.backend.read_file(filename, directory=directory)
        except Exception as e:
            logger.warning("Failed to read server file %s: %s", path, e)
            return f"[File: {name}]"
        if raw is None:
            return ""
        return raw.decode("utf-8", errors="replace")

    def remove_attached_file(self, file_id: str) -> bool:
        before = len(self._files)
        self._files = [f for f in self._files if f.id != file_id]
        if len(self._files) != before:
            self._changed()
            return True
        return False

    def clear_attached_files(self) -> None:
        if self._files:
            self._files = []
            self._changed()

    def to_payload(self) -> list[dict[str, Any]]:
        """Attachments as backend ``file`` parts."""
        return [
            {"type": "file", "mime": f.mime_type, "filename": f.filename, "url": f.data_url}
            for f in self._files
        ]
