"""附件编码工具：把本地文件或字节转换成 FileRef。"""

from __future__ import annotations

import base64
from pathlib import Path
from typing import Optional, Sequence

from agent_chat.domain.exceptions import ValidationError
from agent_chat.domain.models import FileRef
from agent_chat.infrastructure.logging.logger import logger


DEFAULT_MEDIA_TYPE = "application/octet-stream"

_MEDIA_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
    ".svg": "image/svg+xml",
    ".webp": "image/webp",
    ".pdf": "application/pdf",
    ".txt": "text/plain",
    ".html": "text/html",
    ".htm": "text/html",
    ".css": "text/css",
    ".js": "text/javascript",
    ".json": "application/json",
    ".xml": "application/xml",
    ".zip": "application/zip",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".ppt": "application/vnd.ms-powerpoint",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".mp4": "video/mp4",
    ".avi": "video/x-msvideo",
    ".csv": "text/csv",
    ".md": "text/markdown",
}


def media_type_for(file_name: str) -> str:
    """根据扩展名返回 MIME 类型，未知扩展名返回 application/octet-stream。"""

    return _MEDIA_TYPES.get(Path(file_name).suffix.lower(), DEFAULT_MEDIA_TYPE)


def create_from_bytes(data: bytes, file_name: str, media_type: Optional[str] = None) -> FileRef:
    if not data:
        raise ValidationError(code="EMPTY_ATTACHMENT", message="File data cannot be empty")
    if not file_name:
        raise ValidationError(code="EMPTY_ATTACHMENT_NAME", message="File name cannot be empty")
    media = media_type or media_type_for(file_name)
    body = base64.b64encode(data).decode("ascii")
    return FileRef(
        encoded_payload=f"data:{media};base64,{body}",
        display_name=file_name,
        media_type=media,
    )


def create_from_file(path: str | Path) -> FileRef:
    file_path = Path(path).expanduser()
    if not file_path.exists() or not file_path.is_file():
        raise ValidationError(code="ATTACHMENT_NOT_FOUND", message=f"file not found: {path}")
    return create_from_bytes(file_path.read_bytes(), file_path.name)


def select_attachment(attachments: Optional[Sequence[FileRef]]) -> Optional[FileRef]:
    """Agent API 每条消息只接受一个文件：多于一个时只取第一个并记录警告。"""

    if not attachments:
        return None
    if len(attachments) > 1:
        logger.warning(
            "Multiple attachments supplied, only the first is sent",
            extra={"extra": {
                "used": attachments[0].display_name,
                "dropped": [a.display_name for a in attachments[1:]],
            }},
        )
    return attachments[0]
