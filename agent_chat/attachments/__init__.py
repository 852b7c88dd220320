from agent_chat.attachments.file_attachment import (
    create_from_bytes,
    create_from_file,
    media_type_for,
    select_attachment,
)

__all__ = ["create_from_bytes", "create_from_file", "media_type_for", "select_attachment"]
