import base64

import pytest

from agent_chat.attachments import create_from_bytes, create_from_file, media_type_for, select_attachment
from agent_chat.domain.exceptions import ValidationError


def test_media_type_lookup():
    assert media_type_for("report.PDF") == "application/pdf"
    assert media_type_for("notes.md") == "text/markdown"
    assert media_type_for("archive.unknown") == "application/octet-stream"
    assert media_type_for("no_extension") == "application/octet-stream"


def test_create_from_bytes_builds_data_uri():
    ref = create_from_bytes(b"hello", "hello.txt")
    assert ref.media_type == "text/plain"
    assert ref.display_name == "hello.txt"
    prefix, body = ref.encoded_payload.split(",", 1)
    assert prefix == "data:text/plain;base64"
    assert base64.b64decode(body) == b"hello"


def test_create_from_bytes_rejects_empty():
    with pytest.raises(ValidationError) as exc:
        create_from_bytes(b"", "a.txt")
    assert exc.value.code == "EMPTY_ATTACHMENT"
    with pytest.raises(ValidationError) as exc:
        create_from_bytes(b"x", "")
    assert exc.value.code == "EMPTY_ATTACHMENT_NAME"


def test_create_from_file(tmp_path):
    path = tmp_path / "image.png"
    path.write_bytes(b"\x89PNG")
    ref = create_from_file(path)
    assert ref.display_name == "image.png"
    assert ref.encoded_payload.startswith("data:image/png;base64,")
    with pytest.raises(ValidationError) as exc:
        create_from_file(tmp_path / "missing.txt")
    assert exc.value.code == "ATTACHMENT_NOT_FOUND"


def test_select_attachment_takes_first():
    first = create_from_bytes(b"a", "a.txt")
    second = create_from_bytes(b"b", "b.txt")
    assert select_attachment(None) is None
    assert select_attachment([]) is None
    assert select_attachment([first, second]) is first
