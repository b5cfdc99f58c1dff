# tests/test_core/test_logger.py
import pytest

from vidgate.core.logger import redact


@pytest.mark.parametrize(
    "message, leaked",
    [
        ("grant https://cdn.example.test/v/a.mp4?Expires=1&Signature=AbC~d-_&Key-Pair-Id=K1", "AbC~d-_"),
        ("put https://s3/clips/a?X-Amz-Credential=AKIA%2F1&X-Amz-Signature=deadbeef", "deadbeef"),
        ("headers Authorization: Bearer abc.def.ghi", "abc.def.ghi"),
        ("https://watch.example.test/eyJhbGciOiJSUzI1NiJ9.eyJzdWIiOiJ2In0.c2ln/manifest/video.m3u8", "eyJzdWIiOiJ2In0"),
    ],
)
def test_redact_masks_grant_material(message, leaked):
    out = redact(message)
    assert leaked not in out
    assert "***" in out


def test_redact_keeps_ordinary_messages():
    msg = "reaped session 3f1c2b9e artifact=vid0001 bytes=1048576"
    assert redact(msg) == msg
    assert "Key-Pair-Id=K1" in redact("Signature=x&Key-Pair-Id=K1")
