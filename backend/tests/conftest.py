"""Shared fixtures: synthetic images, isolated storage roots and a started service."""
import io
import struct
import zlib

import pytest
from PIL import Image

from image_service.config import Settings
from image_service.services.artifact_service import build_artifact_service


def make_image_bytes(fmt="PNG", size=(64, 48), color=(200, 30, 30), mode="RGB", **save_kwargs) -> bytes:
    """Encode a solid-colour image in ``fmt`` and return the bytes."""
    img = Image.new(mode, size, color)
    out = io.BytesIO()
    img.save(out, format=fmt, **save_kwargs)
    return out.getvalue()


def make_mpo_bytes() -> bytes:
    """Two-frame JPEG with an MPF segment, as written by many phone cameras."""
    first = Image.new("RGB", (32, 24), (10, 120, 200))
    second = Image.new("RGB", (32, 24), (200, 120, 10))
    out = io.BytesIO()
    first.save(out, format="MPO", save_all=True, append_images=[second])
    return out.getvalue()


def png_header_declaring(width: int, height: int) -> bytes:
    """A well-formed PNG header claiming ``width`` x ``height``, with no pixel data."""
    def chunk(kind: bytes, body: bytes) -> bytes:
        crc = zlib.crc32(kind + body)
        return struct.pack(">I", len(body)) + kind + body + struct.pack(">I", crc)

    ihdr = struct.pack(">IIBBBBB", width, height, 8, 2, 0, 0, 0)
    return b"\x89PNG\r\n\x1a\n" + chunk(b"IHDR", ihdr) + chunk(b"IDAT", b"") + chunk(b"IEND", b"")


def open_image(data: bytes) -> Image.Image:
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "STORAGE_ROOT": str(tmp_path / "storage"),
        "PROCESS_TIMEOUT_SECONDS": 10.0,
        "PROCESS_WORKERS": 2,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def png_bytes():
    return make_image_bytes("PNG")


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
async def service(settings):
    svc = build_artifact_service(settings)
    await svc.start(run_sweeper=False)
    yield svc
    await svc.shutdown()
