"""
Pytest fixtures for the conversion service tests.
"""

import dataclasses
import io
import os
import sys
from pathlib import Path

FAKE_SOFFICE = Path(__file__).with_name("fake_soffice.py")

# Set environment variables BEFORE importing convert_service so the module
# level app in webapi is built against the fake converter.
os.environ.setdefault("SOFFICE_BIN", f"{sys.executable} {FAKE_SOFFICE}")
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import httpx
import pytest

from convert_service.config import Settings
from convert_service.conversion import ConversionService
from convert_service.conversion.adapters import HttpxRemote, SofficeConverter
from convert_service.conversion.models import UploadInput


@pytest.fixture
def fast_dir(tmp_path: Path) -> Path:
    """Workspace base directory; tests assert it is empty after each request."""
    path = tmp_path / "fast"
    path.mkdir()
    return path


@pytest.fixture
def settings(fast_dir: Path) -> Settings:
    return Settings(
        soffice_command=(sys.executable, str(FAKE_SOFFICE)),
        fast_tmp_dir=str(fast_dir),
        deadline_override=15.0,
        kill_grace_seconds=0.5,
        disconnect_poll_seconds=0.05,
        log_format="console",
        log_level="WARNING",
    )


def make_upload(content: bytes, filename: str | None = "report.docx") -> UploadInput:
    buffer = io.BytesIO(content)

    async def reader(n: int) -> bytes:
        return buffer.read(n)

    return UploadInput(reader, filename)


async def collect(body) -> bytes:
    if isinstance(body, bytes):
        return body
    chunks = []
    async for chunk in body:
        chunks.append(chunk)
    return b"".join(chunks)


def not_found(request: httpx.Request) -> httpx.Response:
    return httpx.Response(404, text="nope")


@pytest.fixture
def build_service(settings: Settings):
    """Factory: ``build_service(handler=None, **overrides)`` -> (service, converter)."""

    def build(handler=None, telemetry=None, **overrides):
        effective = dataclasses.replace(settings, **overrides)
        converter = SofficeConverter(
            effective.soffice_command,
            grace_seconds=effective.kill_grace_seconds,
            diagnostic_limit=effective.diagnostic_limit,
            telemetry=telemetry,
        )
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler or not_found))
        service = ConversionService(converter, HttpxRemote(client), settings=effective, telemetry=telemetry)
        return service, converter

    return build
