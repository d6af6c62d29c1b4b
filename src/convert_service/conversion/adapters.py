import asyncio
import os
from pathlib import Path
from typing import AsyncIterable, Mapping, Sequence

import httpx
import structlog

from ..telemetry import ACTIVE_CONVERSIONS, best_effort
from .deadline import CancelToken
from .errors import StagingError, UploadForwardingError
from .interfaces import ConverterGateway, RemoteGateway, TelemetrySink, UpstreamResponse
from .models import ConversionOutcome, Failure, InMemoryArtifact, OutputFile
from .supervisor import ProcessResult, ProcessSupervisor
from .transfer import DEFAULT_CHUNK_SIZE, read_file, transfer
from .workspace import Workspace

logger = structlog.get_logger(__name__)


class SofficeConverter(ConverterGateway):
    """Runs LibreOffice (or anything honouring its CLI) once per conversion.

    The artifact is expected at ``<workspace>/<input stem>.<target ext>``;
    its presence is the only success signal. Exit codes and stderr are kept
    for diagnostics only.
    """

    def __init__(
        self,
        command: Sequence[str] = ("soffice",),
        *,
        grace_seconds: float = 2.0,
        diagnostic_limit: int = 64 * 1024,
        verbose: bool = False,
        telemetry: TelemetrySink | None = None,
    ) -> None:
        self.command = list(command)
        self.grace_seconds = grace_seconds
        self.diagnostic_limit = diagnostic_limit
        self.verbose = verbose
        self.telemetry = telemetry
        self.active = 0
        self.peak_active = 0
        self.spawned = 0

    def build_argv(self, input_path: Path, target_format: str, workspace: Workspace) -> list[str]:
        # private profile per run; concurrent instances sharing one profile block each other
        profile = (workspace.directory / "profile").as_uri()
        return [
            *self.command,
            f"-env:UserInstallation={profile}",
            "--headless",
            "--norestore",
            "--convert-to",
            target_format,
            "--outdir",
            str(workspace.directory),
            str(input_path),
        ]

    def _track(self, delta: int) -> None:
        self.active += delta
        self.peak_active = max(self.peak_active, self.active)
        if self.telemetry is not None:
            method = self.telemetry.gauge_inc if delta > 0 else self.telemetry.gauge_dec
            best_effort("active_conversions", method, ACTIVE_CONVERSIONS, abs(delta))

    async def convert(
        self,
        input_path: Path,
        workspace: Workspace,
        source_format: str,
        target_format: str,
        token: CancelToken,
        *,
        retain: bool = True,
    ) -> ConversionOutcome:
        extension = target_format.split(":", 1)[0]
        output_path = input_path.with_name(f"{input_path.stem}.{extension}")
        supervisor = ProcessSupervisor(
            self.build_argv(input_path, target_format, workspace),
            env={**os.environ, "HOME": str(workspace.directory)},
            cwd=workspace.directory,
            grace_seconds=self.grace_seconds,
            diagnostic_limit=self.diagnostic_limit,
            echo=self.verbose,
        )
        logger.info("conversion.start", source=source_format, target=target_format)

        self.spawned += 1
        self._track(+1)
        try:
            result = await supervisor.run(token)
        finally:
            self._track(-1)

        if not await asyncio.to_thread(output_path.is_file):
            logger.warning("conversion.no_output", returncode=result.returncode, stderr=result.stderr[-500:])
            return self._failure("No output file produced", result)
        if retain:
            return OutputFile(output_path)
        try:
            content = await read_file(output_path)
        except OSError as exc:
            return self._failure("Failed to read converted file", result, cause=str(exc))
        return InMemoryArtifact(content)

    @staticmethod
    def _failure(reason: str, result: ProcessResult, cause: str | None = None) -> Failure:
        return Failure(
            reason=reason,
            stdout=result.stdout,
            stderr=result.stderr,
            exit_code=result.returncode,
            signal=result.signal,
            cause=cause,
        )


class HttpxRemote(RemoteGateway):
    """Outbound HTTP for remote inputs and forward-uploads."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def download(
        self,
        url: str,
        destination: Path,
        token: CancelToken,
        *,
        max_bytes: int | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> int:
        request = self._client.build_request("GET", url)
        try:
            response = await token.guard(self._client.send(request, stream=True))
        except httpx.HTTPError as exc:
            raise StagingError(f"failed to fetch downloadUrl: {exc}", leg="download") from exc
        try:
            if not response.is_success:
                raise StagingError(
                    f"downloadUrl responded with HTTP {response.status_code}",
                    leg="download",
                    upstream_status=response.status_code,
                )
            if response.status_code == 204:
                raise StagingError("downloadUrl returned no body", leg="download")
            size = await transfer(response.aiter_bytes(chunk_size), destination, token, max_bytes=max_bytes)
        finally:
            await response.aclose()
        logger.info("remote.downloaded", bytes=size)
        return size

    async def upload(
        self,
        url: str,
        body: bytes | AsyncIterable[bytes],
        headers: Mapping[str, str],
        token: CancelToken,
    ) -> UpstreamResponse:
        try:
            response = await token.guard(self._client.put(url, content=body, headers=dict(headers)))
        except httpx.HTTPError as exc:
            raise UploadForwardingError(f"upload to uploadUrl failed: {exc}", leg="upload") from exc
        logger.info("remote.uploaded", status=response.status_code)
        return UpstreamResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            content=response.content,
        )
