import asyncio
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from ..config import Settings
from ..telemetry import (
    CONVERSION_DURATION,
    CONVERSION_FAILURE,
    CONVERSION_SUCCESS,
    REQUEST_DURATION,
    REQUESTS_IN_FLIGHT,
    REQUESTS_RECEIVED,
    NullTelemetry,
    best_effort,
)
from .deadline import CancelToken, with_deadline
from .errors import ConversionFailure, ConvertServiceError, UploadForwardingError
from .filenames import content_disposition, content_type_for, filter_upstream_headers
from .interfaces import ConverterGateway, RemoteGateway, TelemetrySink
from .limiter import AdmissionLimiter
from .models import (
    ConversionOutcome,
    ConversionRequest,
    ConversionResponse,
    Failure,
    InMemoryArtifact,
    OutputFile,
    PipelineState,
    StreamOutput,
    UploadInput,
)
from .transfer import iter_reader, stream_file, transfer
from .workspace import Workspace, acreate_workspace

logger = structlog.get_logger(__name__)


@dataclass
class PipelineRun:
    """Per-request bookkeeping: the current state and the workspace it owns."""

    request: ConversionRequest
    request_id: str
    state: PipelineState = PipelineState.IDLE
    workspace: Workspace | None = None
    history: list[PipelineState] = field(default_factory=list)

    def advance(self, state: PipelineState) -> None:
        logger.debug("pipeline.state", previous=self.state.value, state=state.value)
        self.history.append(self.state)
        self.state = state


class ConversionService:
    """Core domain service orchestrating one conversion per request.

    This service is framework-agnostic. The HTTP layer hands it a validated
    ``ConversionRequest`` and gets a ``ConversionResponse`` back; converter,
    remote endpoints and telemetry are reached through gateways.
    """

    def __init__(
        self,
        converter: ConverterGateway,
        remote: RemoteGateway,
        *,
        settings: Settings | None = None,
        telemetry: TelemetrySink | None = None,
        limiter: AdmissionLimiter | None = None,
    ) -> None:
        self._converter = converter
        self._remote = remote
        self._settings = settings or Settings()
        self._telemetry: TelemetrySink = telemetry or NullTelemetry()
        self._limiter = limiter or AdmissionLimiter(self._settings.concurrency_limit)
        self._deadline = self._settings.deadline_seconds

    @property
    def limiter(self) -> AdmissionLimiter:
        return self._limiter

    @property
    def telemetry(self) -> TelemetrySink:
        return self._telemetry

    @property
    def deadline_seconds(self) -> float:
        return self._deadline

    def _emit(self, method: str, name: str, value: float, request: ConversionRequest) -> None:
        fn = getattr(self._telemetry, method)
        best_effort(name, fn, name, value, {"endpoint": request.endpoint})

    async def handle(self, request: ConversionRequest, cancel: CancelToken | None = None) -> ConversionResponse:
        """Run the whole pipeline for ``request``. Never raises.

        ``cancel`` is the caller's token (e.g. fired on client disconnect);
        it propagates into whichever deadline scope is active.
        """
        run = PipelineRun(request=request, request_id=uuid.uuid4().hex[:12])
        started = time.monotonic()
        self._emit("counter_inc", REQUESTS_RECEIVED, 1, request)
        self._emit("gauge_inc", REQUESTS_IN_FLIGHT, 1, request)
        with structlog.contextvars.bound_contextvars(request_id=run.request_id):
            try:
                response = await self._run(run, cancel)
                run.advance(PipelineState.DONE)
                return response
            except ConvertServiceError as exc:
                run.advance(PipelineState.FAILED)
                logger.info("pipeline.failed", error=exc.code, message=exc.message)
                return ConversionResponse(exc.status_code, {}, exc.to_payload())
            except Exception as exc:
                run.advance(PipelineState.FAILED)
                logger.exception("pipeline.unexpected_error")
                return ConversionResponse(500, {}, {"error": "internal_error", "message": str(exc)})
            finally:
                self._emit("gauge_dec", REQUESTS_IN_FLIGHT, 1, request)
                self._emit("histogram_observe", REQUEST_DURATION, time.monotonic() - started, request)
                sample = getattr(self._telemetry, "sample_process_memory", None)
                if sample is not None:
                    best_effort("process_memory", sample, {"endpoint": request.endpoint})

    async def _run(self, run: PipelineRun, cancel: CancelToken | None) -> ConversionResponse:
        request = run.request
        workspace = await acreate_workspace(self._settings.fast_tmp_dir, self._settings.tmp_prefix)
        run.workspace = workspace
        try:
            run.advance(PipelineState.INPUT_STAGING)
            input_path = await self._stage_input(request, workspace, cancel)

            run.advance(PipelineState.CONVERTING)
            outcome = await self._convert(request, input_path, workspace, cancel)

            run.advance(PipelineState.OUTPUT_DISPATCH)
            return await self._dispatch(request, outcome, workspace, cancel)
        finally:
            run.advance(PipelineState.CLEANUP)
            # no-op when ownership was handed to a response stream
            await workspace.release()

    async def _stage_input(self, request: ConversionRequest, workspace: Workspace, cancel: CancelToken | None) -> Path:
        input_path = workspace.path_for(request.source_format)
        source = request.source
        chunk_size = self._settings.chunk_size
        max_bytes = self._settings.max_upload_bytes

        async def stage(token: CancelToken) -> int:
            if isinstance(source, UploadInput):
                return await transfer(iter_reader(source.reader, chunk_size), input_path, token, max_bytes=max_bytes)
            return await self._remote.download(
                source.url, input_path, token, max_bytes=max_bytes, chunk_size=chunk_size
            )

        size = await with_deadline(stage, self._deadline, cancel, label="input staging")
        logger.info("pipeline.staged", bytes=size, mode="upload" if isinstance(source, UploadInput) else "remote")
        return input_path

    async def _convert(
        self,
        request: ConversionRequest,
        input_path: Path,
        workspace: Workspace,
        cancel: CancelToken | None,
    ) -> ConversionOutcome:
        retain = self._settings.retain_output_on_disk

        async def invoke(token: CancelToken) -> ConversionOutcome:
            return await self._converter.convert(
                input_path, workspace, request.source_format, request.target_format, token, retain=retain
            )

        async def admitted() -> ConversionOutcome:
            started = time.monotonic()
            try:
                outcome = await with_deadline(invoke, self._deadline, cancel, label="conversion")
            except Exception:
                self._emit("counter_inc", CONVERSION_FAILURE, 1, request)
                raise
            finally:
                self._emit("histogram_observe", CONVERSION_DURATION, time.monotonic() - started, request)
            kind = CONVERSION_FAILURE if isinstance(outcome, Failure) else CONVERSION_SUCCESS
            self._emit("counter_inc", kind, 1, request)
            return outcome

        # a caller that goes away while queued gives up its place in line
        if cancel is not None:
            await cancel.guard(self._limiter.acquire())
        else:
            await self._limiter.acquire()
        # the slot is held only until the converter process has exited
        try:
            return await admitted()
        finally:
            self._limiter.release()

    async def _dispatch(
        self,
        request: ConversionRequest,
        outcome: ConversionOutcome,
        workspace: Workspace,
        cancel: CancelToken | None,
    ) -> ConversionResponse:
        if isinstance(outcome, Failure):
            raise ConversionFailure(
                outcome.reason,
                stdout=outcome.stdout,
                stderr=outcome.stderr,
                exit_code=outcome.exit_code,
                signal=outcome.signal,
                cause=outcome.cause,
            )

        extension = request.target_extension
        headers = {
            "content-type": content_type_for(extension),
            "content-disposition": content_disposition(request.suggested_name, extension),
        }

        if isinstance(request.sink, StreamOutput):
            if isinstance(outcome, InMemoryArtifact):
                await workspace.release()
                return ConversionResponse(200, headers, outcome.content)
            return await self._stream_to_caller(outcome, headers, workspace)

        if isinstance(outcome, InMemoryArtifact):
            await workspace.release()
            body: bytes | object = outcome.content
        else:
            size = (await asyncio.to_thread(outcome.path.stat)).st_size
            headers["content-length"] = str(size)
            body = stream_file(outcome.path, self._settings.chunk_size)
        return await self._forward(request, body, headers, cancel)

    async def _stream_to_caller(self, artifact: OutputFile, headers: dict[str, str], workspace: Workspace) -> ConversionResponse:
        size = (await asyncio.to_thread(artifact.path.stat)).st_size
        headers["content-length"] = str(size)
        # the response stream becomes the workspace owner and releases it when it ends
        owner = workspace.hand_off()
        body = stream_file(artifact.path, self._settings.chunk_size, on_close=owner.release)
        return ConversionResponse(200, headers, body, on_close=owner.release)

    async def _forward(
        self,
        request: ConversionRequest,
        body: object,
        headers: dict[str, str],
        cancel: CancelToken | None,
    ) -> ConversionResponse:
        url = request.sink.url  # type: ignore[union-attr]

        async def put(token: CancelToken):
            return await self._remote.upload(url, body, headers, token)  # type: ignore[arg-type]

        upstream = await with_deadline(put, self._deadline, cancel, label="upload forwarding")
        if not upstream.is_success:
            raise UploadForwardingError(
                f"uploadUrl responded with HTTP {upstream.status_code}",
                leg="upload",
                upstream_status=upstream.status_code,
            )
        forwarded = filter_upstream_headers(upstream.headers, len(upstream.content))
        return ConversionResponse(upstream.status_code, forwarded, upstream.content)
