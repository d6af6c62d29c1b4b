import asyncio
import json
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST
from starlette.background import BackgroundTask
from starlette.datastructures import UploadFile

from . import __version__
from .config import Settings
from .conversion import ConversionService, ConvertServiceError, build_request
from .conversion.adapters import HttpxRemote, SofficeConverter
from .conversion.deadline import CancelToken
from .conversion.errors import OperationCancelled, UnsupportedContentType, ValidationError
from .conversion.limiter import AdmissionLimiter
from .conversion.models import ConversionRequest, ConversionResponse, UploadInput
from .logging import configure_logging
from .telemetry import MetricsPusher, PrometheusTelemetry

logger = structlog.get_logger(__name__)

SERVICE_NAME = "convert-service"
STREAM_TRUE = {"1", "true", "yes"}


def create_app(settings: Settings | None = None, service: ConversionService | None = None) -> FastAPI:
    """Build the HTTP shell.

    Without an injected ``service`` the lifespan wires the real collaborators:
    an httpx client, the soffice converter and a Prometheus sink.
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(SERVICE_NAME, settings.log_level, settings.log_format)
        client: httpx.AsyncClient | None = None
        pusher: MetricsPusher | None = None
        if app.state.service is None:
            telemetry = PrometheusTelemetry()
            client = httpx.AsyncClient(timeout=httpx.Timeout(settings.deadline_seconds), follow_redirects=True)
            converter = SofficeConverter(
                settings.soffice_command,
                grace_seconds=settings.kill_grace_seconds,
                diagnostic_limit=settings.diagnostic_limit,
                verbose=settings.verbose_converter,
                telemetry=telemetry,
            )
            app.state.telemetry = telemetry
            app.state.service = ConversionService(
                converter,
                HttpxRemote(client),
                settings=settings,
                telemetry=telemetry,
                limiter=AdmissionLimiter(settings.concurrency_limit),
            )
            if settings.metrics_push_enabled:
                pusher = MetricsPusher(
                    telemetry.registry,
                    settings.pushgateway_url,  # type: ignore[arg-type]
                    settings.metrics_job_name,  # type: ignore[arg-type]
                    settings.metrics_instance,
                    interval_seconds=settings.metrics_push_interval_seconds,
                )
                pusher.start()
        logger.info(
            "service.started",
            concurrency=settings.concurrency_limit,
            deadline_seconds=settings.deadline_seconds,
            output_mode=settings.output_mode,
        )
        try:
            yield
        finally:
            if pusher is not None:
                await pusher.stop()
            if client is not None:
                await client.aclose()
            logger.info("service.stopped")

    app = FastAPI(
        title="Document Conversion Service",
        version=__version__,
        description=(
            "Stateless HTTP front-end that converts office documents with a "
            "headless converter, one isolated workspace per request."
        ),
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.service = service
    app.state.telemetry = getattr(service, "telemetry", None)

    @app.get("/health")
    async def health(request: Request) -> dict[str, object]:
        """Liveness plus admission limiter occupancy."""
        svc: ConversionService = request.app.state.service
        return {
            "status": "ok",
            "active_conversions": svc.limiter.active,
            "queued_conversions": svc.limiter.waiting,
        }

    @app.get("/metrics")
    async def metrics(request: Request) -> Response:
        telemetry = request.app.state.telemetry
        if not isinstance(telemetry, PrometheusTelemetry):
            return PlainTextResponse("", status_code=204)
        return Response(telemetry.render(), media_type=CONTENT_TYPE_LATEST)

    @app.post("/convert")
    async def convert(request: Request) -> Response:
        """Convert one document.

        Accepts ``multipart/form-data`` (``file``, ``from``, ``to``, optional
        ``uploadUrl`` and ``filename``) or ``application/json`` (``downloadUrl``,
        ``from``, ``to``, optional ``uploadUrl`` and ``filename``). Pass
        ``?stream=true`` to get the artifact back in the response.
        """
        svc: ConversionService = request.app.state.service
        stream = request.query_params.get("stream", "").strip().lower() in STREAM_TRUE
        content_type = request.headers.get("content-type", "").split(";", 1)[0].strip().lower()
        form = None
        try:
            if content_type == "multipart/form-data":
                form = await request.form()
                conversion = _from_form(form, stream)
            elif content_type == "application/json" or content_type.endswith("+json"):
                conversion = _from_json(await _read_json(request), stream)
            else:
                raise UnsupportedContentType(
                    f"content-type {content_type or '(none)'} not supported; use multipart/form-data or application/json"
                )
        except ConvertServiceError as exc:
            if form is not None:
                await form.close()
            return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

        token = CancelToken()
        watcher = asyncio.create_task(
            _watch_disconnect(request, token, request.app.state.settings.disconnect_poll_seconds)
        )
        result: ConversionResponse | None = None
        try:
            result = await svc.handle(conversion, token)
        finally:
            await _finish_request(watcher, form, result)
        return _to_response(result)

    return app


def _from_form(form, stream: bool) -> ConversionRequest:
    upload = form.get("file")
    if upload is not None and not isinstance(upload, UploadFile):
        raise ValidationError("file field must be a file part")
    return build_request(
        source_format=_text(form.get("from")),
        target_format=_text(form.get("to")),
        upload=UploadInput(upload.read, upload.filename) if upload is not None else None,
        download_url=_text(form.get("downloadUrl")),
        upload_url=_text(form.get("uploadUrl")),
        stream=stream,
        filename=_text(form.get("filename")),
    )


def _from_json(payload: object, stream: bool) -> ConversionRequest:
    if not isinstance(payload, dict):
        raise ValidationError("JSON body must be an object")
    return build_request(
        source_format=_text(payload.get("from")),
        target_format=_text(payload.get("to")),
        download_url=_text(payload.get("downloadUrl")),
        upload_url=_text(payload.get("uploadUrl")),
        stream=stream,
        filename=_text(payload.get("filename")),
    )


def _text(value: object) -> str | None:
    if value is None or isinstance(value, UploadFile):
        return None
    return str(value)


async def _read_json(request: Request) -> object:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError(f"malformed JSON body: {exc}") from exc


async def _watch_disconnect(request: Request, token: CancelToken, interval: float) -> None:
    # only started once the request body has been consumed
    while not token.cancelled:
        if await request.is_disconnected():
            logger.info("request.client_disconnected")
            token.cancel(OperationCancelled("client disconnected"))
            return
        await asyncio.sleep(interval)


async def _finish_request(watcher: asyncio.Task, form, result: ConversionResponse | None) -> None:
    """Stop the disconnect watcher and close the form.

    If this is interrupted the response is never sent, so whatever it owns
    (a handed-off workspace) is released here instead.
    """
    try:
        watcher.cancel()
        await asyncio.gather(watcher, return_exceptions=True)
        if form is not None:
            await form.close()
    except BaseException:
        if result is not None and result.on_close is not None:
            await asyncio.shield(result.on_close())
        raise


def _to_response(result: ConversionResponse) -> Response:
    background = BackgroundTask(result.on_close) if result.on_close is not None else None
    if result.is_json:
        return JSONResponse(status_code=result.status_code, content=result.body, headers=result.headers)
    if result.is_stream:
        return StreamingResponse(
            result.body,  # type: ignore[arg-type]
            status_code=result.status_code,
            headers=result.headers,
            background=background,
        )
    return Response(content=result.body, status_code=result.status_code, headers=result.headers, background=background)


def run() -> None:
    """Run the ASGI server using uvicorn.

    Exposes the app at host:port (default 0.0.0.0:8080). Set HOST/PORT env vars to override.
    """
    import uvicorn

    settings = Settings.from_env()
    uvicorn.run("convert_service.webapi:app", host=settings.host, port=settings.port, reload=settings.reload)


app = create_app()


if __name__ == "__main__":
    run()
