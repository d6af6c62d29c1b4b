import asyncio
import time

import httpx
import pytest
from prometheus_client import CollectorRegistry

from conftest import collect, make_upload
from convert_service.conversion.deadline import CancelToken
from convert_service.conversion.models import ForwardOutput, RemoteInput, build_request
from convert_service.telemetry import PrometheusTelemetry


def upload_request(content: bytes, *, stream=True, upload_url=None, filename=None):
    return build_request(
        source_format="docx",
        target_format="pdf",
        upload=make_upload(content),
        upload_url=upload_url,
        stream=stream,
        filename=filename,
    )


def remote_request(url="https://files.example.com/in/report.docx", *, stream=True, upload_url=None):
    return build_request(
        source_format="docx",
        target_format="pdf",
        download_url=url,
        upload_url=upload_url,
        stream=stream,
    )


@pytest.mark.asyncio
async def test_upload_streamed_back_from_disk(build_service, fast_dir):
    service, converter = build_service()

    response = await service.handle(upload_request(b"hello world"))

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert 'filename="report.pdf"' in response.headers["content-disposition"]
    assert response.headers["content-length"] == str(len(b"%PDF-fake\nhello world"))
    # the workspace now belongs to the response stream
    assert len(list(fast_dir.iterdir())) == 1
    assert response.on_close is not None

    body = await collect(response.body)

    assert body == b"%PDF-fake\nhello world"
    assert list(fast_dir.iterdir()) == []
    assert converter.spawned == 1


@pytest.mark.asyncio
async def test_in_memory_mode_releases_workspace_before_returning(build_service, fast_dir):
    service, _ = build_service(output_mode="memory")

    response = await service.handle(upload_request(b"abc"))

    assert response.status_code == 200
    assert response.body == b"%PDF-fake\nabc"
    assert list(fast_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_explicit_filename_wins(build_service):
    service, _ = build_service(output_mode="memory")

    response = await service.handle(upload_request(b"abc", filename="Quarterly Résumé.docx"))

    disposition = response.headers["content-disposition"]
    assert 'filename="Quarterly R_sum_.pdf"' in disposition
    assert "filename*=UTF-8''Quarterly%20R%C3%A9sum%C3%A9.pdf" in disposition


@pytest.mark.asyncio
async def test_remote_input_404_never_spawns_converter(build_service, fast_dir):
    service, converter = build_service()

    response = await service.handle(remote_request())

    assert response.status_code == 400
    assert response.body["error"] == "staging_error"
    assert response.body["upstream_status"] == 404
    assert converter.spawned == 0
    assert list(fast_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_remote_input_connection_error(build_service, fast_dir):
    def boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    service, converter = build_service(handler=boom)

    response = await service.handle(remote_request())

    assert response.status_code == 400
    assert "connection refused" in response.body["message"]
    assert converter.spawned == 0
    assert list(fast_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_remote_input_forwarded_upload(build_service, fast_dir):
    seen = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, content=b"remote document")
        seen["body"] = await request.aread()
        seen["content_type"] = request.headers["content-type"]
        seen["url"] = str(request.url)
        return httpx.Response(
            201,
            content=b'{"stored": true}',
            headers={"Location": "/objects/42", "ETag": '"v1"', "X-Internal-Secret": "s3cr3t"},
        )

    service, _ = build_service(handler=handler)
    request = remote_request(stream=False, upload_url="https://sink.example.com/objects/42")
    assert isinstance(request.source, RemoteInput)
    assert isinstance(request.sink, ForwardOutput)

    response = await service.handle(request)

    assert response.status_code == 201
    assert response.body == b'{"stored": true}'
    assert response.headers["location"] == "/objects/42"
    assert response.headers["etag"] == '"v1"'
    assert "x-internal-secret" not in response.headers
    assert seen["body"] == b"%PDF-fake\nremote document"
    assert seen["content_type"] == "application/pdf"
    assert seen["url"] == "https://sink.example.com/objects/42"
    assert list(fast_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_in_memory_forwarded_upload(build_service, fast_dir):
    seen = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = await request.aread()
        return httpx.Response(204)

    service, _ = build_service(handler=handler, output_mode="memory")

    response = await service.handle(upload_request(b"data", stream=False, upload_url="https://sink.example.com/x"))

    assert response.status_code == 204
    assert seen["body"] == b"%PDF-fake\ndata"
    assert list(fast_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_upstream_upload_failure_is_bad_gateway(build_service, fast_dir):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="storage down")

    service, converter = build_service(handler=handler)

    response = await service.handle(upload_request(b"data", stream=False, upload_url="https://sink.example.com/x"))

    assert response.status_code == 502
    assert response.body["error"] == "upload_forwarding_error"
    assert response.body["leg"] == "upload"
    assert response.body["upstream_status"] == 500
    assert converter.spawned == 1
    assert list(fast_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_converter_failure_carries_diagnostics(build_service, fast_dir):
    service, _ = build_service()

    response = await service.handle(upload_request(b"noout\n"))

    assert response.status_code == 500
    assert response.body["error"] == "conversion_failed"
    assert response.body["message"] == "No output file produced"
    diagnostics = response.body["diagnostics"]
    assert diagnostics["stderr"] == "Error: source file could not be loaded\n"
    assert diagnostics["exit_code"] == 1
    assert diagnostics["signal"] is None
    assert list(fast_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_stderr_noise_does_not_fail_conversion(build_service):
    service, _ = build_service(output_mode="memory")

    response = await service.handle(upload_request(b"warn\nbody"))

    assert response.status_code == 200
    assert response.body == b"%PDF-fake\nwarn\nbody"


@pytest.mark.asyncio
async def test_converter_isolated_home(build_service, fast_dir):
    service, converter = build_service(output_mode="memory", verbose_converter=False)
    seen_argv = []
    original = converter.build_argv

    def capture(input_path, target_format, workspace):
        argv = original(input_path, target_format, workspace)
        seen_argv.append((argv, workspace.directory))
        return argv

    converter.build_argv = capture

    response = await service.handle(upload_request(b"x"))

    assert response.status_code == 200
    argv, directory = seen_argv[0]
    assert f"-env:UserInstallation={(directory / 'profile').as_uri()}" in argv
    assert argv[-1] == str(directory / "file.docx")
    assert argv[argv.index("--outdir") + 1] == str(directory)


@pytest.mark.asyncio
async def test_conversion_deadline_kills_converter(build_service, fast_dir):
    service, converter = build_service(deadline_override=0.5)

    started = time.monotonic()
    response = await service.handle(upload_request(b"sleep\n"))
    elapsed = time.monotonic() - started

    assert response.status_code == 504
    assert response.body["error"] == "timeout"
    assert response.body["stage"] == "conversion"
    assert elapsed < 5
    assert converter.active == 0
    assert service.limiter.active == 0
    assert list(fast_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_stubborn_converter_is_killed_after_grace(build_service, fast_dir):
    service, converter = build_service(deadline_override=1.5, kill_grace_seconds=0.3)

    started = time.monotonic()
    response = await service.handle(upload_request(b"stubborn\n"))

    assert response.status_code == 504
    assert time.monotonic() - started < 6
    assert converter.active == 0
    assert list(fast_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_caller_cancellation_reaches_converter(build_service, fast_dir):
    service, converter = build_service()
    token = CancelToken()

    asyncio.get_running_loop().call_later(0.5, token.cancel)
    response = await service.handle(upload_request(b"sleep\n"), token)

    assert response.status_code == 499
    assert response.body["error"] == "cancelled"
    assert converter.active == 0
    assert list(fast_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_oversized_upload_is_rejected_before_conversion(build_service, fast_dir):
    service, converter = build_service(max_upload_mb=1)

    response = await service.handle(upload_request(b"x" * (1024 * 1024 + 1)))

    assert response.status_code == 413
    assert response.body["error"] == "payload_too_large"
    assert converter.spawned == 0
    assert list(fast_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_admission_limit_bounds_live_converters(build_service, fast_dir):
    service, converter = build_service(concurrency_limit=2, output_mode="memory")

    responses = await asyncio.gather(
        *(service.handle(upload_request(b"sleep:0.4\n")) for _ in range(5))
    )

    assert [r.status_code for r in responses] == [200] * 5
    assert converter.peak_active <= 2
    assert service.limiter.peak == 2
    assert converter.spawned == 5
    assert list(fast_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_telemetry_counts_requests_and_conversions(build_service):
    registry = CollectorRegistry()
    telemetry = PrometheusTelemetry(registry=registry)
    service, _ = build_service(telemetry=telemetry, output_mode="memory")

    await service.handle(upload_request(b"ok"))
    await service.handle(upload_request(b"noout\n"))

    labels = {"endpoint": "/convert"}
    assert registry.get_sample_value("convert_requests_received_total", labels) == 2
    assert registry.get_sample_value("convert_conversions_success_total", labels) == 1
    assert registry.get_sample_value("convert_conversions_failure_total", labels) == 1
    assert registry.get_sample_value("convert_requests_in_flight", labels) == 0
    assert registry.get_sample_value("convert_conversion_duration_seconds_count", labels) == 2
    assert registry.get_sample_value("convert_process_memory_bytes", labels) > 0


@pytest.mark.asyncio
async def test_broken_telemetry_never_fails_request(build_service):
    class Exploding:
        def __getattr__(self, name):
            def fail(*args, **kwargs):
                raise RuntimeError("sink down")

            return fail

    service, _ = build_service(telemetry=Exploding(), output_mode="memory")

    response = await service.handle(upload_request(b"ok"))

    assert response.status_code == 200


@pytest.mark.asyncio
async def test_caller_cancellation_while_queued_for_a_slot(build_service, fast_dir):
    service, converter = build_service(concurrency_limit=1, output_mode="memory")
    holder = asyncio.create_task(service.handle(upload_request(b"sleep:3\n")))
    while converter.active == 0:
        await asyncio.sleep(0.02)

    token = CancelToken()
    asyncio.get_running_loop().call_later(0.2, token.cancel)
    started = time.monotonic()
    response = await service.handle(upload_request(b"queued"), token)
    elapsed = time.monotonic() - started

    assert response.status_code == 499
    assert elapsed < 1.5
    assert service.limiter.waiting == 0
    assert converter.spawned == 1

    first = await holder
    assert first.status_code == 200
    assert service.limiter.active == 0
    assert list(fast_dir.iterdir()) == []
