import asyncio
import hashlib
import tracemalloc

import pytest

from convert_service.conversion.deadline import CancelToken, with_deadline
from convert_service.conversion.errors import (
    DeadlineExceeded,
    DestinationWriteError,
    OperationCancelled,
    PayloadTooLarge,
    SourceReadError,
)
from convert_service.conversion.transfer import iter_reader, read_file, stream_file, transfer


async def chunks(*parts: bytes, delay: float = 0.0):
    for part in parts:
        if delay:
            await asyncio.sleep(delay)
        yield part


async def stalled():
    yield b"first"
    await asyncio.sleep(30)
    yield b"never"


@pytest.mark.asyncio
async def test_copies_all_chunks(tmp_path):
    destination = tmp_path / "file.docx"

    written = await transfer(chunks(b"abc", b"", b"def"), destination, CancelToken())

    assert written == 6
    assert destination.read_bytes() == b"abcdef"


@pytest.mark.asyncio
async def test_reader_adapter(tmp_path):
    data = iter([b"12", b"34", b""])

    async def reader(n):
        return next(data)

    destination = tmp_path / "file.bin"
    assert await transfer(iter_reader(reader, 2), destination, CancelToken()) == 4
    assert destination.read_bytes() == b"1234"


@pytest.mark.asyncio
async def test_refuses_existing_destination(tmp_path):
    destination = tmp_path / "file.docx"
    destination.write_bytes(b"keep me")

    with pytest.raises(DestinationWriteError):
        await transfer(chunks(b"abc"), destination, CancelToken())
    assert destination.read_bytes() == b"keep me"


@pytest.mark.asyncio
async def test_size_cap_discards_partial_file(tmp_path):
    destination = tmp_path / "file.docx"

    with pytest.raises(PayloadTooLarge):
        await transfer(chunks(b"a" * 10, b"b" * 10), destination, CancelToken(), max_bytes=15)
    assert not destination.exists()


@pytest.mark.asyncio
async def test_source_error_becomes_source_read_error(tmp_path):
    async def broken():
        yield b"ok"
        raise ConnectionResetError("peer reset")

    destination = tmp_path / "file.docx"
    with pytest.raises(SourceReadError, match="peer reset"):
        await transfer(broken(), destination, CancelToken())
    assert not destination.exists()


@pytest.mark.asyncio
async def test_cancellation_aborts_stalled_read(tmp_path):
    destination = tmp_path / "file.docx"
    token = CancelToken()
    asyncio.get_running_loop().call_later(0.05, token.cancel)

    with pytest.raises(OperationCancelled):
        await transfer(stalled(), destination, token)
    assert not destination.exists()


@pytest.mark.asyncio
async def test_deadline_aborts_stalled_read(tmp_path):
    destination = tmp_path / "file.docx"

    async def op(token):
        return await transfer(stalled(), destination, token)

    with pytest.raises(DeadlineExceeded):
        await with_deadline(op, 0.05, label="input staging")
    assert not destination.exists()


@pytest.mark.asyncio
async def test_stream_file_runs_on_close(tmp_path):
    path = tmp_path / "file.pdf"
    path.write_bytes(b"x" * 10)
    closed = []

    async def on_close():
        closed.append(True)

    received = [chunk async for chunk in stream_file(path, 4, on_close=on_close)]

    assert received == [b"xxxx", b"xxxx", b"xx"]
    assert closed == [True]


@pytest.mark.asyncio
async def test_stream_file_on_close_runs_when_abandoned(tmp_path):
    path = tmp_path / "file.pdf"
    path.write_bytes(b"x" * 10)
    closed = []

    async def on_close():
        closed.append(True)

    stream = stream_file(path, 4, on_close=on_close)
    assert await stream.__anext__() == b"xxxx"
    await stream.aclose()

    assert closed == [True]


@pytest.mark.asyncio
async def test_read_file(tmp_path):
    path = tmp_path / "file.pdf"
    path.write_bytes(b"%PDF")

    assert await read_file(path) == b"%PDF"


@pytest.mark.asyncio
@pytest.mark.parametrize("length", [0, 1, 65536, 5 * 1024 * 1024 + 3])
async def test_staged_bytes_round_trip(tmp_path, length):
    payload = bytes(i % 251 for i in range(length))

    async def windows(size=65536):
        for start in range(0, length, size):
            yield payload[start:start + size]

    destination = tmp_path / "file.docx"
    written = await transfer(windows(), destination, CancelToken())

    assert written == length
    assert await read_file(destination) == payload


@pytest.mark.asyncio
async def test_large_transfer_memory_stays_bounded(tmp_path):
    window = 64 * 1024
    count = 256  # 16 MiB

    def block(i: int) -> bytes:
        return hashlib.sha256(str(i).encode()).digest() * (window // 32)

    async def generated():
        for i in range(count):
            yield block(i)

    expected = hashlib.sha256()
    for i in range(count):
        expected.update(block(i))

    destination = tmp_path / "file.docx"
    tracemalloc.start()
    try:
        tracemalloc.reset_peak()
        written = await transfer(generated(), destination, CancelToken())
        _, staging_peak = tracemalloc.get_traced_memory()

        tracemalloc.reset_peak()
        actual = hashlib.sha256()
        largest = 0
        async for chunk in stream_file(destination, window):
            largest = max(largest, len(chunk))
            actual.update(chunk)
        _, reading_peak = tracemalloc.get_traced_memory()
    finally:
        tracemalloc.stop()

    assert written == window * count
    assert actual.hexdigest() == expected.hexdigest()
    assert largest <= window
    assert staging_peak < 2 * 1024 * 1024
    assert reading_peak < 2 * 1024 * 1024
