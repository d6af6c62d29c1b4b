"""Chunked byte transfers between request bodies, remote responses and disk.

Nothing here holds more than one chunk of a payload in memory.
"""

from pathlib import Path
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable

import aiofiles
import structlog

from .deadline import CancelToken
from .errors import (
    ConvertServiceError,
    DestinationWriteError,
    PayloadTooLarge,
    SourceReadError,
)
from .models import ChunkReader

logger = structlog.get_logger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


async def iter_reader(reader: ChunkReader, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Adapt a ``reader(n)`` callable (e.g. ``UploadFile.read``) to an async byte iterator."""
    while True:
        chunk = await reader(chunk_size)
        if not chunk:
            return
        yield bytes(chunk)


async def _next_chunk(iterator: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None
    except ConvertServiceError:
        raise
    except Exception as exc:
        raise SourceReadError(f"failed reading source: {exc}") from exc


async def _aclose(iterator: AsyncIterator[bytes]) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as exc:
        logger.debug("transfer.source_close_failed", error=str(exc))


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("transfer.discard_failed", path=str(path), error=str(exc))


async def transfer(
    source: AsyncIterable[bytes],
    destination: Path,
    token: CancelToken,
    *,
    max_bytes: int | None = None,
) -> int:
    """Copy ``source`` into a newly created file at ``destination``.

    Returns the number of bytes written. Every pending read is raced against
    ``token``; once it fires the read is aborted, the file is closed and
    removed, and the token's reason is raised.
    """
    iterator = source.__aiter__()
    written = 0
    created = False
    try:
        async with aiofiles.open(destination, "xb") as out:
            created = True
            while True:
                token.raise_if_cancelled()
                chunk = await token.guard(_next_chunk(iterator))
                if chunk is None:
                    break
                if not chunk:
                    continue
                written += len(chunk)
                if max_bytes is not None and written > max_bytes:
                    raise PayloadTooLarge(
                        f"payload exceeds {max_bytes // (1024 * 1024)} MB", limit_bytes=max_bytes
                    )
                count = await out.write(chunk)
                if count is not None and count != len(chunk):
                    raise DestinationWriteError(
                        f"short write to {destination.name}: {count} of {len(chunk)} bytes"
                    )
    except ConvertServiceError:
        _discard(destination)
        raise
    except OSError as exc:
        if not created:
            # never touch a file this call did not create
            raise DestinationWriteError(f"cannot create {destination.name}: {exc}") from exc
        _discard(destination)
        raise DestinationWriteError(f"failed writing {destination.name}: {exc}") from exc
    except BaseException:
        if created:
            _discard(destination)
        raise
    finally:
        await _aclose(iterator)
    return written


async def stream_file(
    path: Path,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    *,
    on_close: Callable[[], Awaitable[None]] | None = None,
) -> AsyncIterator[bytes]:
    """Lazily yield ``path`` in chunks; ``on_close`` runs when the stream ends, fails or is closed."""
    try:
        async with aiofiles.open(path, "rb") as f:
            while True:
                chunk = await f.read(chunk_size)
                if not chunk:
                    break
                yield chunk
    finally:
        if on_close is not None:
            await on_close()


async def read_file(path: Path) -> bytes:
    async with aiofiles.open(path, "rb") as f:
        return await f.read()
