import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Union
from urllib.parse import unquote, urlparse

from .errors import ValidationError

# Converter filter suffixes (``pdf:writer_pdf_Export``) are allowed on the target only.
_SOURCE_TAG = re.compile(r"^[A-Za-z0-9]+$")
_TARGET_TAG = re.compile(r"^[A-Za-z0-9]+(:[A-Za-z0-9_\- ]+)?$")

ChunkReader = Callable[[int], Awaitable[bytes]]


@dataclass(frozen=True)
class UploadInput:
    """Inline upload: ``reader(n)`` returns up to n bytes, ``b""`` at EOF."""

    reader: ChunkReader
    filename: str | None = None


@dataclass(frozen=True)
class RemoteInput:
    url: str


@dataclass(frozen=True)
class StreamOutput:
    pass


@dataclass(frozen=True)
class ForwardOutput:
    url: str


InputDescriptor = Union[UploadInput, RemoteInput]
OutputDescriptor = Union[StreamOutput, ForwardOutput]


@dataclass(frozen=True)
class ConversionRequest:
    source_format: str
    target_format: str
    source: InputDescriptor
    sink: OutputDescriptor
    filename: str | None = None
    endpoint: str = "/convert"

    @property
    def target_extension(self) -> str:
        return self.target_format.split(":", 1)[0]

    @property
    def suggested_name(self) -> str:
        if self.filename:
            return self.filename
        if isinstance(self.source, UploadInput) and self.source.filename:
            return self.source.filename
        if isinstance(self.source, RemoteInput):
            name = Path(unquote(urlparse(self.source.url).path)).name
            if name:
                return name
        return "converted"


# Conversion outcomes


@dataclass(frozen=True)
class InMemoryArtifact:
    content: bytes


@dataclass(frozen=True)
class OutputFile:
    path: Path


@dataclass(frozen=True)
class Failure:
    reason: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    signal: str | None = None
    cause: str | None = None


ConversionOutcome = Union[InMemoryArtifact, OutputFile, Failure]


@dataclass
class ConversionResponse:
    """What the pipeline hands back to the HTTP shell.

    ``body`` is buffered bytes, a lazy async byte stream, or a JSON payload.
    ``on_close`` must run once the body has been sent or abandoned.
    """

    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | AsyncIterator[bytes] | dict[str, object] = b""
    on_close: Callable[[], Awaitable[None]] | None = None

    @property
    def is_stream(self) -> bool:
        return not isinstance(self.body, (bytes, dict))

    @property
    def is_json(self) -> bool:
        return isinstance(self.body, dict)


class PipelineState(str, Enum):
    IDLE = "idle"
    INPUT_STAGING = "input_staging"
    CONVERTING = "converting"
    OUTPUT_DISPATCH = "output_dispatch"
    CLEANUP = "cleanup"
    DONE = "done"
    FAILED = "failed"


def normalize_format(value: str | None, field_name: str, *, target: bool = False) -> str:
    tag = (value or "").strip().lstrip(".")
    if not tag:
        raise ValidationError(f"missing {field_name} field")
    pattern = _TARGET_TAG if target else _SOURCE_TAG
    if not pattern.match(tag):
        raise ValidationError(f"malformed {field_name} field: {value!r}")
    if target:
        ext, sep, filt = tag.partition(":")
        return f"{ext.lower()}{sep}{filt}"
    return tag.lower()


def _check_url(value: str, field_name: str) -> str:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValidationError(f"{field_name} must be an absolute http(s) URL")
    return value


def build_request(
    *,
    source_format: str | None,
    target_format: str | None,
    upload: UploadInput | None = None,
    download_url: str | None = None,
    upload_url: str | None = None,
    stream: bool = False,
    filename: str | None = None,
    endpoint: str = "/convert",
) -> ConversionRequest:
    """Validate raw request fields and build a ``ConversionRequest``.

    Raises ``ValidationError`` before anything is staged.
    """
    src = normalize_format(source_format, "from")
    dst = normalize_format(target_format, "to", target=True)
    if src == dst.split(":", 1)[0]:
        raise ValidationError("from and to must differ")

    download_url = (download_url or "").strip() or None
    upload_url = (upload_url or "").strip() or None

    if upload is not None and download_url:
        raise ValidationError("provide either a file upload or downloadUrl, not both")
    if upload is not None:
        input_desc: InputDescriptor = upload
    elif download_url:
        input_desc = RemoteInput(_check_url(download_url, "downloadUrl"))
    else:
        raise ValidationError("missing file field or downloadUrl")

    if stream and upload_url:
        raise ValidationError("stream and uploadUrl are mutually exclusive")
    if stream:
        output_desc: OutputDescriptor = StreamOutput()
    elif upload_url:
        output_desc = ForwardOutput(_check_url(upload_url, "uploadUrl"))
    else:
        raise ValidationError("set stream=true or provide uploadUrl")

    return ConversionRequest(
        source_format=src,
        target_format=dst,
        source=input_desc,
        sink=output_desc,
        filename=(filename or "").strip() or None,
        endpoint=endpoint,
    )
