from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterable, Mapping, Protocol

from .deadline import CancelToken
from .models import ConversionOutcome
from .workspace import Workspace


class ConverterGateway(Protocol):
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
        """Convert the staged input inside ``workspace``.

        Must stop promptly once ``token`` fires. With ``retain`` the artifact
        is left on disk and returned as ``OutputFile``.
        """


class RemoteGateway(Protocol):
    async def download(
        self,
        url: str,
        destination: Path,
        token: CancelToken,
        *,
        max_bytes: int | None = None,
        chunk_size: int = 64 * 1024,
    ) -> int:
        ...

    async def upload(
        self,
        url: str,
        body: bytes | AsyncIterable[bytes],
        headers: Mapping[str, str],
        token: CancelToken,
    ) -> "UpstreamResponse":
        ...


class TelemetrySink(Protocol):
    """Receives named metric events. Implementations must be cheap and non-blocking."""

    def counter_inc(self, name: str, value: float = 1, labels: Mapping[str, str] | None = None) -> None:
        ...

    def gauge_inc(self, name: str, value: float = 1, labels: Mapping[str, str] | None = None) -> None:
        ...

    def gauge_dec(self, name: str, value: float = 1, labels: Mapping[str, str] | None = None) -> None:
        ...

    def gauge_set(self, name: str, value: float, labels: Mapping[str, str] | None = None) -> None:
        ...

    def histogram_observe(self, name: str, value: float, labels: Mapping[str, str] | None = None) -> None:
        ...


@dataclass(frozen=True)
class UpstreamResponse:
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    content: bytes = b""

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300
