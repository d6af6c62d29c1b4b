import os
import shlex
import socket
from dataclasses import dataclass, field


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def _default_instance() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return "instance"


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, read once from the environment at startup."""

    host: str = "0.0.0.0"
    port: int = 8080
    reload: bool = False

    soffice_command: tuple[str, ...] = ("soffice",)
    concurrency_limit: int = 5
    fast_tmp_dir: str | None = "/dev/shm"
    tmp_prefix: str = "convert-"

    max_upload_mb: int = 300
    worst_case_rate_kbps: int = 1024
    deadline_override: float | None = None
    kill_grace_seconds: float = 2.0

    output_mode: str = "disk"
    chunk_size: int = 64 * 1024
    verbose_converter: bool = False
    diagnostic_limit: int = 64 * 1024
    disconnect_poll_seconds: float = 0.5

    log_level: str = "INFO"
    log_format: str = "json"

    pushgateway_url: str | None = None
    metrics_job_name: str | None = None
    metrics_instance: str = field(default_factory=_default_instance)
    metrics_push_interval_seconds: float = 15.0

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    @property
    def deadline_seconds(self) -> float:
        """Deadline applied to staging, conversion and forwarding alike.

        Worst-case duration of moving the largest accepted payload at the
        slowest assumed rate, doubled. Never scaled by the actual payload.
        """
        if self.deadline_override is not None:
            return self.deadline_override
        rate = max(self.worst_case_rate_kbps, 1) * 1024
        return self.max_upload_bytes / rate * 2

    @property
    def retain_output_on_disk(self) -> bool:
        return self.output_mode != "memory"

    @property
    def metrics_push_enabled(self) -> bool:
        return bool(self.pushgateway_url and self.metrics_job_name)

    @classmethod
    def from_env(cls) -> "Settings":
        deadline = os.getenv("DEADLINE_SECONDS")
        fast_dir = os.getenv("FAST_TMP_DIR", "/dev/shm")
        return cls(
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8080")),
            reload=_env_bool("RELOAD"),
            soffice_command=tuple(shlex.split(os.getenv("SOFFICE_BIN", "soffice"))),
            concurrency_limit=int(os.getenv("CONCURRENCY_LIMIT", "5")),
            fast_tmp_dir=fast_dir or None,
            tmp_prefix=os.getenv("TMP_PREFIX", "convert-"),
            max_upload_mb=int(os.getenv("MAX_UPLOAD_MB", "300")),
            worst_case_rate_kbps=int(os.getenv("WORST_CASE_RATE_KBPS", "1024")),
            deadline_override=float(deadline) if deadline else None,
            kill_grace_seconds=float(os.getenv("KILL_GRACE_SECONDS", "2")),
            output_mode=os.getenv("OUTPUT_MODE", "disk").lower(),
            chunk_size=int(os.getenv("CHUNK_SIZE", str(64 * 1024))),
            verbose_converter=_env_bool("VERBOSE_CONVERTER"),
            diagnostic_limit=int(os.getenv("DIAGNOSTIC_LIMIT", str(64 * 1024))),
            disconnect_poll_seconds=float(os.getenv("DISCONNECT_POLL_SECONDS", "0.5")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
            pushgateway_url=os.getenv("METRICS_PUSHGATEWAY_URL") or None,
            metrics_job_name=os.getenv("METRICS_JOB_NAME") or None,
            metrics_instance=os.getenv("METRICS_INSTANCE") or _default_instance(),
            metrics_push_interval_seconds=float(os.getenv("METRICS_PUSH_INTERVAL_SECONDS", "15")),
        )
