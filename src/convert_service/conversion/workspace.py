"""Per-request ephemeral directories.

A ``Workspace`` is a single-owner handle. Whoever holds the live handle is
responsible for calling ``release()``; ``hand_off()`` moves that
responsibility to a new handle and turns the old one into a no-op.
"""

import asyncio
import os
import shutil
import tempfile
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)

STEM_NAME = "file"


def choose_base_dir(preferred: str | None) -> tuple[str, bool]:
    """Return ``(directory, is_fast)``: the preferred directory if usable, else the system temp dir."""
    if preferred and os.path.isdir(preferred) and os.access(preferred, os.W_OK | os.X_OK):
        return preferred, True
    return tempfile.gettempdir(), False


def destroy(directory: Path | str) -> bool:
    """Recursively delete ``directory``. Never raises; failures are logged.

    Returns True when the directory is gone afterwards.
    """
    try:
        shutil.rmtree(directory)
    except FileNotFoundError:
        return True
    except OSError as exc:
        logger.warning("workspace.cleanup_failed", directory=str(directory), error=str(exc))
        return not os.path.exists(directory)
    return True


class Workspace:
    def __init__(self, directory: Path, *, fast: bool = False) -> None:
        self.directory = directory
        self.stem = directory / STEM_NAME
        self.fast = fast
        self._owner = True
        self._released = False

    @property
    def owns(self) -> bool:
        return self._owner and not self._released

    @property
    def released(self) -> bool:
        return self._released

    def path_for(self, extension: str) -> Path:
        return self.directory / f"{STEM_NAME}.{extension}"

    def hand_off(self) -> "Workspace":
        """Transfer ownership to a new handle; this handle stops releasing anything."""
        if not self.owns:
            raise RuntimeError("workspace is not owned by this handle")
        successor = Workspace(self.directory, fast=self.fast)
        self._owner = False
        logger.debug("workspace.handed_off", directory=str(self.directory))
        return successor

    async def release(self) -> None:
        """Delete the directory if this handle owns it. Idempotent and never raises."""
        if not self.owns:
            return
        self._released = True
        try:
            await asyncio.to_thread(destroy, self.directory)
        except RuntimeError:
            # executor already shut down (interpreter exit)
            destroy(self.directory)
        logger.debug("workspace.released", directory=str(self.directory))

    def __repr__(self) -> str:
        return f"Workspace({str(self.directory)!r}, owns={self.owns})"


def create_workspace(preferred_dir: str | None = None, prefix: str = "convert-") -> Workspace:
    base, fast = choose_base_dir(preferred_dir)
    try:
        directory = tempfile.mkdtemp(prefix=prefix, dir=base)
    except OSError as exc:
        if not fast:
            raise
        logger.warning("workspace.fast_dir_unusable", base=base, error=str(exc))
        directory = tempfile.mkdtemp(prefix=prefix)
        fast = False
    logger.debug("workspace.created", directory=directory, fast=fast)
    return Workspace(Path(directory), fast=fast)


async def acreate_workspace(preferred_dir: str | None = None, prefix: str = "convert-") -> Workspace:
    return await asyncio.to_thread(create_workspace, preferred_dir, prefix)
