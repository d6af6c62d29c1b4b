"""Supervision of one external process under a cancellation token.

The supervisor is a small state machine::

    PENDING -> RUNNING -> EXITED
                  \\-> TERMINATING -> EXITED | KILLED

It moves to TERMINATING when the token fires: SIGTERM is sent to the
process group and a grace timer starts. If the process is still alive when
the grace window closes it is sent SIGKILL and the state becomes KILLED.
"""

import asyncio
import codecs
import os
import signal
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Sequence

import structlog

from .deadline import CancelToken
from .errors import ConversionFailure

logger = structlog.get_logger(__name__)

READ_SIZE = 4096


class ProcessState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    TERMINATING = "terminating"
    KILLED = "killed"
    EXITED = "exited"


@dataclass(frozen=True)
class ProcessResult:
    returncode: int | None
    signal: str | None
    stdout: str
    stderr: str
    state: ProcessState


class StreamCapture:
    """Drains a pipe as data arrives, keeping the last ``limit`` characters."""

    def __init__(self, name: str, limit: int, *, echo: bool = False) -> None:
        self.name = name
        self.limit = limit
        self.echo = echo
        self.truncated = False
        self._text = ""

    @property
    def text(self) -> str:
        return self._text

    def _append(self, text: str) -> None:
        if not text:
            return
        if self.echo:
            logger.info("converter.output", stream=self.name, text=text.rstrip("\n"))
        self._text += text
        if len(self._text) > self.limit:
            self._text = self._text[-self.limit:]
            self.truncated = True

    async def drain(self, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(READ_SIZE)
            if not data:
                break
            self._append(decoder.decode(data))
        self._append(decoder.decode(b"", final=True))


def _signal_name(returncode: int | None) -> str | None:
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return str(-returncode)


class ProcessSupervisor:
    def __init__(
        self,
        argv: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | os.PathLike[str] | None = None,
        grace_seconds: float = 2.0,
        diagnostic_limit: int = 64 * 1024,
        echo: bool = False,
    ) -> None:
        self.argv = list(argv)
        self.env = dict(env) if env is not None else None
        self.cwd = cwd
        self.grace_seconds = grace_seconds
        self.state = ProcessState.PENDING
        self.pid: int | None = None
        self._stdout = StreamCapture("stdout", diagnostic_limit, echo=echo)
        self._stderr = StreamCapture("stderr", diagnostic_limit, echo=echo)

    def _send(self, proc: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass
        except OSError:
            try:
                proc.send_signal(sig)
            except ProcessLookupError:
                pass

    async def _escalate(self, proc: asyncio.subprocess.Process, exit_task: "asyncio.Task[int]") -> None:
        self.state = ProcessState.TERMINATING
        logger.info("converter.terminating", pid=proc.pid, grace_seconds=self.grace_seconds)
        self._send(proc, signal.SIGTERM)
        try:
            await asyncio.wait_for(asyncio.shield(exit_task), self.grace_seconds)
            self.state = ProcessState.EXITED
        except asyncio.TimeoutError:
            self.state = ProcessState.KILLED
            logger.warning("converter.killing", pid=proc.pid)
            self._send(proc, signal.SIGKILL)
            await exit_task

    async def run(self, token: CancelToken) -> ProcessResult:
        """Run the process to completion.

        If the token fires first the process is terminated (escalating to a
        kill) and, once it is gone, the token's reason is raised.
        """
        token.raise_if_cancelled()
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                cwd=self.cwd,
                start_new_session=True,
            )
        except OSError as exc:
            raise ConversionFailure(f"failed to start converter: {exc}", cause=str(exc)) from exc

        self.pid = proc.pid
        self.state = ProcessState.RUNNING
        logger.info("converter.started", pid=proc.pid, argv=self.argv)

        drains = [
            asyncio.create_task(self._stdout.drain(proc.stdout)),
            asyncio.create_task(self._stderr.drain(proc.stderr)),
        ]
        exit_task = asyncio.create_task(proc.wait())
        cancel_task = asyncio.create_task(token.wait())
        cancelled = False
        try:
            await asyncio.wait({exit_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
            if not exit_task.done():
                cancelled = True
                await self._escalate(proc, exit_task)
            else:
                self.state = ProcessState.EXITED
        finally:
            cancel_task.cancel()
            if not exit_task.done():
                # the awaiting task itself was cancelled; never leave the process behind
                await self._escalate(proc, exit_task)
            # a detached grandchild may hold the pipes open after exit
            _, pending = await asyncio.wait(drains, timeout=self.grace_seconds)
            for task in pending:
                task.cancel()

        result = ProcessResult(
            returncode=proc.returncode,
            signal=_signal_name(proc.returncode),
            stdout=self._stdout.text,
            stderr=self._stderr.text,
            state=self.state,
        )
        logger.info(
            "converter.exited",
            pid=proc.pid,
            returncode=result.returncode,
            signal=result.signal,
            state=result.state.value,
        )
        if cancelled:
            token.raise_if_cancelled()
        return result
