"""Pseudo-terminal backed shell command executor."""

from __future__ import annotations

import asyncio
import codecs
import errno
import logging
import os
import pty
import queue
import subprocess
import threading
import time
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Union

from blockterm.services.process import DEFAULT_KILL_TIMEOUT, ProcessHandle

if TYPE_CHECKING:
    from blockterm.config import AppConfig

logger = logging.getLogger(__name__)

DEFAULT_SHELL = "/bin/bash"
READ_CHUNK = 8192
PARTIAL_FLUSH_BYTES = 4096
POLL_INTERVAL = 0.01

RC_FILES: dict[str, str] = {
    "bash": "~/.bashrc",
    "zsh": "~/.zshrc",
}


@dataclass(frozen=True)
class Stdout:
    text: str


@dataclass(frozen=True)
class Stderr:
    text: str


@dataclass(frozen=True)
class Exit:
    code: int


OutputEvent = Union[Stdout, Stderr, Exit]


def default_rc_file(shell_path: str) -> str | None:
    """Interactive resource file for a shell, if it has a well-known one."""
    return RC_FILES.get(Path(shell_path).name)


def build_script(command: str, rc_file: str | None) -> str:
    """Shell script that sources the rc file quietly, then runs ``command``."""
    if not rc_file:
        return command
    return f"[ -f {rc_file} ] && source {rc_file} 2>/dev/null; {command}"


class LineBuffer:
    """Splits a byte stream into text fragments.

    Complete lines (ending in ``\\n``) are emitted as soon as they arrive. A
    pending partial line is emitted anyway once it grows past ``flush_bytes``,
    so output without newlines (progress bars) still shows up. Decoding is
    incremental, so a multi-byte character split across reads is never mangled.
    """

    def __init__(self, flush_bytes: int = PARTIAL_FLUSH_BYTES) -> None:
        self.flush_bytes = flush_bytes
        self._buffer = bytearray()
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def __len__(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> list[str]:
        self._buffer.extend(data)
        fragments: list[str] = []
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            line = bytes(self._buffer[: newline + 1])
            del self._buffer[: newline + 1]
            fragments.append(self._decoder.decode(line))

        if len(self._buffer) > self.flush_bytes:
            text = self._decoder.decode(bytes(self._buffer))
            self._buffer.clear()
            if text:
                fragments.append(text)
        return fragments

    def flush(self) -> str:
        text = self._decoder.decode(bytes(self._buffer), final=True)
        self._buffer.clear()
        return text


class OutputStream:
    """Receiving end of one execution's ordered event channel.

    Events arrive in the order the read loop produced them. ``Exit`` is always
    the last event and the authoritative end of the stream.
    """

    def __init__(self, handle: ProcessHandle, poll_interval: float = POLL_INTERVAL) -> None:
        self.handle = handle
        self.poll_interval = poll_interval
        self._queue: queue.SimpleQueue[OutputEvent] = queue.SimpleQueue()
        self._finished = False

    def send(self, event: OutputEvent) -> None:
        self._queue.put(event)

    @property
    def finished(self) -> bool:
        """True once the consumer has received the ``Exit`` event."""
        return self._finished

    def _mark(self, event: OutputEvent) -> OutputEvent:
        if isinstance(event, Exit):
            self._finished = True
        return event

    def try_recv(self) -> OutputEvent | None:
        """Next event without blocking, or ``None`` if nothing is queued."""
        if self._finished:
            return None
        try:
            return self._mark(self._queue.get_nowait())
        except queue.Empty:
            return None

    def drain(self) -> list[OutputEvent]:
        """All currently queued events, without blocking."""
        events: list[OutputEvent] = []
        while (event := self.try_recv()) is not None:
            events.append(event)
        return events

    def recv(self, timeout: float | None = None) -> OutputEvent | None:
        """Block for the next event. ``None`` on timeout or after ``Exit``."""
        if self._finished:
            return None
        try:
            return self._mark(self._queue.get(timeout=timeout))
        except queue.Empty:
            return None

    def __iter__(self) -> Iterator[OutputEvent]:
        while (event := self.recv()) is not None:
            yield event

    async def __aiter__(self) -> AsyncIterator[OutputEvent]:
        while not self._finished:
            event = self.try_recv()
            if event is None:
                await asyncio.sleep(self.poll_interval)
                continue
            yield event

    def cancel(self) -> None:
        self.handle.cancel()


class ShellExecutor:
    """Runs commands in the configured shell inside a pseudo-terminal."""

    def __init__(
        self,
        shell_path: str = DEFAULT_SHELL,
        working_directory: str | Path | None = None,
        rc_file: str | None = "",
        environment: dict[str, str] | None = None,
        partial_flush_bytes: int = PARTIAL_FLUSH_BYTES,
        poll_interval: float = POLL_INTERVAL,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
    ) -> None:
        self.shell_path = shell_path
        self.working_directory = Path(working_directory) if working_directory else Path.cwd()
        # Empty string means "pick the rc file for this shell"; None disables sourcing.
        self.rc_file = default_rc_file(shell_path) if rc_file == "" else rc_file
        self.environment = dict(environment or {})
        self.partial_flush_bytes = partial_flush_bytes
        self.poll_interval = poll_interval
        self.kill_timeout = kill_timeout

    @classmethod
    def from_config(cls, config: AppConfig, working_directory: str | Path | None = None) -> ShellExecutor:
        shell = config.shell
        return cls(
            shell_path=shell.default_shell,
            working_directory=working_directory,
            rc_file=shell.rc_file if shell.source_rc else None,
            partial_flush_bytes=shell.partial_flush_bytes,
            poll_interval=shell.poll_interval,
            kill_timeout=shell.kill_timeout,
        )

    def set_working_directory(self, path: str | Path) -> None:
        self.working_directory = Path(path)

    def get_working_directory(self) -> Path:
        return self.working_directory

    def _child_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self.environment)
        env.setdefault("TERM", "dumb")
        return env

    def execute(self, command: str) -> OutputStream:
        """Start ``command`` and return its output stream immediately.

        The process runs on a dedicated worker thread; consume the stream with
        ``try_recv``/``drain`` from a UI tick, or with ``async for``.
        """
        handle = ProcessHandle(command, kill_timeout=self.kill_timeout)
        stream = OutputStream(handle, poll_interval=self.poll_interval)
        worker = threading.Thread(
            target=self._run_worker,
            args=(command, stream),
            name=f"pty-{handle.id.hex[:8]}",
            daemon=True,
        )
        worker.start()
        return stream

    def _run_worker(self, command: str, stream: OutputStream) -> None:
        try:
            exit_code = self._execute_blocking(command, stream)
        except Exception as e:
            logger.exception("Command execution error: %s", command)
            stream.handle.finish(-1)
            stream.send(Stderr(f"Error: {e}\n"))
            stream.send(Exit(-1))
            return
        stream.handle.finish(exit_code)
        stream.send(Exit(exit_code))

    def _execute_blocking(self, command: str, stream: OutputStream) -> int:
        master_fd, slave_fd = pty.openpty()
        try:
            try:
                proc = subprocess.Popen(
                    [self.shell_path, "-c", build_script(command, self.rc_file)],
                    stdin=slave_fd,
                    stdout=slave_fd,
                    stderr=slave_fd,
                    cwd=str(self.working_directory),
                    env=self._child_env(),
                    start_new_session=True,
                    close_fds=True,
                )
            finally:
                # The child holds its own copy; ours would keep the PTY open forever.
                os.close(slave_fd)

            stream.handle.attach(proc.pid)
            logger.debug("Spawned pid %s: %s", proc.pid, command)
            self._read_loop(master_fd, proc, stream)
            returncode = proc.wait()
        finally:
            os.close(master_fd)

        exit_code = returncode if returncode is not None else -1
        logger.debug("Command exited with code: %s", exit_code)
        return exit_code

    def _read_loop(self, master_fd: int, proc: subprocess.Popen, stream: OutputStream) -> None:
        os.set_blocking(master_fd, False)
        lines = LineBuffer(self.partial_flush_bytes)
        exited = False
        try:
            while True:
                try:
                    chunk = os.read(master_fd, READ_CHUNK)
                except BlockingIOError:
                    # Nothing buffered. Once the child is gone, read until the PTY is empty.
                    if exited:
                        break
                    if proc.poll() is not None:
                        exited = True
                        continue
                    time.sleep(self.poll_interval)
                    continue
                except OSError as e:
                    # Linux reports EIO on the master once every slave fd is closed.
                    if e.errno != errno.EIO:
                        logger.error("Error reading from PTY: %s", e)
                    break
                if not chunk:
                    break
                for text in lines.feed(chunk):
                    stream.send(Stdout(text))
        finally:
            rest = lines.flush()
            if rest:
                stream.send(Stdout(rest))

    def execute_sync(self, command: str) -> tuple[str, int]:
        """Run ``command`` to completion; return combined stdout+stderr and exit code."""
        try:
            result = subprocess.run(
                [self.shell_path, "-c", build_script(command, self.rc_file)],
                capture_output=True,
                cwd=str(self.working_directory),
                env=self._child_env(),
            )
        except OSError as e:
            logger.error("Failed to execute command %r: %s", command, e)
            return f"Error: {e}\n", -1

        stdout = result.stdout.decode("utf-8", errors="replace")
        stderr = result.stderr.decode("utf-8", errors="replace")
        exit_code = result.returncode if result.returncode is not None else -1
        return stdout + stderr, exit_code
