"""
Subprocess and stream plumbing for pipeline generations.

A ManagedProcess wraps one ffmpeg child. A StreamPump copies a producer's
stdout into any number of sinks (the stdin of downstream processes, or
recording files), the way shell pipes fan out with ``tee``.
"""

import asyncio
import re
import signal
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Set

import aiofiles

from .errors import ProcessError
from .logger import get_channel_logger

CHUNK_SIZE = 64 * 1024


def safe_name(value: str) -> str:
    """Make a string usable inside a file name."""
    return re.sub(r'[<>:"/\\|?*\s]', '_', value)[:80]


class ManagedProcess:
    """
    One external subprocess belonging to a pipeline generation.

    Exit callbacks run synchronously in the task that observes the exit,
    so whatever they kill is killed before any other coroutine runs.
    """

    def __init__(
        self,
        role: str,
        argv: List[str],
        channel_label: str,
        log_dir: Optional[Path] = None,
        log_prefix: str = "",
        read_stdin: bool = True,
        write_stdout: bool = False
    ):
        """
        Initialize process wrapper.

        Args:
            role: Short role name used in logs (``ingest``, ``transfer``...).
            argv: Full command line.
            channel_label: Channel name for log context.
            log_dir: Directory for the stderr log; None discards stderr.
            log_prefix: File name prefix for the stderr log.
            read_stdin: Whether stdin is a pipe fed by an upstream pump.
            write_stdout: Whether stdout is a pipe read by a pump.
        """
        self.role = role
        self.argv = argv
        self.log_dir = log_dir
        self.log_prefix = log_prefix or role
        self.read_stdin = read_stdin
        self.write_stdout = write_stdout

        self.process: Optional[asyncio.subprocess.Process] = None
        self.returncode: Optional[int] = None
        self.error: Optional[ProcessError] = None
        self.log_path: Optional[Path] = None

        self._logger = get_channel_logger(channel_label, 'process')
        self._exit_callbacks: List[Callable[['ManagedProcess'], None]] = []
        self._finished = asyncio.Event()
        self._kill_sent = False
        self._signals_sent: Set[int] = set()
        self._wait_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return f"<ManagedProcess {self.role} pid={self.pid}>"

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def running(self) -> bool:
        return self.process is not None and not self._finished.is_set()

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    @property
    def stdout(self) -> Optional[asyncio.StreamReader]:
        return self.process.stdout if self.process else None

    @property
    def stdin(self) -> Optional[asyncio.StreamWriter]:
        return self.process.stdin if self.process else None

    def on_exit(self, callback: Callable[['ManagedProcess'], None]) -> None:
        """Register a callback fired once when the process exits or fails to spawn."""
        if self._finished.is_set():
            callback(self)
        else:
            self._exit_callbacks.append(callback)

    async def spawn(self) -> bool:
        """
        Start the subprocess.

        A spawn failure is not raised: it is recorded in ``error`` and
        reported through the exit callbacks like any other exit.

        Returns:
            True if the process is running.
        """
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE if self.read_stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE if self.write_stdout else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            self.error = ProcessError(self.role, f"spawn failed: {e}")
            self._logger.error(f"Failed to start {self.role}: {e}")
            self._finish()
            return False

        self._logger.debug(f"Started {self.role} (pid {self.pid}): {' '.join(self.argv)}")

        if self.log_dir is not None:
            self.log_path = self.log_dir / f"{self.log_prefix}-{self.pid}.log"
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self._wait_task = asyncio.create_task(self._wait())
        return True

    async def _wait(self) -> None:
        try:
            self.returncode = await self.process.wait()
        except Exception as e:
            self.error = ProcessError(self.role, f"wait failed: {e}")
        else:
            if self.returncode != 0 and not self._kill_sent:
                self.error = ProcessError(self.role, "exited with error", self.returncode)
        self._logger.debug(f"{self.role} (pid {self.pid}) exited with {self.returncode}")
        self._finish()

    def _finish(self) -> None:
        if self._finished.is_set():
            return
        self._finished.set()

        callbacks, self._exit_callbacks = self._exit_callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception as e:
                self._logger.error(f"Exit handler for {self.role} failed: {e}", exc_info=True)

    async def _drain_stderr(self) -> None:
        """Persist stderr lines with timestamps for postmortem."""
        stream = self.process.stderr
        if self.log_path is None:
            while await stream.read(CHUNK_SIZE):
                pass
            return

        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(self.log_path, 'a', encoding='utf-8') as f:
                while True:
                    line = await stream.readline()
                    if not line:
                        break
                    stamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
                    await f.write(f"{stamp} {line.decode('utf-8', errors='replace')}")
        except (OSError, ValueError) as e:
            self._logger.warning(f"Cannot write {self.role} log {self.log_path}: {e}")
            while await stream.read(CHUNK_SIZE):
                pass

    def kill(self, sig: int = signal.SIGTERM) -> None:
        """
        Send a termination signal. Non-blocking.

        Repeating a signal is a no-op, so the cascade can call this freely;
        a different signal (SIGKILL after SIGTERM) is still delivered.
        """
        if self.process is None or self._finished.is_set() or sig in self._signals_sent:
            return
        self._kill_sent = True
        self._signals_sent.add(sig)
        try:
            self.process.send_signal(sig)
        except ProcessLookupError:
            pass

    async def wait(self) -> Optional[int]:
        """Wait until the process exits (or failed to spawn)."""
        await self._finished.wait()
        return self.returncode

    async def close_logs(self) -> None:
        """Wait for the stderr log to be flushed."""
        if self._stderr_task is not None:
            await asyncio.gather(self._stderr_task, return_exceptions=True)


class StreamSink:
    """Destination for bytes copied by a StreamPump."""

    name = "sink"

    def __init__(self):
        self.bytes_written = 0
        self.closed = False
        self.on_write: Optional[Callable[[int], None]] = None

    async def write(self, data: bytes) -> bool:
        """Write a chunk. Returns False once the sink is gone."""
        raise NotImplementedError

    async def close(self) -> None:
        self.closed = True

    def _count(self, size: int) -> None:
        self.bytes_written += size
        if self.on_write is not None:
            self.on_write(size)


class ProcessInputSink(StreamSink):
    """Feeds a downstream subprocess through its stdin."""

    def __init__(self, target: ManagedProcess):
        super().__init__()
        self.target = target
        self.name = f"{target.role}:{target.pid}"

    async def write(self, data: bytes) -> bool:
        stdin = self.target.stdin
        if self.closed or stdin is None or stdin.is_closing():
            self.closed = True
            return False
        try:
            stdin.write(data)
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            # Consumer died; its own exit drives the cascade
            self.closed = True
            return False
        self._count(len(data))
        return True

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        stdin = self.target.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()


class FileSink(StreamSink):
    """Appends the stream to a recording file."""

    def __init__(self, path: Path):
        super().__init__()
        self.path = path
        self.name = f"file:{path.name}"
        self._file = None

    async def open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = await aiofiles.open(self.path, 'wb')

    async def write(self, data: bytes) -> bool:
        if self.closed or self._file is None:
            return False
        try:
            await self._file.write(data)
        except OSError:
            await self.close()
            return False
        self._count(len(data))
        return True

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._file is not None:
            await self._file.close()


class StreamPump:
    """Copies a producer's stdout into every attached sink, in order."""

    def __init__(self, source: ManagedProcess, chunk_size: int = CHUNK_SIZE):
        self.source = source
        self.chunk_size = chunk_size
        self.sinks: List[StreamSink] = []
        self._task: Optional[asyncio.Task] = None

    def add_sink(self, sink: StreamSink) -> None:
        self.sinks.append(sink)

    def start(self) -> None:
        if self._task is None and self.source.stdout is not None:
            self._task = asyncio.create_task(self._run())

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        stdout = self.source.stdout
        try:
            while True:
                data = await stdout.read(self.chunk_size)
                if not data:
                    break
                for sink in self.sinks:
                    if not sink.closed:
                        await sink.write(data)
        finally:
            for sink in self.sinks:
                await sink.close()
