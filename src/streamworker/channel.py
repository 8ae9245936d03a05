"""
Channel model and supervisor.

A ChannelSupervisor keeps one channel's pipeline alive: spawn ingest,
build the pipeline, wait for the ingest to end, tear the generation down,
back off, and try again until stopped.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from .logger import get_channel_logger
from .pipeline import PipelineBuilder, PipelineGeneration
from .tasks import RunningTask, Task


class ChannelState(Enum):
    """Supervisor lifecycle states."""
    IDLE = "idle"
    RUNNING = "running"
    BACKOFF = "backoff"
    STOPPED = "stopped"


@dataclass(eq=False)
class Channel:
    """A live source being supervised."""
    id: str
    name: str
    app: str
    service: str
    url: str
    tasks: Tuple[Task, ...] = ()
    state: ChannelState = ChannelState.IDLE
    connect_attempts: int = 0
    generation: int = 0
    running_tasks: List[RunningTask] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def label(self) -> str:
        return f"{self.app}/{self.name}"


class ChannelSupervisor:
    """
    Supervises one channel.

    States: IDLE -> RUNNING -> BACKOFF -> RUNNING -> ... -> STOPPED.
    STOPPED is only reached through ``stop()``.
    """

    def __init__(
        self,
        channel: Channel,
        builder: PipelineBuilder,
        backoff_step: float = 10.0,
        drain_timeout: float = 5.0
    ):
        """
        Initialize supervisor.

        Args:
            channel: Channel to supervise.
            builder: Pipeline builder spawning the processes.
            backoff_step: Seconds of delay added per failed connect attempt.
            drain_timeout: Seconds to wait for a torn-down generation to exit.
        """
        self.channel = channel
        self.builder = builder
        self.backoff_step = backoff_step
        self.drain_timeout = drain_timeout

        self._logger = get_channel_logger(channel.label, 'supervisor')
        self._stop_event = asyncio.Event()
        self._kill_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._generation: Optional[PipelineGeneration] = None

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    @property
    def done(self) -> bool:
        """True once the loop has ended, or if it never started."""
        return self._task is None or self._task.done()

    @property
    def generation(self) -> Optional[PipelineGeneration]:
        """The generation currently running, if any."""
        return self._generation

    def backoff_delay(self) -> float:
        return self.channel.connect_attempts * self.backoff_step

    def start(self) -> asyncio.Task:
        """Start the supervision loop (once)."""
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"supervisor-{self.channel.id}")
        return self._task

    def stop(self, kill: bool = False) -> None:
        """
        Ask the loop to end.

        The current generation keeps running until its ingest ends, unless
        ``kill`` is set, in which case the ingest process is signalled and
        the generation is torn down at once. Members that outlive the drain
        timeout are killed with SIGKILL.
        A pending backoff sleep ends immediately.
        """
        if not self._stop_event.is_set():
            self._logger.info("Stopping supervisor")
        self._stop_event.set()

        if kill:
            self._kill_event.set()
            generation = self._generation
            if generation is not None and generation.ingest is not None:
                generation.ingest.kill()

    async def wait(self) -> None:
        """Wait for the loop to reach STOPPED."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        channel = self.channel
        channel.state = ChannelState.RUNNING
        self._logger.info(f"Supervising {channel.url}")

        try:
            while not self.stopped:
                try:
                    await self._run_generation()
                except Exception as e:
                    self._logger.error(f"Generation {channel.generation} crashed: {e}", exc_info=True)

                if self.stopped:
                    break

                delay = self.backoff_delay()
                channel.state = ChannelState.BACKOFF
                self._logger.info(
                    f"Reconnecting in {delay:.0f}s (attempt {channel.connect_attempts + 1})"
                )
                await self._sleep(delay)
                channel.state = ChannelState.RUNNING
        finally:
            channel.state = ChannelState.STOPPED
            self._logger.info("Supervisor stopped")

    async def _sleep(self, delay: float) -> None:
        """Backoff sleep that ends early on stop()."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _wait_ingest(self, ingest) -> None:
        """Wait for the ingest to end, or for ``stop(kill=True)``."""
        ended = asyncio.ensure_future(ingest.wait())
        killed = asyncio.ensure_future(self._kill_event.wait())
        try:
            await asyncio.wait({ended, killed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            ended.cancel()
            killed.cancel()

    async def _run_generation(self) -> None:
        channel = self.channel
        channel.generation += 1
        generation = self.builder.new_generation(channel, channel.generation)
        self._generation = generation

        try:
            ingest = await self.builder.spawn_ingest(generation, channel)
            if self._kill_event.is_set():
                ingest.kill()

            if ingest.running:
                self._logger.info(f"Generation {generation.number} started (ingest pid {ingest.pid})")
                await self.builder.build(generation, ingest, channel)
                generation.start_pumps()

            await self._wait_ingest(ingest)
        finally:
            generation.collapse()
            await generation.drain(self.drain_timeout)
            channel.running_tasks.clear()
            channel.connect_attempts += 1
            self._generation = None

            for error in generation.errors:
                self._logger.warning(f"Generation {generation.number}: {error}")
