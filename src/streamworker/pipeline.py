"""
Process pipeline for one channel.

A PipelineGeneration is the set of processes spawned for one ingest attempt,
kept as an explicit graph of producer -> consumer edges. The PipelineBuilder
turns a channel's task list into that graph.
"""

import asyncio
import shutil
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Union

from .config import WorkerConfig
from .errors import ProcessError
from .logger import get_channel_logger
from .process import FileSink, ManagedProcess, ProcessInputSink, StreamPump, StreamSink, safe_name
from .tasks import EncodeTask, PackageFormat, PackageTask, Preset, RunningTask, Task, TransferTask, WriteTask

if TYPE_CHECKING:
    from .channel import Channel


@dataclass
class PipeEdge:
    """Bytes flow from ``producer`` stdout into ``consumer``."""
    producer: ManagedProcess
    consumer: Union[ManagedProcess, FileSink]


class PipelineGeneration:
    """
    All processes and file sinks of one ingest attempt.

    Any member exiting collapses the whole generation: the ingest process
    and every other member are signalled right away and no further process
    can be added. Pumps run until their producer reaches EOF.
    """

    def __init__(self, channel: 'Channel', number: int, log_dir: Optional[Path] = None):
        self.channel = channel
        self.number = number
        self.log_dir = log_dir

        self.ingest: Optional[ManagedProcess] = None
        self.processes: List[ManagedProcess] = []
        self.sinks: List[FileSink] = []
        self.edges: List[PipeEdge] = []
        self.errors: List[ProcessError] = []
        self.collapsed = False

        self._pumps: Dict[int, StreamPump] = {}
        self._logger = get_channel_logger(channel.label, 'pipeline', number)

    def _pump_for(self, producer: ManagedProcess) -> StreamPump:
        pump = self._pumps.get(id(producer))
        if pump is None:
            pump = StreamPump(producer)
            self._pumps[id(producer)] = pump
        return pump

    async def spawn(
        self,
        role: str,
        argv: List[str],
        upstream: Optional[ManagedProcess] = None,
        write_stdout: bool = False
    ) -> Optional[ManagedProcess]:
        """
        Spawn a member process and wire it to its upstream producer.

        Returns:
            The process, or None if the generation already collapsed.
        """
        if self.collapsed:
            return None

        proc = ManagedProcess(
            role=role,
            argv=argv,
            channel_label=self.channel.label,
            log_dir=self.log_dir,
            log_prefix=f"{role}-{safe_name(self.channel.name)}-g{self.number}",
            read_stdin=upstream is not None,
            write_stdout=write_stdout,
        )
        if upstream is None and self.ingest is None:
            self.ingest = proc
        self.processes.append(proc)
        proc.on_exit(self._on_member_exit)

        if not await proc.spawn():
            return proc

        if self.collapsed:
            # Collapsed while this process was starting
            proc.kill()
            return proc

        if upstream is not None:
            self._pump_for(upstream).add_sink(ProcessInputSink(proc))
            self.edges.append(PipeEdge(producer=upstream, consumer=proc))
        return proc

    async def attach_file(self, upstream: ManagedProcess, path: Path) -> Optional[FileSink]:
        """Copy ``upstream`` output into a file."""
        if self.collapsed:
            return None

        sink = FileSink(path)
        await sink.open()
        self.sinks.append(sink)
        self._pump_for(upstream).add_sink(sink)
        self.edges.append(PipeEdge(producer=upstream, consumer=sink))
        return sink

    def sink_for(self, producer: ManagedProcess, consumer: ManagedProcess) -> Optional[StreamSink]:
        pump = self._pumps.get(id(producer))
        if pump is None:
            return None
        for sink in pump.sinks:
            if isinstance(sink, ProcessInputSink) and sink.target is consumer:
                return sink
        return None

    def start_pumps(self) -> None:
        """Start moving bytes. Producers without consumers are drained."""
        if self.collapsed:
            return
        for proc in self.processes:
            if proc.write_stdout and proc.running:
                self._pump_for(proc).start()

    def _on_member_exit(self, proc: ManagedProcess) -> None:
        if proc.error is not None:
            self.errors.append(proc.error)
        if self.collapsed:
            return

        if proc is self.ingest:
            self._logger.info(f"Ingest ended (code {proc.returncode}), stopping generation {self.number}")
        else:
            self._logger.warning(
                f"{proc.role} (pid {proc.pid}) ended (code {proc.returncode}), "
                f"stopping generation {self.number}"
            )
        self.collapse()

    def collapse(self) -> None:
        """Signal every member. Idempotent. Pumps end at their producer's EOF."""
        self.collapsed = True
        if self.ingest is not None:
            self.ingest.kill()
        for proc in self.processes:
            proc.kill()

    async def drain(self, timeout: float = 5.0) -> bool:
        """
        Wait for members to exit and sinks to close after ``collapse``.

        Members still running after ``timeout`` get SIGKILL, so nothing
        outlives the generation.

        Returns:
            True if everything finished within ``timeout`` without SIGKILL.
        """
        finished = True
        try:
            await asyncio.wait_for(
                asyncio.gather(*(proc.wait() for proc in self.processes)), timeout
            )
        except asyncio.TimeoutError:
            finished = False
            stuck = [proc for proc in self.processes if proc.running]
            self._logger.warning(
                f"Generation {self.number}: {', '.join(p.role for p in stuck)} "
                f"still running after {timeout}s, killing"
            )
            for proc in stuck:
                proc.kill(signal.SIGKILL)
            await asyncio.gather(*(proc.wait() for proc in stuck))

        pending = [pump.wait() for pump in self._pumps.values()]
        pending += [proc.close_logs() for proc in self.processes]
        try:
            await asyncio.wait_for(asyncio.gather(*pending, return_exceptions=True), timeout)
        except asyncio.TimeoutError:
            self._logger.warning(f"Generation {self.number}: streams did not close within {timeout}s")
            finished = False
            for pump in self._pumps.values():
                pump.cancel()
            await asyncio.gather(*(pump.wait() for pump in self._pumps.values()))

        # Sinks whose pump never started
        for sink in self.sinks:
            await sink.close()
        return finished


class FfmpegCommands:
    """Builds ffmpeg command lines for every pipeline role."""

    def __init__(self, ffmpeg_path: str, segment_window: int = 5, hls_segment_seconds: int = 4,
                 loglevel: str = "repeat+level+info"):
        self.ffmpeg_path = ffmpeg_path
        self.segment_window = segment_window
        self.hls_segment_seconds = hls_segment_seconds
        self.loglevel = loglevel

    def _base(self) -> List[str]:
        return [self.ffmpeg_path, '-hide_banner', '-loglevel', self.loglevel]

    def ingest(self, url: str) -> List[str]:
        return self._base() + [
            '-re', '-i', url,
            '-c:v', 'copy', '-c:a', 'copy',
            '-f', 'flv', '-',
        ]

    def transfer(self, url: str) -> List[str]:
        return self._base() + [
            '-re', '-i', '-',
            '-c:v', 'copy', '-c:a', 'copy',
            '-f', 'flv', url,
        ]

    def encode(self, preset: Preset) -> List[str]:
        return self._base() + [
            '-re', '-i', '-',
            '-vf', f"scale=-2:{preset.scale},fps=fps={preset.fps}",
            '-c:v', 'libx264',
            '-preset', preset.preset,
            '-tune', 'zerolatency',
            '-crf', str(preset.crf),
            '-maxrate', f"{preset.video_bitrate_kbps}k",
            '-bufsize', f"{preset.video_bitrate_kbps}k",
            '-c:a', 'aac',
            '-b:a', f"{preset.audio_bitrate_kbps}k",
            '-f', 'flv', '-',
        ]

    def package(self, fmt: PackageFormat, output_dir: Path) -> List[str]:
        cmd = self._base() + ['-y', '-re', '-i', '-', '-c:v', 'copy', '-c:a', 'copy']
        if fmt is PackageFormat.MPD:
            cmd += [
                '-f', 'dash',
                '-window_size', str(self.segment_window),
                '-extra_window_size', str(self.segment_window),
                '-remove_at_exit', '1',
            ]
        else:
            cmd += [
                '-f', 'hls',
                '-hls_time', str(self.hls_segment_seconds),
                '-hls_list_size', str(self.segment_window),
                '-hls_flags', 'delete_segments',
            ]
        cmd.append(str(output_dir / fmt.manifest_name))
        return cmd


class PipelineBuilder:
    """
    Spawns the processes of a generation from a channel's task list.

    Features:
    - Recording to timestamped files
    - Relaying to other servers without re-encoding
    - Preset-based transcoding followed by relays
    - DASH/HLS packaging into per-channel directories
    """

    def __init__(
        self,
        commands: FfmpegCommands,
        presets: Mapping[str, Preset],
        output_dirs: Mapping[PackageFormat, Path],
        log_dir: Optional[Path] = None
    ):
        self.commands = commands
        self.presets = dict(presets)
        self.output_dirs = dict(output_dirs)
        self.log_dir = log_dir

    @classmethod
    def from_config(cls, ffmpeg_path: str, presets: Mapping[str, Preset], worker: WorkerConfig) -> 'PipelineBuilder':
        return cls(
            commands=FfmpegCommands(
                ffmpeg_path,
                segment_window=worker.segment_window,
                hls_segment_seconds=worker.hls_segment_seconds,
            ),
            presets=presets,
            output_dirs={
                PackageFormat.MPD: Path(worker.mpd_dir),
                PackageFormat.HLS: Path(worker.hls_dir),
            },
            log_dir=Path(worker.process_log_dir),
        )

    def new_generation(self, channel: 'Channel', number: int) -> PipelineGeneration:
        return PipelineGeneration(channel, number, log_dir=self.log_dir)

    def output_dir(self, fmt: PackageFormat, channel: 'Channel') -> Path:
        return self.output_dirs[fmt] / channel.id

    async def spawn_ingest(self, generation: PipelineGeneration, channel: 'Channel') -> ManagedProcess:
        """Start the process capturing the channel's source stream."""
        return await generation.spawn('ingest', self.commands.ingest(channel.url), write_stdout=True)

    async def build(self, generation: PipelineGeneration, ingest: ManagedProcess, channel: 'Channel') -> None:
        """Spawn one branch per task, in declared order."""
        for task in channel.tasks:
            if generation.collapsed:
                return
            await self._build_task(generation, ingest, channel, task)

    async def _build_task(self, generation: PipelineGeneration, ingest: ManagedProcess,
                          channel: 'Channel', task: Task) -> None:
        logger = get_channel_logger(channel.label, 'pipeline')

        if isinstance(task, WriteTask):
            millis = int(time.time() * 1000)
            for base in task.paths:
                path = Path(base) / f"{safe_name(channel.name)}_{millis}.mp4"
                try:
                    await generation.attach_file(ingest, path)
                except OSError as e:
                    logger.error(f"Cannot record to {path}: {e}")
                else:
                    logger.info(f"Recording to {path}")

        elif isinstance(task, TransferTask):
            await self._spawn_transfers(generation, ingest, task.urls)

        elif isinstance(task, EncodeTask):
            if not task.urls:
                return
            preset = self.presets.get(task.preset)
            if preset is None:
                logger.warning(f"Unknown preset '{task.preset}', skipping encode task")
                return
            encoder = await generation.spawn(
                f"encode_{safe_name(preset.name)}", self.commands.encode(preset),
                upstream=ingest, write_stdout=True,
            )
            if encoder is None or not encoder.running:
                return
            await self._spawn_transfers(generation, encoder, task.urls)

        elif isinstance(task, PackageTask):
            await self._spawn_package(generation, ingest, channel, task.format)

    async def _spawn_transfers(self, generation: PipelineGeneration, source: ManagedProcess, urls) -> None:
        for url in urls:
            await generation.spawn('transfer', self.commands.transfer(url), upstream=source)

    async def _spawn_package(self, generation: PipelineGeneration, ingest: ManagedProcess,
                             channel: 'Channel', fmt: PackageFormat) -> None:
        output_dir = self.output_dir(fmt, channel)
        shutil.rmtree(output_dir, ignore_errors=True)
        output_dir.mkdir(parents=True, exist_ok=True)

        proc = await generation.spawn(fmt.value, self.commands.package(fmt, output_dir), upstream=ingest)
        if proc is None:
            shutil.rmtree(output_dir, ignore_errors=True)
            return

        def remove_output(_proc: ManagedProcess) -> None:
            shutil.rmtree(output_dir, ignore_errors=True)

        proc.on_exit(remove_output)
        if not proc.running:
            return

        running_task = RunningTask(protocol=fmt.value, path=str(output_dir))
        channel.running_tasks.append(running_task)
        sink = generation.sink_for(ingest, proc)
        if sink is not None:
            sink.on_write = running_task.add_bytes
