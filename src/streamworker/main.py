"""
Stream Worker - Main Orchestrator.

Coordinates all modules:
1. Poll the stats API of every configured service
2. Start a channel supervisor when a stream goes live
3. Keep the ffmpeg pipeline of every live channel running
4. Stop supervisors when streams go offline
5. Optionally push throughput stats to a stats server
"""

import asyncio
import shutil
import signal
import sys
from pathlib import Path
from typing import List, Optional

from .channel import Channel, ChannelSupervisor
from .config import Config, load_config
from .discovery import DiscoveryLoop
from .logger import get_logger, setup_logging
from .pipeline import PipelineBuilder
from .registry import ChannelRegistry
from .stats import StatsPusher, SubscriberBook
from .stats_client import StatsClient


def resolve_ffmpeg(path: str) -> str:
    """
    Locate the ffmpeg binary.

    Raises:
        FileNotFoundError: If it does not exist.
    """
    if Path(path).is_file():
        return path
    found = shutil.which(path)
    if found is None:
        raise FileNotFoundError(f"ffmpeg not found: {path}")
    return found


class StreamWorkerApp:
    """
    Main application.

    Handles:
    - Startup checks and output directories
    - Discovery loop and channel supervisors
    - Optional stats push
    - Graceful shutdown of every pipeline
    """

    def __init__(self, config: Config, client: Optional[StatsClient] = None):
        """Initialize application with configuration."""
        self.config = config
        self._logger = get_logger('app')

        # Fatal if missing
        self.ffmpeg_path = resolve_ffmpeg(config.ffmpeg.path)

        self.client = client or StatsClient(timeout=config.http.timeout)
        self.registry = ChannelRegistry()
        self.subscribers = SubscriberBook()
        self.builder = PipelineBuilder.from_config(
            self.ffmpeg_path, config.ffmpeg.presets, config.worker
        )

        self.discovery = DiscoveryLoop(
            services=config.services,
            client=self.client,
            registry=self.registry,
            supervisor_factory=self._create_supervisor,
            check_interval=config.worker.check_interval,
        )

        self.pusher: Optional[StatsPusher] = None
        if config.stats_push.enabled:
            self.pusher = StatsPusher(
                client=self.client,
                url=config.stats_push.url,
                token=config.stats_push.token,
                channels=self.registry.snapshot,
                subscribers=self.subscribers,
                interval=config.stats_push.interval,
                server=config.stats_push.server,
            )

        self._tasks: List[asyncio.Task] = []

    def _create_supervisor(self, channel: Channel) -> ChannelSupervisor:
        return ChannelSupervisor(
            channel,
            self.builder,
            backoff_step=self.config.worker.backoff_step,
        )

    def prepare_directories(self) -> None:
        worker = self.config.worker
        for directory in (worker.mpd_dir, worker.hls_dir, worker.process_log_dir):
            Path(directory).mkdir(parents=True, exist_ok=True)

    async def start(self) -> None:
        """Start background loops."""
        self._logger.info(f"Starting Stream Worker (ffmpeg: {self.ffmpeg_path})...")
        self.prepare_directories()
        await self.client.connect()

        self._tasks.append(asyncio.create_task(self.discovery.run()))
        if self.pusher is not None:
            self._tasks.append(asyncio.create_task(self.pusher.run()))

    async def run(self) -> None:
        """Run until SIGINT/SIGTERM."""
        await self.start()

        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        try:
            await stop_event.wait()
        finally:
            self._logger.info("Shutdown signal received...")
            await self.shutdown()

    async def shutdown(self) -> None:
        """Stop discovery and every supervisor, then close the HTTP session."""
        self.discovery.stop()
        if self.pusher is not None:
            self.pusher.stop()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        supervisors = self.registry.supervisors() + self.discovery.retiring()
        for supervisor in supervisors:
            supervisor.stop(kill=True)
        if supervisors:
            self._logger.info(f"Waiting for {len(supervisors)} pipelines to stop...")
            await asyncio.gather(*(s.wait() for s in supervisors), return_exceptions=True)

        for channel in self.registry.snapshot():
            self.registry.remove(channel.id)

        try:
            await asyncio.wait_for(self.client.disconnect(), timeout=5.0)
        except Exception as e:
            self._logger.warning(f"Error closing HTTP session: {e}")

        self._logger.info("Cleanup complete")


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    argv = sys.argv[1:] if argv is None else argv
    config_path = argv[0] if argv else "config.yaml"

    try:
        config = load_config(config_path)
    except FileNotFoundError as e:
        print(f"Error: {e}")
        return 1
    except ValueError as e:
        print(f"Configuration error: {e}")
        return 1

    setup_logging(
        level=config.logging.level,
        log_file=config.logging.file,
        max_size_mb=config.logging.max_size_mb,
        backup_count=config.logging.backup_count
    )

    try:
        app = StreamWorkerApp(config)
    except FileNotFoundError as e:
        get_logger('app').critical(str(e))
        return 1

    await app.run()
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == '__main__':
    run()
