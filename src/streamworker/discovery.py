"""
Discovery loop for Stream Worker.

Polls every service's stats API and turns liveness changes into channel
creation (supervisor started) and destruction (supervisor stopped).
Wildcard channel specs are expanded against the service roster first.
"""

import asyncio
from typing import Callable, Dict, List, Sequence, Tuple
from urllib.parse import urlparse

from .channel import Channel, ChannelSupervisor
from .config import ChannelSpec, ServiceConfig
from .logger import get_channel_logger, get_logger
from .registry import ChannelRegistry
from .stats_client import ChannelStats, StatsClient

SupervisorFactory = Callable[[Channel], ChannelSupervisor]


class DiscoveryLoop:
    """
    Maps external liveness to online channels.

    Features:
    - Fixed-interval polling of every declared channel
    - Idempotent: unchanged answers cause no creation or teardown
    - Wildcard specs resolved to per-stream specs with stable ids
    - Unreachable stats API means "skip this tick", never "offline"
    """

    def __init__(
        self,
        services: Sequence[ServiceConfig],
        client: StatsClient,
        registry: ChannelRegistry,
        supervisor_factory: SupervisorFactory,
        check_interval: float = 5.0
    ):
        """
        Initialize discovery loop.

        Args:
            services: Services and their channel specs.
            client: Stats API client.
            registry: Online channel registry (owned by this loop).
            supervisor_factory: Builds a supervisor for a new channel.
            check_interval: Seconds between ticks.
        """
        self.services = list(services)
        self.client = client
        self.registry = registry
        self.supervisor_factory = supervisor_factory
        self.check_interval = check_interval

        self._logger = get_logger('discovery')
        self._running = False
        self._stop_event = asyncio.Event()

        # wildcard spec id -> resolved name -> synthetic spec
        self._resolved: Dict[str, Dict[str, ChannelSpec]] = {}
        # pruned specs whose channel is still online: service name -> id -> spec
        self._retained: Dict[str, Dict[str, ChannelSpec]] = {}
        # channel id -> supervisor stopped by _take_offline, until its loop ends
        self._retiring: Dict[str, ChannelSupervisor] = {}

    def resolved_specs(self, wildcard: ChannelSpec) -> List[ChannelSpec]:
        """Synthetic specs currently resolved for a wildcard spec."""
        return list(self._resolved.get(wildcard.id, {}).values())

    def specs_for(self, service: ServiceConfig) -> List[ChannelSpec]:
        """Concrete specs to poll for a service, with wildcards expanded."""
        specs: Dict[str, ChannelSpec] = {}
        for spec in service.channels:
            if spec.is_wildcard:
                for resolved in self.resolved_specs(spec):
                    specs.setdefault(resolved.id, resolved)
            else:
                specs.setdefault(spec.id, spec)

        retained = self._retained.get(service.name, {})
        for spec_id in list(retained):
            if spec_id not in self.registry:
                del retained[spec_id]
            else:
                specs.setdefault(spec_id, retained[spec_id])

        return list(specs.values())

    async def resolve_wildcards(self, service: ServiceConfig) -> None:
        """
        Refresh every wildcard spec of a service from its roster.

        A failed roster query keeps the previous resolution.
        """
        wildcards = [spec for spec in service.channels if spec.is_wildcard]
        if not wildcards:
            return

        roster = await self.client.get_channel_list(service)
        if roster is None:
            return

        declared = {spec.name for spec in service.channels if not spec.is_wildcard}
        names = [name for name in roster.names_for_app(service.app) if name not in declared]

        for wildcard in wildcards:
            current = self._resolved.setdefault(wildcard.id, {})

            for name in list(current):
                if name not in names:
                    pruned = current.pop(name)
                    self._logger.debug(f"{service.name}: pruned {pruned.name} from '{wildcard.id}'")
                    if pruned.id in self.registry:
                        self._retained.setdefault(service.name, {})[pruned.id] = pruned

            for name in names:
                if name not in current:
                    current[name] = ChannelSpec(
                        id=f"{wildcard.id}_{name}",
                        name=name,
                        tasks=wildcard.tasks,
                    )
                    self._logger.debug(f"{service.name}: resolved {name} from '{wildcard.id}'")

    async def tick(self) -> None:
        """Run one discovery pass over every service."""
        results = await asyncio.gather(
            *(self._poll_service(service) for service in self.services),
            return_exceptions=True
        )
        for service, result in zip(self.services, results):
            if isinstance(result, Exception):
                self._logger.error(
                    f"Discovery failed for {service.name}: {result}",
                    exc_info=(type(result), result, result.__traceback__)
                )

    async def _poll_service(self, service: ServiceConfig) -> None:
        await self.resolve_wildcards(service)
        for spec in self.specs_for(service):
            try:
                await self._check_spec(service, spec)
            except Exception as e:
                self._logger.error(f"{service.name}: check of {spec.name} failed: {e}", exc_info=True)

    async def _check_spec(self, service: ServiceConfig, spec: ChannelSpec) -> None:
        stats = await self.client.get_channel_stats(service, spec.name)
        if stats is None:
            return

        online = spec.id in self.registry
        if stats.is_live and not online:
            if self._still_retiring(spec.id):
                self._logger.debug(f"{service.name}: {spec.name} is live, previous pipeline still stopping")
                return
            self._bring_online(service, spec, stats)
        elif not stats.is_live and online:
            self._take_offline(spec)

    def retiring(self) -> Tuple[ChannelSupervisor, ...]:
        """Supervisors taken offline whose loop has not finished yet."""
        for channel_id in [cid for cid, sup in self._retiring.items() if sup.done]:
            del self._retiring[channel_id]
        return tuple(self._retiring.values())

    def _still_retiring(self, channel_id: str) -> bool:
        supervisor = self._retiring.get(channel_id)
        if supervisor is None:
            return False
        if supervisor.done:
            del self._retiring[channel_id]
            return False
        return True

    def _bring_online(self, service: ServiceConfig, spec: ChannelSpec, stats: ChannelStats) -> Channel:
        origin = stats.origin or urlparse(service.rtmp_base).netloc
        tasks = tuple(
            task.resolve(origin=origin, channel=spec.name, app=service.app)
            for task in spec.tasks
        )
        channel = Channel(
            id=spec.id,
            name=spec.name,
            app=service.app,
            service=service.name,
            url=f"{service.rtmp_base}/{service.app}/{spec.name}",
            tasks=tasks,
        )

        supervisor = self.supervisor_factory(channel) if tasks else None
        self.registry.add(channel, supervisor)
        get_channel_logger(channel.label).info(f"🔴 Went online ({len(tasks)} tasks)")

        if supervisor is not None:
            supervisor.start()
        return channel

    def _take_offline(self, spec: ChannelSpec) -> None:
        channel, supervisor = self.registry.remove(spec.id)
        get_channel_logger(channel.label).info("⚫ Went offline")
        if supervisor is not None:
            supervisor.stop(kill=True)
            # Same id must not come back online while this one tears down
            self._retiring[channel.id] = supervisor

    async def run(self) -> None:
        """Poll until ``stop()``."""
        self._running = True
        self._logger.info(
            f"Watching {sum(len(s.channels) for s in self.services)} channel specs "
            f"on {len(self.services)} services"
        )

        while self._running:
            try:
                await self.tick()
            except Exception as e:
                self._logger.error(f"Discovery error: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.check_interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        """Stop polling. Online channels are left to the caller."""
        self._running = False
        self._stop_event.set()
        self._logger.info("Discovery stopped")
