"""Process-wide service graph and its startup/shutdown sequence."""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from berth.auth import TokenVerifier
from berth.concurrency import BackgroundTasks
from berth.config import Settings
from berth.errors import best_effort
from berth.ports import PortDiscovery
from berth.runtime.base import ContainerRuntime
from berth.sessions import SessionManager
from berth.storage import DurableStorageAdapter, build_adapter
from berth.sync import FileSyncEngine

logger = structlog.get_logger()


@dataclass
class Services:
    """Everything a request handler needs, wired once per process."""

    runtime: ContainerRuntime
    storage: DurableStorageAdapter
    sync: FileSyncEngine
    sessions: SessionManager
    ports: PortDiscovery
    verifier: TokenVerifier

    @classmethod
    def assemble(
        cls,
        runtime: ContainerRuntime,
        storage: DurableStorageAdapter,
        verifier: TokenVerifier,
    ) -> Services:
        sync = FileSyncEngine(runtime, storage, BackgroundTasks())
        return cls(
            runtime=runtime,
            storage=storage,
            sync=sync,
            sessions=SessionManager(runtime, sync),
            ports=PortDiscovery(runtime),
            verifier=verifier,
        )

    async def startup(self) -> None:
        """Prepare storage, build the base image and remove orphans.

        Engine failures here are fatal: no session is accepted until the
        engine has answered once.
        """
        with best_effort("startup.storage"):
            await self.storage.initialize()

        built = await self.runtime.build_base_image()
        removed = await self.runtime.cleanup_orphans()
        logger.info("berth.startup", image_built=built, orphans_removed=removed)

    async def shutdown(self) -> None:
        logger.info("berth.shutdown", sessions=len(self.sessions))
        await self.sessions.shutdown()
        await self.storage.close()
        await self.runtime.close()


def build_services(settings: Settings) -> Services:
    """Wire the production services from settings."""
    from berth.runtime.docker import DockerRuntime

    return Services.assemble(
        runtime=DockerRuntime(settings.docker),
        storage=build_adapter(settings.storage),
        verifier=TokenVerifier(settings.security),
    )
