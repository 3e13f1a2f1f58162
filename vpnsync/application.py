"""Composition root wiring settings, stores, scheduler and the HTTP app."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from .api import create_app
from .commands import CommandRunner
from .config import SSHSettings, SyncSettings, load_settings
from .directory import Directory
from .docker_exec import DockerExecRunner
from .external_store import ExternalStoreClient
from .history import SyncHistory
from .reconciler import Reconciler
from .scheduler import Scheduler
from .security import TokenAuth
from .service import SyncService
from .ssh import SSHClientFactory, SSHDockerExecRunner, SSHTarget

logger = logging.getLogger("vpnsync.application")


def _ssh_target(settings: SSHSettings) -> SSHTarget:
    try:
        private_key = settings.private_key_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValueError(f"Unable to read SSH private key {settings.private_key_path}: {exc}") from exc
    return SSHTarget(
        hostname=settings.hostname,
        port=settings.port,
        username=settings.username,
        private_key=private_key,
        passphrase=settings.passphrase,
        allow_unknown_hosts=settings.allow_unknown_hosts,
        known_hosts_path=settings.known_hosts_file,
    )


def build_runner(settings: SyncSettings) -> CommandRunner:
    """Pick the transport: SSH to a remote Docker host, else the local Engine API."""

    if settings.ssh is not None:
        logger.info(
            "Using SSH transport to %s@%s:%d for container %s",
            settings.ssh.username,
            settings.ssh.hostname,
            settings.ssh.port,
            settings.container_name,
        )
        factory = SSHClientFactory(_ssh_target(settings.ssh))
        return SSHDockerExecRunner(factory, settings.container_name)

    logger.info(
        "Using Docker Engine transport (%s) for container %s",
        settings.docker_host or "environment defaults",
        settings.container_name,
    )
    return DockerExecRunner(settings.container_name, docker_host=settings.docker_host)


def build_service(
    settings: SyncSettings,
    *,
    runner: Optional[CommandRunner] = None,
    directory: Optional[Directory] = None,
) -> SyncService:
    if directory is None:
        directory = Directory(settings.database_path)
        directory.initialize()

    store = ExternalStoreClient(
        runner if runner is not None else build_runner(settings),
        sacli=settings.sacli_path,
        timeout=settings.command_timeout,
    )
    reconciler = Reconciler(directory, store)
    scheduler = Scheduler(
        reconciler,
        interval_minutes=settings.interval_minutes,
        history=SyncHistory(max_entries=settings.history_size),
    )
    return SyncService(directory, reconciler, scheduler)


def create_application(
    settings: Optional[SyncSettings] = None,
    *,
    service: Optional[SyncService] = None,
) -> FastAPI:
    """Create the ASGI application; the scheduler follows the app lifespan."""

    settings = settings or load_settings()
    service = service or build_service(settings)

    auth: TokenAuth | None = None
    if settings.api_tokens:
        auth = TokenAuth(settings.api_tokens)
    else:
        logger.warning("No API tokens configured; synchronisation endpoints are unauthenticated")

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        startup_run = None
        if settings.scheduler_enabled:
            service.scheduler.start(run_immediately=settings.run_on_startup)
        else:
            logger.info("Sync scheduler disabled by configuration")
            if settings.run_on_startup:
                startup_run = service.scheduler.run_in_background(trigger="startup")
        try:
            yield
        finally:
            if service.scheduler.is_running:
                service.scheduler.stop(wait=True, timeout=settings.command_timeout)
            if startup_run is not None:
                startup_run.join(settings.command_timeout)

    app = create_app(service, auth=auth, lifespan=lifespan)
    app.state.settings = settings
    return app


__all__ = ["build_runner", "build_service", "create_application"]
