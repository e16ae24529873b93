"""hookdeploy server — FastAPI application that ties all components together.

Startup sequence:
1. Load .hookdeploy/ config
2. Initialize SQLite run registry
3. Build credential store, remote executor, supervisor client, notifier
4. Create stage engine and trigger listener
5. Recover runs interrupted by a previous shutdown
6. Wire webhook and status routers
7. Begin accepting webhooks

Shutdown:
1. Stop pipeline workers (queued runs stay pending for the next start)
2. Close notifier HTTP client
3. Close database
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite
from fastapi import FastAPI

from hookdeploy.config import HookdeployConfig, load_config, resolve_config_dir, resolve_data_dir
from hookdeploy.credentials import CredentialStore
from hookdeploy.dashboard import configure as configure_dashboard
from hookdeploy.dashboard import router as dashboard_router
from hookdeploy.notify import RunNotifier
from hookdeploy.pipeline import (
    RunRegistry,
    RunStatus,
    StageEngine,
    TriggerMetadata,
    TriggerSource,
)
from hookdeploy.remote import RemoteExecutor
from hookdeploy.supervisor import ProcessSupervisorClient
from hookdeploy.trigger import TriggerListener
from hookdeploy.webhook import configure as configure_webhook
from hookdeploy.webhook import router as webhook_router

logger = logging.getLogger(__name__)


class DeployServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(
        self,
        repo_root: Path | None = None,
        *,
        config_dir: Path | None = None,
        data_dir: Path | None = None,
    ):
        self.repo_root = repo_root or Path.cwd()
        self.config_dir = config_dir or resolve_config_dir(self.repo_root)
        self.data_dir = data_dir or resolve_data_dir(self.repo_root)

        # Components (initialized in start())
        self.config: HookdeployConfig | None = None
        self.db: aiosqlite.Connection | None = None
        self.registry: RunRegistry | None = None
        self.credentials: CredentialStore | None = None
        self.executor: RemoteExecutor | None = None
        self.supervisor: ProcessSupervisorClient | None = None
        self.notifier: RunNotifier | None = None
        self.engine: StageEngine | None = None
        self.listener: TriggerListener | None = None

    async def start(self, *, recover: bool = True) -> None:
        """Initialize all components and start accepting triggers."""
        logger.info("hookdeploy server starting (config=%s)", self.config_dir)

        # 1. Load config
        self.config = load_config(self.config_dir)

        # 2. Initialize database
        self.data_dir.mkdir(parents=True, exist_ok=True)
        db_path = self.data_dir / "runs.db"
        logger.info("Run registry DB path: %s", db_path)
        self.db = await aiosqlite.connect(db_path)
        self.db.row_factory = aiosqlite.Row
        self.registry = RunRegistry(self.db)
        await self.registry.initialize()

        # 3. Transport, supervisor, notifications
        self._build_transport(self.config)
        self.notifier = RunNotifier()
        await self.notifier.start()

        # 4. Engine + listener
        self.engine = StageEngine(
            self.registry,
            self.config,
            executor=self.executor,
            supervisor=self.supervisor,
            staging_dir=self._staging_dir(self.config),
            notifier=self.notifier,
        )
        self.listener = TriggerListener(self.registry, self.engine, self.config)

        # 5. Recover runs from a previous process
        if recover:
            await self.listener.recover()

        # 6. Routers
        configure_webhook(self.listener, rate_limit_max=self.config.runtime.webhook_rate_limit)
        configure_dashboard(self.registry, self.listener, reload_callback=self.reload)

        logger.info(
            "hookdeploy server started (%d pipeline(s): %s)",
            len(self.config.pipelines),
            ", ".join(sorted(self.config.pipelines)) or "none",
        )

    async def stop(self) -> None:
        """Graceful shutdown — stop all components."""
        logger.info("hookdeploy server shutting down")

        if self.listener:
            await self.listener.stop()
        if self.notifier:
            await self.notifier.close()
        if self.db:
            await self.db.close()
            self.db = None

        logger.info("hookdeploy server stopped")

    async def reload(self) -> list[str]:
        """Re-read configuration from disk and swap it in.

        Runs already queued or executing keep the definition snapshot they
        were created with.  A config that fails to load leaves the current
        one in place.

        Returns the names of the pipelines now configured.
        """
        new_config = load_config(self.config_dir)

        self.config = new_config
        self._build_transport(new_config)
        if self.engine:
            self.engine.update_config(new_config)
            self.engine.executor = self.executor
            self.engine.supervisor = self.supervisor
            self.engine.staging_dir = self._staging_dir(new_config)
        if self.listener:
            self.listener.update_config(new_config)
            configure_webhook(self.listener, rate_limit_max=new_config.runtime.webhook_rate_limit)

        names = sorted(new_config.pipelines)
        logger.info("Configuration reloaded: %d pipeline(s)", len(names))
        return names

    async def run_once(
        self, pipeline: str, *, ref: str | None = None, commit: str | None = None
    ) -> RunStatus:
        """Queue one manual run and wait for it to finish (used by the CLI)."""
        assert self.listener is not None and self.registry is not None
        run = await self.listener.enqueue(
            pipeline, TriggerMetadata(source=TriggerSource.MANUAL, ref=ref, commit=commit)
        )
        await self.listener.drain()
        final = await self.registry.get(run.run_id)
        return final.status if final else RunStatus.FAILED

    def _build_transport(self, config: HookdeployConfig) -> None:
        self.credentials = CredentialStore(config.credentials)
        self.executor = RemoteExecutor(
            self.credentials,
            connect_timeout=config.runtime.ssh_connect_timeout,
            transport_retries=config.runtime.transport_retries,
            retry_backoff=config.runtime.retry_backoff,
        )
        self.supervisor = ProcessSupervisorClient(self.executor, config.supervisor)

    def _staging_dir(self, config: HookdeployConfig) -> Path:
        if config.runtime.staging_dir:
            return Path(config.runtime.staging_dir).expanduser()
        return self.data_dir / "staging"


# ── FastAPI App ──────────────────────────────────────────────────────────────

_server = DeployServer()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan — startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


def create_app(
    repo_root: Path | None = None,
    *,
    config_dir: Path | None = None,
    data_dir: Path | None = None,
) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = DeployServer(repo_root, config_dir=config_dir, data_dir=data_dir)

    app = FastAPI(
        title="hookdeploy",
        version="0.1.0",
        description="Webhook-driven deployment pipelines",
        lifespan=lifespan,
    )

    app.include_router(webhook_router)
    app.include_router(dashboard_router)

    @app.get("/health")
    async def health():
        """Health check with queue and run counts."""
        counts: dict[str, int] = {}
        if _server.registry:
            for status in (RunStatus.PENDING, RunStatus.RUNNING):
                runs = await _server.registry.list_by_status([status])
                counts[status.value] = len(runs)
        return {
            "status": "ok",
            "project": _server.config.project.name if _server.config else None,
            "pipelines": sorted(_server.config.pipelines) if _server.config else [],
            "runs": counts,
        }

    return app
