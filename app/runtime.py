"""Flow automation runtime: wires stores, engine, scheduler and service together.

    runtime = Runtime.build()
    await runtime.start()
    ...
    await runtime.stop()

``start`` creates the tables, reconciles executions left behind by a previous
process, then starts the engine sweep and its registered triggers (the scheduler loop).
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from app.config import Settings, get_settings
from automation.engine import AutomationEngine
from automation.recovery import RecoveryService
from core.logging_config import setup_logging
from db.database import close_db, create_db_engine, create_session_factory, init_db
from db.repositories import SqlAlchemyExecutionStore, SqlAlchemyFlowStore, SqlAlchemyScheduleStore
from nodes.base_node import NodeServices
from nodes.collaborators import HttpxTransport
from services.flow_service import FlowService
from triggers.scheduler import Scheduler

logger = structlog.get_logger(__name__)


@dataclass
class Runtime:
    settings: Settings
    db_engine: AsyncEngine
    engine: AutomationEngine
    scheduler: Scheduler
    flow_service: FlowService
    http: HttpxTransport
    started: bool = False

    @classmethod
    def build(cls, settings: Optional[Settings] = None, services: Optional[NodeServices] = None) -> "Runtime":
        """Assemble the SQL-backed runtime. Host collaborators (record store, sandbox, ...) come in ``services``."""
        settings = settings or get_settings()
        db_engine = create_db_engine(settings.DATABASE_URL)
        session_factory = create_session_factory(db_engine)

        flow_store = SqlAlchemyFlowStore(session_factory)
        execution_store = SqlAlchemyExecutionStore(session_factory)
        schedule_store = SqlAlchemyScheduleStore(session_factory)

        services = services or NodeServices()
        http = services.http or HttpxTransport(default_timeout_ms=settings.HTTP_DEFAULT_TIMEOUT_MS)
        services.http = http

        engine = AutomationEngine(flow_store, execution_store, services=services, settings=settings)
        scheduler = Scheduler(engine, schedule_store, settings=settings)
        engine.register_trigger(scheduler)
        return cls(
            settings=settings,
            db_engine=db_engine,
            engine=engine,
            scheduler=scheduler,
            flow_service=FlowService(flow_store, engine, execution_store, settings=settings),
            http=http,
        )

    async def start(self) -> None:
        if self.started:
            return
        setup_logging(self.settings)
        await init_db(self.db_engine)
        results = await RecoveryService(self.engine).reconcile()
        self.engine.start()
        self.started = True
        logger.info(
            "runtime_started",
            app=self.settings.APP_NAME,
            version=self.settings.APP_VERSION,
            environment=self.settings.ENVIRONMENT,
            reconciled=len(results),
        )

    async def stop(self) -> None:
        if not self.started:
            return
        await self.engine.stop()
        if isinstance(self.http, HttpxTransport):
            await self.http.close()
        await close_db(self.db_engine)
        self.started = False
        logger.info("runtime_stopped")


@asynccontextmanager
async def lifespan(settings: Optional[Settings] = None, services: Optional[NodeServices] = None):
    """Start a runtime for the duration of the block."""
    runtime = Runtime.build(settings, services)
    await runtime.start()
    try:
        yield runtime
    finally:
        await runtime.stop()
