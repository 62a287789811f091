"""Application startup and shutdown lifecycle management."""

from contextlib import asynccontextmanager
from typing import Optional
import structlog
from fastapi import FastAPI

from docflow.config.settings import Settings, settings as default_settings
from docflow.core.roles import AllowAllRoleResolver, RoleResolver, StaticRoleResolver
from docflow.core.route_registry import RouteRegistry
from docflow.core.timeout_manager import TimeoutManager
from docflow.core.workflow_engine import WorkflowEngine
from docflow.models import Database, SqlRepository, WorkflowInstanceRecord, WorkflowRouteRecord
from docflow.models.schemas import WorkflowInstance, WorkflowRoute

logger = structlog.get_logger()


def build_role_resolver(config: Settings) -> RoleResolver:
    if config.trust_all_roles:
        return AllowAllRoleResolver()
    return StaticRoleResolver(config.role_assignments)


def build_engine(
    config: Settings,
    db: Optional[Database] = None,
    role_resolver: Optional[RoleResolver] = None,
) -> WorkflowEngine:
    """
    Assemble a WorkflowEngine from settings. With a Database the registry
    and instance store persist through SQLAlchemy, otherwise they live in
    process memory.
    """
    if db is not None:
        routes = RouteRegistry(SqlRepository(db, WorkflowRouteRecord, WorkflowRoute))
        instances = SqlRepository(db, WorkflowInstanceRecord, WorkflowInstance)
    else:
        routes = RouteRegistry()
        instances = None

    if config.seed_default_routes:
        routes.seed_default_routes()

    engine = WorkflowEngine(
        role_resolver or build_role_resolver(config),
        routes=routes,
        instances=instances,
        use_route_timeout_fallback=config.use_route_timeout_fallback,
        action_url_prefix=config.action_url_prefix,
    )

    logger.info(
        "workflow_engine_built",
        storage_backend="sqlite" if db is not None else "memory",
        routes=len(routes.list_routes()),
        route_timeout_fallback=config.use_route_timeout_fallback,
    )
    return engine


def create_lifespan(config: Settings = default_settings, role_resolver: Optional[RoleResolver] = None):
    """
    Build a lifespan handler bound to a settings object.
    Manages the engine and the background timeout checker.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("application_starting", environment=config.environment)

        config.validate_critical_config()

        db = None
        if config.uses_database:
            db = Database(config.database_url)
            db.init()
            logger.info("database_initialized")

        engine = build_engine(config, db, role_resolver)

        timeout_manager = TimeoutManager(engine, check_interval=config.timeout_check_interval_seconds)
        await timeout_manager.start()

        # Store in app state for access in routes
        app.state.db = db
        app.state.engine = engine
        app.state.timeout_manager = timeout_manager

        logger.info("application_ready")

        yield

        # Shutdown
        logger.info("application_shutting_down")

        await timeout_manager.stop()
        if db is not None:
            db.close()

        logger.info("application_stopped")

    return lifespan


lifespan = create_lifespan()
