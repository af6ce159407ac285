"""Flow service: definition lifecycle, triggering and run history.

This is the surface a REST layer calls; it maps nothing to HTTP itself, but
every exception it raises carries a ``status_code`` for that purpose.
"""

from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from app.config import get_settings
from automation.context import TriggerContext
from automation.engine import AutomationEngine
from automation.graph import FlowGraph
from automation.models import ExecutionError, ExecutionLog, FlowDefinition
from automation.storage import ExecutionStore, FlowStore
from core.constants import ExecutionStatus, FlowStatus, TriggerType
from core.exceptions import (
    AutomationException,
    ConflictError,
    ExecutionNotFoundError,
    FlowNotFoundError,
    FlowValidationError,
    ValidationError,
)
from core.utils import decode_cursor, encode_cursor, utc_now

logger = structlog.get_logger(__name__)

# Changing these creates a new version instead of editing in place
STRUCTURAL_FIELDS = {"nodes", "edges", "variables"}
_IMMUTABLE_FIELDS = {"name", "version", "status", "created_at"}
_TRIGGER_KEYS = {"params", "variables", "record_id", "record", "object", "user_id", "metadata", "tenant_id", "type"}


class TriggerResponse(BaseModel):
    success: bool
    execution_id: Optional[str] = None
    status: Optional[ExecutionStatus] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class RunPage(BaseModel):
    runs: list[ExecutionLog] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False
    total: int = 0


class FlowService:
    """Service for flow management and execution."""

    def __init__(
        self,
        flow_store: FlowStore,
        engine: AutomationEngine,
        execution_store: Optional[ExecutionStore] = None,
        settings=None,
    ):
        self.flows = flow_store
        self.engine = engine
        self.executions = execution_store or engine.execution_store
        self.settings = settings or get_settings()

    # ─── Definitions ──────────────────────────────────────────────────

    async def list_flows(self, status: Optional[FlowStatus] = None) -> list[FlowDefinition]:
        """Latest version of every flow, optionally filtered by status."""
        flows = await self.flows.list_latest()
        if status is not None:
            flows = [f for f in flows if f.status == status]
        return sorted(flows, key=lambda f: f.name)

    async def get_flow(self, name: str, version: Optional[int] = None) -> FlowDefinition:
        flow = await self.flows.get(name, version)
        if flow is None:
            raise FlowNotFoundError(name)
        return flow

    async def create_flow(self, definition: FlowDefinition) -> FlowDefinition:
        """Store a new flow as draft version 1."""
        if await self.flows.get(definition.name) is not None:
            raise ConflictError(f"Flow '{definition.name}' already exists")
        flow = definition.model_copy(
            update={"version": 1, "status": FlowStatus.DRAFT, "created_at": utc_now(), "updated_at": None}
        )
        await self.flows.save(flow)
        logger.info("flow_created", flow_name=flow.name)
        return flow

    async def update_flow(self, name: str, changes: dict[str, Any]) -> FlowDefinition:
        """
        Apply changes to the latest version.

        Graph changes (nodes, edges, variables) produce a new draft version so
        runs pinned to the old version keep their definition; anything else is
        edited in place.
        """
        latest = await self.get_flow(name)
        if latest.status == FlowStatus.OBSOLETE:
            raise ConflictError(f"Flow '{name}' v{latest.version} is obsolete and cannot be edited")
        forbidden = _IMMUTABLE_FIELDS & changes.keys()
        if forbidden:
            raise ValidationError(f"Fields cannot be changed: {sorted(forbidden)}")

        data = latest.model_dump()
        data.update(changes)
        data["updated_at"] = utc_now()
        if STRUCTURAL_FIELDS & changes.keys() and latest.status not in (FlowStatus.DRAFT, FlowStatus.INVALID):
            data.update(version=latest.version + 1, status=FlowStatus.DRAFT, created_at=utc_now())
        try:
            flow = FlowDefinition.model_validate(data)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        await self.flows.save(flow)
        logger.info("flow_updated", flow_name=name, version=flow.version, fields=sorted(changes))
        return flow

    def validate_flow(self, flow: FlowDefinition) -> list[str]:
        return FlowGraph(flow).validate(self.engine.registry.can_host_boundary)

    async def publish_flow(self, name: str, version: Optional[int] = None) -> FlowDefinition:
        """
        Make a version the active one; the previously active version becomes obsolete.

        Raises:
            FlowValidationError: The graph is structurally invalid (the version is marked invalid)
        """
        flow = await self.get_flow(name, version)
        errors = self.validate_flow(flow)
        if errors:
            flow.status = FlowStatus.INVALID
            flow.updated_at = utc_now()
            await self.flows.save(flow)
            logger.warning("flow_publish_rejected", flow_name=name, version=flow.version, errors=errors)
            raise FlowValidationError(name, errors)

        previous = await self.flows.get_active(name)
        if previous is not None and previous.version != flow.version:
            previous.status = FlowStatus.OBSOLETE
            previous.updated_at = utc_now()
            await self.flows.save(previous)
        flow.status = FlowStatus.ACTIVE
        flow.updated_at = utc_now()
        await self.flows.save(flow)
        logger.info(
            "flow_published",
            flow_name=name,
            version=flow.version,
            previous_version=previous.version if previous else None,
        )
        return flow

    async def retire_flow(self, name: str) -> FlowDefinition:
        """Mark the active version obsolete; paused runs pinned to it can still resume."""
        flow = await self.flows.get_active(name)
        if flow is None:
            raise FlowNotFoundError(name)
        flow.status = FlowStatus.OBSOLETE
        flow.updated_at = utc_now()
        await self.flows.save(flow)
        logger.info("flow_retired", flow_name=name, version=flow.version)
        return flow

    async def delete_flow(self, name: str) -> bool:
        deleted = await self.flows.delete(name)
        logger.info("flow_deleted", flow_name=name, deleted=deleted)
        return deleted

    async def toggle_flow(self, name: str, enabled: bool) -> FlowDefinition:
        """Enable or disable every version of a flow. Returns the latest version."""
        versions = await self.flows.list_versions(name)
        if not versions:
            raise FlowNotFoundError(name)
        for flow in versions:
            flow.enabled = enabled
            flow.updated_at = utc_now()
            await self.flows.save(flow)
        logger.info("flow_toggled", flow_name=name, enabled=enabled)
        return max(versions, key=lambda f: f.version)

    # ─── Execution ────────────────────────────────────────────────────

    async def trigger_flow(self, name: str, payload: Optional[dict[str, Any]] = None) -> TriggerResponse:
        """
        Start a run and report its outcome.

        ``payload`` may carry ``params`` (or ``variables``), ``record_id``,
        ``record``, ``object``, ``user_id``, ``metadata`` and ``tenant_id``;
        any other top-level keys are passed as params.
        """
        context = self._context_from_payload(payload or {})
        try:
            log = await self.engine.execute(name, context)
        except AutomationException as exc:
            logger.info("flow_trigger_rejected", flow_name=name, code=exc.code, error=exc.message)
            return TriggerResponse(success=False, error=exc.message, error_code=exc.code)
        return TriggerResponse(
            success=log.status not in (ExecutionStatus.FAILED, ExecutionStatus.TIMED_OUT),
            execution_id=log.id,
            status=log.status,
            error=log.error.message if log.error else None,
            error_code=log.error.code if log.error else None,
        )

    @staticmethod
    def _context_from_payload(payload: dict[str, Any]) -> TriggerContext:
        params = dict(payload.get("params") or payload.get("variables") or {})
        params.update({k: v for k, v in payload.items() if k not in _TRIGGER_KEYS})
        return TriggerContext(
            type=TriggerType(payload.get("type", TriggerType.API.value)),
            record_id=payload.get("record_id"),
            record=payload.get("record"),
            object=payload.get("object"),
            user_id=payload.get("user_id"),
            params=params,
            metadata=dict(payload.get("metadata") or {}),
            tenant_id=payload.get("tenant_id"),
        )

    # ─── Run history ──────────────────────────────────────────────────

    async def list_runs(
        self,
        flow_name: str,
        status: Optional[ExecutionStatus] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> RunPage:
        """Newest runs first, paginated by an opaque cursor."""
        limit = limit or self.settings.RUN_LIST_DEFAULT_LIMIT
        if limit < 1:
            raise ValidationError("limit must be positive")
        offset = decode_cursor(cursor)
        runs, total = await self.executions.list_logs(
            flow_name=flow_name,
            statuses=[status] if status else None,
            offset=offset,
            limit=limit,
        )
        has_more = offset + len(runs) < total
        return RunPage(
            runs=runs,
            next_cursor=encode_cursor(offset + len(runs)) if has_more else None,
            has_more=has_more,
            total=total,
        )

    async def get_run(self, flow_name: str, run_id: str) -> ExecutionLog:
        log = await self.executions.get_log(run_id)
        if log is None or log.flow_name != flow_name:
            raise ExecutionNotFoundError(run_id)
        return log

    async def get_run_errors(self, flow_name: str, run_id: str) -> list[ExecutionError]:
        await self.get_run(flow_name, run_id)
        return await self.executions.list_errors(run_id)
