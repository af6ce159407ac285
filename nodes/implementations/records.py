"""Record operation nodes backed by the host's RecordStore."""

from typing import Any, Dict

from automation.models import FlowNode
from core.constants import ErrorCode, NodeAction
from core.exceptions import NodeExecutionError
from nodes.base_node import NodeContext, NodeExecutor, NodeResult


class _RecordNode(NodeExecutor):
    """Shared plumbing: rendered config, store lookup, error wrapping."""

    requires_record_id = False

    def _prepare(self, node: FlowNode, context: NodeContext) -> Dict[str, Any]:
        if context.services.record_store is None:
            raise NodeExecutionError("No record store configured", code=ErrorCode.RECORD_ERROR)
        config = context.render(node.config)
        if not config.get("object"):
            raise NodeExecutionError("Missing required config: object", code=ErrorCode.RECORD_ERROR)
        if self.requires_record_id and not config.get("record_id"):
            raise NodeExecutionError("Missing required config: record_id", code=ErrorCode.RECORD_ERROR)
        return config

    async def _call(self, coro):
        try:
            return await coro
        except NodeExecutionError:
            raise
        except Exception as exc:
            raise NodeExecutionError(
                str(exc) or type(exc).__name__,
                code=ErrorCode.RECORD_ERROR,
                retryable=isinstance(exc, (ConnectionError, TimeoutError)),
            ) from exc

    @staticmethod
    def _result(config: Dict[str, Any], output: Dict[str, Any], value: Any) -> NodeResult:
        variables = {}
        if config.get("output_variable"):
            variables[config["output_variable"]] = value
        return NodeResult(output=output, variables=variables, input={"object": config["object"]})


class CreateRecordNode(_RecordNode):
    """Config: object, fields, output_variable."""

    action = NodeAction.CREATE_RECORD
    display_name = "Create Record"
    description = "Insert a new record"

    async def execute(self, node: FlowNode, context: NodeContext) -> NodeResult:
        config = self._prepare(node, context)
        store = context.services.record_store
        record = await self._call(store.create(config["object"], config.get("fields") or {}))
        return self._result(config, {"id": record.get("id"), "record": record}, record)


class UpdateRecordNode(_RecordNode):
    """Config: object, record_id, fields, output_variable."""

    action = NodeAction.UPDATE_RECORD
    display_name = "Update Record"
    description = "Update fields of an existing record"
    requires_record_id = True

    async def execute(self, node: FlowNode, context: NodeContext) -> NodeResult:
        config = self._prepare(node, context)
        store = context.services.record_store
        record = await self._call(
            store.update(config["object"], str(config["record_id"]), config.get("fields") or {})
        )
        return self._result(config, {"id": config["record_id"], "record": record}, record)


class DeleteRecordNode(_RecordNode):
    """Config: object, record_id."""

    action = NodeAction.DELETE_RECORD
    display_name = "Delete Record"
    description = "Delete a record"
    requires_record_id = True

    async def execute(self, node: FlowNode, context: NodeContext) -> NodeResult:
        config = self._prepare(node, context)
        store = context.services.record_store
        deleted = await self._call(store.delete(config["object"], str(config["record_id"])))
        return self._result(config, {"id": config["record_id"], "deleted": bool(deleted)}, bool(deleted))


class GetRecordNode(_RecordNode):
    """Config: object, record_id, output_variable, fail_if_missing (default true)."""

    action = NodeAction.GET_RECORD
    display_name = "Get Record"
    description = "Load a record into flow variables"
    requires_record_id = True

    async def execute(self, node: FlowNode, context: NodeContext) -> NodeResult:
        config = self._prepare(node, context)
        store = context.services.record_store
        record = await self._call(store.get(config["object"], str(config["record_id"])))
        if record is None and config.get("fail_if_missing", True):
            raise NodeExecutionError(
                f"{config['object']} record '{config['record_id']}' not found",
                code=ErrorCode.RECORD_NOT_FOUND,
            )
        return self._result(config, {"found": record is not None, "record": record}, record)


RECORD_NODE_TYPES = {
    NodeAction.CREATE_RECORD: CreateRecordNode,
    NodeAction.UPDATE_RECORD: UpdateRecordNode,
    NodeAction.DELETE_RECORD: DeleteRecordNode,
    NodeAction.GET_RECORD: GetRecordNode,
}
