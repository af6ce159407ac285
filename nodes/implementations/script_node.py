"""Script node: runs user code in the host-supplied sandbox."""

from typing import Any, Dict

from automation.models import FlowNode
from core.constants import ErrorCode, NodeAction
from core.exceptions import NodeExecutionError
from nodes.base_node import NodeContext, NodeExecutor, NodeResult
from nodes.collaborators import ScriptError


class ScriptNode(NodeExecutor):
    """Execute a script with the flow variables as input.

    Config:
        source: Script source (required)
        language: Sandbox language (default: javascript)
        timeout_ms: Sandbox time limit
        output_variable: Variable that receives the script output

    Values the script writes back are merged into the flow variables.
    """

    action = NodeAction.SCRIPT
    display_name = "Script"
    description = "Run custom logic in an isolated sandbox"
    can_attach_boundary_event = True

    async def execute(self, node: FlowNode, context: NodeContext) -> NodeResult:
        source = node.config.get("source")
        if not source:
            raise NodeExecutionError("Missing required config: source", code=ErrorCode.SCRIPT_ERROR)
        sandbox = context.services.sandbox
        if sandbox is None:
            raise NodeExecutionError("No script sandbox configured", code=ErrorCode.SCRIPT_ERROR)

        try:
            result = await sandbox.run(
                source,
                dict(context.variables),
                language=node.config.get("language", "javascript"),
                timeout_ms=node.config.get("timeout_ms"),
            )
        except ScriptError as exc:
            raise NodeExecutionError(str(exc), code=ErrorCode.SCRIPT_ERROR) from exc

        variables = dict(result.variables)
        if node.config.get("output_variable"):
            variables[node.config["output_variable"]] = result.output
        return NodeResult(output=result.output, variables=variables)

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["source"],
            "properties": {
                "source": {"type": "string"},
                "language": {"type": "string"},
                "timeout_ms": {"type": "integer"},
                "output_variable": {"type": "string"},
            },
        }


SCRIPT_NODE_TYPES = {
    NodeAction.SCRIPT: ScriptNode,
}
