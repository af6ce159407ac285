"""Outbound integration nodes: HTTP requests and connector actions.

Server errors (5xx), 429 and transport failures are retryable; other
non-2xx responses fail the node immediately.
"""

import base64
from typing import Any, Dict
from urllib.parse import urlparse

import structlog

from automation.models import FlowNode
from core.constants import ErrorCode, NodeAction
from core.exceptions import NodeExecutionError
from nodes.base_node import NodeContext, NodeExecutor, NodeResult
from nodes.collaborators import ConnectorError, HttpTransportError, HttpxTransport

logger = structlog.get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


def _validate_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme.lower() not in ("http", "https"):
        raise NodeExecutionError(
            f"Unsupported scheme: {parsed.scheme or '(none)'}. Only HTTP and HTTPS allowed.",
            code=ErrorCode.HTTP_ERROR,
        )
    if not parsed.hostname:
        raise NodeExecutionError("URL must have a valid hostname", code=ErrorCode.HTTP_ERROR)


def _apply_auth(headers: Dict[str, str], auth_config: Dict[str, Any]) -> None:
    auth_type = auth_config.get("type", "")
    if auth_type == "bearer":
        headers["Authorization"] = f"Bearer {auth_config['token']}"
    elif auth_type == "basic":
        creds = base64.b64encode(
            f"{auth_config['username']}:{auth_config['password']}".encode()
        ).decode()
        headers["Authorization"] = f"Basic {creds}"
    elif auth_type == "api_key":
        header_name = auth_config.get("header", "X-API-Key")
        headers[header_name] = auth_config["key"]


class HttpRequestNode(NodeExecutor):
    """Call an external HTTP endpoint.

    Config:
        url: Target URL (required, templated)
        method: GET, POST, PUT, PATCH, DELETE (default: GET)
        headers: Dict of HTTP headers
        body: Request body, sent as JSON when it is a dict or list
        auth: { "type": "bearer|basic|api_key", "token|username|key": "..." }
        timeout_ms: Request timeout (default: HTTP_DEFAULT_TIMEOUT_MS)
        expected_status: List of status codes that count as success
        output_variable: Variable that receives the response body
    """

    action = NodeAction.HTTP_REQUEST
    display_name = "HTTP Request"
    description = "Make HTTP requests to APIs and web services"
    can_attach_boundary_event = True

    async def execute(self, node: FlowNode, context: NodeContext) -> NodeResult:
        config = context.render(node.config)
        url = config.get("url")
        if not url:
            raise NodeExecutionError("Missing required config: url", code=ErrorCode.HTTP_ERROR)
        _validate_url(url)

        method = str(config.get("method", "GET")).upper()
        headers = dict(config.get("headers") or {})
        if config.get("auth"):
            _apply_auth(headers, config["auth"])
        timeout_ms = config.get("timeout_ms") or context.settings.HTTP_DEFAULT_TIMEOUT_MS

        transport = context.services.http or HttpxTransport(context.settings.HTTP_DEFAULT_TIMEOUT_MS)
        try:
            response = await transport.send(method, url, headers=headers, body=config.get("body"), timeout_ms=timeout_ms)
        except HttpTransportError as exc:
            raise NodeExecutionError(
                f"{method} {url} failed: {exc}",
                code=ErrorCode.HTTP_TRANSPORT_ERROR,
                retryable=True,
            ) from exc

        expected = config.get("expected_status")
        succeeded = response.status_code in expected if expected else response.ok
        if not succeeded:
            raise NodeExecutionError(
                f"{method} {url} returned HTTP {response.status_code}",
                code=ErrorCode.HTTP_ERROR,
                retryable=response.status_code in RETRYABLE_STATUS_CODES,
                context={"status_code": response.status_code},
            )

        output = {
            "status_code": response.status_code,
            "headers": response.headers,
            "data": response.body,
        }
        variables = {}
        if config.get("output_variable"):
            variables[config["output_variable"]] = response.body
        return NodeResult(
            output=output,
            variables=variables,
            input={"method": method, "url": url},
        )

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["url"],
            "properties": {
                "url": {"type": "string"},
                "method": {"type": "string", "enum": ["GET", "POST", "PUT", "PATCH", "DELETE"]},
                "headers": {"type": "object"},
                "body": {},
                "timeout_ms": {"type": "integer"},
                "expected_status": {"type": "array", "items": {"type": "integer"}},
                "output_variable": {"type": "string"},
            },
        }


class ConnectorActionNode(NodeExecutor):
    """Invoke an action on a configured connector.

    Config:
        connector: Connector name (required)
        action: Action name (required)
        input: Payload passed to the action (templated)
        output_variable: Variable that receives the action result
    """

    action = NodeAction.CONNECTOR_ACTION
    display_name = "Connector Action"
    description = "Run an action of an installed connector"
    can_attach_boundary_event = True

    async def execute(self, node: FlowNode, context: NodeContext) -> NodeResult:
        config = context.render(node.config)
        connector = config.get("connector")
        action = config.get("action")
        if not connector or not action:
            raise NodeExecutionError("Missing required config: connector and action", code=ErrorCode.CONNECTOR_ERROR)
        gateway = context.services.connectors
        if gateway is None:
            raise NodeExecutionError("No connector gateway configured", code=ErrorCode.CONNECTOR_ERROR)

        try:
            result = await gateway.invoke(connector, action, config.get("input") or {})
        except ConnectorError as exc:
            raise NodeExecutionError(
                f"{connector}.{action} failed: {exc}",
                code=ErrorCode.CONNECTOR_ERROR,
                retryable=exc.retryable,
            ) from exc

        variables = {}
        if config.get("output_variable"):
            variables[config["output_variable"]] = result
        return NodeResult(
            output=result if isinstance(result, dict) else {"result": result},
            variables=variables,
            input={"connector": connector, "action": action},
        )


HTTP_NODE_TYPES = {
    NodeAction.HTTP_REQUEST: HttpRequestNode,
    NodeAction.CONNECTOR_ACTION: ConnectorActionNode,
}
