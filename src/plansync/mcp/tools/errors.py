"""Error response builders for MCP tool handlers.

Structured error responses carry a corrective action so AI agents can
recover from errors without human intervention.
"""

import mcp.types as types

from ...sync.service import OperationResult, ResultCode


def build_error_response(
    error_type: str, message: str, corrective_action: str
) -> types.CallToolResult:
    """Build a structured error response with corrective action.

    Args:
        error_type: Error category (not_found, already_running,
            upstream_unavailable, validation_error, server_error)
        message: Human-readable error description
        corrective_action: Specific action the agent can take to resolve the error

    Returns:
        CallToolResult with isError=True

    Examples:
        >>> build_error_response("not_found", "Sync configuration 'x' not found", "Use sync_status to list configurations.")
        CallToolResult(content=[TextContent(...)], isError=True)
    """
    error_text = f"Error ({error_type}): {message}\n\nAction: {corrective_action}"

    return types.CallToolResult(
        content=[types.TextContent(type="text", text=error_text)],
        isError=True,
    )


# ---------------------------------------------------------------------------
# Result-code corrective action messages
# ---------------------------------------------------------------------------

_CODE_ACTIONS: dict[ResultCode, str] = {
    ResultCode.NOT_FOUND: (
        "Use sync_status without arguments to list configurations, or "
        "sync_conflicts to list pending conflict ids."
    ),
    ResultCode.ALREADY_RUNNING: (
        "Wait for the running pass to finish, then check sync_status."
    ),
    ResultCode.UPSTREAM_UNAVAILABLE: (
        "Check connectivity to the work-tracking and document systems and "
        "the client factory configuration, then retry. The cursor was not "
        "advanced, so no changes are lost."
    ),
    ResultCode.INVALID_REQUEST: "Check parameter values and retry.",
}

_CODE_ERROR_TYPES: dict[ResultCode, str] = {
    ResultCode.NOT_FOUND: "not_found",
    ResultCode.ALREADY_RUNNING: "already_running",
    ResultCode.UPSTREAM_UNAVAILABLE: "upstream_unavailable",
    ResultCode.INVALID_REQUEST: "validation_error",
}


def translate_result(result: OperationResult) -> types.CallToolResult:
    """Translate a failed ``OperationResult`` into an error response.

    Args:
        result: Result whose code is not ``success``.

    Returns:
        CallToolResult with isError=True and corrective action
    """
    return build_error_response(
        _CODE_ERROR_TYPES.get(result.code, "server_error"),
        result.message,
        _CODE_ACTIONS.get(result.code, "Retry later."),
    )
