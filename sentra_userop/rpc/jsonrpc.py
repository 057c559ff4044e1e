from dataclasses import dataclass
from typing import Any

# JSON-RPC 2.0 error-codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_METHOD_PARAMS = -32602  # invalid number/type of parameters
INTERNAL_ERROR = -32603
EXECUTION_REVERTED = 3
SERVER_ERROR = -32000

# ERC-4337 bundler error-codes
REJECTED_BY_EP_OR_ACCOUNT = -32500
REJECTED_BY_PAYMASTER = -32501
INVALID_USEROPERATION_SIGNATURE = -32507
USER_OPERATION_REVERTED = -32521

# human-readable messages
ERROR_MESSAGE = {
    PARSE_ERROR: "Parse error.",
    INVALID_REQUEST: "Invalid Request.",
    METHOD_NOT_FOUND: "Method not found.",
    INVALID_METHOD_PARAMS: "Invalid parameters.",
    INTERNAL_ERROR: "Internal error.",
}


@dataclass
class RpcError:
    code: int | None
    message: str
    data: Any = None


def build_json_rpc_request(
    method: str, params: Any = None, request_id: int = 1
) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": method,
        "params": params if params is not None else [],
    }


def get_rpc_error(response: dict[str, Any]) -> RpcError | None:
    if "error" not in response or response["error"] is None:
        return None
    error = response["error"]
    if not isinstance(error, dict):
        return RpcError(None, str(error))
    code = error.get("code")
    message = error.get("message")
    if message is None:
        message = ERROR_MESSAGE.get(code, "")
    return RpcError(code, str(message), error.get("data"))
