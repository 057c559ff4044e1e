from eth_abi import decode
from eth_abi.exceptions import DecodingError

FAILED_OP_SELECTOR = "0x220266b6"
FAILED_OP_WITH_REVERT_SELECTOR = "0x65c8fd4d"
ERROR_STRING_SELECTOR = "0x08c379a0"


def decode_failed_op(solidity_error_params: str) -> tuple[int, str]:
    FAILED_OP_PARAMS_API = ["uint256", "string"]
    operation_index, reason = decode(
        FAILED_OP_PARAMS_API, bytes.fromhex(solidity_error_params)
    )
    return operation_index, reason


def decode_failed_op_with_revert(
    solidity_error_params: str,
) -> tuple[int, str, bytes]:
    FAILED_OP_WITH_REVERT_PARAMS_API = ["uint256", "string", "bytes"]
    operation_index, reason, inner = decode(
        FAILED_OP_WITH_REVERT_PARAMS_API, bytes.fromhex(solidity_error_params)
    )
    return operation_index, reason, inner


def decode_error_string(solidity_error_params: str) -> str:
    return decode(["string"], bytes.fromhex(solidity_error_params))[0]


def decode_revert_reason(revert_data: str) -> str | None:
    """
    Best effort decoding of an EntryPoint revert payload
    (FailedOp, FailedOpWithRevert or Error(string)).
    """
    if not isinstance(revert_data, str) or len(revert_data) < 10:
        return None
    selector = revert_data[:10].lower()
    params = revert_data[10:]
    try:
        if selector == FAILED_OP_SELECTOR:
            _, reason = decode_failed_op(params)
            return reason
        elif selector == FAILED_OP_WITH_REVERT_SELECTOR:
            _, reason, inner = decode_failed_op_with_revert(params)
            return reason + " " + bytes([b for b in inner if b != 0]).hex()
        elif selector == ERROR_STRING_SELECTOR:
            return decode_error_string(params)
    except (DecodingError, ValueError):
        return None
    return None
