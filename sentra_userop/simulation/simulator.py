import logging
import re
from dataclasses import dataclass
from typing import Any

from sentra_userop.abi.calls import (HandleOps, SimulateValidation,
                                     encode_call_hex)
from sentra_userop.abi.decode import decode_revert_reason
from sentra_userop.exceptions import (SimulationException,
                                      SimulationExceptionCode)
from sentra_userop.metrics.metrics import record_simulation_outcome
from sentra_userop.rpc.jsonrpc import get_rpc_error
from sentra_userop.user_operation.models import (SimulationResult,
                                                 SimulationStatus)
from sentra_userop.user_operation.user_operation import UserOperationDraft
from sentra_userop.utils.cancellation import CancellationToken
from sentra_userop.utils.eth_client_utils import send_rpc_request

DEFAULT_SIMULATION_METHOD = "tenderly_simulateTransaction"
SIMULATION_GAS_HEX = "0x7a1200"
AA_CODE_PATTERN = re.compile(r"(AA\d{2})")
DEFAULT_FAILURE_MESSAGE = "Simulation failed. Please inspect the trace."


@dataclass(frozen=True)
class AaErrorInfo:
    phase: str
    description: str


AA_ERROR_CODES = {
    "AA10": AaErrorInfo("factory", "sender already constructed"),
    "AA13": AaErrorInfo("factory", "initCode failed or OOG"),
    "AA14": AaErrorInfo("factory", "initCode must return sender"),
    "AA15": AaErrorInfo("factory", "initCode must create sender"),
    "AA20": AaErrorInfo("account", "account not deployed"),
    "AA21": AaErrorInfo("account", "didn't pay prefund"),
    "AA22": AaErrorInfo("account", "expired or not due"),
    "AA23": AaErrorInfo("account", "reverted (or OOG)"),
    "AA24": AaErrorInfo("account", "signature error"),
    "AA25": AaErrorInfo("account", "invalid account nonce"),
    "AA26": AaErrorInfo("account", "over verificationGasLimit"),
    "AA30": AaErrorInfo("paymaster", "paymaster not deployed"),
    "AA31": AaErrorInfo("paymaster", "paymaster deposit too low"),
    "AA32": AaErrorInfo("paymaster", "paymaster expired or not due"),
    "AA33": AaErrorInfo("paymaster", "reverted (or OOG)"),
    "AA34": AaErrorInfo("paymaster", "signature error"),
    "AA36": AaErrorInfo("paymaster", "over paymasterVerificationGasLimit"),
    "AA40": AaErrorInfo("verification", "over verificationGasLimit"),
    "AA41": AaErrorInfo("verification", "too little verificationGas"),
    "AA50": AaErrorInfo("postOp", "postOp reverted"),
    "AA51": AaErrorInfo("postOp", "prefund below actualGasCost"),
    "AA90": AaErrorInfo("entrypoint", "invalid beneficiary"),
    "AA91": AaErrorInfo("entrypoint", "failed send to beneficiary"),
    "AA92": AaErrorInfo("entrypoint", "internal call only"),
    "AA93": AaErrorInfo("entrypoint", "invalid paymasterAndData"),
    "AA94": AaErrorInfo("entrypoint", "gas values overflow"),
    "AA95": AaErrorInfo("entrypoint", "out of gas"),
    "AA96": AaErrorInfo("entrypoint", "invalid aggregator"),
}


def trim_null_chars(value: str) -> str:
    return value.replace("\u0000", "").strip()


def _get_trace(response: dict[str, Any]) -> list[dict[str, Any]]:
    result = response.get("result")
    if not isinstance(result, dict):
        return []
    trace = result.get("trace")
    if not isinstance(trace, list):
        return []
    return [frame for frame in trace if isinstance(frame, dict)]


def _get_error_message(container: Any) -> str | None:
    if not isinstance(container, dict):
        return None
    error = container.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    return None


def _frame_reason(frame: dict[str, Any]) -> str | None:
    for key in ("errorReason", "revertReason"):
        if isinstance(frame.get(key), str) and frame[key] != "":
            return frame[key]
    output = frame.get("output")
    if isinstance(output, str):
        return decode_revert_reason(output)
    return None


def _candidate_messages(response: dict[str, Any]) -> list[str]:
    messages = [
        _get_error_message(response),
        _get_error_message(response.get("result")),
    ]
    for frame in _get_trace(response):
        if isinstance(frame.get("error"), str):
            messages.append(frame["error"])
        messages.append(_frame_reason(frame))
    return [message for message in messages if message]


def extract_error_code(response: dict[str, Any]) -> str | None:
    for message in _candidate_messages(response):
        match = AA_CODE_PATTERN.search(message)
        if match is not None:
            return match.group(1)
    return None


def _deepest_failing_frame(
    trace: list[dict[str, Any]]
) -> dict[str, Any] | None:
    deepest_frame = None
    deepest_depth = -1
    for frame in trace:
        if not frame.get("error"):
            continue
        trace_address = frame.get("traceAddress")
        depth = len(trace_address) if isinstance(trace_address, list) else 0
        if depth >= deepest_depth:
            deepest_frame = frame
            deepest_depth = depth
    return deepest_frame


def extract_readable_error(response: dict[str, Any]) -> str | None:
    result = response.get("result")
    if isinstance(result, dict) and result.get("status") is False:
        frame = _deepest_failing_frame(_get_trace(response))
        if frame is not None:
            reason = _frame_reason(frame) or _get_error_message(result) or ""
            combined = ": ".join(
                part for part in (
                    trim_null_chars(str(frame.get("error", ""))),
                    trim_null_chars(reason),
                )
                if part
            )
            if combined:
                return combined
        return DEFAULT_FAILURE_MESSAGE
    message = _get_error_message(response) or _get_error_message(result) or ""
    return trim_null_chars(message) or None


class Simulator:
    url: str
    method: str
    timeout: float | None

    def __init__(
        self,
        url: str,
        method: str = DEFAULT_SIMULATION_METHOD,
        timeout: float | None = None,
    ) -> None:
        self.url = url
        self.method = method
        self.timeout = timeout

    async def simulate(
        self,
        user_operation: UserOperationDraft,
        entrypoint: str,
        beneficiary: str,
        at_time: int | None = None,
        cancellation: CancellationToken | None = None,
    ) -> SimulationResult:
        """Dry-run handleOps([user_operation], beneficiary)."""
        call_data = encode_call_hex(
            HandleOps([user_operation.to_list()], beneficiary))
        params: list[Any] = [
            self._transaction(beneficiary, entrypoint, call_data),
            "latest",
            {},
        ]
        if at_time is not None:
            params.append({"time": hex(at_time)})
        return await self._simulate(params, cancellation)

    async def simulate_validation(
        self,
        user_operation: UserOperationDraft,
        entrypoint: str,
        sender: str,
        state_overrides: dict[str, Any] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> SimulationResult:
        """
        Dry-run the read only simulateValidation. With the v0.7+ EntryPoint
        state_overrides must place the EntryPointSimulations code at
        the entrypoint address.
        """
        call_data = encode_call_hex(
            SimulateValidation(user_operation.to_list()))
        params = [
            self._transaction(sender, entrypoint, call_data),
            "latest",
            state_overrides if state_overrides is not None else {},
        ]
        return await self._simulate(params, cancellation)

    def _transaction(
        self, from_address: str, to: str, call_data: str
    ) -> dict[str, str]:
        return {
            "from": from_address,
            "to": to,
            "gas": SIMULATION_GAS_HEX,
            "gasPrice": "0x0",
            "value": "0x0",
            "data": call_data,
        }

    async def _simulate(
        self,
        params: list[Any],
        cancellation: CancellationToken | None,
    ) -> SimulationResult:
        json_result = await send_rpc_request(
            self.url, self.method, params, None, self.timeout, cancellation)
        code = extract_error_code(json_result)
        error = get_rpc_error(json_result)
        if error is not None and code is None:
            logging.error(
                f"{self.method} failed with error code: {error.code}"
                f" and error message: {error.message}"
            )
            raise SimulationException(
                SimulationExceptionCode.RemoteError, error.message)
        result = json_result.get("result")
        if error is None and not isinstance(result, dict):
            raise SimulationException(
                SimulationExceptionCode.InvalidResponse,
                f"Invalid {self.method} response: {str(json_result)}",
            )

        if error is None and result.get("status") is True:
            record_simulation_outcome(None)
            return SimulationResult(SimulationStatus.SUCCESS, raw=json_result)

        reason = extract_readable_error(json_result)
        if reason is None and code is not None:
            reason = f"Detected code: {code}"
        record_simulation_outcome(code)
        logging.info(f"Simulation failed with code {code}: {reason}")
        return SimulationResult(
            SimulationStatus.FAILED,
            code=code,
            reason=reason,
            raw=json_result,
        )
