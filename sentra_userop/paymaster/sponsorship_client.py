"""
ERC-7677 paymaster client.

Sponsorship is a two phase handshake: pm_getPaymasterStubData returns
paymaster fields good enough for gas estimation, then pm_getPaymasterData
returns the final, signature worthy paymasterData for the estimated operation.
"""
import logging
from dataclasses import replace
from typing import Any

from sentra_userop.exceptions import (InputValidationException,
                                      NetworkException, SponsorshipException,
                                      SponsorshipExceptionCode)
from sentra_userop.rpc.jsonrpc import get_rpc_error
from sentra_userop.user_operation.models import PaymasterContext, PaymasterResult
from sentra_userop.user_operation.user_operation import (
    UserOperationDraft, verify_and_get_address, verify_and_get_bytes,
    verify_and_get_uint)
from sentra_userop.utils.cancellation import CancellationToken
from sentra_userop.utils.eth_client_utils import send_rpc_request

UNAUTHORIZED_HTTP_STATUSES = (401, 403)
NOT_CONFIGURED_MARKERS = (
    "not configured",
    "not allowlisted",
    "not whitelisted",
    "no paymaster",
)


class PaymasterClient:
    url: str
    token: str | None
    timeout: float | None

    def __init__(
        self, url: str, token: str | None, timeout: float | None = None
    ) -> None:
        self.url = url
        self.token = token
        self.timeout = timeout

    async def get_stub_data(
        self,
        user_operation: UserOperationDraft,
        entrypoint: str,
        chain_id: int,
        context: PaymasterContext,
        cancellation: CancellationToken | None = None,
    ) -> PaymasterResult:
        return await self._request_paymaster(
            "pm_getPaymasterStubData",
            user_operation,
            entrypoint,
            chain_id,
            context,
            cancellation,
        )

    async def get_final_data(
        self,
        user_operation: UserOperationDraft,
        entrypoint: str,
        chain_id: int,
        context: PaymasterContext,
        cancellation: CancellationToken | None = None,
    ) -> PaymasterResult:
        result = await self._request_paymaster(
            "pm_getPaymasterData",
            user_operation,
            entrypoint,
            chain_id,
            context,
            cancellation,
        )
        # pm_getPaymasterData may omit the gas limits, the stub values apply
        return replace(
            result,
            paymaster_verification_gas_limit=(
                result.paymaster_verification_gas_limit
                if result.paymaster_verification_gas_limit is not None
                else user_operation.paymaster_verification_gas_limit
            ),
            paymaster_post_op_gas_limit=(
                result.paymaster_post_op_gas_limit
                if result.paymaster_post_op_gas_limit is not None
                else user_operation.paymaster_post_op_gas_limit
            ),
            is_final=True,
        )

    async def _request_paymaster(
        self,
        method: str,
        user_operation: UserOperationDraft,
        entrypoint: str,
        chain_id: int,
        context: PaymasterContext,
        cancellation: CancellationToken | None,
    ) -> PaymasterResult:
        if not self.token:
            raise SponsorshipException(
                SponsorshipExceptionCode.Unauthorized,
                "Missing paymaster authorization token",
            )
        params = [
            user_operation.get_user_operation_json(),
            entrypoint,
            hex(chain_id),
            context.to_json(),
        ]
        headers = {"Authorization": f"Bearer {self.token}"}
        try:
            json_result = await send_rpc_request(
                self.url, method, params, headers, self.timeout, cancellation)
        except NetworkException as excp:
            if excp.status in UNAUTHORIZED_HTTP_STATUSES:
                logging.error(f"{method} rejected the authorization token")
                raise SponsorshipException(
                    SponsorshipExceptionCode.Unauthorized, excp.message)
            if excp.status == 404:
                logging.warning(
                    f"{method}: no paymaster configured for sender "
                    f"{user_operation.sender} and target {context.target}"
                )
                raise SponsorshipException(
                    SponsorshipExceptionCode.NotConfigured, excp.message)
            raise

        error = get_rpc_error(json_result)
        if error is not None:
            raise _sponsorship_exception_from_rpc_error(
                method, error.code, error.message)
        if "result" not in json_result or not isinstance(
            json_result["result"], dict
        ):
            raise SponsorshipException(
                SponsorshipExceptionCode.InvalidResponse,
                f"Invalid {method} response: {str(json_result)}",
            )
        return _parse_paymaster_result(method, json_result["result"])


def _sponsorship_exception_from_rpc_error(
    method: str, code: int | None, message: str
) -> SponsorshipException:
    lowered_message = message.lower()
    if code in UNAUTHORIZED_HTTP_STATUSES or "unauthorized" in lowered_message:
        exception_code = SponsorshipExceptionCode.Unauthorized
    elif code == 404 or any(
        marker in lowered_message for marker in NOT_CONFIGURED_MARKERS
    ):
        exception_code = SponsorshipExceptionCode.NotConfigured
    else:
        exception_code = SponsorshipExceptionCode.Rejected
    logging.error(
        f"{method} failed with error code: {code}"
        f" and error message: {message}"
    )
    return SponsorshipException(exception_code, message)


def _parse_paymaster_result(method: str, result: dict[str, Any]) -> PaymasterResult:
    try:
        paymaster = verify_and_get_address("paymaster", result.get("paymaster"))
        paymaster_data = verify_and_get_bytes(
            "paymasterData", result.get("paymasterData", "0x"))
        paymaster_verification_gas_limit = result.get(
            "paymasterVerificationGasLimit")
        paymaster_post_op_gas_limit = result.get("paymasterPostOpGasLimit")
        return PaymasterResult(
            paymaster=paymaster,
            paymaster_data=paymaster_data,
            paymaster_verification_gas_limit=(
                None if paymaster_verification_gas_limit is None
                else verify_and_get_uint(
                    "paymasterVerificationGasLimit",
                    paymaster_verification_gas_limit)
            ),
            paymaster_post_op_gas_limit=(
                None if paymaster_post_op_gas_limit is None
                else verify_and_get_uint(
                    "paymasterPostOpGasLimit", paymaster_post_op_gas_limit)
            ),
            is_final=bool(result.get("isFinal", False)),
            sponsor=result.get("sponsor"),
        )
    except InputValidationException as excp:
        raise SponsorshipException(
            SponsorshipExceptionCode.InvalidResponse,
            f"Invalid {method} result: {excp.message}",
        )


def apply_paymaster_result(
    user_operation: UserOperationDraft, result: PaymasterResult
) -> UserOperationDraft:
    return replace(
        user_operation,
        paymaster=result.paymaster,
        paymaster_data=result.paymaster_data,
        paymaster_verification_gas_limit=(
            result.paymaster_verification_gas_limit
            if result.paymaster_verification_gas_limit is not None
            else user_operation.paymaster_verification_gas_limit
        ),
        paymaster_post_op_gas_limit=(
            result.paymaster_post_op_gas_limit
            if result.paymaster_post_op_gas_limit is not None
            else user_operation.paymaster_post_op_gas_limit
        ),
    )
