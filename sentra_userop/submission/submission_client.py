import asyncio
import logging
import math
from typing import Any

from sentra_userop.abi.calls import HandleOps, encode_call_hex
from sentra_userop.exceptions import (EstimationException,
                                      EstimationExceptionCode,
                                      EthClientException,
                                      ReceiptTimeoutException,
                                      SubmissionException,
                                      SubmissionExceptionCode)
from sentra_userop.rpc.jsonrpc import get_rpc_error
from sentra_userop.signature.signature_engine import (
    AuthorizationTupleOrder, serialize_authorization)
from sentra_userop.signature.signer import Signer
from sentra_userop.typing import Address, TransactionHash, UserOperationHash
from sentra_userop.user_operation.models import (Eip7702Authorization,
                                                 ReceiptInfo,
                                                 UserOperationReceiptInfo)
from sentra_userop.user_operation.user_operation import (
    UserOperationDraft, is_user_operation_hash)
from sentra_userop.utils.cancellation import CancellationToken
from sentra_userop.utils.eip7702 import (create_eip7702_transaction_hash,
                                         encode_signed_eip7702_transaction)
from sentra_userop.utils.eth_client_utils import EthClient, send_rpc_request

GAS_LIMIT_BUFFER_PERCENTAGE = 120


class BundlerClient:
    """ERC-4337 bundler json-rpc surface. Never retries on its own."""

    url: str
    timeout: float | None

    def __init__(self, url: str, timeout: float | None = None) -> None:
        self.url = url
        self.timeout = timeout

    async def send_user_operation(
        self,
        user_operation: UserOperationDraft,
        entrypoint: str,
        cancellation: CancellationToken | None = None,
    ) -> UserOperationHash:
        json_result = await send_rpc_request(
            self.url,
            "eth_sendUserOperation",
            [user_operation.get_user_operation_json(), entrypoint],
            None,
            self.timeout,
            cancellation,
        )
        error = get_rpc_error(json_result)
        if error is not None:
            logging.error(
                f"eth_sendUserOperation failed with error code: {error.code}"
                f" and error message: {error.message}"
            )
            raise SubmissionException(
                SubmissionExceptionCode.Rejected, error.message)
        user_operation_hash = json_result.get("result")
        if not is_user_operation_hash(user_operation_hash):
            raise SubmissionException(
                SubmissionExceptionCode.InvalidResponse,
                f"Invalid userOpHash in response: {str(json_result)}",
            )
        logging.info(f"UserOperation submitted: {user_operation_hash}")
        return UserOperationHash(user_operation_hash)

    async def estimate_user_operation_gas(
        self,
        user_operation: UserOperationDraft,
        entrypoint: str,
        cancellation: CancellationToken | None = None,
    ) -> dict[str, Any]:
        json_result = await send_rpc_request(
            self.url,
            "eth_estimateUserOperationGas",
            [user_operation.get_user_operation_json(), entrypoint],
            None,
            self.timeout,
            cancellation,
        )
        error = get_rpc_error(json_result)
        if error is not None:
            logging.error(
                "eth_estimateUserOperationGas failed with error code: "
                f"{error.code} and error message: {error.message}"
            )
            raise EstimationException(
                EstimationExceptionCode.Reverted, error.message)
        result = json_result.get("result")
        if not isinstance(result, dict):
            raise EstimationException(
                EstimationExceptionCode.InvalidResponse,
                f"Invalid estimation response: {str(json_result)}",
            )
        return result

    async def get_user_operation_receipt(
        self,
        user_operation_hash: str,
        cancellation: CancellationToken | None = None,
    ) -> UserOperationReceiptInfo | None:
        json_result = await send_rpc_request(
            self.url,
            "eth_getUserOperationReceipt",
            [user_operation_hash],
            None,
            self.timeout,
            cancellation,
        )
        error = get_rpc_error(json_result)
        if error is not None:
            raise SubmissionException(
                SubmissionExceptionCode.Rejected, error.message)
        receipt = json_result.get("result")
        if receipt is None:
            return None
        try:
            return UserOperationReceiptInfo.from_rpc_json(receipt)
        except (KeyError, TypeError, ValueError):
            raise SubmissionException(
                SubmissionExceptionCode.InvalidResponse,
                f"Invalid userOperation receipt: {str(receipt)}",
            )

    async def wait_for_receipt(
        self,
        user_operation_hash: str,
        timeout: float = 60,
        poll_interval: float = 2,
        cancellation: CancellationToken | None = None,
    ) -> UserOperationReceiptInfo:
        deadline = asyncio.get_running_loop().time() + timeout
        while True:
            receipt = await self.get_user_operation_receipt(
                user_operation_hash, cancellation)
            if receipt is not None:
                return receipt
            if asyncio.get_running_loop().time() + poll_interval > deadline:
                logging.warning(
                    f"No receipt for userOperation {user_operation_hash} "
                    f"after {timeout}s"
                )
                raise ReceiptTimeoutException(user_operation_hash, timeout)
            await asyncio.sleep(poll_interval)

    async def supported_entry_points(
        self, cancellation: CancellationToken | None = None
    ) -> list[Address]:
        json_result = await send_rpc_request(
            self.url, "eth_supportedEntryPoints", [], None, self.timeout,
            cancellation)
        error = get_rpc_error(json_result)
        if error is not None:
            raise SubmissionException(
                SubmissionExceptionCode.Rejected, error.message)
        return [Address(entrypoint) for entrypoint in json_result["result"]]

    async def chain_id(self, cancellation: CancellationToken | None = None) -> int:
        json_result = await send_rpc_request(
            self.url, "eth_chainId", [], None, self.timeout, cancellation)
        error = get_rpc_error(json_result)
        if error is not None:
            raise SubmissionException(
                SubmissionExceptionCode.Rejected, error.message)
        return int(json_result["result"], 16)


async def estimate_eip7702_gas_limit(
    eth_client: EthClient,
    relayer: str,
    entrypoint: str,
    call_data: str,
    authorization_list: list[Eip7702Authorization],
    cancellation: CancellationToken | None = None,
) -> int:
    transaction: dict[str, Any] = {
        "from": relayer,
        "to": entrypoint,
        "data": call_data,
    }
    if len(authorization_list) > 0:
        transaction["authorizationList"] = [
            authorization.to_json() for authorization in authorization_list
        ]
    try:
        estimation = await eth_client.estimate_gas(
            transaction, cancellation=cancellation)
    except EthClientException as excp:
        raise EstimationException(
            EstimationExceptionCode.Reverted, excp.message)
    return math.ceil(estimation * GAS_LIMIT_BUFFER_PERCENTAGE / 100)


async def submit_eip7702_transaction(
    eth_client: EthClient,
    signer: Signer,
    relayer: str,
    user_operations: list[UserOperationDraft],
    entrypoint: str,
    beneficiary: str,
    authorization_list: list[Eip7702Authorization],
    gas_limit: int | None,
    max_fee_per_gas: int,
    max_priority_fee_per_gas: int,
    tuple_order: AuthorizationTupleOrder = AuthorizationTupleOrder.CANONICAL,
    receipt_timeout: float = 60,
    poll_interval: float = 2,
    cancellation: CancellationToken | None = None,
) -> ReceiptInfo:
    """
    Send handleOps as a type 4 (set code) transaction signed by the
    relayer, so the delegations in authorization_list are installed in
    the same transaction that executes the operations. Without a
    gas_limit the node estimate is used, with a 20% buffer.
    """
    chain_id, relayer_nonce = await asyncio.gather(
        eth_client.chain_id(cancellation),
        eth_client.get_transaction_count(relayer, "pending", cancellation),
    )
    call_data = encode_call_hex(
        HandleOps(
            [user_operation.to_list() for user_operation in user_operations],
            beneficiary,
        )
    )
    serialized_authorization_list = [
        serialize_authorization(authorization, tuple_order)
        for authorization in authorization_list
    ]
    if gas_limit is None:
        gas_limit = await estimate_eip7702_gas_limit(
            eth_client, relayer, entrypoint, call_data, authorization_list,
            cancellation)
    transaction_fields = (
        hex(chain_id),
        hex(relayer_nonce),
        hex(max_priority_fee_per_gas),
        hex(max_fee_per_gas),
        hex(gas_limit),
        entrypoint,
        "0x0",
        call_data,
        serialized_authorization_list,
    )
    transaction_hash = create_eip7702_transaction_hash(*transaction_fields)
    signature = await signer.sign_hash(relayer, transaction_hash)
    raw_transaction = encode_signed_eip7702_transaction(
        *transaction_fields, signature=signature)

    try:
        sent_hash = TransactionHash(
            await eth_client.send_raw_transaction(raw_transaction, cancellation))
    except EthClientException as excp:
        raise SubmissionException(
            SubmissionExceptionCode.Rejected, excp.message)
    logging.info(f"EIP-7702 transaction submitted: {sent_hash}")
    return await eth_client.wait_for_transaction_receipt(
        sent_hash, receipt_timeout, poll_interval, cancellation)
