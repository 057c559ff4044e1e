import asyncio
import json
import logging
from typing import Any

import aiohttp
from aiohttp import ClientSession, ClientTimeout

from sentra_userop.exceptions import (EthClientException, NetworkException,
                                      NetworkExceptionCode,
                                      ReceiptTimeoutException)
from sentra_userop.metrics.metrics import REQUEST_TIME
from sentra_userop.rpc.jsonrpc import build_json_rpc_request, get_rpc_error
from sentra_userop.user_operation.models import ReceiptInfo
from .cancellation import CancellationToken

DEFAULT_REQUEST_TIMEOUT = 30.0


async def send_rpc_request(
    url: str,
    method: str,
    params: Any = None,
    headers: dict[str, str] | None = None,
    timeout: float | None = None,
    cancellation: CancellationToken | None = None,
) -> dict[str, Any]:
    """
    Single attempt json-rpc POST. Returns the decoded response, including a
    json-rpc "error" member, which callers inspect themselves.
    Retrying is left to the caller.
    """
    if cancellation is not None:
        cancellation.raise_if_cancelled()

    json_request = build_json_rpc_request(method, params)
    request_headers = {"content-type": "application/json"}
    if headers is not None:
        request_headers.update(headers)
    client_timeout = ClientTimeout(
        total=timeout if timeout is not None else DEFAULT_REQUEST_TIMEOUT
    )
    logging.debug(f"Sending {method} to {url}")
    try:
        with REQUEST_TIME.labels(method).time():
            async with ClientSession(timeout=client_timeout) as session:
                async with session.post(
                    url,
                    json=json_request,
                    headers=request_headers
                ) as response:
                    status = response.status
                    resp = await response.read()
    except asyncio.TimeoutError:
        logging.warning(f"Request {method} to {url} timed out.")
        raise NetworkException(
            NetworkExceptionCode.Timeout,
            f"Request {method} timed out after {client_timeout.total}s",
        )
    except aiohttp.ClientError as excp:
        logging.error(f"Request {method} to {url} failed. error: {str(excp)}")
        raise NetworkException(
            NetworkExceptionCode.Transport,
            f"Request {method} failed: {str(excp)}",
        )

    if cancellation is not None:
        cancellation.raise_if_cancelled()

    if status >= 400:
        logging.error(f"Request {method} to {url} returned HTTP {status}.")
        raise NetworkException(
            NetworkExceptionCode.HttpStatus,
            f"Request {method} returned HTTP {status}: "
            f"{resp.decode(errors='replace')[:200]}",
            status,
        )
    try:
        json_result = json.loads(resp)
    except json.decoder.JSONDecodeError:
        logging.error(f"Invalid json response for {method} from {url}")
        raise NetworkException(
            NetworkExceptionCode.Transport,
            f"Invalid json response for {method}",
            status,
        )
    if not isinstance(json_result, dict):
        raise NetworkException(
            NetworkExceptionCode.Transport,
            f"Unexpected json-rpc response for {method}: {str(json_result)}",
            status,
        )
    return json_result


class EthClient:
    """Thin wrapper around the public node json-rpc."""

    url: str
    timeout: float | None

    def __init__(self, url: str, timeout: float | None = None) -> None:
        self.url = url
        self.timeout = timeout

    async def _request(
        self,
        method: str,
        params: list[Any],
        cancellation: CancellationToken | None = None,
    ) -> Any:
        json_result = await send_rpc_request(
            self.url, method, params, None, self.timeout, cancellation)
        error = get_rpc_error(json_result)
        if error is not None:
            logging.error(
                f"{method} failed with error code: {error.code}"
                f" and error message: {error.message}"
            )
            raise EthClientException(error.code, error.message, error.data)
        if "result" not in json_result:
            raise EthClientException(
                None, f"Missing result in {method} response")
        return json_result["result"]

    async def chain_id(self, cancellation: CancellationToken | None = None) -> int:
        return int(await self._request("eth_chainId", [], cancellation), 16)

    async def call(
        self,
        to: str,
        data: str,
        block: str = "latest",
        cancellation: CancellationToken | None = None,
    ) -> str:
        return await self._request(
            "eth_call", [{"to": to, "data": data}, block], cancellation)

    async def get_transaction_count(
        self,
        address: str,
        block: str = "pending",
        cancellation: CancellationToken | None = None,
    ) -> int:
        return int(
            await self._request(
                "eth_getTransactionCount", [address, block], cancellation),
            16
        )

    async def get_code(
        self,
        address: str,
        block: str = "latest",
        cancellation: CancellationToken | None = None,
    ) -> str:
        return await self._request("eth_getCode", [address, block], cancellation)

    async def get_block_info(
        self,
        block_number_hex: str = "latest",
        cancellation: CancellationToken | None = None,
    ) -> tuple[str, int, int]:
        latest_block = await self._request(
            "eth_getBlockByNumber", [block_number_hex, False], cancellation)
        if "baseFeePerGas" in latest_block:
            latest_block_basefee = int(latest_block["baseFeePerGas"], 16)
        else:  # for block requested before the EIP-1559 upgrade
            latest_block_basefee = 0
        latest_block_timestamp = int(latest_block["timestamp"], 16)
        return (
            latest_block["number"],
            latest_block_basefee,
            latest_block_timestamp,
        )

    async def max_priority_fee_per_gas(
        self, cancellation: CancellationToken | None = None
    ) -> int:
        return int(
            await self._request("eth_maxPriorityFeePerGas", [], cancellation),
            16
        )

    async def gas_price(self, cancellation: CancellationToken | None = None) -> int:
        return int(await self._request("eth_gasPrice", [], cancellation), 16)

    async def estimate_gas(
        self,
        transaction: dict[str, Any],
        block: str = "pending",
        cancellation: CancellationToken | None = None,
    ) -> int:
        return int(
            await self._request(
                "eth_estimateGas", [transaction, block], cancellation),
            16
        )

    async def send_raw_transaction(
        self,
        raw_transaction: str,
        cancellation: CancellationToken | None = None,
    ) -> str:
        return await self._request(
            "eth_sendRawTransaction", [raw_transaction], cancellation)

    async def get_transaction_receipt(
        self,
        transaction_hash: str,
        cancellation: CancellationToken | None = None,
    ) -> ReceiptInfo | None:
        receipt = await self._request(
            "eth_getTransactionReceipt", [transaction_hash], cancellation)
        if receipt is None:
            return None
        return ReceiptInfo.from_rpc_json(receipt)

    async def wait_for_transaction_receipt(
        self,
        transaction_hash: str,
        timeout: float = 60,
        poll_interval: float = 2,
        cancellation: CancellationToken | None = None,
    ) -> ReceiptInfo:
        deadline = asyncio.get_running_loop().time() + timeout
        while True:
            receipt = await self.get_transaction_receipt(
                transaction_hash, cancellation)
            if receipt is not None:
                return receipt
            if asyncio.get_running_loop().time() + poll_interval > deadline:
                logging.warning(
                    f"No receipt for transaction {transaction_hash} "
                    f"after {timeout}s"
                )
                raise ReceiptTimeoutException(transaction_hash, timeout)
            await asyncio.sleep(poll_interval)
