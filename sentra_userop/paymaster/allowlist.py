import asyncio
import json
import logging
from typing import Any

import aiohttp
from aiohttp import ClientSession, ClientTimeout

from sentra_userop.abi.selectors import SelectorEntry
from sentra_userop.exceptions import (AllowlistException, NetworkException,
                                      NetworkExceptionCode,
                                      SponsorshipException,
                                      SponsorshipExceptionCode)
from sentra_userop.user_operation.user_operation import verify_and_get_address
from sentra_userop.utils.eth_client_utils import DEFAULT_REQUEST_TIMEOUT

ALREADY_EXISTS_STATUS = 409
NOT_FOUND_STATUS = 404


class AllowlistClient:
    """
    Client of the paymaster administration REST api, used to register the
    sender / contract pair after a NotConfigured sponsorship failure.
    """

    base_url: str
    token: str
    timeout: float | None

    def __init__(
        self, base_url: str, token: str, timeout: float | None = None
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

    async def add_user(self, address: str) -> bool:
        """Returns False when the user is already allowlisted."""
        return await self._create(
            "/api/v1/paymasters/me/users",
            {"address": verify_and_get_address("address", address)},
        )

    async def add_contract(
        self,
        address: str,
        name: str | None = None,
        functions: list[SelectorEntry] | None = None,
    ) -> bool:
        """Returns False when the contract is already allowlisted."""
        payload: dict[str, Any] = {
            "address": verify_and_get_address("address", address),
        }
        if name is not None:
            payload["name"] = name
        if functions is not None:
            payload["functions"] = [
                {"selector": entry.selector, "signature": entry.signature}
                if entry.signature is not None
                else {"selector": entry.selector}
                for entry in functions
            ]
        return await self._create("/api/v1/paymasters/me/contracts", payload)

    async def get_paymaster(self) -> dict[str, Any]:
        status, body = await self._request("GET", "/api/v1/paymasters/me")
        if status == NOT_FOUND_STATUS:
            raise SponsorshipException(
                SponsorshipExceptionCode.NotConfigured,
                "No paymaster configured for this account",
            )
        self._raise_for_status(status, body)
        return json.loads(body)

    async def list_contracts(self) -> list[dict[str, Any]]:
        status, body = await self._request(
            "GET", "/api/v1/paymasters/me/contracts")
        if status == NOT_FOUND_STATUS:
            raise SponsorshipException(
                SponsorshipExceptionCode.NotConfigured,
                "No paymaster configured for this account",
            )
        self._raise_for_status(status, body)
        return json.loads(body)

    async def _create(self, path: str, payload: dict[str, Any]) -> bool:
        status, body = await self._request("POST", path, payload)
        if status == ALREADY_EXISTS_STATUS:
            logging.info(f"Allowlist entry already exists: {str(payload)}")
            return False
        if status == NOT_FOUND_STATUS:
            raise SponsorshipException(
                SponsorshipExceptionCode.NotConfigured,
                "No paymaster configured for this account",
            )
        self._raise_for_status(status, body)
        return True

    def _raise_for_status(self, status: int, body: bytes) -> None:
        if status >= 400:
            message = body.decode(errors="replace")
            logging.error(f"Allowlist api returned HTTP {status}: {message}")
            raise AllowlistException(status, message)

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> tuple[int, bytes]:
        headers = {
            "content-type": "application/json",
            "Authorization": f"Bearer {self.token}",
        }
        client_timeout = ClientTimeout(
            total=self.timeout if self.timeout is not None
            else DEFAULT_REQUEST_TIMEOUT
        )
        url = self.base_url + path
        logging.debug(f"Allowlist api {method} {url}")
        try:
            async with ClientSession(timeout=client_timeout) as session:
                async with session.request(
                    method, url, json=payload, headers=headers
                ) as response:
                    return response.status, await response.read()
        except asyncio.TimeoutError:
            raise NetworkException(
                NetworkExceptionCode.Timeout,
                f"Allowlist api {method} {path} timed out",
            )
        except aiohttp.ClientError as excp:
            raise NetworkException(
                NetworkExceptionCode.Transport,
                f"Allowlist api {method} {path} failed: {str(excp)}",
            )
