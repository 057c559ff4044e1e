from typing import Any, Callable

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer
from eth_abi import encode
from eth_keys.exceptions import BadSignature

from sentra_userop.abi.calls import (GetAddress, GetNonce, HandleOps,
                                     decode_call)
from sentra_userop.abi.decode import FAILED_OP_SELECTOR
from sentra_userop.exceptions import InputValidationException
from sentra_userop.signature.signature_engine import recover_hash_signer
from sentra_userop.signature.signer import LocalKeySigner
from sentra_userop.user_operation.builder import Call, new_draft
from sentra_userop.user_operation.user_operation import (
    ENTRYPOINT_V08, ZERO_ADDRESS, PackedUserOperation, UserOperationDraft,
    get_user_operation_hash)

OWNER_PRIVATE_KEY = (
    "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80")
RELAYER_PRIVATE_KEY = (
    "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d")
CHAIN_ID = 11155111
SENDER = "0x1111111111111111111111111111111111111111"
FACTORY = "0x2222222222222222222222222222222222222222"
NFT_CONTRACT = "0x3333333333333333333333333333333333333333"
PAYMASTER = "0x4444444444444444444444444444444444444444"
BENEFICIARY = "0x5555555555555555555555555555555555555555"
DELEGATE = "0x6666666666666666666666666666666666666666"

FAKE_NOW = 1_750_000_000
PAYMASTER_VALIDITY_SECONDS = 30 * 60
PAYMASTER_SIGNATURE = bytes.fromhex("ab" * 64 + "1b")
MIN_VERIFICATION_GAS = 10_000
MIN_PAYMASTER_VERIFICATION_GAS = 10_000


def rpc_result(result: Any) -> dict[str, Any]:
    return {"result": result}


def rpc_error(code: int, message: str, data: Any = None) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"error": error}


class FakeJsonRpcServer:
    """
    In-process json-rpc endpoint. Handlers receive the request params and
    return either rpc_result(...) or rpc_error(...).
    """

    def __init__(self) -> None:
        self.handlers: dict[str, Callable[[Any], dict[str, Any]]] = {}
        self.requests: list[dict[str, Any]] = []
        self.headers: list[dict[str, str]] = []
        self.http_status: int | None = None
        self.raw_body: str | None = None
        self.url = ""

    def on(self, method: str, handler: Callable[[Any], dict[str, Any]]) -> None:
        self.handlers[method] = handler

    def calls(self, method: str) -> list[dict[str, Any]]:
        return [request for request in self.requests if request["method"] == method]

    async def handle(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.requests.append(body)
        self.headers.append(
            {key.lower(): value for key, value in request.headers.items()})
        if self.http_status is not None:
            return web.Response(status=self.http_status, text="forced status")
        if self.raw_body is not None:
            return web.Response(status=200, text=self.raw_body)
        handler = self.handlers.get(body["method"])
        if handler is None:
            response = rpc_error(-32601, "Method not found.")
        else:
            response = handler(body["params"])
        return web.json_response({"jsonrpc": "2.0", "id": body["id"], **response})


class FakeAllowlistApi:
    def __init__(self, token: str) -> None:
        self.token = token
        self.configured = True
        self.users: set[str] = set()
        self.contracts: dict[str, dict[str, Any]] = {}
        self.url = ""

    def _check(self, request: web.Request) -> web.Response | None:
        if request.headers.get("Authorization") != f"Bearer {self.token}":
            return web.json_response({"error": "unauthorized"}, status=401)
        if not self.configured:
            return web.json_response({"error": "no paymaster"}, status=404)
        return None

    async def get_paymaster(self, request: web.Request) -> web.Response:
        failure = self._check(request)
        if failure is not None:
            return failure
        return web.json_response({"address": PAYMASTER, "chainId": CHAIN_ID})

    async def list_contracts(self, request: web.Request) -> web.Response:
        failure = self._check(request)
        if failure is not None:
            return failure
        return web.json_response(list(self.contracts.values()))

    async def add_contract(self, request: web.Request) -> web.Response:
        failure = self._check(request)
        if failure is not None:
            return failure
        payload = await request.json()
        if payload["address"] in self.contracts:
            return web.json_response({"error": "exists"}, status=409)
        self.contracts[payload["address"]] = payload
        return web.json_response(payload, status=201)

    async def add_user(self, request: web.Request) -> web.Response:
        failure = self._check(request)
        if failure is not None:
            return failure
        payload = await request.json()
        if payload["address"] in self.users:
            return web.json_response({"error": "exists"}, status=409)
        self.users.add(payload["address"])
        return web.json_response(payload, status=201)


def failed_op_output(reason: str) -> str:
    return FAILED_OP_SELECTOR + encode(["uint256", "string"], [0, reason]).hex()


def paymaster_data(valid_until: int, signature: bytes = PAYMASTER_SIGNATURE) -> bytes:
    return valid_until.to_bytes(6) + (0).to_bytes(6) + signature


class FakeEntryPoint:
    """
    Validates handleOps calldata the way the EntryPoint would for a single
    owner account with a signature based paymaster, and answers in the
    tenderly_simulateTransaction format.
    """

    def __init__(self, owner: str, entrypoint: str = ENTRYPOINT_V08) -> None:
        self.owner = owner
        self.entrypoint = entrypoint
        self.deployed = {SENDER}
        self.nonces: dict[str, int] = {SENDER: 3}
        self.account_deposit = False

    def validate(self, user_operation: UserOperationDraft, now: int) -> str | None:
        if user_operation.factory is not None:
            if user_operation.sender in self.deployed:
                return "AA10 sender already constructed"
        elif user_operation.sender not in self.deployed:
            return "AA20 account not deployed"
        if user_operation.verification_gas_limit < MIN_VERIFICATION_GAS:
            return "AA23 reverted (or OOG)"
        user_operation_hash = get_user_operation_hash(
            user_operation.with_signature(bytes(0)), self.entrypoint, CHAIN_ID)
        try:
            signer = recover_hash_signer(
                user_operation_hash, user_operation.signature)
        except (InputValidationException, BadSignature):
            return "AA24 signature error"
        if signer != self.owner:
            return "AA24 signature error"
        if user_operation.nonce != self.nonces.get(user_operation.sender, 0):
            return "AA25 invalid account nonce"
        if user_operation.paymaster is None:
            if not self.account_deposit:
                return "AA21 didn't pay prefund"
            return None
        if (
            user_operation.paymaster_verification_gas_limit <
            MIN_PAYMASTER_VERIFICATION_GAS
        ):
            return "AA33 reverted (or OOG)"
        data = user_operation.paymaster_data
        if data[-65:] != PAYMASTER_SIGNATURE:
            return "AA34 signature error"
        if int.from_bytes(data[:6]) < now:
            return "AA32 paymaster expired or not due"
        return None

    def simulate(self, params: list[Any]) -> dict[str, Any]:
        transaction = params[0]
        now = FAKE_NOW
        if len(params) > 3 and "time" in params[3]:
            now = int(params[3]["time"], 16)
        handle_ops = decode_call(bytes.fromhex(transaction["data"][2:]))
        assert isinstance(handle_ops, HandleOps)
        reason = None
        for operation in handle_ops.operations:
            user_operation = PackedUserOperation.from_list(operation).unpack()
            reason = self.validate(user_operation, now)
            if reason is not None:
                break
        if reason is None and handle_ops.beneficiary == ZERO_ADDRESS:
            reason = "AA90 invalid beneficiary"
        if reason is None:
            return rpc_result({"status": True, "trace": []})
        output = failed_op_output(reason)
        return rpc_result({
            "status": False,
            "trace": [
                {
                    "traceAddress": [],
                    "error": "execution reverted",
                    "output": output,
                },
                {
                    "traceAddress": [0],
                    "error": "execution reverted",
                    "output": output,
                },
            ],
        })


def eth_call_handler(
    nonce: int = 3, counterfactual: str = SENDER
) -> Callable[[Any], dict[str, Any]]:
    def handler(params):
        call_data = bytes.fromhex(params[0]["data"][2:])
        call = decode_call(call_data)
        if isinstance(call, GetNonce):
            return rpc_result("0x" + encode(["uint256"], [nonce]).hex())
        if isinstance(call, GetAddress):
            return rpc_result("0x" + encode(["address"], [counterfactual]).hex())
        return rpc_error(3, "execution reverted")
    return handler


@pytest.fixture
def owner_signer() -> LocalKeySigner:
    return LocalKeySigner(OWNER_PRIVATE_KEY)


@pytest.fixture
def relayer_signer() -> LocalKeySigner:
    return LocalKeySigner(RELAYER_PRIVATE_KEY)


@pytest.fixture
def base_operation() -> UserOperationDraft:
    draft = new_draft(
        SENDER,
        [Call(NFT_CONTRACT, 0, bytes.fromhex("deadbeef"))],
        nonce=3,
        execute_wrapper=True,
    )
    return UserOperationDraft(
        sender=draft.sender,
        nonce=draft.nonce,
        factory=None,
        factory_data=None,
        call_data=draft.call_data,
        call_gas_limit=120_000,
        verification_gas_limit=150_000,
        pre_verification_gas=50_000,
        max_fee_per_gas=draft.max_fee_per_gas,
        max_priority_fee_per_gas=draft.max_priority_fee_per_gas,
        paymaster=PAYMASTER,
        paymaster_verification_gas_limit=60_000,
        paymaster_post_op_gas_limit=20_000,
        paymaster_data=paymaster_data(FAKE_NOW + PAYMASTER_VALIDITY_SECONDS),
    )


async def start_server(app: web.Application) -> TestServer:
    server = TestServer(app)
    await server.start_server()
    return server


@pytest_asyncio.fixture
async def fake_rpc():
    fake = FakeJsonRpcServer()
    app = web.Application()
    app.router.add_post("/", fake.handle)
    server = await start_server(app)
    fake.url = str(server.make_url("/"))
    yield fake
    await server.close()


@pytest_asyncio.fixture
async def fake_allowlist():
    fake = FakeAllowlistApi("allowlist-token")
    app = web.Application()
    app.router.add_get("/api/v1/paymasters/me", fake.get_paymaster)
    app.router.add_get("/api/v1/paymasters/me/contracts", fake.list_contracts)
    app.router.add_post("/api/v1/paymasters/me/contracts", fake.add_contract)
    app.router.add_post("/api/v1/paymasters/me/users", fake.add_user)
    server = await start_server(app)
    fake.url = str(server.make_url("/"))
    yield fake
    await server.close()


@pytest.fixture
def fake_entrypoint(owner_signer) -> FakeEntryPoint:
    return FakeEntryPoint(owner_signer.address)


@pytest.fixture
def clock() -> Callable[[], float]:
    return lambda: float(FAKE_NOW)


def unused_port_url() -> str:
    # nothing listens on port 9 (discard) in the test environment
    return "http://127.0.0.1:9/"