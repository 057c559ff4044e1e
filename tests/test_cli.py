from argparse import ArgumentTypeError
from signal import SIGINT
from unittest.mock import Mock

import pytest
import rlp

from sentra_userop.cli_manager import (Command, address, init_presets,
                                       initialize_argument_parser, parse_args,
                                       percentage, positive_float,
                                       unsigned_int)
from sentra_userop.gas.gas_estimator import GasScaling
from sentra_userop.main import format_outcome, main, print_selectors
from sentra_userop.signature.signature_engine import (AuthorizationTupleOrder,
                                                      SignatureStrategy)
from sentra_userop.simulation.scenarios import (ScenarioMode, ScenarioOutcome,
                                                ScenarioPreset)
from sentra_userop.user_operation.models import (SimulationResult,
                                                 SimulationStatus)
from sentra_userop.user_operation.user_operation import ENTRYPOINT_V08
from sentra_userop.utils.cancellation import CancellationToken
from sentra_userop.utils.signal_halt import SignalHaltError, immediate_exit

from conftest import (CHAIN_ID, DELEGATE, FACTORY, FAKE_NOW, NFT_CONTRACT,
                      OWNER_PRIVATE_KEY, PAYMASTER, PAYMASTER_VALIDITY_SECONDS,
                      SENDER, eth_call_handler, paymaster_data, rpc_error,
                      rpc_result, unused_port_url)

USER_OPERATION_HASH = "0x" + "ab" * 32
TRANSACTION_HASH = "0x" + "cd" * 32


def transaction_receipt():
    return {
        "transactionHash": TRANSACTION_HASH,
        "blockHash": "0x" + "ef" * 32,
        "blockNumber": "0x2a",
        "status": "0x1",
    }


def serve_node(fake_rpc):
    fake_rpc.on("eth_chainId", lambda params: rpc_result(hex(CHAIN_ID)))
    fake_rpc.on("eth_getCode", lambda params: rpc_result("0x6080"))
    fake_rpc.on("eth_call", eth_call_handler(nonce=3))
    fake_rpc.on("eth_estimateUserOperationGas", lambda params: rpc_result({
        "callGasLimit": hex(100_000),
        "verificationGasLimit": hex(200_000),
        "preVerificationGas": hex(50_000),
    }))
    fake_rpc.on(
        "eth_sendUserOperation", lambda params: rpc_result(USER_OPERATION_HASH))
    fake_rpc.on("eth_getUserOperationReceipt", lambda params: rpc_result({
        "userOpHash": USER_OPERATION_HASH,
        "sender": SENDER,
        "nonce": "0x3",
        "success": True,
        "actualGasCost": "0x10",
        "actualGasUsed": "0x10",
        "receipt": transaction_receipt(),
    }))


def send_arguments(url, *extra):
    return [
        "--command", "send",
        "--rpc_url", url,
        "--bundler_url", url,
        "--signer_secret", OWNER_PRIVATE_KEY,
        "--sender", SENDER,
        "--target", NFT_CONTRACT,
        "--receipt_poll_interval", "0.01",
        *extra,
    ]


def test_address_validator():
    assert address(SENDER) == SENDER
    with pytest.raises(ArgumentTypeError):
        address("0x1234")


def test_number_validators():
    assert unsigned_int("5") == 5
    assert percentage("150") == 150
    assert positive_float("0.5") == 0.5
    with pytest.raises(ArgumentTypeError):
        unsigned_int("-1")
    with pytest.raises(ArgumentTypeError):
        percentage("-5")
    with pytest.raises(ArgumentTypeError):
        positive_float("0")
    with pytest.raises(ValueError):
        percentage("ten")


def test_init_presets():
    assert init_presets(None) == list(ScenarioPreset)
    assert init_presets(["AA23", " aa90 "]) == [
        ScenarioPreset.AA23_VALIDATION_GAS,
        ScenarioPreset.AA90_INVALID_BENEFICIARY,
    ]
    with pytest.raises(SystemExit):
        init_presets(["AA77"])


@pytest.mark.asyncio
async def test_parse_selectors_command():
    init_data = await parse_args(
        ["--command", "selectors", "--selectors", "approve(address,uint256)"])

    assert init_data.command == Command.selectors
    assert init_data.selectors == "approve(address,uint256)"
    assert init_data.chain_id is None
    assert init_data.signer is None


@pytest.mark.asyncio
async def test_parse_selectors_from_environment(monkeypatch):
    monkeypatch.setenv("SENTRA_SELECTORS", "0x095ea7b3")

    init_data = await parse_args(["--command", "selectors"])

    assert init_data.selectors == "0x095ea7b3"


@pytest.mark.parametrize("value", ["false", "False", "0", "no"])
def test_boolean_flags_from_environment_are_off(monkeypatch, value):
    for env_var in (
        "SENTRA_SIMULATE", "SENTRA_VERBOSE", "SENTRA_METRICS"
    ):
        monkeypatch.setenv(env_var, value)

    args = initialize_argument_parser().parse_args([])

    assert args.simulate is False
    assert args.verbose is False
    assert args.metrics is False


def test_boolean_flags_from_environment_are_on(monkeypatch):
    for env_var in (
        "SENTRA_SIMULATE", "SENTRA_VERBOSE", "SENTRA_METRICS"
    ):
        monkeypatch.setenv(env_var, "TRUE")

    args = initialize_argument_parser().parse_args([])

    assert args.simulate is True
    assert args.verbose is True
    assert args.metrics is True


@pytest.mark.asyncio
async def test_parse_send_command(fake_rpc):
    serve_node(fake_rpc)

    init_data = await parse_args(send_arguments(
        fake_rpc.url,
        "--verification_gas_percentage", "90",
        "--salt", "0x10",
        "--signature_strategy", "typed_data",
        "--authorization_tuple_order", "alternate",
    ))

    assert init_data.command == Command.send
    assert init_data.chain_id == CHAIN_ID
    assert init_data.entrypoint == ENTRYPOINT_V08
    assert init_data.owner == "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
    assert init_data.signer.address == init_data.owner
    assert init_data.salt == 16
    assert init_data.gas_scaling == GasScaling(100, 90, 100)
    assert init_data.signature_strategy == SignatureStrategy.TYPED_DATA
    assert (
        init_data.authorization_tuple_order == AuthorizationTupleOrder.ALTERNATE)
    assert init_data.presets == list(ScenarioPreset)


@pytest.mark.asyncio
@pytest.mark.parametrize("arguments", [
    ["--command", "selectors"],
    ["--command", "send", "--rpc_url", "http://node", "--sender", SENDER,
     "--bundler_url", "http://bundler"],
    ["--command", "send", "--signer_secret", OWNER_PRIVATE_KEY,
     "--sender", SENDER, "--bundler_url", "http://bundler"],
    ["--command", "send", "--signer_secret", OWNER_PRIVATE_KEY,
     "--rpc_url", "http://node", "--bundler_url", "http://bundler"],
    ["--command", "send", "--signer_secret", OWNER_PRIVATE_KEY,
     "--rpc_url", "http://node", "--sender", SENDER],
    ["--command", "scenarios", "--signer_secret", OWNER_PRIVATE_KEY,
     "--rpc_url", "http://node", "--sender", SENDER,
     "--bundler_url", "http://bundler"],
    ["--command", "send", "--signer_secret", OWNER_PRIVATE_KEY,
     "--rpc_url", "http://node", "--factory", FACTORY,
     "--eip7702_delegate", DELEGATE],
    ["--command", "send", "--entrypoint", "0x1234"],
])
async def test_parse_args_rejects_incomplete_configuration(arguments):
    with pytest.raises(SystemExit) as excinfo:
        await parse_args(arguments)
    assert excinfo.value.code == 2


@pytest.mark.asyncio
async def test_parse_args_chain_id_mismatch(fake_rpc):
    serve_node(fake_rpc)

    with pytest.raises(SystemExit) as excinfo:
        await parse_args(send_arguments(fake_rpc.url, "--chain_id", "1"))
    assert excinfo.value.code == 1


@pytest.mark.asyncio
async def test_parse_args_unreachable_node():
    with pytest.raises(SystemExit) as excinfo:
        await parse_args(send_arguments(unused_port_url()))
    assert excinfo.value.code == 1


def test_print_selectors(capsys):
    print_selectors("transfer(address,uint256), 0x095ea7b3")

    assert capsys.readouterr().out.splitlines() == [
        "0xa9059cbb transfer(address,uint256)",
        "0x095ea7b3",
    ]


def test_print_selectors_invalid_input():
    with pytest.raises(SystemExit):
        print_selectors("transfer(address,uint256)\napprove(address,uint256)")


def test_format_outcome():
    failed = ScenarioOutcome(
        ScenarioPreset.AA25_INVALID_NONCE,
        ScenarioMode.BAD,
        SimulationResult(
            SimulationStatus.FAILED, code="AA25", reason="nonce",
            note="Wrong input: stale nonce"),
    )
    unexpected = ScenarioOutcome(
        ScenarioPreset.AA25_INVALID_NONCE,
        ScenarioMode.FIX,
        SimulationResult(SimulationStatus.FAILED, code="AA24"),
    )

    assert format_outcome(failed) == (
        "AA25 bad: AA25 - nonce | Wrong input: stale nonce")
    assert format_outcome(unexpected) == "AA25 fix: AA24 (unexpected)"


@pytest.mark.asyncio
async def test_main_selectors(capsys):
    await main(["--command", "selectors", "--selectors", "Error(string)"])

    assert capsys.readouterr().out.strip() == "0x08c379a0 Error(string)"


@pytest.mark.asyncio
async def test_main_send(fake_rpc, capsys):
    serve_node(fake_rpc)

    await main(send_arguments(fake_rpc.url))

    out = capsys.readouterr().out
    assert "[done] UserOperation included" in out
    assert f"Transaction {TRANSACTION_HASH} success: True" in out
    sent = fake_rpc.calls("eth_sendUserOperation")[0]["params"][0]
    assert sent["sender"] == SENDER
    assert sent["nonce"] == "0x3"
    assert "factory" not in sent


@pytest.mark.asyncio
async def test_main_send_failure_exits(fake_rpc, capsys):
    serve_node(fake_rpc)
    fake_rpc.on(
        "eth_sendUserOperation",
        lambda params: rpc_error(-32500, "AA21 didn't pay prefund"),
    )

    with pytest.raises(SystemExit) as excinfo:
        await main(send_arguments(fake_rpc.url))
    assert excinfo.value.code == 1
    assert "[failed:submitting] AA21 didn't pay prefund" in (
        capsys.readouterr().out)


@pytest.mark.asyncio
async def test_main_send_allowlists_and_retries(fake_rpc, fake_allowlist,
                                                capsys):
    serve_node(fake_rpc)

    def stub_data(params):
        if SENDER not in fake_allowlist.users:
            return rpc_error(-32000, "Sender not allowlisted")
        return rpc_result({
            "paymaster": PAYMASTER,
            "paymasterData": "0x" + paymaster_data(0, bytes(65)).hex(),
            "paymasterVerificationGasLimit": hex(60_000),
            "paymasterPostOpGasLimit": hex(20_000),
        })

    fake_rpc.on("pm_getPaymasterStubData", stub_data)
    fake_rpc.on("pm_getPaymasterData", lambda params: rpc_result({
        "paymaster": PAYMASTER,
        "paymasterData": "0x" + paymaster_data(
            FAKE_NOW + PAYMASTER_VALIDITY_SECONDS).hex(),
    }))

    await main(send_arguments(
        fake_rpc.url,
        "--paymaster_url", fake_rpc.url,
        "--paymaster_token", "allowlist-token",
        "--allowlist_api_url", fake_allowlist.url,
    ))

    assert fake_allowlist.users == {SENDER}
    assert fake_allowlist.contracts[NFT_CONTRACT]["functions"] == [
        {"selector": "0xd204c45e", "signature": "safeMint(address,string)"}]
    assert len(fake_rpc.calls("pm_getPaymasterStubData")) == 2
    sent = fake_rpc.calls("eth_sendUserOperation")[0]["params"][0]
    assert sent["paymaster"] == PAYMASTER
    out = capsys.readouterr().out
    assert "[failed:sponsoring] Sender not allowlisted" in out
    assert "[done] UserOperation included" in out


@pytest.mark.asyncio
async def test_main_send_eip7702_self_relayed(fake_rpc, capsys):
    """
    The signer relays its own delegation, so the authorization nonce is one
    past the nonce of the relaying transaction
    """
    serve_node(fake_rpc)
    raw_transactions = []
    fake_rpc.on("eth_getTransactionCount", lambda params: rpc_result("0x5"))
    fake_rpc.on("eth_gasPrice", lambda params: rpc_result(hex(20 * 10**9)))
    fake_rpc.on(
        "eth_maxPriorityFeePerGas", lambda params: rpc_result(hex(10**9)))
    fake_rpc.on("eth_estimateGas", lambda params: rpc_result(hex(200_000)))

    def send_raw_transaction(params):
        raw_transactions.append(params[0])
        return rpc_result(TRANSACTION_HASH)

    fake_rpc.on("eth_sendRawTransaction", send_raw_transaction)
    fake_rpc.on(
        "eth_getTransactionReceipt",
        lambda params: rpc_result(transaction_receipt()),
    )

    await main([
        "--command", "send",
        "--rpc_url", fake_rpc.url,
        "--signer_secret", OWNER_PRIVATE_KEY,
        "--eip7702_delegate", DELEGATE,
        "--target", NFT_CONTRACT,
        "--receipt_poll_interval", "0.01",
        "--max_fee_per_gas_percentage", "150",
    ])

    assert f"Transaction {TRANSACTION_HASH} included in block 42" in (
        capsys.readouterr().out)
    assert fake_rpc.calls("eth_sendUserOperation") == []
    fields = rlp.decode(bytes.fromhex(raw_transactions[0][4:]))
    assert int.from_bytes(fields[1]) == 5
    assert int.from_bytes(fields[2]) == 10**9
    assert int.from_bytes(fields[3]) == 30 * 10**9
    assert int.from_bytes(fields[4]) == 240_000
    (authorization_tuple,) = fields[9]
    assert authorization_tuple[1] == bytes.fromhex(DELEGATE[2:])
    assert int.from_bytes(authorization_tuple[2]) == 6

    estimate_params = fake_rpc.calls("eth_estimateGas")[0]["params"]
    assert estimate_params[1] == "pending"
    assert estimate_params[0]["to"] == ENTRYPOINT_V08
    assert estimate_params[0]["data"] == "0x" + fields[7].hex()
    assert estimate_params[0]["authorizationList"][0]["nonce"] == "0x6"


def test_immediate_exit_cancels_pending_requests():
    cancellation = CancellationToken()
    loop = Mock()

    with pytest.raises(SignalHaltError) as excinfo:
        immediate_exit(SIGINT, loop, cancellation)

    assert excinfo.value.code == SIGINT.value
    assert excinfo.value.cancelled
    assert cancellation.cancelled
    loop.stop.assert_called_once_with()
    assert repr(excinfo.value) == "Cancelled pending requests on SIGINT"
