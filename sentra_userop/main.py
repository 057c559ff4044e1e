import asyncio
import logging
import sys
from dataclasses import replace
from functools import partial
from signal import SIGINT, SIGTERM

import uvloop

from sentra_userop.abi.calls import SafeMint, encode_call
from sentra_userop.abi.selectors import SelectorEntry, parse_selector_list
from sentra_userop.exceptions import (InputValidationException,
                                      SponsorshipException)
from sentra_userop.gas.gas_estimator import suggest_gas_fees
from sentra_userop.metrics.metrics import run_metrics_server
from sentra_userop.paymaster.allowlist import AllowlistClient
from sentra_userop.pipeline.client_registry import ClientRegistry
from sentra_userop.pipeline.pipeline import (PIPELINE_EXCEPTIONS,
                                             PipelineEvent, PipelineRequest,
                                             PipelineStage,
                                             UserOperationPipeline)
from sentra_userop.signature.signature_engine import (SignatureEngine,
                                                      sign_authorization)
from sentra_userop.simulation.scenarios import (ScenarioOutcome,
                                                ScenarioPreset, ScenarioRunner)
from sentra_userop.submission.submission_client import \
    submit_eip7702_transaction
from sentra_userop.typing import Address
from sentra_userop.user_operation.builder import (Call, build_factory_data,
                                                  get_counterfactual_address,
                                                  new_draft, resolve_nonce)
from sentra_userop.user_operation.models import PaymasterContext
from sentra_userop.utils.cancellation import CancellationToken
from sentra_userop.utils.signal_halt import immediate_exit

from .cli_manager import Command, InitData, parse_args

PAYMASTER_PRESETS = (
    ScenarioPreset.AA21_PAYMASTER_PREFUND,
    ScenarioPreset.AA32_PAYMASTER_WINDOW,
    ScenarioPreset.AA33_PAYMASTER_VALIDATION,
    ScenarioPreset.AA34_PAYMASTER_SIGNATURE,
)


def print_selectors(selectors: str) -> None:
    try:
        entries = parse_selector_list(selectors)
    except InputValidationException as excp:
        logging.critical(excp.message)
        sys.exit(1)
    for entry in entries:
        if entry.signature is None:
            print(entry.selector)
        else:
            print(f"{entry.selector} {entry.signature}")


def format_event(event: PipelineEvent) -> str:
    if event.stage == PipelineStage.FAILED:
        return f"[{event.stage}:{event.failed_stage}] {event.message}"
    return f"[{event.stage}] {event.message}"


def format_outcome(outcome: ScenarioOutcome) -> str:
    result = outcome.result
    status = "success" if result.succeeded else (result.code or "failed")
    line = f"{outcome.preset} {outcome.mode}: {status}"
    if not result.succeeded and result.reason:
        line += f" - {result.reason}"
    if result.note:
        line += f" | {result.note}"
    if not outcome.matches_expectation:
        line += " (unexpected)"
    return line


def build_registry(init_data: InitData) -> ClientRegistry:
    return ClientRegistry(
        {init_data.chain_id: init_data.rpc_url},
        (
            {} if init_data.bundler_url is None
            else {init_data.chain_id: init_data.bundler_url}
        ),
        init_data.paymaster_url,
        init_data.simulation_url,
        init_data.simulation_method,
        init_data.request_timeout,
    )


def build_calls(init_data: InitData, sender: Address) -> list[Call]:
    if init_data.target is None:
        logging.critical("--target is required to build the safeMint call")
        sys.exit(1)
    recipient = init_data.recipient if init_data.recipient else sender
    return [
        Call(
            init_data.target,
            0,
            encode_call(SafeMint(recipient, init_data.token_uri)),
        )
    ]


def build_paymaster_context(init_data: InitData) -> PaymasterContext | None:
    if init_data.paymaster_url is None:
        return None
    return PaymasterContext(init_data.target, SafeMint.selector())


async def resolve_sender(
    init_data: InitData,
    registry: ClientRegistry,
    cancellation: CancellationToken,
) -> tuple[Address, bool]:
    """Returns the sender and whether its code is already deployed."""
    eth_client = registry.eth_client(init_data.chain_id)
    sender = init_data.sender
    if sender is None:
        sender = await get_counterfactual_address(
            eth_client,
            init_data.factory,
            init_data.owner,
            init_data.salt,
            cancellation,
        )
        logging.info(f"Counterfactual sender: {sender}")
    code = await eth_client.get_code(sender, cancellation=cancellation)
    return Address(sender), code not in (None, "", "0x")


async def allowlist_sender(init_data: InitData, sender: Address) -> None:
    allowlist_client = AllowlistClient(
        init_data.allowlist_api_url,
        init_data.paymaster_token,
        init_data.request_timeout,
    )
    await allowlist_client.add_contract(
        init_data.target,
        "safeMint",
        [SelectorEntry(SafeMint.selector(), SafeMint.SIGNATURE)],
    )
    await allowlist_client.add_user(sender)


async def run_pipeline(
    pipeline: UserOperationPipeline,
    request: PipelineRequest,
    init_data: InitData,
) -> PipelineEvent:
    """
    Runs the pipeline, printing every event. A sponsorship rejected because
    the sender or contract is not allowlisted is retried once after
    allowlisting them, when an allowlist api is configured.
    """
    allowlisted = False
    while True:
        last_event = None
        async for event in pipeline.run(request):
            print(format_event(event))
            last_event = event
        if (
            last_event.stage == PipelineStage.FAILED and
            isinstance(last_event.error, SponsorshipException) and
            last_event.error.is_recoverable_by_allowlisting and
            init_data.allowlist_api_url is not None and
            not allowlisted
        ):
            logging.warning(
                f"Sponsorship not configured, allowlisting {request.sender}")
            await allowlist_sender(init_data, request.sender)
            allowlisted = True
            continue
        return last_event


def build_request(
    init_data: InitData,
    sender: Address,
    deployed: bool,
    cancellation: CancellationToken,
    submit: bool,
) -> PipelineRequest:
    factory = None
    factory_data = None
    if not deployed and init_data.factory is not None:
        factory = init_data.factory
        factory_data = build_factory_data(init_data.owner, init_data.salt)
    return PipelineRequest(
        chain_id=init_data.chain_id,
        entrypoint=init_data.entrypoint,
        sender=sender,
        owner=init_data.owner,
        calls=build_calls(init_data, sender),
        execute_wrapper=True,
        factory=factory,
        factory_data=factory_data,
        paymaster_token=init_data.paymaster_token,
        paymaster_context=build_paymaster_context(init_data),
        gas_scaling=init_data.gas_scaling,
        simulate=init_data.simulate,
        submit=submit,
        beneficiary=init_data.beneficiary,
        receipt_timeout=init_data.receipt_timeout,
        receipt_poll_interval=init_data.receipt_poll_interval,
        cancellation=cancellation,
    )


async def send(
    init_data: InitData,
    registry: ClientRegistry,
    signature_engine: SignatureEngine,
    cancellation: CancellationToken,
) -> None:
    sender, deployed = await resolve_sender(init_data, registry, cancellation)
    pipeline = UserOperationPipeline(registry, signature_engine)
    last_event = await run_pipeline(
        pipeline,
        build_request(init_data, sender, deployed, cancellation, True),
        init_data,
    )
    if last_event.stage == PipelineStage.FAILED:
        sys.exit(1)
    if last_event.receipt is not None:
        print(
            f"Transaction {last_event.receipt.receipt.transactionHash} "
            f"success: {last_event.receipt.success}"
        )


async def send_eip7702(
    init_data: InitData,
    registry: ClientRegistry,
    signature_engine: SignatureEngine,
    cancellation: CancellationToken,
) -> None:
    """
    Delegates the owner EOA and executes the operation from it in a single
    type 4 transaction relayed by the local signer.
    """
    eth_client = registry.eth_client(init_data.chain_id)
    signer = init_data.signer
    owner = init_data.owner
    relayer = signer.address

    transaction_count = await eth_client.get_transaction_count(
        owner, "pending", cancellation)
    # the relayer transaction consumes the nonce before the authorization
    authorization_nonce = (
        transaction_count + 1 if relayer == owner else transaction_count)
    authorization = await sign_authorization(
        signer,
        owner,
        init_data.eip7702_delegate,
        init_data.chain_id,
        authorization_nonce,
    )
    nonce = await resolve_nonce(
        eth_client, init_data.entrypoint, owner, cancellation=cancellation)
    max_fee_per_gas, max_priority_fee_per_gas = await suggest_gas_fees(
        eth_client,
        init_data.max_fee_per_gas_percentage,
        init_data.max_priority_fee_per_gas_percentage,
        cancellation,
    )
    user_operation = replace(
        new_draft(owner, build_calls(init_data, owner), nonce,
                  execute_wrapper=True),
        max_fee_per_gas=max_fee_per_gas,
        max_priority_fee_per_gas=max_priority_fee_per_gas,
        eip7702_auth=authorization,
    )
    user_operation = await signature_engine.sign_user_operation(
        user_operation, owner, init_data.entrypoint, init_data.chain_id)
    print(f"[{PipelineStage.SIGNING}] UserOperation and authorization signed")

    receipt = await submit_eip7702_transaction(
        eth_client,
        signer,
        relayer,
        [user_operation],
        init_data.entrypoint,
        init_data.beneficiary or relayer,
        [authorization],
        None,
        max_fee_per_gas,
        max_priority_fee_per_gas,
        init_data.authorization_tuple_order,
        init_data.receipt_timeout,
        init_data.receipt_poll_interval,
        cancellation,
    )
    print(
        f"[{PipelineStage.DONE}] Transaction {receipt.transactionHash} "
        f"included in block {int(receipt.blockNumber, 16)}"
    )


async def run_scenarios(
    init_data: InitData,
    registry: ClientRegistry,
    signature_engine: SignatureEngine,
    cancellation: CancellationToken,
) -> None:
    presets = list(init_data.presets)
    if init_data.factory is None and ScenarioPreset.AA10_ALREADY_CONSTRUCTED in presets:
        logging.warning("Skipping AA10, no --factory configured")
        presets.remove(ScenarioPreset.AA10_ALREADY_CONSTRUCTED)
    if init_data.paymaster_url is None:
        for preset in PAYMASTER_PRESETS:
            if preset in presets:
                logging.warning(f"Skipping {preset}, no --paymaster_url configured")
                presets.remove(preset)

    sender, deployed = await resolve_sender(init_data, registry, cancellation)
    pipeline = UserOperationPipeline(registry, signature_engine)
    base_event = await run_pipeline(
        pipeline,
        build_request(init_data, sender, deployed, cancellation, False),
        init_data,
    )
    if base_event.stage == PipelineStage.FAILED:
        sys.exit(1)

    runner = ScenarioRunner(
        registry.simulator(),
        signature_engine,
        init_data.owner,
        init_data.entrypoint,
        init_data.chain_id,
        init_data.beneficiary or init_data.owner,
        init_data.factory,
        init_data.salt,
    )
    outcomes = await runner.run_suite(
        base_event.user_operation, presets, cancellation=cancellation)
    for outcome in outcomes:
        print(format_outcome(outcome))


async def main(cmd_args=sys.argv[1:], loop=None) -> None:
    init_data = await parse_args(cmd_args)
    if loop is None:
        loop = asyncio.get_running_loop()

    cancellation = CancellationToken()
    for signal_enum in [SIGINT, SIGTERM]:
        exit_func = partial(
            immediate_exit,
            signal_enum=signal_enum,
            loop=loop,
            cancellation=cancellation,
        )
        loop.add_signal_handler(signal_enum, exit_func)

    if init_data.is_metrics:
        run_metrics_server(port=init_data.metrics_port)

    if init_data.command == Command.selectors:
        print_selectors(init_data.selectors)
        return

    registry = build_registry(init_data)
    signature_engine = SignatureEngine(
        init_data.signer, init_data.signature_strategy)
    try:
        if init_data.command == Command.scenarios:
            await run_scenarios(
                init_data, registry, signature_engine, cancellation)
        elif init_data.eip7702_delegate is not None:
            await send_eip7702(
                init_data, registry, signature_engine, cancellation)
        else:
            await send(init_data, registry, signature_engine, cancellation)
    except PIPELINE_EXCEPTIONS as excp:
        logging.critical(excp.message)
        sys.exit(1)


def run():
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
    asyncio.run(main())


if __name__ == "__main__":
    run()
