import logging
import os
import re
import sys
from argparse import ArgumentParser, ArgumentTypeError, Namespace
from dataclasses import dataclass
from enum import Enum
from importlib.metadata import PackageNotFoundError, version

from sentra_userop.exceptions import (EthClientException,
                                      InputValidationException,
                                      NetworkException)
from sentra_userop.gas.gas_estimator import GasScaling
from sentra_userop.signature.signature_engine import (AuthorizationTupleOrder,
                                                      SignatureStrategy)
from sentra_userop.signature.signer import LocalKeySigner
from sentra_userop.simulation.scenarios import ScenarioPreset
from sentra_userop.simulation.simulator import DEFAULT_SIMULATION_METHOD
from sentra_userop.user_operation.builder import parse_salt
from sentra_userop.user_operation.user_operation import ENTRYPOINT_V08
from sentra_userop.utils.eth_client_utils import (DEFAULT_REQUEST_TIMEOUT,
                                                  EthClient)

from .typing import Address

SENTRA_HEADER = "\n".join(
    (
        r"  ___  ___ _ __ | |_ _ __ __ _ ",
        r" / __|/ _ \ '_ \| __| '__/ _` |",
        r" \__ \  __/ | | | |_| | | (_| |",
        r" |___/\___|_| |_|\__|_|  \__,_|",
    )
)
DEFAULT_TOKEN_URI = "ipfs://sentra-userop/demo.json"

try:
    __version__ = version("sentra-userop")
except PackageNotFoundError:
    __version__ = "0.0.0"


class Command(Enum):
    scenarios = "scenarios"
    selectors = "selectors"
    send = "send"

    def __str__(self):
        return self.value


@dataclass()
class InitData:
    command: Command
    rpc_url: str | None
    bundler_url: str | None
    paymaster_url: str | None
    simulation_url: str | None
    simulation_method: str
    allowlist_api_url: str | None
    chain_id: int | None
    entrypoint: Address
    paymaster_token: str | None
    signer: LocalKeySigner | None
    owner: Address | None
    sender: Address | None
    factory: Address | None
    salt: int
    target: Address | None
    recipient: Address | None
    token_uri: str
    beneficiary: Address | None
    request_timeout: float
    receipt_timeout: float
    receipt_poll_interval: float
    signature_strategy: SignatureStrategy
    authorization_tuple_order: AuthorizationTupleOrder
    eip7702_delegate: Address | None
    gas_scaling: GasScaling
    max_fee_per_gas_percentage: int
    max_priority_fee_per_gas_percentage: int
    presets: list[ScenarioPreset]
    selectors: str | None
    simulate: bool
    is_metrics: bool
    metrics_port: int
    client_version: str


def address(ep: str):
    address_pattern = "^0x[0-9,a-f,A-F]{40}$"
    if not isinstance(ep, str) or re.match(address_pattern, ep) is None:
        raise ArgumentTypeError(f"Wrong address format : {ep}")
    return ep


def unsigned_int(value):
    ivalue = int(value)
    if ivalue < 0:
        raise ArgumentTypeError(
                "%s is an invalid unsigned int value" % value)
    return ivalue


def percentage(value):
    ivalue = int(value)
    if ivalue < 0:
        raise ArgumentTypeError(
                "%s is an invalid percentage value" % value)
    return ivalue


def positive_float(value):
    fvalue = float(value)
    if fvalue <= 0:
        raise ArgumentTypeError(
                "%s is an invalid positive value" % value)
    return fvalue


def _get_env_or_default(env_var, default, value_type):
    """
    Helper function to get the value from an environment variable or return the default value.
    Supports single values or lists (for action="append" arguments).
    """
    value = os.getenv(env_var, None)
    if value is not None:
        if value_type == list:
            return value.split(",")
        return value_type(value)
    return default


def initialize_argument_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="sentra-userop",
        description="ERC-4337 UserOperation pipeline and error scenario lab",
    )

    parser.add_argument(
        "--command",
        type=Command,
        help="scenarios, selectors or send - defaults to send",
        choices=list(Command),
        nargs="?",
        const=Command.send,
        default=_get_env_or_default("SENTRA_COMMAND", Command.send, Command),
    )

    parser.add_argument(
        "--rpc_url",
        type=str,
        help="Public Ethereum node url",
        nargs="?",
        default=_get_env_or_default("SENTRA_RPC_URL", None, str),
    )

    parser.add_argument(
        "--bundler_url",
        type=str,
        help="ERC-4337 bundler url",
        nargs="?",
        default=_get_env_or_default("SENTRA_BUNDLER_URL", None, str),
    )

    parser.add_argument(
        "--paymaster_url",
        type=str,
        help="ERC-7677 paymaster url - sponsorship is skipped if not set",
        nargs="?",
        default=_get_env_or_default("SENTRA_PAYMASTER_URL", None, str),
    )

    parser.add_argument(
        "--simulation_url",
        type=str,
        help="Transaction simulation endpoint url",
        nargs="?",
        default=_get_env_or_default("SENTRA_SIMULATION_URL", None, str),
    )

    parser.add_argument(
        "--simulation_method",
        type=str,
        help=(
            "Simulation json-rpc method - defaults to "
            f"{DEFAULT_SIMULATION_METHOD}"
        ),
        nargs="?",
        const=DEFAULT_SIMULATION_METHOD,
        default=_get_env_or_default(
            "SENTRA_SIMULATION_METHOD", DEFAULT_SIMULATION_METHOD, str),
    )

    parser.add_argument(
        "--allowlist_api_url",
        type=str,
        help="Paymaster allowlist api base url",
        nargs="?",
        default=_get_env_or_default("SENTRA_ALLOWLIST_API_URL", None, str),
    )

    parser.add_argument(
        "--chain_id",
        type=unsigned_int,
        help="Chain id - defaults to the chain id reported by the rpc node",
        nargs="?",
        default=_get_env_or_default("SENTRA_CHAIN_ID", None, unsigned_int),
    )

    parser.add_argument(
        "--entrypoint",
        type=address,
        help=f"EntryPoint address - defaults to {ENTRYPOINT_V08}",
        nargs="?",
        const=ENTRYPOINT_V08,
        default=_get_env_or_default("SENTRA_ENTRYPOINT", ENTRYPOINT_V08, address),
    )

    parser.add_argument(
        "--paymaster_token",
        type=str,
        help="Paymaster bearer token",
        nargs="?",
        default=_get_env_or_default("SENTRA_PAYMASTER_TOKEN", None, str),
    )

    parser.add_argument(
        "--signer_secret",
        type=str,
        help="Private key of the local signer",
        nargs="?",
        default=_get_env_or_default("SENTRA_SIGNER_SECRET", None, str),
    )

    parser.add_argument(
        "--owner",
        type=address,
        help="Smart account owner - defaults to the signer address",
        nargs="?",
        default=_get_env_or_default("SENTRA_OWNER", None, address),
    )

    parser.add_argument(
        "--sender",
        type=address,
        help=(
            "Smart account address - defaults to the counterfactual "
            "address of the factory"
        ),
        nargs="?",
        default=_get_env_or_default("SENTRA_SENDER", None, address),
    )

    parser.add_argument(
        "--factory",
        type=address,
        help="Smart account factory",
        nargs="?",
        default=_get_env_or_default("SENTRA_FACTORY", None, address),
    )

    parser.add_argument(
        "--salt",
        type=str,
        help="Account salt, decimal or 0x hex - defaults to 0",
        nargs="?",
        const="0",
        default=_get_env_or_default("SENTRA_SALT", "0", str),
    )

    parser.add_argument(
        "--target",
        type=address,
        help="Sponsored contract called by the operation",
        nargs="?",
        default=_get_env_or_default("SENTRA_TARGET", None, address),
    )

    parser.add_argument(
        "--recipient",
        type=address,
        help="safeMint recipient - defaults to the sender",
        nargs="?",
        default=_get_env_or_default("SENTRA_RECIPIENT", None, address),
    )

    parser.add_argument(
        "--token_uri",
        type=str,
        help="safeMint token uri",
        nargs="?",
        const=DEFAULT_TOKEN_URI,
        default=_get_env_or_default("SENTRA_TOKEN_URI", DEFAULT_TOKEN_URI, str),
    )

    parser.add_argument(
        "--beneficiary",
        type=address,
        help="handleOps beneficiary - defaults to the owner",
        nargs="?",
        default=_get_env_or_default("SENTRA_BENEFICIARY", None, address),
    )

    parser.add_argument(
        "--request_timeout",
        type=positive_float,
        help=f"Remote request timeout in seconds - defaults to {DEFAULT_REQUEST_TIMEOUT}",
        nargs="?",
        const=DEFAULT_REQUEST_TIMEOUT,
        default=_get_env_or_default(
            "SENTRA_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT, positive_float),
    )

    parser.add_argument(
        "--receipt_timeout",
        type=positive_float,
        help="Receipt polling deadline in seconds - defaults to 60",
        nargs="?",
        const=60,
        default=_get_env_or_default("SENTRA_RECEIPT_TIMEOUT", 60, positive_float),
    )

    parser.add_argument(
        "--receipt_poll_interval",
        type=positive_float,
        help="Receipt polling interval in seconds - defaults to 2",
        nargs="?",
        const=2,
        default=_get_env_or_default(
            "SENTRA_RECEIPT_POLL_INTERVAL", 2, positive_float),
    )

    parser.add_argument(
        "--signature_strategy",
        type=SignatureStrategy,
        help="UserOperation signature strategy - defaults to raw_hash",
        choices=list(SignatureStrategy),
        nargs="?",
        const=SignatureStrategy.RAW_HASH,
        default=_get_env_or_default(
            "SENTRA_SIGNATURE_STRATEGY",
            SignatureStrategy.RAW_HASH,
            SignatureStrategy,
        ),
    )

    parser.add_argument(
        "--authorization_tuple_order",
        type=AuthorizationTupleOrder,
        help="EIP-7702 authorization tuple order - defaults to canonical",
        choices=list(AuthorizationTupleOrder),
        nargs="?",
        const=AuthorizationTupleOrder.CANONICAL,
        default=_get_env_or_default(
            "SENTRA_AUTHORIZATION_TUPLE_ORDER",
            AuthorizationTupleOrder.CANONICAL,
            AuthorizationTupleOrder,
        ),
    )

    parser.add_argument(
        "--eip7702_delegate",
        type=address,
        help=(
            "Delegate the owner EOA to this implementation and submit the "
            "operation in a type 4 transaction relayed by the signer"
        ),
        nargs="?",
        default=_get_env_or_default("SENTRA_EIP7702_DELEGATE", None, address),
    )

    parser.add_argument(
        "--call_gas_percentage",
        type=percentage,
        help="Scale of the estimated callGasLimit - defaults to 100",
        nargs="?",
        const=100,
        default=_get_env_or_default("SENTRA_CALL_GAS_PERCENTAGE", 100, percentage),
    )

    parser.add_argument(
        "--verification_gas_percentage",
        type=percentage,
        help="Scale of the estimated verificationGasLimit - defaults to 100",
        nargs="?",
        const=100,
        default=_get_env_or_default(
            "SENTRA_VERIFICATION_GAS_PERCENTAGE", 100, percentage),
    )

    parser.add_argument(
        "--pre_verification_gas_percentage",
        type=percentage,
        help="Scale of the estimated preVerificationGas - defaults to 100",
        nargs="?",
        const=100,
        default=_get_env_or_default(
            "SENTRA_PRE_VERIFICATION_GAS_PERCENTAGE", 100, percentage),
    )

    parser.add_argument(
        "--max_fee_per_gas_percentage",
        type=percentage,
        help="Scale of the node maxFeePerGas for the type 4 transaction - defaults to 100",
        nargs="?",
        const=100,
        default=_get_env_or_default(
            "SENTRA_MAX_FEE_PER_GAS_PERCENTAGE", 100, percentage),
    )

    parser.add_argument(
        "--max_priority_fee_per_gas_percentage",
        type=percentage,
        help="Scale of the node maxPriorityFeePerGas for the type 4 transaction - defaults to 100",
        nargs="?",
        const=100,
        default=_get_env_or_default(
            "SENTRA_MAX_PRIORITY_FEE_PER_GAS_PERCENTAGE", 100, percentage),
    )

    parser.add_argument(
        "--preset",
        type=str,
        help="Scenario preset to run, repeatable - defaults to all presets",
        action="append",
        default=_get_env_or_default("SENTRA_PRESET", None, list),
    )

    parser.add_argument(
        "--selectors",
        type=str,
        help="Comma separated function signatures or 4-byte selectors",
        nargs="?",
        default=_get_env_or_default("SENTRA_SELECTORS", None, str),
    )

    parser.add_argument(
        "--simulate",
        help="Simulate the signed operation before submitting it",
        action="store_true",
        default=_get_env_or_default(
            "SENTRA_SIMULATE", False, lambda v: v.lower() == "true"),
    )

    parser.add_argument(
        "--verbose",
        help="show debug log",
        action="store_true",
        default=_get_env_or_default(
            "SENTRA_VERBOSE", False, lambda v: v.lower() == "true"),
    )

    parser.add_argument(
        "--metrics",
        help="enable metrics collection",
        action="store_true",
        default=_get_env_or_default(
            "SENTRA_METRICS", False, lambda v: v.lower() == "true"),
    )

    parser.add_argument(
        "--metrics_port",
        type=unsigned_int,
        help="Metrics server port - defaults to 8000",
        nargs="?",
        const=8000,
        default=_get_env_or_default("SENTRA_METRICS_PORT", 8000, unsigned_int),
    )

    return parser


async def parse_args(cmd_args: list[str]) -> InitData:
    argument_parser: ArgumentParser = initialize_argument_parser()
    args = argument_parser.parse_args(cmd_args)
    if args.command == Command.selectors:
        if not args.selectors:
            argument_parser.error(
                "You must specify --selectors or set SENTRA_SELECTORS with the selectors command")
    else:
        if not args.signer_secret:
            argument_parser.error(
                "You must specify --signer_secret or set SENTRA_SIGNER_SECRET")
        if not args.rpc_url:
            argument_parser.error(
                "You must specify --rpc_url or set SENTRA_RPC_URL")
        if not args.sender and not args.factory and not args.eip7702_delegate:
            argument_parser.error(
                "You must specify either --sender, --factory or --eip7702_delegate")
    if args.command == Command.scenarios and not args.simulation_url:
        argument_parser.error(
            "You must specify --simulation_url or set SENTRA_SIMULATION_URL with the scenarios command")
    if (
        args.command != Command.selectors and not args.bundler_url and
        not (args.command == Command.send and args.eip7702_delegate)
    ):
        argument_parser.error(
            "You must specify --bundler_url or set SENTRA_BUNDLER_URL")
    if args.eip7702_delegate and args.factory:
        argument_parser.error(
            "You can only specify either --eip7702_delegate or --factory but not both at the same time")
    init_data = await get_init_data(args)
    return init_data


def init_logging(args: Namespace):
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s.%(msecs)03d %(levelname)s %(message)s",
        datefmt="%b %d %H:%M:%S",
    )

    logging.getLogger("Sentra")


async def check_valid_ethereum_rpc_and_get_chain_id(
    rpc_url: str, timeout: float
) -> int:
    try:
        return await EthClient(rpc_url, timeout).chain_id()
    except NetworkException as excp:
        logging.critical(f"Error when connecting to Eth node {rpc_url}: {excp.message}")
        sys.exit(1)
    except EthClientException as excp:
        logging.critical(f"Invalid Eth node {rpc_url}: {excp.message}")
        sys.exit(1)


def init_presets(preset_names: list[str] | None) -> list[ScenarioPreset]:
    if not preset_names:
        return list(ScenarioPreset)
    presets = []
    for preset_name in preset_names:
        try:
            presets.append(ScenarioPreset.from_code(preset_name.strip()))
        except InputValidationException as excp:
            logging.critical(excp.message)
            sys.exit(1)
    return presets


async def get_init_data(args: Namespace) -> InitData:
    init_logging(args)

    signer = None
    owner = args.owner
    if args.signer_secret:
        signer = LocalKeySigner(args.signer_secret)
        if owner is None:
            owner = signer.address

    chain_id = args.chain_id
    if args.command != Command.selectors:
        node_chain_id = await check_valid_ethereum_rpc_and_get_chain_id(
            args.rpc_url, args.request_timeout)
        if chain_id is None:
            chain_id = node_chain_id
        elif chain_id != node_chain_id:
            logging.critical(
                f"Invalid chain id {chain_id} with Eth node {args.rpc_url}"
            )
            sys.exit(1)

    try:
        salt = parse_salt(args.salt)
        gas_scaling = GasScaling(
            args.call_gas_percentage,
            args.verification_gas_percentage,
            args.pre_verification_gas_percentage,
        )
    except InputValidationException as excp:
        logging.critical(excp.message)
        sys.exit(1)

    ret = InitData(
        args.command,
        args.rpc_url,
        args.bundler_url,
        args.paymaster_url,
        args.simulation_url,
        args.simulation_method,
        args.allowlist_api_url,
        chain_id,
        Address(args.entrypoint),
        args.paymaster_token,
        signer,
        owner,
        args.sender,
        args.factory,
        salt,
        args.target,
        args.recipient,
        args.token_uri,
        args.beneficiary,
        args.request_timeout,
        args.receipt_timeout,
        args.receipt_poll_interval,
        args.signature_strategy,
        args.authorization_tuple_order,
        args.eip7702_delegate,
        gas_scaling,
        args.max_fee_per_gas_percentage,
        args.max_priority_fee_per_gas_percentage,
        init_presets(args.preset),
        args.selectors,
        args.simulate,
        args.metrics,
        args.metrics_port,
        __version__,
    )

    if args.verbose:
        print(SENTRA_HEADER)
        print("version : " + __version__)

    logging.info(f"Starting sentra-userop {args.command}")

    return ret
