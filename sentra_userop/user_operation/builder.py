import logging
from dataclasses import dataclass
from typing import Any

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from eth_utils import to_checksum_address

from sentra_userop.abi.calls import (CreateAccount, Execute, ExecuteBatch,
                                     GetAddress, GetNonce, encode_call,
                                     encode_call_hex)
from sentra_userop.exceptions import (EthClientException, InputExceptionCode,
                                      InputValidationException)
from sentra_userop.typing import Address
from sentra_userop.utils.cancellation import CancellationToken
from sentra_userop.utils.eth_client_utils import EthClient
from .user_operation import UserOperationDraft, verify_and_get_address

GWEI = 10**9
# placeholders, overwritten by the bundler estimate
DEFAULT_CALL_GAS_LIMIT = 1_000_000
DEFAULT_VERIFICATION_GAS_LIMIT = 500_000
DEFAULT_PRE_VERIFICATION_GAS = 1_000_000
DEFAULT_MAX_FEE_PER_GAS = 30 * GWEI
DEFAULT_MAX_PRIORITY_FEE_PER_GAS = 1 * GWEI

# well formed ecdsa signature that recovers to a random address
DUMMY_SIGNATURE = (
    "0xfffffffffffffffffffffffffffffff0000000000000000000000000000000007"
    "aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa1c"
)


@dataclass(frozen=True)
class Call:
    target: Address
    value: int = 0
    data: bytes = bytes(0)


def new_draft(
    sender: str | None,
    calls: list[Call],
    nonce: int = 0,
    factory: str | None = None,
    factory_data: bytes | None = None,
    execute_wrapper: bool = False,
) -> UserOperationDraft:
    """
    Assemble an unsigned draft with generous placeholder gas values.

    A single call without the execute wrapper becomes the call data as is,
    so the sender itself is the callee. Otherwise the calls are forwarded
    through the account's execute / executeBatch.
    """
    if sender is None:
        raise InputValidationException(
            InputExceptionCode.MissingSender, "Sender address is required")
    sender_address = verify_and_get_address(
        "sender", sender, InputExceptionCode.MissingSender)

    if len(calls) == 0:
        raise InputValidationException(
            InputExceptionCode.InvalidFields,
            "At least one call is required",
        )
    verified_calls = [
        Call(
            verify_and_get_address(
                "target", call.target, InputExceptionCode.InvalidTarget),
            call.value,
            call.data,
        )
        for call in calls
    ]
    for call in verified_calls:
        if call.value < 0:
            raise InputValidationException(
                InputExceptionCode.InvalidFields,
                f"Invalid call value : {call.value}",
            )

    if not isinstance(nonce, int) or nonce < 0:
        raise InputValidationException(
            InputExceptionCode.InvalidNonce, f"Invalid nonce : {nonce}")

    if factory is None and factory_data is not None:
        raise InputValidationException(
            InputExceptionCode.InvalidFields,
            "factoryData requires a factory",
        )
    factory_address = (
        None if factory is None
        else verify_and_get_address("factory", factory)
    )

    if len(verified_calls) > 1:
        call_data = encode_call(
            ExecuteBatch(
                [call.target for call in verified_calls],
                [call.value for call in verified_calls],
                [call.data for call in verified_calls],
            )
        )
    elif execute_wrapper:
        call = verified_calls[0]
        call_data = encode_call(Execute(call.target, call.value, call.data))
    else:
        call_data = verified_calls[0].data

    return UserOperationDraft(
        sender=sender_address,
        nonce=nonce,
        factory=factory_address,
        factory_data=(
            None if factory_address is None else (factory_data or bytes(0))
        ),
        call_data=call_data,
        call_gas_limit=DEFAULT_CALL_GAS_LIMIT,
        verification_gas_limit=DEFAULT_VERIFICATION_GAS_LIMIT,
        pre_verification_gas=DEFAULT_PRE_VERIFICATION_GAS,
        max_fee_per_gas=DEFAULT_MAX_FEE_PER_GAS,
        max_priority_fee_per_gas=DEFAULT_MAX_PRIORITY_FEE_PER_GAS,
    )


def parse_salt(value: str | int) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        salt = value
    elif isinstance(value, str):
        stripped = value.strip()
        try:
            if stripped[:2] in ("0x", "0X"):
                salt = int(stripped[2:], 16)
            else:
                salt = int(stripped, 10)
        except ValueError:
            raise InputValidationException(
                InputExceptionCode.InvalidSalt, f"Invalid salt : {value}")
    else:
        raise InputValidationException(
            InputExceptionCode.InvalidSalt, f"Invalid salt : {value}")
    if salt < 0 or salt >= 2**256:
        raise InputValidationException(
            InputExceptionCode.InvalidSalt, f"Salt out of range : {value}")
    return salt


def build_factory_data(owner: str, salt: int) -> bytes:
    return encode_call(
        CreateAccount(verify_and_get_address("owner", owner), salt))


async def get_counterfactual_address(
    eth_client: EthClient,
    factory: str,
    owner: str,
    salt: int,
    cancellation: CancellationToken | None = None,
) -> Address:
    call_data = encode_call_hex(
        GetAddress(verify_and_get_address("owner", owner), salt))
    result = await eth_client.call(
        verify_and_get_address("factory", factory),
        call_data,
        cancellation=cancellation,
    )
    (address,) = _decode_call_result(["address"], result, factory, "getAddress")
    return Address(to_checksum_address(address))


async def resolve_nonce(
    eth_client: EthClient,
    entrypoint: str,
    sender: str,
    key: int = 0,
    cancellation: CancellationToken | None = None,
) -> int:
    call_data = encode_call_hex(
        GetNonce(verify_and_get_address("sender", sender), key))
    result = await eth_client.call(entrypoint, call_data, cancellation=cancellation)
    (nonce,) = _decode_call_result(["uint256"], result, entrypoint, "getNonce")
    logging.debug(f"Resolved nonce {nonce} for sender {sender}")
    return nonce


def _decode_call_result(
    types: list[str], result: Any, contract: str, function_name: str
) -> tuple:
    # an undeployed contract answers eth_call with empty data
    try:
        return decode(types, bytes.fromhex(result[2:]))
    except (DecodingError, ValueError, TypeError):
        raise EthClientException(
            None,
            f"Invalid {function_name} result from {contract} : {result}",
            result,
        )
