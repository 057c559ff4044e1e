"""
Bit-level packing of the PackedUserOperation gas fields (EntryPoint v0.7/v0.8).

accountGasLimits = verificationGasLimit (high 128 bits) | callGasLimit (low 128 bits)
gasFees          = maxPriorityFeePerGas (high 128 bits) | maxFeePerGas (low 128 bits)
paymasterAndData = paymaster (20) | paymasterVerificationGasLimit (16)
                   | paymasterPostOpGasLimit (16) | paymasterData
"""
from sentra_userop.exceptions import \
    InputExceptionCode, InputValidationException
from sentra_userop.typing import Address

UINT128_MAX = 2**128 - 1
PAYMASTER_DATA_OFFSET = 20 + 16 + 16


def to_uint128_bytes(field_name: str, value: int) -> bytes:
    if not isinstance(value, int) or value < 0 or value > UINT128_MAX:
        raise InputValidationException(
            InputExceptionCode.GasValueOverflow,
            f"Value {value} in field {field_name} does not fit in 128 bits",
        )
    return value.to_bytes(16)


def pack_account_gas_limits(
    call_gas_limit: int, verification_gas_limit: int
) -> bytes:
    return (
        to_uint128_bytes("verificationGasLimit", verification_gas_limit) +
        to_uint128_bytes("callGasLimit", call_gas_limit)
    )


def unpack_account_gas_limits(account_gas_limits: bytes) -> tuple[int, int]:
    _verify_bytes32("accountGasLimits", account_gas_limits)
    verification_gas_limit = int.from_bytes(account_gas_limits[:16])
    call_gas_limit = int.from_bytes(account_gas_limits[16:])
    return call_gas_limit, verification_gas_limit


def pack_gas_fees(max_fee_per_gas: int, max_priority_fee_per_gas: int) -> bytes:
    return (
        to_uint128_bytes("maxPriorityFeePerGas", max_priority_fee_per_gas) +
        to_uint128_bytes("maxFeePerGas", max_fee_per_gas)
    )


def unpack_gas_fees(gas_fees: bytes) -> tuple[int, int]:
    _verify_bytes32("gasFees", gas_fees)
    max_priority_fee_per_gas = int.from_bytes(gas_fees[:16])
    max_fee_per_gas = int.from_bytes(gas_fees[16:])
    return max_fee_per_gas, max_priority_fee_per_gas


def pack_paymaster_and_data(
    paymaster: Address | None = None,
    paymaster_verification_gas_limit: int | None = None,
    paymaster_post_op_gas_limit: int | None = None,
    paymaster_data: bytes | None = None,
) -> bytes:
    if paymaster is None:
        return bytes(0)
    return (
        bytes.fromhex(paymaster[2:]) +
        to_uint128_bytes(
            "paymasterVerificationGasLimit",
            paymaster_verification_gas_limit or 0
        ) +
        to_uint128_bytes(
            "paymasterPostOpGasLimit", paymaster_post_op_gas_limit or 0
        ) +
        (paymaster_data or bytes(0))
    )


def unpack_paymaster_and_data(
    paymaster_and_data: bytes,
) -> tuple[Address | None, int | None, int | None, bytes | None]:
    if len(paymaster_and_data) == 0:
        return None, None, None, None
    if len(paymaster_and_data) < PAYMASTER_DATA_OFFSET:
        raise InputValidationException(
            InputExceptionCode.InvalidFields,
            "paymasterAndData must be empty or at least "
            f"{PAYMASTER_DATA_OFFSET} bytes long",
        )
    paymaster = Address("0x" + paymaster_and_data[:20].hex())
    paymaster_verification_gas_limit = int.from_bytes(paymaster_and_data[20:36])
    paymaster_post_op_gas_limit = int.from_bytes(paymaster_and_data[36:52])
    paymaster_data = paymaster_and_data[PAYMASTER_DATA_OFFSET:]
    return (
        paymaster,
        paymaster_verification_gas_limit,
        paymaster_post_op_gas_limit,
        paymaster_data,
    )


def pack_init_code(factory: Address | None, factory_data: bytes | None) -> bytes:
    if factory is None:
        return bytes(0)
    return bytes.fromhex(factory[2:]) + (factory_data or bytes(0))


def _verify_bytes32(field_name: str, value: bytes) -> None:
    if not isinstance(value, bytes) or len(value) != 32:
        raise InputValidationException(
            InputExceptionCode.InvalidFields,
            f"{field_name} must be exactly 32 bytes",
        )
