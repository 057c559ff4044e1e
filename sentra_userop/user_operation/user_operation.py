import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from eth_abi import encode
from eth_utils import keccak, to_checksum_address

from sentra_userop.exceptions import \
    InputExceptionCode, InputValidationException
from sentra_userop.typing import Address
from .models import Eip7702Authorization
from .packing import (pack_account_gas_limits, pack_gas_fees,
                      pack_init_code, pack_paymaster_and_data,
                      unpack_account_gas_limits, unpack_gas_fees,
                      unpack_paymaster_and_data)

ZERO_ADDRESS = Address("0x0000000000000000000000000000000000000000")
ENTRYPOINT_V07 = Address("0x0000000071727De22E5E9d8BAf0edAc6f37da032")
ENTRYPOINT_V08 = Address("0x4337084D9E255Ff0702461CF8895CE9E3b5Ff108")
EIP7702_FACTORY_MARKER = Address("0x7702000000000000000000000000000000000000")

EIP712_DOMAIN_TYPEHASH = keccak(
    text="EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
)
DOMAIN_NAME = "ERC4337"
DOMAIN_VERSION = "1"
PACKED_USEROP_TYPEHASH = keccak(
    text=(
        "PackedUserOperation(address sender,uint256 nonce,bytes initCode,"
        "bytes callData,bytes32 accountGasLimits,uint256 preVerificationGas,"
        "bytes32 gasFees,bytes paymasterAndData)"
    )
)


class EntryPointVersion(Enum):
    V07 = "0.7"
    V08 = "0.8"

    @staticmethod
    def from_address(entrypoint: str) -> "EntryPointVersion":
        if entrypoint.lower().startswith("0x4337"):
            return EntryPointVersion.V08
        return EntryPointVersion.V07


def verify_and_get_address(
    field_name: str,
    value: str | None,
    exception_code: InputExceptionCode = InputExceptionCode.InvalidAddress,
) -> Address:
    address_pattern = "^0x[0-9a-fA-F]{40}$"
    if isinstance(value, str) and re.match(address_pattern, value.strip()) is not None:
        return Address(to_checksum_address(value.strip()))
    else:
        raise InputValidationException(
            exception_code,
            f"Invalid address value : {value} in field {field_name}",
        )


def verify_and_get_uint(field_name: str, value: str | int | None) -> int:
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    if value == "0x":
        return 0
    elif isinstance(value, str) and value[:2] == "0x":
        try:
            return int(value, 16)
        except ValueError:
            raise InputValidationException(
                InputExceptionCode.InvalidFields,
                f"Invalid uint hex value : {value} in field {field_name}",
            )
    else:
        raise InputValidationException(
            InputExceptionCode.InvalidFields,
            f"Invalid uint hex value : {value} in field {field_name}",
        )


def verify_and_get_bytes(field_name: str, value: str | bytes | None) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, str) and value[:2] == "0x":
        try:
            return bytes.fromhex(value[2:])
        except ValueError:
            raise InputValidationException(
                InputExceptionCode.InvalidFields,
                f"Invalid bytes hex value : {value} in field {field_name}",
            )
    else:
        raise InputValidationException(
            InputExceptionCode.InvalidFields,
            f"Invalid bytes hex value : {value} in field {field_name}",
        )


def verify_and_get_eip7702_auth(value: dict) -> Eip7702Authorization:
    if (
        "chainId" not in value or
        "address" not in value or
        "nonce" not in value or
        "yParity" not in value or
        "r" not in value or
        "s" not in value
    ):
        raise InputValidationException(
            InputExceptionCode.InvalidFields,
            "Invalid eip7702Auth field.",
        )
    return Eip7702Authorization(
        chain_id=verify_and_get_uint("eip7702Auth.chainId", value["chainId"]),
        address=verify_and_get_address("eip7702Auth.address", value["address"]),
        nonce=verify_and_get_uint("eip7702Auth.nonce", value["nonce"]),
        y_parity=verify_and_get_uint("eip7702Auth.yParity", value["yParity"]),
        r=verify_and_get_uint("eip7702Auth.r", value["r"]),
        s=verify_and_get_uint("eip7702Auth.s", value["s"]),
    )


@dataclass
class PackedUserOperation:
    sender: Address
    nonce: int
    init_code: bytes
    call_data: bytes
    account_gas_limits: bytes
    pre_verification_gas: int
    gas_fees: bytes
    paymaster_and_data: bytes
    signature: bytes

    def to_list(self) -> list[Any]:
        return [
            self.sender,
            self.nonce,
            self.init_code,
            self.call_data,
            self.account_gas_limits,
            self.pre_verification_gas,
            self.gas_fees,
            self.paymaster_and_data,
            self.signature,
        ]

    @classmethod
    def from_list(cls, values: list[Any]) -> "PackedUserOperation":
        return cls(
            Address(to_checksum_address(values[0])),
            values[1],
            values[2],
            values[3],
            values[4],
            values[5],
            values[6],
            values[7],
            values[8],
        )

    def unpack(self) -> "UserOperationDraft":
        call_gas_limit, verification_gas_limit = unpack_account_gas_limits(
            self.account_gas_limits)
        max_fee_per_gas, max_priority_fee_per_gas = unpack_gas_fees(
            self.gas_fees)
        (
            paymaster,
            paymaster_verification_gas_limit,
            paymaster_post_op_gas_limit,
            paymaster_data,
        ) = unpack_paymaster_and_data(self.paymaster_and_data)
        if len(self.init_code) >= 20:
            factory = Address(to_checksum_address(self.init_code[:20]))
            factory_data = self.init_code[20:]
        elif len(self.init_code) == 0:
            factory = None
            factory_data = None
        else:
            raise InputValidationException(
                InputExceptionCode.InvalidFields,
                f"initCode of {len(self.init_code)} bytes is shorter than "
                "a factory address",
            )
        return UserOperationDraft(
            sender=self.sender,
            nonce=self.nonce,
            factory=factory,
            factory_data=factory_data,
            call_data=self.call_data,
            call_gas_limit=call_gas_limit,
            verification_gas_limit=verification_gas_limit,
            pre_verification_gas=self.pre_verification_gas,
            max_fee_per_gas=max_fee_per_gas,
            max_priority_fee_per_gas=max_priority_fee_per_gas,
            paymaster=(
                None if paymaster is None
                else Address(to_checksum_address(paymaster))
            ),
            paymaster_verification_gas_limit=paymaster_verification_gas_limit,
            paymaster_post_op_gas_limit=paymaster_post_op_gas_limit,
            paymaster_data=paymaster_data,
            signature=self.signature,
        )


@dataclass
class UserOperationDraft:
    sender: Address
    nonce: int
    factory: Address | None
    factory_data: bytes | None
    call_data: bytes
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    paymaster: Address | None = None
    paymaster_verification_gas_limit: int | None = None
    paymaster_post_op_gas_limit: int | None = None
    paymaster_data: bytes | None = None
    signature: bytes = bytes(0)
    eip7702_auth: Eip7702Authorization | None = field(default=None)

    @property
    def init_code(self) -> bytes:
        return pack_init_code(self.factory, self.factory_data)

    @property
    def paymaster_and_data(self) -> bytes:
        return pack_paymaster_and_data(
            self.paymaster,
            self.paymaster_verification_gas_limit,
            self.paymaster_post_op_gas_limit,
            self.paymaster_data,
        )

    @property
    def is_signed(self) -> bool:
        return len(self.signature) > 0

    def with_signature(self, signature: bytes) -> "UserOperationDraft":
        return replace(self, signature=signature)

    def to_packed(self) -> PackedUserOperation:
        return PackedUserOperation(
            sender=self.sender,
            nonce=self.nonce,
            init_code=self.init_code,
            call_data=self.call_data,
            account_gas_limits=pack_account_gas_limits(
                self.call_gas_limit, self.verification_gas_limit),
            pre_verification_gas=self.pre_verification_gas,
            gas_fees=pack_gas_fees(
                self.max_fee_per_gas, self.max_priority_fee_per_gas),
            paymaster_and_data=self.paymaster_and_data,
            signature=self.signature,
        )

    def to_list(self) -> list[Any]:
        return self.to_packed().to_list()

    def get_user_operation_json(self) -> dict[str, Any]:
        user_operation_json: dict[str, Any] = {
            "sender": self.sender,
            "nonce": hex(self.nonce),
            "factory": self.factory,
            "factoryData":
            None if self.factory_data is None
            else "0x" + self.factory_data.hex(),
            "callData": "0x" + self.call_data.hex(),
            "callGasLimit": hex(self.call_gas_limit),
            "verificationGasLimit": hex(self.verification_gas_limit),
            "preVerificationGas": hex(self.pre_verification_gas),
            "maxFeePerGas": hex(self.max_fee_per_gas),
            "maxPriorityFeePerGas": hex(self.max_priority_fee_per_gas),
            "paymaster": self.paymaster,
            "paymasterVerificationGasLimit":
            None if self.paymaster_verification_gas_limit is None
            else hex(self.paymaster_verification_gas_limit),
            "paymasterPostOpGasLimit":
            None if self.paymaster_post_op_gas_limit is None
            else hex(self.paymaster_post_op_gas_limit),
            "paymasterData":
            None if self.paymaster_data is None
            else "0x" + self.paymaster_data.hex(),
            "signature": "0x" + self.signature.hex(),
        }
        if self.eip7702_auth is not None:
            user_operation_json["eip7702Auth"] = self.eip7702_auth.to_json()
        # bundlers reject explicit nulls for the optional fields
        return {
            key: value for key, value in user_operation_json.items()
            if value is not None
        }

    @classmethod
    def from_json(cls, json_dict: dict[str, Any]) -> "UserOperationDraft":
        required_fields_list = [
            "sender",
            "nonce",
            "callData",
            "callGasLimit",
            "verificationGasLimit",
            "preVerificationGas",
            "maxFeePerGas",
            "maxPriorityFeePerGas",
        ]
        for field_name in required_fields_list:
            if field_name not in json_dict:
                raise InputValidationException(
                    InputExceptionCode.InvalidFields,
                    f"UserOperation missing {field_name} field",
                )

        factory = json_dict.get("factory")
        factory_data = json_dict.get("factoryData")
        if factory is None and factory_data is not None:
            raise InputValidationException(
                InputExceptionCode.InvalidFields,
                'Invalid UserOperation, '
                '"factoryData" has to be null if "factory" is null',
            )
        if factory == "0x7702":
            factory = EIP7702_FACTORY_MARKER

        paymaster = json_dict.get("paymaster")
        paymaster_verification_gas_limit = json_dict.get(
            "paymasterVerificationGasLimit")
        paymaster_post_op_gas_limit = json_dict.get("paymasterPostOpGasLimit")
        paymaster_data = json_dict.get("paymasterData")
        if paymaster is None and (
            paymaster_verification_gas_limit is not None or
            paymaster_post_op_gas_limit is not None or
            paymaster_data is not None
        ):
            raise InputValidationException(
                InputExceptionCode.InvalidFields,
                "Invalid UserOperation, "
                '"paymasterVerificationGasLimit", "paymasterPostOpGasLimit" '
                'and "paymasterData" have to be null if "paymaster" is null',
            )

        eip7702_auth = json_dict.get("eip7702Auth")
        return cls(
            sender=verify_and_get_address("sender", json_dict["sender"]),
            nonce=verify_and_get_uint("nonce", json_dict["nonce"]),
            factory=(
                None if factory is None
                else verify_and_get_address("factory", factory)
            ),
            factory_data=(
                None if factory_data is None
                else verify_and_get_bytes("factoryData", factory_data)
            ),
            call_data=verify_and_get_bytes("callData", json_dict["callData"]),
            call_gas_limit=verify_and_get_uint(
                "callGasLimit", json_dict["callGasLimit"]),
            verification_gas_limit=verify_and_get_uint(
                "verificationGasLimit", json_dict["verificationGasLimit"]),
            pre_verification_gas=verify_and_get_uint(
                "preVerificationGas", json_dict["preVerificationGas"]),
            max_fee_per_gas=verify_and_get_uint(
                "maxFeePerGas", json_dict["maxFeePerGas"]),
            max_priority_fee_per_gas=verify_and_get_uint(
                "maxPriorityFeePerGas", json_dict["maxPriorityFeePerGas"]),
            paymaster=(
                None if paymaster is None
                else verify_and_get_address("paymaster", paymaster)
            ),
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
            paymaster_data=(
                None if paymaster_data is None
                else verify_and_get_bytes("paymasterData", paymaster_data)
            ),
            signature=verify_and_get_bytes(
                "signature", json_dict.get("signature", "0x")),
            eip7702_auth=(
                None if eip7702_auth is None
                else verify_and_get_eip7702_auth(eip7702_auth)
            ),
        )


def build_domain_separator(chain_id: int, verifying_contract: str) -> bytes:
    return keccak(
        encode(
            ["bytes32", "bytes32", "bytes32", "uint256", "address"],
            [
                EIP712_DOMAIN_TYPEHASH,
                keccak(text=DOMAIN_NAME),
                keccak(text=DOMAIN_VERSION),
                chain_id,
                verifying_contract,
            ],
        )
    )


def init_code_for_hashing(init_code: bytes, delegate: str | None = None) -> bytes:
    """
    For a 7702 operation the factory marker is replaced by the address the
    sender delegates to, as the v0.8 EntryPoint does when hashing.
    """
    if (
        delegate is not None and
        len(init_code) >= 20 and
        init_code[:20] == bytes.fromhex(EIP7702_FACTORY_MARKER[2:])
    ):
        return bytes.fromhex(delegate[2:]) + init_code[20:]
    return init_code


def pack_user_operation_for_hashing_v8(
    packed: PackedUserOperation, delegate: str | None = None
) -> bytes:
    return encode(
        [
            "bytes32",
            "address",
            "uint256",
            "bytes32",
            "bytes32",
            "bytes32",
            "uint256",
            "bytes32",
            "bytes32",
        ],
        [
            PACKED_USEROP_TYPEHASH,
            packed.sender,
            packed.nonce,
            keccak(init_code_for_hashing(packed.init_code, delegate)),
            keccak(packed.call_data),
            packed.account_gas_limits,
            packed.pre_verification_gas,
            packed.gas_fees,
            keccak(packed.paymaster_and_data),
        ],
    )


def pack_user_operation_for_hashing_v7(packed: PackedUserOperation) -> bytes:
    return encode(
        [
            "address",
            "uint256",
            "bytes32",
            "bytes32",
            "bytes32",
            "uint256",
            "bytes32",
            "bytes32",
        ],
        [
            packed.sender,
            packed.nonce,
            keccak(packed.init_code),
            keccak(packed.call_data),
            packed.account_gas_limits,
            packed.pre_verification_gas,
            packed.gas_fees,
            keccak(packed.paymaster_and_data),
        ],
    )


def typed_data_hash(
    user_operation: UserOperationDraft,
    chain_id: int,
    verifying_contract: str,
) -> bytes:
    """EIP-712 digest of the PackedUserOperation under an ERC4337 domain."""
    delegate = (
        None if user_operation.eip7702_auth is None
        else user_operation.eip7702_auth.address
    )
    struct_hash = keccak(
        pack_user_operation_for_hashing_v8(user_operation.to_packed(), delegate)
    )
    domain_separator = build_domain_separator(chain_id, verifying_contract)
    return keccak(b'\x19\x01' + domain_separator + struct_hash)


def get_user_operation_hash(
    user_operation: UserOperationDraft,
    entrypoint: str,
    chain_id: int,
    version: EntryPointVersion | None = None,
) -> bytes:
    if version is None:
        version = EntryPointVersion.from_address(entrypoint)
    if version == EntryPointVersion.V08:
        return typed_data_hash(user_operation, chain_id, entrypoint)

    packed_user_operation_hash = keccak(
        pack_user_operation_for_hashing_v7(user_operation.to_packed())
    )
    return keccak(
        encode(
            ["bytes32", "address", "uint256"],
            [packed_user_operation_hash, entrypoint, chain_id],
        )
    )


def is_user_operation_hash(user_operation_hash: str) -> bool:
    hash_pattern = "^0x[0-9a-fA-F]{64}$"
    return (
        isinstance(user_operation_hash, str)
        and re.match(hash_pattern, user_operation_hash) is not None
    )
