from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError

from sentra_userop.exceptions import \
    InputExceptionCode, InputValidationException
from sentra_userop.typing import Address
from .selectors import selector_of

PACKED_USER_OPERATION_ABI = (
    "(address,uint256,bytes,bytes,bytes32,uint256,bytes32,bytes,bytes)"
)


class ContractCall(ABC):
    SIGNATURE: ClassVar[str]
    ABI_TYPES: ClassVar[list[str]]

    @abstractmethod
    def arguments(self) -> list[Any]:
        pass

    @classmethod
    def from_arguments(cls, arguments: tuple) -> "ContractCall":
        return cls(*arguments)

    @classmethod
    def selector(cls) -> str:
        return selector_of(cls.SIGNATURE)


@dataclass
class SafeMint(ContractCall):
    SIGNATURE = "safeMint(address,string)"
    ABI_TYPES = ["address", "string"]
    to: Address
    uri: str

    def arguments(self) -> list[Any]:
        return [self.to, self.uri]


@dataclass
class Approve(ContractCall):
    SIGNATURE = "approve(address,uint256)"
    ABI_TYPES = ["address", "uint256"]
    spender: Address
    amount: int

    def arguments(self) -> list[Any]:
        return [self.spender, self.amount]


@dataclass
class Execute(ContractCall):
    SIGNATURE = "execute(address,uint256,bytes)"
    ABI_TYPES = ["address", "uint256", "bytes"]
    target: Address
    value: int
    data: bytes

    def arguments(self) -> list[Any]:
        return [self.target, self.value, self.data]


@dataclass
class ExecuteBatch(ContractCall):
    SIGNATURE = "executeBatch(address[],uint256[],bytes[])"
    ABI_TYPES = ["address[]", "uint256[]", "bytes[]"]
    targets: list[Address]
    values: list[int]
    datas: list[bytes]

    def arguments(self) -> list[Any]:
        return [self.targets, self.values, self.datas]

    @classmethod
    def from_arguments(cls, arguments: tuple) -> "ExecuteBatch":
        return cls(list(arguments[0]), list(arguments[1]), list(arguments[2]))


@dataclass
class CreateAccount(ContractCall):
    SIGNATURE = "createAccount(address,uint256)"
    ABI_TYPES = ["address", "uint256"]
    owner: Address
    salt: int

    def arguments(self) -> list[Any]:
        return [self.owner, self.salt]


@dataclass
class GetAddress(ContractCall):
    # SimpleAccountFactory counterfactual address
    SIGNATURE = "getAddress(address,uint256)"
    ABI_TYPES = ["address", "uint256"]
    owner: Address
    salt: int

    def arguments(self) -> list[Any]:
        return [self.owner, self.salt]


@dataclass
class GetNonce(ContractCall):
    SIGNATURE = "getNonce(address,uint192)"
    ABI_TYPES = ["address", "uint192"]
    sender: Address
    key: int = 0

    def arguments(self) -> list[Any]:
        return [self.sender, self.key]


@dataclass
class HandleOps(ContractCall):
    SIGNATURE = (
        "handleOps((address,uint256,bytes,bytes,bytes32,uint256,bytes32,"
        "bytes,bytes)[],address)"
    )
    ABI_TYPES = [PACKED_USER_OPERATION_ABI + "[]", "address"]
    operations: list[list[Any]]
    beneficiary: Address

    def arguments(self) -> list[Any]:
        return [self.operations, self.beneficiary]

    @classmethod
    def from_arguments(cls, arguments: tuple) -> "HandleOps":
        return cls([list(op) for op in arguments[0]], arguments[1])


@dataclass
class SimulateValidation(ContractCall):
    # EntryPointSimulations, always reverts with the validation result
    SIGNATURE = (
        "simulateValidation((address,uint256,bytes,bytes,bytes32,uint256,"
        "bytes32,bytes,bytes))"
    )
    ABI_TYPES = [PACKED_USER_OPERATION_ABI]
    operation: list[Any]

    def arguments(self) -> list[Any]:
        return [self.operation]

    @classmethod
    def from_arguments(cls, arguments: tuple) -> "SimulateValidation":
        return cls(list(arguments[0]))


SUPPORTED_CALLS: list[type[ContractCall]] = [
    SafeMint,
    Approve,
    Execute,
    ExecuteBatch,
    CreateAccount,
    GetAddress,
    GetNonce,
    HandleOps,
    SimulateValidation,
]


def encode_call(call: ContractCall) -> bytes:
    function_selector = bytes.fromhex(call.selector()[2:])
    return function_selector + encode(call.ABI_TYPES, call.arguments())


def encode_call_hex(call: ContractCall) -> str:
    return "0x" + encode_call(call).hex()


def decode_call(call_data: bytes) -> ContractCall:
    function_selector = "0x" + call_data[:4].hex()
    for call_type in SUPPORTED_CALLS:
        if call_type.selector() == function_selector:
            try:
                arguments = decode(call_type.ABI_TYPES, call_data[4:])
            except DecodingError:
                raise InputValidationException(
                    InputExceptionCode.InvalidFields,
                    f"Invalid {call_type.SIGNATURE} arguments",
                )
            return call_type.from_arguments(arguments)
    raise InputValidationException(
        InputExceptionCode.InvalidSelectorInput,
        f"Unsupported function selector {function_selector}",
    )
