from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sentra_userop.typing import Address


@dataclass(frozen=True)
class GasEstimate:
    call_gas_limit: int
    verification_gas_limit: int
    pre_verification_gas: int
    paymaster_verification_gas_limit: int | None = None
    paymaster_post_op_gas_limit: int | None = None


@dataclass(frozen=True)
class PaymasterContext:
    target: Address
    selector: str
    args: list[Any] | None = None
    valid_for_sec: int | None = None
    user_op_hash: str | None = None

    def to_json(self) -> dict[str, Any]:
        context: dict[str, Any] = {
            "target": self.target,
            "selector": self.selector,
        }
        if self.args is not None:
            context["args"] = self.args
        if self.valid_for_sec is not None:
            context["validForSec"] = self.valid_for_sec
        if self.user_op_hash is not None:
            context["userOpHash"] = self.user_op_hash
        return context


@dataclass(frozen=True)
class PaymasterResult:
    paymaster: Address
    paymaster_data: bytes
    paymaster_verification_gas_limit: int | None = None
    paymaster_post_op_gas_limit: int | None = None
    is_final: bool = False
    sponsor: dict[str, str] | None = None


@dataclass(frozen=True)
class Eip7702Authorization:
    chain_id: int
    address: Address
    nonce: int
    y_parity: int
    r: int
    s: int

    def to_json(self) -> dict[str, str]:
        return {
            "chainId": hex(self.chain_id),
            "address": self.address,
            "nonce": hex(self.nonce),
            "yParity": hex(self.y_parity),
            "r": hex(self.r),
            "s": hex(self.s),
        }


class SimulationStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class SimulationResult:
    status: SimulationStatus
    code: str | None = None
    reason: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)
    note: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == SimulationStatus.SUCCESS


@dataclass
class ReceiptInfo:
    transactionHash: str
    transactionIndex: str
    blockHash: str
    blockNumber: str
    _from: str
    to: str | None
    cumulativeGasUsed: str
    gasUsed: str
    logsBloom: str
    status: str
    effectiveGasPrice: str | None
    logs: list[dict[str, Any]]

    @classmethod
    def from_rpc_json(cls, receipt: dict[str, Any]) -> "ReceiptInfo":
        return cls(
            transactionHash=receipt["transactionHash"],
            transactionIndex=receipt.get("transactionIndex", "0x0"),
            blockHash=receipt["blockHash"],
            blockNumber=receipt["blockNumber"],
            _from=receipt.get("from", ""),
            to=receipt.get("to"),
            cumulativeGasUsed=receipt.get("cumulativeGasUsed", "0x0"),
            gasUsed=receipt.get("gasUsed", "0x0"),
            logsBloom=receipt.get("logsBloom", "0x"),
            status=receipt.get("status", "0x1"),
            effectiveGasPrice=receipt.get("effectiveGasPrice"),
            logs=receipt.get("logs", []),
        )

    @property
    def succeeded(self) -> bool:
        return int(self.status, 16) == 1


@dataclass
class UserOperationReceiptInfo:
    userOpHash: str
    entryPoint: str | None
    sender: str
    paymaster: str | None
    nonce: int
    success: bool
    actualGasCost: int
    actualGasUsed: int
    reason: str | None
    logs: list[dict[str, Any]]
    receipt: ReceiptInfo

    @classmethod
    def from_rpc_json(
        cls, user_operation_receipt: dict[str, Any]
    ) -> "UserOperationReceiptInfo":
        return cls(
            userOpHash=user_operation_receipt["userOpHash"],
            entryPoint=user_operation_receipt.get("entryPoint"),
            sender=user_operation_receipt["sender"],
            paymaster=user_operation_receipt.get("paymaster"),
            nonce=int(user_operation_receipt["nonce"], 16),
            success=bool(user_operation_receipt["success"]),
            actualGasCost=int(user_operation_receipt["actualGasCost"], 16),
            actualGasUsed=int(user_operation_receipt["actualGasUsed"], 16),
            reason=user_operation_receipt.get("reason"),
            logs=user_operation_receipt.get("logs", []),
            receipt=ReceiptInfo.from_rpc_json(
                user_operation_receipt["receipt"]),
        )
