import asyncio
import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from sentra_userop.exceptions import (EstimationException,
                                      EstimationExceptionCode,
                                      InputExceptionCode,
                                      InputValidationException)
from sentra_userop.submission.submission_client import BundlerClient
from sentra_userop.user_operation.builder import DUMMY_SIGNATURE
from sentra_userop.user_operation.models import GasEstimate
from sentra_userop.user_operation.user_operation import (UserOperationDraft,
                                                         verify_and_get_uint)
from sentra_userop.utils.cancellation import CancellationToken
from sentra_userop.utils.eth_client_utils import EthClient

HIGH_RISK_THRESHOLD = 80
SAFE_THRESHOLD = 100


class GasRiskBand(Enum):
    HIGH_RISK = "high_risk"
    CAUTION = "caution"
    SAFE = "safe"

    @property
    def advisory(self) -> str:
        return RISK_BAND_ADVISORY[self]


RISK_BAND_ADVISORY = {
    GasRiskBand.HIGH_RISK:
    "Below 80% of the estimate is very likely to fail validation "
    "(AA23/AA33 out of gas)",
    GasRiskBand.CAUTION:
    "Below the bundler estimate, validation may run out of gas",
    GasRiskBand.SAFE: "At or above the bundler estimate",
}


@dataclass(frozen=True)
class GasScaling:
    call: int = 100
    verification: int = 100
    pre_verification: int = 100

    def __post_init__(self):
        for percent in (self.call, self.verification, self.pre_verification):
            _verify_percentage(percent)

    def risk_band(self) -> GasRiskBand:
        return risk_band(min(self.call, self.verification, self.pre_verification))


def _verify_percentage(percent: int) -> None:
    if not isinstance(percent, int) or isinstance(percent, bool) or percent < 0:
        raise InputValidationException(
            InputExceptionCode.InvalidPercentage,
            f"Invalid gas percentage : {percent}",
        )


def scale_gas_value(base: int, percent: int) -> int:
    _verify_percentage(percent)
    return base * percent // 100


def scale(estimate: GasEstimate, scaling: int | GasScaling) -> GasEstimate:
    if not isinstance(scaling, GasScaling):
        scaling = GasScaling(scaling, scaling, scaling)
    return replace(
        estimate,
        call_gas_limit=scale_gas_value(estimate.call_gas_limit, scaling.call),
        verification_gas_limit=scale_gas_value(
            estimate.verification_gas_limit, scaling.verification),
        pre_verification_gas=scale_gas_value(
            estimate.pre_verification_gas, scaling.pre_verification),
    )


def risk_band(percent: int) -> GasRiskBand:
    """Advisory only, never blocks a submission."""
    _verify_percentage(percent)
    if percent < HIGH_RISK_THRESHOLD:
        return GasRiskBand.HIGH_RISK
    elif percent < SAFE_THRESHOLD:
        return GasRiskBand.CAUTION
    return GasRiskBand.SAFE


def apply_gas_estimate(
    user_operation: UserOperationDraft, estimate: GasEstimate
) -> UserOperationDraft:
    return replace(
        user_operation,
        call_gas_limit=estimate.call_gas_limit,
        verification_gas_limit=estimate.verification_gas_limit,
        pre_verification_gas=estimate.pre_verification_gas,
        paymaster_verification_gas_limit=(
            estimate.paymaster_verification_gas_limit
            if estimate.paymaster_verification_gas_limit is not None
            and user_operation.paymaster is not None
            else user_operation.paymaster_verification_gas_limit
        ),
        paymaster_post_op_gas_limit=(
            estimate.paymaster_post_op_gas_limit
            if estimate.paymaster_post_op_gas_limit is not None
            and user_operation.paymaster is not None
            else user_operation.paymaster_post_op_gas_limit
        ),
    )


class GasEstimator:
    bundler_client: BundlerClient

    def __init__(self, bundler_client: BundlerClient) -> None:
        self.bundler_client = bundler_client

    async def estimate(
        self,
        user_operation: UserOperationDraft,
        entrypoint: str,
        cancellation: CancellationToken | None = None,
    ) -> GasEstimate:
        # the account validates a signature during estimation
        if not user_operation.is_signed:
            user_operation = user_operation.with_signature(
                bytes.fromhex(DUMMY_SIGNATURE[2:]))
        result = await self.bundler_client.estimate_user_operation_gas(
            user_operation, entrypoint, cancellation)
        estimate = _parse_gas_estimate(result)
        logging.debug(f"Gas estimate for {user_operation.sender}: {estimate}")
        return estimate


def _parse_gas_estimate(result: dict[str, Any]) -> GasEstimate:
    try:
        paymaster_verification_gas_limit = result.get(
            "paymasterVerificationGasLimit")
        paymaster_post_op_gas_limit = result.get("paymasterPostOpGasLimit")
        return GasEstimate(
            call_gas_limit=verify_and_get_uint(
                "callGasLimit", result.get("callGasLimit")),
            verification_gas_limit=verify_and_get_uint(
                "verificationGasLimit", result.get("verificationGasLimit")),
            pre_verification_gas=verify_and_get_uint(
                "preVerificationGas", result.get("preVerificationGas")),
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
        )
    except InputValidationException as excp:
        raise EstimationException(
            EstimationExceptionCode.InvalidResponse, excp.message)


async def suggest_gas_fees(
    eth_client: EthClient,
    max_fee_per_gas_percentage_multiplier: int = 100,
    max_priority_fee_per_gas_percentage_multiplier: int = 100,
    cancellation: CancellationToken | None = None,
) -> tuple[int, int]:
    """Returns (max_fee_per_gas, max_priority_fee_per_gas) from the node."""
    block_max_fee_per_gas, block_max_priority_fee_per_gas = await asyncio.gather(
        eth_client.gas_price(cancellation),
        eth_client.max_priority_fee_per_gas(cancellation),
    )
    max_fee_per_gas = math.ceil(
        block_max_fee_per_gas * (max_fee_per_gas_percentage_multiplier / 100)
    )
    max_priority_fee_per_gas = math.ceil(
        block_max_priority_fee_per_gas * (
            max_priority_fee_per_gas_percentage_multiplier / 100)
    )
    return max_fee_per_gas, min(max_priority_fee_per_gas, max_fee_per_gas)
