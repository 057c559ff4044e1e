from dataclasses import replace

import pytest

from sentra_userop.exceptions import (EstimationException,
                                      EstimationExceptionCode,
                                      InputExceptionCode,
                                      InputValidationException)
from sentra_userop.gas.gas_estimator import (GasEstimator, GasRiskBand,
                                             GasScaling, apply_gas_estimate,
                                             risk_band, scale,
                                             scale_gas_value, suggest_gas_fees)
from sentra_userop.submission.submission_client import BundlerClient
from sentra_userop.user_operation.builder import DUMMY_SIGNATURE
from sentra_userop.user_operation.models import GasEstimate
from sentra_userop.user_operation.user_operation import ENTRYPOINT_V08
from sentra_userop.utils.eth_client_utils import EthClient

from conftest import rpc_error, rpc_result

ESTIMATE = GasEstimate(
    call_gas_limit=100_000,
    verification_gas_limit=200_000,
    pre_verification_gas=50_001,
    paymaster_verification_gas_limit=40_000,
    paymaster_post_op_gas_limit=10_000,
)


@pytest.mark.parametrize("percent,expected", [
    (0, 0),
    (50, 25_000),
    (79, 39_500),
    (100, 50_000),
    (150, 75_000),
])
def test_scale_gas_value(percent, expected):
    assert scale_gas_value(50_000, percent) == expected


def test_scale_gas_value_rounds_down():
    assert scale_gas_value(50_001, 50) == 25_000


@pytest.mark.parametrize("percent", [-1, 1.5, "100", True])
def test_scale_gas_value_rejects_invalid_percentage(percent):
    with pytest.raises(InputValidationException) as excinfo:
        scale_gas_value(100, percent)
    assert excinfo.value.exception_code == InputExceptionCode.InvalidPercentage


def test_scale_is_monotonic():
    previous = None
    for percent in range(0, 301, 10):
        scaled = scale(ESTIMATE, percent)
        if previous is not None:
            assert scaled.call_gas_limit >= previous.call_gas_limit
            assert scaled.verification_gas_limit >= previous.verification_gas_limit
            assert scaled.pre_verification_gas >= previous.pre_verification_gas
        previous = scaled


def test_scale_per_field_and_keeps_paymaster_limits():
    scaled = scale(ESTIMATE, GasScaling(call=50, verification=200,
                                        pre_verification=100))

    assert scaled.call_gas_limit == 50_000
    assert scaled.verification_gas_limit == 400_000
    assert scaled.pre_verification_gas == 50_001
    assert scaled.paymaster_verification_gas_limit == 40_000
    assert scaled.paymaster_post_op_gas_limit == 10_000


def test_gas_scaling_rejects_negative_percentage():
    with pytest.raises(InputValidationException) as excinfo:
        GasScaling(verification=-10)
    assert excinfo.value.exception_code == InputExceptionCode.InvalidPercentage


@pytest.mark.parametrize("percent,band", [
    (0, GasRiskBand.HIGH_RISK),
    (79, GasRiskBand.HIGH_RISK),
    (80, GasRiskBand.CAUTION),
    (99, GasRiskBand.CAUTION),
    (100, GasRiskBand.SAFE),
    (250, GasRiskBand.SAFE),
])
def test_risk_band(percent, band):
    assert risk_band(percent) == band


def test_gas_scaling_risk_band_uses_lowest_percentage():
    assert GasScaling().risk_band() == GasRiskBand.SAFE
    assert GasScaling(call=150, verification=90).risk_band() == GasRiskBand.CAUTION
    assert GasScaling(pre_verification=10).risk_band() == GasRiskBand.HIGH_RISK


def test_apply_gas_estimate(base_operation):
    user_operation = apply_gas_estimate(base_operation, ESTIMATE)

    assert user_operation.call_gas_limit == 100_000
    assert user_operation.verification_gas_limit == 200_000
    assert user_operation.pre_verification_gas == 50_001
    assert user_operation.paymaster_verification_gas_limit == 40_000
    assert user_operation.paymaster_post_op_gas_limit == 10_000


def test_apply_gas_estimate_without_paymaster(base_operation):
    user_operation = replace(
        base_operation,
        paymaster=None,
        paymaster_verification_gas_limit=None,
        paymaster_post_op_gas_limit=None,
        paymaster_data=None,
    )

    user_operation = apply_gas_estimate(user_operation, ESTIMATE)

    assert user_operation.paymaster_verification_gas_limit is None
    assert user_operation.paymaster_post_op_gas_limit is None


@pytest.mark.asyncio
async def test_estimator_uses_dummy_signature(fake_rpc, base_operation):
    fake_rpc.on("eth_estimateUserOperationGas", lambda params: rpc_result({
        "callGasLimit": "0x186a0",
        "verificationGasLimit": "0x30d40",
        "preVerificationGas": "0xc351",
        "paymasterVerificationGasLimit": "0x9c40",
    }))
    estimator = GasEstimator(BundlerClient(fake_rpc.url))

    estimate = await estimator.estimate(base_operation, ENTRYPOINT_V08)

    assert estimate == GasEstimate(
        call_gas_limit=100_000,
        verification_gas_limit=200_000,
        pre_verification_gas=50_001,
        paymaster_verification_gas_limit=40_000,
    )
    params = fake_rpc.calls("eth_estimateUserOperationGas")[0]["params"]
    assert params[0]["signature"] == DUMMY_SIGNATURE
    assert params[1] == ENTRYPOINT_V08


@pytest.mark.asyncio
async def test_estimator_keeps_existing_signature(fake_rpc, base_operation):
    fake_rpc.on("eth_estimateUserOperationGas", lambda params: rpc_result({
        "callGasLimit": "0x1",
        "verificationGasLimit": "0x1",
        "preVerificationGas": "0x1",
    }))
    signed = base_operation.with_signature(bytes.fromhex("12" * 65))

    await GasEstimator(BundlerClient(fake_rpc.url)).estimate(
        signed, ENTRYPOINT_V08)

    params = fake_rpc.calls("eth_estimateUserOperationGas")[0]["params"]
    assert params[0]["signature"] == "0x" + "12" * 65


@pytest.mark.asyncio
async def test_estimator_reverted(fake_rpc, base_operation):
    fake_rpc.on(
        "eth_estimateUserOperationGas",
        lambda params: rpc_error(-32521, "AA23 reverted (or OOG)"),
    )

    with pytest.raises(EstimationException) as excinfo:
        await GasEstimator(BundlerClient(fake_rpc.url)).estimate(
            base_operation, ENTRYPOINT_V08)
    assert excinfo.value.exception_code == EstimationExceptionCode.Reverted
    assert "AA23" in excinfo.value.message


@pytest.mark.asyncio
async def test_estimator_invalid_response(fake_rpc, base_operation):
    fake_rpc.on("eth_estimateUserOperationGas", lambda params: rpc_result({
        "callGasLimit": "0x1",
        "verificationGasLimit": "nope",
        "preVerificationGas": "0x1",
    }))

    with pytest.raises(EstimationException) as excinfo:
        await GasEstimator(BundlerClient(fake_rpc.url)).estimate(
            base_operation, ENTRYPOINT_V08)
    assert excinfo.value.exception_code == EstimationExceptionCode.InvalidResponse


@pytest.mark.asyncio
async def test_suggest_gas_fees(fake_rpc):
    fake_rpc.on("eth_gasPrice", lambda params: rpc_result(hex(20 * 10**9)))
    fake_rpc.on(
        "eth_maxPriorityFeePerGas", lambda params: rpc_result(hex(2 * 10**9)))
    eth_client = EthClient(fake_rpc.url)

    assert await suggest_gas_fees(eth_client) == (20 * 10**9, 2 * 10**9)
    assert await suggest_gas_fees(eth_client, 150, 50) == (
        30 * 10**9, 1 * 10**9)


@pytest.mark.asyncio
async def test_suggest_gas_fees_caps_priority_fee(fake_rpc):
    fake_rpc.on("eth_gasPrice", lambda params: rpc_result(hex(10)))
    fake_rpc.on("eth_maxPriorityFeePerGas", lambda params: rpc_result(hex(50)))

    assert await suggest_gas_fees(EthClient(fake_rpc.url)) == (10, 10)

