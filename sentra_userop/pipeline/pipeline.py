import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import AsyncIterator

from sentra_userop.exceptions import (AllowlistException, EstimationException,
                                      EthClientException,
                                      InputValidationException,
                                      NetworkException,
                                      OperationCancelledException,
                                      ReceiptTimeoutException,
                                      SimulationException, SponsorshipException,
                                      SubmissionException)
from sentra_userop.gas.gas_estimator import (GasEstimator, GasRiskBand,
                                             GasScaling, apply_gas_estimate,
                                             scale)
from sentra_userop.metrics.metrics import record_pipeline_failure
from sentra_userop.paymaster.sponsorship_client import apply_paymaster_result
from sentra_userop.signature.signature_engine import SignatureEngine
from sentra_userop.typing import Address, UserOperationHash
from sentra_userop.user_operation.builder import (Call, new_draft,
                                                  resolve_nonce)
from sentra_userop.user_operation.models import (Eip7702Authorization,
                                                 GasEstimate, PaymasterContext,
                                                 SimulationResult,
                                                 UserOperationReceiptInfo)
from sentra_userop.user_operation.user_operation import UserOperationDraft
from sentra_userop.utils.cancellation import CancellationToken
from .client_registry import ClientRegistry

PIPELINE_EXCEPTIONS = (
    InputValidationException,
    SponsorshipException,
    AllowlistException,
    EstimationException,
    SimulationException,
    SubmissionException,
    NetworkException,
    EthClientException,
    ReceiptTimeoutException,
    OperationCancelledException,
)


class PipelineStage(Enum):
    BUILDING = "building"
    SPONSORING = "sponsoring"
    ESTIMATING = "estimating"
    SIGNING = "signing"
    SIMULATING = "simulating"
    SUBMITTING = "submitting"
    DONE = "done"
    FAILED = "failed"

    def __str__(self):
        return self.value


@dataclass
class PipelineRequest:
    chain_id: int
    entrypoint: Address
    sender: Address
    owner: Address
    calls: list[Call]
    execute_wrapper: bool = True
    nonce: int | None = None
    factory: Address | None = None
    factory_data: bytes | None = None
    eip7702_auth: Eip7702Authorization | None = None
    paymaster_token: str | None = None
    paymaster_context: PaymasterContext | None = None
    gas_scaling: GasScaling = field(default_factory=GasScaling)
    simulate: bool = False
    submit: bool = True
    beneficiary: Address | None = None
    wait_for_receipt: bool = True
    receipt_timeout: float = 60
    receipt_poll_interval: float = 2
    cancellation: CancellationToken = field(default_factory=CancellationToken)


@dataclass
class PipelineEvent:
    stage: PipelineStage
    message: str
    failed_stage: PipelineStage | None = None
    user_operation: UserOperationDraft | None = None
    gas_estimate: GasEstimate | None = None
    risk_band: GasRiskBand | None = None
    simulation: SimulationResult | None = None
    user_operation_hash: UserOperationHash | None = None
    receipt: UserOperationReceiptInfo | None = None
    error: Exception | None = None


class UserOperationPipeline:
    """
    build -> sponsor stub -> estimate -> scale -> sponsor final -> sign
    -> simulate (optional) -> submit -> receipt, one stage at a time.
    Nothing is kept between runs, every run starts from a fresh draft.
    """

    registry: ClientRegistry
    signature_engine: SignatureEngine

    def __init__(
        self, registry: ClientRegistry, signature_engine: SignatureEngine
    ) -> None:
        self.registry = registry
        self.signature_engine = signature_engine

    async def run(self, request: PipelineRequest) -> AsyncIterator[PipelineEvent]:
        stage = PipelineStage.BUILDING
        cancellation = request.cancellation
        try:
            cancellation.raise_if_cancelled()
            nonce = request.nonce
            if nonce is None:
                nonce = await resolve_nonce(
                    self.registry.eth_client(request.chain_id),
                    request.entrypoint,
                    request.sender,
                    cancellation=cancellation,
                )
            user_operation = new_draft(
                request.sender,
                request.calls,
                nonce,
                request.factory,
                request.factory_data,
                request.execute_wrapper,
            )
            if request.eip7702_auth is not None:
                user_operation = replace(
                    user_operation, eip7702_auth=request.eip7702_auth)
            yield PipelineEvent(
                stage,
                f"Draft built for {user_operation.sender} with nonce {nonce}",
                user_operation=user_operation,
            )

            paymaster_client = None
            if request.paymaster_context is not None:
                stage = PipelineStage.SPONSORING
                cancellation.raise_if_cancelled()
                paymaster_client = self.registry.paymaster_client(
                    request.paymaster_token)
                stub = await paymaster_client.get_stub_data(
                    user_operation,
                    request.entrypoint,
                    request.chain_id,
                    request.paymaster_context,
                    cancellation,
                )
                user_operation = apply_paymaster_result(user_operation, stub)
                yield PipelineEvent(
                    stage,
                    f"Paymaster stub data received from {stub.paymaster}",
                    user_operation=user_operation,
                )

            stage = PipelineStage.ESTIMATING
            cancellation.raise_if_cancelled()
            estimator = GasEstimator(
                self.registry.bundler_client(request.chain_id))
            estimate = await estimator.estimate(
                user_operation, request.entrypoint, cancellation)
            scaled_estimate = scale(estimate, request.gas_scaling)
            band = request.gas_scaling.risk_band()
            user_operation = apply_gas_estimate(user_operation, scaled_estimate)
            if band != GasRiskBand.SAFE:
                logging.warning(f"Gas scaling {request.gas_scaling}: {band.advisory}")
            yield PipelineEvent(
                stage,
                f"Gas estimated, {band.advisory}",
                user_operation=user_operation,
                gas_estimate=scaled_estimate,
                risk_band=band,
            )

            if paymaster_client is not None:
                stage = PipelineStage.SPONSORING
                cancellation.raise_if_cancelled()
                final = await paymaster_client.get_final_data(
                    user_operation,
                    request.entrypoint,
                    request.chain_id,
                    request.paymaster_context,
                    cancellation,
                )
                user_operation = apply_paymaster_result(user_operation, final)
                yield PipelineEvent(
                    stage,
                    "Final paymaster data received",
                    user_operation=user_operation,
                )

            stage = PipelineStage.SIGNING
            cancellation.raise_if_cancelled()
            user_operation = await self.signature_engine.sign_user_operation(
                user_operation,
                request.owner,
                request.entrypoint,
                request.chain_id,
            )
            yield PipelineEvent(
                stage, "UserOperation signed", user_operation=user_operation)

            if request.simulate:
                stage = PipelineStage.SIMULATING
                cancellation.raise_if_cancelled()
                simulation = await self.registry.simulator().simulate(
                    user_operation,
                    request.entrypoint,
                    request.beneficiary or request.owner,
                    None,
                    cancellation,
                )
                if not simulation.succeeded:
                    record_pipeline_failure(stage.value)
                    yield PipelineEvent(
                        PipelineStage.FAILED,
                        f"Simulation failed: {simulation.code} "
                        f"{simulation.reason}",
                        failed_stage=stage,
                        user_operation=user_operation,
                        simulation=simulation,
                    )
                    return
                yield PipelineEvent(
                    stage,
                    "Simulation succeeded",
                    user_operation=user_operation,
                    simulation=simulation,
                )

            if not request.submit:
                yield PipelineEvent(
                    PipelineStage.DONE,
                    "UserOperation prepared",
                    user_operation=user_operation,
                )
                return

            stage = PipelineStage.SUBMITTING
            cancellation.raise_if_cancelled()
            bundler_client = self.registry.bundler_client(request.chain_id)
            user_operation_hash = await bundler_client.send_user_operation(
                user_operation, request.entrypoint, cancellation)
            yield PipelineEvent(
                stage,
                f"UserOperation submitted: {user_operation_hash}",
                user_operation=user_operation,
                user_operation_hash=user_operation_hash,
            )

            receipt = None
            if request.wait_for_receipt:
                receipt = await bundler_client.wait_for_receipt(
                    user_operation_hash,
                    request.receipt_timeout,
                    request.receipt_poll_interval,
                    cancellation,
                )
            yield PipelineEvent(
                PipelineStage.DONE,
                "UserOperation included" if receipt is not None
                else "UserOperation submitted",
                user_operation=user_operation,
                user_operation_hash=user_operation_hash,
                receipt=receipt,
            )
        except PIPELINE_EXCEPTIONS as excp:
            logging.error(f"Pipeline failed at stage {stage}: {excp.message}")
            record_pipeline_failure(stage.value)
            yield PipelineEvent(
                PipelineStage.FAILED,
                excp.message,
                failed_stage=stage,
                error=excp,
            )
