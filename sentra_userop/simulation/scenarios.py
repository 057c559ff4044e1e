"""
Error injection harness for the ERC-4337 validation codes.

Every preset corrupts exactly one aspect of an otherwise valid operation
(BAD mode) and has a FIX counterpart that keeps the correct value, so a
simulation of the pair is expected to fail with the preset's code and
then succeed.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable

from sentra_userop.exceptions import \
    InputExceptionCode, InputValidationException
from sentra_userop.signature.signature_engine import (SignatureEngine,
                                                      SignatureStrategy)
from sentra_userop.user_operation.builder import (DUMMY_SIGNATURE,
                                                  build_factory_data)
from sentra_userop.user_operation.models import SimulationResult
from sentra_userop.user_operation.user_operation import (
    ZERO_ADDRESS, UserOperationDraft, verify_and_get_address)
from sentra_userop.utils.cancellation import CancellationToken
from .simulator import Simulator

PAYMASTER_WINDOW_SKEW_SECONDS = 90 * 60


class ScenarioPreset(Enum):
    AA10_ALREADY_CONSTRUCTED = "AA10"
    AA21_PAYMASTER_PREFUND = "AA21"
    AA23_VALIDATION_GAS = "AA23"
    AA24_SIGNATURE_ERROR = "AA24"
    AA25_INVALID_NONCE = "AA25"
    AA32_PAYMASTER_WINDOW = "AA32"
    AA33_PAYMASTER_VALIDATION = "AA33"
    AA34_PAYMASTER_SIGNATURE = "AA34"
    AA90_INVALID_BENEFICIARY = "AA90"

    @property
    def code(self) -> str:
        return self.value

    @staticmethod
    def from_code(code: str) -> "ScenarioPreset":
        for preset in ScenarioPreset:
            if preset.code == code.upper() or preset.name == code.upper():
                return preset
        raise InputValidationException(
            InputExceptionCode.InvalidFields, f"Unknown scenario preset {code}")

    def __str__(self):
        return self.value


class ScenarioMode(Enum):
    BAD = "bad"
    FIX = "fix"

    def __str__(self):
        return self.value


@dataclass
class ScenarioMutation:
    operation: UserOperationDraft
    note: str
    beneficiary: str | None = None
    at_time: int | None = None
    skip_paymaster: bool = False
    verifying_contract: str | None = None


@dataclass
class ScenarioOutcome:
    preset: ScenarioPreset
    mode: ScenarioMode
    result: SimulationResult

    @property
    def matches_expectation(self) -> bool:
        if self.mode == ScenarioMode.FIX:
            return self.result.succeeded
        return not self.result.succeeded and self.result.code == self.preset.code


def _fix_note(preset: ScenarioPreset, operation: UserOperationDraft,
              entrypoint: str) -> str:
    if preset == ScenarioPreset.AA10_ALREADY_CONSTRUCTED:
        return "Right input: initCode omitted for already deployed account."
    elif preset == ScenarioPreset.AA21_PAYMASTER_PREFUND:
        return "Right input: paymaster resolved, prefund paid."
    elif preset == ScenarioPreset.AA23_VALIDATION_GAS:
        return "Right input: verificationGasLimit kept at prepared estimate."
    elif preset == ScenarioPreset.AA24_SIGNATURE_ERROR:
        return (
            f"Right input: verifyingContract = {entrypoint} "
            "(correct EIP-712 domain)."
        )
    elif preset == ScenarioPreset.AA25_INVALID_NONCE:
        return (
            "Right input: nonce = "
            f"EntryPoint.getNonce({operation.sender}, 0)."
        )
    elif preset == ScenarioPreset.AA32_PAYMASTER_WINDOW:
        return "Right input: simulation timestamp aligned with latest block time."
    elif preset == ScenarioPreset.AA33_PAYMASTER_VALIDATION:
        return "Right input: sufficient paymasterVerificationGasLimit restored."
    elif preset == ScenarioPreset.AA34_PAYMASTER_SIGNATURE:
        return "Right input: paymaster signature verified."
    return "Right input: beneficiary set to a non-zero address."


def mutate_for_preset(
    preset: ScenarioPreset,
    mode: ScenarioMode,
    operation: UserOperationDraft,
    entrypoint: str,
    factory: str | None = None,
    owner: str | None = None,
    salt: int = 0,
    now: int | None = None,
) -> ScenarioMutation:
    """
    Returns the unsigned operation to simulate for (preset, mode) together
    with the simulation parameters the preset overrides.
    """
    operation = operation.with_signature(bytes(0))
    if mode == ScenarioMode.FIX:
        return ScenarioMutation(
            operation, _fix_note(preset, operation, entrypoint))

    if preset == ScenarioPreset.AA10_ALREADY_CONSTRUCTED:
        if factory is None or owner is None:
            raise InputValidationException(
                InputExceptionCode.InvalidFields,
                "AA10 scenario requires a factory and an owner",
            )
        return ScenarioMutation(
            replace(
                operation,
                factory=verify_and_get_address("factory", factory),
                factory_data=build_factory_data(owner, salt),
            ),
            "Wrong input: initCode provided for an already deployed "
            "smart account.",
        )
    elif preset == ScenarioPreset.AA21_PAYMASTER_PREFUND:
        return ScenarioMutation(
            replace(
                operation,
                paymaster=None,
                paymaster_verification_gas_limit=None,
                paymaster_post_op_gas_limit=None,
                paymaster_data=None,
            ),
            "Wrong input: paymaster skipped, the account never pays "
            "the prefund.",
            skip_paymaster=True,
        )
    elif preset == ScenarioPreset.AA23_VALIDATION_GAS:
        return ScenarioMutation(
            replace(operation, verification_gas_limit=1),
            "Wrong input: verificationGasLimit lowered to 1 "
            "(validation runs out of gas).",
        )
    elif preset == ScenarioPreset.AA24_SIGNATURE_ERROR:
        return ScenarioMutation(
            operation,
            f"Wrong input: verifyingContract = {ZERO_ADDRESS} "
            "(mismatched domain)",
            verifying_contract=ZERO_ADDRESS,
        )
    elif preset == ScenarioPreset.AA25_INVALID_NONCE:
        stale_nonce = (
            operation.nonce - 1 if operation.nonce > 0 else operation.nonce + 1
        )
        return ScenarioMutation(
            replace(operation, nonce=stale_nonce),
            f"Wrong input: stale nonce {stale_nonce} instead of "
            f"{operation.nonce}.",
        )
    elif preset == ScenarioPreset.AA32_PAYMASTER_WINDOW:
        if now is None:
            now = int(time.time())
        return ScenarioMutation(
            operation,
            "Wrong input: simulation time advanced beyond paymaster "
            "validity window.",
            at_time=now + PAYMASTER_WINDOW_SKEW_SECONDS,
        )
    elif preset == ScenarioPreset.AA33_PAYMASTER_VALIDATION:
        return ScenarioMutation(
            replace(operation, paymaster_verification_gas_limit=1),
            "Wrong input: paymasterVerificationGasLimit reduced to 1 "
            "(validation out of gas).",
        )
    elif preset == ScenarioPreset.AA34_PAYMASTER_SIGNATURE:
        dummy = bytes.fromhex(DUMMY_SIGNATURE[2:])
        current = operation.paymaster_data or bytes(0)
        prefix = current[:max(0, len(current) - len(dummy))]
        return ScenarioMutation(
            replace(operation, paymaster_data=prefix + dummy),
            "Wrong input: paymaster signature replaced with dummy bytes.",
        )
    return ScenarioMutation(
        operation,
        "Wrong input: beneficiary forced to address(0).",
        beneficiary=ZERO_ADDRESS,
    )


class ScenarioRunner:
    """
    Runs presets against a prepared, sponsored base operation. Presets share
    only the stateless simulator and signer, so they can run concurrently.
    """

    simulator: Simulator
    signature_engine: SignatureEngine
    owner: str
    entrypoint: str
    chain_id: int
    beneficiary: str
    factory: str | None
    salt: int

    def __init__(
        self,
        simulator: Simulator,
        signature_engine: SignatureEngine,
        owner: str,
        entrypoint: str,
        chain_id: int,
        beneficiary: str,
        factory: str | None = None,
        salt: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.simulator = simulator
        self.signature_engine = signature_engine
        self.owner = owner
        self.entrypoint = entrypoint
        self.chain_id = chain_id
        self.beneficiary = beneficiary
        self.factory = factory
        self.salt = salt
        self.clock = clock

    async def run(
        self,
        preset: ScenarioPreset,
        mode: ScenarioMode,
        base_operation: UserOperationDraft,
        cancellation: CancellationToken | None = None,
    ) -> ScenarioOutcome:
        mutation = mutate_for_preset(
            preset,
            mode,
            base_operation,
            self.entrypoint,
            self.factory,
            self.owner,
            self.salt,
            int(self.clock()),
        )
        signature_engine = self.signature_engine
        if (
            mutation.verifying_contract is not None and
            signature_engine.strategy != SignatureStrategy.TYPED_DATA
        ):
            signature_engine = SignatureEngine(
                signature_engine.signer, SignatureStrategy.TYPED_DATA)
        signed_operation = await signature_engine.sign_user_operation(
            mutation.operation,
            self.owner,
            self.entrypoint,
            self.chain_id,
            mutation.verifying_contract,
        )
        result = await self.simulator.simulate(
            signed_operation,
            self.entrypoint,
            (
                self.beneficiary if mutation.beneficiary is None
                else mutation.beneficiary
            ),
            mutation.at_time,
            cancellation,
        )
        result.note = mutation.note
        outcome = ScenarioOutcome(preset, mode, result)
        logging.info(
            f"Scenario {preset} {mode}: "
            f"{'success' if result.succeeded else result.code} "
            f"({mutation.note})"
        )
        return outcome

    async def run_suite(
        self,
        base_operation: UserOperationDraft,
        presets: list[ScenarioPreset] | None = None,
        modes: tuple[ScenarioMode, ...] = (ScenarioMode.BAD, ScenarioMode.FIX),
        cancellation: CancellationToken | None = None,
    ) -> list[ScenarioOutcome]:
        if presets is None:
            presets = list(ScenarioPreset)
        tasks = [
            self.run(preset, mode, base_operation, cancellation)
            for preset in presets
            for mode in modes
        ]
        return list(await asyncio.gather(*tasks))
