import logging
from enum import Enum
from typing import Any

from eth_keys import KeyAPI
from eth_utils import keccak, to_checksum_address

from sentra_userop.exceptions import \
    InputExceptionCode, InputValidationException
from sentra_userop.typing import Address
from sentra_userop.user_operation.models import Eip7702Authorization
from sentra_userop.user_operation.user_operation import (
    DOMAIN_NAME, DOMAIN_VERSION, UserOperationDraft, get_user_operation_hash,
    init_code_for_hashing, verify_and_get_address)
from sentra_userop.utils.eip7702 import (create_authorization_hash,
                                         split_signature)
from .signer import Signer

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]
PACKED_USER_OPERATION_TYPE = [
    {"name": "sender", "type": "address"},
    {"name": "nonce", "type": "uint256"},
    {"name": "initCode", "type": "bytes"},
    {"name": "callData", "type": "bytes"},
    {"name": "accountGasLimits", "type": "bytes32"},
    {"name": "preVerificationGas", "type": "uint256"},
    {"name": "gasFees", "type": "bytes32"},
    {"name": "paymasterAndData", "type": "bytes"},
]


class SignatureStrategy(Enum):
    # the account checks ecrecover(userOpHash) directly
    RAW_HASH = "raw_hash"
    # eip-191 prefixed userOpHash, as the v0.7 SimpleAccount expects
    PERSONAL_MESSAGE = "personal_message"
    # eip-712 PackedUserOperation under the ERC4337 domain
    TYPED_DATA = "typed_data"

    def __str__(self):
        return self.value


class AuthorizationTupleOrder(Enum):
    CANONICAL = "canonical"  # [chainId, address, nonce, yParity, r, s]
    ALTERNATE = "alternate"  # [chainId, address, nonce, r, s, yParity]

    def __str__(self):
        return self.value


def build_user_operation_typed_data(
    user_operation: UserOperationDraft,
    chain_id: int,
    verifying_contract: str,
) -> dict[str, Any]:
    packed = user_operation.to_packed()
    delegate = (
        None if user_operation.eip7702_auth is None
        else user_operation.eip7702_auth.address
    )
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_TYPE,
            "PackedUserOperation": PACKED_USER_OPERATION_TYPE,
        },
        "primaryType": "PackedUserOperation",
        "domain": {
            "name": DOMAIN_NAME,
            "version": DOMAIN_VERSION,
            "chainId": chain_id,
            "verifyingContract": verify_and_get_address(
                "verifyingContract", verifying_contract),
        },
        "message": {
            "sender": packed.sender,
            "nonce": packed.nonce,
            "initCode": init_code_for_hashing(packed.init_code, delegate),
            "callData": packed.call_data,
            "accountGasLimits": packed.account_gas_limits,
            "preVerificationGas": packed.pre_verification_gas,
            "gasFees": packed.gas_fees,
            "paymasterAndData": packed.paymaster_and_data,
        },
    }


def to_personal_message_hash(message_hash: bytes) -> bytes:
    return keccak(b"\x19Ethereum Signed Message:\n32" + message_hash)


class SignatureEngine:
    signer: Signer
    strategy: SignatureStrategy

    def __init__(self, signer: Signer, strategy: SignatureStrategy) -> None:
        self.signer = signer
        self.strategy = strategy

    async def sign_user_operation(
        self,
        user_operation: UserOperationDraft,
        owner: str,
        entrypoint: str,
        chain_id: int,
        verifying_contract: str | None = None,
    ) -> UserOperationDraft:
        """
        Returns a signed copy of user_operation. verifying_contract overrides
        the typed data domain and is only accepted by the TYPED_DATA strategy.
        """
        if (
            verifying_contract is not None and
            self.strategy != SignatureStrategy.TYPED_DATA
        ):
            raise InputValidationException(
                InputExceptionCode.SignatureStrategyMismatch,
                "verifyingContract can only be overridden for typed data "
                f"signatures, strategy is {self.strategy}",
            )
        owner_address = verify_and_get_address("owner", owner)
        if self.strategy == SignatureStrategy.TYPED_DATA:
            typed_data = build_user_operation_typed_data(
                user_operation,
                chain_id,
                entrypoint if verifying_contract is None else verifying_contract,
            )
            signature = await self.signer.sign_typed_data(
                owner_address, typed_data)
        else:
            user_operation_hash = get_user_operation_hash(
                user_operation, entrypoint, chain_id)
            if self.strategy == SignatureStrategy.PERSONAL_MESSAGE:
                user_operation_hash = to_personal_message_hash(
                    user_operation_hash)
            signature = await self.signer.sign_hash(
                owner_address, user_operation_hash)
        logging.debug(
            f"Signed userOperation of {user_operation.sender} with {self.strategy}"
        )
        return user_operation.with_signature(signature)


async def sign_authorization(
    signer: Signer,
    address: str,
    delegate: str,
    chain_id: int,
    nonce: int,
) -> Eip7702Authorization:
    """
    Sign an EIP-7702 authorization delegating address to delegate. The
    signature is checked to recover to address before it is returned.
    """
    if not isinstance(nonce, int) or nonce < 0:
        raise InputValidationException(
            InputExceptionCode.InvalidNonce, f"Invalid nonce : {nonce}")
    signer_address = verify_and_get_address("address", address)
    authorization = await signer.sign_authorization(
        signer_address, chain_id, delegate, nonce)
    if recover_authorization_address(authorization) != signer_address:
        raise InputValidationException(
            InputExceptionCode.InvalidSignature,
            f"Authorization does not recover to {signer_address}",
        )
    return authorization


def recover_authorization_address(authorization: Eip7702Authorization) -> Address:
    authorization_hash = create_authorization_hash(
        authorization.chain_id, authorization.address, authorization.nonce)
    signature = KeyAPI.Signature(
        vrs=(authorization.y_parity, authorization.r, authorization.s))
    return Address(
        signature.recover_public_key_from_msg_hash(
            authorization_hash).to_checksum_address()
    )


def recover_hash_signer(message_hash: bytes, signature: bytes) -> Address:
    r, s, y_parity = split_signature(signature)
    return Address(
        KeyAPI.Signature(vrs=(y_parity, r, s))
        .recover_public_key_from_msg_hash(message_hash)
        .to_checksum_address()
    )


def serialize_authorization(
    authorization: Eip7702Authorization,
    order: AuthorizationTupleOrder = AuthorizationTupleOrder.CANONICAL,
) -> list[str]:
    head = [
        hex(authorization.chain_id),
        to_checksum_address(authorization.address),
        hex(authorization.nonce),
    ]
    if order == AuthorizationTupleOrder.CANONICAL:
        return head + [
            hex(authorization.y_parity),
            hex(authorization.r),
            hex(authorization.s),
        ]
    return head + [
        hex(authorization.r),
        hex(authorization.s),
        hex(authorization.y_parity),
    ]
