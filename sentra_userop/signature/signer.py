from abc import ABC, abstractmethod
from typing import Any

from eth_account import Account
from eth_account.messages import encode_typed_data

from sentra_userop.exceptions import \
    InputExceptionCode, InputValidationException
from sentra_userop.typing import Address
from sentra_userop.user_operation.models import Eip7702Authorization
from sentra_userop.user_operation.user_operation import verify_and_get_address
from sentra_userop.utils.eip7702 import create_authorization_hash


class Signer(ABC):
    """
    Signing capability of a wallet or key holder. Signatures are returned
    as 65 bytes r || s || v.
    """

    @abstractmethod
    async def sign_hash(self, address: str, message_hash: bytes) -> bytes:
        pass

    @abstractmethod
    async def sign_typed_data(
        self, address: str, typed_data: dict[str, Any]
    ) -> bytes:
        pass

    @abstractmethod
    async def sign_authorization(
        self, address: str, chain_id: int, delegate: str, nonce: int
    ) -> Eip7702Authorization:
        pass


class LocalKeySigner(Signer):
    """Holds a single private key, for tooling and tests."""

    def __init__(self, private_key: str) -> None:
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> Address:
        return Address(self._account.address)

    def _verify_address(self, address: str) -> None:
        if verify_and_get_address("address", address) != self._account.address:
            raise InputValidationException(
                InputExceptionCode.InvalidAddress,
                f"Signer does not hold the key of {address}",
            )

    async def sign_hash(self, address: str, message_hash: bytes) -> bytes:
        self._verify_address(address)
        signed_message = self._account.unsafe_sign_hash(message_hash)
        return bytes(signed_message.signature)

    async def sign_typed_data(
        self, address: str, typed_data: dict[str, Any]
    ) -> bytes:
        self._verify_address(address)
        signable_message = encode_typed_data(full_message=typed_data)
        signed_message = self._account.sign_message(signable_message)
        return bytes(signed_message.signature)

    async def sign_authorization(
        self, address: str, chain_id: int, delegate: str, nonce: int
    ) -> Eip7702Authorization:
        self._verify_address(address)
        delegate_address = verify_and_get_address("delegate", delegate)
        authorization_hash = create_authorization_hash(
            chain_id, delegate_address, nonce)
        signature = self._account.unsafe_sign_hash(authorization_hash)
        # not sure how to calculate y parity if v is not equal to 27 or 28
        assert (signature.v == 27 or signature.v == 28)
        return Eip7702Authorization(
            chain_id=chain_id,
            address=delegate_address,
            nonce=nonce,
            y_parity=signature.v - 27,
            r=signature.r,
            s=signature.s,
        )
