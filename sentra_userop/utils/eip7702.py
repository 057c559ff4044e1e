# https://github.com/ethereum/EIPs/blob/master/EIPS/eip-7702.md
# rlp([chain_id, nonce, max_priority_fee_per_gas, max_fee_per_gas,
#   gas_limit, destination, value, data, access_list, authorization_list,
#   signature_y_parity, signature_r, signature_s]
# )
# authorization hash = keccak(MAGIC || rlp([chain_id, address, nonce]))

from rlp import encode as rlp_encode
from eth_utils import keccak

from sentra_userop.exceptions import \
    InputExceptionCode, InputValidationException

SET_CODE_TX_TYPE = "04"
AUTHORIZATION_MAGIC = "05"


def create_authorization_hash(chain_id: int, address: str, nonce: int) -> bytes:
    rlp_encoded_authorization = rlp_encode(
        format_hex_array_for_rlp_encode([hex(chain_id), address, hex(nonce)])
    ).hex()
    return keccak(
        bytes.fromhex(AUTHORIZATION_MAGIC + rlp_encoded_authorization)
    )


def _unsigned_transaction_fields(
    chain_id_hex: str,
    nonce_hex: str,
    max_priority_fee_per_gas_hex: str,
    max_fee_per_gas_hex: str,
    gas_limit_hex: str,
    destination: str,
    value_hex: str,
    data: str,
    authorization_list: list[list[str]],
) -> list[bytes | list[bytes]]:
    return format_hex_array_for_rlp_encode(
        [
            chain_id_hex,
            nonce_hex,
            max_priority_fee_per_gas_hex,
            max_fee_per_gas_hex,
            gas_limit_hex,
            destination,
            value_hex,
            data,
            [],  # access list
            format_auth_list(authorization_list),
        ]
    )


def create_eip7702_transaction_hash(*transaction_fields) -> bytes:
    """Signing hash of a type 4 transaction, fields as hex strings."""
    rlp_encoded_transaction = rlp_encode(
        _unsigned_transaction_fields(*transaction_fields))
    return keccak(bytes.fromhex(SET_CODE_TX_TYPE) + rlp_encoded_transaction)


def encode_signed_eip7702_transaction(*transaction_fields, signature: bytes) -> str:
    r, s, y_parity = split_signature(signature)
    signed_fields = _unsigned_transaction_fields(*transaction_fields)
    signed_fields += format_hex_array_for_rlp_encode(
        [hex(y_parity), hex(r), hex(s)])
    return "0x" + SET_CODE_TX_TYPE + rlp_encode(signed_fields).hex()


def split_signature(signature: bytes) -> tuple[int, int, int]:
    """Split a 65 bytes r || s || v signature into (r, s, y_parity)."""
    if len(signature) != 65:
        raise InputValidationException(
            InputExceptionCode.InvalidSignature,
            f"Expected a 65 bytes signature, got {len(signature)} bytes",
        )
    r = int.from_bytes(signature[:32])
    s = int.from_bytes(signature[32:64])
    v = signature[64]
    if v in (27, 28):
        return r, s, v - 27
    elif v in (0, 1):
        return r, s, v
    raise InputValidationException(
        InputExceptionCode.InvalidSignature,
        f"Unsupported signature v value {v}",
    )


def format_auth_list(authorization_list: list[list[str]]) -> list[bytes]:
    formated_auth_list = []
    for authorization in authorization_list:
        formated_auth_list.append(
            format_hex_array_for_rlp_encode(authorization)
        )
    return formated_auth_list


def format_hex_array_for_rlp_encode(
    values: list[str | list[bytes]]
) -> list[bytes | list[bytes]]:
    bytes_array = []
    for value in values:
        if isinstance(value, str):
            hex_value = value[2:]
            if hex_value == "0":
                hex_value = ""
            hex_value = hex_value if len(hex_value) % 2 == 0 else "0" + hex_value
            bytes_array.append(bytes.fromhex(hex_value))
        else:  # previously formated list
            bytes_array.append(value)
    return bytes_array
