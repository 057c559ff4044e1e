import pytest
from eth_abi import encode

from sentra_userop.abi.calls import (Approve, Execute, ExecuteBatch,
                                     HandleOps, SafeMint, decode_call,
                                     encode_call)
from sentra_userop.abi.decode import (ERROR_STRING_SELECTOR,
                                      FAILED_OP_SELECTOR, decode_revert_reason)
from sentra_userop.abi.selectors import (parse_selector_list, selector_bytes,
                                         selector_of)
from sentra_userop.exceptions import InputExceptionCode, InputValidationException

from conftest import BENEFICIARY, NFT_CONTRACT, PAYMASTER


def test_selector_of_known_signatures():
    assert selector_of("transfer(address,uint256)") == "0xa9059cbb"
    assert selector_of("approve(address,uint256)") == "0x095ea7b3"
    assert selector_of("Error(string)") == ERROR_STRING_SELECTOR
    assert selector_bytes("approve(address,uint256)") == bytes.fromhex("095ea7b3")


def test_selector_of_ignores_whitespace():
    assert selector_of(" transfer(address, uint256) ") == "0xa9059cbb"


def test_selector_of_passes_literal_selector_through():
    assert selector_of("0xa9059cbb") == "0xa9059cbb"


def test_selector_of_empty_signature():
    with pytest.raises(InputValidationException) as excinfo:
        selector_of("  ")
    assert excinfo.value.exception_code == InputExceptionCode.InvalidSignature


def test_parse_selector_list():
    entries = parse_selector_list(
        "transfer(address,uint256), 0x095ea7b3,,"
        "swap((address,uint256),bytes)"
    )

    assert [entry.selector for entry in entries][:2] == [
        "0xa9059cbb", "0x095ea7b3"]
    assert entries[0].signature == "transfer(address,uint256)"
    assert entries[1].signature is None
    assert entries[2].signature == "swap((address,uint256),bytes)"
    assert entries[2].selector == selector_of("swap((address,uint256),bytes)")
    assert len(entries) == 3


def test_parse_selector_list_is_deterministic():
    csv = "safeMint(address,string),approve(address,uint256)"
    assert parse_selector_list(csv) == parse_selector_list(csv)


@pytest.mark.parametrize("csv", [
    "transfer(address,uint256)\napprove(address,uint256)",
    "0x1234",
    "0xzzzzzzzz",
    "not a signature",
])
def test_parse_selector_list_rejects_malformed_input(csv):
    with pytest.raises(InputValidationException) as excinfo:
        parse_selector_list(csv)
    assert excinfo.value.exception_code == InputExceptionCode.InvalidSelectorInput


def test_encode_call_uses_canonical_selectors():
    approve = encode_call(Approve(PAYMASTER, 10))
    assert approve[:4].hex() == "095ea7b3"
    assert len(approve) == 4 + 32 * 2

    execute = encode_call(Execute(NFT_CONTRACT, 0, b"\x01\x02"))
    assert execute[:4].hex() == "b61d27f6"

    handle_ops = encode_call(HandleOps([], BENEFICIARY))
    assert handle_ops[:4].hex() == "765e827f"


def test_decode_call_reverses_encode_call():
    calls = [
        SafeMint(NFT_CONTRACT, "ipfs://token"),
        Execute(NFT_CONTRACT, 5, b"\xde\xad"),
        ExecuteBatch([NFT_CONTRACT, PAYMASTER], [0, 1], [b"", b"\x01"]),
    ]
    for call in calls:
        assert decode_call(encode_call(call)) == call


def test_decode_call_unknown_selector():
    with pytest.raises(InputValidationException) as excinfo:
        decode_call(bytes.fromhex("ffffffff"))
    assert excinfo.value.exception_code == InputExceptionCode.InvalidSelectorInput


def test_decode_call_truncated_arguments():
    call_data = encode_call(Approve(PAYMASTER, 10))[:-1]

    with pytest.raises(InputValidationException) as excinfo:
        decode_call(call_data)
    assert excinfo.value.exception_code == InputExceptionCode.InvalidFields


def test_decode_revert_reason():
    failed_op = FAILED_OP_SELECTOR + encode(
        ["uint256", "string"], [0, "AA24 signature error"]).hex()
    assert decode_revert_reason(failed_op) == "AA24 signature error"

    error_string = ERROR_STRING_SELECTOR + encode(
        ["string"], ["Ownable: caller is not the owner"]).hex()
    assert decode_revert_reason(error_string) == "Ownable: caller is not the owner"

    assert decode_revert_reason("0x") is None
    assert decode_revert_reason("0x12345678") is None
    assert decode_revert_reason(FAILED_OP_SELECTOR + "00") is None


def test_failed_op_selector():
    assert selector_of("FailedOp(uint256,string)") == FAILED_OP_SELECTOR
