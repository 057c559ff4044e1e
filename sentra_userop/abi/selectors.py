import re
from dataclasses import dataclass

from eth_utils import keccak

from sentra_userop.exceptions import \
    InputExceptionCode, InputValidationException
from sentra_userop.typing import Selector

SELECTOR_PATTERN = "^0x[0-9a-fA-F]{8}$"
SIGNATURE_PATTERN = r"^[A-Za-z_$][A-Za-z0-9_$]*\(.*\)$"


@dataclass(frozen=True)
class SelectorEntry:
    selector: Selector
    signature: str | None = None


def is_selector(value: str) -> bool:
    return isinstance(value, str) and re.match(SELECTOR_PATTERN, value) is not None


def selector_of(signature: str) -> Selector:
    """
    Return the 4-byte selector of a human readable function signature.

    A value that already is a 4-byte hex selector is returned unchanged.
    """
    if not isinstance(signature, str) or signature.strip() == "":
        raise InputValidationException(
            InputExceptionCode.InvalidSignature,
            "Empty function signature",
        )
    if is_selector(signature):
        return Selector(signature)
    canonical = "".join(signature.split())
    return Selector("0x" + keccak(text=canonical)[:4].hex())


def selector_bytes(signature: str) -> bytes:
    return bytes.fromhex(selector_of(signature)[2:])


def parse_selector_list(csv: str) -> list[SelectorEntry]:
    if "\n" in csv:
        raise InputValidationException(
            InputExceptionCode.InvalidSelectorInput,
            "Use commas to separate function signatures",
        )

    entries = []
    for chunk in _split_signatures(csv):
        if chunk.startswith("0x"):
            if not is_selector(chunk):
                raise InputValidationException(
                    InputExceptionCode.InvalidSelectorInput,
                    f"Invalid selector : {chunk}",
                )
            entries.append(SelectorEntry(selector=Selector(chunk)))
        elif re.match(SIGNATURE_PATTERN, chunk) is not None:
            entries.append(
                SelectorEntry(selector=selector_of(chunk), signature=chunk)
            )
        else:
            raise InputValidationException(
                InputExceptionCode.InvalidSelectorInput,
                f"Invalid function signature : {chunk}",
            )
    return entries


def _split_signatures(csv: str) -> list[str]:
    # commas inside parentheses belong to the parameter list
    parts = []
    current = ""
    depth = 0
    for char in csv:
        if char == "," and depth == 0:
            trimmed = current.strip()
            if trimmed:
                parts.append(trimmed)
            current = ""
            continue
        current += char
        if char == "(":
            depth += 1
        elif char == ")" and depth > 0:
            depth -= 1

    trimmed = current.strip()
    if trimmed:
        parts.append(trimmed)
    return parts
