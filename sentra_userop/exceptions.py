from dataclasses import dataclass
from enum import Enum
from typing import Any


class InputExceptionCode(Enum):
    InvalidFields = -32602
    InvalidAddress = -32610
    MissingSender = -32611
    InvalidTarget = -32612
    InvalidSignature = -32613
    InvalidSelectorInput = -32614
    GasValueOverflow = -32615
    InvalidNonce = -32616
    InvalidSalt = -32617
    InvalidPercentage = -32618
    SignatureStrategyMismatch = -32619


@dataclass
class InputValidationException(Exception):
    exception_code: InputExceptionCode
    message: str


class SponsorshipExceptionCode(Enum):
    Unauthorized = 401
    NotConfigured = 404
    Rejected = -32500
    InvalidResponse = -32603


@dataclass
class SponsorshipException(Exception):
    exception_code: SponsorshipExceptionCode
    message: str

    @property
    def is_recoverable_by_allowlisting(self) -> bool:
        return self.exception_code == SponsorshipExceptionCode.NotConfigured


class EstimationExceptionCode(Enum):
    Reverted = -32521
    InvalidResponse = -32603


@dataclass
class EstimationException(Exception):
    exception_code: EstimationExceptionCode
    message: str


class SimulationExceptionCode(Enum):
    RemoteError = -32000
    InvalidResponse = -32603


@dataclass
class SimulationException(Exception):
    exception_code: SimulationExceptionCode
    message: str


class SubmissionExceptionCode(Enum):
    Rejected = -32500
    InvalidResponse = -32603


@dataclass
class SubmissionException(Exception):
    exception_code: SubmissionExceptionCode
    message: str


class NetworkExceptionCode(Enum):
    Timeout = 1
    Transport = 2
    HttpStatus = 3


@dataclass
class NetworkException(Exception):
    exception_code: NetworkExceptionCode
    message: str
    status: int | None = None

    @property
    def is_timeout(self) -> bool:
        return self.exception_code == NetworkExceptionCode.Timeout


@dataclass
class ReceiptTimeoutException(Exception):
    hash: str
    timeout: float

    @property
    def message(self) -> str:
        return f"No receipt for {self.hash} after {self.timeout}s"


@dataclass
class OperationCancelledException(Exception):
    message: str


@dataclass
class AllowlistException(Exception):
    status: int
    message: str


@dataclass
class EthClientException(Exception):
    exception_code: int | None
    message: str
    data: Any = None
