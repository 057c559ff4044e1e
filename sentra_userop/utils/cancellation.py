from sentra_userop.exceptions import OperationCancelledException


class CancellationToken:
    """
    Caller owned "stale" flag passed through every network call of one
    operation attempt. Once cancelled, a late response is discarded.
    """

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise OperationCancelledException("Operation was cancelled")
