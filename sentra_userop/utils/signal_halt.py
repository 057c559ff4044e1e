import logging
from asyncio.events import AbstractEventLoop
from signal import Signals

from sentra_userop.utils.cancellation import CancellationToken


class SignalHaltError(SystemExit):
    """Raised from a signal handler; the exit code is the signal number."""

    def __init__(self, signal_enum: Signals, cancelled: bool = False):
        self.signal_enum = signal_enum
        self.cancelled = cancelled
        super().__init__(self.exit_code)

    @property
    def exit_code(self) -> int:
        return self.signal_enum.value

    def __repr__(self) -> str:
        if self.cancelled:
            return f"Cancelled pending requests on {self.signal_enum.name}"
        return f"Exited due to {self.signal_enum.name}"


def immediate_exit(
    signal_enum: Signals,
    loop: AbstractEventLoop,
    cancellation: CancellationToken,
) -> None:
    # responses arriving after this point are discarded
    cancelled = not cancellation.cancelled
    cancellation.cancel()
    loop.stop()
    halt = SignalHaltError(signal_enum, cancelled)
    logging.warning(repr(halt))
    raise halt
