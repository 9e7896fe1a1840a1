"""Cooperative cancellation flag shared between the interrupt handler and the loops."""


class CancellationToken:
    """Set-once boolean read at loop boundaries.

    There is a single writer (the interrupt handler installed by ``connlog.main``)
    and any number of readers. Reads and the write are plain attribute accesses,
    so setting the token from a signal handler can never block.
    """

    __slots__ = ("_cancelled",)

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled})"
