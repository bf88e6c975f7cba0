import signal
import asyncio
import threading
import contextlib


__all__ = ["CancelToken", "cancel_on_signal"]


class CancelToken:
    """
    A cooperative cancellation flag.

    The flag may be raised from any thread (or from a signal handler); everything that runs on
    behalf of a tool invocation polls it at its own suspension points and winds down on its own.

    A token created with a ``parent`` is also considered cancelled once the parent is, but
    cancelling it does not affect the parent. This is used to give each invocation a token that
    the output listener may raise without cancelling the caller's token along with it.
    """

    __slots__ = ["_event", "_parent"]

    def __init__(self, parent=None):
        self._event  = threading.Event()
        self._parent = parent

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self):
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    async def wait(self, poll_interval=0.010):
        while not self.cancelled:
            await asyncio.sleep(poll_interval)

    def __repr__(self):
        return f"<CancelToken {'cancelled' if self.cancelled else 'active'}>"


@contextlib.contextmanager
def cancel_on_signal(token, signum=signal.SIGINT):
    """Cancel ``token`` when ``signum`` is delivered, for the duration of the ``with`` block.

    The previous handler is restored once the signal fires or the block exits, so a second
    Ctrl+C behaves as it normally would.
    """
    def handler(signum, frame):
        token.cancel()
        signal.signal(signum, old_handler)
    old_handler = signal.signal(signum, handler)
    try:
        yield token
    finally:
        signal.signal(signum, old_handler)
