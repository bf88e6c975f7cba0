import time
import logging
import asyncio

from .errors import ConfigurationError, UserCancelled


__all__ = ["parse_delay", "InvocationDelayGate"]


logger = logging.getLogger(__name__)


def parse_delay(value):
    """
    Parse an invocation delay in milliseconds.

    ``None`` and the empty string mean "no delay". Decimal, ``0x`` hexadecimal and ``0o`` octal
    integers are accepted; anything else raises :exc:`ConfigurationError`.
    """
    if value is None:
        return 0
    value = str(value).strip()
    if not value:
        return 0
    try:
        # Leading zeros do not make a delay octal ("010" is ten), and `#` is not a hex prefix.
        delay = int(value, 10) if value.isdigit() else int(value, 0)
    except ValueError:
        raise ConfigurationError(f"invocation delay {value!r} is not an integer") from None
    if delay < 0:
        raise ConfigurationError(f"invocation delay {value!r} is negative")
    return delay


class InvocationDelayGate:
    """
    Enforces a minimum quiet time between the end of one invocation of a tool and the start of
    the next one.

    Some USB programmers are unreliable when they are reopened too soon after being closed. The
    gate remembers when the previous invocation finished (see :meth:`mark_finished`) and
    :meth:`wait` holds the next one back until the configured delay has passed.
    """

    poll_interval = 0.010

    def __init__(self, name):
        self.name = name
        self.last_finish = None

    def mark_finished(self):
        self.last_finish = time.monotonic()

    def remaining(self, delay_ms):
        """Time left until an invocation may start, in seconds; zero or negative if none."""
        if not delay_ms or self.last_finish is None:
            return 0.0
        return self.last_finish + delay_ms / 1000 - time.monotonic()

    @staticmethod
    def _write_echo(echo, text):
        if echo is None:
            return
        try:
            echo.write(text)
            echo.flush()
        except (OSError, ValueError) as exn:
            logger.debug("cannot write to echo stream: %s", exn)

    async def wait(self, delay_ms, cancel=None, echo=None):
        remaining = self.remaining(delay_ms)
        if remaining <= 0:
            return

        deadline = time.monotonic() + remaining
        logger.debug("%s: invocation delay of %d ms", self.name, round(remaining * 1000))
        self._write_echo(echo, f"\n>>> {self.name} invocation delay: "
                               f"{round(remaining * 1000)} milliseconds\n")
        while (now := time.monotonic()) < deadline:
            if cancel is not None and cancel.cancelled:
                logger.debug("%s: invocation delay cancelled", self.name)
                self._write_echo(echo, f">>> {self.name} invocation delay: cancelled\n")
                raise UserCancelled("cancelled during invocation delay")
            await asyncio.sleep(min(self.poll_interval, deadline - now))
        self._write_echo(echo, f">>> {self.name} invocation delay: finished\n")
