import os
import shlex
import logging
import asyncio
from asyncio import subprocess

from .listener import StreamSource, NullOutputListener


__all__ = ["LaunchCancelled", "CommandLauncher"]


logger = logging.getLogger(__name__)


class LaunchCancelled(Exception):
    """Raised by :meth:`CommandLauncher.launch` when the tool was stopped via its cancel token."""


_EOF = object()


class CommandLauncher:
    """
    Runner for a single invocation of an external command.

    The output of the command is split into lines, which are (in order) appended to
    :attr:`output`, passed to the output listener, and copied to the echo stream, if any.
    If ``redirect_stderr`` is true, the standard error of the command is merged into its standard
    output by the OS and every line is attributed to :attr:`StreamSource.STDOUT`; otherwise both
    streams are read concurrently and each line is attributed to the stream it came from.

    Lines are handed from the readers to the consumer through a queue with room for a single
    line, so a slow listener holds up reading (and eventually the command itself) rather than
    letting output pile up in memory.
    """

    terminate_timeout = 1.0

    def __init__(self, command, arguments=(), *, cwd=None, redirect_stderr=True, name=None):
        self.command   = str(command)
        self.arguments = [str(argument) for argument in arguments]
        self.cwd       = None if cwd is None else os.fspath(cwd)
        self.name      = os.path.basename(self.command) if name is None else name
        self.output    = []

        self._redirect_stderr = redirect_stderr
        self._listener = NullOutputListener()
        self._echo     = None

    def set_listener(self, listener):
        self._listener = NullOutputListener() if listener is None else listener

    def set_echo(self, stream):
        """Copy every output line to ``stream``, a text stream such as :data:`sys.stdout`."""
        self._echo = stream

    @property
    def command_line(self):
        return shlex.join([self.command, *self.arguments])

    def _write_echo(self, text):
        if self._echo is None:
            return
        try:
            self._echo.write(text)
            self._echo.flush()
        except (OSError, ValueError) as exn:
            # ValueError is what a closed text stream raises.
            logger.debug("%s: cannot write to echo stream: %s", self.name, exn)

    def _deliver(self, raw_line, source):
        line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
        logger.trace("%s: %s", self.name, line)
        self.output.append(line)
        self._listener.handle_line(line, source)
        self._write_echo(line + "\n")

    @staticmethod
    async def _read_line(stream):
        # Lines longer than the stream buffer limit (e.g. `avrdude -U flash:r:-:h`, which prints
        # the entire memory on one line) are gathered chunk by chunk.
        chunks = []
        while True:
            try:
                chunks.append(await stream.readuntil(b"\n"))
                break
            except asyncio.LimitOverrunError as exn:
                chunks.append(await stream.readexactly(exn.consumed))
            except asyncio.IncompleteReadError as exn:
                chunks.append(exn.partial)
                break
        return b"".join(chunks)

    @classmethod
    async def _read_stream(cls, stream, source, queue):
        try:
            while raw_line := await cls._read_line(stream):
                await queue.put((raw_line, source))
        except OSError as exn:
            await queue.put((exn, source))
        else:
            await queue.put((_EOF, source))

    async def _next_or_cancel(self, awaitable, cancel_task):
        task = asyncio.ensure_future(awaitable)
        if cancel_task is None:
            return await task
        done, _ = await asyncio.wait({task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        if task in done:
            return task.result()
        task.cancel()
        raise LaunchCancelled

    async def _terminate(self, process):
        if process.returncode is not None:
            return
        logger.debug("%s: terminating process %d", self.name, process.pid)
        try:
            process.terminate()
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(process.wait(), self.terminate_timeout)
        except asyncio.TimeoutError:
            logger.debug("%s: process %d did not terminate, killing", self.name, process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

    async def launch(self, cancel=None):
        """
        Run the command to completion and return its exit code.

        Raises :exc:`OSError` if the command could not be started at all, and
        :exc:`LaunchCancelled` if ``cancel`` was raised while the command was running, in which
        case the command is terminated first.
        """
        self.output = []
        self._listener.init(cancel)
        if cancel is not None and cancel.cancelled:
            raise LaunchCancelled

        logger.debug("%s: running %s", self.name, self.command_line)
        if self.cwd is not None:
            logger.trace("%s: working directory %r", self.name, self.cwd)
        process = await subprocess.create_subprocess_exec(
            self.command, *self.arguments, cwd=self.cwd,
            stdin=subprocess.DEVNULL, stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT if self._redirect_stderr else subprocess.PIPE)

        queue = asyncio.Queue(maxsize=1)
        readers = [asyncio.create_task(
            self._read_stream(process.stdout, StreamSource.STDOUT, queue))]
        if not self._redirect_stderr:
            readers.append(asyncio.create_task(
                self._read_stream(process.stderr, StreamSource.STDERR, queue)))
        cancel_task = None
        if cancel is not None:
            cancel_task = asyncio.create_task(cancel.wait())

        try:
            open_streams = len(readers)
            while open_streams:
                raw_line, source = await self._next_or_cancel(queue.get(), cancel_task)
                if raw_line is _EOF:
                    open_streams -= 1
                    continue
                if isinstance(raw_line, Exception):
                    raise raw_line
                self._deliver(raw_line, source)
                if cancel is not None and cancel.cancelled:
                    raise LaunchCancelled

            returncode = await self._next_or_cancel(process.wait(), cancel_task)
            logger.debug("%s: exited with code %d", self.name, returncode)
            return returncode

        except LaunchCancelled:
            logger.debug("%s: cancelled", self.name)
            raise

        finally:
            await self._terminate(process)
            for task in (*readers, cancel_task):
                if task is not None and not task.done():
                    task.cancel()
            await asyncio.gather(*readers, return_exceptions=True)
            if cancel_task is not None:
                await asyncio.gather(cancel_task, return_exceptions=True)
