import os
import re
import sys
import logging
from abc import ABCMeta, abstractmethod
from dataclasses import dataclass
from typing import Optional

from ..support.cancel import CancelToken
from .errors import Reason, InvalidWorkingDirectory, ToolNotFound, ToolAbort, UserCancelled
from .listener import OutputListener
from .launcher import CommandLauncher, LaunchCancelled
from .delay import InvocationDelayGate, parse_delay
from .cache import MetadataCache
from .config import ATTR_USB_DELAY


__all__ = ["InvocationRequest", "InvocationResult", "Tool", "ToolInvoker"]


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InvocationRequest:
    command: str
    arguments: tuple[str, ...]
    cwd: Optional[str] = None
    echo: bool = False


@dataclass(frozen=True)
class InvocationResult:
    lines: tuple[str, ...]
    #: ``None`` if the tool was stopped before it exited on its own.
    exit_code: Optional[int]
    abort_reason: Optional[Reason] = None
    abort_line: Optional[str] = None


class Tool(metaclass=ABCMeta):
    """
    Description of an external command-line tool.

    A subclass exists for every supported tool and carries everything that is specific to it:
    how it is named in the configuration, how to make it identify itself, how to make it list
    the devices it knows, and how to recognize failures in its output.
    """

    #: Stable identifier, used as the prefix of configuration attributes.
    id = None
    #: Human-readable name.
    name = None
    #: Executable name used if neither the configuration nor the environment name one.
    default_command = None
    default_use_console = False

    #: Arguments that make the tool print a banner with its version.
    version_arguments = ("--version",)
    #: Pattern matched against whole output lines; group 1 is the version number.
    version_pattern = None
    #: Arguments that make the tool list the devices it supports.
    device_arguments = ()
    #: Pattern matched against whole output lines; group 1 is a device identifier.
    device_pattern = None

    @property
    def attr_command(self):
        return f"{self.id}.command"

    @property
    def attr_use_console(self):
        return f"{self.id}.useconsole"

    @property
    def env_var_name(self):
        """Name of environment variable consulted for the command if it is not configured."""
        return self.default_command.upper().replace("-", "_")

    def defaults(self):
        """Configuration attributes of the tool that apply when nothing else is configured."""
        return {
            self.attr_command:     os.environ.get(self.env_var_name) or self.default_command,
            self.attr_use_console: "true" if self.default_use_console else "false",
        }

    def command(self, config):
        """Command used to run the tool.

        Either just the name of the executable (e.g. ``avrdude``), or a path to it (e.g.
        ``/usr/bin/avrdude``). It is used verbatim, without resolving it any further. An empty
        configured command counts as not configured.
        """
        return config.get_attribute(self.attr_command) or self.defaults()[self.attr_command]

    def use_console(self, config):
        config = config.with_defaults(self.defaults())
        return config.get_boolean_attribute(self.attr_use_console)

    @abstractmethod
    def create_listener(self) -> OutputListener:
        raise NotImplementedError

    def parse_version(self, lines):
        """Extract the version number from the output of the tool, or ``None`` if not found."""
        for line in lines:
            if matches := re.fullmatch(self.version_pattern, line):
                return matches[1]
        return None

    def parse_devices(self, lines):
        """Extract the set of supported device identifiers from the output of the tool."""
        devices = set()
        for line in lines:
            if matches := re.fullmatch(self.device_pattern, line):
                devices.add(matches[1])
        return devices

    def __repr__(self):
        return f"<{self.__class__.__module__}.{self.__class__.__name__} {self.id}>"


class ToolInvoker:
    """
    Runs a :class:`Tool`.

    One invoker should exist per tool for the lifetime of the program, since it tracks when the
    tool last finished running (to honor the invocation delay) and caches the results of the
    version and device queries. Invocations through the same invoker must not overlap.
    """

    def __init__(self, tool):
        self.tool  = tool
        self.gate  = InvocationDelayGate(tool.name)
        self.cache = MetadataCache()

    async def run_result(self, config, arguments=(), *, cancel=None, force_echo=False,
                         echo=None, cwd=None):
        """
        Run the tool once with ``arguments`` and return an :class:`InvocationResult`.

        The output is copied to ``echo`` if given, otherwise to standard output if the
        configuration asks for it or if ``force_echo`` is set. Raises :exc:`ToolAbort` if the
        output listener of the tool recognized a failure (regardless of the exit code; the
        exception carries the result with the abort reason and line filled in),
        :exc:`UserCancelled` if ``cancel`` was raised during the invocation delay or while the
        tool was running, :exc:`ToolNotFound` if the tool could not be started,
        :exc:`InvalidWorkingDirectory` if ``cwd`` is not a directory, and
        :exc:`ConfigurationError` if the invocation delay is malformed.
        """
        if cwd is not None:
            cwd = os.fspath(cwd)
            if not cwd or not os.path.isdir(cwd):
                raise InvalidWorkingDirectory(f"{cwd!r} is not a directory")

        config  = config.with_defaults(self.tool.defaults())
        command = self.tool.command(config)
        if echo is None and (force_echo or self.tool.use_console(config)):
            echo = sys.stdout
        delay = parse_delay(config.get_attribute(ATTR_USB_DELAY))

        request = InvocationRequest(command, tuple(str(arg) for arg in arguments), cwd,
                                    echo=echo is not None)
        logger.debug("%s: invoking %r", self.tool.name, request)

        listener = self.tool.create_listener()
        launcher = CommandLauncher(request.command, request.arguments, cwd=request.cwd,
                                   name=self.tool.name)
        launcher.set_listener(listener)
        launcher.set_echo(echo)

        # The listener may raise this token to stop the tool; the caller's token stays as is.
        invocation_cancel = CancelToken(parent=cancel)
        try:
            await self.gate.wait(delay, cancel, echo)

            exit_code = None
            try:
                exit_code = await launcher.launch(invocation_cancel)
            except LaunchCancelled:
                pass
            except OSError as exn:
                raise ToolNotFound(f"cannot run {command!r}: {exn}") from exn

            result = InvocationResult(tuple(launcher.output), exit_code,
                                      listener.abort_reason, listener.abort_line)
            if result.abort_reason is not None:
                raise ToolAbort(result.abort_reason, result.abort_line, result=result)
            if exit_code is None:
                raise UserCancelled(f"{self.tool.name} was stopped")
            if exit_code != 0:
                logger.debug("%s: exit code %d", self.tool.name, exit_code)
            return result
        finally:
            self.gate.mark_finished()

    async def run(self, config, arguments=(), **kwargs):
        """Run the tool once with ``arguments`` and return the list of its output lines.

        See :meth:`run_result` for the keyword arguments and the exceptions raised.
        """
        result = await self.run_result(config, arguments, **kwargs)
        return list(result.lines)

    async def get_version(self, config, *, cancel=None):
        """Name and version of the tool, e.g. ``"AVaRICE 2.8"``.

        If the version cannot be found in the output, ``"<name> ?.?"`` is returned and nothing
        is cached, so the next call tries again.
        """
        command = self.tool.command(config)
        entry = self.cache.get(command)
        if entry is not None and entry.version is not None:
            return entry.version

        lines = await self.run(config, self.tool.version_arguments, cancel=cancel)
        version = self.tool.parse_version(lines)
        if version is None:
            logger.debug("%s: no version found in output of %r", self.tool.name, command)
            return f"{self.tool.name} ?.?"

        name_version = f"{self.tool.name} {version}"
        self.cache.store_version(command, name_version)
        return name_version

    async def get_supported_devices(self, config, *, cancel=None):
        """Identifiers of all devices the tool supports, as a frozen set (possibly empty)."""
        command = self.tool.command(config)
        entry = self.cache.get(command)
        if entry is not None and entry.devices is not None:
            return entry.devices

        lines = await self.run(config, self.tool.device_arguments, cancel=cancel)
        devices = frozenset(self.tool.parse_devices(lines))
        logger.debug("%s: %d supported devices", self.tool.name, len(devices))
        self.cache.store_devices(command, devices)
        return devices
