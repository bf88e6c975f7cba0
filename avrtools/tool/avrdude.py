"""
AVRDude is the most widely used programmer software for AVR microcontrollers. Besides flash and
EEPROM it reads and writes the fuse and lock bytes, which is what this module uses it for.

``avrdude -v`` prints a banner such as::

    avrdude: Version 6.3, compiled on Feb 17 2016 at 09:25:53

and ``avrdude -p ?`` lists the supported parts, one per line::

    Valid parts are:
      m328p    = ATmega328P
      t85      = ATtiny85
"""

import re
import logging

from .errors import Reason, ToolError
from .listener import PatternOutputListener
from .invoker import Tool, ToolInvoker


__all__ = ["AvrdudeOutputListener", "AvrdudeTool", "AvrdudeInvoker", "fuse_memories"]


logger = logging.getLogger(__name__)


class AvrdudeOutputListener(PatternOutputListener):
    patterns = (
        (r"not in sync",                                Reason.SYNC_FAIL),
        (r"can't open device",                          Reason.PORT_BLOCKED),
        (r"initialization failed",                      Reason.INIT_FAIL),
        (r"did not find any (?:USB )?device",           Reason.NO_USB),
        (r"target doesn't answer",                      Reason.NO_TARGET_POWER),
        (r"programmer is not responding",               Reason.INVALID_PROGRAMMER),
        (r"AVR [Pp]art \"[^\"]*\" not found",           Reason.UNKNOWN_MCU),
        (r"[Cc]an't find programmer id",                Reason.UNKNOWN_PROGRAMMER),
        (r"can't open config file",                     Reason.CONFIG_NOT_FOUND),
        (r"[Tt]imeout",                                 Reason.TIMEOUT),
    )


def fuse_memories(count):
    """Names of the AVRDude memories holding the fuse bytes of a device with ``count`` fuses."""
    if count == 1:
        return ["fuse"]
    if not 1 < count <= 3:
        raise ValueError(f"device cannot have {count} fuse bytes")
    return ["lfuse", "hfuse", "efuse"][:count]


class AvrdudeTool(Tool):
    id   = "avreclipse.avrdude"
    name = "AVRDude"
    default_command = "avrdude"

    version_arguments = ("-v",)
    version_pattern   = r".*[Vv]ersion\s+([\w\.\-]+).*"
    device_arguments  = ("-p", "?")
    device_pattern    = r"\s*(\S+)\s*=\s*\S.*"
    programmer_arguments = ("-c", "?")

    def create_listener(self):
        return AvrdudeOutputListener()

    def parse_programmers(self, lines):
        # `-c ?` uses the same `id = description` layout as `-p ?`
        return self.parse_devices(lines)


class AvrdudeInvoker(ToolInvoker):
    """
    Invoker for AVRDude that also knows how to read and write fuse and lock bytes.

    ``mcu`` and ``programmer`` are AVRDude part and programmer identifiers, e.g. ``m328p`` and
    ``usbasp``.
    """

    def __init__(self, tool=None):
        super().__init__(AvrdudeTool() if tool is None else tool)

    async def get_programmers(self, config, *, cancel=None):
        lines = await self.run(config, self.tool.programmer_arguments, cancel=cancel)
        return frozenset(self.tool.parse_programmers(lines))

    @staticmethod
    def _target_arguments(mcu, programmer, port):
        arguments = ["-p", mcu, "-c", programmer]
        if port is not None:
            arguments += ["-P", port]
        return arguments

    async def _read_memories(self, config, mcu, programmer, memories, *, port=None, cancel=None):
        arguments = self._target_arguments(mcu, programmer, port)
        arguments.append("-qq")
        for memory in memories:
            arguments += ["-U", f"{memory}:r:-:h"]
        lines = await self.run(config, arguments, cancel=cancel)

        values = [int(line.strip(), 16) for line in lines
                  if re.fullmatch(r"\s*0x[0-9a-fA-F]{1,2}\s*", line)]
        if len(values) != len(memories):
            raise ToolError(f"expected {len(memories)} values for {', '.join(memories)}, "
                            f"found {len(values)}", reason=Reason.PARSE_ERROR)
        logger.debug("%s: read %s", self.tool.name,
                     " ".join(f"{memory}={value:#04x}" for memory, value in zip(memories, values)))
        return bytes(values)

    async def _write_memories(self, config, mcu, programmer, memories, values, *, port=None,
                              cancel=None):
        if len(values) != len(memories):
            raise ValueError(f"expected {len(memories)} values, got {len(values)}")
        arguments = self._target_arguments(mcu, programmer, port)
        for memory, value in zip(memories, values):
            if not 0 <= value <= 0xff:
                raise ValueError(f"value {value!r} for {memory} is not a byte")
            arguments += ["-U", f"{memory}:w:{value:#04x}:m"]
        return await self.run(config, arguments, cancel=cancel)

    async def read_fuses(self, config, mcu, programmer, count, *, port=None, cancel=None):
        return await self._read_memories(config, mcu, programmer, fuse_memories(count),
                                         port=port, cancel=cancel)

    async def write_fuses(self, config, mcu, programmer, values, *, port=None, cancel=None):
        return await self._write_memories(config, mcu, programmer, fuse_memories(len(values)),
                                          values, port=port, cancel=cancel)

    async def read_lock_bits(self, config, mcu, programmer, *, port=None, cancel=None):
        lock_bits, = await self._read_memories(config, mcu, programmer, ["lock"],
                                               port=port, cancel=cancel)
        return lock_bits

    async def write_lock_bits(self, config, mcu, programmer, value, *, port=None, cancel=None):
        return await self._write_memories(config, mcu, programmer, ["lock"], [value],
                                          port=port, cancel=cancel)
