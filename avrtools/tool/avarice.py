"""
AVaRICE is a bridge between GDB and the JTAG/debugWIRE/PDI interface of AVR microcontrollers. It
runs as a GDB server and talks to an Atmel JTAG ICE (mkI or mkII) or an AVR Dragon.

When run without arguments it prints a banner followed by its usage, e.g.::

    AVaRICE version 2.8, Nov  7 2008 22:02:05

and ``--known-devices`` prints a table of supported devices, one per line::

    Device Name          IO Reg. Vector Table Flash Page   ...
    atmega128            0x9702  ...
"""

from collections import namedtuple

from .errors import Reason
from .listener import PatternOutputListener
from .invoker import Tool


__all__ = ["AvariceOutputListener", "AvariceProgrammer", "programmers", "AvariceTool"]


class AvariceOutputListener(PatternOutputListener):
    patterns = (
        (r"did not find any USB device",                    Reason.NO_USB),
        (r"[Ff]ailed to open (?:serial )?(?:port|device)",  Reason.PORT_BLOCKED),
        (r"No configuration available for device",          Reason.UNKNOWN_MCU),
        (r"[Cc]annot synchroni[sz]e|JTAG ICE: .*not in sync", Reason.SYNC_FAIL),
        (r"[Tt]arget (?:power|voltage) .*(?:off|too low)",  Reason.NO_TARGET_POWER),
        (r"JTAG ICE communication failed",                  Reason.INVALID_PROGRAMMER),
        (r"[Tt]imed out|[Tt]imeout (?:waiting|reading)",    Reason.TIMEOUT),
    )


AvariceProgrammer = namedtuple("AvariceProgrammer",
    ("id", "description", "arguments"))


programmers = [
    AvariceProgrammer("jtag1",
        description="Atmel JTAG ICE (mkI)",
        arguments=("--mkI",)),
    AvariceProgrammer("jtag2",
        description="Atmel JTAG ICE mkII",
        arguments=("--mkII",)),
    AvariceProgrammer("jtag2dw",
        description="Atmel JTAG ICE mkII in debugWIRE mode",
        arguments=("--mkII", "--debugwire")),
    AvariceProgrammer("jtag2pdi",
        description="Atmel JTAG ICE mkII in PDI mode",
        arguments=("--mkII", "--xmega")),
    AvariceProgrammer("dragon_jtag",
        description="Atmel AVR Dragon in JTAG mode",
        arguments=("--dragon",)),
    AvariceProgrammer("dragon_dw",
        description="Atmel AVR Dragon in debugWIRE mode",
        arguments=("--dragon", "--debugwire")),
    AvariceProgrammer("dragon_pdi",
        description="Atmel AVR Dragon in PDI mode",
        arguments=("--dragon", "--xmega")),
]

programmers_by_id = {programmer.id: programmer for programmer in programmers}


class AvariceTool(Tool):
    id   = "avreclipse.avarice"
    name = "AVaRICE"
    default_command = "avarice"
    default_use_console = True

    version_arguments = ()
    version_pattern   = r".*version\s+([\w\.]+).*"
    device_arguments  = ("--known-devices",)
    # device id, whitespace, then the hexadecimal signature column
    device_pattern    = r"(\w+)\s+0x.+"

    def create_listener(self):
        return AvariceOutputListener()

    def programmers(self, config=None):
        """Identifiers of the programmers AVaRICE can work with.

        The set is fixed and does not depend on the installed binary.
        """
        return frozenset(programmers_by_id)

    def programmer(self, config, id):
        """The :class:`AvariceProgrammer` with identifier ``id``, or ``None`` if unsupported."""
        return programmers_by_id.get(id)
