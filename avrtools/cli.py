import os
import sys
import logging
import asyncio
import argparse
import platform

from . import __version__
from .support.cancel import CancelToken, cancel_on_signal
from .tool.errors import ToolError, UserCancelled
from .tool.config import ATTR_USB_DELAY, ToolConfiguration, default_config_path
from .tool.invoker import ToolInvoker
from .tool.avarice import AvariceTool
from .tool.avrdude import AvrdudeTool, AvrdudeInvoker


# When running as `-m avrtools.cli`, `__name__` is `__main__`, and the real name
# can be retrieved from `__loader__.name`.
logger = logging.getLogger(__loader__.name)


def create_invokers():
    return {
        "avarice": ToolInvoker(AvariceTool()),
        "avrdude": AvrdudeInvoker(AvrdudeTool()),
    }


class TextHelpFormatter(argparse.RawDescriptionHelpFormatter):
    def __init__(self, prog):
        if "COLUMNS" in os.environ:
            columns = int(os.environ["COLUMNS"])
        else:
            try:
                columns, _ = os.get_terminal_size(sys.stderr.fileno())
            except OSError:
                columns = 80
        super().__init__(prog, width=columns, max_help_position=28)


def version_info():
    python_version = ".".join(map(str, sys.version_info[:3]))
    python_implementation = platform.python_implementation()
    return (
        f"avrtools {__version__} "
        f"({python_implementation} {python_version} on {platform.platform()})"
    )


def create_argparser():
    parser = argparse.ArgumentParser(formatter_class=TextHelpFormatter, fromfile_prefix_chars="@")

    parser.add_argument(
        "-V", "--version", action="version", version=version_info(),
        help="show version and exit")
    parser.add_argument(
        "-v", "--verbose", default=0, action="count",
        help="increase logging verbosity")
    parser.add_argument(
        "-q", "--quiet", default=0, action="count",
        help="decrease logging verbosity")
    parser.add_argument(
        "-L", "--log-file", metavar="FILE", type=argparse.FileType("w"),
        help="save log messages at highest verbosity to FILE")
    parser.add_argument(
        "-F", "--filter-log", metavar="TOOL", type=str, action="append",
        help="log the output of TOOL (e.g. avrdude) at any verbosity")
    parser.add_argument(
        "-C", "--config", metavar="FILE", default=None,
        help=f"read tool configuration from FILE (default: {default_config_path()})")
    parser.add_argument(
        "-s", "--set", metavar="KEY=VALUE", dest="overrides", type=key_value,
        action="append", default=[],
        help="set configuration attribute KEY to VALUE (may be repeated)")
    parser.add_argument(
        "--delay", metavar="MS", type=str, default=None,
        help="wait at least MS milliseconds between invocations of a tool")

    return parser


def key_value(arg):
    key, sep, value = arg.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"{arg!r} is not of the form KEY=VALUE")
    return key, value


def byte(arg):
    try:
        value = int(arg, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"{arg!r} is not an integer") from None
    if not 0 <= value <= 0xff:
        raise argparse.ArgumentTypeError(f"{arg!r} is not a byte")
    return value


def get_argparser():
    parser = create_argparser()

    p_tool = parser.add_subparsers(dest="tool", metavar="TOOL")
    p_tool.required = True

    def add_common_actions(p_action):
        p_action.add_parser(
            "version", help="display tool name and version")
        p_action.add_parser(
            "devices", help="list devices supported by the tool")
        p_action.add_parser(
            "programmers", help="list programmers supported by the tool")

        p_run = p_action.add_parser(
            "run", help="run the tool with arbitrary arguments")
        p_run.add_argument(
            "--cwd", metavar="DIR", default=None,
            help="run the tool in directory DIR")
        p_run.add_argument(
            "--echo", default=False, action="store_true",
            help="copy tool output to the terminal as it arrives")
        p_run.add_argument(
            "arguments", metavar="ARG", nargs=argparse.REMAINDER,
            help="arguments passed to the tool")

    def add_target_arguments(parser):
        parser.add_argument(
            "-p", "--part", metavar="MCU", required=True,
            help="AVRDude part identifier, e.g. m328p")
        parser.add_argument(
            "-c", "--programmer", metavar="PROGRAMMER", required=True,
            help="AVRDude programmer identifier, e.g. usbasp")
        parser.add_argument(
            "-P", "--port", metavar="PORT", default=None,
            help="connection port of the programmer")

    p_avarice = p_tool.add_parser(
        "avarice", help="AVaRICE JTAG/debugWIRE bridge", formatter_class=TextHelpFormatter)
    p_avarice_action = p_avarice.add_subparsers(dest="action", metavar="ACTION")
    p_avarice_action.required = True
    add_common_actions(p_avarice_action)

    p_avrdude = p_tool.add_parser(
        "avrdude", help="AVRDude device programmer", formatter_class=TextHelpFormatter)
    p_avrdude_action = p_avrdude.add_subparsers(dest="action", metavar="ACTION")
    p_avrdude_action.required = True
    add_common_actions(p_avrdude_action)

    p_read_fuses = p_avrdude_action.add_parser(
        "read-fuses", help="read fuse bytes and lock bits")
    add_target_arguments(p_read_fuses)
    p_read_fuses.add_argument(
        "-n", "--count", metavar="COUNT", type=int, default=3, choices=(1, 2, 3),
        help="number of fuse bytes of the device (default: %(default)s)")
    p_read_fuses.add_argument(
        "-l", "--lock-bits", default=False, action="store_true",
        help="also read lock bits")

    p_write_fuses = p_avrdude_action.add_parser(
        "write-fuses", help="write fuse bytes, low fuse first")
    add_target_arguments(p_write_fuses)
    p_write_fuses.add_argument(
        "values", metavar="BYTE", type=byte, nargs="+",
        help="fuse byte value (e.g. 0x62 or 0b01100010)")

    p_write_lock = p_avrdude_action.add_parser(
        "write-lock", help="write lock bits")
    add_target_arguments(p_write_lock)
    p_write_lock.add_argument(
        "value", metavar="BYTE", type=byte,
        help="lock bits value")

    return parser


class TerminalFormatter(logging.Formatter):
    DEFAULT_COLORS = {
        "TRACE"   : "\033[0m",
        "DEBUG"   : "\033[36m",
        "INFO"    : "\033[1m",
        "WARNING" : "\033[1;33m",
        "ERROR"   : "\033[1;31m",
        "CRITICAL": "\033[1;41m",
    }

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.colors = dict(self.DEFAULT_COLORS)
        for color_override in os.getenv("AVRTOOLS_COLORS", "").split(":"):
            if color_override:
                level, color = color_override.split("=", 2)
                self.colors[level] = f"\033[{color}m"

    def format(self, record):
        color = self.colors.get(record.levelname, "")
        # avrtools.tool.launcher → a.tool.launcher
        record.name = record.name.replace("avrtools.", "a.")
        return f"{color}{super().format(record)}\033[0m"


class ToolOutputFilter:
    """Passes messages about the named tools (their output lines included) at any verbosity."""

    def __init__(self, level, tool_names):
        self.level      = level
        self.tool_names = {name.lower() for name in tool_names or ()}

    def filter(self, record):
        # Tool messages are logged as `logger.trace("%s: %s", tool_name, line)` and similar.
        if isinstance(record.args, tuple) and record.args:
            if str(record.args[0]).lower() in self.tool_names:
                return True
        return record.levelno >= self.level


def create_logger():
    root_logger = logging.getLogger()

    term_formatter_args = {"style": "{",
        "fmt": "{levelname[0]:s}: {name:s}: {message:s}"}
    term_handler = logging.StreamHandler()
    if sys.stderr.isatty() and sys.platform != 'win32':
        term_handler.setFormatter(TerminalFormatter(**term_formatter_args))
    else:
        term_handler.setFormatter(logging.Formatter(**term_formatter_args))
    root_logger.addHandler(term_handler)
    return term_handler


def configure_logger(args, term_handler):
    root_logger = logging.getLogger()

    if args.log_file:
        file_formatter_args = {"style": "{",
            "fmt": "[{asctime:s}] {levelname:s}: {name:s}: {message:s}"}
        file_handler = logging.StreamHandler(args.log_file)
        file_handler.setFormatter(logging.Formatter(**file_formatter_args))
        root_logger.addHandler(file_handler)

    level = logging.INFO + args.quiet * 10 - args.verbose * 10
    if args.log_file or args.filter_log:
        term_handler.addFilter(ToolOutputFilter(level, args.filter_log))
        root_logger.setLevel(logging.TRACE)
    else:
        root_logger.setLevel(level)


def load_configuration(args, tool):
    if args.config is None:
        config = ToolConfiguration.from_file(default_config_path())
    else:
        config = ToolConfiguration.from_file(args.config)
    for key, value in args.overrides:
        config.set_attribute(key, value)
    if args.delay is not None:
        config.set_attribute(ATTR_USB_DELAY, args.delay)
    return config.with_defaults(tool.defaults())


async def run_action(args, invoker, config, cancel):
    tool = invoker.tool

    if args.action == "version":
        print(await invoker.get_version(config, cancel=cancel))

    if args.action == "devices":
        for device in sorted(await invoker.get_supported_devices(config, cancel=cancel)):
            print(device)

    if args.action == "programmers":
        if isinstance(invoker, AvrdudeInvoker):
            programmer_ids = await invoker.get_programmers(config, cancel=cancel)
        else:
            programmer_ids = tool.programmers(config)
        for programmer_id in sorted(programmer_ids):
            print(programmer_id)

    if args.action == "run":
        arguments = args.arguments
        if arguments and arguments[0] == "--":
            arguments = arguments[1:]
        lines = await invoker.run(config, arguments, cancel=cancel,
                                  force_echo=args.echo, cwd=args.cwd)
        if not (args.echo or tool.use_console(config)):
            for line in lines:
                print(line)

    if args.action == "read-fuses":
        fuses = await invoker.read_fuses(config, args.part, args.programmer, args.count,
                                         port=args.port, cancel=cancel)
        if len(fuses) > 2:
            logger.info("fuses: low %s high %s extra %s",
                        "{:08b}".format(fuses[0]),
                        "{:08b}".format(fuses[1]),
                        "{:08b}".format(fuses[2]))
        elif len(fuses) > 1:
            logger.info("fuses: low %s high %s",
                        "{:08b}".format(fuses[0]),
                        "{:08b}".format(fuses[1]))
        else:
            logger.info("fuse: %s", "{:08b}".format(fuses[0]))

        if args.lock_bits:
            lock_bits = await invoker.read_lock_bits(config, args.part, args.programmer,
                                                     port=args.port, cancel=cancel)
            logger.info("lock bits: %s", "{:08b}".format(lock_bits))

    if args.action == "write-fuses":
        if len(args.values) > 3:
            raise ToolError("at most 3 fuse bytes can be written")
        logger.info("writing %d fuse byte(s)", len(args.values))
        await invoker.write_fuses(config, args.part, args.programmer, args.values,
                                  port=args.port, cancel=cancel)

    if args.action == "write-lock":
        logger.info("writing lock bits")
        await invoker.write_lock_bits(config, args.part, args.programmer, args.value,
                                      port=args.port, cancel=cancel)


async def main():
    term_handler = create_logger()

    args = get_argparser().parse_args()
    configure_logger(args, term_handler)

    invoker = create_invokers()[args.tool]
    cancel = CancelToken()
    try:
        config = load_configuration(args, invoker.tool)
        with cancel_on_signal(cancel):
            await run_action(args, invoker, config, cancel)

    except UserCancelled:
        logger.warning("interrupted")
        return 130 # 128 + SIGINT

    except ToolError as e:
        logger.error("%s", e)
        if e.line is not None and e.line != e.message:
            logger.error("tool output: %s", e.line)
        return 1

    return 0


# This entry point is invoked via `console_scripts` when installing the package.
def run_main():
    sys.exit(asyncio.run(main()))


# This entry point is invoked when running `python -m avrtools.cli`.
if __name__ == "__main__":
    run_main()
