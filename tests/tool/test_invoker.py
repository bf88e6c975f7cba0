import io
import os
import sys
import time
import asyncio
import tempfile
import unittest
import contextlib
from unittest import mock

from avrtools.support.cancel import CancelToken
from avrtools.tool.errors import *
from avrtools.tool.listener import PatternOutputListener
from avrtools.tool.config import ATTR_USB_DELAY, ToolConfiguration
from avrtools.tool.invoker import Tool, ToolInvoker, InvocationResult


class _FakeListener(PatternOutputListener):
    patterns = (
        (r"device not found", Reason.NO_USB),
    )


class _FakeTool(Tool):
    id   = "test.fake"
    name = "Fake"
    default_command = "fake-tool"

    version_arguments = ("-c", "print('usage: fake'); print('Fake version 2.8, Nov  7 2008')")
    version_pattern   = r".*version\s+([\w\.]+).*"
    device_arguments  = ("-c",
        "print('Device Name   Signature')\n"
        "print('atmega16      0x9403  128')\n"
        "print('atmega16   0x9403 128')\n"
        "print('   at90s8515  0x9301  64')\n"
        "print('atmega128     0x9702  256')\n")
    device_pattern    = r"(\w+)\s+0x.+"

    def create_listener(self):
        return _FakeListener()


class _CountingInvoker(ToolInvoker):
    def __init__(self, tool):
        super().__init__(tool)
        self.runs = 0

    async def run(self, config, arguments=(), **kwargs):
        self.runs += 1
        return await super().run(config, arguments, **kwargs)


def python_config(**attributes):
    return ToolConfiguration({"test.fake.command": sys.executable, **attributes})


class ToolInvokerTestCase(unittest.TestCase):
    def setUp(self):
        self.invoker = _CountingInvoker(_FakeTool())
        self.config  = python_config()

    def run_tool(self, *arguments, config=None, **kwargs):
        return asyncio.run(self.invoker.run(config or self.config, arguments, **kwargs))

    def test_round_trip(self):
        script = "import sys; print(sys.argv[1])"
        self.assertEqual(self.run_tool("-c", script, "X"), ["X"])
        self.assertEqual(self.run_tool("-c", script, "Y"), ["Y"])

    def test_merged_output(self):
        lines = self.run_tool("-c",
            "import sys\n"
            "print('a', flush=True)\n"
            "print('b', file=sys.stderr, flush=True)\n"
            "print('c', flush=True)\n")
        self.assertEqual(lines, ["a", "b", "c"])

    def test_run_result(self):
        result = asyncio.run(self.invoker.run_result(self.config,
            ["-c", "import sys; print('partial'); sys.exit(2)"]))
        self.assertEqual(result, InvocationResult(("partial",), 2))
        with self.assertRaises(AttributeError):
            result.exit_code = 0

    def test_abort_with_exit_code_0(self):
        with self.assertRaises(ToolAbort) as cm:
            self.run_tool("-c", "print('ok'); print('error: device not found')")
        self.assertEqual(cm.exception.reason, Reason.NO_USB)
        self.assertEqual(cm.exception.line, "error: device not found")

    def test_abort_result(self):
        with self.assertRaises(ToolAbort) as cm:
            self.run_tool("-c", "print('ok'); print('error: device not found')")
        self.assertEqual(cm.exception.result.lines, ("ok", "error: device not found"))
        self.assertEqual(cm.exception.result.abort_reason, Reason.NO_USB)
        self.assertEqual(cm.exception.result.abort_line, "error: device not found")

    def test_long_output_line(self):
        lines = self.run_tool("-c", "print(','.join(['0xff'] * 40000)); print('done')")
        self.assertEqual(lines, [",".join(["0xff"] * 40000), "done"])

    def test_command_from_environment(self):
        with mock.patch.dict(os.environ, {"FAKE_TOOL": sys.executable}):
            lines = self.run_tool("-c", "print('found')", config=ToolConfiguration())
        self.assertEqual(lines, ["found"])

    def test_abort_stops_tool(self):
        started_at = time.monotonic()
        with self.assertRaises(ToolAbort):
            self.run_tool("-c",
                "import time; print('device not found', flush=True); time.sleep(30)")
        self.assertLess(time.monotonic() - started_at, 10)

    def test_abort_does_not_cancel_caller(self):
        cancel = CancelToken()
        with self.assertRaises(ToolAbort):
            self.run_tool("-c", "print('device not found')", cancel=cancel)
        self.assertFalse(cancel.cancelled)
        self.assertEqual(self.run_tool("-c", "print('fine')", cancel=cancel), ["fine"])

    def test_tool_not_found(self):
        config = ToolConfiguration({"test.fake.command": "/nonexistent/avrtools-fake-tool"})
        with self.assertRaises(ToolNotFound) as cm:
            self.run_tool(config=config)
        self.assertEqual(cm.exception.reason, Reason.NO_TOOL_FOUND)
        self.assertIsNotNone(self.invoker.gate.last_finish)

    def test_invalid_cwd(self):
        with self.assertRaises(InvalidWorkingDirectory):
            self.run_tool("-c", "pass", cwd="")
        with self.assertRaises(InvalidWorkingDirectory) as cm:
            self.run_tool("-c", "pass", cwd="/nonexistent/avrtools-directory")
        self.assertEqual(cm.exception.reason, Reason.INVALID_CWD)

    def test_cwd(self):
        with tempfile.TemporaryDirectory() as directory:
            lines = self.run_tool("-c", "import os; print(os.getcwd())", cwd=directory)
            self.assertEqual(os.path.realpath(lines[0]), os.path.realpath(directory))

    async def do_test_cancel_running(self):
        cancel = CancelToken()
        asyncio.get_running_loop().call_later(0.2, cancel.cancel)
        await self.invoker.run(self.config, ["-c", "import time; time.sleep(30)"], cancel=cancel)

    def test_cancel_running(self):
        with self.assertRaises(UserCancelled) as cm:
            asyncio.run(self.do_test_cancel_running())
        self.assertEqual(cm.exception.reason, Reason.USER_CANCEL)

    def test_echo_forced(self):
        stdout = io.StringIO()
        with contextlib.redirect_stdout(stdout):
            self.run_tool("-c", "print('echoed')", force_echo=True)
        self.assertEqual(stdout.getvalue(), "echoed\n")

    def test_echo_configured(self):
        stdout = io.StringIO()
        config = python_config(**{"test.fake.useconsole": "true"})
        with contextlib.redirect_stdout(stdout):
            self.run_tool("-c", "print('echoed')", config=config)
        self.assertEqual(stdout.getvalue(), "echoed\n")

    def test_echo_disabled(self):
        stdout = io.StringIO()
        with contextlib.redirect_stdout(stdout):
            lines = self.run_tool("-c", "print('quiet')")
        self.assertEqual(stdout.getvalue(), "")
        self.assertEqual(lines, ["quiet"])

    def test_echo_stream(self):
        echo = io.StringIO()
        self.run_tool("-c", "print('echoed')", echo=echo)
        self.assertEqual(echo.getvalue(), "echoed\n")


class ToolInvokerDelayTestCase(unittest.TestCase):
    def setUp(self):
        self.invoker = ToolInvoker(_FakeTool())

    def run_tool(self, config, *arguments, **kwargs):
        return asyncio.run(self.invoker.run(config, arguments, **kwargs))

    def test_no_delay(self):
        for config in (python_config(), python_config(**{ATTR_USB_DELAY: "0"})):
            self.run_tool(config, "-c", "pass")
            self.assertLessEqual(self.invoker.gate.remaining(0), 0)
            started_at = time.monotonic()
            asyncio.run(self.invoker.gate.wait(0))
            self.assertLess(time.monotonic() - started_at, 0.05)

    def test_delay(self):
        config = python_config(**{ATTR_USB_DELAY: "300"})
        self.run_tool(config, "-c", "pass")
        finished_at = time.time()
        lines = self.run_tool(config, "-c", "import time; print(repr(time.time()))")
        started_at = float(lines[0])
        self.assertGreaterEqual(started_at - finished_at, 0.25)

    async def do_test_cancel_delay(self, config, marker):
        cancel = CancelToken()
        asyncio.get_running_loop().call_later(0.1, cancel.cancel)
        await self.invoker.run(config, ["-c", f"open({marker!r}, 'w').close()"], cancel=cancel)

    def test_cancel_delay(self):
        config = python_config(**{ATTR_USB_DELAY: "10000"})
        self.run_tool(config, "-c", "pass")
        with tempfile.TemporaryDirectory() as directory:
            marker = os.path.join(directory, "started")
            started_at = time.monotonic()
            with self.assertRaises(UserCancelled):
                asyncio.run(self.do_test_cancel_delay(config, marker))
            self.assertLess(time.monotonic() - started_at, 5)
            self.assertFalse(os.path.exists(marker))

    def test_malformed_delay(self):
        config = python_config(**{ATTR_USB_DELAY: "later"})
        with self.assertRaises(ConfigurationError) as cm:
            self.run_tool(config, "-c", "pass")
        self.assertEqual(cm.exception.reason, Reason.CONFIG_ERROR)

    def test_independent_invokers(self):
        config = python_config(**{ATTR_USB_DELAY: "10000"})
        self.run_tool(config, "-c", "pass")
        other = ToolInvoker(_FakeTool())
        started_at = time.monotonic()
        asyncio.run(other.run(config, ["-c", "pass"]))
        self.assertLess(time.monotonic() - started_at, 5)


class ToolInvokerQueryTestCase(unittest.TestCase):
    def setUp(self):
        self.invoker = _CountingInvoker(_FakeTool())
        self.config  = python_config()

    def test_version(self):
        self.assertEqual(asyncio.run(self.invoker.get_version(self.config)), "Fake 2.8")
        self.assertEqual(asyncio.run(self.invoker.get_version(self.config)), "Fake 2.8")
        self.assertEqual(self.invoker.runs, 1)
        self.assertEqual(self.invoker.cache.get(sys.executable).version, "Fake 2.8")

    def test_version_mismatch(self):
        tool = _FakeTool()
        tool.version_arguments = ("-c", "print('no banner here')")
        invoker = _CountingInvoker(tool)
        self.assertEqual(asyncio.run(invoker.get_version(self.config)), "Fake ?.?")
        self.assertEqual(asyncio.run(invoker.get_version(self.config)), "Fake ?.?")
        self.assertEqual(invoker.runs, 2)
        self.assertIsNone(invoker.cache.get(sys.executable))

    def test_devices(self):
        devices = asyncio.run(self.invoker.get_supported_devices(self.config))
        self.assertEqual(devices, {"atmega16", "atmega128"})
        self.assertIs(asyncio.run(self.invoker.get_supported_devices(self.config)), devices)
        self.assertEqual(self.invoker.runs, 1)

    def test_devices_empty(self):
        tool = _FakeTool()
        tool.device_arguments = ("-c", "print('nothing to see')")
        invoker = ToolInvoker(tool)
        self.assertEqual(asyncio.run(invoker.get_supported_devices(self.config)), frozenset())

    def test_independent_commands(self):
        other_command = os.path.join(os.path.dirname(sys.executable), ".",
                                     os.path.basename(sys.executable))
        other_config = ToolConfiguration({"test.fake.command": other_command})

        asyncio.run(self.invoker.get_version(self.config))
        self.assertIsNone(self.invoker.cache.get(other_command))
        asyncio.run(self.invoker.get_version(other_config))
        self.assertEqual(self.invoker.runs, 2)

        asyncio.run(self.invoker.get_supported_devices(other_config))
        self.assertIsNone(self.invoker.cache.get(sys.executable).devices)

    def test_query_failure(self):
        config = ToolConfiguration({"test.fake.command": "/nonexistent/avrtools-fake-tool"})
        with self.assertRaises(ToolNotFound):
            asyncio.run(self.invoker.get_version(config))
        with self.assertRaises(ToolNotFound):
            asyncio.run(self.invoker.get_supported_devices(config))
        self.assertEqual(len(self.invoker.cache), 0)

    def test_run_not_cached(self):
        script = "import sys; print(sys.argv[1])"
        asyncio.run(self.invoker.get_version(self.config))
        lines = asyncio.run(self.invoker.run(self.config, ["-c", script, "X"]))
        self.assertEqual(lines, ["X"])
        self.assertEqual(self.invoker.cache.get(sys.executable).version, "Fake 2.8")
