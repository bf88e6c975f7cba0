import enum


__all__ = [
    "Reason", "ToolError", "InvalidWorkingDirectory", "ToolNotFound", "ToolAbort",
    "UserCancelled", "ConfigurationError",
]


class Reason(enum.Enum):
    # Process-level failures.
    INVALID_CWD         = "working directory does not exist"
    NO_TOOL_FOUND       = "tool executable could not be started"
    USER_CANCEL         = "cancelled by user"
    CONFIG_ERROR        = "invalid configuration value"

    # Failures recognized in the output of the tool.
    UNKNOWN             = "unknown failure"
    TIMEOUT             = "timeout while talking to the programmer"
    PORT_BLOCKED        = "programmer port could not be opened"
    NO_USB              = "USB programmer not found"
    NO_TARGET_POWER     = "target is not powered"
    INIT_FAIL           = "target initialization failed"
    SYNC_FAIL           = "programmer is not in sync"
    UNKNOWN_MCU         = "microcontroller is not supported by the tool"
    UNKNOWN_PROGRAMMER  = "programmer is not supported by the tool"
    INVALID_PROGRAMMER  = "programmer does not respond"
    CONFIG_NOT_FOUND    = "tool configuration file not found"
    PARSE_ERROR         = "tool output could not be parsed"

    @property
    def description(self):
        return self.value


class ToolError(Exception):
    """
    Failure of an external tool invocation.

    :attr reason:
        :class:`Reason` member classifying the failure.
    :attr message:
        Human-readable detail.
    :attr line:
        Output line of the tool that triggered the failure, or ``None``.
    """
    default_reason = Reason.UNKNOWN

    def __init__(self, message="", *, reason=None, line=None):
        self.reason  = self.default_reason if reason is None else reason
        self.message = str(message)
        self.line    = line
        super().__init__(self.reason, self.message, self.line)

    def __str__(self):
        text = self.reason.description
        if self.message:
            text = f"{text}: {self.message}"
        return text


class InvalidWorkingDirectory(ToolError):
    default_reason = Reason.INVALID_CWD


class ToolNotFound(ToolError):
    default_reason = Reason.NO_TOOL_FOUND


class ToolAbort(ToolError):
    """
    The output of a tool showed that it failed.

    :attr result:
        The :class:`InvocationResult` of the failed invocation (with ``abort_reason`` and
        ``abort_line`` set), or ``None``.
    """

    def __init__(self, reason, line, *, result=None):
        super().__init__(line or "", reason=reason, line=line)
        self.result = result


class UserCancelled(ToolError):
    default_reason = Reason.USER_CANCEL


class ConfigurationError(ToolError):
    default_reason = Reason.CONFIG_ERROR
