import re
import enum
import logging
from abc import ABCMeta, abstractmethod


__all__ = ["StreamSource", "OutputListener", "NullOutputListener", "PatternOutputListener"]


logger = logging.getLogger(__name__)


class StreamSource(enum.Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


class OutputListener(metaclass=ABCMeta):
    """
    Classifier for the output of a running tool.

    The launcher calls :meth:`init` once before the first line, then :meth:`handle_line` for every
    line in arrival order. Implementations must return from :meth:`handle_line` promptly; while it
    runs, no further output of the tool is being read.
    """

    @abstractmethod
    def init(self, cancel):
        raise NotImplementedError

    @abstractmethod
    def handle_line(self, line, source):
        raise NotImplementedError

    @property
    @abstractmethod
    def abort_reason(self):
        """:class:`Reason` of the first failure recognized in the output, or ``None``."""
        raise NotImplementedError

    @property
    @abstractmethod
    def abort_line(self):
        """The line in which :attr:`abort_reason` was recognized, or ``None``."""
        raise NotImplementedError


class NullOutputListener(OutputListener):
    def init(self, cancel):
        pass

    def handle_line(self, line, source):
        pass

    @property
    def abort_reason(self):
        return None

    @property
    def abort_line(self):
        return None


class PatternOutputListener(OutputListener):
    """
    Output classifier driven by a table of regular expressions.

    Subclasses set ``patterns`` to a sequence of ``(regex, reason)`` pairs. The first line that
    matches (via :func:`re.search`) any of the patterns is recorded together with the reason,
    and the cancellation token is raised so that the tool is stopped without waiting for it
    to give up on its own.
    """
    patterns = ()

    def __init__(self):
        self._compiled = [(re.compile(pattern), reason) for pattern, reason in self.patterns]
        self._cancel   = None
        self._reason   = None
        self._line     = None

    def init(self, cancel):
        self._cancel = cancel
        self._reason = None
        self._line   = None

    def handle_line(self, line, source):
        if self._reason is not None:
            return
        for regex, reason in self._compiled:
            if regex.search(line):
                logger.debug("%s: abort condition %s in %r", source.value, reason.name, line)
                self._reason = reason
                self._line   = line
                if self._cancel is not None:
                    self._cancel.cancel()
                return

    @property
    def abort_reason(self):
        return self._reason

    @property
    def abort_line(self):
        return self._line
