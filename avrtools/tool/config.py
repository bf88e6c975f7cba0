import logging
import pathlib
import configparser

import platformdirs


__all__ = ["ATTR_USB_DELAY", "ToolConfiguration", "default_config_path"]


logger = logging.getLogger(__name__)


# Minimum time between two invocations of the same tool, in milliseconds.
ATTR_USB_DELAY = "usbdelay"

_TRUE_VALUES  = ("true", "yes", "on", "1")
_FALSE_VALUES = ("false", "no", "off", "0")


def default_config_path():
    return platformdirs.user_config_path("avrtools", appauthor=False) / "tools.ini"


class ToolConfiguration:
    """
    String-keyed tool settings.

    All values are stored as strings, the way they appear in a configuration file; interpreting
    them is up to the reader. Keys that are not set fall back to ``defaults``.
    """

    def __init__(self, attributes=None, defaults=None):
        self._attributes = {key: str(value) for key, value in (attributes or {}).items()}
        self._defaults   = {key: str(value) for key, value in (defaults or {}).items()}

    @classmethod
    def from_file(cls, path, section="tools"):
        path = pathlib.Path(path)
        parser = configparser.ConfigParser(interpolation=None)
        # Keys such as `avreclipse.avarice.command` are case-sensitive.
        parser.optionxform = str
        if not parser.read(path, encoding="utf-8"):
            logger.debug("configuration file %r not found", str(path))
            return cls()
        if not parser.has_section(section):
            logger.debug("configuration file %r has no [%s] section", str(path), section)
            return cls()
        logger.debug("loaded configuration from %r", str(path))
        return cls(dict(parser.items(section)))

    def with_defaults(self, defaults):
        return ToolConfiguration(self._attributes, {**self._defaults, **defaults})

    def set_attribute(self, key, value):
        self._attributes[key] = str(value)

    def get_attribute(self, key):
        if key in self._attributes:
            return self._attributes[key]
        return self._defaults.get(key)

    def get_boolean_attribute(self, key):
        value = self.get_attribute(key)
        if value is None:
            return False
        value = value.strip().lower()
        if value in _TRUE_VALUES:
            return True
        if value not in _FALSE_VALUES:
            logger.debug("attribute %s=%r is not a boolean, assuming false", key, value)
        return False

    def __contains__(self, key):
        return key in self._attributes or key in self._defaults

    def __repr__(self):
        return f"<{self.__class__.__module__}.{self.__class__.__name__} {self._attributes!r}>"
