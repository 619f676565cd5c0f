import copy
import json
import logging
import os

import yaml

from hfgw.fabric.config.default import DEFAULT

_logger = logging.getLogger(__name__)


class Config(object):
    """Layered settings.

    Lookup order is: values given to ``set()``, then setting files (the last
    file added wins), then the built-in defaults. A ``Config`` is handed to
    each component explicitly; there is no process-wide instance.
    """

    def __init__(self, settings=None):
        self._file_stores = []
        self._overrides = {}
        self._defaults = copy.deepcopy(DEFAULT)
        if settings:
            self._overrides.update(settings)

    @staticmethod
    def from_file(path):
        config = Config()
        config.file(path)
        return config

    def file(self, path):
        if not isinstance(path, str):
            raise TypeError('The "path" parameter must be a string')

        data = _read_settings_file(path)
        _logger.debug(f'file - loaded {len(data)} settings from {path}')
        self._file_stores.append((path, data))

    def get(self, name, default_value=None):
        if name in self._overrides:
            return self._overrides[name]
        for _, data in reversed(self._file_stores):
            if name in data:
                return data[name]
        return self._defaults.get(name, default_value)

    def set(self, name, value):
        self._overrides[name] = value

    def get_int(self, name):
        value = self.get(name)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f'Config setting "{name}" must be an integer, got {value!r}')
        return value

    def get_bool(self, name):
        value = self.get(name)
        if not isinstance(value, bool):
            raise ValueError(f'Config setting "{name}" must be boolean, got {value!r}')
        return value

    def get_seconds(self, name):
        """Read a millisecond setting and return it in seconds."""
        value = self.get(name)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ValueError(f'Config setting "{name}" must be a non-negative number of milliseconds')
        return value / 1000.0


def _read_settings_file(path):
    with open(path, 'r') as f:
        file_data = f.read()

    _, file_ext = os.path.splitext(path)
    if file_ext.lower() in ('.yml', '.yaml'):
        data = yaml.safe_load(file_data)
    else:
        data = json.loads(file_data)

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f'Settings file {path} must contain a mapping')
    return data
