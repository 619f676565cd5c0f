import logging
import os
import tempfile

_logger = logging.getLogger(__name__)


class FileKeyValueStore(object):
    """A key value store backed by one file per key in a directory.

    Writes and deletes are flushed to disk before returning: a value is
    written to a temporary file in the same directory, fsynced, renamed over
    (or hard linked to) the target and the directory entry is fsynced.
    """

    def __init__(self, path, suffix=''):
        self._path = os.path.abspath(path)
        self._suffix = suffix
        os.makedirs(self._path, exist_ok=True)

    @property
    def path(self):
        return self._path

    def _file(self, key):
        return os.path.join(self._path, key + self._suffix)

    def set_value(self, key, value, overwrite=True):
        """Store ``value`` under ``key``.

        With ``overwrite=False`` the target is created exclusively and
        ``FileExistsError`` is raised when ``key`` is already present.
        """
        if isinstance(value, str):
            value = value.encode('utf-8')

        fd, tmp_path = tempfile.mkstemp(dir=self._path, prefix='.tmp-')
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(value)
                f.flush()
                os.fsync(f.fileno())
            if overwrite:
                os.replace(tmp_path, self._file(key))
            else:
                os.link(tmp_path, self._file(key))
        finally:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
        self._sync_dir()
        _logger.debug(f'set_value - stored key {key}')

    def get_value(self, key):
        try:
            with open(self._file(key), 'rb') as f:
                return f.read()
        except FileNotFoundError:
            return None

    def exists(self, key):
        return os.path.isfile(self._file(key))

    def delete(self, key):
        """Delete ``key``; returns False if it was not present."""
        try:
            os.unlink(self._file(key))
        except FileNotFoundError:
            return False
        self._sync_dir()
        _logger.debug(f'delete - removed key {key}')
        return True

    def keys(self):
        with os.scandir(self._path) as it:
            for entry in it:
                name = entry.name
                if name.startswith('.tmp-') or not entry.is_file():
                    continue
                if self._suffix:
                    if not name.endswith(self._suffix):
                        continue
                    name = name[:-len(self._suffix)]
                yield name

    def _sync_dir(self):
        if not hasattr(os, 'O_DIRECTORY'):
            return
        fd = os.open(self._path, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
