import logging
import os
import tempfile
from contextlib import contextmanager

from hfgw.fabric.config.config import Config
from hfgw.fabric_ca.caservice import CAService

_logger = logging.getLogger(__name__)


class CertificateAuthority(object):
    """A certificate authority as described in the connection profile."""

    def __init__(self, name, caname, url, tls_ca_certs=None, registrar=None, mspid=None, verify=True):

        _logger.debug('CertificateAuthority.const')

        if not name:
            raise ValueError('Missing name parameter')

        if not url:
            raise ValueError('Missing url parameter')

        self._name = name
        self._caname = caname or name
        self._url = url
        self._tls_ca_certs = tls_ca_certs
        self._registrar = registrar or []
        self._mspid = mspid
        self._verify = verify

    @property
    def name(self):
        return self._name

    @property
    def caname(self):
        return self._caname

    @property
    def url(self):
        return self._url

    @property
    def tls_ca_certs(self):
        return self._tls_ca_certs

    @property
    def registrar(self):
        """Bootstrap registrar entries (``enrollId``/``enrollSecret``) from the profile."""
        if isinstance(self._registrar, dict):
            return [self._registrar]
        return list(self._registrar)

    @property
    def mspid(self):
        return self._mspid

    @contextmanager
    def connect(self, config=None, session=None, allow_insecure=False):
        """Open a CAService session, released together with the TLS trust file on exit.

        Requests time out after the ``ca-request-timeout`` setting of ``config``.
        """
        timeout = (config or Config()).get_seconds('ca-request-timeout')
        verify = self._verify
        trust_file = None
        if verify and self._tls_ca_certs:
            fd, trust_file = tempfile.mkstemp(suffix='.pem')
            with os.fdopen(fd, 'w') as f:
                f.write(self._tls_ca_certs)
            verify = trust_file

        try:
            with CAService(self._url, self._caname, verify=verify, timeout=timeout, session=session,
                           allow_insecure=allow_insecure) as service:
                yield service
        finally:
            if trust_file:
                os.unlink(trust_file)

    def __str__(self):
        return f'CertificateAuthority {self._name}, url: {self._url}'
