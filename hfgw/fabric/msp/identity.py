import hashlib
import logging

from hfgw.protos.utils import create_serialized_identity
from hfgw.util.crypto.crypto import ecies

_logger = logging.getLogger(__name__)


def _pem_str(value):
    if isinstance(value, bytes):
        return value.decode('utf-8')
    return value


class Identity(object):
    """An enrolled member: X.509 certificate, private key and MSP ID.

    Identities are immutable values; two identities are equal when every
    field is equal.
    """

    __slots__ = ('_label', '_mspid', '_certificate', '_private_key', '_issuer_chain')

    def __init__(self, label, mspid, certificate, private_key, issuer_chain=()):
        if not label:
            raise ValueError('Missing required parameter "label".')
        if not mspid:
            raise ValueError('Missing required parameter "mspid".')
        if not certificate:
            raise ValueError('Missing required parameter "certificate".')
        if not private_key:
            raise ValueError('Missing required parameter "private_key".')

        object.__setattr__(self, '_label', label)
        object.__setattr__(self, '_mspid', mspid)
        object.__setattr__(self, '_certificate', _pem_str(certificate))
        object.__setattr__(self, '_private_key', _pem_str(private_key))
        object.__setattr__(self, '_issuer_chain', tuple(_pem_str(c) for c in issuer_chain or ()))

    def __setattr__(self, name, value):
        raise AttributeError('Identity is immutable')

    @property
    def label(self):
        return self._label

    @property
    def mspid(self):
        return self._mspid

    @property
    def certificate(self):
        return self._certificate

    @property
    def private_key(self):
        return self._private_key

    @property
    def issuer_chain(self):
        return self._issuer_chain

    @property
    def fingerprint(self):
        """sha256 of the certificate PEM, distinguishes re-enrolled credentials."""
        return hashlib.sha256(self._certificate.encode('utf-8')).hexdigest()

    def with_label(self, label):
        return Identity(label, self._mspid, self._certificate, self._private_key, self._issuer_chain)

    def _key(self):
        return self._label, self._mspid, self._certificate, self._private_key, self._issuer_chain

    def __eq__(self, other):
        if not isinstance(other, Identity):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self):
        return hash(self._key())

    def __repr__(self):
        # never print key material
        return f'Identity(label={self._label!r}, mspid={self._mspid!r})'


class SigningIdentity(object):
    """Signs messages on behalf of an ``Identity``."""

    def __init__(self, identity, crypto_suite=None):
        if not isinstance(identity, Identity):
            raise TypeError('"identity" must be an Identity instance')

        self._identity = identity
        self._crypto_suite = crypto_suite or ecies()
        self._key = self._crypto_suite.load_private_key(identity.private_key)

    @property
    def identity(self):
        return self._identity

    @property
    def mspid(self):
        return self._identity.mspid

    @property
    def certificate(self):
        return self._identity.certificate

    def sign(self, message):
        return self._crypto_suite.sign(self._key, message)

    def serialize(self):
        """The creator bytes: a serialized msp.SerializedIdentity."""
        return create_serialized_identity(self._identity.mspid, self._identity.certificate)


def verify_signature(certificate_pem, message, signature, crypto_suite=None):
    crypto_suite = crypto_suite or ecies()
    try:
        cert = crypto_suite.load_certificate(certificate_pem)
    except ValueError as e:
        _logger.debug(f'verify_signature - bad certificate: {e}')
        return False
    return crypto_suite.verify(cert.public_key(), message, signature)
