import hashlib
import logging
import os

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature, encode_dss_signature
from cryptography.x509.oid import NameOID

_logger = logging.getLogger(__name__)

DEFAULT_NONCE_SIZE = 24

# order of the P-256 and P-384 curves, used for low-S normalization
CURVE_P_256_Size = 256
CURVE_P_384_Size = 384
_CURVE_ORDER = {
    CURVE_P_256_Size: 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551,
    CURVE_P_384_Size: 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFC7634D81F4372DDF581A0DB248B0A77AECEC196ACCC52973,
}


def _to_bytes(value):
    if isinstance(value, bytes):
        return value
    return value.encode('utf-8')


def generate_nonce(size=DEFAULT_NONCE_SIZE):
    return os.urandom(size)


class Ecies(object):
    """ECDSA crypto suite used for identities, proposals and CA requests."""

    def __init__(self, security_level=CURVE_P_256_Size):
        if security_level == CURVE_P_256_Size:
            self._curve = ec.SECP256R1
            self._hash = hashes.SHA256
        elif security_level == CURVE_P_384_Size:
            self._curve = ec.SECP384R1
            self._hash = hashes.SHA384
        else:
            raise ValueError(f'Unsupported security level {security_level}')
        self._security_level = security_level
        self._order = _CURVE_ORDER[security_level]

    @property
    def security_level(self):
        return self._security_level

    def hash(self, message):
        if self._security_level == CURVE_P_256_Size:
            return hashlib.sha256(_to_bytes(message))
        return hashlib.sha384(_to_bytes(message))

    def generate_private_key(self):
        return ec.generate_private_key(self._curve())

    def sign(self, private_key, message):
        """Sign ``message`` and return a DER signature with a low S value."""
        signature = private_key.sign(_to_bytes(message), ec.ECDSA(self._hash()))
        return self._prevent_malleability(signature)

    def verify(self, public_key, message, signature):
        if not self._check_malleability(signature):
            return False
        try:
            public_key.verify(signature, _to_bytes(message), ec.ECDSA(self._hash()))
        except InvalidSignature:
            return False
        return True

    def _prevent_malleability(self, signature):
        r, s = decode_dss_signature(signature)
        if s > self._order // 2:
            s = self._order - s
        return encode_dss_signature(r, s)

    def _check_malleability(self, signature):
        try:
            _, s = decode_dss_signature(signature)
        except ValueError:
            return False
        return s <= self._order // 2

    def generate_csr(self, private_key, common_name):
        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
        csr = x509.CertificateSigningRequestBuilder().subject_name(subject) \
            .sign(private_key, self._hash())
        return csr.public_bytes(serialization.Encoding.PEM)

    @staticmethod
    def load_private_key(pem):
        key = serialization.load_pem_private_key(_to_bytes(pem), password=None)
        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise ValueError('Private key must be an elliptic curve key')
        return key

    @staticmethod
    def load_certificate(pem):
        return x509.load_pem_x509_certificate(_to_bytes(pem))

    @staticmethod
    def private_key_to_pem(private_key):
        return private_key.private_bytes(encoding=serialization.Encoding.PEM,
                                         format=serialization.PrivateFormat.PKCS8,
                                         encryption_algorithm=serialization.NoEncryption())

    @staticmethod
    def key_matches_certificate(private_key_pem, certificate_pem):
        try:
            key = Ecies.load_private_key(private_key_pem)
            cert = Ecies.load_certificate(certificate_pem)
        except ValueError as e:
            _logger.debug(f'key_matches_certificate - unable to load material: {e}')
            return False

        public_format = serialization.PublicFormat.SubjectPublicKeyInfo
        key_pub = key.public_key().public_bytes(serialization.Encoding.DER, public_format)
        cert_pub = cert.public_key().public_bytes(serialization.Encoding.DER, public_format)
        return key_pub == cert_pub


def ecies(security_level=CURVE_P_256_Size):
    return Ecies(security_level)
