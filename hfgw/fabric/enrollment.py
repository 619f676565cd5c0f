import logging

from hfgw.fabric.config.config import Config
from hfgw.fabric.errors import DuplicateIdentityError, EnrollmentError
from hfgw.fabric.msp.identity import Identity

_logger = logging.getLogger(__name__)


class EnrollmentClient(object):
    """Obtains identities from a certificate authority and stores them in a wallet.

    Enrolling a label that already exists in the wallet is rejected with
    ``DuplicateIdentityError``; ``reenroll`` is the explicit way to replace
    an identity. The first admin identity is provisioned out of band.
    """

    def __init__(self, wallet, config=None):
        self._wallet = wallet
        self._config = config or Config()

    def connect(self, certificate_authority, session=None, allow_insecure=False):
        """Open a session to ``certificate_authority``, for use as a context manager."""
        return certificate_authority.connect(self._config, session=session, allow_insecure=allow_insecure)

    def register_user(self, ca_service, admin_identity, label, affiliation, attributes=None,
                      role='client', max_enrollments=None):
        """Register ``label`` at the CA and return its one-time enrollment secret."""
        method = 'register_user'
        admin = self._resolve(admin_identity)
        _logger.debug(f'{method} - registrar {admin.label} registering {label} in {affiliation}')

        secret = ca_service.register(admin, label, affiliation, role=role,
                                     attrs=_build_attributes(attributes),
                                     max_enrollments=max_enrollments)
        _logger.info(f'{method} - successfully registered user "{label}"')
        return secret

    def enroll(self, ca_service, label, secret, mspid):
        method = 'enroll'
        if self._wallet.exists(label):
            raise DuplicateIdentityError(f'An identity for the user "{label}" already exists in the wallet')

        identity = self._request_certificate(
            label, mspid, lambda csr: ca_service.enroll(label, secret, csr), ca_service.crypto)
        self._wallet.put(label, identity)
        _logger.info(f'{method} - successfully enrolled user "{label}" and imported it into the wallet')
        return identity

    def reenroll(self, ca_service, label):
        """Renew the certificate of ``label`` with a fresh key pair, replacing it in the wallet."""
        method = 'reenroll'
        current = self._wallet.get(label)

        identity = self._request_certificate(
            label, current.mspid, lambda csr: ca_service.reenroll(current, csr), ca_service.crypto)
        self._wallet.put(label, identity, overwrite=True)
        _logger.info(f'{method} - replaced identity "{label}" with a renewed certificate')
        return identity

    def revoke(self, ca_service, admin_identity, label, reason=None):
        """Revoke ``label`` at the CA and delete it from the wallet."""
        admin = self._resolve(admin_identity)
        result = ca_service.revoke(admin, label, reason=reason)
        self._wallet.remove(label)
        _logger.info(f'revoke - revoked "{label}" and removed it from the wallet')
        return result

    def _resolve(self, identity):
        if isinstance(identity, Identity):
            return identity
        return self._wallet.get(identity)

    @staticmethod
    def _request_certificate(label, mspid, send_csr, crypto):
        private_key = crypto.generate_private_key()
        csr = crypto.generate_csr(private_key, label)
        certificate, chain = send_csr(csr)

        try:
            crypto.load_certificate(certificate)
        except ValueError as e:
            raise EnrollmentError(f'Certificate returned for "{label}" cannot be parsed', remote_message=str(e))

        key_pem = crypto.private_key_to_pem(private_key)
        if not crypto.key_matches_certificate(key_pem, certificate):
            raise EnrollmentError(f'Certificate returned for "{label}" does not match the generated key')

        return Identity(label, mspid, certificate, key_pem, chain)


def _build_attributes(attributes):
    """Accept ``{'name': 'value'}`` or Fabric CA ``[{'name', 'value', 'ecert'}]``."""
    if not attributes:
        return None
    if isinstance(attributes, dict):
        return [{'name': name, 'value': str(value), 'ecert': True} for name, value in attributes.items()]
    return list(attributes)
