import logging

from hfgw.fabric.msp.identity import Identity

_logger = logging.getLogger(__name__)


class Organization(object):
    def __init__(self, name, mspid, peers=None, certificate_authorities=None,
                 admin_private_key_pem=None, admin_cert_pem=None):
        _logger.debug('Organization.const')

        if not name:
            raise ValueError('Missing name parameter')
        if not mspid:
            raise ValueError('Missing mspid parameter')

        self._name = name
        self._mspid = mspid
        self._peers = list(peers or [])
        self._certificate_authorities = list(certificate_authorities or [])
        self._admin_private_key_pem = admin_private_key_pem
        self._admin_cert_pem = admin_cert_pem

    @property
    def name(self):
        return self._name

    @property
    def mspid(self):
        return self._mspid

    @property
    def peers(self):
        return list(self._peers)

    @property
    def certificate_authorities(self):
        return list(self._certificate_authorities)

    def has_admin(self):
        return bool(self._admin_private_key_pem and self._admin_cert_pem)

    def admin_identity(self, label):
        """The organization admin provisioned out of band in the profile."""
        if not self.has_admin():
            raise ValueError(f'Organization {self._name} has no adminPrivateKey/signedCert in the profile')
        return Identity(label, self._mspid, self._admin_cert_pem, self._admin_private_key_pem)

    def __str__(self):
        peers = ', '.join(self._peers)
        cas = ', '.join(self._certificate_authorities)

        return f'Organization {self._name}, mspid: {self._mspid}, peers {peers}, certificateAuthorities {cas}'
