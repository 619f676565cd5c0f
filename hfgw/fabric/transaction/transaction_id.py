import logging

from hfgw.util.crypto.crypto import ecies, generate_nonce

_logger = logging.getLogger(__name__)


class TransactionID(object):
    """A transaction ID: sha256 of a fresh nonce and the creator's serialized identity."""

    def __init__(self, signer, crypto_suite=None):
        if not signer:
            raise ValueError('Missing signing identity parameter')

        crypto_suite = crypto_suite or ecies()
        self._nonce = generate_nonce()
        self._transaction_id = crypto_suite.hash(self._nonce + signer.serialize()).hexdigest()
        _logger.debug(f'const - transaction_id {self._transaction_id}')

    @property
    def transaction_id(self):
        return self._transaction_id

    @property
    def nonce(self):
        return self._nonce

    def __str__(self):
        return self._transaction_id
