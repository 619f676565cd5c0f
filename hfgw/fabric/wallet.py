import json
import logging
import re

from hfgw.fabric.errors import DuplicateIdentityError, IdentityNotFoundError
from hfgw.fabric.msp.identity import Identity
from hfgw.util.crypto.crypto import Ecies
from hfgw.util.keyvaluestore import FileKeyValueStore

_logger = logging.getLogger(__name__)

WALLET_FILE_SUFFIX = '.id'
IDENTITY_VERSION = 1
IDENTITY_TYPE = 'X.509'

_LABEL_PATTERN = re.compile(r'^[A-Za-z0-9@_][A-Za-z0-9@._-]*$')


class Wallet(object):
    """Durable store of identities keyed by label.

    Each identity is a JSON document ``<label>.id`` in the wallet directory.
    ``remove`` of an absent label is a no-op.
    """

    def __init__(self, path=None, store=None):
        if store is None:
            if not path:
                raise ValueError('Wallet requires a "path" or a "store"')
            store = FileKeyValueStore(path, suffix=WALLET_FILE_SUFFIX)
        self._store = store

    @property
    def path(self):
        return self._store.path

    def put(self, label, identity, overwrite=False):
        method = 'put'
        _check_label(label)
        if not isinstance(identity, Identity):
            raise TypeError('"identity" must be an Identity instance')
        if identity.label != label:
            identity = identity.with_label(label)

        if not Ecies.key_matches_certificate(identity.private_key, identity.certificate):
            raise ValueError(f'Private key and certificate of identity "{label}" do not form a key pair')

        try:
            self._store.set_value(label, _to_json(identity), overwrite=overwrite)
        except FileExistsError:
            _logger.error(f'{method} - identity {label} already exists')
            raise DuplicateIdentityError(f'Identity "{label}" already exists in the wallet')
        _logger.debug(f'{method} - stored identity {label} mspid: {identity.mspid}')

    def get(self, label):
        _check_label(label)
        data = self._store.get_value(label)
        if data is None:
            raise IdentityNotFoundError(f'Identity "{label}" not found in the wallet')
        return _from_json(label, data)

    def exists(self, label):
        _check_label(label)
        return self._store.exists(label)

    def remove(self, label):
        _check_label(label)
        removed = self._store.delete(label)
        _logger.debug(f'remove - label {label} removed: {removed}')

    def list(self):
        """A lazy view of the stored labels; iterate it again to rescan."""
        return _LabelView(self._store)


class _LabelView(object):

    def __init__(self, store):
        self._store = store

    def __iter__(self):
        return iter(self._store.keys())


def _check_label(label):
    if not isinstance(label, str) or not _LABEL_PATTERN.match(label):
        raise ValueError(f'Invalid identity label: {label!r}')


def _to_json(identity):
    doc = {
        'version': IDENTITY_VERSION,
        'type': IDENTITY_TYPE,
        'mspId': identity.mspid,
        'credentials': {
            'certificate': identity.certificate,
            'privateKey': identity.private_key,
        },
        'issuerChain': list(identity.issuer_chain),
    }
    return json.dumps(doc, indent=2, sort_keys=True)


def _from_json(label, data):
    try:
        doc = json.loads(data)
        if doc.get('type', IDENTITY_TYPE) != IDENTITY_TYPE:
            raise ValueError(f"unsupported identity type {doc['type']}")
        credentials = doc['credentials']
        return Identity(label, doc['mspId'], credentials['certificate'], credentials['privateKey'],
                        doc.get('issuerChain', ()))
    except (ValueError, KeyError, TypeError) as e:
        raise ValueError(f'Corrupt identity "{label}" in wallet: {e}')
