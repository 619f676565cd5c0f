import json
import os
import threading

import pytest

from fabric_fakes import make_identity
from hfgw.fabric.errors import DuplicateIdentityError, IdentityNotFoundError
from hfgw.fabric.msp.identity import Identity
from hfgw.fabric.wallet import Wallet
from hfgw.util.keyvaluestore import FileKeyValueStore


def test_put_then_get_returns_equal_identity(tmp_path):
    wallet = Wallet(str(tmp_path))
    identity = make_identity('appUser')
    wallet.put('appUser', identity)
    assert wallet.get('appUser') == identity


def test_get_missing_label_raises(tmp_path):
    wallet = Wallet(str(tmp_path))
    with pytest.raises(IdentityNotFoundError) as info:
        wallet.get('nobody')
    assert info.value.stage == 'identity'


def test_put_existing_label_requires_overwrite(tmp_path):
    wallet = Wallet(str(tmp_path))
    wallet.put('appUser', make_identity('appUser'))

    replacement = make_identity('appUser')
    with pytest.raises(DuplicateIdentityError):
        wallet.put('appUser', replacement)

    wallet.put('appUser', replacement, overwrite=True)
    assert wallet.get('appUser') == replacement


def test_remove_is_idempotent(tmp_path):
    wallet = Wallet(str(tmp_path))
    wallet.put('appUser', make_identity('appUser'))
    wallet.remove('appUser')
    wallet.remove('appUser')
    assert not wallet.exists('appUser')


def test_list_is_restartable_and_lazy(tmp_path):
    wallet = Wallet(str(tmp_path))
    labels = wallet.list()
    assert sorted(labels) == []

    wallet.put('admin', make_identity('admin'))
    wallet.put('appUser', make_identity('appUser'))
    assert sorted(labels) == ['admin', 'appUser']
    assert sorted(labels) == ['admin', 'appUser']


def test_identities_survive_a_new_wallet_instance(tmp_path):
    identity = make_identity('appUser')
    Wallet(str(tmp_path)).put('appUser', identity)
    assert Wallet(str(tmp_path)).get('appUser') == identity


def test_file_layout(tmp_path):
    identity = make_identity('appUser')
    Wallet(str(tmp_path)).put('appUser', identity)

    assert os.listdir(str(tmp_path)) == ['appUser.id']
    doc = json.loads((tmp_path / 'appUser.id').read_text())
    assert doc['type'] == 'X.509'
    assert doc['mspId'] == 'Org1MSP'
    assert doc['credentials']['certificate'] == identity.certificate


def test_put_rejects_mismatched_key_and_bad_labels(tmp_path):
    wallet = Wallet(str(tmp_path))
    a, b = make_identity('a'), make_identity('b')
    with pytest.raises(ValueError):
        wallet.put('a', Identity('a', 'Org1MSP', a.certificate, b.private_key))
    with pytest.raises(ValueError):
        wallet.put('../escape', a)


def test_identity_is_immutable():
    identity = make_identity('appUser')
    with pytest.raises(AttributeError):
        identity.mspid = 'Org2MSP'
    assert 'PRIVATE' not in repr(identity)


def test_concurrent_puts_of_one_label_store_exactly_one(tmp_path):
    wallet = Wallet(str(tmp_path))
    identities = [make_identity('appUser') for _ in range(8)]
    barrier = threading.Barrier(len(identities))
    stored, duplicates = [], []

    def put(identity):
        barrier.wait()
        try:
            wallet.put('appUser', identity)
            stored.append(identity)
        except DuplicateIdentityError:
            duplicates.append(identity)

    threads = [threading.Thread(target=put, args=(identity,)) for identity in identities]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(stored) == 1
    assert len(duplicates) == len(identities) - 1
    assert wallet.get('appUser') == stored[0]


def test_exclusive_set_value_keeps_first_value(tmp_path):
    store = FileKeyValueStore(str(tmp_path), suffix='.id')
    store.set_value('appUser', 'first', overwrite=False)
    with pytest.raises(FileExistsError):
        store.set_value('appUser', 'second', overwrite=False)

    assert store.get_value('appUser') == b'first'
    assert [name for name in os.listdir(str(tmp_path)) if name.startswith('.tmp-')] == []
