import asyncio
import json
import logging

import pytest

from fabric_fakes import CHANNEL, CONTRACT, ORDERER, PEER1, PEER2, FakeNetwork, envelope_action, make_config, \
    make_identity, profile
from hfgw.fabric.connection import ConnectionManager
from hfgw.fabric.contract import ContractHandle
from hfgw.fabric.errors import CommitRejectedError, CommitTimeoutError, EndorsementError, \
    EndorsementMismatchError, EvaluationError, FabricConnectionError, SubmitError
from hfgw.fabric.network_config import NetworkConfig
from hfgw.fabric.topology import TopologyResolver
from hfgw.fabric.transaction import engine as engine_module
from hfgw.fabric.transaction.engine import TransactionEngine
from hfgw.fabric.transaction.tx_context import Transaction, TxState
from hfgw.fabric.wallet import Wallet
from hfgw.protos import proposal_pb2

CARS = {
    'CAR11': {'make': 'Toyota', 'model': 'Prius', 'colour': 'blue', 'owner': 'Tomoko'},
    'CAR12': {'make': 'Ford', 'model': 'Mustang', 'colour': 'red', 'owner': 'Brad'},
}
HANDLE = ContractHandle(CHANNEL, CONTRACT, 'appUser')
NEW_CAR = ['CAR20', 'Honda', 'Accord', 'black', 'Tom']


def _engine(tmp_path, network, **settings):
    wallet = Wallet(str(tmp_path / 'wallet'))
    wallet.put('appUser', make_identity('appUser'))
    config = make_config(**settings)
    manager = ConnectionManager(config, connector=network.connector)
    resolver = TopologyResolver(NetworkConfig(profile()), config, connection_manager=manager)
    return TransactionEngine(wallet, resolver, manager, config)


def _proposal_count(network):
    return sum(len(peer.proposals) for peer in network.peers.values())


def test_evaluate_returns_peer_payload_unchanged(tmp_path):
    network = FakeNetwork(CARS)
    engine = _engine(tmp_path, network)

    payload = asyncio.run(engine.evaluate(HANDLE, 'QueryCar', ['CAR11']))
    assert payload == json.dumps(CARS['CAR11']).encode('utf-8')
    assert _proposal_count(network) == 1
    assert len(network.peers[PEER1].proposals) == 1
    assert network.orderer.envelopes == []


def test_evaluate_missing_car_carries_peer_message(tmp_path):
    network = FakeNetwork(CARS)
    engine = _engine(tmp_path, network)

    with pytest.raises(EvaluationError) as info:
        asyncio.run(engine.evaluate(HANDLE, 'QueryCar', ['CAR999']))
    assert info.value.remote_message == 'CAR999 does not exist'
    assert info.value.stage == 'propose'
    assert info.value.tx_id
    assert _proposal_count(network) == 1


def test_evaluate_fails_over_to_another_peer(tmp_path):
    network = FakeNetwork(CARS)
    network.peers[PEER1].fail_transport = True
    engine = _engine(tmp_path, network)

    payload = asyncio.run(engine.evaluate(HANDLE, 'QueryCar', ['CAR12']))
    assert json.loads(payload) == CARS['CAR12']
    assert len(network.peers[PEER2].proposals) == 1


def test_evaluate_with_every_peer_unreachable(tmp_path):
    network = FakeNetwork(CARS)
    network.unreachable = {PEER1, PEER2}
    engine = _engine(tmp_path, network)

    with pytest.raises(FabricConnectionError):
        asyncio.run(engine.evaluate(HANDLE, 'QueryCar', ['CAR11']))


def test_submit_commits(tmp_path):
    network = FakeNetwork(CARS)
    engine = _engine(tmp_path, network)

    transaction = asyncio.run(engine.submit(HANDLE, 'CreateCar', NEW_CAR))
    assert transaction.state is TxState.COMMITTED
    assert transaction.history == [TxState.BUILT, TxState.PROPOSED, TxState.ENDORSED, TxState.ORDERED,
                                   TxState.COMMITTED]
    assert transaction.outcome.is_valid()
    assert transaction.outcome.tx_id == transaction.tx_id
    assert [p[0] for p in network.peers[PEER1].proposals] == [transaction.tx_id]
    assert [p[0] for p in network.peers[PEER2].proposals] == [transaction.tx_id]
    assert network.orderer.tx_ids() == [transaction.tx_id]


def test_submit_endorsement_failure_never_reaches_orderer(tmp_path, caplog):
    caplog.set_level(logging.DEBUG, logger='hfgw.fabric.transaction.tx_context')
    network = FakeNetwork(CARS)
    engine = _engine(tmp_path, network)

    with pytest.raises(EndorsementError) as info:
        asyncio.run(engine.submit(HANDLE, 'UpdateCar', ['nonexistent-id', 'Dave']))
    assert not isinstance(info.value, EndorsementMismatchError)
    assert 'does not exist' in info.value.remote_message
    assert network.orderer.envelopes == []
    assert all(name != ORDERER for name, _ in network.connects)
    assert 'PROPOSED -> ENDORSEMENT_FAILED' in caplog.text


def test_submit_disagreeing_endorsers(tmp_path):
    network = FakeNetwork(CARS)
    network.peers[PEER2].digest_override = 'different-write-set'
    engine = _engine(tmp_path, network)

    with pytest.raises(EndorsementMismatchError) as info:
        asyncio.run(engine.submit(HANDLE, 'CreateCar', NEW_CAR))
    assert info.value.stage == 'endorse'
    assert network.orderer.envelopes == []


def test_submit_unsigned_endorsement(tmp_path):
    network = FakeNetwork(CARS)
    network.peers[PEER1].unsigned = True

    with pytest.raises(EndorsementError):
        asyncio.run(_engine(tmp_path / 'a', network).submit(HANDLE, 'CreateCar', NEW_CAR))
    assert network.orderer.envelopes == []

    transaction = asyncio.run(_engine(tmp_path / 'b', network, **{'verify-endorsements': False})
                              .submit(HANDLE, 'CreateCar', NEW_CAR))
    assert transaction.state is TxState.COMMITTED


def test_submit_endorser_timeout(tmp_path):
    network = FakeNetwork(CARS)
    network.peers[PEER2].delay = 0.5
    engine = _engine(tmp_path, network, **{'propose-timeout': 50})

    with pytest.raises(EndorsementError) as info:
        asyncio.run(engine.submit(HANDLE, 'CreateCar', NEW_CAR))
    assert PEER2 in info.value.message
    assert network.orderer.envelopes == []


def test_submit_endorser_transport_failure_propagates(tmp_path):
    network = FakeNetwork(CARS)
    network.peers[PEER2].fail_transport = True
    engine = _engine(tmp_path, network)

    with pytest.raises(FabricConnectionError) as info:
        asyncio.run(engine.submit(HANDLE, 'CreateCar', NEW_CAR))
    assert info.value.remote_message == 'UNAVAILABLE'
    assert info.value.tx_id
    assert network.orderer.envelopes == []


def test_concurrent_submits_use_distinct_transaction_ids(tmp_path):
    network = FakeNetwork(CARS)
    engine = _engine(tmp_path, network)

    async def run_case():
        return await asyncio.gather(*[engine.submit(HANDLE, 'CreateCar', [f'CAR{100 + i}', 'Tesla', 'S', 'white', 'Ann'])
                                      for i in range(10)])

    transactions = asyncio.run(run_case())
    tx_ids = [t.tx_id for t in transactions]
    assert len(set(tx_ids)) == 10
    assert sorted(network.orderer.tx_ids()) == sorted(tx_ids)
    assert all(t.state is TxState.COMMITTED for t in transactions)


def test_orderer_rejection_is_submit_error(tmp_path):
    network = FakeNetwork(CARS)
    network.orderer.status = 'BAD_REQUEST'
    engine = _engine(tmp_path, network)

    with pytest.raises(SubmitError) as info:
        asyncio.run(engine.submit(HANDLE, 'CreateCar', NEW_CAR))
    assert info.value.stage == 'order'
    assert info.value.remote_message == 'rejected by fake orderer'
    assert network.peers[PEER1].commit_queries == []


def test_unreachable_orderer_is_submit_error(tmp_path):
    network = FakeNetwork(CARS)
    network.unreachable = {ORDERER}
    engine = _engine(tmp_path, network)

    with pytest.raises(SubmitError):
        asyncio.run(engine.submit(HANDLE, 'CreateCar', NEW_CAR))


def test_commit_timeout_then_requery(tmp_path):
    network = FakeNetwork(CARS)
    network.ledger.auto_commit = False
    engine = _engine(tmp_path, network, **{'commit-timeout': 100})

    async def run_case():
        with pytest.raises(CommitTimeoutError) as info:
            await engine.submit(HANDLE, 'CreateCar', NEW_CAR)
        tx_id = info.value.tx_id
        assert info.value.stage == 'commit'
        assert network.orderer.tx_ids() == [tx_id]

        with pytest.raises(CommitTimeoutError):
            await engine.get_transaction_status(HANDLE, tx_id)

        network.ledger.commit(tx_id)
        outcome = await engine.get_transaction_status(HANDLE, tx_id)
        assert outcome.tx_id == tx_id
        assert outcome.is_valid()

    asyncio.run(run_case())


def test_commit_rejected(tmp_path):
    network = FakeNetwork(CARS)
    network.ledger.commit_code = 'MVCC_READ_CONFLICT'
    engine = _engine(tmp_path, network)

    with pytest.raises(CommitRejectedError) as info:
        asyncio.run(engine.submit(HANDLE, 'CreateCar', NEW_CAR))
    assert info.value.validation_code == 'MVCC_READ_CONFLICT'
    assert info.value.tx_id == network.orderer.tx_ids()[0]


def test_transaction_rejects_illegal_transitions():
    class _Proposal(object):
        tx_id = 'abc'

    transaction = Transaction(_Proposal())
    with pytest.raises(RuntimeError):
        transaction.transition(TxState.ORDERED)
    transaction.transition(TxState.PROPOSED)
    transaction.transition(TxState.ENDORSEMENT_FAILED)
    with pytest.raises(RuntimeError):
        transaction.transition(TxState.ENDORSED)


def test_envelope_carries_every_endorsement_without_transient_data(tmp_path):
    network = FakeNetwork(CARS)
    engine = _engine(tmp_path, network)

    asyncio.run(engine.submit(HANDLE, 'CreateCar', NEW_CAR, transient_map={'price': b'20000'}))
    action = envelope_action(network.orderer.envelopes[0])
    endorsers = {e.endorser for e in action.action.endorsements}
    assert len(endorsers) == 2
    cc_payload = proposal_pb2.ChaincodeProposalPayload.FromString(action.chaincode_proposal_payload)
    assert len(cc_payload.TransientMap) == 0
    assert network.orderer.envelopes[0].signature


def test_cancelled_submit_stops_endorsers_and_never_orders(tmp_path):
    network = FakeNetwork(CARS)
    network.peers[PEER2].delay = 5
    engine = _engine(tmp_path, network)

    async def run_case():
        task = asyncio.ensure_future(engine.submit(HANDLE, 'CreateCar', NEW_CAR))
        while not network.peers[PEER1].proposals:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run_case())
    assert network.peers[PEER2].cancelled == 1
    assert network.peers[PEER2].proposals == []
    assert network.orderer.envelopes == []
    assert all(name != ORDERER for name, _ in network.connects)


def test_transaction_status_uses_caller_timeout(tmp_path):
    network = FakeNetwork(CARS)
    network.ledger.auto_commit = False
    engine = _engine(tmp_path, network, **{'commit-timeout': 100})

    async def run_case():
        with pytest.raises(CommitTimeoutError) as info:
            await engine.submit(HANDLE, 'CreateCar', NEW_CAR)
        tx_id = info.value.tx_id
        connects = len(network.connects)

        asyncio.get_running_loop().call_later(0.3, network.ledger.commit, tx_id)
        outcome = await engine.get_transaction_status(HANDLE, tx_id, timeout=2.0)
        assert outcome.is_valid()
        assert network.peers[PEER1].commit_timeouts[-1] == 2.0

        with pytest.raises(CommitTimeoutError):
            await engine.get_transaction_status(HANDLE, 'never-submitted', timeout=0.2)
        assert network.peers[PEER1].commit_timeouts[-1] == 0.2
        # an exceeded deadline leaves the pooled connections in place
        assert len(network.connects) == connects

    asyncio.run(run_case())


def test_commit_status_transport_failure_is_commit_timeout(tmp_path, caplog):
    caplog.set_level(logging.DEBUG, logger='hfgw.fabric.transaction.tx_context')
    network = FakeNetwork(CARS)
    network.peers[PEER1].fail_commit_status = True
    network.peers[PEER2].fail_commit_status = True
    engine = _engine(tmp_path, network)

    with pytest.raises(CommitTimeoutError) as info:
        asyncio.run(engine.submit(HANDLE, 'CreateCar', NEW_CAR))
    assert info.value.stage == 'commit'
    assert info.value.remote_message == 'UNAVAILABLE'
    assert info.value.tx_id == network.orderer.tx_ids()[0]
    assert 'ORDERED -> COMMIT_TIMEOUT' in caplog.text


def test_used_transaction_ids_are_bounded(tmp_path, monkeypatch):
    monkeypatch.setattr(engine_module, 'USED_TX_ID_MEMORY', 2)
    network = FakeNetwork(CARS)
    engine = _engine(tmp_path, network)

    async def run_case():
        for _ in range(5):
            await engine.evaluate(HANDLE, 'QueryCar', ['CAR11'])

    asyncio.run(run_case())
    assert len(engine._used_tx_ids) == 2
    assert len(engine._used_tx_id_order) == 2
