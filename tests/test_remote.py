import asyncio

import grpc
import pytest

from fabric_fakes import ORDERER, PEER1, make_config, make_identity
from hfgw.fabric.errors import FabricConnectionError
from hfgw.fabric.orderer import Orderer
from hfgw.fabric.peer import Peer
from hfgw.fabric.remote import Endpoint, ROLE_ENDORSING_PEER, ROLE_ORDERER
from hfgw.protos import ab_pb2, common_pb2


def _rpc_error(code, details):
    return grpc.aio.AioRpcError(code, grpc.aio.Metadata(), grpc.aio.Metadata(), details=details)


async def _failing(code, details='peer says no'):
    raise _rpc_error(code, details)


class FakeBroadcastCall(object):

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []
        self.cancelled = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for response in self.responses:
            yield response

    def cancel(self):
        self.cancelled = True


class FakeBroadcastClient(object):

    def __init__(self, call):
        self.call = call
        self.timeout = None

    def Broadcast(self, request_iterator, timeout=None):
        self.call.requests.extend(request_iterator)
        self.timeout = timeout
        return self.call


def _peer():
    endpoint = Endpoint(PEER1, 'grpc://localhost:7051', 'Org1MSP', ROLE_ENDORSING_PEER)
    return Peer(endpoint, make_identity('appUser'), make_config())


def _orderer():
    endpoint = Endpoint(ORDERER, 'grpc://localhost:7050', 'OrdererMSP', ROLE_ORDERER)
    return Orderer(endpoint, make_identity('appUser'), make_config())


def test_deadline_exceeded_is_a_timeout_not_a_broken_channel():
    async def run_case():
        peer = _peer()
        try:
            with pytest.raises(asyncio.TimeoutError):
                await peer._call('CommitStatus', _failing(grpc.StatusCode.DEADLINE_EXCEEDED), 'commit')
            assert peer.is_healthy()
        finally:
            await peer.close()

    asyncio.run(run_case())


def test_unavailable_marks_the_channel_broken():
    async def run_case():
        peer = _peer()
        try:
            with pytest.raises(FabricConnectionError) as info:
                await peer._call('ProcessProposal', _failing(grpc.StatusCode.UNAVAILABLE), 'propose')
            assert info.value.stage == 'propose'
            assert info.value.remote_message == 'peer says no'
            assert not peer.is_healthy()
        finally:
            await peer.close()

    asyncio.run(run_case())


def test_application_status_keeps_the_channel():
    async def run_case():
        peer = _peer()
        try:
            with pytest.raises(FabricConnectionError):
                await peer._call('Discover', _failing(grpc.StatusCode.PERMISSION_DENIED), 'topology')
            assert peer.is_healthy()
        finally:
            await peer.close()

    asyncio.run(run_case())


def test_broadcast_streams_the_envelope_and_returns_first_response():
    envelope = common_pb2.Envelope(payload=b'payload', signature=b'signature')
    ack = ab_pb2.BroadcastResponse(status=common_pb2.SUCCESS)

    async def run_case():
        orderer = _orderer()
        call = FakeBroadcastCall([ack])
        orderer._orderer_client = FakeBroadcastClient(call)
        try:
            response = await orderer.broadcast(envelope, timeout=2.0)
        finally:
            await orderer.close()
        assert response.status == common_pb2.SUCCESS
        assert call.requests == [envelope]
        assert call.cancelled
        assert orderer._orderer_client.timeout == 2.0

    asyncio.run(run_case())


def test_broadcast_stream_without_response_is_connection_error():
    async def run_case():
        orderer = _orderer()
        orderer._orderer_client = FakeBroadcastClient(FakeBroadcastCall([]))
        try:
            with pytest.raises(FabricConnectionError) as info:
                await orderer.broadcast(common_pb2.Envelope(payload=b'payload'))
        finally:
            await orderer.close()
        assert info.value.stage == 'order'

    asyncio.run(run_case())
