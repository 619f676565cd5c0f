import logging

from hfgw.fabric.errors import STAGE_COMMIT, STAGE_PROPOSE, STAGE_TOPOLOGY
from hfgw.fabric.remote import Remote
from hfgw.protos import gateway_pb2_grpc, peer_pb2_grpc, protocol_pb2_grpc

_logger = logging.getLogger(__name__)


class Peer(Remote):
    """Connection to a peer: endorsement, discovery and commit status."""

    def __init__(self, endpoint, identity, config):
        super(Peer, self).__init__(endpoint, identity, config)

        self._endorser_client = peer_pb2_grpc.EndorserStub(self._channel)
        self._discovery_client = protocol_pb2_grpc.DiscoveryStub(self._channel)
        self._gateway_client = gateway_pb2_grpc.GatewayStub(self._channel)

    async def process_proposal(self, signed_proposal, timeout=None):
        if signed_proposal is None:
            raise ValueError('Missing proposal to send to peer')
        _logger.debug(f'process_proposal - sending to {self.name}')
        return await self._call('ProcessProposal',
                                self._endorser_client.ProcessProposal(signed_proposal, timeout=timeout),
                                STAGE_PROPOSE)

    async def discover(self, request, timeout=None):
        if request is None:
            raise ValueError('Missing request to send to peer discovery service')
        _logger.debug(f'discover - sending to {self.name}')
        return await self._call('Discover', self._discovery_client.Discover(request, timeout=timeout),
                                STAGE_TOPOLOGY)

    async def commit_status(self, request, timeout=None):
        """Block until the peer has committed the transaction in ``request``."""
        _logger.debug(f'commit_status - waiting on {self.name}')
        return await self._call('CommitStatus', self._gateway_client.CommitStatus(request, timeout=timeout),
                                STAGE_COMMIT)

    def __str__(self):
        return f'Peer: {self._endpoint.url}'
