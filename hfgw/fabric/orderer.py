import logging

from hfgw.fabric.errors import STAGE_ORDER, FabricConnectionError
from hfgw.fabric.remote import Remote
from hfgw.protos import ab_pb2_grpc
from hfgw.protos.utils import stream_envelope

_logger = logging.getLogger(__name__)


class Orderer(Remote):

    def __init__(self, endpoint, identity, config):
        super(Orderer, self).__init__(endpoint, identity, config)

        self._orderer_client = ab_pb2_grpc.AtomicBroadcastStub(self._channel)

    async def broadcast(self, envelope, timeout=None):
        """Send one envelope and return the orderer's ``BroadcastResponse``."""
        _logger.debug('broadcast - start')

        if envelope is None:
            _logger.debug('broadcast ERROR - missing envelope')
            raise ValueError('Missing data - Nothing to broadcast')

        # this is a stream response
        call = self._orderer_client.Broadcast(stream_envelope(envelope), timeout=timeout)
        return await self._call('Broadcast', self._first_response(call), STAGE_ORDER)

    async def _first_response(self, call):
        try:
            async for response in call:
                return response
        finally:
            call.cancel()
        raise FabricConnectionError(f'Broadcast stream from {self._endpoint.url} closed without a response',
                                    stage=STAGE_ORDER)

    def __str__(self):
        return f'Orderer: {self._endpoint.url}'
