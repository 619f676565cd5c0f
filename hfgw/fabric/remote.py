import asyncio
import logging
from urllib.parse import urlparse

import grpc

from hfgw.fabric.errors import FabricConnectionError

MAX_SEND = 'grpc.max_send_message_length'
MAX_RECEIVE = 'grpc.max_receive_message_length'
SSL_TARGET_NAME_OVERRIDE = 'ssl-target-name-override'

ROLE_ENDORSING_PEER = 'endorsingPeer'
ROLE_COMMITTING_PEER = 'committingPeer'
ROLE_ORDERER = 'orderer'

_logger = logging.getLogger(__name__)


class Endpoint(object):
    """A resolved peer or orderer address with its organization and TLS roots.

    Endpoints are immutable; a new topology resolution produces new ones.
    """

    __slots__ = ('_name', '_url', '_mspid', '_role', '_tls_ca_certs', '_host_override',
                 '_protocol', '_host', '_port', '_ledger_height', '_chaincodes')

    def __init__(self, name, url, mspid, role, tls_ca_certs=None, host_override=None,
                 ledger_height=0, chaincodes=None):
        purl = urlparse(url if '://' in url else f'grpcs://{url}')
        if purl.scheme not in ('grpc', 'grpcs'):
            raise ValueError(f'Invalid protocol: {purl.scheme}. URLs must begin with grpc:// or grpcs://')
        if not purl.hostname or not purl.port:
            raise ValueError(f'Invalid endpoint url {url}, expected host:port')
        if role not in (ROLE_ENDORSING_PEER, ROLE_COMMITTING_PEER, ROLE_ORDERER):
            raise ValueError(f'Invalid endpoint role {role}')
        if purl.scheme == 'grpcs' and not tls_ca_certs:
            raise ValueError(f'PEM encoded TLS CA certificate is required for {url}')

        if isinstance(tls_ca_certs, str):
            tls_ca_certs = tls_ca_certs.encode('utf-8')

        for slot, value in (('_name', name), ('_url', f'{purl.scheme}://{purl.hostname}:{purl.port}'),
                            ('_mspid', mspid), ('_role', role), ('_tls_ca_certs', tls_ca_certs),
                            ('_host_override', host_override), ('_protocol', purl.scheme),
                            ('_host', purl.hostname), ('_port', purl.port),
                            ('_ledger_height', ledger_height),
                            ('_chaincodes', frozenset(chaincodes) if chaincodes is not None else None)):
            object.__setattr__(self, slot, value)

    def __setattr__(self, name, value):
        raise AttributeError('Endpoint is immutable')

    @property
    def name(self):
        return self._name

    @property
    def url(self):
        return self._url

    @property
    def address(self):
        return f'{self._host}:{self._port}'

    @property
    def mspid(self):
        return self._mspid

    @property
    def role(self):
        return self._role

    @property
    def tls_ca_certs(self):
        return self._tls_ca_certs

    @property
    def host_override(self):
        return self._host_override

    @property
    def ledger_height(self):
        return self._ledger_height

    @property
    def chaincodes(self):
        """Names of the contracts installed on a discovered peer, None if unknown."""
        return self._chaincodes

    def is_tls(self):
        return self._protocol == 'grpcs'

    def is_peer(self):
        return self._role in (ROLE_ENDORSING_PEER, ROLE_COMMITTING_PEER)

    def _key(self):
        return self._name, self._url, self._mspid, self._role, self._tls_ca_certs, self._host_override

    def __eq__(self, other):
        if not isinstance(other, Endpoint):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self):
        return hash(self._key())

    def __repr__(self):
        return f'Endpoint({self._name!r}, {self._url!r}, mspid={self._mspid!r}, role={self._role!r})'


class Remote(object):
    """An authenticated gRPC channel to one endpoint for one identity."""

    def __init__(self, endpoint, identity, config):
        self._endpoint = endpoint
        self._identity = identity
        self._wait_for_ready_timeout = config.get_seconds('grpc-wait-for-ready-timeout')
        self._closed = False
        self._broken = False

        self._options = [
            (MAX_SEND, config.get(MAX_SEND)),
            (MAX_RECEIVE, config.get(MAX_RECEIVE)),
        ]
        if endpoint.host_override:
            self._options.append(('grpc.ssl_target_name_override', endpoint.host_override))
            self._options.append(('grpc.default_authority', endpoint.host_override))

        if endpoint.is_tls():
            creds = grpc.ssl_channel_credentials(
                root_certificates=endpoint.tls_ca_certs,
                private_key=identity.private_key.encode('utf-8'),
                certificate_chain=identity.certificate.encode('utf-8'))
            self._channel = grpc.aio.secure_channel(endpoint.address, creds, self._options)
        else:
            self._channel = grpc.aio.insecure_channel(endpoint.address, self._options)

        _logger.debug(f' ** Remote instance url: {endpoint.url}, name: {endpoint.name}, options loaded are:: {self._options}')

    @property
    def endpoint(self):
        return self._endpoint

    @property
    def name(self):
        return self._endpoint.name

    async def connect(self):
        try:
            await asyncio.wait_for(self._channel.channel_ready(), self._wait_for_ready_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise FabricConnectionError(
                f'Failed to connect before the deadline on {self._endpoint.url}')
        _logger.debug(f'connect - connected to {self._endpoint.url}')

    def is_healthy(self):
        if self._closed or self._broken:
            return False
        state = self._channel.get_state(try_to_connect=False)
        return state not in (grpc.ChannelConnectivity.SHUTDOWN,
                             grpc.ChannelConnectivity.TRANSIENT_FAILURE)

    async def close(self):
        if not self._closed:
            self._closed = True
            _logger.debug(f'close - closing connection {self._endpoint.address}')
            await self._channel.close()

    async def _call(self, method, call, stage):
        try:
            return await call
        except grpc.aio.AioRpcError as e:
            if e.code() == grpc.StatusCode.DEADLINE_EXCEEDED:
                # a slow answer is not a broken channel
                raise asyncio.TimeoutError(f'{method} exceeded its deadline on {self._endpoint.url}') from e
            if e.code() in (grpc.StatusCode.UNAVAILABLE, grpc.StatusCode.UNKNOWN,
                            grpc.StatusCode.INTERNAL):
                self._broken = True
            raise FabricConnectionError(f'{method} failed on {self._endpoint.url} ({e.code().name})',
                                        stage=stage, remote_message=e.details()) from e

    def __str__(self):
        return f'Remote: {self._endpoint.url}'
