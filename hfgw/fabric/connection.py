import asyncio
import logging
import time
from contextlib import asynccontextmanager

from hfgw.fabric.errors import FabricConnectionError
from hfgw.fabric.orderer import Orderer
from hfgw.fabric.peer import Peer
from hfgw.util.keyedlock import KeyedLock

_logger = logging.getLogger(__name__)


def grpc_connector(config):
    """Build the default connector: a gRPC channel with mutual TLS per endpoint."""

    async def connect(endpoint, identity):
        remote_class = Peer if endpoint.is_peer() else Orderer
        remote = remote_class(endpoint, identity, config)
        try:
            await remote.connect()
        except BaseException:
            await remote.close()
            raise
        return remote

    return connect


class _PoolEntry(object):

    __slots__ = ('connection', 'last_used')

    def __init__(self, connection, now):
        self.connection = connection
        self.last_used = now


class ConnectionManager(object):
    """Owns live connections, pooled per (endpoint, identity).

    Establishing and evicting a connection is serialized per pool key, so
    concurrent callers for the same key share a single connect attempt.
    Reusing a healthy pooled connection takes no lock. Once the first
    connection is requested, a background task closes idle connections
    every ``connection-sweep-interval`` until the manager is closed.
    """

    def __init__(self, config, connector=None, clock=time.monotonic):
        self._connector = connector or grpc_connector(config)
        self._clock = clock
        self._pool = {}
        self._locks = KeyedLock()
        self._closed = False

        self._retry_count = config.get_int('connection-retry-count')
        self._retry_delay = config.get_seconds('connection-retry-delay')
        self._retry_backoff = config.get('connection-retry-backoff')
        self._retry_max_delay = config.get_seconds('connection-retry-max-delay')
        self._idle_timeout = config.get_seconds('connection-idle-timeout')
        self._sweep_interval = config.get_seconds('connection-sweep-interval')
        self._sweeper = None
        if self._retry_count < 0:
            raise ValueError('Config setting "connection-retry-count" must not be negative')

    @staticmethod
    def pool_key(endpoint, identity):
        return endpoint.name, endpoint.url, identity.label, identity.fingerprint

    def __len__(self):
        return len(self._pool)

    async def get_connection(self, endpoint, identity):
        if self._closed:
            raise FabricConnectionError('Connection manager is closed')
        self._start_sweeper()

        key = self.pool_key(endpoint, identity)
        connection = self._reusable(key)
        if connection is not None:
            return connection

        async with self._locks.hold(key):
            connection = self._reusable(key)
            if connection is not None:
                return connection

            await self._discard(key)
            connection = await self._connect_with_retry(endpoint, identity)
            if self._closed:
                await connection.close()
                raise FabricConnectionError('Connection manager is closed')
            self._pool[key] = _PoolEntry(connection, self._clock())
            _logger.debug(f'get_connection - pooled new connection to {endpoint.name} for {identity.label}')
            return connection

    @asynccontextmanager
    async def connection(self, endpoint, identity):
        """Use a pooled connection; evict it if the body hits a transport failure."""
        connection = await self.get_connection(endpoint, identity)
        try:
            yield connection
        except FabricConnectionError:
            await self.evict(endpoint, identity, connection)
            raise

    async def evict(self, endpoint, identity, connection=None):
        key = self.pool_key(endpoint, identity)
        async with self._locks.hold(key):
            entry = self._pool.get(key)
            if entry is None:
                return
            if connection is not None and entry.connection is not connection:
                return
            _logger.info(f'evict - dropping connection to {endpoint.name} for {identity.label}')
            await self._discard(key)

    async def sweep_idle(self):
        now = self._clock()
        expired = [key for key, entry in self._pool.items() if now - entry.last_used > self._idle_timeout]
        for key in expired:
            async with self._locks.hold(key):
                entry = self._pool.get(key)
                if entry is not None and self._clock() - entry.last_used > self._idle_timeout:
                    _logger.debug(f'sweep_idle - closing idle connection {key[0]}')
                    await self._discard(key)
        return len(expired)

    async def close(self):
        self._closed = True
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None and not sweeper.done():
            sweeper.cancel()
            await asyncio.gather(sweeper, return_exceptions=True)

        keys = list(self._pool)
        _logger.debug(f'close - closing {len(keys)} connections')
        for key in keys:
            async with self._locks.hold(key):
                await self._discard(key)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _start_sweeper(self):
        if self._sweep_interval <= 0:
            return
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.ensure_future(self._sweep_periodically())

    async def _sweep_periodically(self):
        while not self._closed:
            await asyncio.sleep(self._sweep_interval)
            closed = await self.sweep_idle()
            if closed:
                _logger.debug(f'_sweep_periodically - closed {closed} idle connections')

    def _reusable(self, key):
        entry = self._pool.get(key)
        if entry is None:
            return None
        now = self._clock()
        if now - entry.last_used > self._idle_timeout or not entry.connection.is_healthy():
            return None
        entry.last_used = now
        return entry.connection

    async def _discard(self, key):
        entry = self._pool.pop(key, None)
        if entry is not None:
            try:
                await entry.connection.close()
            except FabricConnectionError as e:
                _logger.warning(f'_discard - error closing connection {key[0]}: {e}')

    async def _connect_with_retry(self, endpoint, identity):
        method = '_connect_with_retry'
        attempts = self._retry_count + 1
        delay = self._retry_delay
        last_error = None

        for attempt in range(1, attempts + 1):
            try:
                return await self._connector(endpoint, identity)
            except (FabricConnectionError, OSError) as e:
                last_error = e
                _logger.warning(f'{method} - attempt {attempt}/{attempts} to {endpoint.url} failed: {e}')

            if attempt < attempts:
                await asyncio.sleep(delay)
                delay = min(delay * self._retry_backoff, self._retry_max_delay)

        remote_message = getattr(last_error, 'remote_message', None) or str(last_error)
        raise FabricConnectionError(f'Unable to connect to {endpoint.name} ({endpoint.url}) after {attempts} attempts',
                                    remote_message=remote_message)
