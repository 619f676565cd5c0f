import logging

from hfgw.fabric.config.config import Config
from hfgw.fabric.connection import ConnectionManager
from hfgw.fabric.contract import ContractHandle
from hfgw.fabric.network_config import NetworkConfig
from hfgw.fabric.topology import TopologyResolver
from hfgw.fabric.transaction.engine import TransactionEngine
from hfgw.fabric.wallet import Wallet

_logger = logging.getLogger(__name__)


class Gateway(object):
    """
        Main interaction handler with the application.
        A gateway binds one wallet identity to the network described by a
        connection profile and hands out networks and contracts.
    """

    def __init__(self, network_config, wallet, config=None, connector=None):
        if not isinstance(network_config, NetworkConfig):
            raise TypeError('"network_config" must be a NetworkConfig instance')
        if wallet is None:
            raise ValueError('Missing required parameter "wallet"')

        self._network_config = network_config
        self._wallet = wallet
        self._config = config or Config()
        self._connector = connector

        self._identity = None
        self._connection_manager = None
        self._resolver = None
        self._engine = None
        self._networks = {}

    @staticmethod
    def from_profile(path, wallet_path=None, config=None, connector=None):
        """Load a connection profile and open the wallet it names in ``client.credentialStore``."""
        network_config = NetworkConfig.load(path)
        wallet_path = wallet_path or network_config.credential_store_path
        if not wallet_path:
            raise ValueError('No wallet path given and the connection profile has no client.credentialStore.path')
        return Gateway(network_config, Wallet(wallet_path), config=config, connector=connector)

    @property
    def network_config(self):
        return self._network_config

    @property
    def wallet(self):
        return self._wallet

    @property
    def config(self):
        return self._config

    @property
    def identity(self):
        return self._identity

    def connect(self, identity_label, discovery=None):
        method = 'connect'
        _logger.debug(f'{method} - start')

        if self._engine is not None:
            raise RuntimeError('Gateway is already connected')

        self._identity = self._wallet.get(identity_label)
        self._connection_manager = ConnectionManager(self._config, connector=self._connector)
        self._resolver = TopologyResolver(self._network_config, self._config,
                                          connection_manager=self._connection_manager, discovery=discovery)
        self._engine = TransactionEngine(self._wallet, self._resolver, self._connection_manager, self._config)

        _logger.info(f'{method} - connected as {identity_label} ({self._identity.mspid}),'
                     f' discovery {"on" if self._resolver.discovery else "off"}')
        return self

    def get_network(self, channel_name):
        if self._engine is None:
            raise RuntimeError('Gateway is not connected, call connect() first')
        if channel_name not in self._networks:
            self._networks[channel_name] = Network(self._engine, self._identity.label, channel_name)
        return self._networks[channel_name]

    async def close(self):
        if self._connection_manager is not None:
            await self._connection_manager.close()
        self._connection_manager = None
        self._resolver = None
        self._engine = None
        self._networks = {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


class Network(object):
    """A channel reached through a connected gateway."""

    def __init__(self, engine, identity_label, channel_name):
        self._engine = engine
        self._identity_label = identity_label
        self._channel_name = channel_name

    @property
    def name(self):
        return self._channel_name

    def get_contract(self, contract_name):
        handle = ContractHandle(self._channel_name, contract_name, self._identity_label)
        return Contract(self._engine, handle)

    def __str__(self):
        return f'Network: {self._channel_name}'


class Contract(object):

    def __init__(self, engine, handle):
        self._engine = engine
        self._handle = handle

    @property
    def handle(self):
        return self._handle

    async def evaluate_transaction(self, function, *args, transient_map=None):
        return await self._engine.evaluate(self._handle, function, args, transient_map=transient_map)

    async def submit_transaction(self, function, *args, transient_map=None):
        """Submit and wait for commit; returns the agreed endorsement payload."""
        transaction = await self._engine.submit(self._handle, function, args, transient_map=transient_map)
        return transaction.result

    async def get_transaction_status(self, tx_id, timeout=None):
        return await self._engine.get_transaction_status(self._handle, tx_id, timeout=timeout)

    def __str__(self):
        return f'Contract: {self._handle.contract_name} on {self._handle.channel_name}'
