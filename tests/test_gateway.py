import asyncio
import json

import pytest
import yaml

from fabric_fakes import CHANNEL, CONTRACT, FakeNetwork, make_config, make_identity, profile
from hfgw.fabric.errors import EvaluationError, IdentityNotFoundError
from hfgw.fabric.gateway import Gateway
from hfgw.fabric.network_config import NetworkConfig
from hfgw.fabric.wallet import Wallet

CARS = {'CAR11': {'make': 'Toyota', 'model': 'Prius', 'colour': 'blue', 'owner': 'Tomoko'}}


def test_gateway_from_profile_evaluates_and_submits(tmp_path):
    path = tmp_path / 'connection.yaml'
    path.write_text(yaml.safe_dump(profile()))
    Wallet(str(tmp_path / 'wallet')).put('appUser', make_identity('appUser'))
    network = FakeNetwork(CARS)

    async def run_case():
        gateway = Gateway.from_profile(str(path), config=make_config(), connector=network.connector)
        async with gateway.connect('appUser'):
            contract = gateway.get_network(CHANNEL).get_contract(CONTRACT)

            car = json.loads(await contract.evaluate_transaction('QueryCar', 'CAR11'))
            assert car['owner'] == 'Tomoko'

            with pytest.raises(EvaluationError) as info:
                await contract.evaluate_transaction('QueryCar', 'CAR999')
            assert 'does not exist' in str(info.value)

            assert await contract.submit_transaction('CreateCar', 'CAR20', 'Honda', 'Accord', 'black', 'Tom') == b''
            outcome = await contract.get_transaction_status(network.orderer.tx_ids()[0])
            assert outcome.is_valid()

        assert all(peer.closed for peer in network.peers.values())
        with pytest.raises(RuntimeError):
            gateway.get_network(CHANNEL)

    asyncio.run(run_case())


def test_connect_with_unknown_identity(tmp_path):
    gateway = Gateway(NetworkConfig(profile()), Wallet(str(tmp_path)), config=make_config())
    with pytest.raises(IdentityNotFoundError):
        gateway.connect('nobody')


def test_networks_are_reused(tmp_path):
    wallet = Wallet(str(tmp_path))
    wallet.put('appUser', make_identity('appUser'))
    gateway = Gateway(NetworkConfig(profile()), wallet, config=make_config()).connect('appUser')

    network = gateway.get_network(CHANNEL)
    assert gateway.get_network(CHANNEL) is network
    assert network.get_contract(CONTRACT).handle.identity_label == 'appUser'
    asyncio.run(gateway.close())
