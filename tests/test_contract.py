import pytest

from hfgw.fabric.contract import ContractHandle


def test_handles_are_values():
    a = ContractHandle('mychannel', 'fabcar', 'appUser')
    b = ContractHandle('mychannel', 'fabcar', 'appUser')
    assert a == b
    assert hash(a) == hash(b)
    assert a != ContractHandle('mychannel', 'fabcar', 'admin')
    with pytest.raises(AttributeError):
        a.contract_name = 'marbles'


@pytest.mark.parametrize('channel', ['MyChannel', '1channel', '', 'my_channel'])
def test_invalid_channel_names(channel):
    with pytest.raises(ValueError):
        ContractHandle(channel, 'fabcar', 'appUser')
