import re

_CHANNEL_NAME_PATTERN = re.compile('^[a-z][a-z0-9.-]*$')


class ContractHandle(object):
    """Addresses a contract: (channel name, contract name, identity label).

    Handles hold no mutable state and are cheap to build per call.
    """

    __slots__ = ('_channel_name', '_contract_name', '_identity_label')

    def __init__(self, channel_name, contract_name, identity_label):
        if not isinstance(channel_name, str) or not _CHANNEL_NAME_PATTERN.match(channel_name):
            raise ValueError(f'channel name should match Regex {_CHANNEL_NAME_PATTERN.pattern},'
                             f' but got {channel_name}')
        if not contract_name:
            raise ValueError('Missing contract name')
        if not identity_label:
            raise ValueError('Missing identity label')

        object.__setattr__(self, '_channel_name', channel_name)
        object.__setattr__(self, '_contract_name', contract_name)
        object.__setattr__(self, '_identity_label', identity_label)

    def __setattr__(self, name, value):
        raise AttributeError('ContractHandle is immutable')

    @property
    def channel_name(self):
        return self._channel_name

    @property
    def contract_name(self):
        return self._contract_name

    @property
    def identity_label(self):
        return self._identity_label

    def __eq__(self, other):
        if not isinstance(other, ContractHandle):
            return NotImplemented
        return (self._channel_name, self._contract_name, self._identity_label) == \
            (other._channel_name, other._contract_name, other._identity_label)

    def __hash__(self):
        return hash((self._channel_name, self._contract_name, self._identity_label))

    def __repr__(self):
        return f'ContractHandle({self._channel_name!r}, {self._contract_name!r}, {self._identity_label!r})'
