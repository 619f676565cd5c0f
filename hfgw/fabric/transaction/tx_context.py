import enum
import logging

_logger = logging.getLogger(__name__)


class TxState(enum.Enum):
    BUILT = 'BUILT'
    PROPOSED = 'PROPOSED'
    ENDORSED = 'ENDORSED'
    ORDERED = 'ORDERED'
    COMMITTED = 'COMMITTED'
    ENDORSEMENT_FAILED = 'ENDORSEMENT_FAILED'
    SUBMIT_FAILED = 'SUBMIT_FAILED'
    COMMIT_TIMEOUT = 'COMMIT_TIMEOUT'
    COMMIT_REJECTED = 'COMMIT_REJECTED'


TERMINAL_STATES = frozenset([TxState.COMMITTED, TxState.ENDORSEMENT_FAILED, TxState.SUBMIT_FAILED,
                             TxState.COMMIT_TIMEOUT, TxState.COMMIT_REJECTED])

_TRANSITIONS = {
    TxState.BUILT: (TxState.PROPOSED,),
    TxState.PROPOSED: (TxState.ENDORSED, TxState.ENDORSEMENT_FAILED),
    TxState.ENDORSED: (TxState.ORDERED, TxState.SUBMIT_FAILED),
    TxState.ORDERED: (TxState.COMMITTED, TxState.COMMIT_TIMEOUT, TxState.COMMIT_REJECTED),
}


class Transaction(object):
    """State of one submit call. Owned by that call only."""

    def __init__(self, proposal):
        self._proposal = proposal
        self._state = TxState.BUILT
        self._history = [TxState.BUILT]
        self.endorsements = []
        self.result = None
        self.outcome = None

    @property
    def proposal(self):
        return self._proposal

    @property
    def tx_id(self):
        return self._proposal.tx_id

    @property
    def state(self):
        return self._state

    @property
    def history(self):
        return list(self._history)

    def transition(self, state):
        if state not in _TRANSITIONS.get(self._state, ()):
            raise RuntimeError(f'Illegal transaction state change {self._state.value} -> {state.value}')
        _logger.debug(f'transition - {self.tx_id} {self._state.value} -> {state.value}')
        self._state = state
        self._history.append(state)

    def __repr__(self):
        return f'Transaction({self.tx_id}, {self._state.value})'
