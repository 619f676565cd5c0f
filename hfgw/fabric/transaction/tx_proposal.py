import hashlib
import logging

from google.protobuf.message import DecodeError

from hfgw.protos import chaincode_pb2, common_pb2, gateway_pb2, identities_pb2, proposal_pb2, \
    proposal_response_pb2, transaction_pb2
from hfgw.protos.utils import build_cc_proposal_payload, build_channel_header, build_header, build_proposal, \
    create_cc_spec, create_envelope, proto_b, sign_proposal

_logger = logging.getLogger(__name__)

SUCCESS_STATUS = 200
VALIDATION_CODE_VALID = transaction_pb2.TxValidationCode.Name(transaction_pb2.VALID)


def _proto_arg(arg):
    if isinstance(arg, (bytes, str)):
        return proto_b(arg)
    raise TypeError(f'Transaction arguments must be str or bytes, got {type(arg).__name__}')


class TransactionProposal(object):
    """A contract invocation to be simulated by endorsing peers.

    Immutable once built; the transaction ID correlates endorsements, the
    ordering envelope and the commit outcome.
    """

    def __init__(self, tx_id, channel_name, contract_name, function, args, signer, targets=(),
                 transient_map=None):
        if not function or not isinstance(function, str):
            raise ValueError('Missing "function" name for the transaction proposal')

        self._tx_id = tx_id
        self._channel_name = channel_name
        self._contract_name = contract_name
        self._function = function
        self._args = tuple(args)
        self._targets = tuple(targets)

        chaincode_input = chaincode_pb2.ChaincodeInput()
        chaincode_input.args.extend([proto_b(function)] + [_proto_arg(arg) for arg in self._args])
        chaincode_id = chaincode_pb2.ChaincodeID()
        chaincode_id.name = contract_name
        self._chaincode_spec = create_cc_spec(chaincode_input, chaincode_id)
        transient_map = {k: _proto_arg(v) for k, v in (transient_map or {}).items()}

        channel_header = build_channel_header(common_pb2.ENDORSER_TRANSACTION, channel_name, self.tx_id,
                                              chaincode_id=contract_name)
        self._header = build_header(signer.serialize(), channel_header, tx_id.nonce)
        self._proposal = build_proposal(self._chaincode_spec, self._header, transient_map)

    @property
    def tx_id(self):
        return self._tx_id.transaction_id

    @property
    def channel_name(self):
        return self._channel_name

    @property
    def contract_name(self):
        return self._contract_name

    @property
    def function(self):
        return self._function

    @property
    def args(self):
        return self._args

    @property
    def targets(self):
        return self._targets

    @property
    def header(self):
        return self._header

    @property
    def proposal(self):
        return self._proposal

    def sign(self, signer):
        return sign_proposal(signer, self._proposal)

    def chaincode_proposal_payload(self):
        # transient data goes to the endorsers only, never into the envelope
        return build_cc_proposal_payload(self._chaincode_spec).SerializeToString()

    def __repr__(self):
        return f'TransactionProposal({self.tx_id}, {self._contract_name}.{self._function})'


class EndorsementResponse(object):
    """One peer's answer to a proposal, unpacked from a ``ProposalResponse``."""

    def __init__(self, peer_name, tx_id, proposal_response):
        self.peer_name = peer_name
        self.tx_id = tx_id
        self.status = proposal_response.response.status
        self.message = proposal_response.response.message
        self.payload = proposal_response.response.payload
        self.response_payload = proposal_response.payload
        self.endorsement = proposal_response.endorsement

        self.endorser = identities_pb2.SerializedIdentity()
        self.rwset_digest = ''
        if self.is_success():
            self.endorser.ParseFromString(self.endorsement.endorser)
            self.rwset_digest = self._results_digest(self.response_payload)

    @staticmethod
    def _results_digest(response_payload):
        try:
            payload = proposal_response_pb2.ProposalResponsePayload.FromString(response_payload)
            action = proposal_pb2.ChaincodeAction.FromString(payload.extension)
        except DecodeError as e:
            _logger.debug(f'_results_digest - malformed proposal response payload: {e}')
            return ''
        return hashlib.sha256(action.results).hexdigest()

    @property
    def endorser_mspid(self):
        return self.endorser.mspid

    @property
    def endorser_certificate(self):
        return self.endorser.id_bytes

    @property
    def signature(self):
        return self.endorsement.signature

    def is_success(self):
        return SUCCESS_STATUS <= self.status < 400

    def signed_bytes(self):
        """Bytes an endorser signs: the response payload followed by its serialized identity."""
        return self.response_payload + self.endorsement.endorser

    def __repr__(self):
        return f'EndorsementResponse({self.peer_name}, status={self.status})'


class CommitOutcome(object):
    """Final ledger fate of a transaction."""

    def __init__(self, tx_id, validation_code, block_number=None):
        self._tx_id = tx_id
        self._validation_code = validation_code
        self._block_number = block_number

    @staticmethod
    def from_response(tx_id, response):
        return CommitOutcome(tx_id, transaction_pb2.TxValidationCode.Name(response.result),
                             int(response.block_number))

    @property
    def tx_id(self):
        return self._tx_id

    @property
    def validation_code(self):
        return self._validation_code

    @property
    def block_number(self):
        return self._block_number

    def is_valid(self):
        return self._validation_code == VALIDATION_CODE_VALID

    def __eq__(self, other):
        if not isinstance(other, CommitOutcome):
            return NotImplemented
        return (self._tx_id, self._validation_code, self._block_number) == \
            (other._tx_id, other._validation_code, other._block_number)

    def __hash__(self):
        return hash((self._tx_id, self._validation_code, self._block_number))

    def __repr__(self):
        return f'CommitOutcome({self._tx_id}, {self._validation_code}, block={self._block_number})'


def build_envelope(proposal, responses, signer):
    """Assemble agreeing endorsements into a signed envelope for the orderer."""
    endorsed_action = transaction_pb2.ChaincodeEndorsedAction()
    endorsed_action.proposal_response_payload = responses[0].response_payload
    endorsed_action.endorsements.extend([r.endorsement for r in responses])

    action_payload = transaction_pb2.ChaincodeActionPayload()
    action_payload.chaincode_proposal_payload = proposal.chaincode_proposal_payload()
    action_payload.action.CopyFrom(endorsed_action)

    tx_action = transaction_pb2.TransactionAction()
    tx_action.header = proposal.header.signature_header
    tx_action.payload = action_payload.SerializeToString()

    tx = transaction_pb2.Transaction()
    tx.actions.extend([tx_action])

    payload = common_pb2.Payload()
    payload.header.CopyFrom(proposal.header)
    payload.data = tx.SerializeToString()

    payload_bytes = payload.SerializeToString()
    return create_envelope(signer.sign(payload_bytes), payload_bytes)


def build_commit_status_request(channel_name, tx_id, signer):
    request = gateway_pb2.CommitStatusRequest()
    request.transaction_id = tx_id
    request.channel_id = channel_name
    request.identity = signer.serialize()

    request_bytes = request.SerializeToString()
    signed_request = gateway_pb2.SignedCommitStatusRequest()
    signed_request.request = request_bytes
    signed_request.signature = signer.sign(request_bytes)
    return signed_request
