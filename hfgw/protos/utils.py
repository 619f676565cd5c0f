import hashlib

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from google.protobuf.timestamp_pb2 import Timestamp

from hfgw.protos import chaincode_pb2, common_pb2, identities_pb2, proposal_pb2

CC_TYPE_GOLANG = 'GOLANG'


def proto_b(value):
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode('utf-8')
    raise TypeError(f'Expected str or bytes, got {type(value).__name__}')


def current_timestamp():
    timestamp = Timestamp()
    timestamp.GetCurrentTime()
    return timestamp


def pem_to_der(pem):
    cert = x509.load_pem_x509_certificate(proto_b(pem))
    return cert.public_bytes(serialization.Encoding.DER)


def cert_hash(pem):
    """sha256 of the DER certificate, as bound into TLS-aware requests."""
    return hashlib.sha256(pem_to_der(pem)).digest()


def create_serialized_identity(mspid, certificate):
    serialized_identity = identities_pb2.SerializedIdentity()
    serialized_identity.mspid = mspid
    serialized_identity.id_bytes = proto_b(certificate)
    return serialized_identity.SerializeToString()


def create_cc_spec(chaincode_input, chaincode_id, type=CC_TYPE_GOLANG):
    chaincode_spec = chaincode_pb2.ChaincodeSpec()
    chaincode_spec.type = chaincode_pb2.ChaincodeSpec.Type.Value(type)
    chaincode_spec.chaincode_id.CopyFrom(chaincode_id)
    chaincode_spec.input.CopyFrom(chaincode_input)
    return chaincode_spec


def build_channel_header(type, channel_id, tx_id, epoch=0, chaincode_id=None, timestamp=None,
                         tls_cert_hash=None):
    channel_header = common_pb2.ChannelHeader()
    channel_header.type = type
    channel_header.version = 1
    channel_header.channel_id = channel_id
    channel_header.tx_id = tx_id
    channel_header.epoch = epoch
    channel_header.timestamp.CopyFrom(timestamp or current_timestamp())
    if chaincode_id:
        extension = proposal_pb2.ChaincodeHeaderExtension()
        extension.chaincode_id.name = chaincode_id
        channel_header.extension = extension.SerializeToString()
    if tls_cert_hash:
        channel_header.tls_cert_hash = tls_cert_hash
    return channel_header


def build_header(creator, channel_header, nonce):
    signature_header = common_pb2.SignatureHeader()
    signature_header.creator = creator
    signature_header.nonce = nonce

    header = common_pb2.Header()
    header.signature_header = signature_header.SerializeToString()
    header.channel_header = channel_header.SerializeToString()
    return header


def build_cc_proposal_payload(chaincode_spec, transient_map=None):
    invocation_spec = chaincode_pb2.ChaincodeInvocationSpec()
    invocation_spec.chaincode_spec.CopyFrom(chaincode_spec)

    cc_payload = proposal_pb2.ChaincodeProposalPayload()
    cc_payload.input = invocation_spec.SerializeToString()
    for key, value in (transient_map or {}).items():
        cc_payload.TransientMap[key] = proto_b(value)
    return cc_payload


def build_proposal(chaincode_spec, header, transient_map=None):
    proposal = proposal_pb2.Proposal()
    proposal.header = header.SerializeToString()
    proposal.payload = build_cc_proposal_payload(chaincode_spec, transient_map).SerializeToString()
    return proposal


def sign_proposal(signer, proposal):
    proposal_bytes = proposal.SerializeToString()
    signed_proposal = proposal_pb2.SignedProposal()
    signed_proposal.proposal_bytes = proposal_bytes
    signed_proposal.signature = signer.sign(proposal_bytes)
    return signed_proposal


def create_envelope(signature, payload_bytes):
    envelope = common_pb2.Envelope()
    envelope.signature = signature
    envelope.payload = payload_bytes
    return envelope


def stream_envelope(envelope):
    yield envelope
