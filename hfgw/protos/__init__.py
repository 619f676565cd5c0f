"""Fabric protobuf messages and gRPC stubs.

The bundled .proto files are compiled when this package is first imported,
so ``hfgw/protos/...`` must be reachable from an entry of ``sys.path``.
"""
import grpc

common_pb2 = grpc.protos('hfgw/protos/common/common.proto')
identities_pb2 = grpc.protos('hfgw/protos/msp/identities.proto')
msp_config_pb2 = grpc.protos('hfgw/protos/msp/msp_config.proto')
chaincode_pb2 = grpc.protos('hfgw/protos/peer/chaincode.proto')
proposal_pb2 = grpc.protos('hfgw/protos/peer/proposal.proto')
proposal_response_pb2 = grpc.protos('hfgw/protos/peer/proposal_response.proto')
transaction_pb2 = grpc.protos('hfgw/protos/peer/transaction.proto')
message_pb2 = grpc.protos('hfgw/protos/gossip/message.proto')

peer_pb2, peer_pb2_grpc = grpc.protos_and_services('hfgw/protos/peer/peer.proto')
ab_pb2, ab_pb2_grpc = grpc.protos_and_services('hfgw/protos/orderer/ab.proto')
protocol_pb2, protocol_pb2_grpc = grpc.protos_and_services('hfgw/protos/discovery/protocol.proto')
gateway_pb2, gateway_pb2_grpc = grpc.protos_and_services('hfgw/protos/gateway/gateway.proto')
