import asyncio
import logging
import time

from google.protobuf.message import DecodeError

from hfgw.fabric.errors import FabricConnectionError, TopologyUnavailableError
from hfgw.fabric.msp.identity import SigningIdentity
from hfgw.fabric.remote import Endpoint, ROLE_ENDORSING_PEER, ROLE_ORDERER
from hfgw.protos import identities_pb2, message_pb2, protocol_pb2
from hfgw.protos.utils import cert_hash
from hfgw.util.keyedlock import KeyedLock

_logger = logging.getLogger(__name__)


class Topology(object):
    """Endpoints reachable on one channel, as of one resolution."""

    def __init__(self, channel_name, peers, orderers, endorsement_plans=None, discovered=False, timestamp=None):
        self._channel_name = channel_name
        self._peers = list(peers)
        self._orderers = list(orderers)
        self._endorsement_plans = endorsement_plans or {}
        self._discovered = discovered
        self._timestamp = timestamp

    @property
    def channel_name(self):
        return self._channel_name

    @property
    def peers(self):
        return list(self._peers)

    @property
    def orderers(self):
        return list(self._orderers)

    @property
    def discovered(self):
        return self._discovered

    @property
    def timestamp(self):
        return self._timestamp

    def peers_by_org(self):
        result = {}
        for peer in self._peers:
            result.setdefault(peer.mspid, []).append(peer)
        return result

    def endorsing_peers(self, contract_name=None):
        peers = [p for p in self._peers if p.role == ROLE_ENDORSING_PEER]
        if contract_name:
            peers = [p for p in peers if p.chaincodes is None or contract_name in p.chaincodes]
        return peers

    def endorsement_plan(self, contract_name):
        return self._endorsement_plans.get(contract_name)

    def endorsers_for(self, contract_name):
        """The peers whose endorsements satisfy the contract's endorsement policy.

        With a discovered plan, the first layout that can be filled is used,
        taking the peers with the highest ledger height in each group.
        Without one, every endorsing peer of the channel is required.
        """
        plan = self.endorsement_plan(contract_name)
        if plan is None:
            if self._discovered:
                raise TopologyUnavailableError(
                    f'No endorsement plan discovered for contract {contract_name} on channel {self._channel_name}')
            peers = self.endorsing_peers(contract_name)
            if not peers:
                raise TopologyUnavailableError(f'No endorsing peers available on channel {self._channel_name}')
            return peers

        for layout in plan['layouts']:
            chosen = []
            for group_name, quantity in layout.items():
                candidates = sorted(plan['groups'].get(group_name, []), key=lambda p: p.ledger_height, reverse=True)
                candidates = [p for p in candidates if p not in chosen]
                if len(candidates) < quantity:
                    break
                chosen.extend(candidates[:quantity])
            else:
                return chosen

        raise TopologyUnavailableError(
            f'No layout of the endorsement plan for {contract_name} can be satisfied on channel {self._channel_name}')

    def evaluation_candidates(self, contract_name, mspid):
        """Endorsing peers of ``mspid`` if it has any, else all endorsing peers."""
        peers = self.endorsing_peers(contract_name)
        own = [p for p in peers if p.mspid == mspid]
        return own or peers

    def commit_peers(self, mspid, endorsers=()):
        """Peers to ask for commit status, own organization first."""
        peers = [p for p in endorsers if p.mspid == mspid] + [p for p in self._peers if p.mspid == mspid]
        peers += list(endorsers) + self._peers
        seen = []
        for peer in peers:
            if peer not in seen:
                seen.append(peer)
        return seen


class TopologyResolver(object):
    """Resolves the endpoints of a channel from the profile or by service discovery.

    Discovered results are cached per channel and re-resolved once older
    than ``discovery-cache-life``, when a contract not yet covered is
    requested, or after ``invalidate``.
    """

    def __init__(self, network_config, config, connection_manager=None, discovery=None, clock=time.monotonic):
        self._network_config = network_config
        self._connection_manager = connection_manager
        self._clock = clock

        if discovery is None:
            discovery = config.get('initialize-with-discovery')
        as_localhost = config.get('discovery-as-localhost')
        if not isinstance(discovery, bool):
            raise ValueError('Parameter "discovery" or config parameter "initialize-with-discovery" must be boolean')
        if not isinstance(as_localhost, bool):
            raise ValueError('Config parameter "discovery-as-localhost" must be boolean')
        if discovery and connection_manager is None:
            raise ValueError('Discovery requires a connection manager')

        self._use_discovery = discovery
        self._as_localhost = as_localhost
        self._cache_life = config.get_seconds('discovery-cache-life')
        self._discovery_timeout = config.get_seconds('propose-timeout')
        self._override_protocol = config.get('override-discovery-protocol')

        self._cache = {}
        self._locks = KeyedLock()

    @property
    def discovery(self):
        return self._use_discovery

    def invalidate(self, channel_name):
        if self._cache.pop(channel_name, None) is not None:
            _logger.info(f'invalidate - topology of channel {channel_name} will be re-resolved')

    async def resolve(self, channel_name, contract_name=None, identity=None):
        method = 'resolve'

        if not self._use_discovery:
            entry = self._cache.get(channel_name)
            if entry is None:
                entry = {'topology': self._resolve_static(channel_name), 'interests': set()}
                self._cache[channel_name] = entry
            return entry['topology']

        if identity is None:
            raise ValueError('Discovery requires the identity of the caller')

        async with self._locks.hold(channel_name):
            entry = self._cache.get(channel_name)
            interests = set(entry['interests']) if entry else set()
            have_new_interest = bool(contract_name) and contract_name not in interests
            if contract_name:
                interests.add(contract_name)

            if entry and not have_new_interest and self._clock() - entry['timestamp'] <= self._cache_life:
                return entry['topology']

            _logger.debug(f'{method} - need to refresh {channel_name} :: have_new_interests {have_new_interest}')
            self._cache.pop(channel_name, None)
            topology = await self._discover(channel_name, sorted(interests), identity)
            self._cache[channel_name] = {'topology': topology, 'interests': interests,
                                         'timestamp': self._clock()}
            return topology

    def _resolve_static(self, channel_name):
        try:
            peers = self._network_config.peer_endpoints(channel_name)
            orderers = self._network_config.orderer_endpoints(channel_name)
        except (ValueError, KeyError) as e:
            raise TopologyUnavailableError(f'Invalid connection profile for channel {channel_name}',
                                           remote_message=str(e))
        if not peers:
            raise TopologyUnavailableError(f'No peers found for channel {channel_name} in the connection profile')
        _logger.debug(f'_resolve_static - channel {channel_name}: {len(peers)} peers, {len(orderers)} orderers')
        return Topology(channel_name, peers, orderers)

    async def _discover(self, channel_name, interests, identity):
        method = '_discover'
        targets = self._network_config.peer_endpoints(channel_name)
        if not targets:
            raise TopologyUnavailableError(f'No peers to run discovery against on channel {channel_name}')

        final_error = None
        for target in targets:
            try:
                request = self._build_discovery_request(channel_name, interests, identity, target)
                _logger.debug(f'{method} - target peer {target.name} starting')
                async with self._connection_manager.connection(target, identity) as peer:
                    response = await asyncio.wait_for(peer.discover(request, self._discovery_timeout),
                                                      self._discovery_timeout)
                results = self._process_discovery_response(channel_name, response)
                topology = self._build_topology(channel_name, results, target)
                _logger.info(f'{method} - discovered {len(topology.peers)} peers on channel {channel_name}')
                return topology
            except (FabricConnectionError, TopologyUnavailableError, DecodeError, ValueError, KeyError) as e:
                _logger.warning(f'{method} - target peer {target.name} failed {e}')
                final_error = e
            except asyncio.TimeoutError:
                _logger.warning(f'{method} - target peer {target.name} timed out')
                final_error = TopologyUnavailableError(f'Discovery timed out on {target.name}')

        raise TopologyUnavailableError(f'Discovery failed on every peer of channel {channel_name}',
                                       remote_message=getattr(final_error, 'remote_message', None) or str(final_error))

    def _build_discovery_request(self, channel_name, interests, identity, target):
        signer = SigningIdentity(identity)
        discovery_request = protocol_pb2.Request()

        authentication = protocol_pb2.AuthInfo()
        authentication.client_identity = signer.serialize()
        if target.is_tls():
            authentication.client_tls_cert_hash = cert_hash(identity.certificate)
        discovery_request.authentication.CopyFrom(authentication)

        query = discovery_request.queries.add()
        query.channel = channel_name
        query.config_query.CopyFrom(protocol_pb2.ConfigQuery())

        query = discovery_request.queries.add()
        query.channel = channel_name
        query.peer_query.CopyFrom(protocol_pb2.PeerMembershipQuery())

        if interests:
            query = discovery_request.queries.add()
            query.channel = channel_name
            for name in interests:
                interest = query.cc_query.interests.add()
                interest.chaincodes.add().name = name

        payload_bytes = discovery_request.SerializeToString()
        signed_request = protocol_pb2.SignedRequest()
        signed_request.payload = payload_bytes
        signed_request.signature = signer.sign(payload_bytes)
        return signed_request

    def _process_discovery_response(self, channel_name, response):
        method = '_process_discovery_response'
        if response is None or not response.results:
            raise TopologyUnavailableError('Discovery has failed to return results')

        results = {'msps': {}, 'orderers': {}, 'peers_by_org': {}, 'endorsement_plans': []}
        for result in response.results:
            kind = result.WhichOneof('result')
            if kind is None:
                raise TopologyUnavailableError('Discover results are missing')
            if kind == 'error':
                message = result.error.content
                _logger.error(f'Channel:{channel_name} received discovery error:{message}')
                raise TopologyUnavailableError(f'Channel {channel_name} discovery error', remote_message=message)
            if kind == 'config_result':
                config = self._process_discovery_config_results(result.config_result)
                results['msps'] = config['msps']
                results['orderers'] = config['orderers']
            elif kind == 'members':
                results['peers_by_org'] = self._process_discovery_membership_results(result.members)
            elif kind == 'cc_query_res':
                results['endorsement_plans'] = self._process_discovery_chaincode_results(result.cc_query_res)
        _logger.debug(f'{method} - completed processing results')
        return results

    @staticmethod
    def _process_discovery_config_results(q_config):
        config = {'msps': {}, 'orderers': {}}
        for mspid, q_msp in q_config.msps.items():
            config['msps'][mspid] = {
                'id': mspid,
                'tls_root_certs': [cert.decode('utf-8') for cert in q_msp.tls_root_certs],
                'tls_intermediate_certs': [cert.decode('utf-8') for cert in q_msp.tls_intermediate_certs],
            }
        for mspid, q_orderer in q_config.orderers.items():
            config['orderers'][mspid] = [{'host': e.host, 'port': int(e.port)} for e in q_orderer.endpoint]
        return config

    @staticmethod
    def _process_discovery_membership_results(q_members):
        peers_by_org = {}
        for mspid, q_peers in q_members.peers_by_org.items():
            peers_by_org[mspid] = [_process_peer(q_peer, mspid) for q_peer in q_peers.peers]
        return peers_by_org

    @staticmethod
    def _process_discovery_chaincode_results(q_chaincodes):
        endorsement_plans = []
        for q_endors_desc in q_chaincodes.content:
            plan = {'chaincode': q_endors_desc.chaincode, 'groups': {}, 'layouts': []}
            for group_name, q_peers in q_endors_desc.endorsers_by_groups.items():
                plan['groups'][group_name] = [_process_peer(q_peer) for q_peer in q_peers.peers]
            for q_layout in q_endors_desc.layouts:
                plan['layouts'].append({group_name: int(quantity) for group_name, quantity
                                        in q_layout.quantities_by_group.items()})
            endorsement_plans.append(plan)
        return endorsement_plans

    def _build_topology(self, channel_name, results, target):
        msps = results['msps']
        peers = {}
        for mspid, org_peers in results['peers_by_org'].items():
            for info in org_peers:
                endpoint = self._build_endpoint(info['endpoint'], mspid, ROLE_ENDORSING_PEER, msps, target,
                                                info['ledger_height'], info['chaincodes'])
                peers[endpoint.name] = endpoint

        orderers = []
        for mspid, endpoints in results['orderers'].items():
            for info in endpoints:
                orderers.append(self._build_endpoint(f"{info['host']}:{info['port']}", mspid, ROLE_ORDERER,
                                                     msps, target))
        if not orderers:
            orderers = self._network_config.orderer_endpoints(channel_name)

        plans = {}
        for plan in results['endorsement_plans']:
            groups = {}
            for group_name, group_peers in plan['groups'].items():
                groups[group_name] = [peers[info['endpoint']] for info in group_peers if info['endpoint'] in peers]
            plans[plan['chaincode']] = {'groups': groups, 'layouts': plan['layouts']}

        if not peers:
            raise TopologyUnavailableError(f'Discovery returned no peers for channel {channel_name}')
        return Topology(channel_name, peers.values(), orderers, plans, discovered=True, timestamp=self._clock())

    def _build_endpoint(self, address, mspid, role, msps, target, ledger_height=0, chaincodes=None):
        if mspid not in msps:
            raise TopologyUnavailableError(f'No TLS cert information available for {mspid}')
        host, port = address.rsplit(':', 1)
        url = self._build_url(host, port, target)
        return Endpoint(address, url, mspid, role,
                        tls_ca_certs=_build_tls_root_certs(msps[mspid]) or None,
                        host_override=host,
                        ledger_height=ledger_height,
                        chaincodes=chaincodes)

    def _build_url(self, hostname, port, target):
        # endpoints may be running in containers on the local system
        t_hostname = 'localhost' if self._as_localhost else hostname

        # peers returned by discovery use TLS exactly when the discovery peer does
        protocol = 'grpcs' if target.is_tls() else 'grpc'
        if self._override_protocol:
            protocol = self._override_protocol

        return f'{protocol}://{t_hostname}:{port}'


def _process_peer(q_peer, mspid=None):
    identity = identities_pb2.SerializedIdentity.FromString(q_peer.identity)
    membership = message_pb2.GossipMessage.FromString(q_peer.membership_info.payload)
    peer = {
        'mspid': mspid or identity.mspid,
        'endpoint': membership.alive_msg.membership.endpoint,
        'ledger_height': 0,
        'chaincodes': None,
    }
    if q_peer.HasField('state_info'):
        state = message_pb2.GossipMessage.FromString(q_peer.state_info.payload)
        if state.state_info.HasField('properties'):
            properties = state.state_info.properties
            peer['ledger_height'] = int(properties.ledger_height)
            peer['chaincodes'] = [chaincode.name for chaincode in properties.chaincodes]
    return peer


def _build_tls_root_certs(msp):
    return ''.join(msp.get('tls_root_certs') or []) + ''.join(msp.get('tls_intermediate_certs') or [])
