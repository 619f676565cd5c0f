import json
import logging
import os

import yaml

from hfgw.fabric.certificateAuthority import CertificateAuthority
from hfgw.fabric.organization import Organization
from hfgw.fabric.remote import Endpoint, ROLE_COMMITTING_PEER, ROLE_ENDORSING_PEER, ROLE_ORDERER, \
    SSL_TARGET_NAME_OVERRIDE

_logger = logging.getLogger(__name__)


class NetworkConfig(object):
    """Common connection profile: organizations, peers, orderers, CAs and channels."""

    def __init__(self, network_data, base_dir=None):
        if not network_data:
            raise ValueError('Invalid common connection profile due to missing configuration data')
        if 'version' not in network_data:
            raise ValueError('Invalid common connection profile due to "version" is missing')

        self._data = network_data
        self._base_dir = base_dir or os.getcwd()

        self._organizations = {}
        for name, info in (network_data.get('organizations') or {}).items():
            self._organizations[name] = Organization(
                name,
                info.get('mspid'),
                peers=info.get('peers'),
                certificate_authorities=info.get('certificateAuthorities'),
                admin_private_key_pem=self._read_material(info.get('adminPrivateKey')),
                admin_cert_pem=self._read_material(info.get('signedCert')))

    @staticmethod
    def load(load_config):
        method = 'load'

        if isinstance(load_config, dict):
            return NetworkConfig(load_config)

        network_config_loc = os.path.abspath(load_config)
        _logger.debug(f'{method} - looking at absolute path of ==>{network_config_loc}<==')
        with open(network_config_loc, 'r') as f:
            file_data = f.read()

        _, file_ext = os.path.splitext(network_config_loc)
        if file_ext.lower() in ('.yml', '.yaml'):
            network_data = yaml.safe_load(file_data)
        else:
            network_data = json.loads(file_data)

        return NetworkConfig(network_data, os.path.dirname(network_config_loc))

    @property
    def name(self):
        return self._data.get('name')

    @property
    def client_organization(self):
        return (self._data.get('client') or {}).get('organization')

    @property
    def client_mspid(self):
        org = self._organizations.get(self.client_organization)
        return org.mspid if org else None

    @property
    def credential_store_path(self):
        path = ((self._data.get('client') or {}).get('credentialStore') or {}).get('path')
        if path:
            return os.path.join(self._base_dir, path)
        return None

    def channel_names(self):
        return list((self._data.get('channels') or {}).keys())

    def has_channel(self, channel_name):
        return channel_name in (self._data.get('channels') or {})

    def get_organization(self, name):
        if name not in self._organizations:
            raise ValueError(f'Organization {name} is not in the common connection profile')
        return self._organizations[name]

    def organizations(self):
        return list(self._organizations.values())

    def mspid_of_peer(self, peer_name):
        for org in self._organizations.values():
            if peer_name in org.peers:
                return org.mspid
        return None

    def peer_endpoints(self, channel_name):
        """Peers of the channel; all profile peers when the channel is not listed."""
        peers = self._data.get('peers') or {}
        channel = (self._data.get('channels') or {}).get(channel_name)

        if channel and channel.get('peers'):
            selection = channel['peers']
        else:
            selection = {name: {} for name in peers}

        endpoints = []
        for name, roles in selection.items():
            if name not in peers:
                raise ValueError(f'Channel {channel_name} refers to unknown peer {name}')
            roles = roles or {}
            role = ROLE_ENDORSING_PEER if roles.get('endorsingPeer', True) else ROLE_COMMITTING_PEER
            endpoints.append(self._build_endpoint(name, peers[name], role, self.mspid_of_peer(name)))
        return endpoints

    def orderer_endpoints(self, channel_name):
        orderers = self._data.get('orderers') or {}
        channel = (self._data.get('channels') or {}).get(channel_name)
        names = channel.get('orderers') if channel and channel.get('orderers') else list(orderers)

        endpoints = []
        for name in names:
            if name not in orderers:
                raise ValueError(f'Channel {channel_name} refers to unknown orderer {name}')
            endpoints.append(self._build_endpoint(name, orderers[name], ROLE_ORDERER, orderers[name].get('mspid')))
        return endpoints

    def get_certificate_authority(self, name=None):
        cas = self._data.get('certificateAuthorities') or {}
        if name is None:
            org = self._organizations.get(self.client_organization)
            if not org or not org.certificate_authorities:
                raise ValueError('No certificate authority configured for the client organization')
            name = org.certificate_authorities[0]
        if name not in cas:
            raise ValueError(f'Certificate authority {name} is not in the common connection profile')

        ca_info = cas[name]
        mspid = None
        for org in self._organizations.values():
            if name in org.certificate_authorities:
                mspid = org.mspid
                break

        http_options = ca_info.get('httpOptions') or {}
        return CertificateAuthority(
            name,
            ca_info.get('caName'),
            ca_info.get('url'),
            tls_ca_certs=self._read_material(ca_info.get('tlsCACerts')),
            registrar=ca_info.get('registrar'),
            mspid=mspid,
            verify=http_options.get('verify', True))

    def _build_endpoint(self, name, info, role, mspid):
        grpc_options = info.get('grpcOptions') or {}
        host_override = grpc_options.get(SSL_TARGET_NAME_OVERRIDE) or grpc_options.get('grpc.ssl_target_name_override')
        return Endpoint(name, info['url'], mspid, role,
                        tls_ca_certs=self._read_material(info.get('tlsCACerts')),
                        host_override=host_override)

    def _read_material(self, material):
        """Inline ``pem`` (string or list) or a ``path`` to a PEM file."""
        if not material:
            return None
        if material.get('pem'):
            pem = material['pem']
            return ''.join(pem) if isinstance(pem, list) else pem
        if material.get('path'):
            path = os.path.join(self._base_dir, material['path'])
            with open(path, 'r') as f:
                return f.read()
        return None
