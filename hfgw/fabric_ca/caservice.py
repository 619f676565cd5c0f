import base64
import json
import logging
from urllib.parse import urlparse

import requests

from hfgw.fabric.errors import AlreadyRegisteredError, AuthorizationError, EnrollmentError
from hfgw.util.crypto.crypto import ecies

_logger = logging.getLogger(__name__)

# Fabric CA error codes
ERR_AUTHENTICATION_FAILURE = 20
ERR_AUTHORIZATION_FAILURE = 71
ERR_IDENTITY_ALREADY_REGISTERED = 74

_AUTH_CODES = (ERR_AUTHENTICATION_FAILURE, ERR_AUTHORIZATION_FAILURE)


def _b64(data):
    if isinstance(data, str):
        data = data.encode('utf-8')
    return base64.b64encode(data).decode('ascii')


class CAService(object):
    """Client of the Fabric CA REST API.

    Use as a context manager so the HTTP session is released on every exit
    path::

        with CAService('https://ca.org1.example.com:7054', 'ca-org1') as ca:
            secret = ca.register(admin, 'appUser', 'org1.department1')
    """

    def __init__(self, url, ca_name='', verify=True, timeout=30.0, crypto=None, session=None,
                 allow_insecure=False):
        purl = urlparse(url or '')
        if purl.scheme not in ('https', 'http') or not purl.netloc:
            raise ValueError(f'Invalid certificate authority url: {url}')
        if purl.scheme == 'http' and not allow_insecure:
            raise ValueError(f'Certificate authority {url} must be reached over https')

        self._base_url = url.rstrip('/')
        self._ca_name = ca_name or ''
        self._verify = verify
        self._timeout = timeout
        self._crypto = crypto or ecies()
        self._session = session or requests.Session()

    @property
    def ca_name(self):
        return self._ca_name

    @property
    def crypto(self):
        return self._crypto

    def close(self):
        self._session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def register(self, registrar, enrollment_id, affiliation, role='client', attrs=None,
                 max_enrollments=None, secret=None):
        body = {
            'id': enrollment_id,
            'type': role,
            'affiliation': affiliation,
            'caname': self._ca_name,
        }
        if attrs:
            body['attrs'] = attrs
        if max_enrollments is not None:
            body['max_enrollments'] = max_enrollments
        if secret:
            body['secret'] = secret

        result = self._post('register', body, token_identity=registrar, operation='register')
        if not result or 'secret' not in result:
            raise EnrollmentError(f'Register of {enrollment_id} returned no enrollment secret')
        return result['secret']

    def enroll(self, enrollment_id, enrollment_secret, csr, attr_reqs=None, profile=None):
        body = {'certificate_request': _pem_str(csr), 'caname': self._ca_name}
        if attr_reqs:
            body['attr_reqs'] = attr_reqs
        if profile:
            body['profile'] = profile

        result = self._post('enroll', body, basic_auth=(enrollment_id, enrollment_secret), operation='enroll')
        return _parse_enrollment_result(result)

    def reenroll(self, identity, csr, attr_reqs=None):
        body = {'certificate_request': _pem_str(csr), 'caname': self._ca_name}
        if attr_reqs:
            body['attr_reqs'] = attr_reqs

        result = self._post('reenroll', body, token_identity=identity, operation='reenroll')
        return _parse_enrollment_result(result)

    def revoke(self, registrar, enrollment_id, reason=None):
        body = {'id': enrollment_id, 'caname': self._ca_name}
        if reason:
            body['reason'] = reason
        return self._post('revoke', body, token_identity=registrar, operation='revoke')

    def generate_auth_token(self, identity, method, path, body_bytes):
        """Fabric CA token: b64(cert).b64(sig(METHOD.b64(uri).b64(body).b64(cert)))."""
        key = self._crypto.load_private_key(identity.private_key)
        b64_cert = _b64(identity.certificate)
        message = f'{method}.{_b64(path)}.{_b64(body_bytes)}.{b64_cert}'
        signature = self._crypto.sign(key, message.encode('utf-8'))
        return f'{b64_cert}.{_b64(signature)}'

    def _post(self, name, body, basic_auth=None, token_identity=None, operation=None):
        method = '_post'
        path = f'/api/v1/{name}'
        body_bytes = json.dumps(body).encode('utf-8')
        headers = {'Content-Type': 'application/json'}
        if token_identity is not None:
            headers['Authorization'] = self.generate_auth_token(token_identity, 'POST', path, body_bytes)

        _logger.debug(f'{method} - {operation} to {self._base_url}{path}')
        try:
            response = self._session.post(self._base_url + path, data=body_bytes, headers=headers,
                                          auth=basic_auth, verify=self._verify, timeout=self._timeout)
        except requests.RequestException as e:
            _logger.error(f'{method} - {operation} failed, certificate authority unreachable: {e}')
            raise EnrollmentError(f'Certificate authority {self._base_url} is unreachable', remote_message=str(e))

        try:
            payload = response.json()
        except ValueError:
            payload = {'success': False, 'errors': [{'code': 0, 'message': response.text}]}

        if response.status_code < 400 and payload.get('success'):
            return payload.get('result')

        _raise_for_errors(operation, response.status_code, payload.get('errors') or [])


def _raise_for_errors(operation, status_code, errors):
    codes = [e.get('code') for e in errors]
    message = '; '.join(str(e.get('message')) for e in errors) or f'HTTP {status_code}'
    _logger.error(f'_raise_for_errors - {operation} failed with status {status_code}: {message}')

    if any(code == ERR_IDENTITY_ALREADY_REGISTERED for code in codes) or 'already registered' in message:
        raise AlreadyRegisteredError(f'{operation} rejected, identity already registered', remote_message=message)
    if operation in ('register', 'revoke', 'reenroll') and (status_code in (401, 403) or
                                                            any(code in _AUTH_CODES for code in codes)):
        raise AuthorizationError(f'{operation} rejected, caller is not authorized', remote_message=message)
    if status_code in (401, 403) or any(code in _AUTH_CODES for code in codes):
        raise EnrollmentError(f'{operation} rejected, invalid enrollment credentials', remote_message=message)
    raise EnrollmentError(f'{operation} failed', remote_message=message)


def _parse_enrollment_result(result):
    try:
        cert = base64.b64decode(result['Cert']).decode('utf-8')
        chain = result.get('ServerInfo', {}).get('CAChain')
        chain = base64.b64decode(chain).decode('utf-8') if chain else ''
    except (KeyError, TypeError, ValueError) as e:
        raise EnrollmentError(f'Unable to parse the enrollment response: {e}')
    return cert, _split_pem_chain(chain)


def _split_pem_chain(chain):
    end = '-----END CERTIFICATE-----'
    certs = []
    for block in chain.split(end):
        block = block.strip()
        if block:
            certs.append(block + '\n' + end + '\n')
    return certs


def _pem_str(value):
    if isinstance(value, bytes):
        return value.decode('utf-8')
    return value
