"""
Client for the backup panel API.

Every call returns a PanelResponse instead of raising, so callers can tell a
transport failure (panel unreachable, timeout) from an application error (non-2xx
reply). The client never retries; queued redelivery is handled by RetryQueue.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests


logger = logging.getLogger(__name__)


@dataclass
class PanelResponse:
    """Result of a single panel call."""
    status_code: Optional[int] = None
    data: Optional[Dict[str, Any]] = None
    transport_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.transport_error is None and self.status_code is not None and 200 <= self.status_code < 300

    @property
    def message(self) -> str:
        """Human readable reason for a failed call."""
        if self.transport_error:
            return self.transport_error
        if self.data and self.data.get('message'):
            return str(self.data['message'])
        if self.status_code is not None and not self.ok:
            return f"HTTP {self.status_code}"
        return ''

    def get(self, key: str, default=None):
        if not self.data:
            return default
        return self.data.get(key, default)


class PanelClient:
    """
    Thin wrapper around the panel's JSON API.

    Endpoints are relative to ``base_url`` (for example ``https://panel/api``).
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: int = 30,
        health_timeout: int = 5,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the panel client.

        Args:
            base_url: Panel API base URL
            token: Bearer token issued by the panel after verification
            timeout: Timeout in seconds for request/response calls
            health_timeout: Timeout in seconds for the availability probe
            session: Optional requests session (a new one is created if omitted)
        """
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout
        self.health_timeout = health_timeout
        self.session = session or requests.Session()
        self.session.headers.update({'Accept': 'application/json'})

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _headers(self) -> Dict[str, str]:
        if self.token:
            return {'Authorization': f"Bearer {self.token}"}
        return {}

    def send(self, method: str, endpoint: str, payload: Optional[Dict[str, Any]] = None) -> PanelResponse:
        """
        Perform one API call.

        GET payloads are sent as query parameters, everything else as a JSON body.
        """
        method = method.upper()
        kwargs = {'headers': self._headers(), 'timeout': self.timeout}
        if method == 'GET':
            kwargs['params'] = payload or {}
        else:
            kwargs['json'] = payload or {}

        try:
            response = self.session.request(method, self._url(endpoint), **kwargs)
        except requests.RequestException as e:
            logger.warning(f"Panel call {method} {endpoint} failed: {e}")
            return PanelResponse(transport_error=str(e) or e.__class__.__name__)

        try:
            data = response.json()
        except ValueError:
            data = None
        if data is not None and not isinstance(data, dict):
            data = {'data': data}

        result = PanelResponse(status_code=response.status_code, data=data)
        if not result.ok:
            logger.warning(f"Panel call {method} {endpoint} rejected: {result.message}")
        return result

    def is_available(self) -> bool:
        """Short health probe. Never raises."""
        try:
            response = self.session.get(self._url('/health'), timeout=self.health_timeout)
            return 200 <= response.status_code < 300
        except Exception as e:
            logger.debug(f"Panel health check failed: {e}")
            return False

    # Server identity

    def register(self, name: str, public_key: str, fingerprint: str, ip_address: Optional[str] = None) -> PanelResponse:
        return self.send('POST', '/servers/register', {
            'name': name,
            'public_key': public_key,
            'fingerprint': fingerprint,
            'ip_address': ip_address,
        })

    def check_status(self, fingerprint: str) -> PanelResponse:
        return self.send('GET', '/servers/status', {'fingerprint': fingerprint})

    def verify(self, fingerprint: str, signed_challenge: str) -> PanelResponse:
        return self.send('POST', '/servers/verify', {
            'fingerprint': fingerprint,
            'signed_challenge': signed_challenge,
        })

    # Backups

    def start_backup(self, database_name: str, encryption_key: str) -> PanelResponse:
        return self.send('POST', '/backups/start', {
            'database_name': database_name,
            'encryption_key': encryption_key,
        })

    def update_progress(self, backup_id: int, progress: int) -> PanelResponse:
        return self.send('POST', f"/backups/{backup_id}/progress", {'progress': progress})

    def complete_backup(self, backup_id: int, filename: str, size: int, table_count: int, checksum: str) -> PanelResponse:
        return self.send('POST', f"/backups/{backup_id}/complete", {
            'filename': filename,
            'size': size,
            'table_count': table_count,
            'checksum': checksum,
        })

    def fail_backup(self, backup_id: int, error_message: str) -> PanelResponse:
        return self.send('POST', f"/backups/{backup_id}/failed", {'error_message': error_message})
