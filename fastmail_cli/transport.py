"""
HTTP transport for the JMAP API

Sends batches, fetches the session resource and downloads blobs. HTTP and
network failures are mapped onto TransportError, and malformed or rejected
requests onto ProtocolError. Nothing here retries.
"""

import json
import logging
import urllib.error
import urllib.request

from .batch import CallResult
from .errors import BlobNotFound, ProtocolError, TransportError

logger = logging.getLogger(__name__)

USER_AGENT = "fastmail-cli/0.1"


class HttpTransport:
    def __init__(self, token, timeout=30):
        self._token = token
        self.timeout = timeout

    def _request(self, url, data=None, method='GET', accept='application/json'):
        headers = {
            'Authorization': f'Bearer {self._token}',
            'Accept': accept,
            'User-Agent': USER_AGENT,
        }
        if data is not None:
            headers['Content-Type'] = 'application/json'
        return urllib.request.Request(url, data=data, headers=headers, method=method)

    def _open(self, req, not_found=None):
        """Perform a request and return the body bytes"""
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                return response.read()
        except urllib.error.HTTPError as e:
            body = e.read().decode('utf-8', 'replace')
            if e.code == 404 and not_found:
                raise not_found from e
            raise _http_error(e.code, body) from e
        except urllib.error.URLError as e:
            raise TransportError(f"Network error: {e.reason}") from e
        except TimeoutError as e:
            raise TransportError(f"Request timed out after {self.timeout}s") from e

    def get_session(self, url):
        """Fetch the JMAP session resource"""
        logger.debug("GET %s", url)
        return _parse_json(self._open(self._request(url)), "session resource")

    def execute(self, batch, api_url):
        """
        Send a batch and return its CallResults.

        Raises:
            TransportError: network, authentication, rate limit or server failure
            ProtocolError: the server rejected the request or sent a malformed response
        """
        logger.debug("POST %s: %s", api_url, batch.describe())
        data = json.dumps(batch.to_request()).encode()
        body = _parse_json(self._open(self._request(api_url, data=data, method='POST')),
                           "API response")

        responses = body.get('methodResponses')
        if not isinstance(responses, list):
            raise ProtocolError("API response has no methodResponses")
        return [CallResult.from_json(item) for item in responses]

    def download(self, url):
        """
        Download a blob.

        Raises:
            BlobNotFound: the blob does not exist or has expired
        """
        logger.debug("Downloading blob")
        req = self._request(url, accept='*/*')
        return self._open(req, not_found=BlobNotFound("Blob not found or expired", status=404))


def _parse_json(raw, what):
    try:
        data = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Malformed {what}: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError(f"Malformed {what}: expected an object")
    return data


def _http_error(status, body):
    """Map an HTTP error status onto TransportError or ProtocolError"""
    if status in (401, 403):
        return TransportError(f"Authentication failed (HTTP {status}). Check your API token",
                              status=status)
    if status == 429:
        return TransportError("Rate limited by server (HTTP 429). Try again later", status=status)
    if status >= 500:
        return TransportError(f"Server error (HTTP {status})", status=status)
    if status == 400:
        # RFC 7807 problem details, e.g. urn:ietf:params:jmap:error:unknownCapability
        try:
            problem = json.loads(body)
        except ValueError:
            problem = {}
        if isinstance(problem, dict) and problem.get('type'):
            detail = problem.get('detail') or problem.get('title') or ''
            kind = problem['type'].rsplit(':', 1)[-1]
            return ProtocolError(f"Request rejected: {kind}" + (f" ({detail})" if detail else ""))
        return ProtocolError(f"Request rejected (HTTP 400): {body[:200]}")
    return TransportError(f"HTTP {status}: {body[:200]}", status=status)
