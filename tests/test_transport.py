"""
Tests for the HTTP transport
"""

import io
import json
import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from fastmail_cli.batch import Batch
from fastmail_cli.errors import BlobNotFound, ProtocolError, TransportError
from fastmail_cli.session import READ_MAIL
from fastmail_cli.transport import HttpTransport


def _response(body):
    response = MagicMock()
    response.read.return_value = body if isinstance(body, bytes) else json.dumps(body).encode()
    response.__enter__.return_value = response
    return response


def _http_error(code, body=b''):
    return urllib.error.HTTPError('https://api.example.com', code, 'error', {}, io.BytesIO(body))


def _batch():
    batch = Batch(READ_MAIL)
    batch.add('Mailbox/get', {'accountId': 'u1', 'ids': None}, tag='m')
    return batch


class TestExecute:
    """Tests for HttpTransport.execute"""

    @patch('fastmail_cli.transport.urllib.request.urlopen')
    def test_posts_batch(self, mock_urlopen):
        """The batch is posted with the bearer token and parsed by tag"""
        mock_urlopen.return_value = _response({
            'methodResponses': [['Mailbox/get', {'list': []}, 'm']],
            'sessionState': 's1',
        })

        results = HttpTransport('secret-token').execute(_batch(), 'https://api.example.com/api/')

        assert results[0].name == 'Mailbox/get'
        assert results[0].tag == 'm'
        request = mock_urlopen.call_args[0][0]
        assert request.get_method() == 'POST'
        assert request.get_header('Authorization') == 'Bearer secret-token'
        body = json.loads(request.data)
        assert body['using'] == list(READ_MAIL)
        assert body['methodCalls'] == [['Mailbox/get', {'accountId': 'u1', 'ids': None}, 'm']]

    @patch('fastmail_cli.transport.urllib.request.urlopen')
    def test_token_not_logged(self, mock_urlopen, caplog):
        mock_urlopen.return_value = _response({'methodResponses': [['Mailbox/get', {}, 'm']]})
        with caplog.at_level('DEBUG'):
            HttpTransport('secret-token').execute(_batch(), 'https://api.example.com/api/')
        assert 'secret-token' not in caplog.text

    @patch('fastmail_cli.transport.urllib.request.urlopen')
    def test_missing_method_responses(self, mock_urlopen):
        mock_urlopen.return_value = _response({'sessionState': 's1'})
        with pytest.raises(ProtocolError, match='methodResponses'):
            HttpTransport('t').execute(_batch(), 'https://api.example.com/api/')

    @patch('fastmail_cli.transport.urllib.request.urlopen')
    def test_malformed_json(self, mock_urlopen):
        mock_urlopen.return_value = _response(b'<html>')
        with pytest.raises(ProtocolError, match='Malformed'):
            HttpTransport('t').execute(_batch(), 'https://api.example.com/api/')

    @pytest.mark.parametrize('code', [401, 403])
    @patch('fastmail_cli.transport.urllib.request.urlopen')
    def test_auth_failure(self, mock_urlopen, code):
        mock_urlopen.side_effect = _http_error(code)
        with pytest.raises(TransportError, match='Authentication failed') as exc_info:
            HttpTransport('t').execute(_batch(), 'https://api.example.com/api/')
        assert exc_info.value.status == code

    @patch('fastmail_cli.transport.urllib.request.urlopen')
    def test_rate_limited(self, mock_urlopen):
        mock_urlopen.side_effect = _http_error(429)
        with pytest.raises(TransportError, match='Rate limited'):
            HttpTransport('t').execute(_batch(), 'https://api.example.com/api/')

    @patch('fastmail_cli.transport.urllib.request.urlopen')
    def test_request_level_error(self, mock_urlopen):
        """A 400 problem document is a protocol error naming the problem type"""
        problem = json.dumps({'type': 'urn:ietf:params:jmap:error:unknownCapability',
                              'status': 400, 'detail': 'maskedemail'}).encode()
        mock_urlopen.side_effect = _http_error(400, problem)
        with pytest.raises(ProtocolError, match='unknownCapability'):
            HttpTransport('t').execute(_batch(), 'https://api.example.com/api/')

    @patch('fastmail_cli.transport.urllib.request.urlopen')
    def test_network_error(self, mock_urlopen):
        mock_urlopen.side_effect = urllib.error.URLError('connection refused')
        with pytest.raises(TransportError, match='Network error'):
            HttpTransport('t').execute(_batch(), 'https://api.example.com/api/')


class TestDownload:
    """Tests for HttpTransport.download"""

    @patch('fastmail_cli.transport.urllib.request.urlopen')
    def test_download(self, mock_urlopen):
        mock_urlopen.return_value = _response(b'%PDF-1.4')
        assert HttpTransport('t').download('https://api.example.com/download/b1') == b'%PDF-1.4'

    @patch('fastmail_cli.transport.urllib.request.urlopen')
    def test_blob_not_found(self, mock_urlopen):
        mock_urlopen.side_effect = _http_error(404)
        with pytest.raises(BlobNotFound):
            HttpTransport('t').download('https://api.example.com/download/b1')
