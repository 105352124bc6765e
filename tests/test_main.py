"""
Tests for the fastmail entry point
"""

import json
from unittest.mock import patch

import pytest

from fastmail_cli.__main__ import main


def _run(monkeypatch, *argv):
    monkeypatch.setattr('sys.argv', ['fastmail', *argv])
    with pytest.raises(SystemExit) as exc_info:
        main()
    return exc_info.value.code


class TestMain:
    """Tests for argument routing and the error envelope"""

    def test_no_command(self, monkeypatch, capsys):
        assert _run(monkeypatch) == 1
        assert 'Command groups' in capsys.readouterr().out

    def test_not_authenticated(self, monkeypatch, capsys, temp_config_dir):
        with patch.dict('fastmail_cli.common._CONFIG', {'api_token': None}):
            assert _run(monkeypatch, 'mail', 'mailboxes') == 1
        output = json.loads(capsys.readouterr().out)
        assert output['success'] is False
        assert 'Not authenticated' in output['error']

    def test_search_arguments(self, monkeypatch, capsys):
        monkeypatch.setattr('sys.argv', ['fastmail', 'mail', 'search', '--from', 'alice',
                                         '--unread', '--min-size', '1000', '-n', '5'])
        with patch('fastmail_cli.mail.get_client') as mock_get_client, \
                patch('fastmail_cli.mail.search_emails_structured', return_value=[]) as mock_search:
            main()

        kwargs = mock_search.call_args.kwargs
        assert mock_search.call_args.args == (mock_get_client.return_value,)
        assert kwargs['from'] == 'alice'
        assert kwargs['unread'] is True
        assert kwargs['min_size'] == 1000
        assert kwargs['limit'] == 5
        assert json.loads(capsys.readouterr().out) == {'success': True, 'data': []}

    def test_invalid_value_is_error_envelope(self, monkeypatch, capsys):
        with patch('fastmail_cli.mail.get_client'):
            assert _run(monkeypatch, 'mail', 'download', 'e1', '--max-size', 'huge') == 1
        output = json.loads(capsys.readouterr().out)
        assert 'Invalid size' in output['error']
