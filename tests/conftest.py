"""
Pytest configuration and shared fixtures for fastmail-cli tests
"""

import copy
import os
import tempfile
import urllib.parse

# Configuration is read once at import; point it at an empty directory and
# clear credentials before anything imports fastmail_cli.common.
os.environ['FASTMAIL_CONFIG_DIR'] = tempfile.mkdtemp(prefix='fastmail-cli-tests-')
for _name in ('FASTMAIL_API_TOKEN', 'FASTMAIL_SESSION_URL', 'FASTMAIL_USERNAME',
              'FASTMAIL_APP_PASSWORD', 'FASTMAIL_LOG'):
    os.environ.pop(_name, None)

import pytest

from fastmail_cli.batch import CallResult
from fastmail_cli.client import JmapClient
from fastmail_cli.errors import BlobNotFound
from fastmail_cli.session import CORE, MAIL, MASKED_EMAIL, SUBMISSION


ACCOUNT_ID = 'u1234'
API_URL = 'https://api.example.com/jmap/api/'
DOWNLOAD_URL = 'https://api.example.com/jmap/download/{accountId}/{blobId}/{name}?type={type}'


def make_session_data(capabilities=(CORE, MAIL, SUBMISSION, MASKED_EMAIL), username='me@fastmail.com'):
    """Session resource as the server returns it"""
    return {
        'username': username,
        'apiUrl': API_URL,
        'downloadUrl': DOWNLOAD_URL,
        'uploadUrl': 'https://api.example.com/jmap/upload/{accountId}/',
        'capabilities': {c: {} for c in capabilities},
        'primaryAccounts': {MAIL: ACCOUNT_ID},
        'accounts': {ACCOUNT_ID: {'name': username, 'accountCapabilities': {c: {} for c in capabilities}}},
        'state': 's1',
    }


MAILBOXES = [
    {'id': 'mb-inbox', 'name': 'Inbox', 'role': 'inbox', 'parentId': None,
     'sortOrder': 1, 'totalEmails': 10, 'unreadEmails': 2},
    {'id': 'mb-drafts', 'name': 'Drafts', 'role': 'drafts', 'parentId': None,
     'sortOrder': 2, 'totalEmails': 0, 'unreadEmails': 0},
    {'id': 'mb-sent', 'name': 'Sent', 'role': 'sent', 'parentId': None,
     'sortOrder': 3, 'totalEmails': 5, 'unreadEmails': 0},
    {'id': 'mb-junk', 'name': 'Spam', 'role': 'junk', 'parentId': None,
     'sortOrder': 4, 'totalEmails': 1, 'unreadEmails': 1},
    {'id': 'mb-archive', 'name': 'Archive', 'role': 'archive', 'parentId': None,
     'sortOrder': 5, 'totalEmails': 100, 'unreadEmails': 0},
    {'id': 'mb-projects', 'name': 'Projects', 'role': None, 'parentId': None,
     'sortOrder': 10, 'totalEmails': 3, 'unreadEmails': 0},
]

IDENTITIES = [
    {'id': 'id-1', 'name': 'Me', 'email': 'me@fastmail.com'},
    {'id': 'id-2', 'name': 'Me (alias)', 'email': 'alias@example.com'},
]


def email_json(email_id='e1', **overrides):
    """An Email object as returned by Email/get with bodies"""
    data = {
        'id': email_id,
        'blobId': f'blob-{email_id}',
        'threadId': 't1',
        'mailboxIds': {'mb-inbox': True},
        'keywords': {},
        'size': 2048,
        'receivedAt': '2025-03-01T10:00:00Z',
        'sentAt': '2025-03-01T10:00:00Z',
        'messageId': [f'{email_id}@mail.example.com'],
        'inReplyTo': None,
        'references': None,
        'from': [{'name': 'Alice', 'email': 'alice@example.com'}],
        'to': [{'name': 'Me', 'email': 'me@fastmail.com'}],
        'cc': [],
        'bcc': [],
        'replyTo': None,
        'subject': 'Quarterly report',
        'preview': 'Here is the report',
        'hasAttachment': False,
        'textBody': [{'partId': '1', 'type': 'text/plain'}],
        'htmlBody': [{'partId': '1', 'type': 'text/plain'}],
        'attachments': [],
        'bodyValues': {'1': {'value': 'Here is the report.\n\nAlice'}},
    }
    data.update(overrides)
    return data


def error(error_type, description=None):
    """Handler result for a method-level error response"""
    payload = {'type': error_type}
    if description:
        payload['description'] = description
    return [('error', payload)]


class FakeTransport:
    """
    Stands in for HttpTransport.

    Each method call of a batch is answered by handlers[name](arguments).
    A handler returns the response payload, or a list of (name, payload)
    pairs to answer with several responses under the call's tag.
    """

    def __init__(self, handlers=None, session=None):
        self.handlers = dict(handlers or {})
        self.session_data = session or make_session_data()
        self.batches = []
        self.session_fetches = 0
        self.downloads = []
        self.blobs = {}

    def get_session(self, url):
        self.session_fetches += 1
        return copy.deepcopy(self.session_data)

    def execute(self, batch, api_url):
        self.batches.append(batch)
        results = []
        for call in batch.calls:
            handler = self.handlers.get(call.name)
            if handler is None:
                results.append(CallResult('error', {'type': 'unknownMethod'}, call.tag))
                continue
            answer = handler(call.arguments)
            if isinstance(answer, list):
                results.extend(CallResult(name, payload, call.tag) for name, payload in answer)
            else:
                results.append(CallResult(call.name, answer, call.tag))
        return results

    def download(self, url):
        self.downloads.append(url)
        for blob_id, data in self.blobs.items():
            if f"/{urllib.parse.quote(blob_id, safe='')}/" in url:
                return data
        raise BlobNotFound("Blob not found or expired", status=404)

    def calls(self, name):
        """Every call with this method name across all batches"""
        return [call for batch in self.batches for call in batch.calls if call.name == name]


def default_handlers(emails=None):
    """Handlers for a small account with the standard mailboxes"""
    emails = {e['id']: e for e in (emails or [email_json()])}

    def email_get(args):
        ids = args['ids']
        if not isinstance(ids, list):
            ids = list(emails)
        found = [emails[i] for i in ids if i in emails]
        return {'accountId': ACCOUNT_ID, 'list': found, 'notFound': [i for i in ids if i not in emails]}

    return {
        'Mailbox/get': lambda args: {'accountId': ACCOUNT_ID, 'list': copy.deepcopy(MAILBOXES)},
        'Identity/get': lambda args: {'accountId': ACCOUNT_ID, 'list': copy.deepcopy(IDENTITIES)},
        'Email/query': lambda args: {'accountId': ACCOUNT_ID, 'ids': list(emails), 'total': len(emails)},
        'Email/get': email_get,
        'Email/set': lambda args: {
            'accountId': ACCOUNT_ID,
            'updated': {k: None for k in (args.get('update') or {})},
            'created': {k: {'id': f'new-{k}'} for k in (args.get('create') or {})},
        },
    }


@pytest.fixture
def fake_transport():
    """FakeTransport answering the standard mailboxes, identities and one email"""
    return FakeTransport(default_handlers())


@pytest.fixture
def client(fake_transport):
    """JmapClient on top of the fake transport"""
    return JmapClient(fake_transport, session_url='https://api.example.com/jmap/session',
                      split_submission=False)


@pytest.fixture
def temp_config_dir(tmp_path, monkeypatch):
    """Point config and token paths at a temporary directory"""
    config_dir = tmp_path / ".config" / "fastmail-cli"
    config_dir.mkdir(parents=True)
    monkeypatch.setattr('fastmail_cli.common.CONFIG_DIR', config_dir)
    monkeypatch.setattr('fastmail_cli.common.CONFIG_FILE', config_dir / "config")
    monkeypatch.setattr('fastmail_cli.common.TOKEN_FILE', config_dir / "token.json")
    return config_dir
