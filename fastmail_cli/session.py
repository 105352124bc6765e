"""
JMAP session and capabilities

The session resource tells us the account id, the API and download URLs and
which capabilities the account supports. It is fetched once per command and
passed explicitly to everything that needs it.
"""

import logging
import urllib.parse
from dataclasses import dataclass, field, replace

from .errors import NotFound, SessionError

logger = logging.getLogger(__name__)

CORE = "urn:ietf:params:jmap:core"
MAIL = "urn:ietf:params:jmap:mail"
SUBMISSION = "urn:ietf:params:jmap:submission"
MASKED_EMAIL = "https://www.fastmail.com/dev/maskedemail"

# Capabilities each kind of command needs
READ_MAIL = (CORE, MAIL)
SEND_MAIL = (CORE, MAIL, SUBMISSION)
MANAGE_MASKED = (CORE, MASKED_EMAIL)

# Mailbox roles we look up by id
ROLES = ('inbox', 'drafts', 'sent', 'trash', 'junk', 'archive')


@dataclass(frozen=True)
class Session:
    account_id: str
    username: str
    api_url: str
    download_url: str
    upload_url: str = ''
    capabilities: frozenset = frozenset()
    account_capabilities: frozenset = frozenset()
    state: str = ''
    mailboxes: dict = field(default_factory=dict)

    @classmethod
    def from_jmap(cls, data):
        """
        Build a Session from the JSON session resource.

        Raises:
            SessionError: if the resource has no primary mail account or URLs
        """
        primary = data.get('primaryAccounts') or {}
        account_id = primary.get(MAIL)
        if not account_id:
            raise SessionError("Session has no primary mail account", capability=MAIL)

        for key in ('apiUrl', 'downloadUrl'):
            if not data.get(key):
                raise SessionError(f"Session resource is missing {key}")

        account = (data.get('accounts') or {}).get(account_id) or {}
        return cls(
            account_id=account_id,
            username=data.get('username', ''),
            api_url=data['apiUrl'],
            download_url=data['downloadUrl'],
            upload_url=data.get('uploadUrl', ''),
            capabilities=frozenset(data.get('capabilities') or {}),
            account_capabilities=frozenset(account.get('accountCapabilities') or {}),
            state=data.get('state', ''),
        )

    def supports(self, capability):
        return capability in self.capabilities or capability in self.account_capabilities

    def missing(self, required):
        return [capability for capability in required if not self.supports(capability)]

    def with_mailboxes(self, mailboxes):
        """Copy of the session with role -> mailbox id filled in"""
        roles = {mailbox.role: mailbox.id for mailbox in mailboxes if mailbox.role in ROLES}
        return replace(self, mailboxes=roles)

    def mailbox_id(self, role):
        mailbox_id = self.mailboxes.get(role)
        if not mailbox_id:
            raise NotFound(f"No mailbox with role '{role}'")
        return mailbox_id

    def download_link(self, blob_id, name='attachment', content_type='application/octet-stream'):
        """Expand the download URL template for a blob"""
        values = {
            'accountId': self.account_id,
            'blobId': blob_id,
            'name': name or 'attachment',
            'type': content_type or 'application/octet-stream',
        }
        url = self.download_url
        for key, value in values.items():
            url = url.replace('{' + key + '}', urllib.parse.quote(value, safe=''))
        return url


def resolve_session(fetch, required=(), current=None):
    """
    Resolve a session that supports every capability in `required`.

    An existing session is reused. A session lacking a capability is fetched
    again once before giving up.

    Args:
        fetch: callable returning the session resource as a dict
        required: capability URNs the command needs
        current: a previously resolved Session, if any

    Raises:
        SessionError: if a required capability is still missing
    """
    session = current or Session.from_jmap(fetch())
    missing = session.missing(required)
    if missing:
        logger.info("Session lacks %s; refreshing", ', '.join(missing))
        session = Session.from_jmap(fetch())
        missing = session.missing(required)

    if missing:
        raise SessionError(
            f"Your account does not support {missing[0]}",
            capability=missing[0],
        )
    return session
