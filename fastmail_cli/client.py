"""
JMAP client for Fastmail

One JmapClient serves one command invocation. It resolves the session once,
checks capabilities before building any batch, and turns each operation
into a single batch of method calls where possible.
"""

import logging

from .attachments import AttachmentResolver
from .batch import Batch, BatchResult
from .common import HTTP_TIMEOUT, SESSION_URL, SPLIT_SUBMISSION, get_api_token
from .compose import choose_identity, compose_forward, compose_reply, submit_draft, submit_existing
from .errors import NotFound
from .filters import Predicate, compile_filter, expand_predicates
from .models import (
    FULL_PROPERTIES, MAILBOX_PROPERTIES, SUMMARY_PROPERTIES,
    Email, Identity, Mailbox, MaskedEmail,
)
from .session import MANAGE_MASKED, READ_MAIL, SEND_MAIL, resolve_session
from .transport import HttpTransport

logger = logging.getLogger(__name__)

MASKED_STATES = ('enabled', 'disabled', 'deleted')


def sort_mailboxes(mailboxes):
    """Mailboxes with a role first, then by sort order and name"""
    return sorted(mailboxes, key=lambda m: (m.role is None, m.sort_order, m.name.lower()))


class JmapClient:
    def __init__(self, transport, session_url=SESSION_URL, split_submission=SPLIT_SUBMISSION):
        self.transport = transport
        self.session_url = session_url
        self.split_submission = split_submission
        self._session = None
        self._mailboxes = None
        self._identities = None

    @classmethod
    def from_config(cls):
        """Client using the configured API token"""
        return cls(HttpTransport(get_api_token(), timeout=HTTP_TIMEOUT))

    # ========================================================================
    # SESSION AND BATCHES
    # ========================================================================

    def resolve(self, required=READ_MAIL):
        """The session, checked for the capabilities a command needs"""
        self._session = resolve_session(
            lambda: self.transport.get_session(self.session_url),
            required,
            self._session,
        )
        return self._session

    @property
    def session(self):
        return self._session

    def execute(self, batch):
        """Send a batch and return its BatchResult"""
        session = self._session or self.resolve(batch.using)
        return BatchResult(batch, self.transport.execute(batch, session.api_url))

    def _email_get_args(self, ids, properties=None, bodies=False):
        args = {
            'accountId': self._session.account_id,
            'ids': ids,
            'properties': properties or SUMMARY_PROPERTIES,
        }
        if bodies:
            args.update({
                'fetchTextBodyValues': True,
                'fetchHTMLBodyValues': True,
            })
        return args

    # ========================================================================
    # MAILBOXES
    # ========================================================================

    def list_mailboxes(self):
        session = self.resolve(READ_MAIL)
        batch = Batch(READ_MAIL)
        get = batch.add('Mailbox/get', {
            'accountId': session.account_id,
            'ids': None,
            'properties': MAILBOX_PROPERTIES,
        }, label='list mailboxes')

        mailboxes = [Mailbox.from_jmap(m) for m in self.execute(batch).get(get).get('list', [])]
        self._remember_mailboxes(mailboxes)
        return sort_mailboxes(mailboxes)

    def _remember_mailboxes(self, mailboxes):
        self._mailboxes = mailboxes
        self._session = self._session.with_mailboxes(mailboxes)

    def _ensure_mailboxes(self):
        if self._mailboxes is None:
            self.list_mailboxes()
        return self._mailboxes

    def find_mailbox(self, name):
        """
        Find a mailbox by name, then by role, ignoring case.

        Raises:
            NotFound: no mailbox matches
        """
        mailboxes = self._ensure_mailboxes()
        wanted = name.lower()
        for mailbox in mailboxes:
            if mailbox.name.lower() == wanted:
                return mailbox
        for mailbox in mailboxes:
            if (mailbox.role or '').lower() == wanted:
                return mailbox
        raise NotFound(f"Mailbox not found: {name}")

    # ========================================================================
    # READING
    # ========================================================================

    def query_emails(self, filter=None, limit=50):
        """
        Query and fetch email summaries in one batch.

        Email/get takes its ids from the Email/query result, so the list is
        fetched in a single round trip.
        """
        session = self.resolve(READ_MAIL)
        arguments = {
            'accountId': session.account_id,
            'sort': [{'property': 'receivedAt', 'isAscending': False}],
            'limit': limit,
        }
        if filter:
            arguments['filter'] = filter

        batch = Batch(READ_MAIL)
        query = batch.add('Email/query', arguments, tag='query', label='query emails')
        get = batch.add('Email/get', self._email_get_args(query.ref('/ids')),
                        tag='get', label='fetch emails')

        result = self.execute(batch)
        # The query error explains a failed fetch better than invalidResultReference
        result.get(query)
        return [Email.from_jmap(e) for e in result.get(get).get('list', [])]

    def list_emails(self, mailbox='INBOX', limit=50):
        mailbox = self.find_mailbox(mailbox)
        return self.query_emails(compile_filter({Predicate('in_mailbox', mailbox.id)}), limit)

    def search(self, predicates, limit=50, mailbox=None):
        """
        Search emails matching every predicate.

        Args:
            predicates: set of Predicate; may include 'pinned'
            limit: maximum number of results
            mailbox: restrict to this mailbox name
        """
        predicates = set(predicates)
        inbox_id = None
        if mailbox:
            predicates.add(Predicate('in_mailbox', self.find_mailbox(mailbox).id))
        if any(p.field == 'pinned' for p in predicates):
            inbox_id = self.find_mailbox('inbox').id
        return self.query_emails(compile_filter(expand_predicates(predicates, inbox_id)), limit)

    def get_email(self, email_id):
        """
        Fetch one email with bodies.

        Raises:
            NotFound: no such email
        """
        session = self.resolve(READ_MAIL)
        batch = Batch(READ_MAIL)
        get = batch.add('Email/get', self._email_get_args([email_id], FULL_PROPERTIES, bodies=True),
                        label='fetch email')
        emails = self.execute(batch).get(get).get('list', [])
        if not emails:
            raise NotFound(f"Email not found: {email_id}")
        logger.debug("Fetched email %s from account %s", email_id, session.account_id)
        return Email.from_jmap(emails[0])

    def get_thread(self, email_id):
        """
        All emails in the thread of `email_id`, oldest first.

        The email, its thread and the thread's emails are fetched in one
        batch of three chained calls.
        """
        session = self.resolve(READ_MAIL)
        batch = Batch(READ_MAIL)
        email = batch.add('Email/get', {
            'accountId': session.account_id,
            'ids': [email_id],
            'properties': ['threadId'],
        }, tag='email', label='fetch email')
        thread = batch.add('Thread/get', {
            'accountId': session.account_id,
            'ids': email.ref('/list/*/threadId'),
        }, tag='thread', label='fetch thread')
        emails = batch.add('Email/get', self._email_get_args(
            thread.ref('/list/*/emailIds'), FULL_PROPERTIES, bodies=True,
        ), tag='emails', label='fetch thread emails')

        result = self.execute(batch)
        if email_id in result.get(email).get('notFound', []) or not result.get(email).get('list'):
            raise NotFound(f"Email not found: {email_id}")
        result.raise_for_errors()

        messages = [Email.from_jmap(e) for e in result.get(emails).get('list', [])]
        return sorted(messages, key=lambda e: e.received_at or '')

    # ========================================================================
    # CHANGING EMAILS
    # ========================================================================

    def _update_email(self, email_id, patch, label):
        session = self.resolve(READ_MAIL)
        batch = Batch(READ_MAIL)
        update = batch.add('Email/set', {
            'accountId': session.account_id,
            'update': {email_id: patch},
        }, label=label)
        self.execute(batch).updated(update, email_id)

    def set_read(self, email_id, read=True):
        """Set or clear the $seen keyword with a single patch"""
        self._update_email(email_id, {'keywords/$seen': True if read else None},
                           'mark as read' if read else 'mark as unread')

    def move_email(self, email_id, mailbox):
        """Move an email to the named mailbox, replacing its mailboxes"""
        target = self.find_mailbox(mailbox)
        self._update_email(email_id, {'mailboxIds': {target.id: True}}, f'move to {target.name}')
        return target

    def mark_spam(self, email_id):
        """Move an email to Junk and mark it as junk"""
        self._ensure_mailboxes()
        junk_id = self._session.mailbox_id('junk')
        self._update_email(email_id, {
            'mailboxIds': {junk_id: True},
            'keywords/$junk': True,
            'keywords/$notjunk': None,
        }, 'mark as spam')

    # ========================================================================
    # SENDING
    # ========================================================================

    def identities(self):
        if self._identities is None:
            self._prepare_send()
        return self._identities

    def _prepare_send(self):
        """Load identities and mailboxes in one batch"""
        session = self.resolve(SEND_MAIL)
        batch = Batch(SEND_MAIL)
        identities = batch.add('Identity/get', {'accountId': session.account_id, 'ids': None},
                               label='load sending identities')
        mailboxes = batch.add('Mailbox/get', {
            'accountId': session.account_id,
            'ids': None,
            'properties': MAILBOX_PROPERTIES,
        }, label='list mailboxes')

        result = self.execute(batch)
        result.raise_for_errors()
        self._identities = [Identity.from_jmap(i) for i in result.get(identities).get('list', [])]
        self._remember_mailboxes([Mailbox.from_jmap(m) for m in result.get(mailboxes).get('list', [])])
        return choose_identity(self._identities, session.username)

    def own_addresses(self):
        addresses = [identity.email for identity in self.identities()]
        if self._session.username:
            addresses.append(self._session.username)
        return addresses

    def compose_reply(self, email_id, body, reply_all=False, cc=None, bcc=None):
        source = self.get_email(email_id)
        return compose_reply(source, body, reply_all, self.own_addresses(), cc, bcc)

    def compose_forward(self, email_id, to, body, cc=None, bcc=None):
        return compose_forward(self.get_email(email_id), to, body, cc, bcc)

    def send(self, draft):
        """
        Create and submit a message; returns the created email id.

        Raises:
            SubmissionIncomplete: created but not submitted
        """
        self.resolve(SEND_MAIL)
        identity = self._prepare_send()
        email_id = submit_draft(self.execute, self._session, draft, identity,
                                split=self.split_submission)
        logger.info("Sent message %s", email_id)
        return email_id

    def submit_existing(self, email_id):
        """Submit an email that was created but never sent"""
        self.resolve(SEND_MAIL)
        identity = self._prepare_send()
        return submit_existing(self.execute, self._session, email_id, identity)

    # ========================================================================
    # ATTACHMENTS
    # ========================================================================

    def download_blob(self, blob_id, name=None, content_type=None):
        session = self.resolve(READ_MAIL)
        return self.transport.download(session.download_link(blob_id, name, content_type))

    def attachment_resolver(self, **options):
        return AttachmentResolver(self.download_blob, **options)

    def find_attachment(self, email, blob_id):
        for attachment in email.attachments:
            if attachment.blob_id == blob_id:
                return attachment
        raise NotFound(f"Attachment not found: {blob_id}")

    def get_attachment(self, email_id, blob_id, size_bound=None, allow_raw=False, ocr=None):
        """Download and decode one attachment of an email"""
        attachment = self.find_attachment(self.get_email(email_id), blob_id)
        resolver = self.attachment_resolver(ocr=ocr)
        return resolver.resolve(blob_id, attachment.type, attachment.name, size_bound, allow_raw)

    # ========================================================================
    # MASKED EMAIL
    # ========================================================================

    def list_masked(self):
        session = self.resolve(MANAGE_MASKED)
        batch = Batch(MANAGE_MASKED)
        get = batch.add('MaskedEmail/get', {'accountId': session.account_id, 'ids': None},
                        label='list masked emails')
        return [MaskedEmail.from_jmap(m) for m in self.execute(batch).get(get).get('list', [])]

    def create_masked(self, for_domain=None, description=None, prefix=None):
        session = self.resolve(MANAGE_MASKED)
        masked = {'state': 'enabled'}
        if for_domain:
            masked['forDomain'] = for_domain
        if description:
            masked['description'] = description
        if prefix:
            masked['emailPrefix'] = prefix

        batch = Batch(MANAGE_MASKED)
        create = batch.add('MaskedEmail/set', {
            'accountId': session.account_id,
            'create': {'masked': masked},
        }, label='create masked email')
        created = self.execute(batch).created(create, 'masked')
        return MaskedEmail.from_jmap({**masked, **created})

    def update_masked(self, masked_id, state):
        """Set the state of a masked email (enabled, disabled or deleted)"""
        if state not in MASKED_STATES:
            raise ValueError(f"Invalid masked email state: {state}")
        session = self.resolve(MANAGE_MASKED)
        batch = Batch(MANAGE_MASKED)
        update = batch.add('MaskedEmail/set', {
            'accountId': session.account_id,
            'update': {masked_id: {'state': state}},
        }, label=f'set masked email {state}')
        self.execute(batch).updated(update, masked_id)
