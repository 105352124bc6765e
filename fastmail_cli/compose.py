"""
Message composition and submission

Builds outgoing messages for send, reply and forward, and submits them.
Creating the message and submitting it for delivery happen in one batch,
the submission referring to the created email by creation id, so a
successful create is never left behind as a stray draft. When the create
succeeds but the submission does not, SubmissionIncomplete carries the id
of the created email.
"""

import logging
from dataclasses import dataclass, field

from .batch import Batch, CreationRef
from .errors import FastmailError, MethodError, ProtocolError, SubmissionIncomplete
from .session import SEND_MAIL

logger = logging.getLogger(__name__)

FORWARD_HEADER = "---------- Forwarded message ---------"


@dataclass
class OutgoingDraft:
    to: list
    subject: str
    body: str
    cc: list = field(default_factory=list)
    bcc: list = field(default_factory=list)
    reply_to: list = field(default_factory=list)
    in_reply_to: list = field(default_factory=list)
    references: list = field(default_factory=list)

    def __post_init__(self):
        if not self.to:
            raise ValueError("At least one recipient is required")

    def to_dict(self):
        return {
            'to': [str(a) for a in self.to],
            'cc': [str(a) for a in self.cc],
            'bcc': [str(a) for a in self.bcc],
            'reply_to': [str(a) for a in self.reply_to],
            'subject': self.subject,
            'body': self.body,
            'in_reply_to': self.in_reply_to,
            'references': self.references,
        }

    def to_jmap(self, identity, drafts_id):
        """Email object for Email/set create, filed in Drafts"""
        email = {
            'mailboxIds': {drafts_id: True},
            'keywords': {'$draft': True, '$seen': True},
            'from': [identity.address().to_jmap()],
            'to': [a.to_jmap() for a in self.to],
            'subject': self.subject,
            'bodyValues': {'body': {'value': self.body, 'charset': 'utf-8'}},
            'textBody': [{'partId': 'body', 'type': 'text/plain'}],
        }
        if self.cc:
            email['cc'] = [a.to_jmap() for a in self.cc]
        if self.bcc:
            email['bcc'] = [a.to_jmap() for a in self.bcc]
        if self.reply_to:
            email['replyTo'] = [a.to_jmap() for a in self.reply_to]
        if self.in_reply_to:
            email['inReplyTo'] = list(self.in_reply_to)
        if self.references:
            email['references'] = list(self.references)
        return email


def _unique(addresses, exclude=()):
    """Drop duplicates and excluded addresses, comparing case-insensitively"""
    seen = {str(getattr(a, 'email', a)).lower() for a in exclude}
    result = []
    for address in addresses:
        key = address.email.lower()
        if key not in seen:
            seen.add(key)
            result.append(address)
    return result


def _prefixed(subject, prefix):
    subject = subject or ''
    if subject.lower().startswith(prefix.lower()):
        return subject
    return f"{prefix} {subject}".rstrip()


def compose_new(to, subject, body, cc=None, bcc=None, reply_to=None):
    """A fresh message; never carries threading headers"""
    return OutgoingDraft(
        to=_unique(to),
        subject=subject,
        body=body,
        cc=_unique(cc or [], exclude=to),
        bcc=_unique(bcc or []),
        reply_to=_unique(reply_to or []),
    )


def compose_reply(source, body, reply_all=False, own_addresses=(), extra_cc=None, extra_bcc=None):
    """
    Reply to `source`.

    The reply goes to the source's sender. With reply_all the source's
    To and Cc recipients are copied into Cc. None of `own_addresses` is ever
    a recipient. Replying to a message we sent goes to its original
    recipients instead.

    Threading: In-Reply-To is the source's Message-ID and References is the
    source's References with that Message-ID appended.

    Raises:
        ValueError: if no recipient is left
    """
    own = list(own_addresses)
    to = _unique(source.from_, exclude=own)
    if not to:
        to = _unique(source.to, exclude=own)

    cc = []
    if reply_all:
        cc = _unique(source.to + source.cc, exclude=own + to)
    cc = _unique(cc + list(extra_cc or []), exclude=own + to)

    references = list(source.references)
    for message_id in source.message_id:
        if not references or references[-1] != message_id:
            references.append(message_id)

    return OutgoingDraft(
        to=to,
        subject=_prefixed(source.subject, 'Re:'),
        body=body,
        cc=cc,
        bcc=_unique(extra_bcc or []),
        in_reply_to=list(source.message_id),
        references=references,
    )


def forward_body(source, body):
    """The caller's text, then the attribution block and the original text"""
    original = source.text_content() or ''
    return (
        f"{body}\n\n"
        f"{FORWARD_HEADER}\n"
        f"From: {source.sender}\n"
        f"Date: {source.sent_at or source.received_at or 'unknown'}\n"
        f"Subject: {source.subject}\n"
        f"\n{original}"
    )


def compose_forward(source, to, body, cc=None, bcc=None):
    """Forward `source`; starts a new thread, so no threading headers"""
    return OutgoingDraft(
        to=_unique(to),
        subject=_prefixed(source.subject, 'Fwd:'),
        body=forward_body(source, body),
        cc=_unique(cc or [], exclude=to),
        bcc=_unique(bcc or []),
    )


def choose_identity(identities, username=None):
    """The identity matching the account username, else the first one"""
    if not identities:
        raise FastmailError("No sending identity is configured for this account")
    for identity in identities:
        if username and identity.email.lower() == username.lower():
            return identity
    return identities[0]


# ============================================================================
# SUBMISSION
# ============================================================================

def _sent_patch(sent_id):
    return {
        'mailboxIds': {sent_id: True},
        'keywords/$draft': None,
        'keywords/$seen': True,
    }


def _add_submission(batch, session, identity, email_id):
    return batch.add('EmailSubmission/set', {
        'accountId': session.account_id,
        'create': {
            'submission': {'identityId': identity.id, 'emailId': email_id},
        },
        'onSuccessUpdateEmail': {
            CreationRef('submission'): _sent_patch(session.mailbox_id('sent')),
        },
    }, tag='submit', label='submit message for delivery')


def submission_batch(session, draft, identity):
    """
    One batch that creates the message and submits it.

    Returns:
        (batch, create_call, submit_call)
    """
    batch = Batch(SEND_MAIL)
    create = batch.add('Email/set', {
        'accountId': session.account_id,
        'create': {'draft': draft.to_jmap(identity, session.mailbox_id('drafts'))},
    }, tag='create', label='create message')
    submit = _add_submission(batch, session, identity, CreationRef('draft'))
    return batch, create, submit


def _check_submitted(result, submit, email_id):
    try:
        result.created(submit, 'submission')
    except (MethodError, ProtocolError) as e:
        raise SubmissionIncomplete(email_id, str(e)) from e

    moved = result.implicit(submit, 'Email/set')
    if moved and email_id in (moved.get('notUpdated') or {}):
        logger.warning("Message %s was sent but could not be moved to Sent", email_id)


def submit_draft(execute, session, draft, identity, split=False):
    """
    Create and submit a message, returning the created email id.

    Args:
        execute: callable sending a Batch and returning its BatchResult
        session: resolved Session with mailbox roles filled in
        draft: OutgoingDraft
        identity: sending Identity
        split: create and submit in two round trips instead of one

    Raises:
        MethodError: the message could not be created (nothing was left behind)
        SubmissionIncomplete: the message exists but was not submitted
    """
    if not split:
        batch, create, submit = submission_batch(session, draft, identity)
        result = execute(batch)
        email_id = result.created(create, 'draft')['id']
        _check_submitted(result, submit, email_id)
        return email_id

    batch = Batch(SEND_MAIL)
    create = batch.add('Email/set', {
        'accountId': session.account_id,
        'create': {'draft': draft.to_jmap(identity, session.mailbox_id('drafts'))},
    }, tag='create', label='create message')
    email_id = execute(batch).created(create, 'draft')['id']
    logger.debug("Created message %s; submitting", email_id)

    try:
        submit_existing(execute, session, email_id, identity)
    except SubmissionIncomplete:
        raise
    except FastmailError as e:
        raise SubmissionIncomplete(email_id, str(e)) from e
    except KeyboardInterrupt as e:
        raise SubmissionIncomplete(email_id, "interrupted") from e
    return email_id


def submit_existing(execute, session, email_id, identity):
    """Submit an already created email (e.g. after SubmissionIncomplete)"""
    batch = Batch(SEND_MAIL)
    submit = _add_submission(batch, session, identity, email_id)
    _check_submitted(execute(batch), submit, email_id)
    return email_id
