"""
Tests for message composition and submission
"""

import pytest

from fastmail_cli.batch import BatchResult, CallResult
from fastmail_cli.compose import (
    FORWARD_HEADER, OutgoingDraft, choose_identity, compose_forward, compose_new,
    compose_reply, submission_batch, submit_draft, submit_existing,
)
from fastmail_cli.errors import FastmailError, MethodError, SubmissionIncomplete, TransportError
from fastmail_cli.models import Email, EmailAddress, Identity, Mailbox
from fastmail_cli.session import Session

from conftest import MAILBOXES, email_json, make_session_data


ME = 'me@fastmail.com'


@pytest.fixture
def session():
    mailboxes = [Mailbox.from_jmap(m) for m in MAILBOXES]
    return Session.from_jmap(make_session_data()).with_mailboxes(mailboxes)


@pytest.fixture
def identity():
    return Identity('id-1', ME, 'Me')


def _source(**overrides):
    return Email.from_jmap(email_json(**overrides))


class TestComposeReply:
    """Tests for reply recipients, subject and threading headers"""

    def test_reply_to_sender(self):
        """A plain reply goes to the sender only"""
        draft = compose_reply(_source(), 'Thanks', own_addresses=[ME])
        assert [a.email for a in draft.to] == ['alice@example.com']
        assert draft.cc == []
        assert draft.subject == 'Re: Quarterly report'

    def test_subject_prefix_not_doubled(self):
        draft = compose_reply(_source(subject='RE: Quarterly report'), 'ok', own_addresses=[ME])
        assert draft.subject == 'RE: Quarterly report'

    def test_threading_headers(self):
        """In-Reply-To is the source Message-ID; References gains it at the end"""
        source = _source(messageId=['m2@x'], references=['m0@x', 'm1@x'])
        draft = compose_reply(source, 'ok', own_addresses=[ME])
        assert draft.in_reply_to == ['m2@x']
        assert draft.references == ['m0@x', 'm1@x', 'm2@x']

    def test_references_without_history(self):
        draft = compose_reply(_source(messageId=['m1@x']), 'ok', own_addresses=[ME])
        assert draft.references == ['m1@x']

    def test_reply_all(self):
        """Reply-all copies To and Cc into Cc, minus ourselves and the sender"""
        source = _source(
            to=[{'email': ME}, {'email': 'bob@example.com'}],
            cc=[{'email': 'carol@example.com'}, {'email': 'ALICE@example.com'}],
        )
        draft = compose_reply(source, 'ok', reply_all=True, own_addresses=[ME])
        assert [a.email for a in draft.to] == ['alice@example.com']
        assert [a.email for a in draft.cc] == ['bob@example.com', 'carol@example.com']

    def test_own_address_never_recipient(self):
        """Replying to our own message goes to its recipients"""
        source = _source(**{'from': [{'email': 'Me@Fastmail.com'}],
                            'to': [{'email': 'bob@example.com'}]})
        draft = compose_reply(source, 'ok', own_addresses=[ME])
        assert [a.email for a in draft.to] == ['bob@example.com']

    def test_no_recipient_left(self):
        source = _source(**{'from': [{'email': ME}], 'to': [{'email': ME}]})
        with pytest.raises(ValueError, match='recipient'):
            compose_reply(source, 'ok', own_addresses=[ME])

    def test_extra_cc(self):
        draft = compose_reply(_source(), 'ok', own_addresses=[ME],
                              extra_cc=[EmailAddress('dave@example.com')])
        assert [a.email for a in draft.cc] == ['dave@example.com']


class TestComposeForward:
    """Tests for forwarding"""

    def test_forward(self):
        """Forward adds Fwd:, keeps the original text and never threads"""
        draft = compose_forward(_source(), [EmailAddress('bob@example.com')], 'FYI')
        assert draft.subject == 'Fwd: Quarterly report'
        assert draft.in_reply_to == []
        assert draft.references == []
        assert draft.body.startswith('FYI\n\n' + FORWARD_HEADER)
        assert 'From: Alice <alice@example.com>' in draft.body
        assert draft.body.rstrip().endswith('Alice')
        assert 'Here is the report.' in draft.body


class TestComposeNew:
    """Tests for fresh messages"""

    def test_no_threading(self):
        draft = compose_new([EmailAddress('bob@example.com')], 'Hi', 'Hello')
        assert draft.in_reply_to == []
        assert draft.references == []

    def test_requires_recipient(self):
        with pytest.raises(ValueError):
            compose_new([], 'Hi', 'Hello')

    def test_cc_does_not_repeat_to(self):
        bob = EmailAddress('bob@example.com')
        draft = compose_new([bob], 'Hi', 'Hello', cc=[EmailAddress('BOB@example.com')])
        assert draft.cc == []

    def test_to_jmap(self, identity):
        """The created email is a draft in Drafts with a plain text body"""
        draft = OutgoingDraft([EmailAddress('bob@example.com', 'Bob')], 'Hi', 'Hello',
                              in_reply_to=['m1@x'], references=['m1@x'])
        email = draft.to_jmap(identity, 'mb-drafts')
        assert email['mailboxIds'] == {'mb-drafts': True}
        assert email['keywords'] == {'$draft': True, '$seen': True}
        assert email['from'] == [{'email': ME, 'name': 'Me'}]
        assert email['to'] == [{'email': 'bob@example.com', 'name': 'Bob'}]
        assert email['bodyValues']['body']['value'] == 'Hello'
        assert email['inReplyTo'] == ['m1@x']
        assert 'replyTo' not in email

    def test_reply_to(self, identity):
        draft = compose_new([EmailAddress('list@example.com')], 'Hi', 'Hello',
                            reply_to=[EmailAddress('me@example.org'), EmailAddress('ME@example.org')])
        assert draft.to_dict()['reply_to'] == ['me@example.org']
        email = draft.to_jmap(identity, 'mb-drafts')
        assert email['replyTo'] == [{'email': 'me@example.org'}]


class TestChooseIdentity:
    def test_matches_username(self):
        identities = [Identity('a', 'alias@example.com'), Identity('b', ME)]
        assert choose_identity(identities, ME).id == 'b'

    def test_falls_back_to_first(self):
        identities = [Identity('a', 'alias@example.com')]
        assert choose_identity(identities, ME).id == 'a'

    def test_none(self):
        with pytest.raises(FastmailError):
            choose_identity([], ME)


def _draft():
    return OutgoingDraft([EmailAddress('bob@example.com')], 'Hi', 'Hello')


class TestSubmission:
    """Tests for create-and-submit"""

    def test_single_batch(self, session, identity):
        """Create and submit share one batch; the submission refers to the draft"""
        batch, create, submit = submission_batch(session, _draft(), identity)
        calls = batch.to_request()['methodCalls']

        assert [c[0] for c in calls] == ['Email/set', 'EmailSubmission/set']
        submission = calls[1][1]['create']['submission']
        assert submission == {'identityId': 'id-1', 'emailId': '#draft'}
        patch = calls[1][1]['onSuccessUpdateEmail']['#submission']
        assert patch == {'mailboxIds': {'mb-sent': True}, 'keywords/$draft': None, 'keywords/$seen': True}

    def test_success(self, session, identity):
        def execute(batch):
            return BatchResult(batch, [
                CallResult('Email/set', {'created': {'draft': {'id': 'M1'}}}, 'create'),
                CallResult('EmailSubmission/set', {'created': {'submission': {'id': 'S1'}}}, 'submit'),
                CallResult('Email/set', {'updated': {'M1': None}}, 'submit'),
            ])

        assert submit_draft(execute, session, _draft(), identity) == 'M1'

    def test_create_failure(self, session, identity):
        """A failed create raises the create error, not SubmissionIncomplete"""
        def execute(batch):
            return BatchResult(batch, [
                CallResult('Email/set', {'notCreated': {'draft': {'type': 'invalidProperties'}}}, 'create'),
                CallResult('error', {'type': 'invalidResultReference'}, 'submit'),
            ])

        with pytest.raises(MethodError, match='create message failed'):
            submit_draft(execute, session, _draft(), identity)

    def test_submission_failure(self, session, identity):
        """Created but not submitted reports the created email id"""
        def execute(batch):
            return BatchResult(batch, [
                CallResult('Email/set', {'created': {'draft': {'id': 'M1'}}}, 'create'),
                CallResult('EmailSubmission/set', {
                    'notCreated': {'submission': {'type': 'forbiddenToSend'}},
                }, 'submit'),
            ])

        with pytest.raises(SubmissionIncomplete) as exc_info:
            submit_draft(execute, session, _draft(), identity)
        assert exc_info.value.email_id == 'M1'
        assert 'fastmail mail submit M1' in str(exc_info.value)

    def test_split_submission_failure(self, session, identity):
        """In split mode a transport failure on the second step keeps the email id"""
        batches = []

        def execute(batch):
            batches.append(batch)
            if len(batches) == 1:
                return BatchResult(batch, [
                    CallResult('Email/set', {'created': {'draft': {'id': 'M1'}}}, 'create'),
                ])
            raise TransportError("Network error: reset")

        with pytest.raises(SubmissionIncomplete) as exc_info:
            submit_draft(execute, session, _draft(), identity, split=True)
        assert exc_info.value.email_id == 'M1'
        assert len(batches) == 2

    def test_submit_existing(self, session, identity):
        """Re-submission refers to the email by id"""
        captured = []

        def execute(batch):
            captured.append(batch.to_request())
            return BatchResult(batch, [
                CallResult('EmailSubmission/set', {'created': {'submission': {'id': 'S1'}}}, 'submit'),
            ])

        assert submit_existing(execute, session, 'M1', identity) == 'M1'
        submission = captured[0]['methodCalls'][0][1]['create']['submission']
        assert submission['emailId'] == 'M1'
