"""
Tests for the method-call batch builder and response resolver
"""

import pytest

from fastmail_cli.batch import Batch, BatchResult, CallResult, CreationRef, ResultReference
from fastmail_cli.errors import InvalidBatch, MethodError, PartialBatchFailure, ProtocolError
from fastmail_cli.session import READ_MAIL, SEND_MAIL


class TestBatchBuilder:
    """Tests for Batch.add validation and serialization"""

    def test_chained_query_and_get(self):
        """Email/get can take its ids from an earlier Email/query"""
        batch = Batch(READ_MAIL)
        query = batch.add('Email/query', {'accountId': 'a'}, tag='query')
        batch.add('Email/get', {'accountId': 'a', 'ids': query.ref('/ids')}, tag='get')

        request = batch.to_request()
        assert request['using'] == list(READ_MAIL)
        name, arguments, tag = request['methodCalls'][1]
        assert name == 'Email/get'
        assert tag == 'get'
        assert 'ids' not in arguments
        assert arguments['#ids'] == {'resultOf': 'query', 'name': 'Email/query', 'path': '/ids'}

    def test_generated_tags_are_unique(self):
        """Calls without a tag get fresh ones"""
        batch = Batch(READ_MAIL)
        first = batch.add('Mailbox/get', {})
        second = batch.add('Identity/get', {})
        assert first.tag != second.tag
        assert len(batch) == 2

    def test_generated_tag_skips_explicit_tag(self):
        """A generated tag never collides with one given explicitly"""
        batch = Batch(READ_MAIL)
        batch.add('Mailbox/get', {}, tag='c1')
        batch.add('Mailbox/get', {})
        batch.add('Mailbox/get', {})
        assert len({call.tag for call in batch}) == 3

    def test_duplicate_tag(self):
        """Reusing a tag is rejected"""
        batch = Batch(READ_MAIL)
        batch.add('Mailbox/get', {}, tag='x')
        with pytest.raises(InvalidBatch, match='Duplicate'):
            batch.add('Email/get', {}, tag='x')

    def test_reference_to_unknown_call(self):
        """A reference must point at an earlier call"""
        batch = Batch(READ_MAIL)
        with pytest.raises(InvalidBatch, match='not an earlier call'):
            batch.add('Email/get', {'ids': ResultReference('later', 'Email/query', '/ids')})

    def test_reference_with_wrong_method_name(self):
        """The referenced call must have the method name the reference claims"""
        batch = Batch(READ_MAIL)
        batch.add('Mailbox/get', {}, tag='m')
        with pytest.raises(InvalidBatch, match='Mailbox/get'):
            batch.add('Email/get', {'ids': ResultReference('m', 'Email/query', '/ids')})

    def test_nested_reference(self):
        """References are only allowed as top-level arguments"""
        batch = Batch(READ_MAIL)
        query = batch.add('Email/query', {}, tag='q')
        with pytest.raises(InvalidBatch, match='nests'):
            batch.add('Email/get', {'filter': {'ids': query.ref('/ids')}})

    def test_failed_add_leaves_batch_unchanged(self):
        """A rejected call is not appended"""
        batch = Batch(READ_MAIL)
        batch.add('Mailbox/get', {}, tag='m')
        with pytest.raises(InvalidBatch):
            batch.add('Email/get', {'ids': ResultReference('m', 'Email/query', '/ids')})
        assert [c.tag for c in batch] == ['m']

    def test_creation_reference(self):
        """A creation id made by an earlier /set can be referenced, also as a key"""
        batch = Batch(SEND_MAIL)
        batch.add('Email/set', {'create': {'draft': {}}}, tag='create')
        batch.add('EmailSubmission/set', {
            'create': {'submission': {'emailId': CreationRef('draft')}},
            'onSuccessUpdateEmail': {CreationRef('submission'): {'keywords/$draft': None}},
        }, tag='submit')

        arguments = batch.to_request()['methodCalls'][1][1]
        assert arguments['create']['submission']['emailId'] == '#draft'
        assert '#submission' in arguments['onSuccessUpdateEmail']

    def test_unknown_creation_reference(self):
        """Referencing a creation id nothing creates is rejected"""
        batch = Batch(SEND_MAIL)
        with pytest.raises(InvalidBatch, match='draft'):
            batch.add('EmailSubmission/set', {'create': {'s': {'emailId': CreationRef('draft')}}})

    def test_creation_id_reuse(self):
        """A creation id can only be used once per batch"""
        batch = Batch(SEND_MAIL)
        batch.add('Email/set', {'create': {'draft': {}}})
        with pytest.raises(InvalidBatch, match='already used'):
            batch.add('Email/set', {'create': {'draft': {}}})

    def test_describe_omits_arguments(self):
        """describe() lists names and tags only"""
        batch = Batch(READ_MAIL)
        batch.add('Email/query', {'filter': {'text': 'secret'}}, tag='q')
        assert batch.describe() == 'Email/query[q]'
        assert 'secret' not in batch.describe()


def _query_get_batch():
    batch = Batch(READ_MAIL)
    query = batch.add('Email/query', {}, tag='query', label='query emails')
    get = batch.add('Email/get', {'ids': query.ref('/ids')}, tag='get', label='fetch emails')
    return batch, query, get


class TestBatchResult:
    """Tests for resolving responses by tag"""

    def test_results_matched_by_tag_not_position(self):
        """Responses in any order resolve to the right call"""
        batch, query, get = _query_get_batch()
        result = BatchResult(batch, [
            CallResult('Email/get', {'list': [{'id': 'e1'}]}, 'get'),
            CallResult('Email/query', {'ids': ['e1']}, 'query'),
        ])
        assert result.get(query) == {'ids': ['e1']}
        assert result.get(get)['list'][0]['id'] == 'e1'

    def test_missing_response(self):
        """A call without any response is a protocol error"""
        batch, query, get = _query_get_batch()
        with pytest.raises(ProtocolError, match='get'):
            BatchResult(batch, [CallResult('Email/query', {'ids': []}, 'query')])

    def test_unknown_tag_ignored(self, caplog):
        """Responses with tags we never sent are logged and ignored"""
        batch, query, get = _query_get_batch()
        result = BatchResult(batch, [
            CallResult('Email/query', {'ids': []}, 'query'),
            CallResult('Email/get', {'list': []}, 'get'),
            CallResult('Email/get', {'list': []}, 'stray'),
        ])
        assert result.errors() == {}
        assert 'stray' in caplog.text

    def test_error_is_local_to_its_call(self):
        """One failed call does not hide the others' results"""
        batch, query, get = _query_get_batch()
        result = BatchResult(batch, [
            CallResult('Email/query', {'ids': ['e1']}, 'query'),
            CallResult('error', {'type': 'invalidResultReference'}, 'get'),
        ])
        assert result.ok(query)
        assert not result.ok(get)
        assert result.get(query) == {'ids': ['e1']}

        with pytest.raises(MethodError) as exc_info:
            result.get(get)
        assert exc_info.value.error_type == 'invalidResultReference'
        assert exc_info.value.tag == 'get'
        assert 'fetch emails failed' in str(exc_info.value)

    def test_out_of_order_with_middle_error(self):
        """A failed call between two chained calls leaves them resolvable in any response order"""
        batch = Batch(READ_MAIL)
        a = batch.add('Mailbox/get', {}, tag='a')
        b = batch.add('Email/query', {}, tag='b')
        c = batch.add('Email/get', {'ids': a.ref('/list/*/id')}, tag='c')
        result = BatchResult(batch, [
            CallResult('Email/get', {'list': [{'id': 'e1'}]}, 'c'),
            CallResult('error', {'type': 'unsupportedFilter'}, 'b'),
            CallResult('Mailbox/get', {'list': [{'id': 'mb-inbox'}]}, 'a'),
        ])

        assert result.ok(a)
        assert result.ok(c)
        assert result.get(a) == {'list': [{'id': 'mb-inbox'}]}
        assert result.get(c) == {'list': [{'id': 'e1'}]}
        assert set(result.errors()) == {'b'}
        assert result.errors()['b'].error_type == 'unsupportedFilter'
        with pytest.raises(PartialBatchFailure) as exc_info:
            result.raise_for_errors()
        assert set(exc_info.value.results) == {'a', 'c'}

    def test_raise_for_errors_partial(self):
        """A batch with some failures raises PartialBatchFailure with both sides"""
        batch, query, get = _query_get_batch()
        result = BatchResult(batch, [
            CallResult('Email/query', {'ids': ['e1']}, 'query'),
            CallResult('error', {'type': 'serverFail', 'description': 'oops'}, 'get'),
        ])
        with pytest.raises(PartialBatchFailure) as exc_info:
            result.raise_for_errors()
        assert list(exc_info.value.errors) == ['get']
        assert exc_info.value.results == {'query': {'ids': ['e1']}}

    def test_raise_for_errors_single_call(self):
        """A batch of one call raises the MethodError itself"""
        batch = Batch(READ_MAIL)
        batch.add('Mailbox/get', {}, tag='m')
        result = BatchResult(batch, [CallResult('error', {'type': 'forbidden'}, 'm')])
        with pytest.raises(MethodError):
            result.raise_for_errors()

    def test_implicit_response(self):
        """An implicit Email/set response shares the submission's tag"""
        batch = Batch(SEND_MAIL)
        batch.add('Email/set', {'create': {'draft': {}}}, tag='create')
        submit = batch.add('EmailSubmission/set', {'create': {'s': {'emailId': CreationRef('draft')}}},
                           tag='submit')
        result = BatchResult(batch, [
            CallResult('Email/set', {'created': {'draft': {'id': 'M1'}}}, 'create'),
            CallResult('EmailSubmission/set', {'created': {'s': {'id': 'S1'}}}, 'submit'),
            CallResult('Email/set', {'updated': {'M1': None}}, 'submit'),
        ])
        assert result.get(submit)['created']['s']['id'] == 'S1'
        assert result.implicit(submit, 'Email/set') == {'updated': {'M1': None}}

    def test_set_helpers(self):
        """created/updated surface per-object failures as MethodError"""
        batch = Batch(READ_MAIL)
        update = batch.add('Email/set', {'update': {'e1': {}, 'e2': {}}}, tag='u', label='move')
        result = BatchResult(batch, [CallResult('Email/set', {
            'updated': {'e1': None},
            'notUpdated': {'e2': {'type': 'notFound'}},
        }, 'u')])

        assert result.updated(update, 'e1') is None
        with pytest.raises(MethodError, match='move failed: notFound'):
            result.updated(update, 'e2')

    def test_malformed_response(self):
        """A response that is not a [name, args, tag] triple is rejected"""
        with pytest.raises(ProtocolError):
            CallResult.from_json(['Email/get', {}])
