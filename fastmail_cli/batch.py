"""
JMAP method-call batches

A Batch is an ordered list of method calls sent in one request. Later calls
can take arguments from the results of earlier calls through a
ResultReference, so list-then-fetch or create-then-submit needs only one
round trip. BatchResult maps the method responses back onto the calls that
produced them, by tag.
"""

import logging
from dataclasses import dataclass, field

from .errors import InvalidBatch, MethodError, PartialBatchFailure, ProtocolError

logger = logging.getLogger(__name__)


# ============================================================================
# ARGUMENT VARIANTS
# ============================================================================

@dataclass(frozen=True)
class ResultReference:
    """Take the value at `path` from the result of the call tagged `tag`"""
    tag: str
    name: str
    path: str

    def to_json(self):
        return {'resultOf': self.tag, 'name': self.name, 'path': self.path}


@dataclass(frozen=True)
class CreationRef:
    """Refer to an object created earlier in the same batch by its creation id"""
    creation_id: str

    def to_json(self):
        return f"#{self.creation_id}"


def _serialize(value):
    """Turn nested arguments into JSON, replacing CreationRefs with '#id'"""
    if isinstance(value, CreationRef):
        return value.to_json()
    if isinstance(value, ResultReference):
        # Only reachable if validation was bypassed
        raise InvalidBatch(f"ResultReference to {value.tag} is not a top-level argument")
    if isinstance(value, dict):
        return {
            (key.to_json() if isinstance(key, CreationRef) else key): _serialize(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_serialize(item) for item in value]
    return value


def _creation_refs(value):
    """Yield every CreationRef found in a nested argument value"""
    if isinstance(value, CreationRef):
        yield value
    elif isinstance(value, dict):
        for key, item in value.items():
            if isinstance(key, CreationRef):
                yield key
            yield from _creation_refs(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _creation_refs(item)


def _has_nested_reference(value):
    if isinstance(value, ResultReference):
        return True
    if isinstance(value, dict):
        return any(_has_nested_reference(item) for item in value.values())
    if isinstance(value, (list, tuple)):
        return any(_has_nested_reference(item) for item in value)
    return False


# ============================================================================
# CALLS AND BATCHES
# ============================================================================

@dataclass
class MethodCall:
    name: str
    arguments: dict
    tag: str
    label: str | None = None

    def ref(self, path):
        """Reference the value at `path` (a JSON pointer) in this call's result"""
        return ResultReference(self.tag, self.name, path)

    def to_json(self):
        arguments = {}
        for key, value in self.arguments.items():
            if isinstance(value, ResultReference):
                arguments[f"#{key}"] = value.to_json()
            else:
                arguments[key] = _serialize(value)
        return [self.name, arguments, self.tag]


class Batch:
    """
    Builder for one JMAP request.

    Calls are validated as they are added, so a batch that could never be
    resolved by the server fails here, before any network traffic:

    - tags are unique within the batch
    - a ResultReference is a top-level argument and names an earlier call
      with the same method name
    - a CreationRef names an object created by an earlier /set call (or by
      the `create` of the same call)
    """

    def __init__(self, using):
        self.using = list(dict.fromkeys(using))
        self.calls = []
        self._by_tag = {}
        self._created = set()

    def __len__(self):
        return len(self.calls)

    def __iter__(self):
        return iter(self.calls)

    def add(self, name, arguments, tag=None, label=None):
        """
        Append a method call and return it.

        Args:
            name: JMAP method name, e.g. 'Email/query'
            arguments: argument dict; values may be ResultReference (top level
                only) or CreationRef (anywhere, including mapping keys)
            tag: correlation tag (generated when omitted)
            label: human description of the logical operation, used in errors

        Raises:
            InvalidBatch: if the call would break a batch invariant
        """
        if tag is None:
            tag = self._next_tag()
        if tag in self._by_tag:
            raise InvalidBatch(f"Duplicate call tag '{tag}' in batch")

        own_created = set()
        create = arguments.get('create')
        if name.endswith('/set') and isinstance(create, dict):
            own_created = set(create)
            clash = own_created & self._created
            if clash:
                raise InvalidBatch(f"Creation id '{sorted(clash)[0]}' is already used in this batch")

        for key, value in arguments.items():
            if isinstance(value, ResultReference):
                target = self._by_tag.get(value.tag)
                if target is None:
                    raise InvalidBatch(
                        f"Argument '{key}' of {name} references '{value.tag}', "
                        "which is not an earlier call in this batch"
                    )
                if target.name != value.name:
                    raise InvalidBatch(
                        f"Argument '{key}' of {name} references '{value.tag}' as "
                        f"{value.name}, but that call is {target.name}"
                    )
            elif _has_nested_reference(value):
                raise InvalidBatch(f"Argument '{key}' of {name} nests a ResultReference")

            for ref in _creation_refs(value):
                if ref.creation_id not in self._created | own_created:
                    raise InvalidBatch(
                        f"Argument '{key}' of {name} refers to creation id "
                        f"'{ref.creation_id}', which nothing earlier creates"
                    )

        call = MethodCall(name, arguments, tag, label)
        self.calls.append(call)
        self._by_tag[tag] = call
        self._created |= own_created
        return call

    def call(self, tag):
        return self._by_tag[tag]

    def _next_tag(self):
        index = len(self.calls)
        while f"c{index}" in self._by_tag:
            index += 1
        return f"c{index}"

    def to_request(self):
        return {
            'using': self.using,
            'methodCalls': [call.to_json() for call in self.calls],
        }

    def describe(self):
        """Method names and tags only, safe to log"""
        return ', '.join(f"{call.name}[{call.tag}]" for call in self.calls)


# ============================================================================
# RESULTS
# ============================================================================

@dataclass
class CallResult:
    name: str
    payload: dict = field(default_factory=dict)
    tag: str = ''

    @property
    def is_error(self):
        return self.name == 'error'

    @classmethod
    def from_json(cls, item):
        if not isinstance(item, (list, tuple)) or len(item) != 3:
            raise ProtocolError(f"Malformed method response: {item!r}")
        name, payload, tag = item
        if not isinstance(name, str) or not isinstance(payload, dict) or not isinstance(tag, str):
            raise ProtocolError(f"Malformed method response: {item!r}")
        return cls(name, payload, tag)


def _error_for(call, payload):
    return MethodError(
        call.name,
        call.tag,
        payload.get('type', 'serverFail'),
        payload.get('description'),
        call.label,
    )


class BatchResult:
    """
    Method responses of one batch, indexed by tag.

    Responses are never matched by position. A tag can carry more than one
    response when the server runs an implicit call (e.g. the Email/set
    triggered by onSuccessUpdateEmail on EmailSubmission/set).
    """

    def __init__(self, batch, results):
        self.batch = batch
        self._by_tag = {}
        for result in results:
            if result.tag not in batch._by_tag:
                logger.warning("Ignoring response with unknown tag %r (%s)", result.tag, result.name)
                continue
            self._by_tag.setdefault(result.tag, []).append(result)

        missing = [call for call in batch.calls if call.tag not in self._by_tag]
        if missing:
            raise ProtocolError(
                "No response for " + ', '.join(f"{c.name}[{c.tag}]" for c in missing)
            )

    def _primary(self, call):
        for result in self._by_tag[call.tag]:
            if result.name == call.name or result.is_error:
                return result
        raise ProtocolError(f"No {call.name} response for tag '{call.tag}'")

    def outcome(self, call):
        """Payload of the call, or the MethodError describing its failure"""
        result = self._primary(call)
        if result.is_error:
            return _error_for(call, result.payload)
        return result.payload

    def get(self, call):
        """
        Payload of the call.

        Raises:
            MethodError: if the server answered this call with an error
        """
        outcome = self.outcome(call)
        if isinstance(outcome, MethodError):
            raise outcome
        return outcome

    def ok(self, call):
        return not self._primary(call).is_error

    def implicit(self, call, name):
        """Payload of an implicit response sharing the call's tag, if any"""
        for result in self._by_tag[call.tag]:
            if result.name == name and name != call.name:
                return result.payload
        return None

    def outcomes(self):
        """Dict of tag -> payload or MethodError, in request order"""
        return {call.tag: self.outcome(call) for call in self.batch.calls}

    def errors(self):
        """Dict of tag -> MethodError for every failed call"""
        return {tag: outcome for tag, outcome in self.outcomes().items()
                if isinstance(outcome, MethodError)}

    def raise_for_errors(self):
        """
        Raise if any call failed.

        A batch of one call raises its MethodError; otherwise
        PartialBatchFailure carries the failed and the successful calls.
        """
        outcomes = self.outcomes()
        errors = {tag: o for tag, o in outcomes.items() if isinstance(o, MethodError)}
        if not errors:
            return
        if len(outcomes) == 1:
            raise next(iter(errors.values()))
        successes = {tag: o for tag, o in outcomes.items() if tag not in errors}
        raise PartialBatchFailure(errors, successes)

    # /set helpers

    def created(self, call, creation_id):
        """
        The server's record for an object created by a /set call.

        Raises:
            MethodError: if the call failed or the object was not created
        """
        payload = self.get(call)
        not_created = payload.get('notCreated') or {}
        if creation_id in not_created:
            raise _error_for(call, not_created[creation_id])
        created = payload.get('created') or {}
        if creation_id not in created:
            raise ProtocolError(f"{call.name} did not report creation id '{creation_id}'")
        return created[creation_id]

    def updated(self, call, object_id):
        """
        Confirm an object was updated by a /set call.

        Raises:
            MethodError: if the call failed or the update was rejected
        """
        payload = self.get(call)
        not_updated = payload.get('notUpdated') or {}
        if object_id in not_updated:
            raise _error_for(call, not_updated[object_id])
        updated = payload.get('updated') or {}
        if object_id not in updated:
            raise ProtocolError(f"{call.name} did not report update of '{object_id}'")
        return updated[object_id]
