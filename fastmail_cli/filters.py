"""
Search filter compiler

Search options are collected as a set of atomic predicates and compiled into
one JMAP FilterCondition. Predicates are only ever combined with AND.

Conventions:
- min_size is inclusive (size >= n) and max_size exclusive (size < n),
  matching JMAP minSize/maxSize.
- A calendar date means 00:00:00 UTC on that day. 'after' includes that
  instant, 'before' excludes it, so after=2025-01-01 before=2025-01-02
  covers exactly the UTC day of January 1st.
- 'pinned' is not a predicate the compiler knows. expand_predicates()
  turns it into flagged + in_mailbox before compiling.
"""

import json
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

# Fixed order of fields in the compiled filter
FIELD_ORDER = (
    'in_mailbox', 'text', 'from', 'to', 'cc', 'bcc', 'subject', 'body',
    'has_attachment', 'min_size', 'max_size', 'after', 'before',
    'unread', 'flagged',
)

_STRING_FIELDS = {
    'text': 'text',
    'from': 'from',
    'to': 'to',
    'cc': 'cc',
    'bcc': 'bcc',
    'subject': 'subject',
    'body': 'body',
    'in_mailbox': 'inMailbox',
}

DATE_ONLY = re.compile(r'^\d{4}-\d{2}-\d{2}$')


@dataclass(frozen=True)
class Predicate:
    field: str
    value: object


def predicates_from_options(**options):
    """
    Build predicates from keyword options, skipping unset ones.

    None and False are treated as "not given" for every option except
    'unread', where False asks for read messages only.
    """
    predicates = set()
    for name, value in options.items():
        if value is None:
            continue
        if value is False and name != 'unread':
            continue
        predicates.add(Predicate(name, value))
    return predicates


def expand_predicates(predicates, inbox_id=None):
    """
    Expand convenience predicates into atomic ones.

    pinned=True becomes flagged=True and in_mailbox=<inbox id>.

    Raises:
        ValueError: pinned was requested without an inbox id
    """
    expanded = set()
    for predicate in predicates:
        if predicate.field != 'pinned':
            expanded.add(predicate)
            continue
        if not predicate.value:
            continue
        if not inbox_id:
            raise ValueError("pinned needs the inbox mailbox id")
        expanded.add(Predicate('flagged', True))
        expanded.add(Predicate('in_mailbox', inbox_id))
    return expanded


def normalize_date(value):
    """
    Normalize a date value to a UTC 'YYYY-MM-DDTHH:MM:SSZ' timestamp.

    Calendar dates ('2025-01-15', 'today', 'yesterday', date objects) map to
    the start of that day in UTC. Timestamps are converted to UTC, naive
    ones being taken as UTC. Relative expressions like '2 days ago' are
    resolved against the current time.

    Raises:
        ValueError: if the value cannot be parsed
    """
    from dateutil.parser import parse as dateutil_parse
    from dateutil.relativedelta import relativedelta

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip().lower()
        today = datetime.now(timezone.utc).date()
        keywords = {
            'today': today,
            'yesterday': today - timedelta(days=1),
            'tomorrow': today + timedelta(days=1),
        }

        relative = re.match(r'^(\d+)\s*(d|days?|w|weeks?|months?|y|years?)\s*(?:ago)?$', text)
        if text in keywords:
            day = keywords[text]
            dt = datetime(day.year, day.month, day.day)
        elif relative:
            number, unit = int(relative.group(1)), relative.group(2)[0]
            delta = {
                'd': relativedelta(days=number),
                'w': relativedelta(weeks=number),
                'm': relativedelta(months=number),
                'y': relativedelta(years=number),
            }[unit]
            dt = datetime.now(timezone.utc) - delta
        elif DATE_ONLY.match(text):
            dt = datetime.strptime(text, '%Y-%m-%d')
        else:
            try:
                dt = dateutil_parse(text)
            except (ValueError, OverflowError) as e:
                raise ValueError(
                    f"Invalid date: '{value}'. Use a date like 2025-01-15, "
                    "a timestamp, 'today' or '2 days ago'"
                ) from e

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def _size(predicate):
    try:
        size = int(predicate.value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{predicate.field} must be a number of bytes") from e
    if size < 0:
        raise ValueError(f"{predicate.field} must not be negative")
    return size


def compile_condition(predicate):
    """Compile one atomic predicate into a JMAP FilterCondition"""
    name, value = predicate.field, predicate.value

    if name in _STRING_FIELDS:
        return {_STRING_FIELDS[name]: str(value)}
    if name == 'has_attachment':
        return {'hasAttachment': bool(value)}
    if name == 'min_size':
        return {'minSize': _size(predicate)}
    if name == 'max_size':
        return {'maxSize': _size(predicate)}
    if name in ('after', 'before'):
        return {name: normalize_date(value)}
    if name == 'unread':
        return {'notKeyword': '$seen'} if value else {'hasKeyword': '$seen'}
    if name == 'flagged':
        return {'hasKeyword': '$flagged'} if value else {'notKeyword': '$flagged'}
    if name == 'pinned':
        raise ValueError("pinned must be expanded with expand_predicates() before compiling")
    raise ValueError(f"Unknown search field: {name}")


def compile_filter(predicates):
    """
    Compile predicates into a single filter.

    Returns None for no predicates (matches every email), the bare condition
    for one predicate, and an AND operator over the conditions otherwise.
    Equal predicate sets always compile to equal filters.
    """
    conditions = {}
    for predicate in predicates:
        condition = compile_condition(predicate)
        key = (FIELD_ORDER.index(predicate.field), json.dumps(condition, sort_keys=True))
        conditions[key] = condition

    ordered = [conditions[key] for key in sorted(conditions)]
    if not ordered:
        return None
    if len(ordered) == 1:
        return ordered[0]
    return {'operator': 'AND', 'conditions': ordered}
