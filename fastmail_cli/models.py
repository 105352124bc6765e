"""
Value types for JMAP objects

Plain snapshots built from JMAP JSON. Nothing here talks to the server.
"""

from dataclasses import dataclass, field
from email.utils import getaddresses

import html2text

# Properties fetched for email listings
SUMMARY_PROPERTIES = [
    "id", "blobId", "threadId", "mailboxIds", "keywords", "size", "receivedAt",
    "from", "to", "cc", "subject", "preview", "hasAttachment",
]

# Properties fetched when reading a single email
FULL_PROPERTIES = SUMMARY_PROPERTIES + [
    "messageId", "inReplyTo", "references", "bcc", "replyTo", "sentAt",
    "textBody", "htmlBody", "attachments", "bodyValues",
]

MAILBOX_PROPERTIES = [
    "id", "name", "parentId", "role", "totalEmails", "unreadEmails",
    "totalThreads", "unreadThreads", "sortOrder",
]


@dataclass(frozen=True)
class EmailAddress:
    email: str
    name: str | None = None

    def __str__(self):
        if self.name:
            return f"{self.name} <{self.email}>"
        return self.email

    @classmethod
    def from_jmap(cls, data):
        return cls(email=data.get('email') or '', name=data.get('name') or None)

    def to_jmap(self):
        data = {'email': self.email}
        if self.name:
            data['name'] = self.name
        return data


def parse_addresses(value):
    """
    Parse 'a@x.com, Jane <b@y.com>' (or a list of such strings) into EmailAddress.

    Raises:
        ValueError: if an entry is not an email address
    """
    if not value:
        return []
    if isinstance(value, str):
        value = [value]

    addresses = []
    for name, address in getaddresses(list(value)):
        if not name and not address:
            continue
        if '@' not in address:
            raise ValueError(f"Invalid email address: {address or name!r}")
        addresses.append(EmailAddress(address, name or None))
    return addresses


def _addresses(data, key):
    return [EmailAddress.from_jmap(a) for a in data.get(key) or []]


@dataclass
class BodyPart:
    part_id: str | None = None
    blob_id: str | None = None
    size: int = 0
    name: str | None = None
    type: str | None = None
    charset: str | None = None
    disposition: str | None = None
    cid: str | None = None

    @classmethod
    def from_jmap(cls, data):
        return cls(
            part_id=data.get('partId'),
            blob_id=data.get('blobId'),
            size=data.get('size') or 0,
            name=data.get('name'),
            type=data.get('type'),
            charset=data.get('charset'),
            disposition=data.get('disposition'),
            cid=data.get('cid'),
        )

    def to_dict(self):
        return {
            'blob_id': self.blob_id,
            'name': self.name,
            'type': self.type,
            'size': self.size,
            'disposition': self.disposition,
        }


@dataclass
class Email:
    id: str
    blob_id: str | None = None
    thread_id: str | None = None
    mailbox_ids: set = field(default_factory=set)
    keywords: set = field(default_factory=set)
    size: int = 0
    received_at: str | None = None
    sent_at: str | None = None
    message_id: list = field(default_factory=list)
    in_reply_to: list = field(default_factory=list)
    references: list = field(default_factory=list)
    from_: list = field(default_factory=list)
    to: list = field(default_factory=list)
    cc: list = field(default_factory=list)
    bcc: list = field(default_factory=list)
    reply_to: list = field(default_factory=list)
    subject: str = ''
    preview: str = ''
    has_attachment: bool = False
    text_body: list = field(default_factory=list)
    html_body: list = field(default_factory=list)
    attachments: list = field(default_factory=list)
    body_values: dict = field(default_factory=dict)

    @classmethod
    def from_jmap(cls, data):
        return cls(
            id=data['id'],
            blob_id=data.get('blobId'),
            thread_id=data.get('threadId'),
            mailbox_ids={k for k, v in (data.get('mailboxIds') or {}).items() if v},
            keywords={k for k, v in (data.get('keywords') or {}).items() if v},
            size=data.get('size') or 0,
            received_at=data.get('receivedAt'),
            sent_at=data.get('sentAt'),
            message_id=list(data.get('messageId') or []),
            in_reply_to=list(data.get('inReplyTo') or []),
            references=list(data.get('references') or []),
            from_=_addresses(data, 'from'),
            to=_addresses(data, 'to'),
            cc=_addresses(data, 'cc'),
            bcc=_addresses(data, 'bcc'),
            reply_to=_addresses(data, 'replyTo'),
            subject=data.get('subject') or '',
            preview=data.get('preview') or '',
            has_attachment=bool(data.get('hasAttachment')),
            text_body=[BodyPart.from_jmap(p) for p in data.get('textBody') or []],
            html_body=[BodyPart.from_jmap(p) for p in data.get('htmlBody') or []],
            attachments=[BodyPart.from_jmap(p) for p in data.get('attachments') or []],
            body_values={k: (v or {}).get('value', '') for k, v in (data.get('bodyValues') or {}).items()},
        )

    @property
    def is_unread(self):
        return '$seen' not in self.keywords

    @property
    def is_flagged(self):
        return '$flagged' in self.keywords

    @property
    def sender(self):
        return str(self.from_[0]) if self.from_ else '(unknown)'

    def _part_text(self, parts):
        values = [self.body_values[p.part_id] for p in parts
                  if p.part_id and p.part_id in self.body_values]
        return '\n'.join(values) if values else None

    def text_content(self):
        """Plain text of the body, converting HTML when there is no text part"""
        text = self._part_text(self.text_body)
        if text is not None and not self._is_html(self.text_body):
            return text

        html = self._part_text(self.html_body)
        if html is None:
            html = text
        if html is not None:
            h = html2text.HTML2Text()
            h.ignore_links = False
            h.ignore_images = True
            return h.handle(html).strip()
        return self.preview

    @staticmethod
    def _is_html(parts):
        return bool(parts) and all((p.type or '').lower() == 'text/html' for p in parts)

    def to_dict(self, full=False):
        data = {
            'id': self.id,
            'thread_id': self.thread_id,
            'subject': self.subject or '(No subject)',
            'from': [str(a) for a in self.from_],
            'to': [str(a) for a in self.to],
            'cc': [str(a) for a in self.cc],
            'received_at': self.received_at,
            'size': self.size,
            'is_unread': self.is_unread,
            'is_flagged': self.is_flagged,
            'has_attachment': self.has_attachment,
            'mailbox_ids': sorted(self.mailbox_ids),
            'preview': self.preview,
        }
        if full:
            data.update({
                'bcc': [str(a) for a in self.bcc],
                'reply_to': [str(a) for a in self.reply_to],
                'sent_at': self.sent_at,
                'message_id': self.message_id,
                'in_reply_to': self.in_reply_to,
                'references': self.references,
                'body': self.text_content(),
                'attachments': [a.to_dict() for a in self.attachments],
            })
        return data


@dataclass
class Mailbox:
    id: str
    name: str
    role: str | None = None
    parent_id: str | None = None
    total_emails: int = 0
    unread_emails: int = 0
    sort_order: int = 0

    @classmethod
    def from_jmap(cls, data):
        return cls(
            id=data['id'],
            name=data.get('name') or '',
            role=data.get('role'),
            parent_id=data.get('parentId'),
            total_emails=data.get('totalEmails') or 0,
            unread_emails=data.get('unreadEmails') or 0,
            sort_order=data.get('sortOrder') or 0,
        )

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'role': self.role,
            'parent_id': self.parent_id,
            'total_emails': self.total_emails,
            'unread_emails': self.unread_emails,
        }


@dataclass
class Identity:
    id: str
    email: str
    name: str = ''

    @classmethod
    def from_jmap(cls, data):
        return cls(id=data['id'], email=data.get('email') or '', name=data.get('name') or '')

    def address(self):
        return EmailAddress(self.email, self.name or None)

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'email': self.email}


@dataclass
class MaskedEmail:
    id: str
    email: str
    state: str = 'pending'
    for_domain: str = ''
    description: str = ''
    email_prefix: str = ''
    url: str | None = None
    created_at: str | None = None
    last_message_at: str | None = None

    @classmethod
    def from_jmap(cls, data):
        return cls(
            id=data['id'],
            email=data.get('email') or '',
            state=data.get('state') or 'pending',
            for_domain=data.get('forDomain') or '',
            description=data.get('description') or '',
            email_prefix=data.get('emailPrefix') or '',
            url=data.get('url'),
            created_at=data.get('createdAt'),
            last_message_at=data.get('lastMessageAt'),
        )

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'state': self.state,
            'for_domain': self.for_domain,
            'description': self.description,
            'email_prefix': self.email_prefix,
            'url': self.url,
            'created_at': self.created_at,
            'last_message_at': self.last_message_at,
        }
