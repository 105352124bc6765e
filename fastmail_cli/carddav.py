"""
CardDAV client for Fastmail contacts

Address books are discovered with PROPFIND and read with an
addressbook-query REPORT. Contacts come back as vCards.
"""

import base64
import hashlib
import logging
import urllib.error
import urllib.parse
import urllib.request
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field

from .common import CARDDAV_URL, HTTP_TIMEOUT, get_carddav_credentials
from .errors import ProtocolError, TransportError

logger = logging.getLogger(__name__)

NS = {'d': 'DAV:', 'card': 'urn:ietf:params:xml:ns:carddav'}

PROPFIND_BODY = b"""<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:card="urn:ietf:params:xml:ns:carddav">
  <d:prop>
    <d:displayname/>
    <d:resourcetype/>
  </d:prop>
</d:propfind>"""

REPORT_BODY = b"""<?xml version="1.0" encoding="utf-8"?>
<card:addressbook-query xmlns:d="DAV:" xmlns:card="urn:ietf:params:xml:ns:carddav">
  <d:prop>
    <d:getetag/>
    <card:address-data/>
  </d:prop>
</card:addressbook-query>"""


@dataclass
class Contact:
    uid: str
    name: str
    emails: list = field(default_factory=list)
    phones: list = field(default_factory=list)
    organization: str | None = None
    title: str | None = None
    notes: str | None = None

    def matches(self, query):
        query = query.lower()
        return (query in self.name.lower()
                or any(query in e['email'].lower() for e in self.emails)
                or query in (self.organization or '').lower())

    def to_dict(self):
        return {
            'id': self.uid,
            'name': self.name,
            'emails': self.emails,
            'phones': self.phones,
            'organization': self.organization,
            'title': self.title,
            'notes': self.notes,
        }


# ============================================================================
# VCARD PARSING
# ============================================================================

def _unfold(text):
    """Join vCard continuation lines (lines starting with a space or tab)"""
    lines = []
    for line in text.replace('\r\n', '\n').split('\n'):
        if line[:1] in (' ', '\t') and lines:
            lines[-1] += line[1:]
        elif line.strip():
            lines.append(line)
    return lines


def _unescape(value):
    return (value.replace('\\n', '\n').replace('\\N', '\n')
            .replace('\\,', ',').replace('\\;', ';').replace('\\\\', '\\'))


def _type_label(params):
    """The TYPE parameter of a property, e.g. 'work' from EMAIL;TYPE=WORK,INTERNET"""
    for param in params:
        key, _, value = param.partition('=')
        if key.upper() == 'TYPE':
            types = [t for t in value.lower().split(',') if t not in ('internet', 'pref', 'voice')]
            return types[0] if types else None
    return None


def parse_vcard(text):
    """Parse one vCard into a Contact, or None when it has no name"""
    uid = name = ''
    contact = Contact(uid='', name='')

    for line in _unfold(text):
        prop, sep, value = line.partition(':')
        if not sep:
            continue
        prop_name, *params = prop.split(';')
        # Grouped properties look like item1.EMAIL
        prop_name = prop_name.rsplit('.', 1)[-1].upper()
        value = value.strip()

        if prop_name == 'UID':
            uid = value
        elif prop_name == 'FN':
            name = _unescape(value)
        elif prop_name == 'EMAIL' and value:
            contact.emails.append({'email': value, 'label': _type_label(params)})
        elif prop_name == 'TEL' and value:
            contact.phones.append({'number': value.removeprefix('tel:'), 'label': _type_label(params)})
        elif prop_name == 'ORG':
            contact.organization = _unescape(value).strip(';').replace(';', ', ') or None
        elif prop_name == 'TITLE':
            contact.title = _unescape(value) or None
        elif prop_name == 'NOTE':
            contact.notes = _unescape(value) or None

    if not name:
        return None

    contact.name = name
    contact.uid = uid or hashlib.sha1(name.encode()).hexdigest()[:16]
    return contact


# ============================================================================
# CARDDAV REQUESTS
# ============================================================================

class CardDavClient:
    def __init__(self, username, app_password, base_url=CARDDAV_URL, timeout=HTTP_TIMEOUT):
        self.username = username
        self._auth = base64.b64encode(f"{username}:{app_password}".encode()).decode()
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    @classmethod
    def from_config(cls):
        return cls(*get_carddav_credentials())

    def _request(self, method, path, body):
        req = urllib.request.Request(
            urllib.parse.urljoin(self.base_url + '/', path.lstrip('/')),
            data=body,
            method=method,
            headers={
                'Authorization': f'Basic {self._auth}',
                'Content-Type': 'application/xml; charset=utf-8',
                'Depth': '1',
            },
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                text = response.read()
        except urllib.error.HTTPError as e:
            if e.code in (401, 403):
                raise TransportError("CardDAV authentication failed. Check your username and app password",
                                     status=e.code) from e
            raise TransportError(f"CardDAV {method} failed: HTTP {e.code}", status=e.code) from e
        except urllib.error.URLError as e:
            raise TransportError(f"Network error: {e.reason}") from e

        try:
            return ET.fromstring(text)
        except ET.ParseError as e:
            raise ProtocolError(f"Malformed CardDAV {method} response: {e}") from e

    def list_addressbooks(self):
        """Address books as (href, name) dicts"""
        home = f"/dav/addressbooks/user/{urllib.parse.quote(self.username)}/"
        root = self._request('PROPFIND', home, PROPFIND_BODY)

        addressbooks = []
        for response in root.findall('d:response', NS):
            href = (response.findtext('d:href', '', NS) or '').strip()
            if not href or response.find('.//d:resourcetype/card:addressbook', NS) is None:
                continue
            name = (response.findtext('.//d:displayname', '', NS) or '').strip()
            addressbooks.append({
                'href': href,
                'name': name or href.rstrip('/').rsplit('/', 1)[-1],
            })
        logger.debug("Found %d address books", len(addressbooks))
        return addressbooks

    def list_contacts(self, href):
        root = self._request('REPORT', href, REPORT_BODY)
        contacts = []
        for data in root.iterfind('.//card:address-data', NS):
            contact = parse_vcard(data.text or '')
            if contact:
                contacts.append(contact)
        return contacts

    def all_contacts(self):
        contacts = []
        for addressbook in self.list_addressbooks():
            contacts.extend(self.list_contacts(addressbook['href']))
        contacts.sort(key=lambda c: c.name.lower())
        return contacts

    def search(self, query):
        """Contacts whose name, email or organization contains `query`"""
        return [c for c in self.all_contacts() if c.matches(query)]
