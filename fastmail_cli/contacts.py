"""
Contacts commands for Fastmail

List and search CardDAV contacts.
"""

import sys

from .carddav import CardDavClient
from .common import print_success
from .errors import NotFound


def get_contacts():
    """All contacts from every address book, sorted by name"""
    return CardDavClient.from_config().all_contacts()


def search_contacts(query):
    """Contacts matching a name, email or organization fragment"""
    return CardDavClient.from_config().search(query)


def resolve_email(query, matches):
    """
    Reduce matches to a single email address.

    Raises:
        NotFound: nothing or more than one address matches
    """
    addresses = []
    for contact in matches:
        emails = [e['email'] for e in contact.emails]
        # A query that is an exact address picks that address
        exact = [e for e in emails if e.lower() == query.lower()]
        for email in exact or emails:
            if email.lower() not in [a.lower() for a, _ in addresses]:
                addresses.append((email, contact.name))

    if not addresses:
        raise NotFound(f"No contact with an email address matches '{query}'")
    if len(addresses) > 1:
        choices = ', '.join(f"{name} <{email}>" for email, name in addresses)
        raise NotFound(f"Ambiguous query '{query}' matches {len(addresses)} addresses: {choices}")
    return addresses[0][0]


# Command handlers

def cmd_list(args):
    """Handle 'fastmail contacts list' command"""
    contacts = get_contacts()
    print_success([c.to_dict() for c in contacts])


def cmd_search(args):
    """Handle 'fastmail contacts search' command"""
    matches = search_contacts(args.query)

    if args.resolve:
        print_success(resolve_email(args.query, matches))
        return

    if not matches:
        raise NotFound(f"No contacts found matching '{args.query}'")
    print_success([c.to_dict() for c in matches])


# Setup and routing

def setup_parser(subparsers):
    """Setup argparse subcommands for contacts"""

    # fastmail contacts list
    list_parser = subparsers.add_parser(
        'list',
        help='List all contacts',
        description='List all contacts from every CardDAV address book.'
    )
    list_parser.set_defaults(func=cmd_list)

    # fastmail contacts search
    search_parser = subparsers.add_parser(
        'search',
        help='Search for contacts by name, email or organization',
        description='Search for contacts by name, email or organization.',
        epilog="""
Examples:
  fastmail contacts search john                   # Search for "john"
  fastmail contacts search john.doe@example.com   # Search by email
  fastmail contacts search john --resolve         # Single email address (script-friendly)

Notes:
  - Requires FASTMAIL_USERNAME and FASTMAIL_APP_PASSWORD (or the [contacts] config section)
  - Use --resolve in scripts to make sure a query names exactly one address
"""
    )
    search_parser.add_argument('query', help='Name, email or organization to search for')
    search_parser.add_argument('--resolve', action='store_true',
                               help='Resolve to a single email address (error if ambiguous)')
    search_parser.set_defaults(func=cmd_search)


def handle_command(args):
    """Route to appropriate contacts subcommand"""
    if hasattr(args, 'func'):
        args.func(args)
    else:
        print("Error: No contacts subcommand specified", file=sys.stderr)
        sys.exit(1)
