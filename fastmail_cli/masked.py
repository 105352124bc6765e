"""
Masked email commands for Fastmail

Masked emails are generated addresses that forward to the account. They can
be disabled (mail is dropped) or deleted, and re-enabled later.
"""

import sys

from .client import JmapClient
from .common import print_success
from .errors import FastmailError


def get_client():
    """JMAP client for the configured account"""
    return JmapClient.from_config()


def list_masked_structured(client, state=None):
    masked = [m.to_dict() for m in client.list_masked()]
    if state:
        masked = [m for m in masked if m['state'] == state]
    return masked


# Command handlers

def cmd_list(args):
    """Handle 'fastmail masked list' command"""
    print_success(list_masked_structured(get_client(), args.state))


def cmd_create(args):
    """Handle 'fastmail masked create' command"""
    masked = get_client().create_masked(args.domain, args.description, args.prefix)
    print_success(masked.to_dict(), message=f"Created {masked.email}")


def _set_state(masked_id, state):
    get_client().update_masked(masked_id, state)
    print_success({'id': masked_id, 'state': state}, message=f"Masked email {masked_id} {state}")


def cmd_enable(args):
    """Handle 'fastmail masked enable' command"""
    _set_state(args.masked_id, 'enabled')


def cmd_disable(args):
    """Handle 'fastmail masked disable' command"""
    _set_state(args.masked_id, 'disabled')


def cmd_delete(args):
    """Handle 'fastmail masked delete' command"""
    if not args.yes:
        raise FastmailError("Deleting stops all mail to this address. Re-run with -y to confirm")
    _set_state(args.masked_id, 'deleted')


# Setup and routing

def setup_parser(subparsers):
    """Setup argparse subcommands for masked"""

    # fastmail masked list
    list_parser = subparsers.add_parser(
        'list',
        help='List masked email addresses',
        description='List masked email addresses.'
    )
    list_parser.add_argument('--state', choices=['pending', 'enabled', 'disabled', 'deleted'],
                             help='Only addresses in this state')
    list_parser.set_defaults(func=cmd_list)

    # fastmail masked create
    create_parser = subparsers.add_parser(
        'create',
        help='Create a masked email address',
        description='Create a new masked email address.',
        epilog="""
Examples:
  fastmail masked create --domain https://shop.example.com
  fastmail masked create --description "Newsletter" --prefix news
"""
    )
    create_parser.add_argument('--domain', help='Site the address is for')
    create_parser.add_argument('--description', help='Note to remember the address by')
    create_parser.add_argument('--prefix', help='Prefix for the generated address (a-z, 0-9, _)')
    create_parser.set_defaults(func=cmd_create)

    # fastmail masked enable / disable / delete
    for name, func, help_text in (
        ('enable', cmd_enable, 'Enable a masked email address'),
        ('disable', cmd_disable, 'Disable a masked email address'),
        ('delete', cmd_delete, 'Delete a masked email address'),
    ):
        state_parser = subparsers.add_parser(name, help=help_text, description=f'{help_text}.')
        state_parser.add_argument('masked_id', metavar='ID', help='Masked email ID')
        if name == 'delete':
            state_parser.add_argument('-y', '--yes', action='store_true', help='Confirm')
        state_parser.set_defaults(func=func)


def handle_command(args):
    """Route to appropriate masked subcommand"""
    if hasattr(args, 'func'):
        args.func(args)
    else:
        print("Error: No masked subcommand specified", file=sys.stderr)
        sys.exit(1)
