#!/usr/bin/env python3
"""
Fastmail CLI - Main Entry Point

Unified command-line interface for Fastmail email, masked email and contacts.
"""

import sys
import argparse
import logging

from .common import print_error, setup_logging
from .errors import FastmailError

logger = logging.getLogger(__name__)


def main():
    """Main entry point for fastmail command"""

    parser = argparse.ArgumentParser(
        prog='fastmail',
        description='Fastmail command-line interface for email, masked email and contacts.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  fastmail auth login <token>            # Save an API token
  fastmail mail list -n 10               # Newest 10 emails in the inbox
  fastmail mail search --from alice      # Search emails
  fastmail masked create --domain x.com  # Create a masked email address
  fastmail contacts search quinn         # Search for a contact

Every command prints a JSON object with "success" and either "data" or "error".

For more help on a specific command:
  fastmail <command> --help
  fastmail <command> <subcommand> --help
"""
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging on stderr')

    # Create subparsers for main command groups
    subparsers = parser.add_subparsers(dest='command', help='Command groups')

    # Mail commands
    mail_parser = subparsers.add_parser('mail', help='Read, search and send email')
    mail_subparsers = mail_parser.add_subparsers(dest='mail_command', help='Mail operations')

    # Masked email commands
    masked_parser = subparsers.add_parser('masked', help='Manage masked email addresses')
    masked_subparsers = masked_parser.add_subparsers(dest='masked_command', help='Masked email operations')

    # Contacts commands
    contacts_parser = subparsers.add_parser('contacts', help='Search CardDAV contacts')
    contacts_subparsers = contacts_parser.add_subparsers(dest='contacts_command', help='Contacts operations')

    # Auth commands
    auth_parser = subparsers.add_parser('auth', help='Manage the API token')
    auth_subparsers = auth_parser.add_subparsers(dest='auth_command', help='Authentication operations')

    # MCP server
    subparsers.add_parser('mcp', help='Run the MCP server on stdio')

    # Import and setup subcommands (lazy import to avoid loading all modules at startup)
    from . import mail, masked, contacts, auth

    mail.setup_parser(mail_subparsers)
    masked.setup_parser(masked_subparsers)
    contacts.setup_parser(contacts_subparsers)
    auth.setup_parser(auth_subparsers)

    # Parse arguments
    args = parser.parse_args()
    setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == 'mcp':
        from .mcp_server import main as mcp_main
        mcp_main()
        return

    groups = {
        'mail': (mail, mail_parser, 'mail_command'),
        'masked': (masked, masked_parser, 'masked_command'),
        'contacts': (contacts, contacts_parser, 'contacts_command'),
        'auth': (auth, auth_parser, 'auth_command'),
    }
    module, group_parser, subcommand = groups[args.command]
    if not getattr(args, subcommand):
        group_parser.print_help()
        sys.exit(1)

    # Dispatch to command handlers
    try:
        module.handle_command(args)
    except (FastmailError, ValueError) as e:
        logger.debug("Command failed", exc_info=True)
        print_error(e)
        sys.exit(1)
    except KeyboardInterrupt:
        print_error("Interrupted")
        sys.exit(130)


if __name__ == '__main__':
    main()
