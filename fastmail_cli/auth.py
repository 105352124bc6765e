"""
Authentication commands for Fastmail

Fastmail API tokens are created in Settings > Privacy & Security > API tokens.
Login checks the token against the JMAP session before saving it.
"""

import sys

from .common import SESSION_URL, TOKEN_FILE, find_api_token, print_success, save_token
from .errors import NotAuthenticated
from .session import MANAGE_MASKED, READ_MAIL, SEND_MAIL, resolve_session
from .transport import HttpTransport


def fetch_session(token):
    """Resolve the JMAP session for a token, checking read access"""
    transport = HttpTransport(token)
    return resolve_session(lambda: transport.get_session(SESSION_URL), READ_MAIL)


def _session_summary(session):
    return {
        'username': session.username,
        'account_id': session.account_id,
        'can_send': not session.missing(SEND_MAIL),
        'can_manage_masked': not session.missing(MANAGE_MASKED),
    }


def login(token):
    """Validate a token and save it; returns the session summary"""
    session = fetch_session(token)
    save_token(token)
    return _session_summary(session)


def check_status():
    """Which token source is active and what the account allows"""
    token, source = find_api_token()
    if not token:
        raise NotAuthenticated()

    status = _session_summary(fetch_session(token))
    status['token_source'] = source
    return status


# Command handlers

def cmd_login(args):
    """Handle 'fastmail auth login' command"""
    token = args.token
    if token == '-':
        token = sys.stdin.readline().strip()
    summary = login(token)
    print_success(summary, message=f"Authenticated as {summary['username']}. Token saved to {TOKEN_FILE}")


def cmd_status(args):
    """Handle 'fastmail auth status' command"""
    print_success(check_status())


# Setup and routing

def setup_parser(subparsers):
    """Setup argparse subcommands for auth"""

    # fastmail auth login
    login_parser = subparsers.add_parser(
        'login',
        help='Save a Fastmail API token',
        description='Check a Fastmail API token and store it locally for future use. '
                    "Pass '-' to read the token from stdin."
    )
    login_parser.add_argument('token', help="API token ('-' reads stdin)")
    login_parser.set_defaults(func=cmd_login)

    # fastmail auth status
    status_parser = subparsers.add_parser(
        'status',
        help='Show authentication status',
        description='Show which token is used and what the account allows.'
    )
    status_parser.set_defaults(func=cmd_status)


def handle_command(args):
    """Route to appropriate auth subcommand"""
    if hasattr(args, 'func'):
        args.func(args)
    else:
        print("Error: No auth subcommand specified", file=sys.stderr)
        sys.exit(1)
