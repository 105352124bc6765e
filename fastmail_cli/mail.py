"""
Mail commands for Fastmail

List, read, search, send, reply, forward, move and download email over JMAP.
"""

import argparse
import os
import sys
from pathlib import Path

from .attachments import SizeBound, downscale_image, is_raster_image, sniff_type
from .client import JmapClient
from .common import SCALE_RATIO, format_size, parse_size, print_success
from .compose import compose_new
from .errors import DecodeFailed, DecoderUnavailable, FastmailError, NotFound
from .filters import predicates_from_options
from .models import parse_addresses


def get_client():
    """JMAP client for the configured account"""
    return JmapClient.from_config()


def read_body(value):
    """Message body from an argument; '-' reads standard input"""
    if value == '-':
        return sys.stdin.read()
    return value


# ============================================================================
# STRUCTURED DATA FUNCTIONS (for MCP and programmatic access)
# ============================================================================

def list_mailboxes_structured(client):
    """
    Mailboxes with a role first.

    Returns:
        list[dict]: {'id', 'name', 'role', 'parent_id', 'total_emails', 'unread_emails'}
    """
    return [m.to_dict() for m in client.list_mailboxes()]


def list_emails_structured(client, mailbox='INBOX', limit=50):
    """Newest emails in a mailbox as summary dicts"""
    return [e.to_dict() for e in client.list_emails(mailbox, limit)]


def get_email_structured(client, email_id):
    """One email with body text, threading headers and attachments"""
    return client.get_email(email_id).to_dict(full=True)


def get_thread_structured(client, email_id):
    """Every email of the thread containing `email_id`, oldest first"""
    return [e.to_dict(full=True) for e in client.get_thread(email_id)]


def search_emails_structured(client, limit=50, mailbox=None, **options):
    """
    Search emails; every given option must match.

    Args:
        client: JmapClient
        limit: maximum number of results
        mailbox: restrict to this mailbox name
        **options: text, from, to, cc, bcc, subject, body, has_attachment,
            min_size, max_size, before, after, unread, flagged, pinned
    """
    predicates = predicates_from_options(**options)
    return [e.to_dict() for e in client.search(predicates, limit, mailbox=mailbox)]


def new_draft(to, subject, body, cc=None, bcc=None, reply_to=None):
    """Draft of a new email from address strings"""
    return compose_new(parse_addresses(to), subject, body,
                       parse_addresses(cc), parse_addresses(bcc), parse_addresses(reply_to))


def send_email_structured(client, to, subject, body, cc=None, bcc=None, reply_to=None):
    """
    Send a new email.

    Returns:
        dict: {'status': 'success', 'email_id': str, 'message': str}
    """
    draft = new_draft(to, subject, body, cc, bcc, reply_to)
    email_id = client.send(draft)
    return {
        'status': 'success',
        'email_id': email_id,
        'message': f"Email sent to {', '.join(str(a) for a in draft.to)}",
    }


def attachment_list_structured(client, email_id):
    email = client.get_email(email_id)
    return [a.to_dict() for a in email.attachments if a.blob_id]


def _safe_filename(name, blob_id):
    name = os.path.basename(name or '')
    return name if name and name not in ('.', '..') else f"{blob_id}.bin"


def _unique_filename(filename, used):
    """filename, or 'name (1).ext', 'name (2).ext'... if already used in this run"""
    stem, suffix = Path(filename).stem, Path(filename).suffix
    candidate, n = filename, 1
    while candidate.lower() in used:
        candidate = f"{stem} ({n}){suffix}"
        n += 1
    used.add(candidate.lower())
    return candidate


def save_attachments(client, email_id, output_dir='.', max_size=None, overwrite=False, blob_id=None):
    """
    Download attachments to files.

    Images larger than max_size bytes are scaled down to fit before saving.
    Attachments sharing a name are saved as 'name (1).ext' and so on; only
    files that existed before the call are protected by `overwrite`.

    Returns:
        list[dict]: {'path', 'size', 'scaled'}
    """
    email = client.get_email(email_id)
    attachments = [a for a in email.attachments if a.blob_id and (blob_id is None or a.blob_id == blob_id)]
    if not attachments:
        raise NotFound("No attachments found")

    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    saved = []
    used = set()
    for attachment in attachments:
        filename = _safe_filename(attachment.name, attachment.blob_id)
        data = client.download_blob(attachment.blob_id, attachment.name, attachment.type)
        scaled = False

        if max_size and is_raster_image(sniff_type(data, attachment.type, attachment.name)):
            image = downscale_image(data, attachment.type, max_size, SCALE_RATIO)
            if image.scaled:
                data, scaled = image.data, True
                if image.content_type == 'image/jpeg' and not filename.lower().endswith(('.jpg', '.jpeg')):
                    filename = f"{Path(filename).stem}.jpg"

        filename = _unique_filename(filename, used)
        path = out_dir / filename
        if path.exists() and not overwrite:
            raise FastmailError(f"File exists: {path} (use --overwrite to replace it)")
        path.write_bytes(data)
        saved.append({'path': str(path), 'size': len(data), 'scaled': scaled})
    return saved


def decode_attachments(client, email_id, size_bound=None, allow_raw=False, ocr=None, blob_id=None):
    """
    Decode attachments to text.

    A failure to decode one attachment is reported in its entry and does not
    stop the others.

    Returns:
        list[dict]: per attachment, 'filename' and 'blob_id' plus either the
        decoded content or 'error'
    """
    email = client.get_email(email_id)
    attachments = [a for a in email.attachments if a.blob_id and (blob_id is None or a.blob_id == blob_id)]
    if not attachments:
        raise NotFound("No attachments found")

    resolver = client.attachment_resolver(ocr=ocr)
    results = []
    for attachment in attachments:
        entry = {
            'filename': _safe_filename(attachment.name, attachment.blob_id),
            'blob_id': attachment.blob_id,
            'declared_type': attachment.type,
        }
        try:
            content = resolver.resolve(attachment.blob_id, attachment.type, attachment.name,
                                       size_bound, allow_raw)
            entry.update(content.to_dict())
        except (DecoderUnavailable, DecodeFailed) as e:
            entry.update({'kind': 'error', 'error': str(e)})
        results.append(entry)
    return results


# ============================================================================
# CLI COMMAND FUNCTIONS
# ============================================================================

def cmd_mailboxes(args):
    """Handle 'fastmail mail mailboxes' command"""
    print_success(list_mailboxes_structured(get_client()))


def cmd_list(args):
    """Handle 'fastmail mail list' command"""
    print_success(list_emails_structured(get_client(), args.mailbox, args.limit))


def cmd_get(args):
    """Handle 'fastmail mail get' command"""
    print_success(get_email_structured(get_client(), args.email_id))


def cmd_thread(args):
    """Handle 'fastmail mail thread' command"""
    print_success(get_thread_structured(get_client(), args.email_id))


def cmd_search(args):
    """Handle 'fastmail mail search' command"""
    emails = search_emails_structured(
        get_client(),
        limit=args.limit,
        mailbox=args.mailbox,
        text=args.text,
        subject=args.subject,
        body=args.body,
        has_attachment=args.has_attachment,
        min_size=args.min_size,
        max_size=args.max_size,
        before=args.before,
        after=args.after,
        unread=True if args.unread else None,
        flagged=args.flagged,
        pinned=args.pinned,
        **{'from': args.from_, 'to': args.to, 'cc': args.cc, 'bcc': args.bcc},
    )
    print_success(emails)


def cmd_send(args):
    """Handle 'fastmail mail send' command"""
    result = send_email_structured(get_client(), args.to, args.subject, read_body(args.body),
                                   args.cc, args.bcc, args.reply_to)
    print_success({'email_id': result['email_id']}, message=result['message'])


def cmd_reply(args):
    """Handle 'fastmail mail reply' command"""
    client = get_client()
    draft = client.compose_reply(args.email_id, read_body(args.body), args.all,
                                 parse_addresses(args.cc), parse_addresses(args.bcc))
    email_id = client.send(draft)
    print_success({'email_id': email_id},
                  message=f"Reply sent to {', '.join(str(a) for a in draft.to)}")


def cmd_forward(args):
    """Handle 'fastmail mail forward' command"""
    client = get_client()
    draft = client.compose_forward(args.email_id, parse_addresses(args.to), read_body(args.body),
                                   parse_addresses(args.cc), parse_addresses(args.bcc))
    email_id = client.send(draft)
    print_success({'email_id': email_id},
                  message=f"Forwarded to {', '.join(str(a) for a in draft.to)}")


def cmd_submit(args):
    """Handle 'fastmail mail submit' command"""
    email_id = get_client().submit_existing(args.email_id)
    print_success({'email_id': email_id}, message=f"Submitted {email_id} for delivery")


def cmd_move(args):
    """Handle 'fastmail mail move' command"""
    target = get_client().move_email(args.email_id, args.to)
    print_success(message=f"Moved {args.email_id} to {target.name}")


def cmd_spam(args):
    """Handle 'fastmail mail spam' command"""
    if not args.yes:
        raise FastmailError("Marking as spam moves the email to Junk. Re-run with -y to confirm")
    get_client().mark_spam(args.email_id)
    print_success(message=f"Marked {args.email_id} as spam")


def cmd_mark_read(args):
    """Handle 'fastmail mail mark-read' command"""
    get_client().set_read(args.email_id, read=not args.unread)
    state = 'unread' if args.unread else 'read'
    print_success(message=f"Marked {args.email_id} as {state}")


def cmd_download(args):
    """Handle 'fastmail mail download' command"""
    max_size = parse_size(args.max_size) if args.max_size else None
    client = get_client()

    if args.format == 'json':
        bound = SizeBound.uniform(max_size) if max_size else None
        print_success(decode_attachments(client, args.email_id, bound, args.raw_fallback,
                                         args.ocr or None, args.blob))
        return

    saved = save_attachments(client, args.email_id, args.output or '.', max_size,
                             args.overwrite, args.blob)
    total = sum(item['size'] for item in saved)
    print_success(saved, message=f"Downloaded {len(saved)} attachment(s), {format_size(total)}")


# Setup and routing

def _add_recipient_args(parser, required_to=False):
    if required_to:
        parser.add_argument('--to', action='append', required=True, metavar='ADDRESS',
                            help='Recipient(s), comma-separated or repeated')
    parser.add_argument('--cc', action='append', metavar='ADDRESS', help='Cc recipient(s)')
    parser.add_argument('--bcc', action='append', metavar='ADDRESS', help='Bcc recipient(s)')


def setup_parser(subparsers):
    """Setup argparse subcommands for mail"""

    # fastmail mail mailboxes
    mailboxes_parser = subparsers.add_parser(
        'mailboxes',
        help='List mailboxes',
        description='List mailboxes (folders) with their roles and counts.'
    )
    mailboxes_parser.set_defaults(func=cmd_mailboxes)

    # fastmail mail list
    list_parser = subparsers.add_parser(
        'list',
        help='List emails in a mailbox',
        description='List the newest emails in a mailbox.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Examples:
  fastmail mail list                      # Newest 50 emails in the inbox
  fastmail mail list -m Archive -n 10     # Newest 10 emails in Archive
"""
    )
    list_parser.add_argument('-m', '--mailbox', default='INBOX',
                             help='Mailbox name or role (default: INBOX)')
    list_parser.add_argument('-n', '--limit', type=int, default=50, metavar='N',
                             help='Maximum number of emails (default: 50)')
    list_parser.set_defaults(func=cmd_list)

    # fastmail mail get
    get_parser = subparsers.add_parser('get', help='Show an email',
                                       description='Show an email with its body and attachments.')
    get_parser.add_argument('email_id', metavar='ID', help='Email ID')
    get_parser.set_defaults(func=cmd_get)

    # fastmail mail thread
    thread_parser = subparsers.add_parser('thread', help='Show the whole thread of an email',
                                          description='Show every email in the thread of an email.')
    thread_parser.add_argument('email_id', metavar='ID', help='Email ID')
    thread_parser.set_defaults(func=cmd_thread)

    # fastmail mail search
    search_parser = subparsers.add_parser(
        'search',
        help='Search emails',
        description='Search emails. All given filters must match.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Examples:
  fastmail mail search -t invoice                     # Full-text search
  fastmail mail search --from alice --unread          # Unread mail from alice
  fastmail mail search --after 2025-01-01 --before 2025-02-01
  fastmail mail search --has-attachment --min-size 1000000
  fastmail mail search --pinned                       # Flagged emails in the inbox

Dates are UTC days: --after includes the given day, --before excludes it.
--min-size is inclusive and --max-size exclusive (bytes).
"""
    )
    search_parser.add_argument('-t', '--text', help='Full-text search')
    search_parser.add_argument('--from', dest='from_', metavar='FROM', help='From header contains')
    search_parser.add_argument('--to', help='To header contains')
    search_parser.add_argument('--cc', help='Cc header contains')
    search_parser.add_argument('--bcc', help='Bcc header contains')
    search_parser.add_argument('--subject', help='Subject contains')
    search_parser.add_argument('--body', help='Body contains')
    search_parser.add_argument('-m', '--mailbox', help='Only in this mailbox')
    search_parser.add_argument('--has-attachment', action='store_true', help='Only emails with attachments')
    search_parser.add_argument('--min-size', type=int, metavar='BYTES', help='Size at least BYTES')
    search_parser.add_argument('--max-size', type=int, metavar='BYTES', help='Size below BYTES')
    search_parser.add_argument('--before', metavar='DATE', help='Received before DATE')
    search_parser.add_argument('--after', metavar='DATE', help='Received on or after DATE')
    search_parser.add_argument('--unread', action='store_true', help='Only unread emails')
    search_parser.add_argument('--flagged', action='store_true', help='Only flagged emails')
    search_parser.add_argument('--pinned', action='store_true', help='Only flagged emails in the inbox')
    search_parser.add_argument('-n', '--limit', type=int, default=50, metavar='N',
                               help='Maximum number of results (default: 50)')
    search_parser.set_defaults(func=cmd_search)

    # fastmail mail send
    send_parser = subparsers.add_parser(
        'send',
        help='Send an email',
        description='Send a plain text email.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Examples:
  fastmail mail send --to bob@example.com --subject "Hi" --body "Hello Bob"
  fastmail mail send --to list@example.com --reply-to me@example.org --subject Hi --body Hello
  echo "Report attached" | fastmail mail send --to "Bob <bob@example.com>" --subject Report --body -
"""
    )
    _add_recipient_args(send_parser, required_to=True)
    send_parser.add_argument('--subject', required=True, help='Subject line')
    send_parser.add_argument('--body', required=True, help="Body text ('-' reads stdin)")
    send_parser.add_argument('--reply-to', action='append', metavar='ADDRESS',
                             help='Address(es) replies should go to')
    send_parser.set_defaults(func=cmd_send)

    # fastmail mail reply
    reply_parser = subparsers.add_parser('reply', help='Reply to an email',
                                         description='Reply to an email, keeping it in the same thread.')
    reply_parser.add_argument('email_id', metavar='ID', help='Email ID to reply to')
    reply_parser.add_argument('--body', required=True, help="Reply text ('-' reads stdin)")
    reply_parser.add_argument('--all', action='store_true', help='Reply to all recipients')
    _add_recipient_args(reply_parser)
    reply_parser.set_defaults(func=cmd_reply)

    # fastmail mail forward
    forward_parser = subparsers.add_parser('forward', help='Forward an email',
                                           description='Forward an email with your note above it.')
    forward_parser.add_argument('email_id', metavar='ID', help='Email ID to forward')
    _add_recipient_args(forward_parser, required_to=True)
    forward_parser.add_argument('--body', default='', help="Note to add ('-' reads stdin)")
    forward_parser.set_defaults(func=cmd_forward)

    # fastmail mail submit
    submit_parser = subparsers.add_parser(
        'submit',
        help='Deliver a message that was created but not sent',
        description='Submit an existing email for delivery, e.g. after a send '
                    'reported that the message was created but not sent.'
    )
    submit_parser.add_argument('email_id', metavar='ID', help='Email ID of the unsent message')
    submit_parser.set_defaults(func=cmd_submit)

    # fastmail mail move
    move_parser = subparsers.add_parser('move', help='Move an email to another mailbox',
                                        description='Move an email to another mailbox.')
    move_parser.add_argument('email_id', metavar='ID', help='Email ID')
    move_parser.add_argument('--to', required=True, metavar='MAILBOX', help='Target mailbox name or role')
    move_parser.set_defaults(func=cmd_move)

    # fastmail mail spam
    spam_parser = subparsers.add_parser('spam', help='Mark an email as spam',
                                        description='Move an email to Junk and mark it as spam.')
    spam_parser.add_argument('email_id', metavar='ID', help='Email ID')
    spam_parser.add_argument('-y', '--yes', action='store_true', help='Confirm')
    spam_parser.set_defaults(func=cmd_spam)

    # fastmail mail mark-read
    mark_read_parser = subparsers.add_parser('mark-read', help='Mark an email as read or unread',
                                             description='Mark an email as read (or unread).')
    mark_read_parser.add_argument('email_id', metavar='ID', help='Email ID')
    mark_read_parser.add_argument('--unread', action='store_true', help='Mark as unread instead')
    mark_read_parser.set_defaults(func=cmd_mark_read)

    # fastmail mail download
    download_parser = subparsers.add_parser(
        'download',
        help='Download or extract attachments',
        description='Save attachments to files, or extract their text as JSON.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Examples:
  fastmail mail download <ID>                       # Save to current directory
  fastmail mail download <ID> -o ~/Downloads        # Save to a directory
  fastmail mail download <ID> --max-size 500K       # Shrink large images
  fastmail mail download <ID> -f json               # Extract text from documents
  fastmail mail download <ID> -f json --ocr         # OCR images with tesseract

Legacy formats need external tools: antiword (.doc), xls2csv and catppt
(.xls, .ppt, from catdoc), unrtf (.rtf), tesseract (--ocr).
"""
    )
    download_parser.add_argument('email_id', metavar='ID', help='Email ID')
    download_parser.add_argument('-b', '--blob', metavar='BLOB_ID', help='Only this attachment')
    download_parser.add_argument('-o', '--output', metavar='DIR', help='Output directory (default: .)')
    download_parser.add_argument('-f', '--format', choices=['raw', 'json'], default='raw',
                                 help='raw saves files, json extracts text (default: raw)')
    download_parser.add_argument('--max-size', metavar='SIZE',
                                 help='Shrink images (and truncate text in json) to SIZE, e.g. 500K')
    download_parser.add_argument('--raw-fallback', action='store_true',
                                 help='In json format, report undecodable attachments as raw instead of failing')
    download_parser.add_argument('--ocr', action='store_true', help='Extract text from images with tesseract')
    download_parser.add_argument('--overwrite', action='store_true', help='Overwrite existing files')
    download_parser.set_defaults(func=cmd_download)


def handle_command(args):
    """Route to appropriate mail subcommand"""
    if hasattr(args, 'func'):
        args.func(args)
    else:
        print("Error: No mail subcommand specified", file=sys.stderr)
        sys.exit(1)
