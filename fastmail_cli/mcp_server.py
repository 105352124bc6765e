"""
MCP Server for Fastmail CLI

Exposes Fastmail email, masked email and contacts via Model Context Protocol.
Allows LLMs like Claude to read, search and send mail on the user's behalf.
"""

import sys
import logging

try:
    from mcp.server.fastmcp import FastMCP, Image
except ImportError:
    print("Error: MCP SDK not installed. Install with: pip install fastmail-cli[mcp]", file=sys.stderr)
    sys.exit(1)

from .attachments import DecodedContent, ImageContent, SizeBound
from .client import JmapClient
from .contacts import search_contacts as find_contacts
from .mail import (
    attachment_list_structured,
    get_email_structured,
    get_thread_structured,
    list_emails_structured,
    list_mailboxes_structured,
    new_draft,
    search_emails_structured,
    send_email_structured,
)
from .masked import list_masked_structured
from .models import parse_addresses

# Create FastMCP server
mcp = FastMCP("Fastmail MCP Server")

# Configure logging
logger = logging.getLogger(__name__)

MAX_LIMIT = 100
ACTIONS = ('preview', 'confirm')


def get_client():
    """JMAP client for the configured account"""
    return JmapClient.from_config()


def _check_action(action):
    if action not in ACTIONS:
        return {'status': 'error', 'error': f"Invalid action '{action}'. Use 'preview' or 'confirm'"}
    return None


def _preview(draft, what):
    return {
        'status': 'preview',
        'draft': draft.to_dict(),
        'message': f"Show this draft to the user. To {what}, call this tool again "
                   "with action='confirm' and the same parameters.",
    }


# ============================================================================
# EMAIL TOOLS
# ============================================================================

@mcp.tool()
def list_mailboxes() -> dict:
    """
    List all mailboxes (folders) with their roles and email counts.

    Returns:
        Dictionary with 'status' and 'mailboxes' list
    """
    try:
        mailboxes = list_mailboxes_structured(get_client())
        return {
            'status': 'success',
            'count': len(mailboxes),
            'mailboxes': mailboxes
        }
    except Exception as e:
        logger.error(f"Error listing mailboxes: {e}")
        return {'status': 'error', 'error': str(e)}


@mcp.tool()
def list_emails(mailbox: str = "INBOX", limit: int = 25) -> dict:
    """
    List the newest emails in a mailbox.

    Args:
        mailbox: Mailbox name or role (default: "INBOX")
        limit: Maximum number of emails to return (default: 25, max: 100)

    Returns:
        Dictionary with 'status' and 'emails' list of summaries. Use an
        email ID with get_email for the full content.
    """
    try:
        emails = list_emails_structured(get_client(), mailbox, min(limit, MAX_LIMIT))
        return {
            'status': 'success',
            'count': len(emails),
            'emails': emails
        }
    except Exception as e:
        logger.error(f"Error listing emails: {e}")
        return {'status': 'error', 'error': str(e)}


@mcp.tool()
def get_email(email_id: str) -> dict:
    """
    Get the full content of an email, with the rest of its thread.

    Args:
        email_id: The email ID

    Returns:
        Dictionary with the 'email' and, when the conversation has more than
        one email, the 'thread' sorted oldest first
    """
    try:
        client = get_client()
        email = get_email_structured(client, email_id)
        result = {'status': 'success', 'email': email}

        thread = get_thread_structured(client, email_id)
        if len(thread) > 1:
            for item in thread:
                item['selected'] = item['id'] == email_id
            result['thread'] = thread
            result['thread_count'] = len(thread)
        return result
    except Exception as e:
        logger.error(f"Error getting email: {e}")
        return {'status': 'error', 'error': str(e)}


@mcp.tool()
def search_emails(
    query: str | None = None,
    from_address: str | None = None,
    to: str | None = None,
    cc: str | None = None,
    subject: str | None = None,
    body: str | None = None,
    mailbox: str | None = None,
    has_attachment: bool = False,
    before: str | None = None,
    after: str | None = None,
    unread: bool = False,
    flagged: bool = False,
    pinned: bool = False,
    limit: int = 25
) -> dict:
    """
    Search emails. Every given filter must match.

    Args:
        query: Full-text search over the whole email
        from_address: From header contains
        to: To header contains
        cc: Cc header contains
        subject: Subject contains
        body: Body contains
        mailbox: Only in this mailbox
        has_attachment: Only emails with attachments
        before: Received before this date (e.g., "2025-01-15", "yesterday")
        after: Received on or after this date (e.g., "1 week ago")
        unread: Only unread emails
        flagged: Only flagged emails
        pinned: Only flagged emails in the inbox
        limit: Maximum results (default: 25, max: 100)

    Returns:
        Dictionary with 'status' and 'emails' list
    """
    try:
        emails = search_emails_structured(
            get_client(),
            limit=min(limit, MAX_LIMIT),
            mailbox=mailbox,
            text=query,
            to=to,
            cc=cc,
            subject=subject,
            body=body,
            has_attachment=has_attachment,
            before=before,
            after=after,
            unread=True if unread else None,
            flagged=flagged,
            pinned=pinned,
            **{'from': from_address},
        )
        return {
            'status': 'success',
            'count': len(emails),
            'emails': emails
        }
    except Exception as e:
        logger.error(f"Error searching emails: {e}")
        return {'status': 'error', 'error': str(e)}


@mcp.tool()
def move_email(email_id: str, target_mailbox: str) -> dict:
    """
    Move an email to a different mailbox.

    Args:
        email_id: The email ID
        target_mailbox: Mailbox name or role, e.g. "Archive"

    Returns:
        Dictionary with move status
    """
    try:
        target = get_client().move_email(email_id, target_mailbox)
        return {'status': 'success', 'message': f"Moved email to {target.name}"}
    except Exception as e:
        logger.error(f"Error moving email: {e}")
        return {'status': 'error', 'error': str(e)}


@mcp.tool()
def mark_as_read(email_id: str, read: bool = True) -> dict:
    """
    Mark an email as read or unread.

    Args:
        email_id: The email ID
        read: True for read, False for unread (default: True)
    """
    try:
        get_client().set_read(email_id, read)
        return {'status': 'success', 'message': f"Marked as {'read' if read else 'unread'}"}
    except Exception as e:
        logger.error(f"Error marking email: {e}")
        return {'status': 'error', 'error': str(e)}


@mcp.tool()
def mark_as_spam(email_id: str, action: str = "preview") -> dict:
    """
    Mark an email as spam. This moves it to Junk AND trains the spam filter.
    MUST be called with action='preview' first, then 'confirm' after the
    user approves.

    Args:
        email_id: The email ID
        action: 'preview' to see what will happen, 'confirm' to do it
    """
    invalid = _check_action(action)
    if invalid:
        return invalid
    try:
        client = get_client()
        if action == 'preview':
            email = client.get_email(email_id)
            return {
                'status': 'preview',
                'email': email.to_dict(),
                'message': "This email will be moved to Junk and train the spam filter. "
                           "To proceed, call this tool again with action='confirm'.",
            }
        client.mark_spam(email_id)
        return {'status': 'success', 'message': "Marked as spam and moved to Junk"}
    except Exception as e:
        logger.error(f"Error marking email as spam: {e}")
        return {'status': 'error', 'error': str(e)}


@mcp.tool()
def send_email(
    to: list[str],
    subject: str,
    body: str,
    cc: list[str] | None = None,
    bcc: list[str] | None = None,
    reply_to: list[str] | None = None,
    action: str = "preview"
) -> dict:
    """
    Compose and send a new plain text email. You MUST call with
    action='preview' first, show the user the draft, get explicit approval,
    then call again with action='confirm'.

    Args:
        to: List of recipient email addresses
        subject: Email subject
        body: Email body (plain text)
        cc: List of CC email addresses (optional)
        bcc: List of BCC email addresses (optional)
        reply_to: Addresses replies should go to (optional)
        action: 'preview' to see the draft, 'confirm' to send

    Returns:
        The draft for 'preview', the send status for 'confirm'
    """
    invalid = _check_action(action)
    if invalid:
        return invalid
    try:
        if action == 'preview':
            return _preview(new_draft(to, subject, body, cc, bcc, reply_to), 'send this email')
        return send_email_structured(get_client(), to, subject, body, cc, bcc, reply_to)
    except Exception as e:
        logger.error(f"Error sending email: {e}")
        return {'status': 'error', 'error': str(e)}


@mcp.tool()
def reply_to_email(
    email_id: str,
    body: str,
    all: bool = False,
    cc: list[str] | None = None,
    bcc: list[str] | None = None,
    action: str = "preview"
) -> dict:
    """
    Reply to an email in the same thread. You MUST call with action='preview'
    first, show the user the draft, get explicit approval, then call again
    with action='confirm'.

    Args:
        email_id: The email to reply to
        body: Reply text
        all: Reply to all recipients (default: False)
        cc: Additional CC addresses (optional)
        bcc: BCC addresses (optional)
        action: 'preview' to see the draft, 'confirm' to send
    """
    invalid = _check_action(action)
    if invalid:
        return invalid
    try:
        client = get_client()
        draft = client.compose_reply(email_id, body, all, parse_addresses(cc), parse_addresses(bcc))
        if action == 'preview':
            return _preview(draft, 'send this reply')
        sent_id = client.send(draft)
        return {
            'status': 'success',
            'email_id': sent_id,
            'message': f"Reply sent to {', '.join(str(a) for a in draft.to)}",
        }
    except Exception as e:
        logger.error(f"Error replying to email: {e}")
        return {'status': 'error', 'error': str(e)}


@mcp.tool()
def forward_email(
    email_id: str,
    to: list[str],
    body: str = "",
    cc: list[str] | None = None,
    bcc: list[str] | None = None,
    action: str = "preview"
) -> dict:
    """
    Forward an email to new recipients. You MUST call with action='preview'
    first, show the user the draft, get explicit approval, then call again
    with action='confirm'.

    Args:
        email_id: The email to forward
        to: Recipient email addresses
        body: Note placed above the forwarded message
        cc: CC addresses (optional)
        bcc: BCC addresses (optional)
        action: 'preview' to see the draft, 'confirm' to send
    """
    invalid = _check_action(action)
    if invalid:
        return invalid
    try:
        client = get_client()
        draft = client.compose_forward(email_id, parse_addresses(to), body,
                                       parse_addresses(cc), parse_addresses(bcc))
        if action == 'preview':
            return _preview(draft, 'forward this email')
        sent_id = client.send(draft)
        return {
            'status': 'success',
            'email_id': sent_id,
            'message': f"Forwarded to {', '.join(str(a) for a in draft.to)}",
        }
    except Exception as e:
        logger.error(f"Error forwarding email: {e}")
        return {'status': 'error', 'error': str(e)}


# ============================================================================
# ATTACHMENT TOOLS
# ============================================================================

@mcp.tool()
def list_attachments(email_id: str) -> dict:
    """
    List the attachments of an email with names, types, sizes and blob IDs.

    Args:
        email_id: The email ID
    """
    try:
        attachments = attachment_list_structured(get_client(), email_id)
        return {
            'status': 'success',
            'count': len(attachments),
            'attachments': attachments
        }
    except Exception as e:
        logger.error(f"Error listing attachments: {e}")
        return {'status': 'error', 'error': str(e)}


@mcp.tool()
def get_attachment(email_id: str, blob_id: str):
    """
    Get an attachment's content. Documents (PDF, Word, Excel, PowerPoint,
    RTF, HTML, text) come back as extracted text. Images are scaled down if
    needed and come back as viewable images.

    Args:
        email_id: The email ID
        blob_id: Blob ID from list_attachments
    """
    try:
        content = get_client().get_attachment(email_id, blob_id, SizeBound.from_config(), allow_raw=True)
        if isinstance(content, ImageContent):
            return Image(data=content.data, format=content.content_type.split('/', 1)[1])
        result = {'status': 'success', 'attachment': content.to_dict()}
        if not isinstance(content, DecodedContent):
            result['message'] = "This file type cannot be displayed directly."
        return result
    except Exception as e:
        logger.error(f"Error getting attachment: {e}")
        return {'status': 'error', 'error': str(e)}


# ============================================================================
# MASKED EMAIL TOOLS
# ============================================================================

@mcp.tool()
def list_masked_emails(state: str | None = None) -> dict:
    """
    List masked email addresses.

    Args:
        state: Only addresses in this state: pending, enabled, disabled or deleted
    """
    try:
        masked = list_masked_structured(get_client(), state)
        return {
            'status': 'success',
            'count': len(masked),
            'masked_emails': masked
        }
    except Exception as e:
        logger.error(f"Error listing masked emails: {e}")
        return {'status': 'error', 'error': str(e)}


@mcp.tool()
def create_masked_email(
    for_domain: str | None = None,
    description: str | None = None,
    prefix: str | None = None
) -> dict:
    """
    Create a new masked email address that forwards to the inbox. Useful
    for signups where a disposable address is wanted.

    Args:
        for_domain: Site the address is for (optional)
        description: Note to remember the address by (optional)
        prefix: Prefix for the generated address (optional)
    """
    try:
        masked = get_client().create_masked(for_domain, description, prefix)
        return {'status': 'success', 'masked_email': masked.to_dict()}
    except Exception as e:
        logger.error(f"Error creating masked email: {e}")
        return {'status': 'error', 'error': str(e)}


def _set_masked_state(masked_id, state):
    try:
        get_client().update_masked(masked_id, state)
        return {'status': 'success', 'message': f"Masked email {masked_id} {state}"}
    except Exception as e:
        logger.error(f"Error updating masked email: {e}")
        return {'status': 'error', 'error': str(e)}


@mcp.tool()
def enable_masked_email(id: str) -> dict:
    """Enable a masked email address so it receives email again."""
    return _set_masked_state(id, 'enabled')


@mcp.tool()
def disable_masked_email(id: str) -> dict:
    """Disable a masked email address. Mail to it is dropped but the address is kept."""
    return _set_masked_state(id, 'disabled')


@mcp.tool()
def delete_masked_email(id: str) -> dict:
    """Delete a masked email address. Mail to it stops being delivered."""
    return _set_masked_state(id, 'deleted')


# ============================================================================
# CONTACTS TOOLS
# ============================================================================

@mcp.tool()
def search_contacts(query: str) -> dict:
    """
    Search CardDAV contacts by name, email or organization.

    Args:
        query: Name, email or organization to search for

    Returns:
        Dictionary with 'status' and 'contacts' list
    """
    try:
        contacts = [c.to_dict() for c in find_contacts(query)]
        return {
            'status': 'success',
            'count': len(contacts),
            'contacts': contacts
        }
    except Exception as e:
        logger.error(f"Error searching contacts: {e}")
        return {'status': 'error', 'error': str(e)}


# ============================================================================
# PROMPTS
# ============================================================================

@mcp.prompt()
def check_unread_emails() -> str:
    """Prompt template for checking unread emails."""
    return """Please check my unread emails and give me a summary of:
1. How many unread emails I have
2. Any urgent or important emails (based on subject and sender)
3. A brief summary of what they're about

Use the search_emails tool with unread=true."""


@mcp.prompt()
def send_safely() -> str:
    """Prompt template describing the preview-then-confirm flow for sending."""
    return """When sending, replying or forwarding email:
1. Call the tool with action="preview" to draft the message
2. Show the draft to me and wait for my approval
3. Only then call it again with action="confirm" and the same parameters

Never confirm without my explicit approval."""


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """Entry point for the MCP server."""
    log_level = logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    logger.info("Starting Fastmail MCP Server...")
    logger.info("Server provides Fastmail integration for email, masked email and contacts")

    # Run the MCP server (FastMCP handles async internally)
    mcp.run()


if __name__ == "__main__":
    main()
