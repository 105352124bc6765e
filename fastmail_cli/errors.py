"""
Error types for Fastmail CLI

Every failure the core can report is a FastmailError subclass. The CLI turns
any of them into an error envelope; the MCP server turns them into
{'status': 'error'} results.
"""


class FastmailError(Exception):
    """Base class for all Fastmail CLI errors"""


class ConfigError(FastmailError):
    """Configuration is missing or invalid"""


class NotAuthenticated(ConfigError):
    """No API token is configured"""

    def __init__(self, message=None):
        super().__init__(message or
                         "Not authenticated. Run: fastmail auth login <token> "
                         "or set FASTMAIL_API_TOKEN")


class SessionError(FastmailError):
    """The JMAP session could not be resolved or lacks a capability"""

    def __init__(self, message, capability=None):
        super().__init__(message)
        self.capability = capability


class TransportError(FastmailError):
    """Network, authentication or server failure while talking to the API"""

    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


class BlobNotFound(TransportError):
    """The requested blob does not exist or has expired"""


class ProtocolError(FastmailError):
    """The server rejected the request shape or sent a malformed response"""


class InvalidBatch(ProtocolError):
    """A batch violated its construction invariants (raised before any I/O)"""


class MethodError(FastmailError):
    """
    A single method call inside a batch failed.

    Carries the logical operation (label) so the message tells the user
    which step went wrong.
    """

    def __init__(self, method, tag, error_type, description=None, label=None):
        self.method = method
        self.tag = tag
        self.error_type = error_type
        self.description = description
        self.label = label
        what = label or method
        message = f"{what} failed: {error_type}"
        if description:
            message += f" ({description})"
        super().__init__(message)

    def to_dict(self):
        return {
            'method': self.method,
            'tag': self.tag,
            'type': self.error_type,
            'description': self.description,
            'operation': self.label,
        }


class PartialBatchFailure(FastmailError):
    """Some calls of a batch failed while others succeeded"""

    def __init__(self, errors, results):
        self.errors = errors
        self.results = results
        failed = ', '.join(str(e) for e in errors.values())
        super().__init__(f"{len(errors)} of {len(errors) + len(results)} operations failed: {failed}")


class NotFound(FastmailError):
    """A mailbox, email, attachment or contact lookup found nothing"""


class DecoderUnavailable(FastmailError):
    """The external tool needed to decode an attachment is not installed"""

    def __init__(self, tool, content_type=None):
        self.tool = tool
        self.content_type = content_type
        super().__init__(f"Decoder '{tool}' is not installed"
                         + (f" (needed for {content_type})" if content_type else ""))


class DecodeFailed(FastmailError):
    """An attachment could not be decoded (corrupt or unsupported content)"""

    def __init__(self, content_type, reason):
        self.content_type = content_type
        self.reason = reason
        super().__init__(f"Failed to decode {content_type}: {reason}")


class SubmissionIncomplete(FastmailError):
    """
    The message was created but not submitted for delivery.

    The email_id names the created draft so it can be submitted again with
    'fastmail mail submit <id>' or deleted.
    """

    def __init__(self, email_id, reason):
        self.email_id = email_id
        self.reason = reason
        super().__init__(f"Message {email_id} was created but not sent: {reason}. "
                         f"Run 'fastmail mail submit {email_id}' to retry delivery")
