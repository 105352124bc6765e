"""
Common utilities for Fastmail CLI

Configuration loading, credential storage, output envelopes and logging
setup shared by all command groups.
"""

import json
import logging
import os
import re
import sys
from configparser import ConfigParser
from pathlib import Path

from .errors import ConfigError, NotAuthenticated

logger = logging.getLogger(__name__)

# JMAP session resource
DEFAULT_SESSION_URL = "https://api.fastmail.com/jmap/session"

# CardDAV server
DEFAULT_CARDDAV_URL = "https://carddav.fastmail.com"

# Default configuration paths
CONFIG_DIR = Path(os.environ.get('FASTMAIL_CONFIG_DIR') or
                  Path.home() / ".config" / "fastmail-cli").expanduser()
CONFIG_FILE = CONFIG_DIR / "config"
TOKEN_FILE = CONFIG_DIR / "token.json"

# Attachment size policy defaults (bytes). MCP clients reject image payloads
# much above 1MB once base64 encoded.
DEFAULT_MAX_IMAGE_BYTES = 750 * 1024
DEFAULT_MAX_TEXT_BYTES = 200 * 1024
DEFAULT_SCALE_RATIO = 0.75
DEFAULT_DECODER_TIMEOUT = 60
DEFAULT_HTTP_TIMEOUT = 30


def load_config():
    """
    Load configuration from environment variables and config file.

    Priority: Environment variables > Config file > Defaults

    Environment variables:
    - FASTMAIL_API_TOKEN: JMAP API token
    - FASTMAIL_SESSION_URL: JMAP session URL
    - FASTMAIL_USERNAME: CardDAV username (your Fastmail address)
    - FASTMAIL_APP_PASSWORD: CardDAV app password

    Config file (~/.config/fastmail-cli/config):
    [core]
    api_token = fmu1-...
    session_url = https://api.fastmail.com/jmap/session
    timeout = 30
    split_submission = false

    [contacts]
    username = you@fastmail.com
    app_password = xxxx

    [attachments]
    max_image_bytes = 768000
    max_text_bytes = 204800
    scale_ratio = 0.75
    decoder_timeout = 60
    ocr = false

    Returns:
        dict of settings
    """
    config = {
        'api_token': None,
        'session_url': DEFAULT_SESSION_URL,
        'timeout': DEFAULT_HTTP_TIMEOUT,
        'split_submission': False,
        'carddav_url': DEFAULT_CARDDAV_URL,
        'username': None,
        'app_password': None,
        'max_image_bytes': DEFAULT_MAX_IMAGE_BYTES,
        'max_text_bytes': DEFAULT_MAX_TEXT_BYTES,
        'scale_ratio': DEFAULT_SCALE_RATIO,
        'decoder_timeout': DEFAULT_DECODER_TIMEOUT,
        'ocr': False,
    }

    if CONFIG_FILE.exists():
        parser = ConfigParser()
        parser.read(CONFIG_FILE)

        try:
            # Core section
            if parser.has_option('core', 'api_token'):
                config['api_token'] = parser.get('core', 'api_token')
            if parser.has_option('core', 'session_url'):
                config['session_url'] = parser.get('core', 'session_url')
            config['timeout'] = parser.getint('core', 'timeout', fallback=config['timeout'])
            config['split_submission'] = parser.getboolean('core', 'split_submission', fallback=False)

            # Contacts section
            if parser.has_option('contacts', 'url'):
                config['carddav_url'] = parser.get('contacts', 'url')
            if parser.has_option('contacts', 'username'):
                config['username'] = parser.get('contacts', 'username')
            if parser.has_option('contacts', 'app_password'):
                config['app_password'] = parser.get('contacts', 'app_password')

            # Attachments section
            for key in ('max_image_bytes', 'max_text_bytes', 'decoder_timeout'):
                config[key] = parser.getint('attachments', key, fallback=config[key])
            config['scale_ratio'] = parser.getfloat('attachments', 'scale_ratio',
                                                    fallback=config['scale_ratio'])
            config['ocr'] = parser.getboolean('attachments', 'ocr', fallback=False)
        except ValueError as e:
            raise ConfigError(f"Invalid value in {CONFIG_FILE}: {e}") from e

    # Override with environment variables
    if os.environ.get('FASTMAIL_API_TOKEN'):
        config['api_token'] = os.environ['FASTMAIL_API_TOKEN']
    if os.environ.get('FASTMAIL_SESSION_URL'):
        config['session_url'] = os.environ['FASTMAIL_SESSION_URL']
    if os.environ.get('FASTMAIL_USERNAME'):
        config['username'] = os.environ['FASTMAIL_USERNAME']
    if os.environ.get('FASTMAIL_APP_PASSWORD'):
        config['app_password'] = os.environ['FASTMAIL_APP_PASSWORD']

    # Validate
    if not 0 < config['scale_ratio'] < 1:
        raise ConfigError(f"attachments.scale_ratio must be between 0 and 1, got {config['scale_ratio']}")
    for key in ('max_image_bytes', 'max_text_bytes', 'decoder_timeout', 'timeout'):
        if config[key] <= 0:
            raise ConfigError(f"{key} must be positive, got {config[key]}")

    return config


# Load configuration once at module import
_CONFIG = load_config()
SESSION_URL = _CONFIG['session_url']
HTTP_TIMEOUT = _CONFIG['timeout']
SPLIT_SUBMISSION = _CONFIG['split_submission']
CARDDAV_URL = _CONFIG['carddav_url']
MAX_IMAGE_BYTES = _CONFIG['max_image_bytes']
MAX_TEXT_BYTES = _CONFIG['max_text_bytes']
SCALE_RATIO = _CONFIG['scale_ratio']
DECODER_TIMEOUT = _CONFIG['decoder_timeout']
OCR_ENABLED = _CONFIG['ocr']


# ============================================================================
# CREDENTIALS
# ============================================================================

def load_token():
    """Load the saved API token, or None if none was saved"""
    if not TOKEN_FILE.exists():
        return None

    with open(TOKEN_FILE) as f:
        return json.load(f).get('api_token')


def save_token(token):
    """Save the API token readable by the owner only"""
    TOKEN_FILE.parent.mkdir(parents=True, exist_ok=True)
    TOKEN_FILE.write_text(json.dumps({'api_token': token}, indent=2))
    TOKEN_FILE.chmod(0o600)


def find_api_token():
    """(token, source) for the active API token, or (None, None)"""
    if _CONFIG['api_token']:
        return _CONFIG['api_token'], 'environment or config file'
    token = load_token()
    if token:
        return token, str(TOKEN_FILE)
    return None, None


def get_api_token():
    """Get the API token from the environment, config file or saved token"""
    token, _ = find_api_token()
    if not token:
        raise NotAuthenticated()
    return token


def get_carddav_credentials():
    """Get the (username, app_password) pair used for CardDAV"""
    username = _CONFIG['username']
    password = _CONFIG['app_password']
    if not username or not password:
        raise ConfigError(
            "CardDAV credentials not configured. Set FASTMAIL_USERNAME and "
            "FASTMAIL_APP_PASSWORD or add them to the [contacts] section of "
            f"{CONFIG_FILE}"
        )
    return username, password


# ============================================================================
# OUTPUT
# ============================================================================

def print_success(data=None, message=None):
    """Print a success envelope to stdout"""
    output = {'success': True}
    if data is not None:
        output['data'] = data
    if message is not None:
        output['message'] = message
    print(json.dumps(output, indent=2, default=str))


def print_error(error):
    """Print an error envelope to stdout"""
    print(json.dumps({'success': False, 'error': str(error)}, indent=2))


def format_size(bytes_size):
    """Format byte size to human-readable string"""
    for unit in ['B', 'KB', 'MB', 'GB']:
        if bytes_size < 1024.0:
            return f"{bytes_size:.1f}{unit}"
        bytes_size /= 1024.0
    return f"{bytes_size:.1f}TB"


def parse_size(value):
    """
    Parse a human size like '500K', '2M' or '1048576' into bytes.

    Raises:
        ValueError: if the value is not a size
    """
    match = re.fullmatch(r'\s*(\d+)\s*([KMG]?)B?\s*', value, re.IGNORECASE)
    if not match:
        raise ValueError(f"Invalid size: {value!r} (use e.g. 500K, 2M)")

    number, unit = match.groups()
    multiplier = {'': 1, 'K': 1024, 'M': 1024 ** 2, 'G': 1024 ** 3}[unit.upper()]
    return int(number) * multiplier


def setup_logging(verbose=False):
    """Configure logging on stderr; FASTMAIL_LOG sets the level"""
    level_name = 'DEBUG' if verbose else os.environ.get('FASTMAIL_LOG', 'WARNING').upper()
    level = getattr(logging, level_name, logging.WARNING)
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
