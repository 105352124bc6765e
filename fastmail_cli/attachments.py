"""
Attachment content resolution

Downloads an attachment, works out what it really is from its bytes and
turns it into something a caller can use: text for documents, an image for
pictures, or the raw bytes when there is no decoder for the type.

The declared content type of an attachment is not trusted. A file named
report.docx whose bytes are a PDF is decoded as a PDF.
"""

import io
import logging
import os
import shutil
import subprocess
import tempfile
import zipfile
from dataclasses import dataclass

import html2text

from .common import DECODER_TIMEOUT, MAX_IMAGE_BYTES, MAX_TEXT_BYTES, OCR_ENABLED, SCALE_RATIO
from .errors import DecodeFailed, DecoderUnavailable

logger = logging.getLogger(__name__)

PDF = 'application/pdf'
DOCX = 'application/vnd.openxmlformats-officedocument.wordprocessingml.document'
XLSX = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
PPTX = 'application/vnd.openxmlformats-officedocument.presentationml.presentation'
DOC = 'application/msword'
XLS = 'application/vnd.ms-excel'
PPT = 'application/vnd.ms-powerpoint'
RTF = 'text/rtf'
HTML = 'text/html'
ZIP = 'application/zip'
OLE = 'application/x-ole-storage'
OCTET_STREAM = 'application/octet-stream'
SVG = 'image/svg+xml'

ZIP_TYPES = {ZIP, 'application/x-zip-compressed', DOCX, XLSX, PPTX}
OLE_TYPES = {OLE, 'application/CDFV2', 'application/vnd.ms-office', 'application/x-cfb'}

# First member-name prefix found in an Office Open XML package
OOXML_PARTS = (('word/', DOCX), ('xl/', XLSX), ('ppt/', PPTX))

OLE_HINTS = {
    DOC: DOC, XLS: XLS, PPT: PPT,
    '.doc': DOC, '.dot': DOC, '.xls': XLS, '.xlt': XLS, '.ppt': PPT, '.pps': PPT,
}

TEXT_APPLICATION_TYPES = {'application/json', 'application/xml', 'application/javascript',
                          'application/x-sh', 'application/csv', SVG}

TRUNCATION_MARKER = "\n\n[... truncated: {shown} of {total} bytes shown ...]"


# ============================================================================
# RESULTS
# ============================================================================

@dataclass
class DecodedContent:
    text: str
    content_type: str
    truncated: bool = False
    original_size: int = 0

    def to_dict(self):
        return {
            'kind': 'text',
            'content_type': self.content_type,
            'text': self.text,
            'truncated': self.truncated,
            'original_size': self.original_size,
        }


@dataclass
class ImageContent:
    data: bytes
    content_type: str
    width: int
    height: int
    scaled: bool = False
    original_size: int = 0

    def to_dict(self):
        return {
            'kind': 'image',
            'content_type': self.content_type,
            'width': self.width,
            'height': self.height,
            'size': len(self.data),
            'scaled': self.scaled,
            'original_size': self.original_size,
        }


@dataclass
class RawBytes:
    data: bytes
    content_type: str
    error: str | None = None

    def to_dict(self):
        return {
            'kind': 'raw',
            'content_type': self.content_type,
            'size': len(self.data),
            'error': self.error,
        }


@dataclass(frozen=True)
class SizeBound:
    """Payload ceilings in bytes; None leaves that kind of content unbounded"""
    image_bytes: int | None = None
    text_bytes: int | None = None

    @classmethod
    def uniform(cls, max_bytes):
        return cls(max_bytes, max_bytes)

    @classmethod
    def from_config(cls):
        return cls(MAX_IMAGE_BYTES, MAX_TEXT_BYTES)


# ============================================================================
# CONTENT SNIFFING
# ============================================================================

def _detect_mime(data):
    """MIME type from the byte signature, via libmagic"""
    import magic
    return magic.from_buffer(data, mime=True)


def _zip_type(data):
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            names = archive.namelist()
    except zipfile.BadZipFile:
        return ZIP
    for prefix, mime in OOXML_PARTS:
        if any(name.startswith(prefix) for name in names):
            return mime
    return ZIP


def _extension(name):
    return os.path.splitext(name or '')[1].lower()


def sniff_type(data, declared_type=None, name=None):
    """
    Content type of `data` judged by its bytes.

    The declared type and file name only break ties inside the family the
    bytes belong to: which kind of OLE2 document, or which kind of text.
    """
    if not data:
        return 'application/x-empty'

    declared = (declared_type or '').split(';')[0].strip().lower()
    mime = _detect_mime(data)

    if mime in ZIP_TYPES:
        return _zip_type(data)

    if mime in OLE_TYPES:
        return OLE_HINTS.get(declared) or OLE_HINTS.get(_extension(name)) or OLE

    if mime in (RTF, 'application/rtf'):
        return RTF

    if mime == 'text/plain' and declared.startswith('text/') and declared != RTF:
        return declared

    return mime


def is_raster_image(content_type):
    """Whether the type is a bitmap Pillow can open (SVG is not)"""
    return content_type.startswith('image/') and content_type != SVG


def same_family(a, b):
    """Whether two content types are the same kind of thing (ignoring aliases)"""
    if not a or not b:
        return True
    a, b = a.split(';')[0].strip().lower(), b.split(';')[0].strip().lower()
    return a == b or a.split('/')[0] == b.split('/')[0] == 'text'


# ============================================================================
# DECODERS
# ============================================================================

class Decoder:
    """Maps raw bytes to text, or raises DecodeFailed / DecoderUnavailable"""
    name = 'decoder'

    def decode(self, data, content_type):
        raise NotImplementedError


class InProcessDecoder(Decoder):
    def __init__(self, name, extract, allow_empty=False):
        self.name = name
        self.extract = extract
        self.allow_empty = allow_empty

    def decode(self, data, content_type):
        try:
            text = self.extract(data)
        except DecodeFailed:
            raise
        except Exception as e:
            # Parsers raise all sorts of errors on corrupt input
            raise DecodeFailed(content_type, f"{type(e).__name__}: {e}") from e

        if not self.allow_empty and not text.strip():
            raise DecodeFailed(content_type, "document contains no extractable text")
        return text


class SubprocessDecoder(Decoder):
    """
    Runs an external tool that prints the text of a document.

    With use_stdin the bytes are piped to the tool, otherwise they are
    written to a temporary file whose path is the last argument.
    """

    def __init__(self, tool, args=(), use_stdin=False, suffix='', timeout=None, clean=None):
        self.name = tool
        self.tool = tool
        self.args = list(args)
        self.use_stdin = use_stdin
        self.suffix = suffix
        self.timeout = timeout
        self.clean = clean

    def _run(self, cmd, data, content_type):
        timeout = self.timeout or DECODER_TIMEOUT
        try:
            return subprocess.run(
                cmd,
                input=data if self.use_stdin else None,
                capture_output=True,
                timeout=timeout,
                check=True,
            )
        except FileNotFoundError as e:
            raise DecoderUnavailable(self.tool, content_type) from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or b'').decode('utf-8', 'replace').strip()
            raise DecodeFailed(
                content_type,
                f"{self.tool} exited with status {e.returncode}" + (f": {stderr[:200]}" if stderr else "")
            ) from e
        except subprocess.TimeoutExpired as e:
            raise DecodeFailed(content_type, f"{self.tool} timed out after {timeout}s") from e

    def decode(self, data, content_type):
        path = shutil.which(self.tool)
        if not path:
            raise DecoderUnavailable(self.tool, content_type)

        if self.use_stdin:
            result = self._run([path, *self.args], data, content_type)
        else:
            with tempfile.TemporaryDirectory(prefix='fastmail-') as tmp:
                source = os.path.join(tmp, 'attachment' + self.suffix)
                with open(source, 'wb') as f:
                    f.write(data)
                result = self._run([path, *self.args, source], data, content_type)

        text = result.stdout.decode('utf-8', 'replace')
        if self.clean:
            text = self.clean(text)
        if not text.strip():
            raise DecodeFailed(content_type, f"{self.tool} produced no output")
        return text


def _pdf_text(data):
    from pypdf import PdfReader

    reader = PdfReader(io.BytesIO(data))
    if reader.is_encrypted and not reader.decrypt(''):
        raise DecodeFailed(PDF, "document is password protected")
    pages = [(page.extract_text() or '').strip() for page in reader.pages]
    return '\n\n'.join(page for page in pages if page)


def _docx_text(data):
    import docx

    document = docx.Document(io.BytesIO(data))
    lines = [paragraph.text for paragraph in document.paragraphs]
    for table in document.tables:
        for row in table.rows:
            lines.append('\t'.join(cell.text for cell in row.cells))
    return '\n'.join(lines).strip()


def _xlsx_text(data):
    from openpyxl import load_workbook

    workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    lines = []
    try:
        for sheet in workbook.worksheets:
            lines.append(f"## {sheet.title}")
            for row in sheet.iter_rows(values_only=True):
                if any(value is not None for value in row):
                    lines.append('\t'.join('' if value is None else str(value) for value in row))
    finally:
        workbook.close()
    return '\n'.join(lines)


def _pptx_text(data):
    from pptx import Presentation

    presentation = Presentation(io.BytesIO(data))
    lines = []
    for number, slide in enumerate(presentation.slides, 1):
        lines.append(f"## Slide {number}")
        for shape in slide.shapes:
            if shape.has_text_frame and shape.text_frame.text.strip():
                lines.append(shape.text_frame.text)
    return '\n'.join(lines)


def _html_text(data):
    h = html2text.HTML2Text()
    h.ignore_links = False
    h.ignore_images = True
    return h.handle(_plain_text(data)).strip()


def _plain_text(data):
    try:
        return data.decode('utf-8')
    except UnicodeDecodeError:
        return data.decode('latin-1')


def _strip_unrtf_header(text):
    return '\n'.join(line for line in text.splitlines() if not line.startswith('###')).strip()


DECODERS = {
    PDF: InProcessDecoder('pypdf', _pdf_text),
    DOCX: InProcessDecoder('python-docx', _docx_text),
    XLSX: InProcessDecoder('openpyxl', _xlsx_text),
    PPTX: InProcessDecoder('python-pptx', _pptx_text),
    HTML: InProcessDecoder('html2text', _html_text, allow_empty=True),
    DOC: SubprocessDecoder('antiword', suffix='.doc'),
    XLS: SubprocessDecoder('xls2csv', suffix='.xls'),
    PPT: SubprocessDecoder('catppt', suffix='.ppt'),
    RTF: SubprocessDecoder('unrtf', args=['--text'], suffix='.rtf', clean=_strip_unrtf_header),
}

TEXT_DECODER = InProcessDecoder('text', _plain_text, allow_empty=True)
OCR_DECODER = SubprocessDecoder('tesseract', args=['stdin', 'stdout'], use_stdin=True)


def decoder_for(content_type):
    """The decoder for a sniffed content type, or None for binary data"""
    if content_type in DECODERS:
        return DECODERS[content_type]
    if content_type.startswith('text/') or content_type in TEXT_APPLICATION_TYPES:
        return TEXT_DECODER
    return None


# ============================================================================
# SIZE BOUNDS
# ============================================================================

def truncate_text(text, max_bytes):
    """
    Cut text to at most max_bytes of UTF-8, marker included when it fits.

    Returns:
        (text, truncated)
    """
    encoded = text.encode('utf-8')
    if len(encoded) <= max_bytes:
        return text, False

    marker = TRUNCATION_MARKER.format(shown='{shown}', total=len(encoded))
    marker_size = len(marker.format(shown=len(encoded)).encode('utf-8'))
    if marker_size > max_bytes:
        # No room for the marker
        return encoded[:max_bytes].decode('utf-8', 'ignore'), True

    # Leave room for the marker once the shown count is filled in
    budget = max_bytes - marker_size
    head = encoded[:budget].decode('utf-8', 'ignore')
    shown = len(head.encode('utf-8'))
    return head + marker.format(shown=shown), True


def _open_image(data, content_type):
    from PIL import Image, UnidentifiedImageError

    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise DecodeFailed(content_type, f"not a readable image: {e}") from e
    return image


def downscale_image(data, content_type, max_bytes, ratio=SCALE_RATIO):
    """
    Shrink an image until its encoded size is at most max_bytes.

    Each step multiplies both dimensions by `ratio`, so the aspect ratio is
    kept and nothing is cropped. Images with transparency are written as
    PNG, everything else as JPEG. The same input always gives the same
    output.

    Raises:
        DecodeFailed: the image is unreadable or cannot get under the bound
    """
    from PIL import Image

    image = _open_image(data, content_type)
    width, height = image.size
    if len(data) <= max_bytes:
        return ImageContent(data, content_type, width, height, original_size=len(data))

    has_alpha = image.mode in ('RGBA', 'LA') or (image.mode == 'P' and 'transparency' in image.info)
    if has_alpha:
        image = image.convert('RGBA')
        fmt, options = 'PNG', {'optimize': True}
    else:
        image = image.convert('RGB')
        fmt, options = 'JPEG', {'quality': 85, 'optimize': True}

    scale = 1.0
    while True:
        new_size = (max(1, int(width * scale)), max(1, int(height * scale)))
        resized = image if scale == 1.0 else image.resize(new_size, Image.Resampling.LANCZOS)
        output = io.BytesIO()
        resized.save(output, format=fmt, **options)
        if output.tell() <= max_bytes:
            logger.debug("Scaled image from %dx%d to %dx%d", width, height, *new_size)
            return ImageContent(output.getvalue(), f"image/{fmt.lower()}", new_size[0], new_size[1],
                                scaled=True, original_size=len(data))
        if new_size == (1, 1):
            raise DecodeFailed(content_type, f"image cannot be reduced below {max_bytes} bytes")
        scale *= ratio


# ============================================================================
# RESOLVER
# ============================================================================

class AttachmentResolver:
    """
    Fetches and decodes attachments.

    Args:
        fetch: callable(blob_id, name, content_type) returning the blob bytes
        scale_ratio: factor applied to image dimensions per downscale step
        ocr: run OCR on images instead of returning them as images
    """

    def __init__(self, fetch, scale_ratio=None, ocr=None):
        self.fetch = fetch
        self.scale_ratio = scale_ratio or SCALE_RATIO
        self.ocr = OCR_ENABLED if ocr is None else ocr

    def resolve(self, blob_id, declared_type=None, name=None, size_bound=None, allow_raw=False):
        """
        Download a blob and decode it.

        Args:
            blob_id: JMAP blob id
            declared_type: content type claimed by the email (only a hint)
            name: file name (only a hint)
            size_bound: SizeBound limiting the returned payload
            allow_raw: return RawBytes with the error instead of raising when
                decoding fails

        Returns:
            DecodedContent, ImageContent or RawBytes

        Raises:
            BlobNotFound: the blob does not exist
            DecoderUnavailable: a needed external tool is not installed
            DecodeFailed: the content is corrupt or cannot be bounded
        """
        data = self.fetch(blob_id, name, declared_type)
        return self.decode(data, declared_type, name, size_bound, allow_raw)

    def decode(self, data, declared_type=None, name=None, size_bound=None, allow_raw=False):
        content_type = sniff_type(data, declared_type, name)
        if declared_type and not same_family(declared_type, content_type):
            logger.info("Attachment %s declared as %s but content is %s",
                        name or '(unnamed)', declared_type, content_type)

        try:
            return self._decode(data, content_type, size_bound)
        except (DecoderUnavailable, DecodeFailed) as e:
            if not allow_raw:
                raise
            logger.warning("Returning raw bytes for %s: %s", name or '(unnamed)', e)
            return RawBytes(data, content_type, error=str(e))

    def _decode(self, data, content_type, size_bound):
        if is_raster_image(content_type):
            if self.ocr:
                text = OCR_DECODER.decode(data, content_type)
                return self._bound_text(text, content_type, len(data), size_bound)
            if size_bound and size_bound.image_bytes:
                return downscale_image(data, content_type, size_bound.image_bytes, self.scale_ratio)
            image = _open_image(data, content_type)
            return ImageContent(data, content_type, image.size[0], image.size[1],
                                original_size=len(data))

        decoder = decoder_for(content_type)
        if decoder is None:
            return RawBytes(data, content_type)

        text = decoder.decode(data, content_type)
        return self._bound_text(text, content_type, len(data), size_bound)

    @staticmethod
    def _bound_text(text, content_type, original_size, size_bound):
        truncated = False
        if size_bound and size_bound.text_bytes:
            text, truncated = truncate_text(text, size_bound.text_bytes)
        return DecodedContent(text, content_type, truncated, original_size)
