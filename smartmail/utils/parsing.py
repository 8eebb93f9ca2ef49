"""
Normalization helpers shared by the IMAP client and the sync engine.

Message sources, FETCH flag lists and mailbox names arrive in several
shapes depending on the server. The helpers here turn them into the plain
values the local store keeps.
"""
import base64
import email
import re
from datetime import datetime, timezone
from email.header import decode_header
from email.message import Message
from email.utils import parseaddr, parsedate_tz, mktime_tz
from typing import Any, FrozenSet, Iterable, List, Optional, Tuple, Union

from smartmail.models import Attachment, ParsedMessage
from smartmail.utils.errors import MessageParseError


_FLAGS_RE = re.compile(rb'FLAGS \(([^)]*)\)', re.IGNORECASE)
_UID_RE = re.compile(rb'UID (\d+)', re.IGNORECASE)


# ============================================================================
# Flags
# ============================================================================

def _flag_text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode('ascii', errors='ignore')
    return str(value)


def has_flag(flags: Optional[Iterable[Any]], flag: str) -> bool:
    """
    Check whether ``flag`` is a member of ``flags``.

    Works with any iterable the remote library hands back (set, frozenset,
    list, tuple, generator) holding str or bytes entries, and with None.
    Comparison is case-insensitive as IMAP system flags are.
    """
    if not flags:
        return False
    wanted = flag.lower()
    try:
        return any(_flag_text(item).lower() == wanted for item in flags)
    except TypeError:
        # Not iterable at all
        return False


def parse_flags(raw: Union[bytes, str]) -> FrozenSet[str]:
    """
    Extract the flag list from a FETCH response line.

    Example:
        >>> sorted(parse_flags(b'1 (UID 7 FLAGS (\\\\Seen $Label1))'))
        ['$Label1', '\\\\Seen']
    """
    if isinstance(raw, str):
        raw = raw.encode('utf-8', errors='ignore')
    match = _FLAGS_RE.search(raw or b'')
    if not match:
        return frozenset()
    return frozenset(
        token.decode('ascii', errors='ignore')
        for token in match.group(1).split()
        if token
    )


def parse_uid(raw: Union[bytes, str]) -> Optional[int]:
    """Extract the UID from a FETCH response line, or None."""
    if isinstance(raw, str):
        raw = raw.encode('utf-8', errors='ignore')
    match = _UID_RE.search(raw or b'')
    return int(match.group(1)) if match else None


# ============================================================================
# Mailbox names
# ============================================================================

def decode_imap_utf7(name: str) -> str:
    """
    Decode a mailbox name from IMAP modified UTF-7 (RFC 3501, 5.1.3).

    ``&`` opens a base64 run of UTF-16BE (with ',' in place of '/'),
    ``-`` closes it, and ``&-`` stands for a literal ampersand. Names that
    are not valid modified UTF-7 are returned unchanged.
    """
    if '&' not in name:
        return name

    result = []
    i = 0
    try:
        while i < len(name):
            char = name[i]
            if char != '&':
                result.append(char)
                i += 1
                continue
            end = name.index('-', i)
            chunk = name[i + 1:end]
            if not chunk:
                result.append('&')
            else:
                encoded = chunk.replace(',', '/')
                encoded += '=' * (-len(encoded) % 4)
                result.append(base64.b64decode(encoded).decode('utf-16-be'))
            i = end + 1
    except (ValueError, UnicodeDecodeError):
        return name
    return ''.join(result)


# ============================================================================
# Message source
# ============================================================================

def decode_mime_header(header: Optional[str]) -> str:
    """Decode an RFC 2047 encoded header into text."""
    if not header:
        return ""
    try:
        decoded_str = ""
        for part, encoding in decode_header(str(header)):
            if isinstance(part, bytes):
                try:
                    decoded_str += part.decode(encoding or 'utf-8', errors='replace')
                except LookupError:
                    decoded_str += part.decode('utf-8', errors='replace')
            else:
                decoded_str += part
        return decoded_str.strip()
    except Exception:
        return str(header)


def parse_date(date_str: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 2822 date header into an aware UTC datetime."""
    if not date_str:
        return None
    try:
        date_tuple = parsedate_tz(date_str)
        if date_tuple:
            return datetime.fromtimestamp(mktime_tz(date_tuple), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        pass
    return None


def _decode_payload(part: Message) -> str:
    payload = part.get_payload(decode=True)
    if not payload:
        return ""
    charset = part.get_content_charset() or 'utf-8'
    try:
        return payload.decode(charset, errors='replace')
    except LookupError:
        return payload.decode('utf-8', errors='replace')


def _split_sender(from_header: str) -> Tuple[str, str]:
    name, address = parseaddr(from_header)
    if name and address:
        return f"{name} <{address}>", address
    if address:
        return address, address
    return from_header or "Unknown", ""


def _collect_parts(msg: Message) -> Tuple[str, Optional[str], List[Attachment]]:
    plain_text = None
    html_text = None
    attachments: List[Attachment] = []

    for part in msg.walk():
        if part.is_multipart():
            continue

        content_type = part.get_content_type()
        disposition = str(part.get("Content-Disposition", "")).lower()
        filename = part.get_filename()

        if "attachment" in disposition or (filename and "inline" not in disposition):
            data = part.get_payload(decode=True) or b""
            attachments.append(Attachment(
                filename=decode_mime_header(filename) or "attachment",
                content_type=content_type,
                size=len(data),
                data=data,
            ))
        elif content_type == "text/plain" and plain_text is None:
            plain_text = _decode_payload(part)
        elif content_type == "text/html" and html_text is None:
            html_text = _decode_payload(part)

    return plain_text or "", html_text, attachments


def parse_message(source: Union[bytes, str, None], uid: Optional[int] = None) -> ParsedMessage:
    """
    Parse a raw RFC 822 message into the fields the local store keeps.

    Args:
        source: The raw message as returned by FETCH RFC822.
        uid: Optional UID, only used to label errors.

    Returns:
        A ParsedMessage.

    Raises:
        MessageParseError: If the source is missing or cannot be parsed.
    """
    if not source:
        raise MessageParseError(f"Message UID {uid} returned no content", uid=uid)
    if isinstance(source, str):
        source = source.encode('utf-8', errors='replace')
    if not isinstance(source, (bytes, bytearray)):
        raise MessageParseError(
            f"Message UID {uid} has unsupported source type {type(source).__name__}",
            uid=uid,
        )

    try:
        msg = email.message_from_bytes(bytes(source))
        sender, sender_email = _split_sender(decode_mime_header(msg.get('From', '')))
        subject = decode_mime_header(msg.get('Subject', '')) or "(No Subject)"
        sent_at = parse_date(msg.get('Date'))
        body, body_html, attachments = _collect_parts(msg)
    except MessageParseError:
        raise
    except Exception as e:
        raise MessageParseError(f"Failed to parse message UID {uid}: {e}", uid=uid) from e

    if sent_at is None:
        sent_at = datetime.now(timezone.utc)

    return ParsedMessage(
        sender=sender,
        sender_email=sender_email,
        subject=subject,
        body=body,
        body_html=body_html,
        date=sent_at.isoformat(),
        attachments=attachments,
    )
