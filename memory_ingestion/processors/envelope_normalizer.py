"""Turn raw source items into canonical document envelopes.

Everything here is a pure function of its input: normalizing the same raw
item twice yields envelopes with identical canonical JSON, which is what lets
a retried job produce the same document as the attempt that failed.
"""

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from bs4 import BeautifulSoup
from markdownify import markdownify

from ..core.errors import EnvelopeValidationError
from ..models.envelope import DocumentEnvelope, EnvelopeContent, EnvelopeContext, Participant
from ..models.source import SourceKind

_FRACTION_RE = re.compile(r"\.(\d+)")
_INLINE_SPACE_RE = re.compile(r"[ \t\f\v]+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")

HTML_CONTENT_TYPES = frozenset({"html", "text/html"})


def parse_timestamp(value: Any, time_zone: Optional[str] = None) -> datetime:
    """Parse a platform timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings with a trailing ``Z`` and any number of
    fractional digits (Graph sends seven). Naive values are read in
    ``time_zone`` when it is a known IANA zone, otherwise as UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise EnvelopeValidationError(f"Unparseable timestamp: {value!r}") from e
    else:
        raise EnvelopeValidationError(f"Missing timestamp: {value!r}")

    if parsed.tzinfo is None:
        zone = timezone.utc
        if time_zone and time_zone.upper() != "UTC":
            try:
                zone = ZoneInfo(time_zone)
            except (ZoneInfoNotFoundError, ValueError):
                zone = timezone.utc
        parsed = parsed.replace(tzinfo=zone)
    return parsed.astimezone(timezone.utc)


def clean_text(text: str) -> str:
    """Normalize unicode and whitespace without touching the words."""
    text = unicodedata.normalize("NFC", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\xa0", " ")
    lines = [_INLINE_SPACE_RE.sub(" ", line).strip() for line in text.split("\n")]
    text = "\n".join(lines)
    return _BLANK_LINES_RE.sub("\n\n", text).strip()


def markup_to_text(markup: str, content_type: str = "text") -> str:
    """Render markup as readable text, keeping links as ``[text](url)``."""
    if not markup:
        return ""
    if content_type.lower() not in HTML_CONTENT_TYPES:
        return clean_text(markup)

    soup = BeautifulSoup(markup, "html.parser")
    for element in soup(["script", "style", "head", "title", "meta"]):
        element.decompose()

    text = markdownify(str(soup), heading_style="ATX", bullets="-", strip=["img"])
    return clean_text(text)


def _dedupe(participants: Iterable[Optional[Participant]]) -> List[Participant]:
    seen = set()
    result = []
    for participant in participants:
        if participant is None or not participant.identity:
            continue
        if participant.identity in seen:
            continue
        seen.add(participant.identity)
        result.append(participant)
    return result


def _email_participant(entry: Any) -> Optional[Participant]:
    """Participant from a Graph ``recipient`` ({"emailAddress": {...}})."""
    if not isinstance(entry, dict):
        return None
    address = entry.get("emailAddress") or {}
    if not address.get("address") and not address.get("name"):
        return None
    return Participant(name=address.get("name"), address=(address.get("address") or None))


def _identity_participant(identity_set: Any) -> Optional[Participant]:
    """Participant from a Graph ``identitySet`` ({"user": {...}})."""
    if not isinstance(identity_set, dict):
        return None
    identity = identity_set.get("user") or identity_set.get("application") or {}
    if not identity.get("id") and not identity.get("displayName"):
        return None
    return Participant(name=identity.get("displayName"), address=identity.get("id"))


def _require(raw: Dict[str, Any], field: str, kind: SourceKind) -> str:
    value = raw.get(field)
    if value is None or not str(value).strip():
        raise EnvelopeValidationError(f"{kind.value} item has no stable '{field}'")
    return str(value).strip()


def _body(raw: Dict[str, Any]) -> EnvelopeContent:
    body = raw.get("body") or {}
    markup = body.get("content") or ""
    content_type = (body.get("contentType") or "text").lower()
    text = markup_to_text(markup, content_type)
    return EnvelopeContent(
        text=text,
        raw_markup=markup if content_type in HTML_CONTENT_TYPES else None,
        content_type=content_type,
    )


def _normalize_chat(raw: Dict[str, Any]) -> DocumentEnvelope:
    kind = SourceKind.CHAT
    message_id = _require(raw, "id", kind)
    channel = raw.get("channelIdentity") or {}
    thread_id = raw.get("chatId") or channel.get("channelId")
    if not thread_id:
        raise EnvelopeValidationError("chat item has neither 'chatId' nor a channel id")

    author = _identity_participant(raw.get("from"))
    mentioned = [_identity_participant(m.get("mentioned")) for m in raw.get("mentions") or []]

    return DocumentEnvelope(
        source_kind=kind,
        source_id=f"{thread_id}:{message_id}",
        timestamp=parse_timestamp(raw.get("createdDateTime")),
        author=author,
        participants=_dedupe([author, *mentioned]),
        context=EnvelopeContext(
            thread_id=thread_id,
            channel=channel.get("channelId"),
            subject=raw.get("subject") or None,
            link=raw.get("webUrl"),
        ),
        content=_body(raw),
    )


def _normalize_email(raw: Dict[str, Any]) -> DocumentEnvelope:
    kind = SourceKind.EMAIL
    source_id = _require(raw, "id", kind)
    author = _email_participant(raw.get("from") or raw.get("sender"))
    recipients = [
        _email_participant(entry)
        for field in ("toRecipients", "ccRecipients", "bccRecipients")
        for entry in raw.get(field) or []
    ]

    content = _body(raw)
    if not content.text and raw.get("bodyPreview"):
        content = EnvelopeContent(text=clean_text(raw["bodyPreview"]), content_type="text")

    return DocumentEnvelope(
        source_kind=kind,
        source_id=source_id,
        timestamp=parse_timestamp(
            raw.get("receivedDateTime") or raw.get("sentDateTime") or raw.get("createdDateTime")
        ),
        author=author,
        participants=_dedupe([author, *recipients]),
        context=EnvelopeContext(
            thread_id=raw.get("conversationId"),
            subject=raw.get("subject") or None,
            link=raw.get("webLink"),
        ),
        content=content,
    )


def _normalize_calendar(raw: Dict[str, Any]) -> DocumentEnvelope:
    kind = SourceKind.CALENDAR
    source_id = _require(raw, "id", kind)
    start = raw.get("start") or {}
    if start.get("dateTime"):
        timestamp = parse_timestamp(start["dateTime"], start.get("timeZone"))
    else:
        timestamp = parse_timestamp(raw.get("createdDateTime"))

    organizer = _email_participant(raw.get("organizer"))
    attendees = [_email_participant(entry) for entry in raw.get("attendees") or []]
    location = (raw.get("location") or {}).get("displayName") or None

    content = _body(raw)
    if not content.text and raw.get("subject"):
        content = EnvelopeContent(text=clean_text(raw["subject"]), content_type="text")

    return DocumentEnvelope(
        source_kind=kind,
        source_id=source_id,
        timestamp=timestamp,
        author=organizer,
        participants=_dedupe([organizer, *attendees]),
        context=EnvelopeContext(
            thread_id=raw.get("seriesMasterId") or raw.get("iCalUId"),
            subject=raw.get("subject") or None,
            link=raw.get("webLink"),
            location=location,
        ),
        content=content,
    )


def _normalize_note(raw: Dict[str, Any]) -> DocumentEnvelope:
    kind = SourceKind.NOTE
    source_id = _require(raw, "id", kind)

    author_raw = raw.get("author")
    if isinstance(author_raw, dict):
        author = Participant(name=author_raw.get("name"), address=author_raw.get("email"))
    elif isinstance(author_raw, str) and author_raw.strip():
        author = Participant(name=author_raw.strip())
    else:
        author = None

    markup = raw.get("content") or ""
    content_type = (raw.get("content_type") or "markdown").lower()

    return DocumentEnvelope(
        source_kind=kind,
        source_id=source_id,
        timestamp=parse_timestamp(raw.get("created_at")),
        author=author,
        participants=_dedupe([author]),
        context=EnvelopeContext(
            thread_id=raw.get("notebook_id"),
            subject=raw.get("title") or None,
            link=raw.get("url"),
        ),
        content=EnvelopeContent(
            text=markup_to_text(markup, content_type),
            raw_markup=markup if content_type in HTML_CONTENT_TYPES else None,
            content_type=content_type,
        ),
    )


def _image_alts(markup: Optional[str]) -> List[str]:
    if not markup:
        return []
    soup = BeautifulSoup(markup, "html.parser")
    return [clean_text(img.get("alt") or "") or "untitled image" for img in soup.find_all("img")]


def _attachment_names(raw: Dict[str, Any]) -> List[str]:
    names = []
    for attachment in raw.get("attachments") or []:
        if isinstance(attachment, dict) and attachment.get("name"):
            names.append(clean_text(str(attachment["name"])))
    return names


def _placeholder_text(raw: Dict[str, Any], envelope: DocumentEnvelope) -> str:
    """Describe an item that carries no text of its own, such as a lone image or file."""
    lines = [f"[{envelope.source_kind.value} item without text]"]
    if envelope.context.subject:
        lines.append(f"Subject: {clean_text(envelope.context.subject)}")
    images = _image_alts(envelope.content.raw_markup)
    if images:
        lines.append("Images: " + ", ".join(images))
    attachments = _attachment_names(raw)
    if attachments:
        lines.append("Attachments: " + ", ".join(attachments))
    return "\n".join(lines)


NORMALIZERS: Dict[SourceKind, Callable[[Dict[str, Any]], DocumentEnvelope]] = {
    SourceKind.CHAT: _normalize_chat,
    SourceKind.EMAIL: _normalize_email,
    SourceKind.CALENDAR: _normalize_calendar,
    SourceKind.NOTE: _normalize_note,
}


def normalize(raw_item: Dict[str, Any], source_kind: SourceKind) -> DocumentEnvelope:
    """Convert one raw item into a ``DocumentEnvelope``.

    Raises:
        EnvelopeValidationError: the item has no derivable stable id
            or no parseable event time.

    An item with no readable text still yields an envelope; its text is a
    placeholder naming the subject, images and attachments it does carry.
    """
    if not isinstance(raw_item, dict):
        raise EnvelopeValidationError(f"Raw item must be a mapping, got {type(raw_item).__name__}")

    envelope = NORMALIZERS[SourceKind(source_kind)](raw_item)
    if not envelope.content.text:
        content = envelope.content.model_copy(update={"text": _placeholder_text(raw_item, envelope)})
        envelope = envelope.model_copy(update={"content": content})
    return envelope
