"""
Record Encoder - Positional CSV / JSON Fragments

Turns one batch of records into one fragment of the final export file. The
fragment's shape depends on whether it is the first, a middle, or the last
fragment of the job, so that concatenating every fragment in part order yields
a single well-formed CSV or JSON document.

Framing is decided by the caller; this module only renders.
"""

import csv
import io
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import orjson

from utils.schemas import OutputFormat, RecordKind

Record = dict[str, Any]

CONVERSATION_COLUMNS = [
    "ID", "ContactID", "ContactName", "ContactEmail", "ContactPhone",
    "Type", "LastMessageType", "LastMessageDate", "UnreadCount", "DateAdded",
]

EMAIL_MESSAGE_COLUMNS = [
    "Date", "ConversationID", "ContactID", "MessageType", "Direction", "Status",
    "From", "To", "Subject", "CC", "BCC", "Message", "Attachments", "Source",
]

MESSAGE_COLUMNS = [
    "Date", "ConversationID", "ContactID", "MessageType", "Direction", "Status",
    "From", "To", "Message", "Attachments", "Source",
    "CallDuration", "CallStatus", "FacebookPage", "InstagramPage",
]

EMAIL_MESSAGE_TYPES = {
    "TYPE_EMAIL",
    "TYPE_CAMPAIGN_EMAIL",
    "TYPE_CUSTOM_EMAIL",
    "TYPE_CUSTOM_PROVIDER_EMAIL",
}


def format_date(value: Any) -> str:
    """Render epoch-ms or ISO input as ``YYYY-MM-DDTHH:MM:SS.mmmZ``; '' if unparseable."""
    if value in (None, ""):
        return ""
    try:
        if isinstance(value, (int, float)):
            dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        else:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return ""
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def clean_cell(value: Any) -> str:
    if value is None:
        return ""
    return str(value).replace("\r", "").replace("\n", " ")


def _conversation_row(conv: Record) -> list[Any]:
    return [
        conv.get("id"),
        conv.get("contactId"),
        conv.get("contactName") or conv.get("fullName"),
        conv.get("email"),
        conv.get("phone"),
        conv.get("type"),
        conv.get("lastMessageType"),
        format_date(conv.get("lastMessageDate")),
        conv.get("unreadCount") or 0,
        format_date(conv.get("dateAdded")),
    ]


def _message_fields(msg: Record) -> dict[str, Any]:
    meta = msg.get("meta") or {}
    email_meta = meta.get("email") or {}
    is_email = msg.get("messageType") in EMAIL_MESSAGE_TYPES

    sender = (email_meta.get("from") or msg.get("from")) if is_email else msg.get("from")
    to = (email_meta.get("to") or msg.get("to")) if is_email else msg.get("to")
    if isinstance(to, list):
        to = ";".join(str(t) for t in to)

    attachments = msg.get("attachments")
    attachments = "; ".join(str(a) for a in attachments) if isinstance(attachments, list) else ""

    return {
        "date": format_date(msg.get("dateAdded")),
        "direction": msg.get("direction") or email_meta.get("direction") or "outbound",
        "type": msg.get("messageType") or msg.get("type"),
        "from": sender or "",
        "to": to or "",
        "subject": email_meta.get("subject") or msg.get("subject") or "",
        "cc": email_meta.get("cc") or msg.get("cc") or "",
        "bcc": email_meta.get("bcc") or msg.get("bcc") or "",
        "attachments": attachments,
        "source": msg.get("source") or "",
        "call_duration": meta.get("callDuration") or "",
        "call_status": meta.get("callStatus") or "",
        "fb_page": (meta.get("fb") or {}).get("page_name") or "",
        "ig_page": (meta.get("ig") or {}).get("page_name") or "",
    }


def _email_message_row(msg: Record) -> list[Any]:
    f = _message_fields(msg)
    return [
        f["date"], msg.get("conversationId"), msg.get("contactId"), f["type"],
        f["direction"], msg.get("status"), f["from"], f["to"],
        f["subject"], f["cc"], f["bcc"], msg.get("body"), f["attachments"], f["source"],
    ]


def _message_row(msg: Record) -> list[Any]:
    f = _message_fields(msg)
    return [
        f["date"], msg.get("conversationId"), msg.get("contactId"), f["type"],
        f["direction"], msg.get("status"), f["from"], f["to"],
        msg.get("body"), f["attachments"], f["source"],
        f["call_duration"], f["call_status"], f["fb_page"], f["ig_page"],
    ]


def csv_layout(record_kind: RecordKind, channel: str = "") -> tuple[list[str], Callable[[Record], list[Any]]]:
    """Header columns and row builder for a record kind (and message channel)."""
    if record_kind is RecordKind.CONVERSATIONS:
        return CONVERSATION_COLUMNS, _conversation_row
    if channel == "Email":
        return EMAIL_MESSAGE_COLUMNS, _email_message_row
    return MESSAGE_COLUMNS, _message_row


def encode_csv(records: list[Record], record_kind: RecordKind, is_first: bool, channel: str = "") -> bytes:
    columns, build_row = csv_layout(record_kind, channel)
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")

    if is_first:
        buf.write(",".join(columns) + "\n")
    for record in records:
        writer.writerow([clean_cell(v) for v in build_row(record)])

    return buf.getvalue().encode("utf-8")


def _exported_at(exported_at: Optional[datetime]) -> str:
    dt = exported_at or datetime.now(timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _join_elements(records: list[Record]) -> bytes:
    return b",".join(orjson.dumps(r, default=str) for r in records)


def encode_json(
    records: list[Record],
    record_kind: RecordKind,
    is_first: bool,
    is_last: bool,
    total_count: int,
    exported_at: Optional[datetime] = None,
) -> bytes:
    """
    Render a JSON fragment.

    first+last -> complete document
    first      -> ``{"<kind>":[e1,e2``
    middle     -> ``,e3,e4``
    last       -> ``,e5]`` (comma only if records) plus trailing metadata and ``}``
    """
    name = record_kind.value

    if is_first and is_last:
        document = {name: records, "count": total_count, "exportedAt": _exported_at(exported_at)}
        return orjson.dumps(document, default=str, option=orjson.OPT_INDENT_2)

    if is_first:
        return b'{"' + name.encode("utf-8") + b'":[' + _join_elements(records)

    if is_last:
        items = b"," + _join_elements(records) if records else b""
        trailer = orjson.dumps({"count": total_count, "exportedAt": _exported_at(exported_at)})
        # trailer is '{...}'; splice its members after the closed array
        return items + b"]," + trailer[1:]

    return b"," + _join_elements(records)


def encode(
    records: list[Record],
    record_kind: RecordKind,
    output_format: OutputFormat,
    is_first: bool,
    is_last: bool,
    *,
    total_count: Optional[int] = None,
    channel: str = "",
    exported_at: Optional[datetime] = None,
) -> bytes:
    """
    Encode one batch as a positional fragment of the export file.

    Args:
        records: Records in fetch order
        record_kind: Determines CSV columns and the JSON array name
        output_format: CSV or JSON
        is_first: No fragment has been uploaded for this job yet
        is_last: The fetch loop reached the end of the data
        total_count: Job-wide record count for JSON metadata (defaults to len(records))
        channel: Message channel filter; "Email" selects the email CSV layout
        exported_at: Export timestamp override

    Returns:
        Encoded fragment bytes (may be empty for a non-first CSV batch with no records)
    """
    if output_format is OutputFormat.CSV:
        return encode_csv(records, record_kind, is_first, channel)

    count = len(records) if total_count is None else total_count
    return encode_json(records, record_kind, is_first, is_last, count, exported_at)
