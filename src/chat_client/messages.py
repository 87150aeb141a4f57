"""Conversation message model: roles, typed content parts, persisted records."""
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

# Inline marker used to carry image references inside text content.
IMAGE_MARKER = "![image]({url})"
IMAGE_MARKER_RE = re.compile(r"!\[image\]\((?P<url>[^)\s]+)\)")

# Caption used when an image is submitted without accompanying text.
DEFAULT_IMAGE_CAPTION = "Uploaded an image:"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


# -----------------------------
# Parts (closed union)
# -----------------------------
@dataclass(frozen=True)
class TextPart:
    text: str
    type: str = field(default="text", init=False)


@dataclass(frozen=True)
class ImagePart:
    url: str
    type: str = field(default="image_url", init=False)


Part = Union[TextPart, ImagePart]


def part_to_dict(part: Part) -> Dict[str, Any]:
    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    if isinstance(part, ImagePart):
        return {"type": "image_url", "image_url": {"url": part.url}}
    raise TypeError(f"Unknown message part: {part!r}")


def part_from_dict(raw: Dict[str, Any]) -> Part:
    kind = raw.get("type")
    if kind == "text":
        return TextPart(str(raw.get("text") or ""))
    if kind in ("image_url", "image"):
        # Accept both the nested {image_url: {url}} form and a flat {url}.
        nested = raw.get("image_url")
        url = nested.get("url") if isinstance(nested, dict) else raw.get("url")
        if not url:
            raise ValueError("image part without url")
        return ImagePart(str(url))
    raise ValueError(f"Unknown part type: {kind!r}")


def embed_image(url: str) -> str:
    return IMAGE_MARKER.format(url=url)


def extract_image_urls(text: str) -> List[str]:
    """Return image URLs referenced through the inline marker, in order."""
    return [m.group("url") for m in IMAGE_MARKER_RE.finditer(text or "")]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _parse_iso(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    if not raw:
        return _utcnow()
    text = str(raw)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    ts = datetime.fromisoformat(text)
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def new_message_id() -> str:
    return uuid.uuid4().hex


# -----------------------------
# Message
# -----------------------------
@dataclass
class Message:
    """A single transcript entry.

    ``parts`` is ordered; the first text part is the primary content. ``seq``
    is the owning session's append counter and defines transcript order.
    """

    id: str
    role: Role
    parts: List[Part] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    seq: int = 0

    @property
    def text(self) -> str:
        return "\n".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def image_urls(self) -> List[str]:
        return [p.url for p in self.parts if isinstance(p, ImagePart)]

    @property
    def is_empty(self) -> bool:
        return not any(
            (isinstance(p, TextPart) and p.text) or isinstance(p, ImagePart)
            for p in self.parts
        )

    def with_text(self, new_text: str) -> List[Part]:
        """Parts with the text replaced by ``new_text``; other parts keep their order."""
        others = [p for p in self.parts if not isinstance(p, TextPart)]
        return [TextPart(new_text), *others]

    def append_text(self, delta: str) -> None:
        """Concatenate ``delta`` onto the trailing text part (streaming path)."""
        if self.parts and isinstance(self.parts[-1], TextPart):
            self.parts[-1] = TextPart(self.parts[-1].text + delta)
        else:
            self.parts.append(TextPart(delta))

    def copy(self) -> "Message":
        return replace(self, parts=list(self.parts))

    # --------- serialization ----------
    def to_record(self) -> Dict[str, Any]:
        """Document persisted by the transcript store."""
        return {
            "id": self.id,
            "role": self.role.value,
            "text": self.text,
            "parts": [part_to_dict(p) for p in self.parts],
            "createdAt": _iso(self.created_at),
        }

    def to_dict(self) -> Dict[str, Any]:
        d = self.to_record()
        d["seq"] = self.seq
        return d

    @classmethod
    def from_record(cls, record: Dict[str, Any], *, seq: int = 0) -> "Message":
        parts_raw = record.get("parts") or []
        parts: List[Part] = [part_from_dict(p) for p in parts_raw if isinstance(p, dict)]
        if not parts and record.get("text"):
            parts = [TextPart(str(record["text"]))]
        return cls(
            id=str(record.get("id") or record.get("_id") or new_message_id()),
            role=Role(record.get("role", "user")),
            parts=parts,
            created_at=_parse_iso(record.get("createdAt")),
            seq=seq,
        )

    def to_model_message(self) -> Dict[str, str]:
        """``{role, content}`` for the inference backend.

        Image parts travel inside the text as inline markers because the
        inference transport only carries text content.
        """
        content = self.text
        embedded = set(extract_image_urls(content))
        for url in self.image_urls:
            if url in embedded:
                continue
            marker = embed_image(url)
            content = f"{content}\n{marker}" if content else marker
        return {"role": self.role.value, "content": content}


# -----------------------------
# Factories
# -----------------------------
def user_message(text: str = "", image_url: Optional[str] = None, *, message_id: Optional[str] = None) -> Message:
    parts: List[Part] = []
    text = (text or "").strip()
    if text:
        parts.append(TextPart(text))
    if image_url:
        if not parts:
            parts.append(TextPart(DEFAULT_IMAGE_CAPTION))
        parts.append(ImagePart(image_url))
    return Message(id=message_id or new_message_id(), role=Role.USER, parts=parts)


def pending_assistant() -> Message:
    return Message(id=new_message_id(), role=Role.ASSISTANT, parts=[])


def to_model_messages(messages: Sequence[Message]) -> List[Dict[str, str]]:
    return [m.to_model_message() for m in messages]

