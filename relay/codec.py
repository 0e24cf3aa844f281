"""
Encoding of chat content in the message log.

Two variants exist:

- ``structured``: the row holds a JSON object ``{"alias", "content", "color"}``
  and clients receive the same object.
- ``plain``: the row holds ``"alias: text"`` and clients receive that string.

``decode_content`` accepts rows written by either variant and never fails.
Plain rows are split on the first ``": "``, so an alias that itself contains
``": "`` is split in the wrong place. That ambiguity is inherent to the
plain encoding and is kept as is.
"""
import json
import re
from typing import Union

from relay.schemas import ChatPayload

STRUCTURED = "structured"
PLAIN = "plain"

SYSTEM_ALIAS = "system"
NEUTRAL_COLOR = "#888888"

_PLAIN_PATTERN = re.compile(r"(.+?): (.+)", re.DOTALL)


def encode_content(variant: str, alias: str, text: str, color: str) -> str:
    """Render a submission for storage."""
    if variant == PLAIN:
        return f"{alias}: {text}"
    return json.dumps(
        {"alias": alias, "content": text, "color": color},
        ensure_ascii=False,
    )


def live_payload(variant: str, alias: str, text: str, color: str) -> Union[dict, str]:
    """Payload broadcast for a freshly stored message."""
    if variant == PLAIN:
        return f"{alias}: {text}"
    return ChatPayload(alias=alias, content=text, color=color).model_dump()


def decode_content(raw: str) -> ChatPayload:
    """
    Decode a stored row into a structured payload.

    Order of attempts:
    1. JSON object with alias/content/color (structured rows)
    2. "alias: text" split on the first ": " (plain rows), neutral color
    3. the whole string from the synthetic system sender
    """
    if raw.startswith("{"):
        try:
            data = json.loads(raw)
        except ValueError:
            data = None
        if isinstance(data, dict):
            alias, content, color = data.get("alias"), data.get("content"), data.get("color")
            if isinstance(alias, str) and isinstance(content, str) and isinstance(color, str):
                return ChatPayload(alias=alias, content=content, color=color)

    match = _PLAIN_PATTERN.match(raw)
    if match:
        return ChatPayload(alias=match.group(1), content=match.group(2), color=NEUTRAL_COLOR)

    return ChatPayload(alias=SYSTEM_ALIAS, content=raw, color=NEUTRAL_COLOR)


def replay_payload(variant: str, raw: str) -> Union[dict, str]:
    """Payload sent for a row read back from the log (recovery or history)."""
    if variant == PLAIN:
        return raw
    return decode_content(raw).model_dump()
