# dm_responses.py
"""
Normalized outbound messages and the parser that builds them from Voiceflow
interact traces.

Only three trace types are rendered: text, visual and choice. Every other
trace (speak, path, end, debug, ...) is dropped.
"""
from __future__ import annotations

import logging
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, Field

logger = logging.getLogger("dm_responses")


class Button(BaseModel):
    label: str


class TextMessage(BaseModel):
    type: Literal["text"] = "text"
    value: str


class ImageMessage(BaseModel):
    type: Literal["image"] = "image"
    url: str


class ButtonSetMessage(BaseModel):
    type: Literal["buttons"] = "buttons"
    buttons: List[Button] = Field(default_factory=list)

    @property
    def labels(self) -> List[str]:
        return [button.label for button in self.buttons]


NormalizedMessage = Annotated[Union[TextMessage, ImageMessage, ButtonSetMessage], Field(discriminator="type")]


def slate_to_text(slate: Dict[str, Any]) -> str:
    blocks = slate["content"]
    return "\n".join("".join(child.get("text") or "" for child in block["children"]) for block in blocks)


def button_label(button: Dict[str, Any]) -> Optional[str]:
    request = button.get("request") or {}
    payload = request.get("payload")
    if isinstance(payload, dict) and isinstance(payload.get("label"), str):
        return payload["label"]
    name = button.get("name")
    return name if isinstance(name, str) else None


def _parse_text(payload: Dict[str, Any]) -> TextMessage:
    if "slate" not in payload and isinstance(payload.get("message"), str):
        return TextMessage(value=payload["message"])
    return TextMessage(value=slate_to_text(payload["slate"]))


def _parse_visual(payload: Dict[str, Any]) -> Optional[ImageMessage]:
    # Visuals without an image URL (APL documents, null images) have nothing to show on a card.
    image = payload.get("image")
    if not isinstance(image, str):
        return None
    return ImageMessage(url=image)


def _parse_choice(payload: Dict[str, Any]) -> ButtonSetMessage:
    labels = [button_label(button) for button in payload.get("buttons") or []]
    return ButtonSetMessage(buttons=[Button(label=label) for label in labels if label is not None])


_PARSERS = {
    "text": _parse_text,
    "visual": _parse_visual,
    "choice": _parse_choice,
}


def parse_responses(items: Iterable[Any]) -> List[NormalizedMessage]:
    """Map interact traces to normalized messages, keeping their order.

    Never raises: unknown trace types and malformed payloads are skipped.
    """
    messages: List[NormalizedMessage] = []
    for item in items:
        if not isinstance(item, dict):
            logger.debug("Skipping non-object trace: %r", item)
            continue
        item_type = item.get("type")
        parser = _PARSERS.get(item_type) if isinstance(item_type, str) else None
        if parser is None:
            continue
        try:
            message = parser(item.get("payload") or {})
        except (KeyError, TypeError, AttributeError, ValueError) as exc:
            logger.debug("Skipping malformed %s trace: %s", item_type, exc)
            continue
        if message is None:
            logger.debug("Skipping %s trace with nothing to render", item_type)
            continue
        messages.append(message)
    return messages
