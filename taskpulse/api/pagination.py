from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any, Callable


class CursorError(ValueError):
    pass


@dataclass(frozen=True)
class PageCursor:
    """Keyset position in a newest-first listing: `(created_at, id)` of the last item served."""

    created_at: float
    item_id: str

    def encode(self) -> str:
        raw = json.dumps({"created_at": self.created_at, "id": self.item_id}, separators=(",", ":"))
        return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")

    @classmethod
    def decode(cls, value: str | None) -> PageCursor | None:
        s = (value or "").strip()
        if not s:
            return None

        pad = "=" * ((4 - (len(s) % 4)) % 4)
        try:
            obj = json.loads(base64.urlsafe_b64decode((s + pad).encode("ascii")).decode("utf-8"))
            return cls(created_at=float(obj["created_at"]), item_id=str(obj["id"]))
        except (ValueError, KeyError, TypeError) as e:
            raise CursorError("Invalid cursor") from e

    def as_tuple(self) -> tuple[float, str]:
        return (self.created_at, self.item_id)


def render_page(page: dict[str, Any], render_item: Callable[[Any], dict[str, Any]]) -> dict[str, Any]:
    """Turn a store page (`items`, `has_more`, `next_cursor` tuple) into a response body."""
    next_cursor = page.get("next_cursor")
    return {
        "items": [render_item(item) for item in page.get("items", [])],
        "has_more": bool(page.get("has_more")),
        "next_cursor": PageCursor(float(next_cursor[0]), str(next_cursor[1])).encode() if next_cursor else None,
    }
