"""Hyperlink auto-detection.

Detection runs as an explicit pass (`scan_links`) after data mutations,
never as a side effect of rendering. Links the user set explicitly are
never overwritten; auto-detected links are tracked in
`Sheet.detected_links` so they can be dropped when the text changes.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Tuple

from .cells import Sheet, display_text
from .schemas import CellKey, CellRange


logger = logging.getLogger(__name__)


_EXPLICIT_URL = re.compile(r"^https?://[^\s]+$", re.IGNORECASE)
_WWW_URL = re.compile(r"^www\.[a-z0-9-]+(\.[a-z0-9-]+)+(/[^\s]*)?$", re.IGNORECASE)
# Bare domains only count with a common TLD, so "John.Smith" stays text.
_BARE_DOMAIN = re.compile(
    r"^[a-z0-9][a-z0-9-]*(\.[a-z0-9-]+)*"
    r"\.(com|org|net|edu|gov|io|ai|app|dev|co|info|biz|me|us|uk|de|fr|ca|au|in|jp)"
    r"(:\d{1,5})?(/[^\s]*)?$",
    re.IGNORECASE,
)
_MAILTO = re.compile(r"^mailto:[^\s@]+@[^\s@]+\.[^\s@]+$", re.IGNORECASE)
_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[a-z]{2,24}$", re.IGNORECASE)


def detect_link(text: str) -> Optional[str]:
    """Return the URL a cell text points at, or None.

    "https://a.com" -> unchanged, "www.a.com" / "a.com" -> "https://..." ,
    "mailto:x@a.com" -> unchanged, "x@a.com" -> "mailto:x@a.com".
    Formulas and numbers never count as links.
    """
    candidate = (text or "").strip()
    if not candidate or candidate.startswith("=") or " " in candidate:
        return None
    if _EXPLICIT_URL.match(candidate):
        return candidate
    if _MAILTO.match(candidate):
        return candidate
    if _EMAIL.match(candidate):
        return f"mailto:{candidate}"
    if _WWW_URL.match(candidate):
        return f"https://{candidate}"
    if _BARE_DOMAIN.match(candidate):
        return f"https://{candidate}"
    return None


def scan_links(sheet: Sheet, range_: Optional[CellRange] = None) -> int:
    """Refresh auto-detected links over `range_` (default: whole sheet).

    Returns the number of link entries added, changed or removed. Changes
    are committed as one batch; a scan that changes nothing publishes
    nothing.
    """
    if range_ is None:
        if sheet.row_count == 0 or sheet.col_count == 0:
            return 0
        range_ = CellRange(
            start_row=0, start_col=0, end_row=sheet.row_count - 1, end_col=sheet.col_count - 1
        )

    updates: List[Tuple[CellKey, Optional[str]]] = []
    for key in range_.cells():
        if key in sheet.links and key not in sheet.detected_links:
            continue
        value = sheet.get_value(key.row, key.col)
        url = detect_link(display_text(value)) if isinstance(value, str) else None
        if url:
            if sheet.links.get(key) != url:
                updates.append((key, url))
        elif key in sheet.detected_links:
            updates.append((key, None))

    if not updates:
        return 0

    with sheet.batch("scan links", scope="metadata") as draft:
        for key, url in updates:
            if url:
                draft.links[key] = url
                draft.detected_links.add(key)
            else:
                draft.links.pop(key, None)
                draft.detected_links.discard(key)

    logger.debug(f"[SHEETS] Link scan on '{sheet.name}': {len(updates)} change(s)")
    return len(updates)
