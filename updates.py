import logging
import re
from typing import Any, Dict, List

import requests

log = logging.getLogger("ticketdesk.updates")

_LEADING_DIGITS = re.compile(r"\s*(\d+)")


def _segments(version: Any) -> List[int]:
    parts = []
    for piece in str(version).split("."):
        m = _LEADING_DIGITS.match(piece)
        parts.append(int(m.group(1)) if m else 0)
    return parts


def compare_semver(a: Any, b: Any) -> int:
    """Compare dotted versions field by field; missing fields count as 0."""
    pa, pb = _segments(a), _segments(b)
    for i in range(max(len(pa), len(pb))):
        na = pa[i] if i < len(pa) else 0
        nb = pb[i] if i < len(pb) else 0
        if na > nb:
            return 1
        if na < nb:
            return -1
    return 0


def check_for_updates(current_version: str, feed_url: str, timeout: float = 10) -> Dict[str, Any]:
    latest = current_version
    changelog: List[Any] = []
    feed_error = None

    if feed_url:
        try:
            resp = requests.get(feed_url, timeout=timeout)
            resp.raise_for_status()
            data = resp.json()
            if data.get("latest"):
                latest = str(data["latest"])
            if isinstance(data.get("changelog"), list):
                changelog = data["changelog"]
        except (requests.RequestException, ValueError, AttributeError):
            log.exception("update feed fetch failed url=%s", feed_url)
            feed_error = "Unable to reach update server."

    return {
        "currentVersion": current_version,
        "latestVersion": latest,
        "upToDate": compare_semver(current_version, latest) >= 0,
        "changelog": changelog,
        "feedError": feed_error,
    }
