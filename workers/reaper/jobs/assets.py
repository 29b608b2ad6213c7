from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Union
from urllib.parse import urlsplit

JSONValue = Union[dict[str, Any], list[Any], str, int, float, bool, None]

ASSET_PATH_FRAGMENTS = ("/file/", "/temp/", "/r2/")
FILE_MARKER = "/file/"


def looks_like_url(value: str) -> bool:
    try:
        parsed = urlsplit(value)
    except ValueError:
        return False
    return bool(parsed.scheme) and bool(parsed.netloc)


def find_image_urls(document: JSONValue, out: list[str] | None = None) -> list[str]:
    """Collect asset URLs referenced anywhere in a form_data document.

    A string field is collected when its key mentions "preview", or when its
    value points into one of the upload paths. Bare strings sitting directly
    in a list are not fields and are skipped.
    """
    found = out if out is not None else []
    if isinstance(document, list):
        for item in document:
            find_image_urls(item, found)
        return found
    if not isinstance(document, dict):
        return found

    for key, value in document.items():
        if "preview" in str(key).lower() and isinstance(value, str) and looks_like_url(value):
            found.append(value)
        elif isinstance(value, str) and any(fragment in value for fragment in ASSET_PATH_FRAGMENTS):
            if looks_like_url(value):
                found.append(value)
        elif isinstance(value, (dict, list)):
            find_image_urls(value, found)
    return found


def r2_key_from_public_url(public_url: str) -> str | None:
    if "://" not in public_url and not public_url.startswith("/"):
        return public_url
    try:
        parsed = urlsplit(public_url)
    except ValueError:
        return None
    # A host-relative path has no origin to resolve against.
    if not parsed.scheme:
        return None
    path = parsed.path

    marker_index = path.find(FILE_MARKER)
    if marker_index >= 0:
        return path[marker_index + len(FILE_MARKER):]
    if path.startswith("/file"):
        return path[len("/file/"):] if path.startswith("/file/") else path[len("/file"):]
    if path.startswith("/"):
        return path[1:]
    return None


def normalize_key(key: str) -> str:
    return key[1:] if key.startswith("/") else key


def resolve_asset_keys(urls: Iterable[str], qr_code: str | None = None) -> list[str]:
    """Map candidate URLs (and the QR code, if any) to unique bucket keys in first-seen order."""
    keys: list[str] = []
    seen: set[str] = set()
    candidates = list(urls)
    if qr_code:
        candidates.append(qr_code)
    for url in candidates:
        raw_key = r2_key_from_public_url(url)
        if not raw_key:
            continue
        key = normalize_key(raw_key)
        if key and key not in seen:
            seen.add(key)
            keys.append(key)
    return keys
