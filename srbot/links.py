from __future__ import annotations
from typing import Optional, Tuple
from urllib.parse import parse_qs, unquote, urlsplit

# Apple Music share links carry the song id in the ``i`` query parameter,
# e.g. https://music.apple.com/us/album/believer/1411625594?i=1411625599
SONG_ID_PARAM = 'i'


def is_valid_url(text: str) -> bool:
    """Return True if ``text`` parses as an absolute URL (scheme plus authority or path)."""
    if not isinstance(text, str) or not text or any(ch.isspace() for ch in text.strip()):
        return False
    try:
        parts = urlsplit(text.strip())
    except ValueError:
        return False
    return bool(parts.scheme) and bool(parts.netloc or parts.path)


def parse_apple_music_url(url: str) -> Tuple[Optional[str], Optional[str]]:
    try:
        parts = urlsplit(url)
    except (ValueError, AttributeError):
        return None, None
    segments = [seg for seg in parts.path.split('/') if seg]
    storefront = unquote(segments[0]) if segments else None
    values = parse_qs(parts.query).get(SONG_ID_PARAM) or []
    song_id = values[0] if values else None
    return storefront, song_id
