from __future__ import annotations
import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict
from urllib.parse import quote

import aiohttp

from .links import is_valid_url, parse_apple_music_url

logger = logging.getLogger(__name__)

# Free-text searches always run against the US storefront.
DEFAULT_STOREFRONT = 'us'
# Characters encodeURIComponent leaves untouched besides the unreserved set.
_TERM_SAFE = "!~*'()"


@dataclass(frozen=True)
class CiderSettings:
    base_url: str
    token: str
    timeout: float = 10.0


class CiderError(RuntimeError):
    def __init__(self, status: int, detail: object):
        message = detail if isinstance(detail, str) else str(detail)
        super().__init__(message)
        self.status = status
        self.detail = message


class FailureKind(str, Enum):
    INVALID_LOCATOR = 'invalid_locator'
    ITEM_NOT_FOUND = 'item_not_found'
    NO_MATCH = 'no_match'
    CATALOG_REQUEST_FAILED = 'catalog_request_failed'
    ENQUEUE_FAILED = 'enqueue_failed'


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    detail: str = ''


@dataclass(frozen=True)
class Track:
    id: str
    type: str
    title: str
    artist: str

    @classmethod
    def from_item(cls, item: Dict[str, object]) -> 'Track':
        """Build a track from a catalog resource.

        Raises ValueError when the resource lacks an id, a type or a name.
        """
        attributes = item.get('attributes')
        if not isinstance(attributes, dict):
            attributes = {}
        missing = [
            name for name, value in (
                ('id', item.get('id')),
                ('type', item.get('type')),
                ('attributes.name', attributes.get('name')),
            )
            if not value
        ]
        if missing:
            raise ValueError('Catalog item missing ' + ', '.join(missing))
        return cls(
            id=str(item['id']),
            type=str(item['type']),
            title=str(attributes['name']),
            artist=str(attributes.get('artistName') or ''),
        )


@dataclass(frozen=True)
class Result:
    """Outcome of a catalog lookup or enqueue: either a track or a failure."""

    track: Optional[Track] = None
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.track is not None

    @classmethod
    def success(cls, track: Track) -> 'Result':
        return cls(track=track)

    @classmethod
    def fail(cls, kind: FailureKind, detail: str = '') -> 'Result':
        return cls(failure=Failure(kind, detail))


def _first_item(payload: object, *keys: str) -> Optional[Dict[str, object]]:
    node = payload
    for key in keys:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    if isinstance(node, list) and node and isinstance(node[0], dict):
        return node[0]
    return None


def _track_result(item: Dict[str, object]) -> Result:
    try:
        return Result.success(Track.from_item(item))
    except ValueError as exc:
        return Result.fail(FailureKind.CATALOG_REQUEST_FAILED, str(exc))


def _error_detail(exc: BaseException) -> str:
    if isinstance(exc, CiderError):
        return exc.detail
    return str(exc) or exc.__class__.__name__


class CiderClient:
    """Client for the Cider player API: Apple Music catalog proxy and playback queue."""

    def __init__(self, settings: CiderSettings, session: Optional[aiohttp.ClientSession] = None):
        self.base = settings.base_url.rstrip('/')
        self.headers = {'apptoken': settings.token, 'Content-Type': 'application/json'}
        self.timeout = aiohttp.ClientTimeout(total=settings.timeout)
        self.session = session

    async def start(self):
        if not self.session:
            self.session = aiohttp.ClientSession()

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _req(self, method: str, path: str, payload: Optional[dict] = None, *, parse: bool = True):
        if not self.session:
            await self.start()
        url = f"{self.base}{path}"
        async with self.session.request(
            method,
            url,
            headers=self.headers,
            data=json.dumps(payload) if payload is not None else None,
            timeout=self.timeout,
        ) as r:
            content_type = r.headers.get('content-type', '')
            if r.status >= 400:
                try:
                    detail = await r.text()
                except aiohttp.ClientError:
                    detail = ''
                raise CiderError(r.status, detail or f"{method} {path} failed")
            if not parse:
                return None
            if not content_type.startswith('application/json'):
                try:
                    body = await r.text()
                except aiohttp.ClientError:
                    body = ''
                raise CiderError(
                    r.status,
                    f"{method} {path} returned {content_type or 'no content type'}: {body[:200]}",
                )
            try:
                return await r.json()
            except ValueError as exc:
                raise CiderError(r.status, f"{method} {path} returned invalid JSON: {exc}") from None

    async def run_catalog(self, path: str) -> Dict[str, object]:
        data = await self._req('POST', "/v1/amapi/run-v3", {'path': path})
        if not isinstance(data, dict):
            raise CiderError(200, f"Catalog response for {path} is not a JSON object")
        return data

    async def play_later(self, item_id: str, item_type: str) -> None:
        # The queue is mutated once the status is OK; the body is irrelevant.
        await self._req('POST', "/v1/playback/play-later", {'id': item_id, 'type': item_type}, parse=False)

    async def lookup_song(self, storefront: str, song_id: str) -> Result:
        path = f"/v1/catalog/{quote(storefront, safe='')}/songs/{quote(song_id, safe='')}"
        try:
            data = await self.run_catalog(path)
        except (CiderError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            return Result.fail(FailureKind.CATALOG_REQUEST_FAILED, _error_detail(exc))
        item = _first_item(data, 'data', 'data')
        if not item:
            return Result.fail(FailureKind.ITEM_NOT_FOUND, f"Song {song_id} not found in storefront {storefront}")
        return _track_result(item)

    async def search_song(self, term: str, storefront: str = DEFAULT_STOREFRONT) -> Result:
        path = (
            f"/v1/catalog/{storefront}/search"
            f"?term={quote(term, safe=_TERM_SAFE)}&types=songs&limit=1"
        )
        try:
            data = await self.run_catalog(path)
        except (CiderError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            return Result.fail(FailureKind.CATALOG_REQUEST_FAILED, _error_detail(exc))
        item = _first_item(data, 'data', 'results', 'songs', 'data')
        if not item:
            return Result.fail(FailureKind.NO_MATCH, f"No catalog match for {term!r}")
        return _track_result(item)

    async def resolve(self, query: str) -> Result:
        if is_valid_url(query):
            storefront, song_id = parse_apple_music_url(query)
            if not storefront or not song_id:
                return Result.fail(FailureKind.INVALID_LOCATOR, f"Invalid Apple Music URL: {query}")
            return await self.lookup_song(storefront, song_id)
        return await self.search_song(query)

    async def enqueue(self, track: Track) -> Result:
        try:
            await self.play_later(track.id, track.type)
        except (CiderError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            return Result.fail(FailureKind.ENQUEUE_FAILED, _error_detail(exc))
        logger.debug('Queued %s %s via play-later', track.type, track.id)
        return Result.success(track)
