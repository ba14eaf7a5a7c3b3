from __future__ import annotations
import os, sys, asyncio, logging
from typing import Optional, Dict, List, Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml
from dotenv import load_dotenv
from twitchio import eventsub
from twitchio.ext import commands

from .cider import CiderClient, CiderSettings, FailureKind, Result

logger = logging.getLogger(__name__)

# ---- Env ----
REQUIRED_ENV = (
    'TWITCH_USERNAME',
    'TWITCH_OAUTH',
    'TWITCH_REFRESH_TOKEN',
    'TWITCH_CLIENT_ID',
    'TWITCH_CLIENT_SECRET',
    'TWITCH_BOT_ID',
    'TWITCH_CHANNEL',
    'CIDER_API',
    'CIDER_API_TOKEN',
)
DEFAULT_COMMANDS_PATH = 'commands.yml'
DEFAULT_MESSAGES_PATH = 'messages.yml'
DEFAULT_TIMEOUT = 10.0

DEFAULT_COMMANDS = {
    'prefix': '!',
    'request': ['sr'],
}

DEFAULT_MESSAGES = {
    'request_added': '@{user} Added "{title}" by {artist}! 🎶',
    'song_not_found': '@{user} Song not found!',
    'failed': '@{user} Sorry, something went wrong trying to add your song.',
}


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class BotSettings:
    login: str
    token: str
    refresh_token: str
    client_id: str
    client_secret: str
    bot_user_id: str
    channel: str
    cider: CiderSettings
    commands_path: Path = Path(DEFAULT_COMMANDS_PATH)
    messages_path: Path = Path(DEFAULT_MESSAGES_PATH)


@dataclass(frozen=True)
class ChatRequest:
    channel: str
    requester: str
    query: str
    broadcaster: object
    message_id: Optional[str] = None


def _format_token(token: str) -> str:
    return token.removeprefix('oauth:') if token else token


def load_settings(env: Optional[Mapping[str, str]] = None) -> BotSettings:
    """Build the bot configuration from environment variables.

    Raises ConfigError naming every missing required variable, or when
    ``CIDER_TIMEOUT`` is not a positive number.
    """
    env = os.environ if env is None else env
    values = {name: (env.get(name) or '').strip() for name in REQUIRED_ENV}
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise ConfigError('Missing required env vars: ' + ', '.join(missing))

    raw_timeout = (env.get('CIDER_TIMEOUT') or '').strip()
    try:
        timeout = float(raw_timeout) if raw_timeout else DEFAULT_TIMEOUT
    except ValueError:
        raise ConfigError(f'CIDER_TIMEOUT must be a number, got {raw_timeout!r}') from None
    if timeout <= 0:
        raise ConfigError('CIDER_TIMEOUT must be positive')

    return BotSettings(
        login=values['TWITCH_USERNAME'],
        token=_format_token(values['TWITCH_OAUTH']),
        refresh_token=values['TWITCH_REFRESH_TOKEN'],
        client_id=values['TWITCH_CLIENT_ID'],
        client_secret=values['TWITCH_CLIENT_SECRET'],
        bot_user_id=values['TWITCH_BOT_ID'],
        channel=values['TWITCH_CHANNEL'].lstrip('#').lower(),
        cider=CiderSettings(
            base_url=values['CIDER_API'].rstrip('/'),
            token=values['CIDER_API_TOKEN'],
            timeout=timeout,
        ),
        commands_path=Path(env.get('BOT_COMMANDS_PATH') or DEFAULT_COMMANDS_PATH),
        messages_path=Path(env.get('BOT_MESSAGES_PATH') or DEFAULT_MESSAGES_PATH),
    )


def load_commands(path: Path) -> Dict[str, List[str]]:
    cfg = DEFAULT_COMMANDS.copy()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
            cfg.update(data)
    except FileNotFoundError:
        pass
    return {k: v if isinstance(v, list) else [v] for k, v in cfg.items()}


def load_messages(path: Path) -> Dict[str, str]:
    cfg: Dict[str, str] = DEFAULT_MESSAGES.copy()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
            cfg.update(data)
    except FileNotFoundError:
        pass
    return cfg


# ---- bot ----
class SongRequestBot(commands.Bot):
    def __init__(self, settings: BotSettings, *, cider: Optional[CiderClient] = None):
        self.commands_map = load_commands(settings.commands_path)
        self.messages = load_messages(settings.messages_path)
        prefix = self.commands_map['prefix'][0]
        super().__init__(
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            bot_id=str(settings.bot_user_id),
            prefix=prefix,
            fetch_client_user=False,
        )
        self.bot_settings = settings
        self.bot_user_id = str(settings.bot_user_id)
        self.cider = cider or CiderClient(settings.cider)
        self._user_token = settings.token
        self._refresh_token = settings.refresh_token

    @property
    def request_triggers(self) -> List[str]:
        prefix = self.commands_map['prefix'][0]
        return [f"{prefix}{alias} " for alias in self.commands_map['request']]

    async def load_tokens(self, path: Optional[str] = None) -> None:
        await super().add_token(self._user_token, self._refresh_token)

    async def save_tokens(self, path: Optional[str] = None) -> None:
        # Tokens come from the environment, so skip file writes.
        return None

    async def event_ready(self) -> None:
        logger.info('Connected as %s', self.bot_settings.login)
        try:
            await self.join_channel(self.bot_settings.channel)
        except Exception:
            logger.exception('Failed to join channel %s', self.bot_settings.channel)

    async def join_channel(self, channel: str) -> None:
        users = await self.fetch_users(logins=[channel])
        if not users:
            raise RuntimeError(f'Channel {channel} not found on Twitch')
        payload = eventsub.ChatMessageSubscription(
            broadcaster_user_id=str(users[0].id),
            user_id=self.bot_user_id,
        )
        await self.subscribe_websocket(payload=payload, as_bot=True)
        logger.info('Listening for song requests in %s', channel)

    async def shutdown(self) -> None:
        await self.cider.close()
        await super().close()

    def parse_request(self, message) -> Optional[ChatRequest]:
        if getattr(message.chatter, 'id', None) == self.bot_user_id:
            return None
        content = message.text or ''
        for trigger in self.request_triggers:
            if content.startswith(trigger):
                return ChatRequest(
                    channel=message.broadcaster.name,
                    requester=message.chatter.name,
                    query=content[len(trigger):].strip(),
                    broadcaster=message.broadcaster,
                    message_id=getattr(message, 'id', None),
                )
        return None

    async def event_message(self, message) -> None:
        request = self.parse_request(message)
        if request is None:
            return
        await self.handle_request(request)

    async def handle_request(self, request: ChatRequest) -> None:
        user = request.requester
        if not request.query:
            await self._send_message(request, self._render('song_not_found', user=user))
            return
        try:
            result = await self.cider.resolve(request.query)
            if result.ok:
                result = await self.cider.enqueue(result.track)
        except Exception:
            logger.exception('Error handling song request from %s in %s', user, request.channel)
            await self._send_message(request, self._render('failed', user=user))
            return
        await self._report(request, result)

    async def _report(self, request: ChatRequest, result: Result) -> None:
        user = request.requester
        if result.ok:
            track = result.track
            logger.info(
                'Queued "%s" by %s (%s %s) for %s in %s',
                track.title, track.artist, track.type, track.id, user, request.channel,
            )
            text = self._render('request_added', user=user, title=track.title, artist=track.artist)
        elif result.failure.kind is FailureKind.NO_MATCH:
            logger.info('No match for %r requested by %s', request.query, user)
            text = self._render('song_not_found', user=user)
        else:
            logger.error(
                'Error handling song request from %s (%s): %s',
                user, result.failure.kind.value, result.failure.detail,
            )
            text = self._render('failed', user=user)
        await self._send_message(request, text)

    def _render(self, key: str, **values: str) -> str:
        template = self.messages.get(key) or DEFAULT_MESSAGES[key]
        try:
            return template.format(**values)
        except (KeyError, IndexError, ValueError, AttributeError):
            logger.warning('Message template %s is invalid; using default', key)
            return DEFAULT_MESSAGES[key].format(**values)

    async def _send_message(self, request: ChatRequest, text: str) -> None:
        try:
            await request.broadcaster.send_message(
                text,
                sender=self.bot_user_id,
                token_for=self.bot_user_id,
                reply_to_message_id=request.message_id,
            )
        except Exception as exc:
            logger.error('Failed to send message to %s: %s', request.channel, exc)


# ---- entry ----
def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )


async def main(settings: BotSettings) -> None:
    bot = SongRequestBot(settings)
    try:
        await bot.start(with_adapter=False)
    finally:
        await bot.shutdown()


def run() -> None:
    load_dotenv()
    setup_logging(os.getenv('LOG_LEVEL', 'INFO'))
    try:
        settings = load_settings()
    except ConfigError as exc:
        logger.error('%s', exc)
        sys.exit(1)
    try:
        asyncio.run(main(settings))
    except KeyboardInterrupt:
        logger.info('Shutting down')


if __name__ == '__main__':
    run()
