#!/usr/bin/env python3
"""
## License

This project is licensed under the 3-clause BSD license. See the LICENSE file for details.

gbbsd.py - A small multi-transport Bulletin Board System daemon.


The same registration, login, message board and IRC relay functionality is
served over three transports at once: a plain line-oriented TCP (telnet)
listener, an SSH listener built on AsyncSSH, and an HTTP/JSON API. All of
them share one SQLite user database, one append-only guestbook file and one
optional bridge to an IRC network.

## Quick start for new SysOps

1. **Run the server:** Execute this script with `python3 gbbsd.py`. On first
   run it creates `gbbsd.ini` in the current directory. Users are stored in
   `bbs.db` and posted messages in `guestbook.txt`.

2. **Edit the configuration:** Open `gbbsd.ini` in a text editor. Ports for
   each transport live in the `[telnet]`, `[ssh]` and `[web]` sections. Put
   your login banner (plain text or ANSI art) in the file named by
   `welcome_screen` in `[general]`.

3. **SSH:** An RSA host key is generated on first start and saved to the
   path in `[ssh] host_key`. Clients do not authenticate at the SSH layer;
   they log in through the BBS menu like telnet users do.

4. **IRC relay:** Set `enabled = true` in `[relay]`, fill in `server`,
   `port`, `nick` and `channels` (comma separated, `#name` or `#name key`).
   Channel traffic is logged to one file per day under `log_dir` and users
   can chat from the BBS menu. If the IRC server cannot be reached at
   startup the BBS keeps running without the relay.

5. **Web API:** `POST /api/login`, `POST /api/register`, `GET /api/messages`
   and `POST /api/messages` accept and return JSON. Any other GET request is
   served from the `[web] root` directory.

By default the server listens for telnet on port 2323, SSH on 2222 and HTTP
on 8080.
"""

import argparse
import asyncio
import configparser
import http.server
import json
import logging
import os
import re
import signal
import sqlite3
import ssl
import sys
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple, Union
from urllib.parse import urlsplit

import asyncssh
import bcrypt

# ---------------------------------------------------------------------------
# Version information
# ---------------------------------------------------------------------------

__version__ = "0.1.0"

logger = logging.getLogger('gbbsd')


###############################################################################
# Constants
###############################################################################

# Path to the configuration file. Written with defaults on first run.
CONFIG_PATH = os.environ.get('GBBS_CONFIG', 'gbbsd.ini')

# Username and message limits shared by every transport
USERNAME_MIN = 3
USERNAME_MAX = 20
PASSWORD_MIN = 8
# bcrypt only looks at the first 72 bytes of its input; longer passwords
# are rejected rather than silently truncated.
PASSWORD_MAX_BYTES = 72
MAX_MESSAGE_LENGTH = 500
BCRYPT_ROUNDS = 12

# Number of relay log lines replayed when a user enters the IRC bridge
RELAY_HISTORY = 50

TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'

ANSI_RESET = '\x1b[0m'
ANSI_BOLD_GREEN = '\x1b[1;32m'
ANSI_RED = '\x1b[0;31m'
ANSI_GREEN = '\x1b[0;32m'
ANSI_YELLOW = '\x1b[0;33m'
ANSI_CYAN = '\x1b[0;36m'

# Telnet protocol bytes (RFC 854 / RFC 857)
IAC = 0xFF
DONT = 0xFE
DO = 0xFD
WONT = 0xFC
WILL = 0xFB
SB = 0xFA
SE = 0xF0
TELOPT_ECHO = 0x01

# Line breaks are collapsed inside message bodies so one post is one line
LINEBREAK_RE = re.compile(r'[\r\n]+')


###############################################################################
# Errors
###############################################################################

class BBSError(Exception):
    """Base class for all errors raised by the BBS."""


class ValidationError(BBSError):
    """User supplied data was rejected before anything was stored."""


class InvalidUsername(ValidationError):
    pass


class InvalidPassword(ValidationError):
    pass


class EmptyMessage(ValidationError):
    pass


class MessageTooLong(ValidationError):
    pass


class UserExists(BBSError):
    pass


class StoreError(BBSError):
    """The backing database or file could not be read or written."""


class RelayError(BBSError):
    """The IRC relay is unreachable or refused an operation."""


class SessionClosed(Exception):
    """Raised inside a session when the client is gone or timed out."""


###############################################################################
# Configuration file handling
###############################################################################

def load_config(path: str) -> configparser.ConfigParser:
    """Load the configuration from the given INI file.

    If the file does not exist, a default configuration is written to it so
    the SysOp has something to edit.
    """
    cfg = configparser.ConfigParser()
    if os.path.exists(path):
        cfg.read(path)
        return cfg
    cfg['general'] = {
        # Address all listeners bind to
        'host': '0.0.0.0',
        # Banner shown to telnet and SSH users before the login prompt
        'welcome_screen': 'welcome.ans',
        # Seconds without input before a session is disconnected (0 = never)
        'idle_timeout': '600',
    }
    cfg['telnet'] = {
        'enabled': 'true',
        'port': '2323',
        # Ask telnet clients to stop echoing while a password is typed.
        # Leave off for raw TCP clients such as netcat.
        'negotiate_echo': 'false',
    }
    cfg['ssh'] = {
        'enabled': 'true',
        'port': '2222',
        # Generated on first start if missing
        'host_key': 'ssh_host_key',
    }
    cfg['web'] = {
        'enabled': 'true',
        'port': '8080',
        # Static files served for GET requests outside /api/
        'root': 'web',
    }
    cfg['storage'] = {
        'database': 'bbs.db',
        'guestbook': 'guestbook.txt',
    }
    cfg['security'] = {
        # bcrypt cost factor; each step doubles the hashing time
        'bcrypt_rounds': str(BCRYPT_ROUNDS),
    }
    cfg['relay'] = {
        'enabled': 'false',
        'server': 'irc.libera.chat',
        'port': '6667',
        'use_ssl': 'false',
        'ssl_verify': 'true',
        'nick': 'gbbs',
        # Comma separated; a channel key follows the name after a space
        'channels': '#gbbs',
        'log_dir': 'logs',
        'queue_size': '1000',
        # Events buffered per chatting user before the oldest are skipped
        'subscriber_queue_size': '500',
        'connect_timeout': '30',
        'rejoin_delay': '3',
        'reconnect_delay': '30',
    }
    # Level can be debug, info, warning or error. Without a file, logs go
    # to stderr.
    cfg['logging'] = {
        'level': 'info',
        'file': '',
    }
    try:
        with open(path, 'w') as f:
            cfg.write(f)
    except OSError as e:
        logger.warning(f'Could not write default configuration to {path}: {e}')
    return cfg


def _get_int(cfg: configparser.ConfigParser, section: str, option: str, default: int) -> int:
    try:
        return cfg.getint(section, option, fallback=default)
    except ValueError:
        logger.warning(f'Invalid integer for [{section}] {option}; using {default}')
        return default


def _get_float(cfg: configparser.ConfigParser, section: str, option: str, default: float) -> float:
    try:
        return cfg.getfloat(section, option, fallback=default)
    except ValueError:
        logger.warning(f'Invalid number for [{section}] {option}; using {default}')
        return default


def _get_bool(cfg: configparser.ConfigParser, section: str, option: str, default: bool) -> bool:
    try:
        return cfg.getboolean(section, option, fallback=default)
    except ValueError:
        logger.warning(f'Invalid boolean for [{section}] {option}; using {default}')
        return default


def _resolve(base_dir: str, path: str) -> str:
    if not path or os.path.isabs(path) or not base_dir:
        return path
    return os.path.join(base_dir, path)


@dataclass
class RelayChannel:
    name: str
    password: str = ''


def parse_channels(value: str) -> List[RelayChannel]:
    """Parse ``#one, #two key`` into channel entries."""
    channels: List[RelayChannel] = []
    for entry in value.split(','):
        parts = entry.split()
        if not parts:
            continue
        password = parts[1] if len(parts) > 1 else ''
        channels.append(RelayChannel(name=parts[0], password=password))
    return channels


@dataclass
class RelayConfig:
    enabled: bool = False
    server: str = ''
    port: int = 6667
    use_ssl: bool = False
    ssl_verify: bool = True
    nick: str = 'gbbs'
    channels: List[RelayChannel] = field(default_factory=list)
    log_dir: str = 'logs'
    queue_size: int = 1000
    subscriber_queue_size: int = 500
    connect_timeout: float = 30.0
    rejoin_delay: float = 3.0
    reconnect_delay: float = 30.0


@dataclass
class Settings:
    """Typed view of the INI configuration."""

    host: str = '0.0.0.0'
    welcome_screen: str = 'welcome.ans'
    idle_timeout: int = 600
    telnet_enabled: bool = True
    telnet_port: int = 2323
    negotiate_echo: bool = False
    ssh_enabled: bool = True
    ssh_port: int = 2222
    ssh_host_key: str = 'ssh_host_key'
    web_enabled: bool = True
    web_port: int = 8080
    web_root: str = 'web'
    database: str = 'bbs.db'
    guestbook: str = 'guestbook.txt'
    bcrypt_rounds: int = BCRYPT_ROUNDS
    log_level: str = 'info'
    log_file: str = ''
    relay: RelayConfig = field(default_factory=RelayConfig)

    @classmethod
    def from_config(cls, cfg: configparser.ConfigParser, base_dir: str = '') -> 'Settings':
        """Build settings from a parsed INI file.

        Relative file paths are taken relative to ``base_dir``, normally the
        directory holding the configuration file.
        """
        d = cls()
        relay = RelayConfig(
            enabled=_get_bool(cfg, 'relay', 'enabled', False),
            server=cfg.get('relay', 'server', fallback=''),
            port=_get_int(cfg, 'relay', 'port', 6667),
            use_ssl=_get_bool(cfg, 'relay', 'use_ssl', False),
            ssl_verify=_get_bool(cfg, 'relay', 'ssl_verify', True),
            nick=cfg.get('relay', 'nick', fallback='gbbs'),
            channels=parse_channels(cfg.get('relay', 'channels', fallback='')),
            log_dir=_resolve(base_dir, cfg.get('relay', 'log_dir', fallback='logs')),
            queue_size=_get_int(cfg, 'relay', 'queue_size', 1000),
            subscriber_queue_size=_get_int(cfg, 'relay', 'subscriber_queue_size', 500),
            connect_timeout=_get_float(cfg, 'relay', 'connect_timeout', 30.0),
            rejoin_delay=_get_float(cfg, 'relay', 'rejoin_delay', 3.0),
            reconnect_delay=_get_float(cfg, 'relay', 'reconnect_delay', 30.0),
        )
        return cls(
            host=cfg.get('general', 'host', fallback=d.host),
            welcome_screen=_resolve(base_dir, cfg.get('general', 'welcome_screen', fallback=d.welcome_screen)),
            idle_timeout=_get_int(cfg, 'general', 'idle_timeout', d.idle_timeout),
            telnet_enabled=_get_bool(cfg, 'telnet', 'enabled', d.telnet_enabled),
            telnet_port=_get_int(cfg, 'telnet', 'port', d.telnet_port),
            negotiate_echo=_get_bool(cfg, 'telnet', 'negotiate_echo', d.negotiate_echo),
            ssh_enabled=_get_bool(cfg, 'ssh', 'enabled', d.ssh_enabled),
            ssh_port=_get_int(cfg, 'ssh', 'port', d.ssh_port),
            ssh_host_key=_resolve(base_dir, cfg.get('ssh', 'host_key', fallback=d.ssh_host_key)),
            web_enabled=_get_bool(cfg, 'web', 'enabled', d.web_enabled),
            web_port=_get_int(cfg, 'web', 'port', d.web_port),
            web_root=_resolve(base_dir, cfg.get('web', 'root', fallback=d.web_root)),
            database=_resolve(base_dir, cfg.get('storage', 'database', fallback=d.database)),
            guestbook=_resolve(base_dir, cfg.get('storage', 'guestbook', fallback=d.guestbook)),
            bcrypt_rounds=_get_int(cfg, 'security', 'bcrypt_rounds', d.bcrypt_rounds),
            log_level=cfg.get('logging', 'level', fallback=d.log_level),
            log_file=_resolve(base_dir, cfg.get('logging', 'file', fallback=d.log_file)),
            relay=relay,
        )


def configure_logging(settings: Settings, debug: bool = False) -> None:
    """Configure the root logger from the [logging] section."""
    level_map = {
        'debug': logging.DEBUG,
        'info': logging.INFO,
        'warning': logging.WARNING,
        'error': logging.ERROR,
    }
    log_level = logging.DEBUG if debug else level_map.get(settings.log_level.lower(), logging.INFO)
    log_format = '%(asctime)s [%(levelname)s] %(message)s'
    if settings.log_file:
        logging.basicConfig(level=log_level, format=log_format, filename=settings.log_file)
    else:
        logging.basicConfig(level=log_level, format=log_format)


###############################################################################
# Utility functions
###############################################################################

def clean_telnet_input(raw: bytes) -> str:
    """Strip telnet command sequences from a line of client input.

    Option negotiation (IAC WILL/WONT/DO/DONT <opt>), subnegotiation blocks
    and two byte commands are dropped, an escaped IAC IAC becomes a single
    0xFF data byte and NUL padding after CR is removed. The remaining bytes
    are decoded as UTF-8 with invalid sequences replaced.
    """
    out = bytearray()
    i = 0
    length = len(raw)
    while i < length:
        byte = raw[i]
        if byte == IAC:
            if i + 1 >= length:
                break
            cmd = raw[i + 1]
            if cmd == IAC:
                out.append(IAC)
                i += 2
            elif cmd in (WILL, WONT, DO, DONT):
                i += 3
            elif cmd == SB:
                end = raw.find(bytes((IAC, SE)), i + 2)
                if end == -1:
                    break
                i = end + 2
            else:
                i += 2
            continue
        if byte != 0:
            out.append(byte)
        i += 1
    return out.decode('utf-8', 'replace')


def read_welcome_screen(path: Optional[str]) -> str:
    """Return the login banner, or a plain fallback if it cannot be read."""
    if not path:
        return 'Welcome to GBBS!\n\n'
    try:
        with open(path, 'r', encoding='utf-8', errors='replace') as f:
            return f.read()
    except FileNotFoundError:
        return f'Welcome to GBBS!\n\nWelcome screen file not found: {path}\n'
    except OSError as e:
        logger.error(f'Error reading welcome screen {path}: {e}')
        return 'Welcome to GBBS!\n\n'


class ReadWriteLock:
    """Lock allowing many concurrent readers or one exclusive writer.

    Waiting writers block new readers so a steady stream of reads cannot
    starve an append.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


###############################################################################
# Password hashing helpers
###############################################################################

def hash_password(password: str, rounds: int = BCRYPT_ROUNDS) -> str:
    """Hash a password with bcrypt at the given cost factor."""
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds)).decode('utf-8')


def verify_password(password: str, hashed: str) -> bool:
    """Verify a password against a stored hash."""
    try:
        return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))
    except ValueError:
        # Malformed stored hash, or a password bcrypt refuses to process
        return False


def valid_username(name: str) -> bool:
    return USERNAME_MIN <= len(name) <= USERNAME_MAX and name.isprintable()


def valid_password(password: str) -> bool:
    return len(password) >= PASSWORD_MIN and len(password.encode('utf-8')) <= PASSWORD_MAX_BYTES


###############################################################################
# Credential store
###############################################################################

class CredentialStore:
    """SQLite backed user registry.

    Every method is safe to call from any thread. Reads share the lock,
    inserts take it exclusively, and the UNIQUE constraint on ``username``
    decides registration races.
    """

    def __init__(self, db_path: str, rounds: int = BCRYPT_ROUNDS) -> None:
        self.db_path = db_path
        self.rounds = rounds
        self._lock = ReadWriteLock()
        self._dummy_hash: Optional[str] = None
        try:
            self.conn = sqlite3.connect(db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.init_schema()
        except sqlite3.Error as e:
            raise StoreError(f'cannot open user database {db_path}: {e}') from e

    def init_schema(self) -> None:
        with self._lock.write(), self.conn:
            self.conn.execute('''
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT UNIQUE NOT NULL,
                    password TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            ''')

    def close(self) -> None:
        with self._lock.write():
            self.conn.close()

    def get_user(self, username: str) -> Optional[sqlite3.Row]:
        try:
            with self._lock.read():
                cur = self.conn.cursor()
                cur.execute('SELECT * FROM users WHERE username = ?', (username,))
                return cur.fetchone()
        except sqlite3.Error as e:
            logger.error(f'User lookup failed: {e}')
            raise StoreError('user database unavailable') from e

    def create_user(self, username: str, password: str) -> None:
        """Validate and store a new account.

        Raises InvalidUsername, InvalidPassword, UserExists or StoreError.
        """
        if not valid_username(username):
            raise InvalidUsername(f'username must be {USERNAME_MIN}-{USERNAME_MAX} characters')
        if not valid_password(password):
            raise InvalidPassword(
                f'password must be at least {PASSWORD_MIN} characters '
                f'and at most {PASSWORD_MAX_BYTES} bytes')
        # Hash outside the lock; it is the slow part
        hashed = hash_password(password, self.rounds)
        now = datetime.now(timezone.utc).isoformat()
        try:
            with self._lock.write(), self.conn:
                self.conn.execute(
                    'INSERT INTO users (username, password, created_at) VALUES (?, ?, ?)',
                    (username, hashed, now),
                )
        except sqlite3.IntegrityError:
            raise UserExists('user already exists') from None
        except sqlite3.Error as e:
            logger.error(f'Failed to create user {username!r}: {e}')
            raise StoreError('user database unavailable') from e
        logger.info(f'Registered new user {username!r}')

    def authenticate(self, username: str, password: str) -> bool:
        """Return True if the credentials match a stored account.

        Unknown users return False after a dummy hash check so the response
        time does not reveal whether the account exists.
        """
        row = self.get_user(username)
        if row is None:
            if self._dummy_hash is None:
                self._dummy_hash = hash_password('gbbs-no-such-user', self.rounds)
            verify_password(password, self._dummy_hash)
            return False
        return verify_password(password, row['password'])


###############################################################################
# Message board
###############################################################################

class MessageBoard:
    """Append-only guestbook stored as one line per message."""

    def __init__(self, path: str) -> None:
        self.path = Path(path)
        self._lock = ReadWriteLock()
        try:
            if self.path.parent != Path('.'):
                self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.touch(exist_ok=True)
        except OSError as e:
            raise StoreError(f'cannot open message board {path}: {e}') from e

    def post_message(self, author: str, body: str, now: Optional[datetime] = None) -> str:
        """Append a message and return the stored line (without newline).

        The author must be a valid username, so it can never carry a line
        break into the file.
        """
        if not valid_username(author):
            raise InvalidUsername('invalid author name')
        text = LINEBREAK_RE.sub(' ', body)
        if not text.strip():
            raise EmptyMessage('message cannot be empty')
        if len(text) > MAX_MESSAGE_LENGTH:
            raise MessageTooLong(f'message too long (max {MAX_MESSAGE_LENGTH} characters)')
        stamp = (now or datetime.now()).strftime(TIMESTAMP_FORMAT)
        line = f'[{stamp}] {author}: {text}'
        try:
            with self._lock.write():
                with open(self.path, 'a', encoding='utf-8') as f:
                    f.write(line + '\n')
        except OSError as e:
            logger.error(f'Failed to append to message board {self.path}: {e}')
            raise StoreError('message board unavailable') from e
        return line

    def get_messages(self) -> Tuple[str, ...]:
        """Return every stored line, oldest first."""
        try:
            with self._lock.read():
                content = self.path.read_text(encoding='utf-8', errors='replace')
        except OSError as e:
            logger.error(f'Failed to read message board {self.path}: {e}')
            raise StoreError('message board unavailable') from e
        return tuple(content.splitlines())


###############################################################################
# IRC relay
###############################################################################

@dataclass(frozen=True)
class RelayEvent:
    timestamp: datetime
    channel: str
    nick: str
    body: str

    def format_line(self) -> str:
        return f'{self.timestamp.strftime(TIMESTAMP_FORMAT)} <{self.channel}> {self.nick}: {self.body}'


@dataclass
class IRCMessage:
    prefix: str
    command: str
    params: List[str]

    @property
    def nick(self) -> str:
        return self.prefix.split('!', 1)[0]


def sanitize_message(raw: Union[bytes, str]) -> str:
    """Return valid text, replacing undecodable data with U+FFFD."""
    if isinstance(raw, bytes):
        return raw.decode('utf-8', 'replace')
    # Lone surrogates cannot be encoded; round trip them into U+FFFD
    return raw.encode('utf-8', 'surrogatepass').decode('utf-8', 'replace')


def parse_irc_line(line: str) -> Optional[IRCMessage]:
    """Split a raw IRC protocol line into prefix, command and parameters."""
    line = line.rstrip('\r\n')
    if line.startswith('@'):
        # IRCv3 message tags are not used
        _, _, line = line.partition(' ')
    prefix = ''
    if line.startswith(':'):
        prefix, _, line = line[1:].partition(' ')
    trailing = None
    if line.startswith(':'):
        line, trailing = '', line[1:]
    elif ' :' in line:
        line, trailing = line.split(' :', 1)
    parts = line.split()
    if not parts:
        return None
    params = parts[1:]
    if trailing is not None:
        params.append(trailing)
    return IRCMessage(prefix=prefix, command=parts[0].upper(), params=params)


def _put_shedding(queue: asyncio.Queue, item: Any) -> Any:
    """Put without blocking; if the queue is full, discard and return the oldest item."""
    dropped = None
    if queue.full():
        try:
            dropped = queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
    queue.put_nowait(item)
    return dropped


class RelayLog:
    """Relay events written to one append-only file per calendar day."""

    def __init__(self, log_dir: str) -> None:
        self.log_dir = Path(log_dir)
        self._lock = threading.Lock()
        self._file = None
        self._date: Optional[date] = None

    def segment_path(self, day: date) -> Path:
        return self.log_dir / f'irc_{day.isoformat()}.txt'

    def append(self, event: RelayEvent) -> None:
        day = event.timestamp.date()
        with self._lock:
            if self._file is not None and day != self._date:
                # Day changed: finish the old segment before opening the next
                self._file.close()
                self._file = None
            if self._file is None:
                self.log_dir.mkdir(parents=True, exist_ok=True)
                self._file = open(self.segment_path(day), 'a', encoding='utf-8')
                self._date = day
            self._file.write(event.format_line() + '\n')
            self._file.flush()

    def recent(self, count: int, day: Optional[date] = None) -> List[str]:
        """Return the last ``count`` lines of the segment for ``day`` (today by default)."""
        path = self.segment_path(day or date.today())
        with self._lock:
            try:
                lines = path.read_text(encoding='utf-8', errors='replace').splitlines()
            except FileNotFoundError:
                return []
        if count <= 0:
            return []
        return lines[-count:]

    def close(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None


class RelayBridge:
    """Single process-wide connection to an IRC network.

    Inbound channel messages become RelayEvents. Each event goes onto a
    bounded queue drained by the logging worker and onto the queue of
    every session currently in relay mode. Full queues shed their oldest
    entry instead of blocking the network read loop.
    """

    def __init__(self, config: RelayConfig, relay_log: Optional[RelayLog] = None) -> None:
        self.config = config
        self.log = relay_log or RelayLog(config.log_dir)
        self.nick = config.nick
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=config.queue_size)
        self.dropped = 0
        self.connected = False
        self.closed = False
        # Subscriber queue -> events shed since the session last looked
        self._subscribers: Dict[asyncio.Queue, int] = {}
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._send_lock = asyncio.Lock()
        self._run_task: Optional[asyncio.Task] = None
        self._log_task: Optional[asyncio.Task] = None
        self._rejoin_tasks: Set[asyncio.Task] = set()

    @property
    def channels(self) -> List[str]:
        return [c.name for c in self.config.channels]

    # -- lifecycle --------------------------------------------------------

    async def connect(self) -> None:
        """Connect, register and join every configured channel.

        Returns once the server has accepted the registration and the joins
        have been sent. Raises RelayError if that does not happen within
        ``connect_timeout``.
        """
        await self._open_session()
        self._log_task = asyncio.create_task(self._log_worker())
        self._run_task = asyncio.create_task(self._run())

    async def close(self) -> None:
        """Quit IRC, stop accepting events and flush the log."""
        if self.closed:
            return
        self.closed = True
        self.connected = False
        for task in list(self._rejoin_tasks):
            task.cancel()
        if self._writer is not None:
            try:
                await self._send_raw('QUIT :BBS shutting down')
            except (ConnectionError, OSError) as e:
                logger.debug(f'IRC QUIT not delivered: {e}')
        self._drop_connection()
        if self._run_task is not None:
            self._run_task.cancel()
            await asyncio.gather(self._run_task, return_exceptions=True)
        if self._log_task is not None:
            # The worker drains what is queued, then stops at the sentinel
            await self.queue.put(None)
            await self._log_task
        self.log.close()
        for sub in list(self._subscribers):
            _put_shedding(sub, None)
        logger.info('IRC bridge closed')

    async def _open_session(self) -> None:
        ssl_ctx = None
        if self.config.use_ssl:
            ssl_ctx = ssl.create_default_context()
            if not self.config.ssl_verify:
                ssl_ctx.check_hostname = False
                ssl_ctx.verify_mode = ssl.CERT_NONE
        address = f'{self.config.server}:{self.config.port}'
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.config.server, self.config.port, ssl=ssl_ctx),
                timeout=self.config.connect_timeout)
        except (OSError, asyncio.TimeoutError) as e:
            raise RelayError(f'cannot connect to {address}: {str(e) or "timed out"}') from e
        self.nick = self.config.nick
        try:
            await self._send_raw(f'NICK {self.nick}')
            await self._send_raw(f'USER {self.nick} 0 * :{self.nick}')
            await asyncio.wait_for(self._await_welcome(), timeout=self.config.connect_timeout)
            self.connected = True
            for channel in self.config.channels:
                await self._join(channel.name)
        except asyncio.TimeoutError:
            self._drop_connection()
            raise RelayError(f'timed out registering with {address}') from None
        except (ConnectionError, OSError) as e:
            self._drop_connection()
            raise RelayError(f'connection to {address} failed: {e}') from e
        except RelayError:
            self._drop_connection()
            raise
        logger.info(f'Connected to IRC server {address} as {self.nick}')

    async def _await_welcome(self) -> None:
        """Read until RPL_WELCOME, handling PING and nickname collisions."""
        while True:
            data = await self._reader.readline()
            if not data:
                raise RelayError('server closed the connection during registration')
            msg = parse_irc_line(sanitize_message(data))
            if msg is None:
                continue
            if msg.command == '001':
                return
            if msg.command == 'PING':
                await self._send_raw(f'PONG :{msg.params[-1] if msg.params else ""}')
            elif msg.command in ('432', '433', '436'):
                self.nick += '_'
                logger.warning(f'IRC nickname in use, retrying as {self.nick}')
                await self._send_raw(f'NICK {self.nick}')
            elif msg.command == 'ERROR':
                raise RelayError(' '.join(msg.params) or 'server refused registration')

    def _drop_connection(self) -> None:
        self.connected = False
        if self._writer is not None:
            self._writer.close()
        self._reader = None
        self._writer = None

    async def _run(self) -> None:
        """Read loop; reconnects after the server drops us."""
        while not self.closed:
            try:
                await self._read_loop()
            except (ConnectionError, OSError) as e:
                logger.warning(f'IRC connection error: {e}')
            self._drop_connection()
            if self.closed:
                return
            logger.warning(f'Lost connection to IRC server, reconnecting in {self.config.reconnect_delay} seconds')
            while not self.closed:
                await asyncio.sleep(self.config.reconnect_delay)
                try:
                    await self._open_session()
                    break
                except RelayError as e:
                    logger.error(f'IRC reconnect failed: {e}')

    async def _read_loop(self) -> None:
        while True:
            try:
                data = await self._reader.readline()
            except ValueError:
                logger.warning('Discarding overlong line from IRC server')
                continue
            if not data:
                return
            msg = parse_irc_line(sanitize_message(data))
            if msg is not None:
                await self._dispatch(msg)

    async def _dispatch(self, msg: IRCMessage) -> None:
        if msg.command == 'PING':
            await self._send_raw(f'PONG :{msg.params[-1] if msg.params else ""}')
        elif msg.command == 'PRIVMSG' and len(msg.params) >= 2:
            self.publish(RelayEvent(datetime.now(), msg.params[0], msg.nick, msg.params[1]))
        elif msg.command == 'JOIN' and msg.params:
            if msg.nick == self.nick:
                logger.info(f'Joined channel: {msg.params[0]}')
        elif msg.command == 'KICK' and len(msg.params) >= 2:
            channel, kicked = msg.params[0], msg.params[1]
            if kicked.lower() == self.nick.lower():
                logger.warning(f'Kicked from {channel}, attempting to rejoin in {self.config.rejoin_delay} seconds')
                task = asyncio.create_task(self._rejoin(channel))
                self._rejoin_tasks.add(task)
                task.add_done_callback(self._rejoin_tasks.discard)
        elif msg.command == 'NICK' and msg.params and msg.nick == self.nick:
            self.nick = msg.params[0]
        elif msg.command == 'ERROR':
            logger.error(f'IRC server error: {" ".join(msg.params)}')

    async def _rejoin(self, channel: str) -> None:
        # No retry cap: every kick schedules exactly one more attempt
        await asyncio.sleep(self.config.rejoin_delay)
        if not self.connected:
            return
        try:
            await self._join(channel)
        except (ConnectionError, OSError) as e:
            logger.error(f'Rejoin of {channel} failed: {e}')

    async def _join(self, name: str) -> None:
        password = ''
        for channel in self.config.channels:
            if channel.name.lower() == name.lower():
                password = channel.password
        await self._send_raw(f'JOIN {name} {password}' if password else f'JOIN {name}')

    async def _send_raw(self, line: str) -> None:
        if self._writer is None:
            raise ConnectionError('not connected')
        data = LINEBREAK_RE.sub(' ', line).encode('utf-8') + b'\r\n'
        async with self._send_lock:
            self._writer.write(data)
            await self._writer.drain()

    # -- inbound ----------------------------------------------------------

    def publish(self, event: RelayEvent) -> None:
        """Queue an event for logging and for every subscribed session."""
        if self.closed:
            return
        dropped = _put_shedding(self.queue, event)
        if dropped is not None:
            self.dropped += 1
            logger.warning(f'Relay queue full, dropping message: {dropped.format_line()}')
        for sub in list(self._subscribers):
            if _put_shedding(sub, event) is not None:
                self._subscribers[sub] += 1
                logger.warning('Relay subscriber queue full, dropped oldest message')

    async def _log_worker(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            event = await self.queue.get()
            if event is None:
                return
            try:
                await loop.run_in_executor(None, self.log.append, event)
            except OSError as e:
                logger.error(f'Error writing relay log: {e}')

    def subscribe(self) -> asyncio.Queue:
        """Return a queue receiving every event published from now on.

        ``None`` is queued when the bridge shuts down.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.subscriber_queue_size)
        self._subscribers[queue] = 0
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.pop(queue, None)

    def take_skipped(self, queue: asyncio.Queue) -> int:
        """Return and reset the number of events shed from a subscriber queue."""
        skipped = self._subscribers.get(queue, 0)
        if skipped:
            self._subscribers[queue] = 0
        return skipped

    def recent_messages(self, count: int) -> List[str]:
        return self.log.recent(count)

    # -- outbound ---------------------------------------------------------

    async def send_message(self, channel: str, sender: str, text: str) -> None:
        if not self.connected:
            raise RelayError('not connected to IRC')
        try:
            await self._send_raw(f'PRIVMSG {channel} :<{sender}> {text}')
        except (ConnectionError, OSError) as e:
            raise RelayError(f'failed to send to {channel}: {e}') from e


###############################################################################
# Transport adapters
###############################################################################

class LineIO:
    """Line oriented I/O capability the session engine is written against.

    ``readline`` shows the current prompt and returns one line without its
    terminator, or None once the client is gone. ``write`` never raises;
    a broken connection shows up as None on the next read.
    """

    peer: str = 'unknown'

    def __init__(self) -> None:
        self.prompt = ''

    def set_prompt(self, prompt: str) -> None:
        self.prompt = prompt

    async def show_prompt(self) -> None:
        if self.prompt:
            await self.write(self.prompt)

    async def readline(self, masked: bool = False) -> Optional[str]:
        await self.show_prompt()
        return await self._readline(masked)

    async def write(self, text: str) -> None:
        raise NotImplementedError

    async def _readline(self, masked: bool) -> Optional[str]:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class TelnetIO(LineIO):
    """Plain TCP stream; telnet clients and raw sockets both work."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 negotiate_echo: bool = False) -> None:
        super().__init__()
        self.reader = reader
        self.writer = writer
        self.negotiate_echo = negotiate_echo
        peer = writer.get_extra_info('peername')
        self.peer = f'{peer[0]}:{peer[1]}' if peer else 'unknown'

    async def write(self, text: str) -> None:
        await self._send(text.replace('\n', '\r\n').encode('utf-8'))

    async def _send(self, data: bytes) -> None:
        try:
            self.writer.write(data)
            await self.writer.drain()
        except ConnectionError as e:
            logger.debug(f'Write to {self.peer} failed: {e}')

    async def _readline(self, masked: bool) -> Optional[str]:
        hide = masked and self.negotiate_echo
        if hide:
            # Server "will echo" and then doesn't, so nothing is shown
            await self._send(bytes((IAC, WILL, TELOPT_ECHO)))
        try:
            data = await self.reader.readline()
        except (ConnectionError, ValueError) as e:
            logger.debug(f'Read from {self.peer} failed: {e}')
            return None
        finally:
            if hide:
                await self._send(bytes((IAC, WONT, TELOPT_ECHO)) + b'\r\n')
        if not data:
            return None
        return clean_telnet_input(data).rstrip('\r\n')

    async def close(self) -> None:
        try:
            self.writer.close()
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f'Close of {self.peer} failed: {e}')


class SSHIO(LineIO):
    """An AsyncSSH server process with its line editor enabled."""

    def __init__(self, process: asyncssh.SSHServerProcess) -> None:
        super().__init__()
        self.process = process
        peer = process.get_extra_info('peername')
        self.peer = f'{peer[0]}:{peer[1]}' if peer else 'unknown'

    async def write(self, text: str) -> None:
        try:
            self.process.stdout.write(text)
            await self.process.stdout.drain()
        except (OSError, asyncssh.Error) as e:
            logger.debug(f'Write to {self.peer} failed: {e}')

    def _set_echo(self, echo: bool) -> None:
        # Only channels with a pty (and so a line editor) can toggle echo
        set_echo = getattr(self.process.channel, 'set_echo', None)
        if set_echo is not None:
            set_echo(echo)

    async def _readline(self, masked: bool) -> Optional[str]:
        if masked:
            self._set_echo(False)
        try:
            while True:
                try:
                    data = await self.process.stdin.readline()
                    break
                except asyncssh.TerminalSizeChanged:
                    continue
        except (asyncssh.BreakReceived, asyncssh.SignalReceived):
            return None
        except (OSError, asyncssh.Error) as e:
            logger.debug(f'Read from {self.peer} failed: {e}')
            return None
        finally:
            if masked:
                self._set_echo(True)
        if masked:
            await self.write('\n')
        if not data:
            return None
        return data.rstrip('\r\n')

    async def close(self) -> None:
        try:
            self.process.exit(0)
        except (OSError, asyncssh.Error) as e:
            logger.debug(f'Close of {self.peer} failed: {e}')


class NoAuthSSHServer(asyncssh.SSHServer):
    """Accept every SSH client; the BBS login happens inside the session."""

    def connection_made(self, conn: asyncssh.SSHServerConnection) -> None:
        peer = conn.get_extra_info('peername')
        logger.debug(f'SSH connection from {peer[0] if peer else "unknown"}')

    def begin_auth(self, username: str) -> bool:
        return False


def load_host_key(path: str) -> asyncssh.SSHKey:
    """Load the SSH host key, generating and saving one if it is missing."""
    if os.path.exists(path):
        return asyncssh.read_private_key(path)
    logger.info(f'Generating new SSH host key at {path}')
    key = asyncssh.generate_private_key('ssh-rsa', key_size=2048)
    try:
        key.write_private_key(path)
        os.chmod(path, 0o600)
    except OSError as e:
        logger.warning(f'Could not save SSH host key to {path}: {e}')
    return key


###############################################################################
# Session engine
###############################################################################

class Session:
    """Interactive menu for one connected client.

    The same state machine serves telnet and SSH; it only talks to the
    client through a LineIO. Blocking store calls run in the default
    executor so one slow session never holds up the others.
    """

    def __init__(self, io: LineIO, users: CredentialStore, board: MessageBoard,
                 relay: Optional[RelayBridge] = None, welcome_path: Optional[str] = None,
                 idle_timeout: float = 0) -> None:
        self.io = io
        self.users = users
        self.board = board
        self.relay = relay
        self.welcome_path = welcome_path
        self.idle_timeout = idle_timeout
        self.username: Optional[str] = None
        self.state = 'welcome'

    async def run(self) -> None:
        try:
            await self.send_welcome()
            await self.authenticate()
            await self.main_menu()
        except SessionClosed as e:
            logger.debug(f'Session {self.io.peer} closed: {e}')
        finally:
            self.state = 'terminated'
            await self.io.write(ANSI_YELLOW + 'Goodbye!' + ANSI_RESET + '\n')

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def _idle_timeout(self) -> None:
        await self.io.write(ANSI_RED + '\nIdle timeout. Disconnecting.\n' + ANSI_RESET)
        raise SessionClosed('idle timeout')

    async def read(self, prompt: str, masked: bool = False) -> str:
        """Prompt for and return one line; raise SessionClosed on EOF or idle timeout."""
        self.io.set_prompt(prompt)
        try:
            line = await asyncio.wait_for(self.io.readline(masked), self.idle_timeout or None)
        except asyncio.TimeoutError:
            await self._idle_timeout()
        if line is None:
            raise SessionClosed('end of stream')
        return line

    async def error(self, text: str) -> None:
        await self.io.write(ANSI_RED + text + ANSI_RESET + '\n')

    async def send_welcome(self) -> None:
        banner = read_welcome_screen(self.welcome_path)
        await self.io.write(banner + '\n' * 5)

    # -- login / registration ---------------------------------------------

    async def authenticate(self) -> None:
        """Loop on the login-or-register prompt until a user is bound."""
        while self.username is None:
            self.state = 'awaiting_choice'
            choice = await self.read(ANSI_GREEN + 'Choose (L)ogin or (R)egister: ' + ANSI_RESET)
            choice = choice.strip().lower()
            if choice == 'l':
                await self.login()
            elif choice == 'r':
                await self.register()
            else:
                await self.error("Invalid choice. Please enter 'L' or 'R'.")

    async def login(self) -> None:
        self.state = 'authenticating'
        username = (await self.read('Username: ')).strip()
        password = await self.read('Password: ', masked=True)
        try:
            ok = await self._call(self.users.authenticate, username, password)
        except StoreError:
            ok = False
        if not ok:
            logger.info(f'Failed login for {username!r} from {self.io.peer}')
            await self.error('Login failed: invalid username or password')
            return
        self.username = username
        logger.info(f'User {username!r} logged in from {self.io.peer}')
        await self.io.write(f'\n{ANSI_BOLD_GREEN}Login successful! Welcome, {username}!{ANSI_RESET}\n')

    async def register(self) -> None:
        self.state = 'registering'
        username = (await self.read('Choose a username: ')).strip()
        password = await self.read('Choose a password: ', masked=True)
        try:
            await self._call(self.users.create_user, username, password)
        except (ValidationError, UserExists) as e:
            await self.error(f'Registration failed: {e}')
            return
        except StoreError:
            await self.error('Registration failed: the user database is unavailable, try again later')
            return
        self.username = username
        await self.io.write(f'\n{ANSI_BOLD_GREEN}Registration successful! Welcome, {username}!{ANSI_RESET}\n')

    # -- main menu --------------------------------------------------------

    def menu_options(self) -> List[Tuple[str, Callable[[], Any]]]:
        options = [
            ('Read messages', self.read_messages),
            ('Post message', self.post_message),
        ]
        if self.relay is not None:
            options.append(('IRC Bridge', self.relay_mode))
        return options

    async def main_menu(self) -> None:
        options = self.menu_options()
        logout = str(len(options) + 1)
        while True:
            self.state = 'main_menu'
            lines = [f'\n{ANSI_CYAN}BBS Menu:{ANSI_RESET}']
            lines += [f'{n}. {label}' for n, (label, _) in enumerate(options, start=1)]
            lines.append(f'{logout}. Logout')
            await self.io.write('\n'.join(lines) + '\n')
            choice = (await self.read('Choice: ')).strip()
            if choice == logout:
                logger.info(f'User {self.username!r} logged out')
                return
            if choice.isdigit() and 1 <= int(choice) <= len(options):
                await options[int(choice) - 1][1]()
            else:
                await self.error('Invalid choice. Please try again.')

    async def read_messages(self) -> None:
        self.state = 'read_messages'
        try:
            messages = await self._call(self.board.get_messages)
        except StoreError as e:
            await self.error(f'Error reading messages: {e}')
            return
        if not messages:
            await self.io.write('No messages yet.\n')
            return
        await self.io.write(''.join(f'{line}\n' for line in messages))

    async def post_message(self) -> None:
        self.state = 'post_message'
        body = (await self.read('Enter your message: ')).strip()
        try:
            await self._call(self.board.post_message, self.username, body)
        except (ValidationError, StoreError) as e:
            await self.error(f'Error posting message: {e}')
            return
        await self.io.write(ANSI_GREEN + 'Message posted successfully!' + ANSI_RESET + '\n')

    # -- IRC relay --------------------------------------------------------

    async def relay_mode(self) -> None:
        """Live IRC chat until the user types /quit.

        Waiting for the next input line and for the next relay event race
        each other. Only the wait that finished is restarted, so a pending
        read is never abandoned while an event is printed.
        """
        self.state = 'relay'
        relay = self.relay
        if not relay.connected:
            await self.error('IRC Bridge is not connected.')
            return
        await self.io.write(ANSI_CYAN + "Entering IRC Bridge mode. Type '/quit' to exit." + ANSI_RESET + '\n')
        # Subscribe before replaying history; an event arriving meanwhile may
        # show twice but is never missed.
        events = relay.subscribe()
        read_task: Optional[asyncio.Future] = None
        event_task: Optional[asyncio.Future] = None
        try:
            try:
                recent = await self._call(relay.recent_messages, RELAY_HISTORY)
            except OSError as e:
                await self.error(f'Error fetching recent messages: {e}')
            else:
                await self.io.write(''.join(f'{line}\n' for line in recent))
            self.io.set_prompt('> ')
            while True:
                if read_task is None:
                    read_task = asyncio.ensure_future(self.io.readline())
                if event_task is None:
                    event_task = asyncio.ensure_future(events.get())
                done, _ = await asyncio.wait(
                    {read_task, event_task},
                    timeout=self.idle_timeout or None,
                    return_when=asyncio.FIRST_COMPLETED)
                if not done:
                    await self._idle_timeout()
                if event_task in done:
                    event = event_task.result()
                    event_task = None
                    if event is None:
                        await self.error('\rIRC Bridge closed.')
                        return
                    skipped = relay.take_skipped(events)
                    if skipped:
                        await self.io.write(f'\r{ANSI_YELLOW}({skipped} relay messages skipped){ANSI_RESET}\n')
                    await self.io.write(f'\r{event.format_line()}\n')
                    await self.io.show_prompt()
                if read_task in done:
                    line = read_task.result()
                    read_task = None
                    if line is None:
                        raise SessionClosed('end of stream')
                    if line.strip() == '/quit':
                        await self.io.write(ANSI_CYAN + 'Exiting IRC Bridge mode.' + ANSI_RESET + '\n')
                        return
                    if not line.strip():
                        continue
                    for channel in relay.channels:
                        try:
                            await relay.send_message(channel, self.username, line)
                        except RelayError as e:
                            await self.error(f'Error sending to {channel}: {e}')
        finally:
            relay.unsubscribe(events)
            pending = [t for t in (read_task, event_task) if t is not None]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)


###############################################################################
# HTTP/JSON API
###############################################################################

def make_api_handler(users: CredentialStore, board: MessageBoard, web_root: str) -> type:
    """Build the request handler class for the web transport.

    Requests run on the server's worker threads and call the stores
    directly; both stores are thread safe.
    """

    class APIRequestHandler(http.server.SimpleHTTPRequestHandler):
        server_version = f'gbbsd/{__version__}'

        def __init__(self, *args: Any, **kwargs: Any) -> None:
            super().__init__(*args, directory=web_root, **kwargs)

        def log_message(self, format: str, *args: Any) -> None:
            logger.debug(f'HTTP {self.address_string()} {format % args}')

        def send_json(self, status: int, payload: Any) -> None:
            body = json.dumps(payload).encode('utf-8')
            self.send_response(status)
            self.send_header('Content-Type', 'application/json')
            self.send_header('Content-Length', str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def read_json(self) -> Optional[Dict[str, Any]]:
            try:
                length = int(self.headers.get('Content-Length') or 0)
                if length < 0:
                    return None
                payload = json.loads(self.rfile.read(length).decode('utf-8'))
            except (ValueError, UnicodeDecodeError):
                return None
            return payload if isinstance(payload, dict) else None

        def read_fields(self, *names: str) -> Optional[List[str]]:
            """Return the named string fields of the JSON body, sending 400 if absent."""
            payload = self.read_json()
            if payload is None:
                self.send_json(400, {'error': 'invalid JSON body'})
                return None
            values = [payload.get(name) for name in names]
            if not all(isinstance(v, str) for v in values):
                self.send_json(400, {'error': f'{" and ".join(names)} are required'})
                return None
            return values

        @property
        def route(self) -> str:
            return urlsplit(self.path).path

        def do_GET(self) -> None:
            path = self.route
            if path == '/api/messages':
                try:
                    self.send_json(200, list(board.get_messages()))
                except StoreError as e:
                    self.send_json(500, {'error': str(e)})
            elif path in ('/api/login', '/api/register'):
                self.send_json(405, {'error': 'method not allowed'})
            elif path.startswith('/api/'):
                self.send_json(404, {'error': 'not found'})
            else:
                super().do_GET()

        def do_POST(self) -> None:
            routes = {
                '/api/login': self.login,
                '/api/register': self.register,
                '/api/messages': self.post_message,
            }
            handler = routes.get(self.route)
            if handler is None:
                self.send_json(404, {'error': 'not found'})
                return
            handler()

        def method_not_allowed(self) -> None:
            if self.route.startswith('/api/'):
                self.send_json(405, {'error': 'method not allowed'})
            else:
                self.send_error(501, 'Unsupported method')

        do_PUT = method_not_allowed
        do_DELETE = method_not_allowed
        do_PATCH = method_not_allowed

        def login(self) -> None:
            fields = self.read_fields('username', 'password')
            if fields is None:
                return
            username, password = fields
            try:
                ok = users.authenticate(username, password)
            except StoreError as e:
                self.send_json(500, {'error': str(e)})
                return
            if not ok:
                logger.info(f'Failed web login for {username!r}')
                self.send_json(401, {'error': 'Invalid credentials'})
                return
            logger.info(f'User {username!r} logged in over HTTP')
            self.send_json(200, {'message': 'Login successful'})

        def register(self) -> None:
            fields = self.read_fields('username', 'password')
            if fields is None:
                return
            try:
                users.create_user(*fields)
            except (ValidationError, UserExists) as e:
                self.send_json(400, {'error': str(e)})
                return
            except StoreError as e:
                self.send_json(500, {'error': str(e)})
                return
            self.send_json(201, {'message': 'User created successfully'})

        def post_message(self) -> None:
            fields = self.read_fields('username', 'message')
            if fields is None:
                return
            username, message = fields
            if not valid_username(username):
                self.send_json(400, {'error': 'a valid username is required'})
                return
            try:
                board.post_message(username, message)
            except ValidationError as e:
                self.send_json(400, {'error': str(e)})
                return
            except StoreError as e:
                self.send_json(500, {'error': str(e)})
                return
            self.send_json(201, {'message': 'Message posted successfully'})

    return APIRequestHandler


###############################################################################
# Server
###############################################################################

class BBS:
    """Owns the shared stores and the relay, and runs one listener per transport."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.users = CredentialStore(settings.database, rounds=settings.bcrypt_rounds)
        self.board = MessageBoard(settings.guestbook)
        self.relay: Optional[RelayBridge] = None
        self.sessions: List[Session] = []
        self.telnet_server: Optional[asyncio.AbstractServer] = None
        self.ssh_server: Optional[asyncssh.SSHAcceptor] = None
        self.httpd: Optional[http.server.ThreadingHTTPServer] = None
        self._stop: Optional[asyncio.Event] = None

    async def run_session(self, io: LineIO) -> None:
        session = Session(io, self.users, self.board, relay=self.relay,
                          welcome_path=self.settings.welcome_screen,
                          idle_timeout=self.settings.idle_timeout)
        self.sessions.append(session)
        logger.info(f'Connection from {io.peer}')
        try:
            await session.run()
        except Exception:
            # Only this connection is affected
            logger.exception(f'Session error for {io.peer}')
        finally:
            self.sessions.remove(session)
            await io.close()
            logger.info(f'Connection from {io.peer} closed')

    async def handle_telnet_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await self.run_session(TelnetIO(reader, writer, negotiate_echo=self.settings.negotiate_echo))

    async def handle_ssh_process(self, process: asyncssh.SSHServerProcess) -> None:
        await self.run_session(SSHIO(process))

    async def start_relay(self) -> None:
        if not self.settings.relay.enabled:
            return
        bridge = RelayBridge(self.settings.relay)
        try:
            await bridge.connect()
        except RelayError as e:
            logger.error(f'Failed to connect to IRC, relay disabled: {e}')
            await bridge.close()
            return
        self.relay = bridge

    async def start_telnet_server(self) -> None:
        self.telnet_server = await asyncio.start_server(
            self.handle_telnet_client, host=self.settings.host, port=self.settings.telnet_port)
        addrs = ', '.join(str(sock.getsockname()) for sock in self.telnet_server.sockets)
        logger.info(f'Telnet server listening on {addrs}')

    async def start_ssh_server(self) -> None:
        loop = asyncio.get_running_loop()
        key = await loop.run_in_executor(None, load_host_key, self.settings.ssh_host_key)
        self.ssh_server = await asyncssh.create_server(
            NoAuthSSHServer, self.settings.host, self.settings.ssh_port,
            server_host_keys=[key], process_factory=self.handle_ssh_process)
        logger.info(f'SSH server listening on {self.settings.host}:{self.settings.ssh_port}')

    def start_http_server(self) -> None:
        """Serve the JSON API from a background thread."""
        handler = make_api_handler(self.users, self.board, self.settings.web_root)
        self.httpd = http.server.ThreadingHTTPServer((self.settings.host, self.settings.web_port), handler)
        self.httpd.daemon_threads = True
        t = threading.Thread(target=self.httpd.serve_forever, name='gbbsd-http', daemon=True)
        t.start()
        logger.info(f'Web server listening on {self.settings.host}:{self.httpd.server_address[1]}')

    async def start(self) -> None:
        """Start every enabled listener and run until stop() or a signal."""
        self._stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except (NotImplementedError, RuntimeError):
                pass
        await self.start_relay()
        # A listener that fails to bind is logged; the others keep running
        if self.settings.telnet_enabled:
            try:
                await self.start_telnet_server()
            except OSError as e:
                logger.error(f'Telnet server error: {e}')
        if self.settings.ssh_enabled:
            try:
                await self.start_ssh_server()
            except (OSError, asyncssh.Error) as e:
                logger.error(f'SSH server error: {e}')
        if self.settings.web_enabled:
            try:
                self.start_http_server()
            except OSError as e:
                logger.error(f'Web server error: {e}')
        logger.info('BBS is running')
        try:
            await self._stop.wait()
        finally:
            await self.shutdown()

    def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()

    async def shutdown(self) -> None:
        logger.info('Shutting down...')
        if self.telnet_server is not None:
            self.telnet_server.close()
        if self.ssh_server is not None:
            self.ssh_server.close()
        for session in list(self.sessions):
            await session.io.close()
        if self.telnet_server is not None:
            await self.telnet_server.wait_closed()
            self.telnet_server = None
        if self.ssh_server is not None:
            await self.ssh_server.wait_closed()
            self.ssh_server = None
        if self.httpd is not None:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self.httpd.shutdown)
            self.httpd.server_close()
            self.httpd = None
        if self.relay is not None:
            await self.relay.close()
        self.users.close()
        logger.info('Shutdown complete')


###############################################################################
# Entry point
###############################################################################

def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description='Multi-transport bulletin board daemon')
    parser.add_argument('--config', default=CONFIG_PATH, help='path to the INI configuration file')
    parser.add_argument('--debug', action='store_true', help='enable debug logging')
    args = parser.parse_args(argv)

    cfg = load_config(args.config)
    settings = Settings.from_config(cfg, base_dir=os.path.dirname(os.path.abspath(args.config)))
    configure_logging(settings, debug=args.debug)
    try:
        bbs = BBS(settings)
    except StoreError as e:
        logger.critical(f'Failed to initialize storage: {e}')
        sys.exit(1)
    try:
        asyncio.run(bbs.start())
    except KeyboardInterrupt:
        print('Server shutting down.')


if __name__ == '__main__':
    main()
