# SPDX-License-Identifier: GPL-2.0-or-later
"""Lobby client: one TCP session to the lobby server.

The client frames inbound lines into :class:`Message` objects pushed onto
``events``, keeps the session alive with periodic pings once logged in and
offers one helper per outbound matchmaking command. ``None`` is pushed onto
``events`` when the session ends.
"""

import asyncio
import base64
import contextlib
import hashlib
import logging
from typing import Optional, Sequence

from matchbot.lobby import protocol
from matchbot.monitoring import lobby_messages_in, lobby_messages_out


class LobbyError(Exception):
    """Base class for all exceptions here."""

    pass


class LobbyConnectionError(LobbyError):
    """Raised when the session is down or a write fails."""

    pass


LOGIN_CPU = '3200'
LOGIN_IP = '*'
LOGIN_CLIENT = 'Matchbot v0.1'
LOGIN_USER_ID = '0'
LOGIN_COMPAT_FLAGS = 'sp cl p'


def hash_password(password: str) -> str:
    digest = hashlib.md5(password.encode('utf-8')).digest()
    return base64.b64encode(digest).decode('ascii')


class Client:
    def __init__(self, ping_interval=20):
        self.ping_interval = ping_interval
        self.events: asyncio.Queue = asyncio.Queue()
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._write_lock = asyncio.Lock()
        self._closed = asyncio.Event()
        self._closed.set()
        self._read_task: Optional[asyncio.Task] = None
        self._ping_task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return not self._closed.is_set()

    async def connect(self, host, port):
        """Opens a new session. Raises OSError if the server is unreachable."""
        self._reader, self._writer = await asyncio.open_connection(host, port)
        self.events = asyncio.Queue()
        self._closed.clear()
        self._read_task = asyncio.create_task(self._read())
        logging.info('connected to lobby server %s:%s', host, port)

    async def done(self):
        """Waits until the session ends."""
        await self._closed.wait()

    async def disconnect(self):
        if not self.active:
            return
        try:
            await self.send('EXIT')
        except LobbyConnectionError:
            logging.debug('session already closed before exit')
        self._close()
        if self._read_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._read_task

    def _close(self):
        if self._ping_task is not None:
            self._ping_task.cancel()
            self._ping_task = None
        if self._writer is not None:
            self._writer.close()
        if self._read_task is not None:
            self._read_task.cancel()
        self._end_session()

    def _end_session(self):
        if not self._closed.is_set():
            self._closed.set()
            self.events.put_nowait(None)

    async def _read(self):
        try:
            while True:
                line = await self._reader.readline()
                if not line:
                    break
                msg = protocol.decode(line)
                if not msg.command:
                    continue
                logging.debug('IN %s %s', msg.command, msg.text)
                lobby_messages_in.inc()
                self.events.put_nowait(msg)
        except (ConnectionError, OSError, ValueError) as exn:
            logging.warning('trouble reading from lobby server: %s', exn)
        finally:
            logging.info('lobby session ended')
            if self._ping_task is not None:
                self._ping_task.cancel()
                self._ping_task = None
            if self._writer is not None:
                self._writer.close()
            self._end_session()

    async def _keep_alive(self):
        while True:
            await asyncio.sleep(self.ping_interval)
            try:
                await self.ping()
            except LobbyConnectionError:
                return

    async def send(self, command: str, params: Sequence[str] = ()):
        if not self.active or self._writer is None:
            raise LobbyConnectionError(
                f"cannot send {command}: not connected to the lobby server"
            )
        raw = protocol.encode(command, params)
        logging.debug('OUT %s', raw.decode('utf-8', errors='replace').strip())
        async with self._write_lock:
            try:
                self._writer.write(raw)
                await self._writer.drain()
            except (ConnectionError, OSError) as exn:
                self._close()
                raise LobbyConnectionError(
                    f"could not send {command} to the lobby server: {exn}"
                ) from exn
        lobby_messages_out.inc()

    async def send_json(self, command: str, payload: protocol.Payload):
        await self.send(command, [payload.dumps()])

    async def login(self, user: str, password: str):
        await self.send(
            'LOGIN',
            [
                user,
                hash_password(password),
                LOGIN_CPU,
                LOGIN_IP,
                LOGIN_CLIENT,
                LOGIN_USER_ID,
                LOGIN_COMPAT_FLAGS,
            ],
        )
        if self._ping_task is None:
            self._ping_task = asyncio.create_task(self._keep_alive())

    async def ping(self):
        await self.send('PING')

    async def open_queue(self, definition: protocol.QueueDefinition):
        await self.send_json('OPENQUEUE', definition)

    async def close_queue(self, queue: str):
        await self.send_json('CLOSEQUEUE', protocol.CloseQueue(name=queue))

    async def join_queue_accept(self, queue: str, users: Sequence[str]):
        await self.send_json(
            'JOINQUEUEACCEPT',
            protocol.JoinQueueAccept(name=queue, user_names=list(users)),
        )

    async def join_queue_deny(
        self, queue: str, users: Sequence[str], reason: str
    ):
        await self.send_json(
            'JOINQUEUEDENY',
            protocol.JoinQueueDeny(
                name=queue, user_names=list(users), reason=reason
            ),
        )

    async def ready_check(
        self, queue: str, users: Sequence[str], response_time: int
    ):
        await self.send_json(
            'READYCHECK',
            protocol.ReadyCheck(
                name=queue,
                user_names=list(users),
                response_time=response_time,
            ),
        )

    async def ready_check_result(
        self, queue: str, users: Sequence[str], result: str
    ):
        await self.send_json(
            'READYCHECKRESULT',
            protocol.ReadyCheckResult(
                name=queue, user_names=list(users), result=result
            ),
        )

    async def connect_user(self, user, ip, port, password, engine):
        await self.send_json(
            'CONNECTUSER',
            protocol.ConnectUser(
                user_name=user,
                ip=ip,
                port=str(port),
                password=password,
                engine=engine,
            ),
        )
