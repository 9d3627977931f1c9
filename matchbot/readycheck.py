# SPDX-License-Identifier: GPL-2.0-or-later
"""Ready checks: every player of a formed match must acknowledge it in time.

Each formed match gets its own :class:`ReadyCheck` session running in its own
task. READYCHECKRESPONSE messages do not name a session, so the coordinator
broadcasts every response to all the active sessions, and each session picks
the ones for its queue and players.
"""

import asyncio
import enum
import logging
import math
from typing import Awaitable, Callable, Dict, Optional, Set

from matchbot.lobby.client import LobbyError
from matchbot.lobby.protocol import ReadyCheckResponse
from matchbot.monitoring import matchbot_ready_checks_total
from matchbot.queue import Match

READY = 'ready'
PASS_RESULT = 'pass'
FAIL_RESULT = 'fail'
TIMEOUT_RESULT = 'timeout waiting for players to ready up'


class ReadyCheckState(enum.Enum):
    AWAITING = 'awaiting'
    PASSED = 'passed'
    FAILED = 'failed'
    TIMED_OUT = 'timed out'


PassCallback = Callable[[Match], Awaitable[None]]
FailCallback = Callable[[Match, str], Awaitable[None]]


class ReadyCheck:
    def __init__(
        self,
        session_id: int,
        match: Match,
        client,
        shutdown: asyncio.Event,
        timeout: float = 10,
        on_pass: Optional[PassCallback] = None,
        on_fail: Optional[FailCallback] = None,
    ):
        self.id = session_id
        self.match = match
        self.client = client
        self.shutdown = shutdown
        self.timeout = timeout
        self.on_pass = on_pass
        self.on_fail = on_fail

        self.state = ReadyCheckState.AWAITING
        self.reason: Optional[str] = None
        self.interrupted = False
        self.required: Set[str] = set(match.player_names)
        self.ready: Set[str] = set()
        self.inbox: asyncio.Queue = asyncio.Queue()

    def __repr__(self):
        return '<ReadyCheck {} for {}#{}: {}/{} ready, {}>'.format(
            self.id,
            self.match.queue_name,
            self.match.id,
            len(self.ready),
            len(self.required),
            self.state.value,
        )

    def deliver(self, response: ReadyCheckResponse) -> None:
        self.inbox.put_nowait(response)

    def handle(self, response: ReadyCheckResponse) -> None:
        """Applies one response to the session state."""
        if response.name != self.match.queue_name:
            return
        if response.user_name not in self.required:
            logging.info(
                'ready check %s: got a response for %s, who is not in the '
                'match',
                self.id,
                response.user_name,
            )
            return

        logging.debug(
            'ready check %s: %s responded %s (already ready: %s)',
            self.id,
            response.user_name,
            response.response,
            response.user_name in self.ready,
        )

        if response.response != READY:
            self.state = ReadyCheckState.FAILED
            self.reason = '{} responded with status {}'.format(
                response.user_name, response.response
            )
            return

        # A player may send 'ready' many times: count it once.
        self.ready.add(response.user_name)
        if self.ready == self.required:
            self.state = ReadyCheckState.PASSED

    async def wait_for_responses(self) -> ReadyCheckState:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        shutdown_wait = asyncio.create_task(self.shutdown.wait())
        try:
            while self.state is ReadyCheckState.AWAITING:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    self.state = ReadyCheckState.TIMED_OUT
                    self.reason = TIMEOUT_RESULT
                    break

                next_response = asyncio.create_task(self.inbox.get())
                done, _ = await asyncio.wait(
                    {next_response, shutdown_wait},
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if shutdown_wait in done:
                    next_response.cancel()
                    self.state = ReadyCheckState.FAILED
                    self.reason = 'matchbot is shutting down'
                    self.interrupted = True
                elif next_response in done:
                    self.handle(next_response.result())
                else:
                    next_response.cancel()
        finally:
            shutdown_wait.cancel()
        return self.state

    async def report(self, result: str) -> None:
        try:
            await self.client.ready_check_result(
                self.match.queue_name, self.match.player_names, result
            )
        except LobbyError as exn:
            logging.warning(
                'ready check %s: could not send result %r: %s',
                self.id,
                result,
                exn,
            )

    async def run(self) -> ReadyCheckState:
        logging.info(
            'ready check %s: entering for %s#%s, players: %s',
            self.id,
            self.match.queue_name,
            self.match.id,
            self.match.player_names,
        )
        state = await self.wait_for_responses()
        matchbot_ready_checks_total.labels(state.value).inc()

        if self.interrupted:
            logging.info('ready check %s: interrupted by shutdown', self.id)
        elif state is ReadyCheckState.PASSED:
            logging.info(
                'ready check %s: complete, starting game for %s',
                self.id,
                self.match,
            )
            await self.report(PASS_RESULT)
            if self.on_pass is not None:
                await self.on_pass(self.match)
        else:
            logging.info('ready check %s: %s', self.id, self.reason)
            await self.report(self.reason)
            if self.on_fail is not None:
                await self.on_fail(self.match, self.reason)
        return state


class ReadyCheckCoordinator:
    """Starts ready check sessions and routes responses to them."""

    def __init__(
        self,
        client,
        shutdown: asyncio.Event,
        timeout: float = 10,
        on_pass: Optional[PassCallback] = None,
        on_fail: Optional[FailCallback] = None,
    ):
        self.client = client
        self.shutdown = shutdown
        self.timeout = timeout
        self.on_pass = on_pass
        self.on_fail = on_fail

        # Active sessions. Inserts and removals take the lock, broadcasts
        # only read a snapshot taken under it.
        self.sessions: Dict[int, ReadyCheck] = {}
        self.lock = asyncio.Lock()
        self._last_id = 0
        self._tasks: Set[asyncio.Task] = set()

    async def start(self, match: Match) -> ReadyCheck:
        async with self.lock:
            self._last_id += 1
            session = ReadyCheck(
                self._last_id,
                match,
                self.client,
                self.shutdown,
                timeout=self.timeout,
                on_pass=self.on_pass,
                on_fail=self.on_fail,
            )
            self.sessions[session.id] = session

        # Registered before asking, so that no response can be missed.
        try:
            await self.client.ready_check(
                match.queue_name, match.player_names, math.ceil(self.timeout)
            )
        except LobbyError as exn:
            logging.warning(
                'ready check %s: could not send the request: %s',
                session.id,
                exn,
            )

        task = asyncio.create_task(self._run(session))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return session

    async def _run(self, session: ReadyCheck) -> None:
        try:
            await session.run()
        except asyncio.CancelledError:
            raise
        except Exception:
            logging.exception('ready check %s failed', session.id)
        finally:
            async with self.lock:
                self.sessions.pop(session.id, None)

    async def broadcast(self, response: ReadyCheckResponse) -> None:
        async with self.lock:
            sessions = list(self.sessions.values())
        for session in sessions:
            session.deliver(response)

    async def wait(self) -> None:
        """Waits for every running session to end."""
        if self._tasks:
            await asyncio.wait(set(self._tasks))
