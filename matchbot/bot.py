# SPDX-License-Identifier: GPL-2.0-or-later
import asyncio
import collections
import contextlib
import enum
import logging
import os.path
from typing import Dict, List, Optional, Set

from matchbot.game import Game, GameError
from matchbot.lobby.client import Client, LobbyConnectionError, LobbyError
from matchbot.lobby.protocol import (
    JoinQueueRequest,
    Message,
    ProtocolError,
    QueueDefinition,
    QueueLeft,
    ReadyCheckResponse,
)
from matchbot.monitoring import (
    matchbot_active_ready_checks,
    matchbot_join_requests_total,
    matchbot_lobby_connected,
    matchbot_players,
    matchbot_queues,
    matchbot_reconnects_total,
)
from matchbot.queue import Match, Queue, QueueError, ScriptError
from matchbot.readycheck import FAIL_RESULT, ReadyCheckCoordinator

# Housekeeping commands that need no handling.
IGNORED_COMMANDS = (
    'TASServer',
    'MOTD',
    'PONG',
    'ADDUSER',
    'CLIENTSTATUS',
    'OPENQUEUE',
    'ACCEPTED',
)


class ConnectionState(enum.Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    LOGGED_IN = 'logged in'


class Matchbot:
    """Hosts the matchmaking queues on the lobby server.

    Matchbot owns the queues, the index of the queue each player is in and
    the lobby session. It keeps the session up until shut down, routes the
    lobby commands to the queues and turns the matches formed by the queue
    scripts into ready checks, then into games.

    ``lock`` guards ``queues`` and ``players``. When both are needed, it is
    taken before the lock of a queue.
    """

    game_class = Game

    def __init__(
        self, config, definitions: List[QueueDefinition], client=None
    ):
        self.config = config
        self.definitions = definitions

        lobby = config['lobby']
        matchmaking = config['matchmaking']
        if client is None:
            client = Client(ping_interval=lobby['ping_interval_secs'])
        self.client = client
        self.reconnect_delay = lobby['reconnect_delay_secs']
        self.tick_interval = matchmaking['tick_interval_secs']

        self.shutdown_event = asyncio.Event()
        self.state = ConnectionState.DISCONNECTED

        # Open queues by name
        self.queues: Dict[str, Queue] = {}
        # Queue of every player known to matchbot
        self.players: Dict[str, Queue] = {}
        self.lock = asyncio.Lock()

        # Matches formed by the queue scripts, waiting for a ready check
        self.matches: asyncio.Queue = asyncio.Queue()
        self.ready_checks = ReadyCheckCoordinator(
            self.client,
            self.shutdown_event,
            timeout=matchmaking['ready_check_timeout_secs'],
            on_pass=self.start_game,
            on_fail=self.release_players,
        )

        # Running games
        self.games: Set[Game] = set()
        self._game_tasks: Set[asyncio.Task] = set()

        self.handlers = {
            'LOGININFOEND': self.open_static_queues,
            'QUEUEOPENED': self.add_queue,
            'JOINQUEUEREQUEST': self.add_players,
            'QUEUELEFT': self.remove_players,
            'REMOVEUSER': self.remove_user,
            'READYCHECKRESPONSE': self.ready_check_response,
            'SERVERMSG': self.server_message,
            'FAILED': self.failed_command,
        }
        for command in IGNORED_COMMANDS:
            self.handlers[command] = self.ignore

        self._setup_monitoring()

    def _setup_monitoring(self) -> None:
        """Wires the monitoring probes."""
        matchbot_queues.set_function(lambda: len(self.queues))
        matchbot_players.set_function(lambda: len(self.players))
        matchbot_lobby_connected.set_function(
            lambda: int(self.state is ConnectionState.LOGGED_IN)
        )
        matchbot_active_ready_checks.set_function(
            lambda: len(self.ready_checks.sessions)
        )

    def script_path(self, queue_name: str) -> str:
        """Matching script of a queue: its own one, else the default one."""
        scripts_dir = self.config['matchmaking']['scripts_dir']
        if os.path.basename(queue_name) == queue_name:
            path = os.path.join(scripts_dir, queue_name + '.lua')
            if os.path.isfile(path):
                return path
        return os.path.join(
            scripts_dir, self.config['matchmaking']['default_script']
        )

    # Connection lifecycle

    async def run(self) -> None:
        """Keeps a lobby session up until :meth:`shutdown` is called."""
        matches_task = asyncio.create_task(self.matches_to_ready_checks())
        try:
            while not self.shutdown_event.is_set():
                try:
                    await self.run_session()
                except asyncio.CancelledError:
                    raise
                except (OSError, LobbyError) as exn:
                    logging.warning('lobby session failed: %s', exn)
                except Exception:
                    logging.exception('lobby session failed')
                finally:
                    await self.session_lost()

                if self.shutdown_event.is_set():
                    break
                logging.info(
                    'reconnecting to the lobby server in %s seconds',
                    self.reconnect_delay,
                )
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(
                        self.shutdown_event.wait(), self.reconnect_delay
                    )
        finally:
            matches_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await matches_task
            await self.client.disconnect()
            await self.ready_checks.wait()
            if self.games:
                logging.info(
                    'leaving %d games running: %s',
                    len(self.games),
                    ', '.join(map(repr, self.games)),
                )

    async def run_session(self) -> None:
        lobby = self.config['lobby']
        self.state = ConnectionState.CONNECTING
        matchbot_reconnects_total.inc()
        await self.client.connect(lobby['host'], lobby['port'])
        await self.client.login(lobby['user'], lobby['password'])
        await self.dispatch_loop(self.client.events)

    async def dispatch_loop(self, events: asyncio.Queue) -> None:
        """Handles lobby messages until the session ends or shutdown."""
        shutdown_wait = asyncio.create_task(self.shutdown_event.wait())
        try:
            while True:
                next_event = asyncio.create_task(events.get())
                done, _ = await asyncio.wait(
                    {next_event, shutdown_wait},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if next_event not in done:
                    next_event.cancel()
                    return
                msg = next_event.result()
                if msg is None:
                    logging.info('lobby server closed the session')
                    return
                await self.dispatch(msg)
        finally:
            shutdown_wait.cancel()

    async def session_lost(self) -> None:
        """Forgets the queues: the lobby closes them with the session."""
        self.state = ConnectionState.DISCONNECTED
        async with self.lock:
            queues = list(self.queues.values())
            self.queues.clear()
            self.players.clear()
        for queue in queues:
            await queue.close()
        if queues:
            logging.info(
                'closed %d queues after the end of the lobby session',
                len(queues),
            )

    async def shutdown(self) -> None:
        """Closes the queues on the lobby, then leaves it.

        Safe to call when the lobby session is down.
        """
        if self.shutdown_event.is_set():
            return
        logging.info('shutting down')
        self.shutdown_event.set()

        async with self.lock:
            names = list(self.queues)
        if self.client.active:
            for name in names:
                try:
                    await self.client.close_queue(name)
                except LobbyError as exn:
                    logging.warning('could not close queue %s: %s', name, exn)
                    break
            await self.client.disconnect()

        async with self.lock:
            queues = list(self.queues.values())
        for queue in queues:
            await queue.close()

    # Dispatch

    async def dispatch(self, msg: Message) -> None:
        handler = self.handlers.get(msg.command)
        if handler is None:
            logging.warning(
                'unknown server command %s %s', msg.command, msg.text
            )
            return
        try:
            await handler(msg)
        except asyncio.CancelledError:
            raise
        except ProtocolError as exn:
            logging.error('ignoring malformed %s: %s', msg.command, exn)
        except LobbyConnectionError as exn:
            logging.warning('could not answer %s: %s', msg.command, exn)
        except Exception:
            logging.exception('error while handling %s', msg.command)

    async def ignore(self, msg: Message) -> None:
        pass

    async def server_message(self, msg: Message) -> None:
        logging.info('server message: %s', msg.text)

    async def failed_command(self, msg: Message) -> None:
        logging.error('failed command: %s', msg.text)

    async def open_static_queues(self, msg: Message) -> None:
        self.state = ConnectionState.LOGGED_IN
        logging.info(
            'logged in to the lobby as %s, opening %d queues',
            self.config['lobby']['user'],
            len(self.definitions),
        )
        for definition in self.definitions:
            await self.client.open_queue(definition)

    async def add_queue(self, msg: Message) -> None:
        definition = QueueDefinition.from_message(msg)
        script_path = self.script_path(definition.name)

        async with self.lock:
            previous = self.queues.pop(definition.name, None)
            if previous is not None:
                logging.warning(
                    'queue %s opened again, replacing it', definition.name
                )
                await self._drop_queue(previous)

            try:
                queue = Queue(
                    definition,
                    script_path,
                    self.matches,
                    tick_interval=self.tick_interval,
                )
            except ScriptError as exn:
                logging.error(
                    'failed to instantiate queue %s: %s', definition.name, exn
                )
                return
            self.queues[definition.name] = queue
            queue.start()

        logging.info(
            'opened queue %s (%s) with script %s',
            definition.name,
            definition.title,
            script_path,
        )

    async def _drop_queue(self, queue: Queue) -> None:
        """Closes a queue and forgets its players. The lock must be held."""
        for name in list(self.players):
            if self.players[name] is queue:
                del self.players[name]
        await queue.close()

    @staticmethod
    def _salvage_join_request(msg: Message):
        """Recovers what can be from a malformed join request."""
        try:
            obj = msg.json()
        except ProtocolError:
            return '', []
        if not isinstance(obj, dict):
            return '', []
        name = obj.get('name')
        users = obj.get('userNames')
        if not isinstance(users, list):
            users = []
        return (
            name if isinstance(name, str) else '',
            [u for u in users if isinstance(u, str)],
        )

    async def add_players(self, msg: Message) -> None:
        try:
            request = JoinQueueRequest.from_message(msg)
        except ProtocolError as exn:
            logging.error('could not parse join queue request: %s', exn)
            name, users = self._salvage_join_request(msg)
            if users:
                await self.client.join_queue_deny(
                    name,
                    users,
                    'matchbot choked on JOINQUEUEREQUEST from server. '
                    f'contact an admin! error: {exn}',
                )
            return

        accepted: List[str] = []
        denied: Dict[str, List[str]] = collections.defaultdict(list)

        async with self.lock:
            queue = self.queues.get(request.name)
            if queue is None:
                logging.error(
                    'join request from %s for unknown queue %s',
                    request.user_names,
                    request.name,
                )
                denied[
                    f"matchbot does not know about queue {request.name}"
                ] = list(request.user_names)
            else:
                await self._add_to_queue(
                    queue, request.user_names, accepted, denied
                )

        for reason, players in denied.items():
            matchbot_join_requests_total.labels('denied').inc(len(players))
            await self.client.join_queue_deny(request.name, players, reason)
        if accepted:
            matchbot_join_requests_total.labels('accepted').inc(len(accepted))
            await self.client.join_queue_accept(request.name, accepted)

    async def _add_to_queue(self, queue, names, accepted, denied) -> None:
        """Registers players in a queue. The lock must be held."""
        for name in names:
            current = self.players.get(name)
            if current is not None:
                denied[
                    f"already waiting in {current.name}. "
                    "Leave that queue before joining another!"
                ].append(name)
                continue

            try:
                error = await queue.add_player(name)
            except QueueError as exn:
                logging.warning(
                    'could not add %s to queue %s: %s', name, queue.name, exn
                )
                denied[
                    "matchbot error adding to queue! ask admin to check logs. "
                    f"error: {exn}"
                ].append(name)
                continue
            if error is not None:
                logging.error(
                    'queue %s: PlayerJoined failed for %s: %s',
                    queue.name,
                    name,
                    error,
                )

            self.players[name] = queue
            accepted.append(name)

    async def _remove_from_queue(self, queue: Queue, name: str) -> None:
        try:
            error = await queue.remove_player(name)
        except QueueError as exn:
            logging.error(
                'could not remove %s from queue %s: %s', name, queue.name, exn
            )
            return
        if error is not None:
            logging.error(
                'queue %s: PlayerLeft failed for %s: %s',
                queue.name,
                name,
                error,
            )

    async def remove_players(self, msg: Message) -> None:
        request = QueueLeft.from_message(msg)
        async with self.lock:
            requested = self.queues.get(request.name)
            if requested is None:
                logging.error(
                    'leave request from %s for unknown queue %s',
                    request.user_names,
                    request.name,
                )
            for name in request.user_names:
                queue = self.players.pop(name, None)
                if queue is None:
                    logging.error(
                        '%s asked to leave queue %s but is not in any queue',
                        name,
                        request.name,
                    )
                    continue
                if queue is not requested:
                    # Still take them out: they cannot join another queue
                    # while in this one.
                    logging.error(
                        '%s asked to leave queue %s but is in queue %s',
                        name,
                        request.name,
                        queue.name,
                    )
                await self._remove_from_queue(queue, name)

    async def remove_user(self, msg: Message) -> None:
        params = msg.text.split()
        if not params:
            return
        name = params[0]
        async with self.lock:
            queue = self.players.pop(name, None)
            if queue is not None:
                logging.info(
                    '%s left the lobby, removing from queue %s',
                    name,
                    queue.name,
                )
                await self._remove_from_queue(queue, name)

    async def ready_check_response(self, msg: Message) -> None:
        response = ReadyCheckResponse.from_message(msg)
        await self.ready_checks.broadcast(response)

    # Matches

    async def matches_to_ready_checks(self) -> None:
        while True:
            match = await self.matches.get()
            try:
                await self.ready_checks.start(match)
            except asyncio.CancelledError:
                raise
            except Exception:
                logging.exception(
                    'could not start the ready check of %s', match
                )

    async def _queue_of(self, match: Match) -> Optional[Queue]:
        async with self.lock:
            return self.queues.get(match.queue_name)

    async def release_players(self, match: Match, reason: str) -> None:
        """Puts the players of a failed match back in their queue."""
        queue = await self._queue_of(match)
        if queue is not None:
            await queue.release_players(match.player_names)

    async def start_game(self, match: Match) -> None:
        """Hosts a ready-checked match and sends the players to it."""
        queue = await self._queue_of(match)
        game = self.game_class(match, self.config)
        try:
            await game.start()
        except GameError as exn:
            logging.error('%s: failure to start game: %s', match, exn)
            try:
                await self.client.ready_check_result(
                    match.queue_name, match.player_names, FAIL_RESULT
                )
            except LobbyError as send_exn:
                logging.warning(
                    '%s: could not report the failure: %s', match, send_exn
                )
            if queue is not None:
                await queue.release_players(match.player_names)
            return

        if queue is not None:
            await queue.set_playing(match.player_names)

        script = game.script
        logging.info(
            '%s: game started, connecting players %s',
            match,
            [p.name for p in script.players],
        )
        for player in script.players:
            try:
                await self.client.connect_user(
                    player.name,
                    script.ip,
                    script.port,
                    player.password,
                    script.engine,
                )
            except LobbyError as exn:
                logging.warning(
                    '%s: could not connect %s: %s', match, player.name, exn
                )

        self.games.add(game)
        task = asyncio.create_task(self.manage_game(game, match))
        self._game_tasks.add(task)
        task.add_done_callback(self._game_tasks.discard)

    async def manage_game(self, game: Game, match: Match) -> None:
        """Waits for a game to end, then takes its players out of the queue."""
        try:
            await game.wait()
        except asyncio.CancelledError:
            raise
        except Exception:
            logging.exception('%r: could not wait for the game', game)
        finally:
            self.games.discard(game)

        async with self.lock:
            queue = self.queues.get(match.queue_name)
            if queue is None:
                return
            for name in await queue.remove_playing(match.player_names):
                if self.players.get(name) is queue:
                    del self.players[name]
