# SPDX-License-Identifier: GPL-2.0-or-later
import asyncio
import concurrent.futures
import contextlib
import functools
import logging
import math
import time
from typing import Any, Dict, Iterable, List, Optional

from matchbot.lobby.protocol import QueueDefinition
from matchbot.monitoring import (
    matchbot_matches_formed_total,
    matchbot_script_errors_total,
)

from .match import Match, MatchedPlayer
from .player import Player, PlayerStatus
from .script import MatchScript, QueueDataSource, ScriptError


class QueueError(Exception):
    """Raised when a registry operation is refused."""

    pass


class QueueView(QueueDataSource):
    """The part of a queue exposed to its matching script."""

    def __init__(self, queue: 'Queue'):
        self._queue = queue

    def title(self):
        return self._queue.definition.title

    def waiting_players(self):
        return self._queue.waiting_players()

    def maps(self):
        return list(self._queue.definition.map_names)

    def games(self):
        return list(self._queue.definition.game_names)

    def engines(self):
        return list(self._queue.definition.engine_versions)

    def submit_match(self, candidate):
        return self._queue.form_match(candidate)


def _is_number(value) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


class Queue:
    """A matchmaking queue: the player registry and its matching script.

    Registry mutations and script calls are serialized by ``lock``. Script
    calls run on a private worker thread, so scripts of different queues run
    in parallel without blocking the event loop. Formed matches are put on
    the ``matches`` asyncio queue.
    """

    def __init__(
        self,
        definition: QueueDefinition,
        script_path,
        matches: asyncio.Queue,
        tick_interval=1,
    ):
        self.definition = definition
        self.name = definition.name
        self.matches = matches
        self.tick_interval = tick_interval
        self.players: Dict[str, Player] = {}
        self.lock = asyncio.Lock()

        self._last_match_id = 0
        # Matches formed during the current script call.
        self._formed: List[Match] = []
        self._tick_task: Optional[asyncio.Task] = None

        self.script = MatchScript(script_path, QueueView(self))
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f'queue-{self.name}'
        )

    def __repr__(self):
        return f'<Queue {self.name}: {len(self.players)} players>'

    def waiting_players(self) -> List[str]:
        return [p.name for p in self.players.values() if p.waiting]

    def start(self) -> None:
        """Starts calling the script Update hook periodically."""
        if self._tick_task is None:
            self._tick_task = asyncio.create_task(self._tick_loop())

    async def close(self) -> None:
        if self._tick_task is not None:
            self._tick_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._tick_task
            self._tick_task = None
        self._executor.shutdown(wait=False)

    async def _run_hook(self, hook, *args) -> Optional[ScriptError]:
        """Runs a script hook on the queue thread. The lock must be held."""
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                self._executor,
                functools.partial(self.script.call_hook, hook, *args),
            )
            error = None
        except ScriptError as exn:
            matchbot_script_errors_total.labels(self.name).inc()
            error = exn
        finally:
            self._emit_formed_matches()
        return error

    def _emit_formed_matches(self):
        for match in self._formed:
            logging.info('queue %s: formed %s', self.name, match)
            matchbot_matches_formed_total.labels(self.name).inc()
            self.matches.put_nowait(match)
        self._formed.clear()

    async def add_player(self, name: str) -> Optional[ScriptError]:
        """Registers `name` as waiting and notifies the script.

        Raises QueueError if the player is already registered. A failing
        PlayerJoined hook does not undo the registration: the hook error is
        returned instead.
        """
        async with self.lock:
            if name in self.players:
                raise QueueError(
                    f"player {name} is already in queue {self.name}"
                )
            self.players[name] = Player(name)
            return await self._run_hook('PlayerJoined', name)

    async def remove_player(self, name: str) -> Optional[ScriptError]:
        """Unregisters `name` and notifies the script.

        Raises QueueError if the player is not registered. Like
        :meth:`add_player`, a PlayerLeft hook error is returned.
        """
        async with self.lock:
            if name not in self.players:
                raise QueueError(
                    f"player {name} is not in queue {self.name}"
                )
            del self.players[name]
            return await self._run_hook('PlayerLeft', name)

    async def tick(self, elapsed_seconds: int) -> None:
        async with self.lock:
            error = await self._run_hook('Update', elapsed_seconds)
        if error is not None:
            logging.error('queue %s: Update failed: %s', self.name, error)

    async def _tick_loop(self):
        start = time.monotonic()
        while True:
            await asyncio.sleep(self.tick_interval)
            try:
                await self.tick(int(time.monotonic() - start))
            except asyncio.CancelledError:
                raise
            except Exception:
                logging.exception('queue %s: tick failed', self.name)

    async def release_players(self, names: Iterable[str]) -> None:
        """Puts matched players back in the waiting state."""
        async with self.lock:
            for name in names:
                player = self.players.get(name)
                if player is None:
                    continue
                if player.status is PlayerStatus.MATCHED:
                    player.set_waiting()

    async def set_playing(self, names: Iterable[str]) -> None:
        """Marks the matched players of a started game as playing."""
        async with self.lock:
            for name in names:
                player = self.players.get(name)
                if player is None:
                    continue
                if player.status is PlayerStatus.MATCHED:
                    player.set_playing()

    async def remove_playing(self, names: Iterable[str]) -> List[str]:
        """Removes the players of a finished game, returns the removed names.

        Players who left and joined again meanwhile are not playing anymore
        and are kept.
        """
        removed = []
        async with self.lock:
            for name in names:
                player = self.players.get(name)
                if player is None or player.status is not PlayerStatus.PLAYING:
                    continue
                del self.players[name]
                removed.append(name)
                error = await self._run_hook('PlayerLeft', name)
                if error is not None:
                    logging.error(
                        'queue %s: PlayerLeft failed for %s: %s',
                        self.name,
                        name,
                        error,
                    )
        return removed

    def _next_match_id(self) -> int:
        self._last_match_id += 1
        return self._last_match_id

    def form_match(self, candidate: Any) -> bool:
        """Validates a match candidate from the script and forms the match.

        Called from the script with the lock held. Either every named player
        is waiting and every field is valid, and all the players become
        matched, or nothing changes.
        """
        errors = []
        if not isinstance(candidate, dict):
            logging.warning(
                'queue %s: match candidate is not a table: %r',
                self.name,
                candidate,
            )
            return False

        for field in ('map', 'game', 'engineVersion'):
            if not isinstance(candidate.get(field), str):
                errors.append(f"{field} is not a string")

        players = candidate.get('players')
        if not isinstance(players, list) or not players:
            errors.append("players is not a non-empty list")
            players = []

        assignments = []
        seen = set()
        for i, player in enumerate(players, start=1):
            if not isinstance(player, dict):
                errors.append(f"player {i} is not a table")
                continue
            name = player.get('name')
            if not isinstance(name, str):
                errors.append(f"player {i} did not have a name defined")
                continue
            if name in seen:
                errors.append(f"player {name} is in the match twice")
                continue
            seen.add(name)
            queue_player = self.players.get(name)
            if queue_player is None:
                errors.append(f"player {name} is not in the queue")
                continue
            if not queue_player.waiting:
                errors.append(f"player {name} is not waiting")
                continue
            team, ally = player.get('team'), player.get('ally')
            if not _is_number(team):
                errors.append(f"player {name} does not have a team")
                continue
            if not _is_number(ally):
                errors.append(f"player {name} does not have an ally team")
                continue
            assignments.append((queue_player, int(team), int(ally)))

        if errors:
            logging.warning(
                'queue %s: bailing on this match, errors present: %s',
                self.name,
                '; '.join(errors),
            )
            return False

        for queue_player, team, ally in assignments:
            queue_player.set_matched(team, ally)

        self._formed.append(
            Match(
                id=self._next_match_id(),
                queue_name=self.name,
                game=candidate['game'],
                map=candidate['map'],
                engine_version=candidate['engineVersion'],
                players=tuple(
                    MatchedPlayer(p.name, team, ally)
                    for p, team, ally in assignments
                ),
            )
        )
        return True

    def as_dict(self):
        return {
            'name': self.name,
            'title': self.definition.title,
            'players': [p.as_dict() for p in self.players.values()],
        }
