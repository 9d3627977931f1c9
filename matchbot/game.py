# SPDX-License-Identifier: GPL-2.0-or-later
"""Hosting of ready-checked matches on a dedicated game server.

A :class:`Game` writes the start script of its match, spawns the dedicated
server on it and keeps the per-player passwords that the lobby forwards to
the players with CONNECTUSER.
"""

import asyncio
import dataclasses
import logging
import secrets
import shutil
import socket
import string
import time
from pathlib import Path
from typing import Dict, List, Optional

from matchbot.monitoring import matchbot_games_started_total
from matchbot.queue import Match

PASSWORD_ALPHABET = string.ascii_letters + string.digits + '!$%^&*()'
PASSWORD_LENGTH = 50


class GameError(Exception):
    """Raised when a game cannot be started."""

    pass


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Password used to prevent player spoofing in one game only."""
    return ''.join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def open_port(host: str = 'localhost') -> int:
    """Returns a UDP port that is currently free on `host`."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.bind((host, 0))
            return sock.getsockname()[1]
    except OSError as exn:
        raise GameError(f"could not get an open port: {exn}") from exn


@dataclasses.dataclass
class ScriptPlayer:
    id: int
    name: str
    password: str
    team: int


@dataclasses.dataclass
class ScriptTeam:
    id: int
    ally_team: int
    team_leader: int


@dataclasses.dataclass
class ScriptAllyTeam:
    id: int
    num_allies: int = 0


@dataclasses.dataclass
class StartScript:
    ip: str
    port: int
    autohost_port: int
    game: str
    map: str
    engine: str
    players: List[ScriptPlayer] = dataclasses.field(default_factory=list)
    teams: Dict[int, ScriptTeam] = dataclasses.field(default_factory=dict)
    ally_teams: Dict[int, ScriptAllyTeam] = dataclasses.field(
        default_factory=dict
    )

    @classmethod
    def from_match(
        cls, match: Match, ip: str, port: int, autohost_port: int
    ) -> 'StartScript':
        script = cls(
            ip=ip,
            port=port,
            autohost_port=autohost_port,
            game=match.game,
            map=match.map,
            engine=match.engine_version,
        )
        for i, p in enumerate(match.players):
            script.players.append(
                ScriptPlayer(
                    id=i,
                    name=p.name,
                    password=generate_password(),
                    team=p.team,
                )
            )
            team = script.teams.get(p.team)
            if team is None:
                # No AIs: the first player of a team leads it.
                script.teams[p.team] = ScriptTeam(
                    id=p.team, ally_team=p.ally, team_leader=i
                )
            elif team.ally_team != p.ally:
                logging.warning(
                    'match %s#%s: player %s is in team %s but asked for ally '
                    'team %s instead of %s, the queue script is wrong',
                    match.queue_name,
                    match.id,
                    p.name,
                    p.team,
                    p.ally,
                    team.ally_team,
                )
            if p.ally not in script.ally_teams:
                script.ally_teams[p.ally] = ScriptAllyTeam(id=p.ally)
        return script

    def render(self) -> str:
        lines = [
            '[game]',
            '{',
            f'\tAutoHostIP={self.ip};',
            f'\tAutoHostPort={self.autohost_port};',
            f'\tGameType={self.game};',
            '\tHostIP=;',
            f'\tHostPort={self.port};',
            '\tIsHost=1;',
            f'\tMapName={self.map};',
            '\tOnlyLocal=0;',
            '\tStartPosType=1;',
        ]

        def section(name, values):
            lines.append(f'\t[{name}]')
            lines.append('\t{')
            lines.extend(f'\t\t{k}={v};' for k, v in values)
            lines.append('\t}')

        for ally in sorted(self.ally_teams.values(), key=lambda a: a.id):
            section(f'allyteam{ally.id}', [('NumAllies', ally.num_allies)])
        for p in self.players:
            section(
                f'player{p.id}',
                [('name', p.name), ('password', p.password), ('team', p.team)],
            )
        for team in sorted(self.teams.values(), key=lambda t: t.id):
            section(
                f'team{team.id}',
                [
                    ('AllyTeam', team.ally_team),
                    ('TeamLeader', team.team_leader),
                ],
            )
        lines.append('}')
        return '\n'.join(lines) + '\n'


class Game:
    """One dedicated server process hosting a match."""

    def __init__(self, match: Match, config):
        self.match = match
        self.config = config
        self.script: Optional[StartScript] = None
        self.path: Optional[Path] = None
        self.process: Optional[asyncio.subprocess.Process] = None
        self._pumps: List[asyncio.Task] = []

    def __repr__(self):
        return '<Game {}#{}>'.format(self.match.queue_name, self.match.id)

    def write_start_script(self) -> Path:
        directory = Path(self.config['game']['directory'])
        self.path = (
            directory
            / self.match.queue_name
            / '{}-{}'.format(int(time.time()), self.match.id)
        )
        script_path = self.path / 'startscript.txt'
        try:
            self.path.mkdir(parents=True, exist_ok=True)
            script_path.write_text(self.script.render())
        except OSError as exn:
            raise GameError(f"could not create {script_path}: {exn}") from exn
        return script_path

    async def start(self) -> None:
        """Prepares the start script and spawns the dedicated server.

        Raises:
            GameError: the server could not be started.
        """
        game_config = self.config['game']
        dedicated = shutil.which(game_config['dedicated'])
        if dedicated is None:
            raise GameError(
                f"{game_config['dedicated']} is not in the $PATH"
            )

        self.script = StartScript.from_match(
            self.match,
            ip=game_config['ip'],
            port=open_port(),
            autohost_port=open_port(),
        )
        script_path = self.write_start_script()

        try:
            self.process = await asyncio.create_subprocess_exec(
                dedicated,
                str(script_path.resolve()),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exn:
            raise GameError(f"{dedicated} could not start: {exn}") from exn

        matchbot_games_started_total.inc()
        logging.info(
            '%s: dedicated server started (pid %s) on port %s',
            self,
            self.process.pid,
            self.script.port,
        )
        self._pumps = [
            asyncio.create_task(
                self._pump(self.process.stdout, logging.DEBUG, 'stdout')
            ),
            asyncio.create_task(
                self._pump(self.process.stderr, logging.WARNING, 'stderr')
            ),
        ]

    async def _pump(self, stream, level, name):
        while True:
            line = await stream.readline()
            if not line:
                return
            logging.log(
                level,
                '%s: dedicated %s: %s',
                self,
                name,
                line.decode(errors='replace').rstrip(),
            )

    async def wait(self) -> int:
        """Waits for the dedicated server to exit, returns its exit code."""
        returncode = await self.process.wait()
        if self._pumps:
            await asyncio.wait(self._pumps)
        if returncode != 0:
            logging.error(
                '%s: dedicated server exited with code %s', self, returncode
            )
        else:
            logging.info('%s: game over', self)
        return returncode
