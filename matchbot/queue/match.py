# SPDX-License-Identifier: GPL-2.0-or-later
import dataclasses
from typing import List, Tuple


@dataclasses.dataclass(frozen=True)
class MatchedPlayer:
    name: str
    team: int
    ally: int


@dataclasses.dataclass(frozen=True)
class Match:
    """A group of players formed by a queue script, pending a ready check."""

    id: int
    queue_name: str
    game: str
    map: str
    engine_version: str
    players: Tuple[MatchedPlayer, ...]

    @property
    def player_names(self) -> List[str]:
        return [p.name for p in self.players]

    def __str__(self):
        return '<Match {}#{}: {} on {}>'.format(
            self.queue_name, self.id, ', '.join(self.player_names), self.map
        )
