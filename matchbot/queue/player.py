# SPDX-License-Identifier: GPL-2.0-or-later
import dataclasses
import enum
from typing import Optional


class PlayerStatus(enum.Enum):
    WAITING = 1
    MATCHED = 2
    PLAYING = 3


@dataclasses.dataclass
class Player:
    """A player registered in a queue.

    The status is only changed with the owning queue's lock held.
    """

    name: str
    status: PlayerStatus = PlayerStatus.WAITING
    team: Optional[int] = None
    ally_team: Optional[int] = None

    @property
    def waiting(self) -> bool:
        return self.status is PlayerStatus.WAITING

    def set_waiting(self) -> None:
        self.status = PlayerStatus.WAITING
        self.team = self.ally_team = None

    def set_matched(self, team: int, ally_team: int) -> None:
        self.status = PlayerStatus.MATCHED
        self.team = team
        self.ally_team = ally_team

    def set_playing(self) -> None:
        self.status = PlayerStatus.PLAYING

    def as_dict(self):
        return {
            'name': self.name,
            'status': self.status.name.lower(),
            'team': self.team,
            'ally': self.ally_team,
        }
