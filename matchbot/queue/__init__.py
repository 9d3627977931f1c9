# SPDX-License-Identifier: GPL-2.0-or-later
"""Matchmaking queues: player registries driven by sandboxed Lua scripts."""

from .match import Match, MatchedPlayer
from .player import Player, PlayerStatus
from .queue import Queue, QueueError, QueueView
from .script import MatchScript, QueueDataSource, ScriptError

__all__ = [
    'Match',
    'MatchedPlayer',
    'MatchScript',
    'Player',
    'PlayerStatus',
    'Queue',
    'QueueDataSource',
    'QueueError',
    'QueueView',
    'ScriptError',
]
