# SPDX-License-Identifier: GPL-2.0-or-later
"""Sandboxed Lua runtime running the matching logic of one queue.

A matching script sees a single global table, ``queue``, holding the
read-only view of its queue and the ``NewMatch`` submission function::

    queue.GetTitle()        -- queue title
    queue.GetPlayerList()   -- names of the waiting players
    queue.GetMapList()      -- map names from the queue definition
    queue.GetGameList()     -- game names from the queue definition
    queue.GetEngineList()   -- engine versions from the queue definition
    queue.NewMatch({map=..., game=..., engineVersion=...,
                    players={{name=..., team=..., ally=...}, ...}})

and may define the ``queue.PlayerJoined(name)``, ``queue.PlayerLeft(name)``
and ``queue.Update(elapsedSeconds)`` hooks. Missing hooks are skipped.

The script has no file, process, module loading or Python access: see
``SANDBOX_PRELUDE``.
"""

import abc
import logging
from typing import Any, List

import lupa

SANDBOX_PRELUDE = '''
local time, clock, difftime = os.time, os.clock, os.difftime
os = {time = time, clock = clock, difftime = difftime}
io, debug, package, require, dofile, loadfile, load, loadstring,
    collectgarbage, python = nil
'''

# Nested tables deeper than this are refused when read back from Lua.
MAX_TABLE_DEPTH = 8


class ScriptError(Exception):
    """Raised when a matching script fails to load or a hook fails."""

    pass


class QueueDataSource(abc.ABC):
    """What a matching script is allowed to know and do about its queue."""

    @abc.abstractmethod
    def title(self) -> str:
        pass

    @abc.abstractmethod
    def waiting_players(self) -> List[str]:
        pass

    @abc.abstractmethod
    def maps(self) -> List[str]:
        pass

    @abc.abstractmethod
    def games(self) -> List[str]:
        pass

    @abc.abstractmethod
    def engines(self) -> List[str]:
        pass

    @abc.abstractmethod
    def submit_match(self, candidate: Any) -> bool:
        """Tries to form a match from a candidate converted from Lua."""
        pass


def _deny_attribute(obj, attr_name, is_setting):
    raise AttributeError(f"access to attribute {attr_name!r} is not allowed")


def to_python(value, depth=0):
    """Converts Lua tables to lists (sequences) or dicts, recursively."""
    if lupa.lua_type(value) != 'table':
        return value
    if depth > MAX_TABLE_DEPTH:
        raise ValueError('table nesting is too deep')
    items = list(value.items())
    keys = [k for k, _ in items]
    if keys and all(type(k) is int for k in keys):
        if sorted(keys) == list(range(1, len(keys) + 1)):
            return [to_python(v, depth + 1) for _, v in sorted(items)]
    return {k: to_python(v, depth + 1) for k, v in items}


class MatchScript:
    def __init__(self, path, datasource: QueueDataSource):
        self.path = path
        self.datasource = datasource
        self.lua = lupa.LuaRuntime(
            register_eval=False,
            register_builtins=False,
            attribute_filter=_deny_attribute,
        )
        try:
            with open(path, encoding='utf-8') as f:
                source = f.read()
        except OSError as exn:
            raise ScriptError(f"could not read {path}: {exn}") from exn

        self.lua.execute(SANDBOX_PRELUDE)
        self.namespace = self.lua.table(
            GetTitle=self._get_title,
            GetPlayerList=self._get_player_list,
            GetMapList=self._get_map_list,
            GetGameList=self._get_game_list,
            GetEngineList=self._get_engine_list,
            NewMatch=self._new_match,
        )
        self.lua.globals()['queue'] = self.namespace

        try:
            self.lua.execute(source)
        except lupa.LuaError as exn:
            raise ScriptError(f"could not load {path}: {exn}") from exn

    def _get_title(self):
        return self.datasource.title()

    def _get_player_list(self):
        return self.lua.table_from(self.datasource.waiting_players())

    def _get_map_list(self):
        return self.lua.table_from(self.datasource.maps())

    def _get_game_list(self):
        return self.lua.table_from(self.datasource.games())

    def _get_engine_list(self):
        return self.lua.table_from(self.datasource.engines())

    def _new_match(self, candidate=None):
        try:
            candidate = to_python(candidate)
        except ValueError as exn:
            logging.warning('%s: rejected match candidate: %s', self.path, exn)
            return False
        return self.datasource.submit_match(candidate)

    def has_hook(self, name) -> bool:
        return lupa.lua_type(self.namespace[name]) == 'function'

    def call_hook(self, name, *args) -> None:
        """Calls ``queue.<name>(*args)`` if the script defines it."""
        if not self.has_hook(name):
            logging.debug('%s: no %s hook, skipping', self.path, name)
            return
        try:
            self.namespace[name](*args)
        except lupa.LuaError as exn:
            raise ScriptError(f"error calling {name}: {exn}") from exn
        except Exception as exn:
            # Python errors raised by the queue callbacks cross Lua as is.
            raise ScriptError(
                f"error calling {name}: {type(exn).__name__}: {exn}"
            ) from exn
