# SPDX-License-Identifier: GPL-2.0-or-later
"""Codec for the lobby server text protocol.

A protocol line is a command followed by its parameters. Parameters are
separated by spaces, except around "sentences" (parameters that contain a
space), which are separated from their neighbours by tabs. Tabs are reserved,
so a literal tab inside a parameter is sent as two spaces.

Structured payloads travel as a single JSON-encoded parameter. The payload
classes below map the JSON objects used by the matchmaking commands.
"""

import dataclasses
import json
from typing import Any, Dict, List, Sequence, Type, TypeVar


class ProtocolError(Exception):
    """Raised when a message payload cannot be decoded."""

    pass


@dataclasses.dataclass(frozen=True)
class Message:
    command: str
    data: bytes = b''

    @property
    def text(self) -> str:
        return self.data.decode('utf-8', errors='replace')

    def json(self) -> Any:
        try:
            return json.loads(self.data)
        except (UnicodeDecodeError, ValueError) as exn:
            raise ProtocolError(
                f"{self.command}: invalid JSON payload: {exn}"
            ) from exn

    def __bytes__(self):
        if not self.data:
            return self.command.encode() + b'\n'
        return self.command.encode() + b' ' + self.data + b'\n'


def prepare(command: str, params: Sequence[str]) -> Message:
    """Builds the message for `command`, applying the separator rules."""
    pieces: List[str] = []
    for i, param in enumerate(params):
        # Tabs are reserved for sentence boundaries.
        param = param.replace('\t', '  ')
        if ' ' in param:
            if i > 0:
                pieces[-1] = '\t'
            pieces.extend((param, '\t'))
        else:
            pieces.extend((param, ' '))

    # Chop off the trailing separator.
    if pieces:
        pieces.pop()

    return Message(command=command, data=''.join(pieces).encode('utf-8'))


def encode(command: str, params: Sequence[str] = ()) -> bytes:
    return bytes(prepare(command, params))


def decode(line) -> Message:
    """Parses one protocol line (bytes or str) into a Message."""
    if isinstance(line, bytes):
        line = line.decode('utf-8', errors='replace')
    line = line.rstrip('\r\n')

    mark = line.find(' ')
    # No space, no parameters: a bare command such as PONG.
    if mark == -1:
        return Message(command=line.strip())

    return Message(
        command=line[:mark], data=line[mark:].strip().encode('utf-8')
    )


P = TypeVar('P', bound='Payload')

# Marks list-of-strings fields for validation.
STRINGS = 'strings'


def _json_name(field: dataclasses.Field) -> str:
    return field.metadata.get('json', field.name)


class Payload:
    """Mixin for dataclasses exchanged as JSON objects.

    Field names are mapped to their camelCase JSON keys through the ``json``
    field metadata.
    """

    def as_dict(self) -> Dict[str, Any]:
        return {
            _json_name(f): getattr(self, f.name)
            for f in dataclasses.fields(self)
        }

    def dumps(self) -> str:
        return json.dumps(self.as_dict())

    @classmethod
    def from_dict(cls: Type[P], obj: Any) -> P:
        if not isinstance(obj, dict):
            raise ProtocolError(
                f"{cls.__name__}: expected a JSON object, got {obj!r}"
            )
        kwargs = {}
        for f in dataclasses.fields(cls):
            key = _json_name(f)
            if key in obj:
                kwargs[f.name] = obj[key]
            elif (
                f.default is dataclasses.MISSING
                and f.default_factory is dataclasses.MISSING
            ):
                raise ProtocolError(f"{cls.__name__}: missing field {key!r}")
        try:
            payload = cls(**kwargs)
        except (TypeError, ValueError) as exn:
            raise ProtocolError(f"{cls.__name__}: {exn}") from exn
        payload.validate()
        return payload

    @classmethod
    def from_message(cls: Type[P], msg: Message) -> P:
        return cls.from_dict(msg.json())

    def validate(self) -> None:
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            expected = f.metadata.get('type')
            if expected is None:
                continue
            if expected == STRINGS:
                ok = isinstance(value, list) and all(
                    isinstance(v, str) for v in value
                )
            elif expected is int:
                ok = isinstance(value, int) and not isinstance(value, bool)
            else:
                ok = isinstance(value, expected)
            if not ok:
                raise ProtocolError(
                    f"{type(self).__name__}: field {_json_name(f)!r} has "
                    f"invalid value {value!r}"
                )


def _field(json_name=None, type=None, **kwargs):
    metadata = {}
    if json_name is not None:
        metadata['json'] = json_name
    if type is not None:
        metadata['type'] = type
    return dataclasses.field(metadata=metadata, **kwargs)


@dataclasses.dataclass
class QueueDefinition(Payload):
    name: str = _field(type=str)
    title: str = _field(type=str, default='')
    description: str = _field(type=str, default='')
    map_names: List[str] = _field(
        'mapNames', STRINGS, default_factory=list
    )
    game_names: List[str] = _field(
        'gameNames', STRINGS, default_factory=list
    )
    engine_versions: List[str] = _field(
        'engineVersions', STRINGS, default_factory=list
    )
    min_players: int = _field('minPlayers', int, default=0)
    max_players: int = _field('maxPlayers', int, default=0)
    team_join_allowed: bool = _field('teamJoinAllowed', bool, default=False)


@dataclasses.dataclass
class JoinQueueRequest(Payload):
    name: str = _field(type=str)
    user_names: List[str] = _field('userNames', STRINGS)


@dataclasses.dataclass
class JoinQueueAccept(Payload):
    name: str
    user_names: List[str] = _field('userNames')


@dataclasses.dataclass
class JoinQueueDeny(Payload):
    name: str
    user_names: List[str] = _field('userNames')
    reason: str = ''


@dataclasses.dataclass
class QueueLeft(Payload):
    name: str = _field(type=str)
    user_names: List[str] = _field('userNames', STRINGS)


@dataclasses.dataclass
class CloseQueue(Payload):
    name: str


@dataclasses.dataclass
class ReadyCheck(Payload):
    name: str
    user_names: List[str] = _field('userNames')
    response_time: int = _field('responseTime', default=10)


@dataclasses.dataclass
class ReadyCheckResponse(Payload):
    name: str = _field(type=str)
    user_name: str = _field('userName', str)
    response: str = _field(type=str)
    response_time: int = _field('responseTime', default=0)


@dataclasses.dataclass
class ReadyCheckResult(Payload):
    name: str
    user_names: List[str] = _field('userNames')
    result: str = ''


@dataclasses.dataclass
class ConnectUser(Payload):
    user_name: str = _field('userName')
    ip: str = ''
    port: str = ''
    password: str = ''
    engine: str = ''
