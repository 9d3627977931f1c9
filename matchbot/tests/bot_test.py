import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from matchbot.bot import ConnectionState, Matchbot
from matchbot.game import GameError, ScriptPlayer, StartScript
from matchbot.lobby.protocol import Message
from matchbot.queue import PlayerStatus
from matchbot.readycheck import TIMEOUT_RESULT
from matchbot.tests.fakes import definition, message, wait_for


async def open_queue(bot, name, **kwargs):
    await bot.dispatch(message('QUEUEOPENED', definition(name, **kwargs)))
    return bot.queues[name]


async def join(bot, queue, *names):
    await bot.dispatch(
        message('JOINQUEUEREQUEST', {'name': queue, 'userNames': list(names)})
    )


async def leave(bot, queue, *names):
    await bot.dispatch(
        message('QUEUELEFT', {'name': queue, 'userNames': list(names)})
    )


async def respond(bot, user, status='ready', queue='1v1'):
    await bot.dispatch(
        message(
            'READYCHECKRESPONSE',
            {'name': queue, 'userName': user, 'response': status},
        )
    )


async def form_match(bot, queue):
    """Ticks a queue and starts the ready check of the formed match."""
    await queue.tick(1)
    match = bot.matches.get_nowait()
    await bot.ready_checks.start(match)
    return match


@pytest.fixture
def game(bot, mocker):
    """Replaces the dedicated server by a mock."""
    game_class = mocker.patch.object(bot, 'game_class')
    instance = game_class.return_value
    instance.start = AsyncMock()
    instance.wait = AsyncMock(return_value=0)
    instance.script = StartScript(
        ip='127.0.0.1',
        port=8452,
        autohost_port=8453,
        game='BA',
        map='DeltaSiegeDry',
        engine='103.0',
        players=[
            ScriptPlayer(id=0, name='A', password='pa', team=0),
            ScriptPlayer(id=1, name='B', password='pb', team=1),
        ],
    )
    return game_class


async def test_open_static_queues(bot, client):
    await bot.dispatch(Message('LOGININFOEND'))
    assert bot.state is ConnectionState.LOGGED_IN
    assert [p['name'] for p in client.payloads('OPENQUEUE')] == ['1v1', '2v2']


async def test_queue_opened(bot, scripts_dir):
    queue = await open_queue(bot, '1v1')
    assert queue.script.path == str(scripts_dir / '1v1.lua')
    other = await open_queue(bot, '2v2')
    assert other.script.path == str(scripts_dir / 'default.lua')


async def test_queue_opened_again(bot):
    first = await open_queue(bot, '1v1')
    await join(bot, '1v1', 'A')
    second = await open_queue(bot, '1v1')
    assert first is not second
    assert bot.queues['1v1'] is second
    assert 'A' not in bot.players


async def test_queue_opened_malformed(bot, caplog):
    await bot.dispatch(Message('QUEUEOPENED', b'{"title": "no name"}'))
    assert bot.queues == {}
    assert 'ignoring malformed QUEUEOPENED' in caplog.text


async def test_join(bot, client):
    queue = await open_queue(bot, '1v1')
    await join(bot, '1v1', 'A')
    assert client.payloads('JOINQUEUEACCEPT') == [
        {'name': '1v1', 'userNames': ['A']}
    ]
    assert bot.players['A'] is queue
    assert queue.players['A'].waiting


async def test_join_while_in_another_queue(bot, client):
    await open_queue(bot, '1v1')
    other = await open_queue(bot, '2v2')
    await join(bot, '2v2', 'A')
    await join(bot, '1v1', 'A')

    deny = client.payloads('JOINQUEUEDENY')
    assert len(deny) == 1
    assert deny[0]['name'] == '1v1'
    assert deny[0]['userNames'] == ['A']
    assert deny[0]['reason'].startswith('already waiting in 2v2')
    assert bot.players['A'] is other
    assert list(other.players) == ['A']
    assert 'A' not in bot.queues['1v1'].players


async def test_join_mixed_outcomes(bot, client):
    await open_queue(bot, '1v1', team_join_allowed=True)
    await open_queue(bot, '2v2')
    await join(bot, '2v2', 'B')
    await join(bot, '2v2', 'C')
    await join(bot, '1v1', 'A', 'B', 'C', 'D')

    assert client.payloads('JOINQUEUEACCEPT')[-1] == {
        'name': '1v1',
        'userNames': ['A', 'D'],
    }
    deny = client.payloads('JOINQUEUEDENY')
    assert len(deny) == 1
    assert deny[0]['userNames'] == ['B', 'C']


async def test_join_unknown_queue(bot, client):
    await join(bot, 'nope', 'A')
    deny = client.payloads('JOINQUEUEDENY')
    assert deny == [
        {
            'name': 'nope',
            'userNames': ['A'],
            'reason': 'matchbot does not know about queue nope',
        }
    ]
    assert bot.players == {}


async def test_join_several_players(bot, client):
    await open_queue(bot, '1v1')
    await join(bot, '1v1', 'A', 'B')
    assert client.payloads('JOINQUEUEACCEPT') == [
        {'name': '1v1', 'userNames': ['A', 'B']}
    ]
    assert client.payloads('JOINQUEUEDENY') == []
    assert sorted(bot.players) == ['A', 'B']


async def test_join_with_broken_callback(bot, client, scripts_dir):
    (scripts_dir / '2v2.lua').write_text(
        'function queue.PlayerJoined(name) queue.GetTitle(1, 2, 3) end\n'
    )
    other = await open_queue(bot, '2v2')
    await join(bot, '2v2', 'A')

    assert client.payloads('JOINQUEUEACCEPT') == [
        {'name': '2v2', 'userNames': ['A']}
    ]
    assert bot.players['A'] is other

    await open_queue(bot, '1v1')
    await join(bot, '1v1', 'A')
    assert client.payloads('JOINQUEUEDENY')[0]['reason'].startswith(
        'already waiting in 2v2'
    )
    assert 'A' not in bot.queues['1v1'].players


async def test_join_refused_by_queue(bot, client):
    queue = await open_queue(bot, '1v1')
    # Registered in the queue but missing from the player index.
    await queue.add_player('A')
    await join(bot, '1v1', 'A')
    [deny] = client.payloads('JOINQUEUEDENY')
    assert deny['userNames'] == ['A']
    assert deny['reason'] == (
        'matchbot error adding to queue! ask admin to check logs. '
        'error: player A is already in queue 1v1'
    )


async def test_join_malformed(bot, client):
    await open_queue(bot, '1v1')
    await bot.dispatch(
        Message('JOINQUEUEREQUEST', b'{"name": "1v1", "userNames": ["A", 3]}')
    )
    deny = client.payloads('JOINQUEUEDENY')
    assert deny[0]['userNames'] == ['A']
    assert 'choked on JOINQUEUEREQUEST' in deny[0]['reason']
    assert bot.players == {}

    await bot.dispatch(Message('JOINQUEUEREQUEST', b'not json'))
    assert len(client.payloads('JOINQUEUEDENY')) == 1


async def test_leave(bot):
    queue = await open_queue(bot, '1v1')
    await join(bot, '1v1', 'A')
    await leave(bot, '1v1', 'A')
    assert bot.players == {}
    assert queue.players == {}


async def test_leave_other_queue(bot, caplog):
    await open_queue(bot, '1v1')
    other = await open_queue(bot, '2v2')
    await join(bot, '2v2', 'A')
    await leave(bot, '1v1', 'A')
    assert bot.players == {}
    assert other.players == {}
    assert 'asked to leave queue 1v1 but is in queue 2v2' in caplog.text


async def test_leave_unknown_player(bot, caplog):
    await open_queue(bot, '1v1')
    await leave(bot, '1v1', 'Z')
    assert 'not in any queue' in caplog.text


async def test_remove_user(bot):
    queue = await open_queue(bot, '1v1')
    await join(bot, '1v1', 'A')
    await bot.dispatch(Message('REMOVEUSER', b'A'))
    assert bot.players == {}
    assert queue.players == {}
    # Users who are in no queue are ignored.
    await bot.dispatch(Message('REMOVEUSER', b'Z'))


async def test_at_most_one_queue(bot):
    queues = [await open_queue(bot, name) for name in ('1v1', '2v2')]
    operations = [
        (join, '1v1', 'A'),
        (join, '2v2', 'A'),
        (join, '2v2', 'B'),
        (leave, '1v1', 'A'),
        (join, '2v2', 'A'),
        (join, '1v1', 'B'),
        (leave, '1v1', 'B'),
        (join, '1v1', 'B'),
    ]
    for operation, queue, name in operations:
        await operation(bot, queue, name)
        for player in ('A', 'B'):
            assert sum(player in q.players for q in queues) <= 1
            if player in bot.players:
                assert player in bot.players[player].players


async def test_ignored_and_unknown_commands(bot, client, caplog):
    caplog.set_level(logging.INFO)
    for command in ('TASServer', 'MOTD', 'PONG', 'ADDUSER', 'ACCEPTED'):
        await bot.dispatch(Message(command, b'whatever'))
    await bot.dispatch(Message('SERVERMSG', b'hello'))
    await bot.dispatch(Message('FAILED', b'oops'))
    await bot.dispatch(Message('BOGUS', b'data'))
    assert client.sent == []
    assert 'server message: hello' in caplog.text
    assert 'failed command: oops' in caplog.text
    assert 'unknown server command BOGUS data' in caplog.text


async def test_ready_check_pass(bot, client, game):
    queue = await open_queue(bot, '1v1')
    await join(bot, '1v1', 'A')
    await join(bot, '1v1', 'B')
    match = await form_match(bot, queue)

    assert queue.players['A'].status is PlayerStatus.MATCHED
    assert queue.players['B'].status is PlayerStatus.MATCHED
    assert client.payloads('READYCHECK')[0]['userNames'] == ['A', 'B']

    await respond(bot, 'A')
    await respond(bot, 'B')
    await bot.ready_checks.wait()

    assert client.payloads('READYCHECKRESULT') == [
        {'name': '1v1', 'userNames': ['A', 'B'], 'result': 'pass'}
    ]
    game.assert_called_once_with(match, bot.config)
    game.return_value.start.assert_awaited_once()
    assert client.payloads('CONNECTUSER') == [
        {
            'userName': 'A',
            'ip': '127.0.0.1',
            'port': '8452',
            'password': 'pa',
            'engine': '103.0',
        },
        {
            'userName': 'B',
            'ip': '127.0.0.1',
            'port': '8452',
            'password': 'pb',
            'engine': '103.0',
        },
    ]

    # The game is over: its players leave the queue.
    await wait_for(lambda: not bot._game_tasks)
    assert queue.players == {}
    assert bot.players == {}


async def test_ready_check_pass_after_rejoin(bot, client, game):
    queue = await open_queue(bot, '1v1')
    await join(bot, '1v1', 'A')
    await join(bot, '1v1', 'B')
    await form_match(bot, queue)

    await bot.dispatch(Message('REMOVEUSER', b'B'))
    await join(bot, '1v1', 'B')
    assert queue.players['B'].waiting

    await respond(bot, 'A')
    await respond(bot, 'B')
    await bot.ready_checks.wait()
    await wait_for(lambda: not bot._game_tasks)

    # B joined again after the match was formed and stays in the queue.
    assert list(queue.players) == ['B']
    assert queue.players['B'].waiting
    assert bot.players == {'B': queue}


async def test_ready_check_timeout(bot, client, game):
    queue = await open_queue(bot, '1v1')
    await join(bot, '1v1', 'A')
    await join(bot, '1v1', 'B')
    await form_match(bot, queue)

    await respond(bot, 'A')
    await asyncio.wait_for(bot.ready_checks.wait(), 2)

    assert client.payloads('READYCHECKRESULT')[0]['result'] == TIMEOUT_RESULT
    assert queue.players['A'].waiting
    assert queue.players['B'].waiting
    assert bot.ready_checks.sessions == {}
    game.assert_not_called()


async def test_ready_check_declined(bot, client, game):
    queue = await open_queue(bot, '1v1')
    await join(bot, '1v1', 'A')
    await join(bot, '1v1', 'B')
    await form_match(bot, queue)

    await respond(bot, 'B', 'declined')
    await bot.ready_checks.wait()

    assert client.payloads('READYCHECKRESULT')[0]['result'] == (
        'B responded with status declined'
    )
    assert queue.waiting_players() == ['A', 'B']
    game.assert_not_called()


async def test_game_start_failure(bot, client, game):
    game.return_value.start.side_effect = GameError('no dedicated server')
    queue = await open_queue(bot, '1v1')
    await join(bot, '1v1', 'A')
    await join(bot, '1v1', 'B')
    await form_match(bot, queue)

    await respond(bot, 'A')
    await respond(bot, 'B')
    await bot.ready_checks.wait()

    results = [p['result'] for p in client.payloads('READYCHECKRESULT')]
    assert results == ['pass', 'fail']
    assert client.payloads('CONNECTUSER') == []
    assert queue.waiting_players() == ['A', 'B']


async def test_shutdown(bot, client):
    queue = await open_queue(bot, '1v1')
    await open_queue(bot, '2v2')
    await bot.shutdown()

    assert [p['name'] for p in client.payloads('CLOSEQUEUE')] == ['1v1', '2v2']
    assert client.commands()[-1] == 'EXIT'
    assert not client.active
    assert queue._tick_task is None
    assert bot.shutdown_event.is_set()


async def test_shutdown_while_disconnected(bot, client):
    client.connected = False
    await open_queue(bot, '1v1')
    await bot.shutdown()
    assert client.sent == []


async def test_session_lost(bot):
    await open_queue(bot, '1v1')
    await join(bot, '1v1', 'A')
    await bot.session_lost()
    assert bot.queues == {}
    assert bot.players == {}
    assert bot.state is ConnectionState.DISCONNECTED


async def test_run_reconnects(botconf, client, caplog):
    caplog.set_level(logging.INFO)
    client.connected = False
    client.connect_failures = 2
    client.on_connect = [Message('TASServer'), Message('LOGININFOEND')]
    bot = Matchbot(botconf, [definition('1v1')], client)

    task = asyncio.create_task(bot.run())
    await wait_for(lambda: client.payloads('OPENQUEUE'))
    assert client.connect_calls == 3
    assert bot.state is ConnectionState.LOGGED_IN
    assert 'reconnecting to the lobby server' in caplog.text

    await bot.dispatch(message('QUEUEOPENED', definition('1v1')))
    await bot.shutdown()
    await asyncio.wait_for(task, 2)

    assert client.payloads('CLOSEQUEUE') == [{'name': '1v1'}]
    assert bot.state is ConnectionState.DISCONNECTED
    assert bot.queues == {}


async def test_run_after_session_end(botconf, client):
    client.connected = False
    client.on_connect = [Message('LOGININFOEND')]
    bot = Matchbot(botconf, [definition('1v1')], client)

    task = asyncio.create_task(bot.run())
    await wait_for(lambda: client.connect_calls == 1 and client.sent)
    await bot.dispatch(message('QUEUEOPENED', definition('1v1')))

    # The lobby server goes away: the queues are forgotten.
    client.connected = False
    client.events.put_nowait(None)
    await wait_for(lambda: client.connect_calls >= 2)
    assert 'LOGIN' in client.commands()

    await bot.shutdown()
    await asyncio.wait_for(task, 2)
