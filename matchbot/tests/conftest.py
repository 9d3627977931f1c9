import textwrap

import pytest

import matchbot.config
from matchbot.bot import Matchbot
from matchbot.tests.fakes import PAIR_SCRIPT, RecordingClient, definition


@pytest.fixture
def write_script(tmp_path):
    """Writes a Lua matching script, returns its path."""

    def writer(source, name='test.lua'):
        path = tmp_path / name
        path.write_text(textwrap.dedent(source))
        return str(path)

    return writer


@pytest.fixture
def scripts_dir(tmp_path):
    directory = tmp_path / 'scripts'
    directory.mkdir()
    (directory / 'default.lua').write_text('')
    (directory / '1v1.lua').write_text(PAIR_SCRIPT)
    return directory


@pytest.fixture
def botconf(tmp_path, scripts_dir):
    """Matchbot configuration with short delays and a test scripts dir."""
    return matchbot.config.with_defaults(
        {
            'lobby': {'reconnect_delay_secs': 0.01},
            'matchmaking': {
                'scripts_dir': str(scripts_dir),
                'default_script': 'default.lua',
                'ready_check_timeout_secs': 0.3,
                # Tests tick the queues themselves.
                'tick_interval_secs': 3600,
            },
            'game': {'directory': str(tmp_path / 'games')},
        }
    )


@pytest.fixture
def client():
    return RecordingClient()


@pytest.fixture
async def bot(botconf, client):
    bot = Matchbot(botconf, [definition('1v1'), definition('2v2')], client)
    yield bot
    await bot.session_lost()
