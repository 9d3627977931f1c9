import logging
import logging.handlers

import pytest

import matchbot.log


@pytest.fixture
def new_handlers():
    """Returns the handlers added to the root logger during the test."""
    root = logging.getLogger('')
    level = root.level
    before = list(root.handlers)

    def added():
        return [h for h in root.handlers if h not in before]

    yield added
    for handler in added():
        root.removeHandler(handler)
    root.setLevel(level)


def test_stderr_only_without_syslog(new_handlers, mocker, tmp_path):
    mocker.patch('matchbot.log.SYSLOG_SOCKET', str(tmp_path / 'nope'))
    matchbot.log.setup_logging('matchbot', verbose=True, local=False)

    [handler] = new_handlers()
    assert type(handler) is logging.StreamHandler
    assert logging.getLogger('').level == logging.DEBUG
    record = logging.makeLogRecord({'levelname': 'INFO', 'msg': 'hello'})
    assert handler.format(record) == 'matchbot: [INFO] hello'


def test_syslog_and_stderr(new_handlers, mocker, tmp_path):
    mocker.patch('matchbot.log.SYSLOG_SOCKET', str(tmp_path))
    syslog = mocker.patch('logging.handlers.SysLogHandler')
    syslog.return_value = logging.NullHandler()
    matchbot.log.setup_logging('matchbot', local=True)

    syslog.assert_called_once_with(str(tmp_path))
    assert len(new_handlers()) == 2
    assert logging.getLogger('').level == logging.INFO
    assert logging.getLogger('asyncio').level == logging.WARNING
