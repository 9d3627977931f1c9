# SPDX-License-Identifier: GPL-2.0-or-later
import os
import os.path

import logging
import logging.handlers

SYSLOG_SOCKET = '/dev/log'

# Do not log to stderr if started by systemd
LOG_STDERR = os.getppid() != 1


def setup_logging(program, verbose=False, local=LOG_STDERR):
    """Sets up the default Python logger.

    Log to syslog when it is available, optionaly log to stderr.

    Args:
      program: Name of the program logging informations.
      verbose: If true, log more messages (DEBUG instead of INFO).
      local: If true, log to stderr as well as syslog.
    """
    handlers = []
    if os.path.exists(SYSLOG_SOCKET):
        handlers.append(logging.handlers.SysLogHandler(SYSLOG_SOCKET))
    if local or not handlers:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setFormatter(logging.Formatter(
            program + ': [%(levelname)s] %(message)s'
        ))
        logging.getLogger('').addHandler(handler)
    logging.getLogger('').setLevel(logging.DEBUG if verbose else logging.INFO)

    # Keep the event loop and web server quiet unless something goes wrong.
    for name in ('asyncio', 'aiohttp.access', 'aiohttp.server'):
        logging.getLogger(name).setLevel(logging.WARNING)
