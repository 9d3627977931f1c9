# SPDX-License-Identifier: GPL-2.0-or-later
import asyncio
import logging
import optparse
import signal
import sys

import matchbot.config
import matchbot.log

from .bot import Matchbot
from .monitoring import monitoring_start
from .status import StatusApp


async def main(config, definitions):
    bot = Matchbot(config, definitions)

    loop = asyncio.get_running_loop()
    shutdowns = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(
            signum, lambda: shutdowns.append(loop.create_task(bot.shutdown()))
        )

    status = StatusApp(bot)
    await status.start(config['status']['host'], config['status']['port'])
    try:
        await bot.run()
    finally:
        await status.stop()


if __name__ == '__main__':
    # Argument parsing
    parser = optparse.OptionParser()
    parser.add_option(
        '-l',
        '--local-logging',
        action='store_true',
        dest='local_logging',
        default=False,
        help='Activate logging to stdout.',
    )
    parser.add_option(
        '-v',
        '--verbose',
        action='store_true',
        dest='verbose',
        default=False,
        help='Verbose mode.',
    )
    options, args = parser.parse_args()

    # Logging
    matchbot.log.setup_logging(
        'matchbot', verbose=options.verbose, local=options.local_logging
    )

    # Config
    try:
        config = matchbot.config.load('matchbot')
        definitions = matchbot.config.load_queue_definitions(
            config['matchmaking']['queues_file']
        )
    except matchbot.config.ConfigReadError as exn:
        logging.critical('%s', exn)
        sys.exit(1)
    logging.info('loaded %d queue definitions', len(definitions))

    # Monitoring
    monitoring_start(config['monitoring']['port'])

    asyncio.run(main(config, definitions))
