# SPDX-License-Identifier: GPL-2.0-or-later
"""Read-only status pages of a running matchbot.

  * /queues
    The open queues and their players.
  * /readychecks
    The ready checks waiting for player responses.
  * /__info
    Python version, asyncio tasks and lobby session state.

No authentication is done: listen on a trusted address only.
"""

import asyncio
import logging
import sys

import aiohttp.web


class StatusApp:
    def __init__(self, bot):
        self.bot = bot
        self.app = aiohttp.web.Application()
        self.app.add_routes(
            [
                aiohttp.web.get('/queues', self.queues_handler),
                aiohttp.web.get('/readychecks', self.ready_checks_handler),
                aiohttp.web.get('/__info', self.info_handler),
            ]
        )
        self.runner = None

    async def queues_handler(self, request):
        async with self.bot.lock:
            queues = list(self.bot.queues.values())
        result = []
        for queue in queues:
            async with queue.lock:
                result.append(queue.as_dict())
        return aiohttp.web.json_response(result)

    async def ready_checks_handler(self, request):
        coordinator = self.bot.ready_checks
        async with coordinator.lock:
            sessions = list(coordinator.sessions.values())
        return aiohttp.web.json_response(
            [
                {
                    'id': s.id,
                    'queue': s.match.queue_name,
                    'match': s.match.id,
                    'players': s.match.player_names,
                    'ready': sorted(s.ready),
                    'state': s.state.value,
                }
                for s in sessions
            ]
        )

    async def info_handler(self, request):
        return aiohttp.web.json_response(
            {
                'python': sys.version,
                'tasks': len(asyncio.all_tasks()),
                'lobby': self.bot.state.value,
                'games': len(self.bot.games),
            }
        )

    async def start(self, host, port):
        self.runner = aiohttp.web.AppRunner(self.app)
        await self.runner.setup()
        site = aiohttp.web.TCPSite(self.runner, host, port)
        await site.start()
        logging.info('status pages listening on %s:%s', host, port)

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
