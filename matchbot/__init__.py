# SPDX-License-Identifier: GPL-2.0-or-later
"""Matchbot is a service that hosts matchmaking queues on a lobby server.

Matchbot logs into the lobby server as a bot user, opens its queues there and
gathers the players who ask to join them. Each queue runs a Lua matching
script deciding when waiting players make a match. Every match goes through a
ready check: all its players must answer "ready" in time. Ready-checked
matches are hosted on a dedicated game server and the lobby sends the players
to it.

Matchbot configuration elements (``matchbot.yml``) are:

* **lobby.host**, **lobby.port** the lobby server address.
* **lobby.user**, **lobby.password** the credentials of the bot user.
* **lobby.ping_interval_secs** the delay between two keep-alive pings.
* **lobby.reconnect_delay_secs** the delay before connecting again after the
  lobby session ends.
* **matchmaking.queues_file** the JSON array of the queue definitions opened
  on every login.
* **matchmaking.scripts_dir** the directory of the matching scripts. A queue
  named ``name`` uses ``name.lua`` when it exists, else
  **matchmaking.default_script**.
* **matchmaking.ready_check_timeout_secs** the time players have to answer a
  ready check, 10 seconds by default.
* **matchmaking.tick_interval_secs** the period of the ``Update`` script hook.
* **game.dedicated** the dedicated server binary, looked up in the ``$PATH``.
* **game.directory** where the start scripts of the games are written.
* **game.ip** the address players use to reach the dedicated servers.
* **monitoring.port** the port of the Prometheus metrics.
* **status.host**, **status.port** the address of the status pages.

Missing elements take the defaults of :data:`matchbot.config.DEFAULTS`.
"""
