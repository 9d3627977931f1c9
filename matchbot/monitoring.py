# SPDX-License-Identifier: GPL-2.0-or-later
from prometheus_client import start_http_server, Counter, Gauge

matchbot_queues = Gauge(
    'matchbot_queues',
    'Number of queues hosted by matchbot',
)

matchbot_players = Gauge(
    'matchbot_players',
    'Number of players in a matchbot queue',
)

matchbot_lobby_connected = Gauge(
    'matchbot_lobby_connected',
    'Lobby session status: 1 when logged in, 0 otherwise',
)

matchbot_active_ready_checks = Gauge(
    'matchbot_active_ready_checks',
    'Number of ready checks waiting for player responses',
)

matchbot_reconnects_total = Counter(
    'matchbot_reconnects_total',
    'Number of connection attempts to the lobby server',
)

matchbot_matches_formed_total = Counter(
    'matchbot_matches_formed_total',
    'Number of matches formed by the queue scripts',
    ['queue'],
)

matchbot_script_errors_total = Counter(
    'matchbot_script_errors_total',
    'Number of errors raised by the queue scripts',
    ['queue'],
)

matchbot_ready_checks_total = Counter(
    'matchbot_ready_checks_total',
    'Number of finished ready checks',
    ['result'],
)

matchbot_join_requests_total = Counter(
    'matchbot_join_requests_total',
    'Number of players accepted or denied in a queue',
    ['outcome'],
)

matchbot_games_started_total = Counter(
    'matchbot_games_started_total',
    'Number of dedicated game servers started',
)

lobby_messages_in = Counter(
    'matchbot_lobby_messages_in',
    'Number of messages received from the lobby server',
)

lobby_messages_out = Counter(
    'matchbot_lobby_messages_out',
    'Number of messages sent to the lobby server',
)


def monitoring_start(port=9060):
    start_http_server(port)
