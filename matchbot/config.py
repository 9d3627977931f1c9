# SPDX-License-Identifier: GPL-2.0-or-later
"""Configuration loading: the service profile and the queue definitions."""

import copy
import json
import os
import os.path
from typing import List

import yaml

from matchbot.lobby.protocol import ProtocolError, QueueDefinition

DEFAULT_CFG_DIR = '/etc/matchbot'
LOADED_CONFIGS = {}

SCRIPTS_DIR = os.path.join(os.path.dirname(__file__), 'scripts')

DEFAULTS = {
    'lobby': {
        'host': 'localhost',
        'port': 8200,
        'user': 'Matchbot',
        'password': '',
        'ping_interval_secs': 20,
        'reconnect_delay_secs': 10,
    },
    'matchmaking': {
        'queues_file': 'queues.json',
        'ready_check_timeout_secs': 10,
        'tick_interval_secs': 1,
        'scripts_dir': SCRIPTS_DIR,
        'default_script': 'bozo_1v1.lua',
    },
    'game': {
        'dedicated': 'spring-dedicated',
        'directory': 'games',
        'ip': '127.0.0.1',
    },
    'monitoring': {
        'port': 9060,
    },
    'status': {
        'host': '127.0.0.1',
        'port': 9061,
    },
}


class ConfigReadError(Exception):
    pass


def with_defaults(cfg):
    """Returns `cfg` with the missing sections and keys taken from DEFAULTS."""
    merged = copy.deepcopy(DEFAULTS)
    for section, values in (cfg or {}).items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section].update(values)
        else:
            merged[section] = values
    return merged


def load(profile):
    """Load (if needed) and return the configuration file for `profile`.

    Profile configurations are cached. Look for configuration profiles in the
    "CFG_DIR" environment variable if it is set, or in the DEFAULT_CFG_DIR
    otherwise. Raise a ConfigReadError if no such file exist or if it is not
    valid YAML.
    """

    try:
        return LOADED_CONFIGS[profile]
    except KeyError:
        pass

    cfg_filename = '{}.yml'.format(profile)
    cfg_directory = os.environ.get('CFG_DIR', DEFAULT_CFG_DIR)
    cfg_path = os.path.join(cfg_directory, cfg_filename)

    try:
        with open(cfg_path, 'r') as cfg_fp:
            cfg = yaml.safe_load(cfg_fp)
    except IOError:
        raise ConfigReadError("%s does not exist (specify CFG_DIR?)"
                              % cfg_path)
    except yaml.YAMLError as exn:
        raise ConfigReadError("%s is not valid YAML: %s" % (cfg_path, exn))

    if cfg is not None and not isinstance(cfg, dict):
        raise ConfigReadError("%s must contain a mapping" % cfg_path)

    cfg = with_defaults(cfg)
    LOADED_CONFIGS[profile] = cfg

    return cfg


def load_queue_definitions(path) -> List[QueueDefinition]:
    """Reads the static queue definitions, a JSON array of definitions.

    Raise a ConfigReadError if the file cannot be read or if any definition
    is malformed: no queue can be opened safely without it.
    """
    try:
        with open(path, 'r') as fp:
            raw = json.load(fp)
    except IOError as exn:
        raise ConfigReadError("could not read %s: %s" % (path, exn))
    except ValueError as exn:
        raise ConfigReadError("%s is not valid JSON: %s" % (path, exn))

    if not isinstance(raw, list):
        raise ConfigReadError("%s must contain a JSON array" % path)

    definitions = []
    names = set()
    for i, item in enumerate(raw):
        try:
            definition = QueueDefinition.from_dict(item)
        except ProtocolError as exn:
            raise ConfigReadError("%s: queue %d: %s" % (path, i, exn))
        if definition.name in names:
            raise ConfigReadError("%s: queue %s is defined twice"
                                  % (path, definition.name))
        names.add(definition.name)
        definitions.append(definition)
    return definitions
