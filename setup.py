#! /usr/bin/env python
# SPDX-License-Identifier: GPL-2.0-or-later

from setuptools import setup, find_packages

setup(
    name='matchbot',
    version='1.0',
    description='Matchmaking bot hosting queues on a Spring lobby server',
    packages=find_packages(include=['matchbot', 'matchbot.*']),
    package_data={
        'matchbot': ['scripts/*.lua'],
    },
    install_requires=[
        'aiohttp',
        'lupa>=2.0',
        'prometheus_client',
        'PyYAML',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-aiohttp',
            'pytest-asyncio',
            'pytest-mock',
        ],
    },
    zip_safe=False,
)
