# SPDX-License-Identifier: GPL-2.0-or-later
"""Client side of the lobby server text protocol."""
