# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 The DevAgent Authors

"""
DevAgent - Desktop Agent Supervisor

Command line tooling that installs, supervises and upgrades the RemoteDevAI
desktop agent running on an operator's machine.
"""

__version__ = "1.4.0"
__author__ = "The DevAgent Authors"
